"""
报名数据库模型
"""

from sqlalchemy import Column, String, Integer, BigInteger, DateTime, Index, UniqueConstraint, text
from sqlalchemy.sql import func
from course_commerce.core.database import Base


class EnrollmentDB(Base):
    """报名记录表，每次尝试一行，FAILED 行不会被复用"""

    __tablename__ = "enrollments"

    # 主键和关联信息
    enrollment_id = Column(String(50), primary_key=True, comment="报名ID")
    user_id = Column(String(128), nullable=False, index=True, comment="用户ID")
    course_id = Column(String(50), nullable=False, index=True, comment="课程ID")
    attempt = Column(Integer, nullable=False, default=1, comment="尝试序号")

    # 状态 PENDING/SUCCESS/FAILED
    status = Column(String(20), nullable=False, default="PENDING", index=True, comment="报名状态")

    # 支付信息
    paid_amount = Column(BigInteger, nullable=False, default=0, comment="实付金额")
    payment_method = Column(String(20), nullable=False, default="online", comment="支付方式")
    payment_reference = Column(String(100), comment="支付流水号")
    payment_id = Column(String(50), index=True, comment="关联支付记录ID")
    enrolled_by = Column(String(128), comment="手动报名的管理员ID")

    # 时间戳
    enrolled_at = Column(DateTime(timezone=True), comment="报名成功时间")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), comment="创建时间")
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), comment="更新时间")

    __table_args__ = (
        UniqueConstraint("user_id", "course_id", "attempt", name="uq_enrollment_attempt"),
        # 同一用户同一课程最多一条 SUCCESS
        Index(
            "uq_enrollment_success",
            "user_id",
            "course_id",
            unique=True,
            postgresql_where=text("status = 'SUCCESS'"),
            sqlite_where=text("status = 'SUCCESS'"),
        ),
        {'comment': '课程报名表'}
    )
