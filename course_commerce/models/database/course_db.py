"""
课程数据库模型
"""

from sqlalchemy import Column, String, Integer, BigInteger, Boolean, DateTime, JSON
from sqlalchemy.sql import func
from course_commerce.core.database import Base


class CourseDB(Base):
    """课程数据库表"""

    __tablename__ = "courses"

    # 主键和基本信息
    course_id = Column(String(50), primary_key=True, comment="课程ID")
    title = Column(String(200), nullable=False, comment="课程名称")
    category = Column(String(50), index=True, comment="课程分类")

    # 价格信息（最小货币单位）
    price = Column(BigInteger, nullable=False, comment="价格")
    currency = Column(String(10), nullable=False, default="INR", comment="币种")

    # 目录结构：模块及视频（有序）
    modules = Column(JSON, nullable=False, default=list, comment="模块列表")

    # 统计信息
    total_enrollments = Column(Integer, nullable=False, default=0, comment="报名人数")

    # 状态和时间
    is_published = Column(Boolean, nullable=False, default=False, index=True, comment="是否已发布")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), comment="创建时间")
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), comment="更新时间")

    __table_args__ = (
        {'comment': '课程信息表'}
    )
