"""
支付记录数据库模型
"""

from sqlalchemy import Column, String, BigInteger, Text, DateTime
from sqlalchemy.sql import func
from course_commerce.core.database import Base


class PaymentDB(Base):
    """支付记录表，每次结账创建一条"""

    __tablename__ = "payments"

    # 主键和关联信息
    payment_id = Column(String(50), primary_key=True, comment="支付记录ID")
    user_id = Column(String(128), nullable=False, index=True, comment="用户ID")
    course_id = Column(String(50), nullable=False, index=True, comment="课程ID")

    # 锁定的报价
    original_amount = Column(BigInteger, nullable=False, comment="原价")
    discount_amount = Column(BigInteger, nullable=False, default=0, comment="优惠券折扣")
    amount = Column(BigInteger, nullable=False, comment="应付金额")
    currency = Column(String(10), nullable=False, default="INR", comment="币种")
    coupon_code = Column(String(50), comment="使用的优惠券代码")

    # 网关信息
    gateway_order_id = Column(String(100), nullable=False, unique=True, index=True, comment="网关订单号")
    gateway_payment_id = Column(String(100), unique=True, comment="网关支付号")
    gateway_signature = Column(String(255), comment="网关签名")

    # 状态 created/captured/failed
    status = Column(String(20), nullable=False, default="created", index=True, comment="支付状态")
    failure_code = Column(String(100), comment="失败错误码")
    failure_description = Column(Text, comment="失败描述")

    # 时间戳
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True, comment="创建时间")
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), comment="更新时间")
    captured_at = Column(DateTime(timezone=True), comment="扣款时间")

    __table_args__ = (
        {'comment': '支付记录表'}
    )
