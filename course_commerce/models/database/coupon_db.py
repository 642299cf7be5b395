"""
优惠券数据库模型
"""

from sqlalchemy import Column, String, Integer, BigInteger, Text, Boolean, DateTime, JSON
from sqlalchemy.sql import func
from course_commerce.core.database import Base


class CouponDB(Base):
    """优惠券数据库表"""

    __tablename__ = "coupons"

    # 主键和基本信息
    coupon_id = Column(String(50), primary_key=True, comment="优惠券ID")
    coupon_code = Column(String(50), nullable=False, unique=True, index=True, comment="优惠券代码(大写)")
    coupon_name = Column(String(200), nullable=False, default="", comment="优惠券名称")
    discount_type = Column(String(20), nullable=False, comment="优惠券类型 percent/flat")

    # 折扣信息
    value = Column(BigInteger, nullable=False, comment="折扣值")
    min_order_amount = Column(BigInteger, nullable=False, default=0, comment="最小订单金额")
    max_discount_amount = Column(BigInteger, nullable=False, default=0, comment="最大折扣金额，0不封顶")

    # 有效期
    valid_from = Column(DateTime(timezone=True), index=True, comment="有效开始时间")
    valid_until = Column(DateTime(timezone=True), index=True, comment="有效结束时间")

    # 使用限制
    usage_limit = Column(Integer, nullable=False, default=0, comment="总使用次数限制，0不限")
    usage_limit_per_user = Column(Integer, nullable=False, default=0, comment="单用户使用次数限制，0不限")
    used_count = Column(Integer, nullable=False, default=0, comment="已使用次数，只增不减")

    # 适用范围
    applicable_courses = Column(JSON, default=list, comment="适用课程ID列表")
    applicable_categories = Column(JSON, default=list, comment="适用课程分类列表")

    # 其他信息
    description = Column(Text, comment="优惠券描述")
    is_active = Column(Boolean, nullable=False, default=True, index=True, comment="是否启用")

    # 时间戳
    created_at = Column(DateTime(timezone=True), server_default=func.now(), comment="创建时间")
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), comment="更新时间")

    __table_args__ = (
        {'comment': '优惠券信息表'}
    )


class CouponRedemptionDB(Base):
    """优惠券使用记录表"""

    __tablename__ = "coupon_redemptions"

    # 主键和关联信息
    redemption_id = Column(String(50), primary_key=True, comment="使用记录ID")
    coupon_id = Column(String(50), nullable=False, index=True, comment="优惠券ID")
    coupon_code = Column(String(50), nullable=False, comment="优惠券代码")
    user_id = Column(String(128), nullable=False, index=True, comment="使用用户ID")
    course_id = Column(String(50), nullable=False, comment="课程ID")
    payment_id = Column(String(50), nullable=False, unique=True, comment="关联支付记录ID，每笔支付最多一条")
    enrollment_id = Column(String(50), comment="关联报名ID")

    # 使用详情
    original_amount = Column(BigInteger, nullable=False, comment="原始金额")
    discount_amount = Column(BigInteger, nullable=False, comment="折扣金额")
    final_amount = Column(BigInteger, nullable=False, comment="最终金额")

    # 使用时间
    redeemed_at = Column(DateTime(timezone=True), server_default=func.now(), comment="使用时间")

    __table_args__ = (
        {'comment': '优惠券使用记录表'}
    )
