"""
优惠券相关数据模型
"""

from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, Field, field_validator, model_validator
from enum import Enum


class CouponType(str, Enum):
    """优惠券类型枚举"""
    PERCENT = "percent"  # 百分比折扣券
    FLAT = "flat"  # 固定金额折扣券


class CouponRejection(str, Enum):
    """优惠券校验失败原因"""
    NOT_FOUND = "NOT_FOUND"
    EXPIRED = "EXPIRED"
    INACTIVE = "INACTIVE"
    BELOW_MINIMUM = "BELOW_MINIMUM"
    GLOBAL_LIMIT_REACHED = "GLOBAL_LIMIT_REACHED"
    PER_USER_LIMIT_REACHED = "PER_USER_LIMIT_REACHED"
    NOT_APPLICABLE = "NOT_APPLICABLE"


REJECTION_MESSAGES = {
    CouponRejection.NOT_FOUND: "优惠券不存在",
    CouponRejection.EXPIRED: "优惠券不在有效期内",
    CouponRejection.INACTIVE: "优惠券已停用",
    CouponRejection.BELOW_MINIMUM: "订单金额不满足优惠券使用要求",
    CouponRejection.GLOBAL_LIMIT_REACHED: "优惠券使用次数已达上限",
    CouponRejection.PER_USER_LIMIT_REACHED: "您已达到该优惠券的使用上限",
    CouponRejection.NOT_APPLICABLE: "该优惠券不适用于当前课程",
}


def normalize_code(code: str) -> str:
    """优惠券代码大小写不敏感，统一存为大写"""
    return (code or "").strip().upper()


class Coupon(BaseModel):
    """优惠券基础模型"""

    coupon_id: str = Field(..., description="优惠券ID")
    code: str = Field(..., min_length=1, max_length=50, description="优惠券代码")
    name: str = Field(default="", description="优惠券名称")
    discount_type: CouponType = Field(..., description="优惠券类型")
    value: int = Field(..., ge=0, description="折扣值：百分比券为百分数，固定券为最小货币单位金额")
    min_order_amount: int = Field(default=0, ge=0, description="最小订单金额")
    max_discount_amount: int = Field(default=0, ge=0, description="最大折扣金额，0表示不封顶")
    usage_limit: int = Field(default=0, ge=0, description="总使用次数限制，0表示不限")
    usage_limit_per_user: int = Field(default=0, ge=0, description="单用户使用次数限制，0表示不限")
    used_count: int = Field(default=0, ge=0, description="已使用次数")
    valid_from: Optional[datetime] = Field(None, description="有效开始时间")
    valid_until: Optional[datetime] = Field(None, description="有效结束时间")
    is_active: bool = Field(default=True, description="是否启用")
    applicable_courses: List[str] = Field(default_factory=list, description="适用课程ID列表")
    applicable_categories: List[str] = Field(default_factory=list, description="适用课程分类列表")
    description: Optional[str] = Field(None, max_length=500, description="优惠券描述")
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("code")
    @classmethod
    def _upper_code(cls, v):
        return normalize_code(v)

    @model_validator(mode="after")
    def _check_percent(self):
        if self.discount_type == CouponType.PERCENT and self.value > 100:
            raise ValueError("百分比折扣值不能超过100")
        return self

    def is_applicable_to(self, course_id: str, category: Optional[str] = None) -> bool:
        """检查是否适用于指定课程"""
        if not self.applicable_courses and not self.applicable_categories:
            return True  # 无限制则适用于所有课程
        if course_id in self.applicable_courses:
            return True
        return category is not None and category in self.applicable_categories


class CouponCreate(BaseModel):
    """创建优惠券模型"""

    code: str = Field(..., min_length=1, max_length=50)
    name: str = Field(default="")
    discount_type: CouponType = Field(...)
    value: int = Field(..., ge=0)
    min_order_amount: int = Field(default=0, ge=0)
    max_discount_amount: int = Field(default=0, ge=0)
    usage_limit: int = Field(default=0, ge=0)
    usage_limit_per_user: int = Field(default=0, ge=0)
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    is_active: bool = True
    applicable_courses: List[str] = Field(default_factory=list)
    applicable_categories: List[str] = Field(default_factory=list)
    description: Optional[str] = Field(None, max_length=500)

    @field_validator("code")
    @classmethod
    def _upper_code(cls, v):
        return normalize_code(v)

    @model_validator(mode="after")
    def _check_window(self):
        if self.valid_from and self.valid_until and self.valid_until <= self.valid_from:
            raise ValueError("结束时间必须晚于开始时间")
        if self.discount_type == CouponType.PERCENT and self.value > 100:
            raise ValueError("百分比折扣值不能超过100")
        return self


class CouponUpdate(BaseModel):
    """更新优惠券模型，不允许修改已使用次数"""

    name: Optional[str] = None
    value: Optional[int] = Field(None, ge=0)
    min_order_amount: Optional[int] = Field(None, ge=0)
    max_discount_amount: Optional[int] = Field(None, ge=0)
    usage_limit: Optional[int] = Field(None, ge=0)
    usage_limit_per_user: Optional[int] = Field(None, ge=0)
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    is_active: Optional[bool] = None
    applicable_courses: Optional[List[str]] = None
    applicable_categories: Optional[List[str]] = None
    description: Optional[str] = Field(None, max_length=500)


class CouponPricing(BaseModel):
    """优惠券定价结果"""

    valid: bool = Field(..., description="是否可用")
    discount: int = Field(default=0, ge=0, description="折扣金额")
    final_amount: int = Field(..., ge=0, description="折后金额")
    order_amount: int = Field(..., ge=0, description="原始订单金额")
    reason: Optional[CouponRejection] = Field(None, description="不可用原因")
    message: Optional[str] = Field(None, description="不可用原因说明")
    coupon_code: Optional[str] = Field(None, description="优惠券代码")

    @classmethod
    def rejected(cls, reason: CouponRejection, order_amount: int, coupon_code: Optional[str] = None) -> "CouponPricing":
        return cls(
            valid=False,
            discount=0,
            final_amount=order_amount,
            order_amount=order_amount,
            reason=reason,
            message=REJECTION_MESSAGES[reason],
            coupon_code=coupon_code
        )


class CouponRedemption(BaseModel):
    """优惠券使用记录"""

    redemption_id: str = Field(..., description="使用记录ID")
    coupon_id: str = Field(..., description="优惠券ID")
    coupon_code: str = Field(..., description="优惠券代码")
    user_id: str = Field(..., description="使用用户ID")
    course_id: str = Field(..., description="课程ID")
    payment_id: str = Field(..., description="关联支付记录ID")
    enrollment_id: Optional[str] = Field(None, description="关联报名ID")
    original_amount: int = Field(..., ge=0, description="原始金额")
    discount_amount: int = Field(..., ge=0, description="折扣金额")
    final_amount: int = Field(..., ge=0, description="最终金额")
    redeemed_at: Optional[datetime] = None
