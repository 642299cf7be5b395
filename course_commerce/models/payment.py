"""
支付相关数据模型
"""

from datetime import datetime
from typing import Optional, Union
from pydantic import BaseModel, Field
from enum import Enum


class PaymentStatus(str, Enum):
    """支付状态枚举，captured/failed 之后不可再变更"""
    CREATED = "created"  # 已创建，等待网关回调
    CAPTURED = "captured"  # 已扣款
    FAILED = "failed"  # 支付失败


class Payment(BaseModel):
    """支付记录（结账时锁定的报价）"""

    payment_id: str = Field(..., description="支付记录ID")
    user_id: str = Field(..., description="用户ID")
    course_id: str = Field(..., description="课程ID")
    original_amount: int = Field(..., ge=0, description="原价")
    discount_amount: int = Field(default=0, ge=0, description="优惠券折扣")
    amount: int = Field(..., ge=0, description="应付金额")
    currency: str = Field(default="INR", description="币种")
    coupon_code: Optional[str] = Field(None, description="使用的优惠券代码")
    gateway_order_id: str = Field(..., description="网关订单号")
    gateway_payment_id: Optional[str] = Field(None, description="网关支付号")
    gateway_signature: Optional[str] = Field(None, description="网关签名")
    status: PaymentStatus = Field(default=PaymentStatus.CREATED, description="支付状态")
    failure_code: Optional[str] = None
    failure_description: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    captured_at: Optional[datetime] = None

    @property
    def is_final(self) -> bool:
        return self.status in (PaymentStatus.CAPTURED, PaymentStatus.FAILED)


class GatewaySuccess(BaseModel):
    """网关成功回调"""

    payment_id: str = Field(..., min_length=1, description="网关支付号")
    order_id: str = Field(..., min_length=1, description="网关订单号")
    signature: str = Field(default="", description="网关签名")
    amount: Optional[int] = Field(None, ge=0, description="网关回报的金额（可选）")


class GatewayFailure(BaseModel):
    """网关失败回调"""

    order_id: Optional[str] = Field(None, description="网关订单号")
    code: str = Field(..., description="失败错误码")
    description: str = Field(default="", description="失败描述")


class CheckoutAbandoned(BaseModel):
    """用户关闭支付窗口，未产生回调"""

    order_id: Optional[str] = None


CheckoutOutcome = Union[GatewaySuccess, GatewayFailure, CheckoutAbandoned]


class CheckoutQuote(BaseModel):
    """结账报价（已锁定）"""

    payment_id: str
    gateway_order_id: str
    course_id: str
    course_title: str
    original_amount: int
    discount_amount: int
    amount: int
    currency: str
    coupon_code: Optional[str] = None
    key_id: Optional[str] = None
