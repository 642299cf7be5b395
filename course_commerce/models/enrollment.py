"""
报名相关数据模型
"""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field
from enum import Enum

from course_commerce.core.exceptions import ErrorType


class EnrollmentStatus(str, Enum):
    """报名状态枚举，SUCCESS 为终态"""
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class PaymentMethod(str, Enum):
    """报名方式"""
    ONLINE = "online"  # 网关在线支付
    OFFLINE = "offline"  # 管理员登记的线下支付
    FREE = "free"  # 免费开通


class PaymentDetails(BaseModel):
    """报名关联的支付信息"""

    method: PaymentMethod = Field(default=PaymentMethod.ONLINE, description="支付方式")
    reference: Optional[str] = Field(None, description="支付流水号")
    payment_id: Optional[str] = Field(None, description="关联支付记录ID")


class Enrollment(BaseModel):
    """报名记录"""

    enrollment_id: str = Field(..., description="报名ID")
    user_id: str = Field(..., description="用户ID")
    course_id: str = Field(..., description="课程ID")
    attempt: int = Field(default=1, ge=1, description="第几次尝试")
    status: EnrollmentStatus = Field(..., description="报名状态")
    paid_amount: int = Field(default=0, ge=0, description="实付金额")
    payment_details: PaymentDetails = Field(default_factory=PaymentDetails)
    enrolled_by: Optional[str] = Field(None, description="手动报名的管理员ID")
    enrolled_at: Optional[datetime] = Field(None, description="报名成功时间")
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status == EnrollmentStatus.SUCCESS


class ManualEnrollmentCreate(BaseModel):
    """管理员手动报名"""

    user_id: str = Field(..., min_length=1)
    course_id: str = Field(..., min_length=1)
    method: PaymentMethod = Field(default=PaymentMethod.OFFLINE)
    paid_amount: int = Field(default=0, ge=0)
    reference: Optional[str] = None


class ReconcileResult(BaseModel):
    """对账结果：成功返回报名记录，失败返回错误类型和说明"""

    success: bool
    enrollment: Optional[Enrollment] = None
    already_enrolled: bool = False
    error_type: Optional[ErrorType] = None
    message: Optional[str] = None
    attempts: int = 0


class EnrollmentStats(BaseModel):
    """报名统计"""

    total: int = 0
    online: int = 0
    offline: int = 0
    free: int = 0
    pending: int = 0
    failed: int = 0
    revenue: int = 0
