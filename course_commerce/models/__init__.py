"""
数据模型包初始化文件
"""

from .course import Course, CourseUpdate, Module, Video, UnlockPolicy
from .coupon import (
    Coupon,
    CouponCreate,
    CouponUpdate,
    CouponPricing,
    CouponRejection,
    CouponRedemption,
    CouponType
)
from .payment import (
    Payment,
    PaymentStatus,
    GatewaySuccess,
    GatewayFailure,
    CheckoutAbandoned,
    CheckoutQuote
)
from .enrollment import (
    Enrollment,
    EnrollmentStatus,
    EnrollmentStats,
    ManualEnrollmentCreate,
    PaymentDetails,
    PaymentMethod,
    ReconcileResult
)
from .progress import (
    ProgressRecord,
    ModuleProgress,
    VideoProgress,
    WatchEvent,
    WatchResult,
    WatchRejection,
    CourseProgressView,
    VideoAccess
)
from .auth import Principal

__all__ = [
    "Course",
    "CourseUpdate",
    "Module",
    "Video",
    "UnlockPolicy",
    "Coupon",
    "CouponCreate",
    "CouponUpdate",
    "CouponPricing",
    "CouponRejection",
    "CouponRedemption",
    "CouponType",
    "Payment",
    "PaymentStatus",
    "GatewaySuccess",
    "GatewayFailure",
    "CheckoutAbandoned",
    "CheckoutQuote",
    "Enrollment",
    "EnrollmentStatus",
    "EnrollmentStats",
    "ManualEnrollmentCreate",
    "PaymentDetails",
    "PaymentMethod",
    "ReconcileResult",
    "ProgressRecord",
    "ModuleProgress",
    "VideoProgress",
    "WatchEvent",
    "WatchResult",
    "WatchRejection",
    "CourseProgressView",
    "VideoAccess",
    "Principal"
]
