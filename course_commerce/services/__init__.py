"""
服务包初始化文件
"""

from .common_cache import SimpleCache, course_cache, coupon_cache
from .coupon_service import CouponService, price_order
from .course_service import CourseService
from .enrollment_service import EnrollmentReconciler, enrollment_reconciler
from .checkout_service import CheckoutService, GatewayCheckout
from .progress_service import ProgressService
from .api_client import ApiClient, ApiResult
from .realtime_sync import RealtimeSyncService, RedisSnapshotSource

__all__ = [
    "SimpleCache",
    "course_cache",
    "coupon_cache",
    "CouponService",
    "price_order",
    "CourseService",
    "EnrollmentReconciler",
    "enrollment_reconciler",
    "CheckoutService",
    "GatewayCheckout",
    "ProgressService",
    "ApiClient",
    "ApiResult",
    "RealtimeSyncService",
    "RedisSnapshotSource"
]
