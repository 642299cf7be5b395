"""
数据库模型包初始化文件
"""

from .course_db import CourseDB
from .coupon_db import CouponDB, CouponRedemptionDB
from .payment_db import PaymentDB
from .enrollment_db import EnrollmentDB
from .progress_db import ProgressDB

__all__ = [
    "CourseDB",
    "CouponDB",
    "CouponRedemptionDB",
    "PaymentDB",
    "EnrollmentDB",
    "ProgressDB"
]
