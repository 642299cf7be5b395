"""
仓库包初始化文件 - 数据库访问层
"""

from .course_repository import CourseRepository
from .coupon_repository import CouponRepository
from .payment_repository import PaymentRepository
from .enrollment_repository import EnrollmentRepository
from .progress_repository import ProgressRepository
from .collection_reader import CollectionReader

__all__ = [
    "CourseRepository",
    "CouponRepository",
    "PaymentRepository",
    "EnrollmentRepository",
    "ProgressRepository",
    "CollectionReader"
]
