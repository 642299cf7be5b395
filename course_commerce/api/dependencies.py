"""
接口依赖：访问令牌校验和服务构建
"""

import logging
from typing import Annotated, Optional

import jwt
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from course_commerce.core.config import settings
from course_commerce.core.database import get_db_session
from course_commerce.core.exceptions import CommerceException, ErrorType
from course_commerce.models.auth import Principal
from course_commerce.repositories.coupon_repository import CouponRepository
from course_commerce.repositories.course_repository import CourseRepository
from course_commerce.services.checkout_service import CheckoutService
from course_commerce.services.coupon_service import CouponService
from course_commerce.services.course_service import CourseService
from course_commerce.services.enrollment_service import EnrollmentReconciler, enrollment_reconciler
from course_commerce.services.progress_service import ProgressService

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


def decode_access_token(raw_token: str) -> dict:
    """校验签名和过期时间，返回令牌声明"""
    return jwt.decode(
        raw_token,
        settings.jwt_secret,
        algorithms=[settings.jwt_algorithm],
        audience=settings.jwt_audience,
        options={"require": ["exp"]}
    )


def require_user(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(bearer_scheme)],
) -> Principal:
    """从 Bearer 令牌解析当前用户"""
    if credentials is None or not credentials.credentials:
        raise CommerceException("请先登录", ErrorType.AUTHENTICATION)
    try:
        claims = decode_access_token(credentials.credentials)
    except jwt.ExpiredSignatureError:
        logger.warning("Expired token rejected")
        raise CommerceException("登录已过期，请重新登录", ErrorType.AUTHENTICATION) from None
    except jwt.InvalidTokenError as e:
        logger.warning("Invalid token rejected: %s", e)
        raise CommerceException("Invalid auth token", ErrorType.AUTHENTICATION) from None

    uid = claims.get("uid") or claims.get("sub")
    if not uid:
        raise CommerceException("Invalid auth token", ErrorType.AUTHENTICATION)
    return Principal(uid=uid, email=claims.get("email"), is_admin=bool(claims.get("admin", False)))


def require_admin(principal: Annotated[Principal, Depends(require_user)]) -> Principal:
    """要求管理员身份"""
    if not principal.is_admin:
        logger.warning("Access denied: user=%s is not admin", principal.uid)
        raise CommerceException("Admin access required", ErrorType.AUTHORIZATION)
    return principal


def get_reconciler() -> EnrollmentReconciler:
    return enrollment_reconciler


def get_coupon_service(db: Annotated[AsyncSession, Depends(get_db_session)]) -> CouponService:
    return CouponService(CouponRepository(db))


def get_course_service(db: Annotated[AsyncSession, Depends(get_db_session)]) -> CourseService:
    return CourseService(CourseRepository(db))


def get_checkout_service(
    db: Annotated[AsyncSession, Depends(get_db_session)],
    reconciler: Annotated[EnrollmentReconciler, Depends(get_reconciler)],
) -> CheckoutService:
    return CheckoutService(db, reconciler=reconciler)


def get_progress_service(db: Annotated[AsyncSession, Depends(get_db_session)]) -> ProgressService:
    return ProgressService(db)


CurrentUser = Annotated[Principal, Depends(require_user)]
AdminUser = Annotated[Principal, Depends(require_admin)]
