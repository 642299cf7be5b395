from typing import Annotated

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from course_commerce.api.dependencies import AdminUser, CurrentUser, get_coupon_service, get_course_service
from course_commerce.core.exceptions import CommerceException, ErrorType
from course_commerce.models.coupon import CouponCreate, CouponUpdate
from course_commerce.services.course_service import CourseService
from course_commerce.services.coupon_service import CouponService

router = APIRouter(prefix="/coupons", tags=["优惠券"])


class QuoteRequest(BaseModel):
    code: str = Field(..., min_length=1)
    course_id: str = Field(..., min_length=1)


@router.get("/active")
async def list_active_coupons(service: Annotated[CouponService, Depends(get_coupon_service)]):
    """当前有效的优惠券"""
    coupons = await service.get_active_coupons()
    return {"success": True, "data": [coupon.model_dump(mode="json") for coupon in coupons]}


@router.post("/quote")
async def quote_coupon(
    request: QuoteRequest,
    principal: CurrentUser,
    service: Annotated[CouponService, Depends(get_coupon_service)],
    courses: Annotated[CourseService, Depends(get_course_service)],
):
    """校验优惠券并返回折后价，不占用使用次数"""
    course = await courses.get_course_by_id(request.course_id)
    if not course:
        raise CommerceException("课程不存在", ErrorType.NOT_FOUND)
    pricing = await service.quote(
        request.code,
        user_id=principal.uid,
        course_id=course.course_id,
        order_amount=course.price,
        course_category=course.category
    )
    return {"success": True, "data": pricing.model_dump(mode="json")}


@router.post("")
async def create_coupon(
    coupon_create: CouponCreate,
    admin: AdminUser,
    service: Annotated[CouponService, Depends(get_coupon_service)],
):
    """创建优惠券（管理员）"""
    coupon = await service.create_coupon(coupon_create)
    return {"success": True, "data": coupon.model_dump(mode="json")}


@router.patch("/{code}")
async def update_coupon(
    code: str,
    coupon_update: CouponUpdate,
    admin: AdminUser,
    service: Annotated[CouponService, Depends(get_coupon_service)],
):
    """更新优惠券（管理员）"""
    coupon = await service.update_coupon(code, coupon_update)
    if coupon is None:
        raise CommerceException("优惠券不存在", ErrorType.NOT_FOUND)
    return {"success": True, "data": coupon.model_dump(mode="json")}
