from typing import Annotated, Optional

from fastapi import APIRouter, Depends

from course_commerce.api.dependencies import AdminUser, CurrentUser, get_reconciler
from course_commerce.models.enrollment import EnrollmentStatus, ManualEnrollmentCreate
from course_commerce.services.enrollment_service import EnrollmentReconciler

router = APIRouter(tags=["报名"])


@router.get("/enrollments/me")
async def my_enrollments(
    principal: CurrentUser,
    reconciler: Annotated[EnrollmentReconciler, Depends(get_reconciler)],
    status: Optional[EnrollmentStatus] = None,
):
    """当前用户的报名记录"""
    enrollments = await reconciler.list_user_enrollments(principal.uid, status)
    return {"success": True, "data": [enrollment.model_dump(mode="json") for enrollment in enrollments]}


@router.get("/enrollments/{course_id}/status")
async def enrollment_status(
    course_id: str,
    principal: CurrentUser,
    reconciler: Annotated[EnrollmentReconciler, Depends(get_reconciler)],
):
    """是否已报名某课程"""
    enrollment = await reconciler.check_enrollment(principal.uid, course_id)
    return {
        "success": True,
        "data": {
            "enrolled": enrollment is not None,
            "enrollment": enrollment.model_dump(mode="json") if enrollment else None
        }
    }


@router.post("/admin/enrollments")
async def manual_enrollment(
    request: ManualEnrollmentCreate,
    admin: AdminUser,
    reconciler: Annotated[EnrollmentReconciler, Depends(get_reconciler)],
):
    """管理员手动报名"""
    enrollment = await reconciler.manual_enroll(admin.uid, request)
    return {"success": True, "data": enrollment.model_dump(mode="json")}


@router.get("/admin/enrollments/stats")
async def enrollment_stats(
    admin: AdminUser,
    reconciler: Annotated[EnrollmentReconciler, Depends(get_reconciler)],
):
    """报名统计"""
    stats = await reconciler.get_stats()
    return {"success": True, "data": stats.model_dump()}


@router.get("/admin/enrollments/{user_id}")
async def user_enrollments(
    user_id: str,
    admin: AdminUser,
    reconciler: Annotated[EnrollmentReconciler, Depends(get_reconciler)],
):
    """查看指定用户的报名记录"""
    enrollments = await reconciler.list_user_enrollments(user_id)
    return {"success": True, "data": [enrollment.model_dump(mode="json") for enrollment in enrollments]}
