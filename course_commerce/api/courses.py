from typing import Annotated

from fastapi import APIRouter, Depends, Query

from course_commerce.api.dependencies import AdminUser, get_course_service
from course_commerce.core.exceptions import CommerceException, ErrorType
from course_commerce.models.course import CourseUpdate
from course_commerce.services.course_service import CourseService

router = APIRouter(tags=["课程"])


@router.get("/courses")
async def list_published_courses(
    service: Annotated[CourseService, Depends(get_course_service)],
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
):
    """已发布课程目录"""
    courses = await service.get_published_courses(limit=limit, offset=offset)
    return {"success": True, "data": [course.model_dump(mode="json") for course in courses]}


@router.get("/courses/{course_id}")
async def get_course(course_id: str, service: Annotated[CourseService, Depends(get_course_service)]):
    course = await service.get_course_by_id(course_id)
    if course is None or not course.is_published:
        raise CommerceException("课程不存在", ErrorType.NOT_FOUND, {"course_id": course_id})
    return {"success": True, "data": course.model_dump(mode="json")}


@router.patch("/admin/courses/{course_id}")
async def update_course(
    course_id: str,
    course_update: CourseUpdate,
    admin: AdminUser,
    service: Annotated[CourseService, Depends(get_course_service)],
):
    """更新课程（管理员），提交后清理目录缓存并通知订阅者"""
    course = await service.update_course(course_id, course_update)
    if course is None:
        raise CommerceException("课程不存在", ErrorType.NOT_FOUND, {"course_id": course_id})
    return {"success": True, "data": course.model_dump(mode="json")}
