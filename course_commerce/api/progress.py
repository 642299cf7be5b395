from typing import Annotated

from fastapi import APIRouter, Depends

from course_commerce.api.dependencies import CurrentUser, get_progress_service
from course_commerce.models.progress import WatchEvent
from course_commerce.services.progress_service import ProgressService

router = APIRouter(prefix="/progress", tags=["学习进度"])


@router.post("/watch")
async def record_watch(
    event: WatchEvent,
    principal: CurrentUser,
    service: Annotated[ProgressService, Depends(get_progress_service)],
):
    """上报观看进度；未记录时 data.reason 给出原因"""
    result = await service.record_watch(principal.uid, event)
    return {"success": True, "data": result.model_dump(mode="json")}


@router.get("/{course_id}")
async def course_progress(
    course_id: str,
    principal: CurrentUser,
    service: Annotated[ProgressService, Depends(get_progress_service)],
):
    """课程进度及模块解锁状态"""
    view = await service.get_course_progress(principal.uid, course_id)
    return {"success": True, "data": view.model_dump(mode="json")}


@router.get("/{course_id}/videos/{video_id}/access")
async def video_access(
    course_id: str,
    video_id: str,
    principal: CurrentUser,
    service: Annotated[ProgressService, Depends(get_progress_service)],
):
    """获取限时视频地址"""
    access = await service.resolve_video_access(principal.uid, course_id, video_id)
    return {"success": True, "data": access.model_dump(mode="json")}
