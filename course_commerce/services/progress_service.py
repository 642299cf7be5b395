"""
学习进度服务

视频完成度 = round(watched / total * 100)，限制在 [0, 100]，达到阈值即视为完成；
模块完成度 = 已完成视频数 / 视频总数；课程完成度 = 各模块完成度的简单平均。
模块解锁状态不落库，每次根据上一模块是否完成推导。
"""

import hashlib
import hmac
import logging
from functools import partial
from datetime import datetime, timedelta, timezone
from typing import List, Optional
from urllib.parse import quote

from sqlalchemy.ext.asyncio import AsyncSession

from course_commerce.core.config import settings
from course_commerce.core.exceptions import CommerceException, ErrorType
from course_commerce.core.redis import ChangeNotifier, change_notifier
from course_commerce.models.course import Course, Module, UnlockPolicy
from course_commerce.models.progress import (
    CourseProgressView,
    ModuleProgress,
    ModuleState,
    ProgressRecord,
    VideoAccess,
    VideoProgress,
    WatchEvent,
    WatchRejection,
    WatchResult,
)
from course_commerce.repositories.course_repository import CourseRepository
from course_commerce.repositories.enrollment_repository import EnrollmentRepository
from course_commerce.repositories.progress_repository import ProgressRepository
from course_commerce.services.course_service import CourseService
from course_commerce.services.realtime_sync import RealtimeSyncService, realtime_sync

logger = logging.getLogger(__name__)

MAX_SAVE_ATTEMPTS = 3


class _ProgressConflict(Exception):
    """进度记录版本已变化"""


def video_completion(watched_seconds: int, total_seconds: int) -> int:
    """视频完成百分比"""
    if total_seconds <= 0:
        return 0
    percentage = int(watched_seconds / total_seconds * 100 + 0.5)
    return max(0, min(100, percentage))


def is_video_complete(completion_percentage: int, threshold: Optional[int] = None) -> bool:
    return completion_percentage >= (settings.video_complete_threshold if threshold is None else threshold)


def module_completion(module: Module, progress: Optional[ProgressRecord], threshold: Optional[int] = None) -> int:
    """模块完成百分比；没有视频的模块视为已完成"""
    if not module.videos:
        return 100
    if progress is None:
        return 0
    completed = 0
    for video in module.videos:
        video_progress = progress.video(module.module_id, video.video_id)
        if video_progress and is_video_complete(video_progress.completion_percentage, threshold):
            completed += 1
    if completed == len(module.videos):
        return 100
    return min(99, int(completed / len(module.videos) * 100 + 0.5))


def is_module_complete(module: Module, progress: Optional[ProgressRecord], threshold: Optional[int] = None) -> bool:
    return module_completion(module, progress, threshold) == 100


def course_completion(course: Course, progress: Optional[ProgressRecord], threshold: Optional[int] = None) -> int:
    """课程完成百分比，各模块简单平均"""
    if not course.modules:
        return 0
    total = sum(module_completion(module, progress, threshold) for module in course.modules)
    return int(total / len(course.modules) + 0.5)


def is_module_unlocked(
    course: Course,
    index: int,
    progress: Optional[ProgressRecord],
    threshold: Optional[int] = None
) -> bool:
    """第一个模块始终解锁；completePrevious 模块在上一模块完成后解锁"""
    if index <= 0:
        return True
    if index >= len(course.modules):
        return False
    module = course.modules[index]
    if module.unlock_policy == UnlockPolicy.NONE:
        return True
    return is_module_complete(course.modules[index - 1], progress, threshold)


def module_states(course: Course, progress: Optional[ProgressRecord], threshold: Optional[int] = None) -> List[ModuleState]:
    return [
        ModuleState(
            module_id=module.module_id,
            position=module.position,
            title=module.title,
            completion_percentage=module_completion(module, progress, threshold),
            is_complete=is_module_complete(module, progress, threshold),
            is_unlocked=is_module_unlocked(course, index, progress, threshold)
        )
        for index, module in enumerate(course.modules)
    ]


def sign_video_url(secure_key: str, expires_at: datetime, secret: Optional[str] = None) -> str:
    """生成带过期时间的视频签名地址"""
    expires = int(expires_at.timestamp())
    key = (secret or settings.video_url_secret).encode("utf-8")
    signature = hmac.new(key, f"{secure_key}:{expires}".encode("utf-8"), hashlib.sha256).hexdigest()
    return f"{settings.video_url_base.rstrip('/')}/{quote(secure_key)}?expires={expires}&signature={signature}"


class ProgressService:
    """学习进度业务服务"""

    def __init__(
        self,
        db: AsyncSession,
        notifier: Optional[ChangeNotifier] = None,
        threshold: Optional[int] = None,
        course_service: Optional[CourseService] = None,
        sync: Optional[RealtimeSyncService] = None
    ):
        self.db = db
        self.course_service = course_service or CourseService(CourseRepository(db))
        self.enrollment_repo = EnrollmentRepository(db)
        self.progress_repo = ProgressRepository(db)
        self.notifier = notifier or change_notifier
        self.sync = sync or realtime_sync
        self.threshold = settings.video_complete_threshold if threshold is None else threshold

    async def _load_course(self, course_id: str) -> Course:
        course = await self.course_service.get_course_by_id(course_id)
        if not course:
            raise CommerceException("课程不存在", ErrorType.NOT_FOUND, {"course_id": course_id})
        return course

    async def _load_record(self, user_id: str, course_id: str) -> ProgressRecord:
        db_progress = await self.progress_repo.get(user_id, course_id)
        if db_progress is None:
            return ProgressRecord(user_id=user_id, course_id=course_id)
        return self.progress_repo.to_model(db_progress)

    async def _is_enrolled(self, user_id: str, course_id: str) -> bool:
        return await self.enrollment_repo.get_success(user_id, course_id) is not None

    async def record_watch(self, user_id: str, event: WatchEvent, now: Optional[datetime] = None) -> WatchResult:
        """记录一次观看进度；被拒绝的事件返回原因，不抛异常"""
        if event.total_seconds <= 0:
            return WatchResult(recorded=False, reason=WatchRejection.INVALID_DURATION)

        course = await self._load_course(event.course_id)
        if not await self._is_enrolled(user_id, event.course_id):
            return WatchResult(recorded=False, reason=WatchRejection.NOT_ENROLLED)

        index = course.module_index(event.module_id)
        if index < 0:
            return WatchResult(recorded=False, reason=WatchRejection.UNKNOWN_MODULE)
        module = course.modules[index]
        if module.get_video(event.video_id) is None:
            return WatchResult(recorded=False, reason=WatchRejection.UNKNOWN_VIDEO)

        now = now or datetime.now(timezone.utc)
        for _ in range(MAX_SAVE_ATTEMPTS):
            record = await self._load_record(user_id, event.course_id)

            if not is_module_unlocked(course, index, record, self.threshold):
                return WatchResult(
                    recorded=False,
                    reason=WatchRejection.MODULE_LOCKED,
                    course_completion=record.completion_percentage
                )

            previous = record.video(event.module_id, event.video_id)
            if previous and event.watched_seconds < previous.watched_seconds:
                return WatchResult(
                    recorded=False,
                    reason=WatchRejection.REGRESSION,
                    video=previous,
                    video_complete=is_video_complete(previous.completion_percentage, self.threshold),
                    module_complete=is_module_complete(module, record, self.threshold),
                    course_completion=record.completion_percentage
                )

            video_progress = self._apply_watch(previous, event, now)
            module_progress = record.modules.setdefault(event.module_id, ModuleProgress())
            module_progress.videos[event.video_id] = video_progress
            module_progress.completion_percentage = module_completion(module, record, self.threshold)
            if module_progress.completion_percentage == 100 and module_progress.completed_at is None:
                module_progress.completed_at = now
            record.completion_percentage = course_completion(course, record, self.threshold)

            patch = record.model_dump(mode="json", include={"modules", "completion_percentage"})
            try:
                await self.sync.update_progress(user_id, event.course_id, patch, partial(self._save, record))
            except _ProgressConflict:
                logger.info(f"进度写入版本冲突，重新读取: user={user_id} course={event.course_id}")
                continue

            await self.notifier.notify("progress", f"{user_id}:{event.course_id}")
            return WatchResult(
                recorded=True,
                video=video_progress,
                video_complete=is_video_complete(video_progress.completion_percentage, self.threshold),
                module_complete=module_progress.completion_percentage == 100,
                course_completion=record.completion_percentage
            )

        raise CommerceException("学习进度保存冲突，请稍后重试", ErrorType.SERVER)

    async def _save(self, record: ProgressRecord) -> None:
        if not await self.progress_repo.save(record):
            raise _ProgressConflict()
        await self.db.commit()

    def _apply_watch(self, previous: Optional[VideoProgress], event: WatchEvent, now: datetime) -> VideoProgress:
        """合并观看进度：秒数和完成度只增不减，完成时间只记录一次"""
        percentage = video_completion(event.watched_seconds, event.total_seconds)
        completed_at = previous.completed_at if previous else None
        if previous:
            percentage = max(percentage, previous.completion_percentage)
        if completed_at is None and is_video_complete(percentage, self.threshold):
            completed_at = now
        return VideoProgress(
            watched_seconds=event.watched_seconds,
            total_seconds=event.total_seconds,
            completion_percentage=percentage,
            completed_at=completed_at
        )

    async def get_course_progress(self, user_id: str, course_id: str) -> CourseProgressView:
        """课程进度视图，包括每个模块的完成度和解锁状态"""
        course = await self._load_course(course_id)
        db_progress = await self.progress_repo.get(user_id, course_id)
        record = self.progress_repo.to_model(db_progress) if db_progress else None
        return CourseProgressView(
            course_id=course_id,
            completion_percentage=course_completion(course, record, self.threshold),
            modules=module_states(course, record, self.threshold),
            record=record
        )

    async def resolve_video_access(self, user_id: str, course_id: str, video_id: str) -> VideoAccess:
        """为已报名用户生成限时视频地址；试看视频无需报名"""
        course = await self._load_course(course_id)
        video = course.find_video(video_id)
        if video is None or not video.secure_key:
            raise CommerceException("视频不存在", ErrorType.NOT_FOUND, {"video_id": video_id})

        if not video.is_preview and not await self._is_enrolled(user_id, course_id):
            logger.warning(f"未报名用户请求视频: user={user_id} course={course_id} video={video_id}")
            raise CommerceException("请先报名该课程", ErrorType.AUTHORIZATION, {"course_id": course_id})

        expires_at = datetime.now(timezone.utc) + timedelta(seconds=settings.video_url_ttl_seconds)
        return VideoAccess(video_id=video_id, url=sign_video_url(video.secure_key, expires_at), expires_at=expires_at)
