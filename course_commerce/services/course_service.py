"""
课程业务服务层
课程目录只读为主，管理员编辑后清缓存并发布变更通知
"""

import logging
from typing import List, Optional

from course_commerce.core.redis import ChangeNotifier, change_notifier
from course_commerce.models.course import Course, CourseUpdate
from course_commerce.repositories.course_repository import CourseRepository
from course_commerce.services.common_cache import SimpleCache, course_cache
from course_commerce.services.realtime_sync import RealtimeSyncService, realtime_sync

logger = logging.getLogger(__name__)


class CourseService:
    """课程业务服务"""

    def __init__(
        self,
        course_repo: CourseRepository,
        cache: Optional[SimpleCache] = None,
        notifier: Optional[ChangeNotifier] = None,
        sync: Optional[RealtimeSyncService] = None
    ):
        self.course_repo = course_repo
        self.cache = cache or course_cache
        self.notifier = notifier or change_notifier
        self.sync = sync or realtime_sync
        self.cache_ttl = 3600  # 1小时缓存

    async def get_course_by_id(self, course_id: str, use_cache: bool = True) -> Optional[Course]:
        """获取课程详情"""
        cache_key = f"detail:{course_id}"

        if use_cache:
            cached_course = await self.cache.get(cache_key)
            if cached_course:
                return Course(**cached_course)

        db_course = await self.course_repo.get_by_course_id(course_id)
        if not db_course:
            return None

        course = self.course_repo.to_model(db_course)

        if use_cache:
            await self.cache.set(cache_key, course.model_dump(mode="json"), ttl=self.cache_ttl)

        return course

    async def get_published_courses(self, limit: int = 100, offset: int = 0, use_cache: bool = True) -> List[Course]:
        """获取已发布课程"""
        cache_key = f"published:{limit}:{offset}"

        if use_cache:
            cached_courses = await self.cache.get(cache_key)
            if cached_courses:
                return [Course(**course_data) for course_data in cached_courses]

        db_courses = await self.course_repo.get_published_courses(limit=limit, offset=offset)
        courses = self.course_repo.to_models(db_courses)

        if use_cache:
            await self.cache.set(
                cache_key,
                [course.model_dump(mode="json") for course in courses],
                ttl=self.cache_ttl
            )

        return courses

    async def update_course(self, course_id: str, course_update: CourseUpdate) -> Optional[Course]:
        """更新课程（管理员），本地订阅先乐观更新"""

        async def _write():
            db_course = await self.course_repo.update_course(course_id, course_update)
            if db_course:
                # 通知订阅者之前先提交
                await self.course_repo.db.commit()
            return db_course

        patch = course_update.model_dump(mode="json", exclude_unset=True)
        db_course = await self.sync.update_course(course_id, patch, _write)
        if not db_course:
            return None

        await self.cache.delete(f"detail:{course_id}")
        await self.cache.delete_pattern("published:*")
        await self.notifier.notify("courses", course_id)
        logger.info(f"课程已更新: {course_id}")
        return self.course_repo.to_model(db_course)
