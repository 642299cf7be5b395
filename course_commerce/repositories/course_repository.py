"""
课程数据库操作层
"""

from typing import List, Optional, Dict, Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from course_commerce.models.course import Course, CourseUpdate
from course_commerce.models.database.course_db import CourseDB
from course_commerce.repositories.quarantine import parse_rows


class CourseRepository:
    """课程数据库操作类"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_course_id(self, course_id: str) -> Optional[CourseDB]:
        """根据课程ID获取课程"""
        result = await self.db.execute(
            select(CourseDB).where(CourseDB.course_id == course_id)
        )
        return result.scalar_one_or_none()

    async def get_published_courses(self, limit: int = 100, offset: int = 0) -> List[CourseDB]:
        """获取已发布课程"""
        query = select(CourseDB).where(
            CourseDB.is_published.is_(True)
        ).order_by(CourseDB.created_at.desc(), CourseDB.course_id).limit(limit).offset(offset)

        result = await self.db.execute(query)
        return result.scalars().all()

    async def create_course(self, course: Course) -> CourseDB:
        """创建课程"""
        db_course = CourseDB(
            course_id=course.course_id,
            title=course.title,
            category=course.category,
            price=course.price,
            currency=course.currency,
            is_published=course.is_published,
            total_enrollments=course.total_enrollments,
            modules=[module.model_dump(mode="json") for module in course.modules]
        )
        self.db.add(db_course)
        await self.db.flush()
        return db_course

    async def update_course(self, course_id: str, course_update: CourseUpdate) -> Optional[CourseDB]:
        """更新课程（管理员编辑），不涉及报名人数"""
        db_course = await self.get_by_course_id(course_id)
        if not db_course:
            return None

        update_data: Dict[str, Any] = course_update.model_dump(exclude_unset=True, exclude={"modules"})
        for field, value in update_data.items():
            setattr(db_course, field, value)
        if course_update.modules is not None:
            db_course.modules = [module.model_dump(mode="json") for module in course_update.modules]

        await self.db.flush()
        await self.db.refresh(db_course)
        return db_course

    async def increment_enrollments(self, course_id: str) -> bool:
        """报名人数原子加一"""
        result = await self.db.execute(
            update(CourseDB)
            .where(CourseDB.course_id == course_id)
            .values(total_enrollments=CourseDB.total_enrollments + 1)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    def to_model(self, db_course: CourseDB) -> Course:
        """转换为Pydantic模型"""
        return Course(
            course_id=db_course.course_id,
            title=db_course.title,
            category=db_course.category,
            price=db_course.price,
            currency=db_course.currency,
            is_published=db_course.is_published,
            total_enrollments=db_course.total_enrollments or 0,
            modules=db_course.modules or [],
            created_at=db_course.created_at,
            updated_at=db_course.updated_at
        )

    def to_models(self, db_courses: List[CourseDB]) -> List[Course]:
        return parse_rows(db_courses, self.to_model, "courses")
