"""
课程Repository数据库操作测试
"""

import pytest

from course_commerce.models.course import CourseUpdate
from course_commerce.models.database import CourseDB
from course_commerce.repositories.course_repository import CourseRepository


@pytest.mark.asyncio
class TestCourseRepository:
    """课程Repository数据库操作测试类"""

    async def test_create_and_get_course(self, db_session, sample_course):
        """测试课程写入后模块结构保持不变"""
        course_repo = CourseRepository(db_session)
        await course_repo.create_course(sample_course)
        await db_session.commit()

        db_course = await course_repo.get_by_course_id("C1")
        course = course_repo.to_model(db_course)

        assert course.price == 10000
        assert [m.module_id for m in course.modules] == ["M1", "M2", "M3"]
        assert course.modules[0].videos[0].secure_key == "c1/v1"

    async def test_increment_enrollments(self, db_session, seeded_course):
        course_repo = CourseRepository(db_session)

        assert await course_repo.increment_enrollments("C1") is True
        assert await course_repo.increment_enrollments("C1") is True
        assert await course_repo.increment_enrollments("NOPE") is False
        await db_session.commit()

        db_course = await course_repo.get_by_course_id("C1")
        await db_session.refresh(db_course)
        assert db_course.total_enrollments == 2

    async def test_update_course(self, db_session, seeded_course):
        course_repo = CourseRepository(db_session)

        updated = await course_repo.update_course("C1", CourseUpdate(price=12000, is_published=False))

        assert updated.price == 12000
        assert updated.is_published is False
        assert await course_repo.update_course("NOPE", CourseUpdate(price=1)) is None

    async def test_malformed_rows_are_quarantined(self, db_session, seeded_course):
        """测试格式异常的课程记录被跳过"""
        db_session.add(CourseDB(course_id="BROKEN", title="坏数据", price=-5, modules=[], is_published=True))
        await db_session.commit()
        course_repo = CourseRepository(db_session)

        courses = course_repo.to_models(await course_repo.get_published_courses())

        assert [c.course_id for c in courses] == ["C1"]
