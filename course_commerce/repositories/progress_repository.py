"""
学习进度数据库操作层
"""

from typing import List, Optional

from sqlalchemy import select, update, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from course_commerce.models.progress import ProgressRecord
from course_commerce.models.database.progress_db import ProgressDB
from course_commerce.repositories.quarantine import parse_rows


class ProgressRepository:
    """学习进度数据库操作类，写入使用版本号做乐观并发控制"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, user_id: str, course_id: str) -> Optional[ProgressDB]:
        result = await self.db.execute(
            select(ProgressDB)
            .where(and_(ProgressDB.user_id == user_id, ProgressDB.course_id == course_id))
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def save(self, record: ProgressRecord) -> bool:
        """
        按 record.version 条件写入，成功后版本号加一
        版本不一致返回 False，由调用方重新读取后重试
        """
        modules = {module_id: module.model_dump(mode="json") for module_id, module in record.modules.items()}

        if record.version == 0:
            existing = await self.get(record.user_id, record.course_id)
            if existing is not None:
                return False
            # 并发首次写入由主键冲突判定，只回滚到保存点
            try:
                async with self.db.begin_nested():
                    self.db.add(ProgressDB(
                        user_id=record.user_id,
                        course_id=record.course_id,
                        modules=modules,
                        completion_percentage=record.completion_percentage,
                        version=1
                    ))
            except IntegrityError:
                return False
            record.version = 1
            return True

        result = await self.db.execute(
            update(ProgressDB)
            .where(
                and_(
                    ProgressDB.user_id == record.user_id,
                    ProgressDB.course_id == record.course_id,
                    ProgressDB.version == record.version
                )
            )
            .values(
                modules=modules,
                completion_percentage=record.completion_percentage,
                version=record.version + 1
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        record.version += 1
        return True

    def to_model(self, db_progress: ProgressDB) -> ProgressRecord:
        """转换为Pydantic模型"""
        return ProgressRecord(
            user_id=db_progress.user_id,
            course_id=db_progress.course_id,
            modules=db_progress.modules or {},
            completion_percentage=db_progress.completion_percentage or 0,
            version=db_progress.version or 0,
            created_at=db_progress.created_at,
            updated_at=db_progress.updated_at
        )

    def to_models(self, db_progress: List[ProgressDB]) -> List[ProgressRecord]:
        return parse_rows(db_progress, self.to_model, "progress")
