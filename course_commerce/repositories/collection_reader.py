"""
按集合名和等值过滤条件读取文档，供实时同步层加载快照
"""

from typing import Any, Dict, List, Optional

from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from course_commerce.core.exceptions import CommerceException, ErrorType
from course_commerce.models.database import CourseDB, CouponDB, PaymentDB, EnrollmentDB, ProgressDB
from course_commerce.repositories.course_repository import CourseRepository
from course_commerce.repositories.coupon_repository import CouponRepository
from course_commerce.repositories.payment_repository import PaymentRepository
from course_commerce.repositories.enrollment_repository import EnrollmentRepository
from course_commerce.repositories.progress_repository import ProgressRepository


# 集合名 -> (ORM表, 仓库类, 文档ID字段)
COLLECTIONS = {
    "courses": (CourseDB, CourseRepository, "course_id"),
    "coupons": (CouponDB, CouponRepository, "coupon_id"),
    "payments": (PaymentDB, PaymentRepository, "payment_id"),
    "enrollments": (EnrollmentDB, EnrollmentRepository, "enrollment_id"),
    "progress": (ProgressDB, ProgressRepository, None),
}


class CollectionReader:
    """通用集合查询"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def query(self, collection: str, filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """返回满足过滤条件的文档，每个文档带 id 字段"""
        if collection not in COLLECTIONS:
            raise CommerceException(f"未知集合: {collection}", ErrorType.VALIDATION)
        table, repository_cls, id_field = COLLECTIONS[collection]

        conditions = []
        for field, value in (filters or {}).items():
            column = getattr(table, field, None)
            if column is None:
                raise CommerceException(f"集合 {collection} 不支持按 {field} 过滤", ErrorType.VALIDATION)
            conditions.append(column == value)

        query = select(table)
        if conditions:
            query = query.where(and_(*conditions))
        result = await self.db.execute(query)

        repository = repository_cls(self.db)
        documents = []
        for model in repository.to_models(result.scalars().all()):
            doc = model.model_dump(mode="json")
            doc["id"] = doc[id_field] if id_field else f"{doc['user_id']}:{doc['course_id']}"
            documents.append(doc)
        return documents
