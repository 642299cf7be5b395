"""
报名数据库操作层
"""

from typing import List, Optional
from datetime import datetime, timezone

from sqlalchemy import select, update, and_, func, case
from sqlalchemy.ext.asyncio import AsyncSession

from course_commerce.models.enrollment import (
    Enrollment,
    EnrollmentStatus,
    EnrollmentStats,
    PaymentDetails,
    PaymentMethod,
)
from course_commerce.models.database.enrollment_db import EnrollmentDB
from course_commerce.repositories.quarantine import parse_rows


class EnrollmentRepository:
    """报名数据库操作类"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_enrollment_id(self, enrollment_id: str) -> Optional[EnrollmentDB]:
        result = await self.db.execute(
            select(EnrollmentDB)
            .where(EnrollmentDB.enrollment_id == enrollment_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_success(self, user_id: str, course_id: str) -> Optional[EnrollmentDB]:
        """获取用户在课程下的成功报名（最多一条）"""
        result = await self.db.execute(
            select(EnrollmentDB).where(
                and_(
                    EnrollmentDB.user_id == user_id,
                    EnrollmentDB.course_id == course_id,
                    EnrollmentDB.status == EnrollmentStatus.SUCCESS.value
                )
            )
        )
        return result.scalar_one_or_none()

    async def get_latest_pending(self, user_id: str, course_id: str) -> Optional[EnrollmentDB]:
        """获取最近一次仍处于 PENDING 的尝试"""
        result = await self.db.execute(
            select(EnrollmentDB).where(
                and_(
                    EnrollmentDB.user_id == user_id,
                    EnrollmentDB.course_id == course_id,
                    EnrollmentDB.status == EnrollmentStatus.PENDING.value
                )
            ).order_by(EnrollmentDB.attempt.desc()).limit(1)
        )
        return result.scalars().first()

    async def next_attempt(self, user_id: str, course_id: str) -> int:
        result = await self.db.execute(
            select(func.max(EnrollmentDB.attempt)).where(
                and_(
                    EnrollmentDB.user_id == user_id,
                    EnrollmentDB.course_id == course_id
                )
            )
        )
        return (result.scalar() or 0) + 1

    async def create_enrollment(self, enrollment: Enrollment) -> EnrollmentDB:
        """插入一次报名尝试"""
        db_enrollment = EnrollmentDB(
            enrollment_id=enrollment.enrollment_id,
            user_id=enrollment.user_id,
            course_id=enrollment.course_id,
            attempt=enrollment.attempt,
            status=enrollment.status.value,
            paid_amount=enrollment.paid_amount,
            payment_method=enrollment.payment_details.method.value,
            payment_reference=enrollment.payment_details.reference,
            payment_id=enrollment.payment_details.payment_id,
            enrolled_by=enrollment.enrolled_by,
            enrolled_at=enrollment.enrolled_at
        )
        self.db.add(db_enrollment)
        await self.db.flush()
        return db_enrollment

    async def link_payment(self, enrollment_id: str, payment_id: str, paid_amount: int) -> bool:
        """PENDING 尝试关联到新的支付记录"""
        result = await self.db.execute(
            update(EnrollmentDB)
            .where(
                and_(
                    EnrollmentDB.enrollment_id == enrollment_id,
                    EnrollmentDB.status == EnrollmentStatus.PENDING.value
                )
            )
            .values(payment_id=payment_id, paid_amount=paid_amount)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def mark_success(
        self,
        enrollment_id: str,
        paid_amount: int,
        payment_reference: Optional[str],
        payment_id: Optional[str]
    ) -> bool:
        """PENDING -> SUCCESS，受影响行数为0说明记录已被其他流程推进"""
        result = await self.db.execute(
            update(EnrollmentDB)
            .where(
                and_(
                    EnrollmentDB.enrollment_id == enrollment_id,
                    EnrollmentDB.status == EnrollmentStatus.PENDING.value
                )
            )
            .values(
                status=EnrollmentStatus.SUCCESS.value,
                paid_amount=paid_amount,
                payment_reference=payment_reference,
                payment_id=payment_id,
                enrolled_at=datetime.now(timezone.utc)
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def fail_pending_for_payment(self, payment_id: str) -> int:
        """网关明确失败时，把关联的 PENDING 尝试标记为 FAILED"""
        result = await self.db.execute(
            update(EnrollmentDB)
            .where(
                and_(
                    EnrollmentDB.payment_id == payment_id,
                    EnrollmentDB.status == EnrollmentStatus.PENDING.value
                )
            )
            .values(status=EnrollmentStatus.FAILED.value)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def get_user_enrollments(
        self,
        user_id: str,
        status: Optional[EnrollmentStatus] = None
    ) -> List[EnrollmentDB]:
        """获取用户的报名记录"""
        conditions = [EnrollmentDB.user_id == user_id]
        if status is not None:
            conditions.append(EnrollmentDB.status == status.value)

        query = select(EnrollmentDB).where(and_(*conditions)).order_by(
            EnrollmentDB.created_at.desc(), EnrollmentDB.attempt.desc()
        )
        result = await self.db.execute(query)
        return result.scalars().all()

    async def get_stats(self) -> EnrollmentStats:
        """报名统计"""
        success = EnrollmentDB.status == EnrollmentStatus.SUCCESS.value

        def _count(condition):
            return func.coalesce(func.sum(case((condition, 1), else_=0)), 0)

        result = await self.db.execute(
            select(
                _count(success).label("total"),
                _count(and_(success, EnrollmentDB.payment_method == PaymentMethod.ONLINE.value)).label("online"),
                _count(and_(success, EnrollmentDB.payment_method == PaymentMethod.OFFLINE.value)).label("offline"),
                _count(and_(success, EnrollmentDB.payment_method == PaymentMethod.FREE.value)).label("free"),
                _count(EnrollmentDB.status == EnrollmentStatus.PENDING.value).label("pending"),
                _count(EnrollmentDB.status == EnrollmentStatus.FAILED.value).label("failed"),
                func.coalesce(func.sum(case((success, EnrollmentDB.paid_amount), else_=0)), 0).label("revenue")
            )
        )
        row = result.one()
        return EnrollmentStats(
            total=row.total,
            online=row.online,
            offline=row.offline,
            free=row.free,
            pending=row.pending,
            failed=row.failed,
            revenue=row.revenue
        )

    def to_model(self, db_enrollment: EnrollmentDB) -> Enrollment:
        """转换为Pydantic模型"""
        return Enrollment(
            enrollment_id=db_enrollment.enrollment_id,
            user_id=db_enrollment.user_id,
            course_id=db_enrollment.course_id,
            attempt=db_enrollment.attempt,
            status=db_enrollment.status,
            paid_amount=db_enrollment.paid_amount or 0,
            payment_details=PaymentDetails(
                method=db_enrollment.payment_method or PaymentMethod.ONLINE,
                reference=db_enrollment.payment_reference,
                payment_id=db_enrollment.payment_id
            ),
            enrolled_by=db_enrollment.enrolled_by,
            enrolled_at=db_enrollment.enrolled_at,
            created_at=db_enrollment.created_at,
            updated_at=db_enrollment.updated_at
        )

    def to_models(self, db_enrollments: List[EnrollmentDB]) -> List[Enrollment]:
        return parse_rows(db_enrollments, self.to_model, "enrollments")
