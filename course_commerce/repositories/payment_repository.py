"""
支付记录数据库操作层
"""

from typing import List, Optional
from datetime import datetime, timezone

from sqlalchemy import select, update, and_
from sqlalchemy.ext.asyncio import AsyncSession

from course_commerce.models.payment import Payment, PaymentStatus
from course_commerce.models.database.payment_db import PaymentDB
from course_commerce.repositories.quarantine import parse_rows


class PaymentRepository:
    """支付记录数据库操作类，captured/failed 之后只读"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_payment_id(self, payment_id: str) -> Optional[PaymentDB]:
        result = await self.db.execute(
            select(PaymentDB).where(PaymentDB.payment_id == payment_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_by_gateway_order_id(self, gateway_order_id: str) -> Optional[PaymentDB]:
        """根据网关订单号获取锁定的报价"""
        result = await self.db.execute(
            select(PaymentDB).where(PaymentDB.gateway_order_id == gateway_order_id)
        )
        return result.scalar_one_or_none()

    async def create_payment(self, payment: Payment) -> PaymentDB:
        """创建支付记录"""
        db_payment = PaymentDB(
            payment_id=payment.payment_id,
            user_id=payment.user_id,
            course_id=payment.course_id,
            original_amount=payment.original_amount,
            discount_amount=payment.discount_amount,
            amount=payment.amount,
            currency=payment.currency,
            coupon_code=payment.coupon_code,
            gateway_order_id=payment.gateway_order_id,
            gateway_payment_id=payment.gateway_payment_id,
            gateway_signature=payment.gateway_signature,
            status=payment.status.value
        )
        self.db.add(db_payment)
        await self.db.flush()
        return db_payment

    async def record_gateway_ids(self, payment_id: str, gateway_payment_id: str, signature: Optional[str]) -> bool:
        """记录网关回调的支付号和签名，仅限 created 状态"""
        result = await self.db.execute(
            update(PaymentDB)
            .where(
                and_(
                    PaymentDB.payment_id == payment_id,
                    PaymentDB.status == PaymentStatus.CREATED.value
                )
            )
            .values(gateway_payment_id=gateway_payment_id, gateway_signature=signature)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def mark_captured(self, payment_id: str) -> bool:
        """created -> captured"""
        result = await self.db.execute(
            update(PaymentDB)
            .where(
                and_(
                    PaymentDB.payment_id == payment_id,
                    PaymentDB.status == PaymentStatus.CREATED.value
                )
            )
            .values(status=PaymentStatus.CAPTURED.value, captured_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def mark_failed(self, payment_id: str, failure_code: str, failure_description: str) -> bool:
        """created -> failed"""
        result = await self.db.execute(
            update(PaymentDB)
            .where(
                and_(
                    PaymentDB.payment_id == payment_id,
                    PaymentDB.status == PaymentStatus.CREATED.value
                )
            )
            .values(
                status=PaymentStatus.FAILED.value,
                failure_code=failure_code,
                failure_description=failure_description
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def get_user_payments(self, user_id: str, limit: int = 20, offset: int = 0) -> List[PaymentDB]:
        query = select(PaymentDB).where(
            PaymentDB.user_id == user_id
        ).order_by(PaymentDB.created_at.desc()).limit(limit).offset(offset)

        result = await self.db.execute(query)
        return result.scalars().all()

    def to_model(self, db_payment: PaymentDB) -> Payment:
        """转换为Pydantic模型"""
        return Payment(
            payment_id=db_payment.payment_id,
            user_id=db_payment.user_id,
            course_id=db_payment.course_id,
            original_amount=db_payment.original_amount,
            discount_amount=db_payment.discount_amount or 0,
            amount=db_payment.amount,
            currency=db_payment.currency,
            coupon_code=db_payment.coupon_code,
            gateway_order_id=db_payment.gateway_order_id,
            gateway_payment_id=db_payment.gateway_payment_id,
            gateway_signature=db_payment.gateway_signature,
            status=db_payment.status,
            failure_code=db_payment.failure_code,
            failure_description=db_payment.failure_description,
            created_at=db_payment.created_at,
            updated_at=db_payment.updated_at,
            captured_at=db_payment.captured_at
        )

    def to_models(self, db_payments: List[PaymentDB]) -> List[Payment]:
        return parse_rows(db_payments, self.to_model, "payments")
