"""
报名对账服务

把网关的支付成功回调转换为一致的 (Payment, Enrollment) 记录：
1. 已有 SUCCESS 报名直接返回（按 user+course 幂等）
2. 独立事务中记录网关信息并准备 PENDING 报名
3. 单个事务中完成 支付captured、报名SUCCESS、优惠券计数、课程报名人数
事务冲突或数据库瞬时错误从第1步重试；不可恢复时保留 PENDING 并返回
ENROLLMENT_RECONCILIATION_FAILED，不会把已扣款的订单标记为失败。
"""

import asyncio
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from functools import partial
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import structlog
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from course_commerce.core.config import settings
from course_commerce.core.database import get_session_maker
from course_commerce.core.exceptions import (
    ERROR_MESSAGES,
    CommerceException,
    ErrorType,
    ReconciliationFailed,
)
from course_commerce.core.redis import ChangeNotifier, change_notifier
from course_commerce.models.coupon import CouponRedemption
from course_commerce.models.enrollment import (
    Enrollment,
    EnrollmentStats,
    EnrollmentStatus,
    ManualEnrollmentCreate,
    PaymentDetails,
    PaymentMethod,
    ReconcileResult,
)
from course_commerce.models.payment import GatewaySuccess, Payment, PaymentStatus
from course_commerce.repositories.coupon_repository import CouponRepository
from course_commerce.repositories.course_repository import CourseRepository
from course_commerce.repositories.enrollment_repository import EnrollmentRepository
from course_commerce.repositories.payment_repository import PaymentRepository
from course_commerce.services.realtime_sync import RealtimeSyncService, realtime_sync

logger = structlog.get_logger()


def new_enrollment_id() -> str:
    return f"ENR_{uuid.uuid4().hex[:16].upper()}"


@dataclass
class PendingWrite:
    """第2步准备好的待提交数据"""
    payment_id: str
    enrollment_id: str
    gateway_payment_id: str
    amount: int
    original_amount: int
    discount_amount: int
    coupon_code: Optional[str]


class _EnrollmentConflict(Exception):
    """PENDING 记录已被其他流程推进，需要回到第1步"""


@dataclass
class _PairLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    holders: int = 0


class EnrollmentReconciler:
    """报名对账器，同一 (user, course) 的对账串行执行"""

    def __init__(
        self,
        session_maker: Optional[async_sessionmaker] = None,
        notifier: Optional[ChangeNotifier] = None,
        max_attempts: Optional[int] = None,
        retry_backoff: Optional[float] = None,
        sync: Optional[RealtimeSyncService] = None
    ):
        self._session_maker = session_maker
        self.notifier = notifier or change_notifier
        self.sync = sync or realtime_sync
        self.max_attempts = max_attempts or settings.reconcile_max_attempts
        self.retry_backoff = settings.reconcile_retry_backoff_seconds if retry_backoff is None else retry_backoff
        self._locks: Dict[Tuple[str, str], _PairLock] = {}

    @property
    def session_maker(self) -> async_sessionmaker:
        return self._session_maker or get_session_maker()

    @asynccontextmanager
    async def _lock_for(self, user_id: str, course_id: str) -> AsyncIterator[None]:
        """同一 (user, course) 串行；没有持有者和等待者时移除锁"""
        key = (user_id, course_id)
        entry = self._locks.get(key)
        if entry is None:
            entry = self._locks[key] = _PairLock()
        entry.holders += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.holders -= 1
            if entry.holders == 0:
                del self._locks[key]

    @staticmethod
    def _enrollment_doc(
        enrollment_id: str,
        user_id: str,
        course_id: str,
        paid_amount: int
    ) -> Dict[str, Any]:
        """乐观写入本地订阅的报名文档"""
        return {
            "enrollment_id": enrollment_id,
            "user_id": user_id,
            "course_id": course_id,
            "status": EnrollmentStatus.SUCCESS.value,
            "paid_amount": paid_amount,
        }

    async def reconcile(self, user_id: str, course_id: str, callback: GatewaySuccess) -> ReconcileResult:
        """网关支付成功后的报名对账"""
        log = logger.bind(
            user_id=user_id,
            course_id=course_id,
            gateway_order_id=callback.order_id,
            gateway_payment_id=callback.payment_id
        )

        async with self._lock_for(user_id, course_id):
            attempt = 0
            last_error: Optional[Exception] = None
            pending: Optional[PendingWrite] = None

            while attempt < self.max_attempts:
                attempt += 1
                try:
                    existing = await self.check_enrollment(user_id, course_id)
                    if existing:
                        log.info("报名已存在，跳过对账", enrollment_id=existing.enrollment_id, attempt=attempt)
                        return ReconcileResult(
                            success=True, enrollment=existing, already_enrolled=True, attempts=attempt
                        )

                    pending = await self._prepare(user_id, course_id, callback)
                    enrollment = await self.sync.create_enrollment(
                        self._enrollment_doc(pending.enrollment_id, user_id, course_id, pending.amount),
                        partial(self._commit, user_id, course_id, pending)
                    )
                except _EnrollmentConflict:
                    log.info("报名记录已被并发推进，重新检查", attempt=attempt)
                    continue
                except ReconciliationFailed as e:
                    last_error = e
                    break
                except CommerceException:
                    raise
                except (DBAPIError, ConnectionError, TimeoutError) as e:
                    last_error = e
                    log.warning("报名对账写入失败，准备重试", attempt=attempt, error=str(e))
                    await asyncio.sleep(self.retry_backoff * attempt)
                    continue
                except Exception as e:
                    log.exception("报名对账出现未预期错误", attempt=attempt)
                    last_error = e
                    break

                await self._notify(enrollment, pending.payment_id, pending.coupon_code)
                log.info(
                    "报名对账成功",
                    enrollment_id=enrollment.enrollment_id,
                    payment_id=pending.payment_id,
                    paid_amount=enrollment.paid_amount,
                    attempt=attempt
                )
                return ReconcileResult(success=True, enrollment=enrollment, attempts=attempt)

            # 重试用尽后再确认一次是否已被并发流程完成
            existing = await self._safe_check(user_id, course_id)
            if existing:
                return ReconcileResult(success=True, enrollment=existing, already_enrolled=True, attempts=attempt)

            log.error(
                "支付已成功但报名未完成，需要人工处理",
                payment_id=pending.payment_id if pending else None,
                enrollment_id=pending.enrollment_id if pending else None,
                attempts=attempt,
                error=str(last_error) if last_error else None,
                details=getattr(last_error, "details", None)
            )
            return ReconcileResult(
                success=False,
                error_type=ErrorType.ENROLLMENT_RECONCILIATION_FAILED,
                message=ERROR_MESSAGES[ErrorType.ENROLLMENT_RECONCILIATION_FAILED],
                attempts=attempt
            )

    async def _prepare(self, user_id: str, course_id: str, callback: GatewaySuccess) -> PendingWrite:
        """第2步：记录网关信息，准备 PENDING 报名（独立提交）"""
        async with self.session_maker() as session:
            async with session.begin():
                payments = PaymentRepository(session)
                enrollments = EnrollmentRepository(session)

                db_payment = await payments.get_by_gateway_order_id(callback.order_id)
                if db_payment is None:
                    db_payment = await self._create_unpinned_payment(session, user_id, course_id, callback)
                elif db_payment.user_id != user_id or db_payment.course_id != course_id:
                    raise CommerceException(
                        "支付记录与当前用户或课程不匹配",
                        ErrorType.VALIDATION,
                        {"order_id": callback.order_id}
                    )

                if db_payment.status == PaymentStatus.FAILED.value:
                    raise ReconciliationFailed(
                        "支付记录已被标记为失败",
                        {"payment_id": db_payment.payment_id, "order_id": callback.order_id}
                    )
                if callback.amount is not None and callback.amount != db_payment.amount:
                    raise ReconciliationFailed(
                        "网关金额与锁定报价不一致",
                        {"payment_id": db_payment.payment_id, "expected": db_payment.amount, "reported": callback.amount}
                    )
                if db_payment.status == PaymentStatus.CREATED.value:
                    await payments.record_gateway_ids(db_payment.payment_id, callback.payment_id, callback.signature)

                db_enrollment = await enrollments.get_latest_pending(user_id, course_id)
                if db_enrollment is None:
                    attempt = await enrollments.next_attempt(user_id, course_id)
                    db_enrollment = await enrollments.create_enrollment(Enrollment(
                        enrollment_id=new_enrollment_id(),
                        user_id=user_id,
                        course_id=course_id,
                        attempt=attempt,
                        status=EnrollmentStatus.PENDING,
                        paid_amount=db_payment.amount,
                        payment_details=PaymentDetails(
                            method=PaymentMethod.ONLINE,
                            reference=callback.payment_id,
                            payment_id=db_payment.payment_id
                        )
                    ))
                elif db_enrollment.payment_id != db_payment.payment_id:
                    await enrollments.link_payment(db_enrollment.enrollment_id, db_payment.payment_id, db_payment.amount)

                return PendingWrite(
                    payment_id=db_payment.payment_id,
                    enrollment_id=db_enrollment.enrollment_id,
                    gateway_payment_id=callback.payment_id,
                    amount=db_payment.amount,
                    original_amount=db_payment.original_amount,
                    discount_amount=db_payment.discount_amount or 0,
                    coupon_code=db_payment.coupon_code
                )

    async def _create_unpinned_payment(
        self,
        session: AsyncSession,
        user_id: str,
        course_id: str,
        callback: GatewaySuccess
    ):
        """没有锁定报价时按课程标价创建支付记录，不应用优惠券"""
        courses = CourseRepository(session)
        db_course = await courses.get_by_course_id(course_id)
        if db_course is None:
            raise ReconciliationFailed("课程不存在", {"course_id": course_id})

        logger.warning("未找到锁定报价，按课程标价对账", user_id=user_id, course_id=course_id,
                       gateway_order_id=callback.order_id)
        return await PaymentRepository(session).create_payment(Payment(
            payment_id=f"PAY_{uuid.uuid4().hex[:16].upper()}",
            user_id=user_id,
            course_id=course_id,
            original_amount=db_course.price,
            discount_amount=0,
            amount=db_course.price,
            currency=db_course.currency or settings.payment_currency,
            gateway_order_id=callback.order_id
        ))

    async def _commit(self, user_id: str, course_id: str, pending: PendingWrite) -> Enrollment:
        """第3步：单事务内完成全部写入，任一失败整体回滚"""
        async with self.session_maker() as session:
            async with session.begin():
                payments = PaymentRepository(session)
                enrollments = EnrollmentRepository(session)
                coupons = CouponRepository(session)
                courses = CourseRepository(session)

                if not await payments.mark_captured(pending.payment_id):
                    db_payment = await payments.get_by_payment_id(pending.payment_id)
                    if db_payment is None or db_payment.status != PaymentStatus.CAPTURED.value:
                        raise ReconciliationFailed("支付记录状态异常", {"payment_id": pending.payment_id})

                if not await enrollments.mark_success(
                    pending.enrollment_id,
                    paid_amount=pending.amount,
                    payment_reference=pending.gateway_payment_id,
                    payment_id=pending.payment_id
                ):
                    raise _EnrollmentConflict()

                if pending.coupon_code:
                    await self._redeem_coupon(coupons, user_id, course_id, pending)

                await courses.increment_enrollments(course_id)

                db_enrollment = await enrollments.get_by_enrollment_id(pending.enrollment_id)
                return enrollments.to_model(db_enrollment)

    async def _redeem_coupon(
        self,
        coupons: CouponRepository,
        user_id: str,
        course_id: str,
        pending: PendingWrite
    ) -> None:
        db_coupon = await coupons.get_by_code(pending.coupon_code)
        if db_coupon is None:
            raise ReconciliationFailed("优惠券不存在", {"coupon_code": pending.coupon_code})

        if db_coupon.usage_limit_per_user:
            used = await coupons.count_user_redemptions(user_id, db_coupon.coupon_id)
            if used >= db_coupon.usage_limit_per_user:
                raise ReconciliationFailed(
                    "用户优惠券使用次数已达上限",
                    {"coupon_code": db_coupon.coupon_code, "used": used}
                )

        if not await coupons.try_increment_usage(db_coupon.coupon_code):
            raise ReconciliationFailed(
                "优惠券使用次数已达上限",
                {"coupon_code": db_coupon.coupon_code, "usage_limit": db_coupon.usage_limit}
            )

        await coupons.add_redemption(CouponRedemption(
            redemption_id=f"RDM_{uuid.uuid4().hex[:16].upper()}",
            coupon_id=db_coupon.coupon_id,
            coupon_code=db_coupon.coupon_code,
            user_id=user_id,
            course_id=course_id,
            payment_id=pending.payment_id,
            enrollment_id=pending.enrollment_id,
            original_amount=pending.original_amount,
            discount_amount=pending.discount_amount,
            final_amount=pending.amount
        ))

    async def _notify(self, enrollment: Enrollment, payment_id: str, coupon_code: Optional[str]) -> None:
        await self.notifier.notify("enrollments", enrollment.enrollment_id)
        await self.notifier.notify("payments", payment_id)
        await self.notifier.notify("courses", enrollment.course_id)
        if coupon_code:
            await self.notifier.notify("coupons", coupon_code)

    async def _safe_check(self, user_id: str, course_id: str) -> Optional[Enrollment]:
        try:
            return await self.check_enrollment(user_id, course_id)
        except DBAPIError as e:
            logger.warning("确认报名状态失败", user_id=user_id, course_id=course_id, error=str(e))
            return None

    async def record_gateway_failure(
        self,
        user_id: str,
        order_id: str,
        failure_code: str,
        failure_description: str = ""
    ) -> Optional[Payment]:
        """网关明确失败：支付记录标记 failed，关联的 PENDING 报名标记 FAILED"""
        async with self.session_maker() as session:
            async with session.begin():
                payments = PaymentRepository(session)
                enrollments = EnrollmentRepository(session)

                db_payment = await payments.get_by_gateway_order_id(order_id)
                if db_payment is None:
                    logger.warning("网关失败回调未找到支付记录", user_id=user_id, gateway_order_id=order_id)
                    return None
                if db_payment.user_id != user_id:
                    raise CommerceException("支付记录与当前用户不匹配", ErrorType.AUTHORIZATION)

                failed = await payments.mark_failed(db_payment.payment_id, failure_code, failure_description)
                if failed:
                    await enrollments.fail_pending_for_payment(db_payment.payment_id)
                payment_id = db_payment.payment_id

            db_payment = await payments.get_by_payment_id(payment_id)
            payment = payments.to_model(db_payment)

        if failed:
            logger.info("支付失败已记录", user_id=user_id, payment_id=payment_id,
                        failure_code=failure_code)
            await self.notifier.notify("payments", payment_id)
        return payment

    async def check_enrollment(self, user_id: str, course_id: str) -> Optional[Enrollment]:
        """获取用户在课程下的成功报名"""
        async with self.session_maker() as session:
            enrollments = EnrollmentRepository(session)
            db_enrollment = await enrollments.get_success(user_id, course_id)
            return enrollments.to_model(db_enrollment) if db_enrollment else None

    async def list_user_enrollments(
        self,
        user_id: str,
        status: Optional[EnrollmentStatus] = None
    ) -> List[Enrollment]:
        async with self.session_maker() as session:
            enrollments = EnrollmentRepository(session)
            return enrollments.to_models(await enrollments.get_user_enrollments(user_id, status))

    async def get_stats(self) -> EnrollmentStats:
        async with self.session_maker() as session:
            return await EnrollmentRepository(session).get_stats()

    async def manual_enroll(self, admin_id: str, request: ManualEnrollmentCreate) -> Enrollment:
        """管理员手动开通（线下支付或免费）"""
        if request.method == PaymentMethod.ONLINE:
            raise CommerceException("手动报名仅支持线下或免费方式", ErrorType.VALIDATION)

        enrollment_id = new_enrollment_id()
        paid_amount = request.paid_amount if request.method == PaymentMethod.OFFLINE else 0

        async def _write() -> None:
            try:
                async with self.session_maker() as session:
                    async with session.begin():
                        enrollments = EnrollmentRepository(session)
                        courses = CourseRepository(session)

                        if await courses.get_by_course_id(request.course_id) is None:
                            raise CommerceException("课程不存在", ErrorType.NOT_FOUND)
                        if await enrollments.get_success(request.user_id, request.course_id):
                            raise CommerceException("该用户已报名此课程", ErrorType.VALIDATION)

                        attempt = await enrollments.next_attempt(request.user_id, request.course_id)
                        await enrollments.create_enrollment(Enrollment(
                            enrollment_id=enrollment_id,
                            user_id=request.user_id,
                            course_id=request.course_id,
                            attempt=attempt,
                            status=EnrollmentStatus.SUCCESS,
                            paid_amount=paid_amount,
                            payment_details=PaymentDetails(method=request.method, reference=request.reference),
                            enrolled_by=admin_id,
                            enrolled_at=datetime.now(timezone.utc)
                        ))
                        await courses.increment_enrollments(request.course_id)
            except IntegrityError as e:
                raise CommerceException("该用户已报名此课程", ErrorType.VALIDATION) from e

        async with self._lock_for(request.user_id, request.course_id):
            await self.sync.create_enrollment(
                self._enrollment_doc(enrollment_id, request.user_id, request.course_id, paid_amount),
                _write
            )

        logger.info("管理员手动报名", admin_id=admin_id, user_id=request.user_id,
                    course_id=request.course_id, method=request.method.value)
        await self.notifier.notify("enrollments", enrollment_id)
        await self.notifier.notify("courses", request.course_id)

        async with self.session_maker() as session:
            enrollments = EnrollmentRepository(session)
            return enrollments.to_model(await enrollments.get_by_enrollment_id(enrollment_id))


# 全局对账器实例，按 (user, course) 的锁在进程内共享
enrollment_reconciler = EnrollmentReconciler()
