"""
结账服务
锁定报价 -> 打开网关 -> 按网关结果进入对账或失败流程
"""

import asyncio
import hashlib
import hmac
import logging
import uuid
from typing import Any, Callable, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from course_commerce.core.config import settings
from course_commerce.core.exceptions import CommerceException, ErrorType
from course_commerce.models.auth import Principal
from course_commerce.models.enrollment import ReconcileResult
from course_commerce.models.payment import (
    CheckoutAbandoned,
    CheckoutOutcome,
    CheckoutQuote,
    GatewayFailure,
    GatewaySuccess,
    Payment,
)
from course_commerce.repositories.coupon_repository import CouponRepository
from course_commerce.repositories.course_repository import CourseRepository
from course_commerce.repositories.enrollment_repository import EnrollmentRepository
from course_commerce.repositories.payment_repository import PaymentRepository
from course_commerce.services.coupon_service import CouponService
from course_commerce.services.course_service import CourseService
from course_commerce.services.enrollment_service import EnrollmentReconciler, enrollment_reconciler

logger = logging.getLogger(__name__)


def new_payment_id() -> str:
    return f"PAY_{uuid.uuid4().hex[:16].upper()}"


def new_gateway_order_id() -> str:
    return f"order_{uuid.uuid4().hex[:14]}"


def sign_gateway_payment(order_id: str, payment_id: str, secret: str) -> str:
    """网关签名：HMAC-SHA256(order_id|payment_id)"""
    message = f"{order_id}|{payment_id}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify_gateway_signature(callback: GatewaySuccess, secret: Optional[str]) -> bool:
    """未配置密钥时不校验"""
    if not secret:
        return True
    expected = sign_gateway_payment(callback.order_id, callback.payment_id, secret)
    return hmac.compare_digest(expected, callback.signature or "")


class GatewayCheckout:
    """
    把回调式的网关SDK包装成一次性的可等待结果

    SDK 的 handler / on_failure / on_dismiss 三个回调中只有第一个生效，
    之后的回调会被忽略并记日志。
    """

    def __init__(self, order_id: str):
        self.order_id = order_id
        self._future: asyncio.Future = asyncio.get_running_loop().create_future()

    @property
    def done(self) -> bool:
        return self._future.done()

    def _resolve(self, outcome: CheckoutOutcome) -> None:
        if self._future.done():
            logger.warning(f"网关订单 {self.order_id} 已有结果，忽略重复回调: {type(outcome).__name__}")
            return
        self._future.set_result(outcome)

    def handler(self, payment_id: str, order_id: str, signature: str, amount: Optional[int] = None) -> None:
        """网关成功回调"""
        self._resolve(GatewaySuccess(
            payment_id=payment_id,
            order_id=order_id or self.order_id,
            signature=signature or "",
            amount=amount
        ))

    def on_failure(self, code: str, description: str = "") -> None:
        """网关失败回调"""
        self._resolve(GatewayFailure(order_id=self.order_id, code=code, description=description))

    def on_dismiss(self) -> None:
        """用户关闭支付窗口"""
        self._resolve(CheckoutAbandoned(order_id=self.order_id))

    def open(self, sdk_open: Callable[[Dict[str, Any]], None], options: Dict[str, Any]) -> "GatewayCheckout":
        """调用SDK打开支付窗口，回调挂到当前对象上"""
        sdk_open({
            **options,
            "order_id": self.order_id,
            "handler": self.handler,
            "on_failure": self.on_failure,
            "on_dismiss": self.on_dismiss,
        })
        return self

    async def wait(self, timeout: Optional[float] = None) -> CheckoutOutcome:
        """等待网关结果；超时视为放弃支付"""
        try:
            return await asyncio.wait_for(asyncio.shield(self._future), timeout)
        except asyncio.TimeoutError:
            self._resolve(CheckoutAbandoned(order_id=self.order_id))
            return self._future.result()

    def __await__(self):
        return self.wait().__await__()


class CheckoutService:
    """结账业务服务"""

    def __init__(
        self,
        db: AsyncSession,
        reconciler: Optional[EnrollmentReconciler] = None,
        coupon_service: Optional[CouponService] = None,
        course_service: Optional[CourseService] = None
    ):
        self.db = db
        self.course_service = course_service or CourseService(CourseRepository(db))
        self.payment_repo = PaymentRepository(db)
        self.enrollment_repo = EnrollmentRepository(db)
        self.coupon_service = coupon_service or CouponService(CouponRepository(db))
        self.reconciler = reconciler or enrollment_reconciler

    async def start_checkout(
        self,
        principal: Principal,
        course_id: str,
        coupon_code: Optional[str] = None
    ) -> CheckoutQuote:
        """计算价格并锁定报价，返回网关下单所需信息"""
        course = await self.course_service.get_course_by_id(course_id)
        if not course or not course.is_published:
            raise CommerceException("课程不存在", ErrorType.NOT_FOUND, {"course_id": course_id})

        if await self.enrollment_repo.get_success(principal.uid, course_id):
            raise CommerceException("您已报名该课程", ErrorType.VALIDATION, {"course_id": course_id})

        discount = 0
        amount = course.price
        applied_code = None
        if coupon_code:
            pricing = await self.coupon_service.quote(
                coupon_code,
                user_id=principal.uid,
                course_id=course.course_id,
                order_amount=course.price,
                course_category=course.category
            )
            if not pricing.valid:
                raise CommerceException(
                    pricing.message,
                    ErrorType.VALIDATION,
                    {"reason": pricing.reason.value, "coupon_code": pricing.coupon_code}
                )
            discount = pricing.discount
            amount = pricing.final_amount
            applied_code = pricing.coupon_code

        payment = Payment(
            payment_id=new_payment_id(),
            user_id=principal.uid,
            course_id=course.course_id,
            original_amount=course.price,
            discount_amount=discount,
            amount=amount,
            currency=course.currency or settings.payment_currency,
            coupon_code=applied_code,
            gateway_order_id=new_gateway_order_id()
        )
        await self.payment_repo.create_payment(payment)
        await self.db.commit()
        logger.info(
            f"结账报价已锁定: payment={payment.payment_id} user={principal.uid} "
            f"course={course_id} amount={amount} coupon={applied_code}"
        )

        return CheckoutQuote(
            payment_id=payment.payment_id,
            gateway_order_id=payment.gateway_order_id,
            course_id=course.course_id,
            course_title=course.title,
            original_amount=payment.original_amount,
            discount_amount=payment.discount_amount,
            amount=payment.amount,
            currency=payment.currency,
            coupon_code=applied_code,
            key_id=settings.payment_key_id
        )

    async def confirm(self, principal: Principal, course_id: str, callback: GatewaySuccess) -> ReconcileResult:
        """网关成功回调：校验签名后进入对账"""
        if not verify_gateway_signature(callback, settings.payment_key_secret):
            logger.warning(f"网关签名校验失败: order={callback.order_id} user={principal.uid}")
            raise CommerceException("支付签名校验失败", ErrorType.VALIDATION, {"order_id": callback.order_id})
        return await self.reconciler.reconcile(principal.uid, course_id, callback)

    async def record_failure(self, principal: Principal, failure: GatewayFailure) -> Optional[Payment]:
        """网关失败回调"""
        if not failure.order_id:
            return None
        return await self.reconciler.record_gateway_failure(
            principal.uid, failure.order_id, failure.code, failure.description
        )

    async def complete(self, principal: Principal, course_id: str, outcome: CheckoutOutcome) -> Optional[Any]:
        """统一处理网关结果，放弃支付不产生任何写入"""
        if isinstance(outcome, GatewaySuccess):
            return await self.confirm(principal, course_id, outcome)
        if isinstance(outcome, GatewayFailure):
            return await self.record_failure(principal, outcome)
        logger.info(f"用户放弃支付: user={principal.uid} course={course_id} order={outcome.order_id}")
        return None
