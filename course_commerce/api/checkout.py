from typing import Annotated, Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from course_commerce.api.dependencies import CurrentUser, get_checkout_service
from course_commerce.core.exceptions import HTTP_STATUS_BY_TYPE, create_error_response
from course_commerce.models.payment import GatewayFailure, GatewaySuccess
from course_commerce.services.checkout_service import CheckoutService

router = APIRouter(prefix="/checkout", tags=["结账"])


class StartCheckoutRequest(BaseModel):
    course_id: str = Field(..., min_length=1)
    coupon_code: Optional[str] = None


class ConfirmCheckoutRequest(GatewaySuccess):
    course_id: str = Field(..., min_length=1)


@router.post("/start")
async def start_checkout(
    request: StartCheckoutRequest,
    principal: CurrentUser,
    service: Annotated[CheckoutService, Depends(get_checkout_service)],
):
    """锁定报价并返回网关下单参数"""
    quote = await service.start_checkout(principal, request.course_id, request.coupon_code)
    return {"success": True, "data": quote.model_dump(mode="json")}


@router.post("/confirm")
async def confirm_checkout(
    request: ConfirmCheckoutRequest,
    principal: CurrentUser,
    service: Annotated[CheckoutService, Depends(get_checkout_service)],
):
    """网关成功回调；对账失败时返回 202，提示已收到付款"""
    callback = GatewaySuccess(
        payment_id=request.payment_id,
        order_id=request.order_id,
        signature=request.signature,
        amount=request.amount
    )
    result = await service.confirm(principal, request.course_id, callback)
    if not result.success:
        body = create_error_response(result.error_type)
        body["error"] = result.message
        return JSONResponse(status_code=HTTP_STATUS_BY_TYPE[result.error_type], content=body)

    return {
        "success": True,
        "data": {
            "enrollment": result.enrollment.model_dump(mode="json"),
            "alreadyEnrolled": result.already_enrolled
        }
    }


@router.post("/failure")
async def checkout_failure(
    failure: GatewayFailure,
    principal: CurrentUser,
    service: Annotated[CheckoutService, Depends(get_checkout_service)],
):
    """网关失败回调，允许用户重新支付"""
    payment = await service.record_failure(principal, failure)
    return {"success": True, "data": payment.model_dump(mode="json") if payment else None}
