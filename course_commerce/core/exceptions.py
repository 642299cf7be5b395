"""
统一错误分类
所有对外暴露的错误都归入封闭的错误类型集合，并携带可读消息
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

import httpx
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError, SQLAlchemyError


class ErrorType(str, Enum):
    """错误类型枚举"""
    NETWORK = "NETWORK_ERROR"
    VALIDATION = "VALIDATION_ERROR"
    AUTHENTICATION = "AUTHENTICATION_ERROR"
    AUTHORIZATION = "AUTHORIZATION_ERROR"
    NOT_FOUND = "NOT_FOUND_ERROR"
    SERVER = "SERVER_ERROR"
    ENROLLMENT_RECONCILIATION_FAILED = "ENROLLMENT_RECONCILIATION_FAILED"
    UNKNOWN = "UNKNOWN_ERROR"


ERROR_MESSAGES: Dict[ErrorType, str] = {
    ErrorType.NETWORK: "网络连接失败，请检查网络后重试",
    ErrorType.VALIDATION: "请求参数有误，请检查后重试",
    ErrorType.AUTHENTICATION: "身份验证失败，请重新登录",
    ErrorType.AUTHORIZATION: "您没有执行该操作的权限",
    ErrorType.NOT_FOUND: "请求的资源不存在",
    ErrorType.SERVER: "服务器异常，请稍后重试",
    ErrorType.ENROLLMENT_RECONCILIATION_FAILED: "我们已收到您的付款，课程权限正在开通中，如有疑问请联系客服",
    ErrorType.UNKNOWN: "发生未知错误，请稍后重试",
}

HTTP_STATUS_BY_TYPE: Dict[ErrorType, int] = {
    ErrorType.VALIDATION: 400,
    ErrorType.AUTHENTICATION: 401,
    ErrorType.AUTHORIZATION: 403,
    ErrorType.NOT_FOUND: 404,
    ErrorType.ENROLLMENT_RECONCILIATION_FAILED: 202,
    ErrorType.NETWORK: 503,
    ErrorType.SERVER: 500,
    ErrorType.UNKNOWN: 500,
}


class CommerceException(Exception):
    """业务异常基类"""

    def __init__(
        self,
        message: Optional[str] = None,
        error_type: ErrorType = ErrorType.UNKNOWN,
        details: Optional[Dict[str, Any]] = None
    ):
        self.error_type = error_type
        self.message = message or ERROR_MESSAGES[error_type]
        self.details = details or {}
        super().__init__(self.message)

    @property
    def status_code(self) -> int:
        return HTTP_STATUS_BY_TYPE[self.error_type]


class ReconciliationFailed(CommerceException):
    """支付已成功但报名未能落库"""

    def __init__(self, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, ErrorType.ENROLLMENT_RECONCILIATION_FAILED, details)


def status_to_error_type(status: int) -> ErrorType:
    if status == 401:
        return ErrorType.AUTHENTICATION
    if status == 403:
        return ErrorType.AUTHORIZATION
    if status == 404:
        return ErrorType.NOT_FOUND
    if 400 <= status < 500:
        return ErrorType.VALIDATION
    if status >= 500:
        return ErrorType.SERVER
    return ErrorType.UNKNOWN


def classify_error(error: Any) -> ErrorType:
    """根据异常对象的类型、错误码和消息归类"""
    if error is None:
        return ErrorType.UNKNOWN

    if isinstance(error, ErrorType):
        return error

    explicit = getattr(error, "error_type", None)
    if isinstance(explicit, ErrorType):
        return explicit

    # 传输层异常
    if isinstance(error, (httpx.TransportError, ConnectionError, TimeoutError)):
        return ErrorType.NETWORK
    if isinstance(error, IntegrityError):
        return ErrorType.VALIDATION
    if isinstance(error, OperationalError):
        return ErrorType.NETWORK
    if isinstance(error, (DBAPIError, SQLAlchemyError)):
        return ErrorType.SERVER

    status = getattr(error, "status", None) or getattr(error, "status_code", None)
    if isinstance(status, int):
        return status_to_error_type(status)

    code = str(getattr(error, "code", "") or "").lower()
    message = str(getattr(error, "message", None) or error).lower()

    if code in ("network_error", "unavailable") or "network error" in message or "failed to fetch" in message:
        return ErrorType.NETWORK
    if code.startswith("auth/") or "invalid auth token" in message or "unauthenticated" in message:
        return ErrorType.AUTHENTICATION
    if code in ("permission-denied", "permission_denied") or "insufficient permissions" in message \
            or "admin access required" in message:
        return ErrorType.AUTHORIZATION
    if code in ("validation-error", "validation_error") or "validation" in message \
            or "required" in message or "invalid" in message:
        return ErrorType.VALIDATION
    if code in ("not-found", "not_found") or "not found" in message or "does not exist" in message:
        return ErrorType.NOT_FOUND
    if code in ("internal", "server-error", "server_error") or "internal server error" in message:
        return ErrorType.SERVER

    return ErrorType.UNKNOWN


def get_error_message(error: Any) -> str:
    """获取面向用户的错误消息"""
    if isinstance(error, CommerceException):
        return error.message
    error_type = classify_error(error)
    return ERROR_MESSAGES[error_type]


def create_error_response(error: Any) -> Dict[str, Any]:
    """构建统一的错误响应体"""
    return {
        "success": False,
        "error": get_error_message(error),
        "errorType": classify_error(error).value,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
