"""
后端API客户端

按顺序尝试候选根地址：
- 返回内容不是JSON：INVALID_RESPONSE，继续下一个
- 5xx 或响应体 success=false：SERVER_ERROR，继续下一个
- 4xx：CLIENT_ERROR，绝对地址立即停止，相对（代理）地址继续尝试下一个
- 传输层异常：NETWORK，继续下一个
全部失败时返回最后一个错误，并归入统一错误分类。调用方只会拿到 ApiResult，不会收到传输层异常。
"""

import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional
from urllib.parse import urljoin, urlparse

import httpx
from pydantic import BaseModel

from course_commerce.core.config import settings
from course_commerce.core.exceptions import ERROR_MESSAGES, ErrorType, status_to_error_type

logger = logging.getLogger(__name__)

TokenProvider = Callable[[], Awaitable[Optional[str]]]


class ApiErrorKind(str, Enum):
    """单次请求的失败类型"""
    UNAUTHENTICATED = "UNAUTHENTICATED"
    INVALID_RESPONSE = "INVALID_RESPONSE"
    SERVER_ERROR = "SERVER_ERROR"
    CLIENT_ERROR = "CLIENT_ERROR"
    NETWORK = "NETWORK"


class ApiResult(BaseModel):
    """API调用结果"""

    success: bool
    data: Any = None
    status_code: Optional[int] = None
    base_url: Optional[str] = None
    error_kind: Optional[ApiErrorKind] = None
    error_type: Optional[ErrorType] = None
    error: Optional[str] = None


def is_absolute_base(base: str) -> bool:
    return urlparse(base).scheme in ("http", "https")


def resolve_candidate_bases() -> List[str]:
    """启动时解析候选根地址"""
    return list(settings.api_candidate_bases)


def _normalize(kind: ApiErrorKind, status_code: Optional[int], payload: Any) -> ErrorType:
    """单次失败 -> 统一错误分类"""
    if isinstance(payload, dict):
        declared = payload.get("errorType")
        if declared in ErrorType._value2member_map_:
            return ErrorType(declared)
    if kind == ApiErrorKind.UNAUTHENTICATED:
        return ErrorType.AUTHENTICATION
    if kind == ApiErrorKind.NETWORK:
        return ErrorType.NETWORK
    if kind == ApiErrorKind.CLIENT_ERROR and status_code is not None:
        return status_to_error_type(status_code)
    return ErrorType.SERVER


class ApiClient:
    """带候选地址故障转移的API客户端"""

    def __init__(
        self,
        token_provider: TokenProvider,
        bases: Optional[List[str]] = None,
        origin: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.token_provider = token_provider
        self.bases = bases if bases is not None else resolve_candidate_bases()
        self.origin = origin or settings.app_origin
        self.timeout = timeout or settings.api_timeout_seconds
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def build_url(self, base: str, endpoint: str) -> str:
        """相对根地址基于应用源地址解析"""
        root = base if is_absolute_base(base) else urljoin(self.origin.rstrip("/") + "/", base.lstrip("/"))
        return f"{root.rstrip('/')}/{endpoint.lstrip('/')}"

    def _failure(
        self,
        kind: ApiErrorKind,
        base: Optional[str],
        status_code: Optional[int] = None,
        payload: Any = None,
        message: Optional[str] = None
    ) -> ApiResult:
        error_type = _normalize(kind, status_code, payload)
        if message is None and isinstance(payload, dict):
            message = payload.get("error") or payload.get("message")
        return ApiResult(
            success=False,
            data=payload,
            status_code=status_code,
            base_url=base,
            error_kind=kind,
            error_type=error_type,
            error=message or ERROR_MESSAGES[error_type]
        )

    async def call(
        self,
        endpoint: str,
        method: str = "GET",
        json: Optional[Any] = None,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None
    ) -> ApiResult:
        """依次尝试候选地址"""
        try:
            token = await self.token_provider()
        except Exception as e:
            logger.warning(f"获取访问令牌失败 {method} {endpoint}: {e}")
            token = None
        if not token:
            return self._failure(ApiErrorKind.UNAUTHENTICATED, None, message=ERROR_MESSAGES[ErrorType.AUTHENTICATION])

        request_headers = {"Authorization": f"Bearer {token}", "Accept": "application/json"}
        request_headers.update(headers or {})

        last: Optional[ApiResult] = None
        for base in self.bases:
            url = self.build_url(base, endpoint)
            try:
                response = await self.client.request(method, url, json=json, params=params, headers=request_headers)
            except httpx.HTTPError as e:
                logger.warning(f"API请求失败 {method} {url}: {e}")
                last = self._failure(ApiErrorKind.NETWORK, base, message=ERROR_MESSAGES[ErrorType.NETWORK])
                continue

            if "application/json" not in response.headers.get("content-type", ""):
                logger.warning(f"API返回非JSON内容 {method} {url}: status={response.status_code}")
                last = self._failure(ApiErrorKind.INVALID_RESPONSE, base, response.status_code)
                continue
            try:
                payload = response.json()
            except ValueError:
                last = self._failure(ApiErrorKind.INVALID_RESPONSE, base, response.status_code)
                continue

            if response.status_code >= 500:
                logger.warning(f"API服务端错误 {method} {url}: status={response.status_code}")
                last = self._failure(ApiErrorKind.SERVER_ERROR, base, response.status_code, payload)
                continue

            if response.status_code >= 400:
                last = self._failure(ApiErrorKind.CLIENT_ERROR, base, response.status_code, payload)
                if is_absolute_base(base):
                    break
                logger.info(f"代理地址返回客户端错误，尝试下一个候选地址: {url} status={response.status_code}")
                continue

            if isinstance(payload, dict) and payload.get("success") is False:
                last = self._failure(ApiErrorKind.SERVER_ERROR, base, response.status_code, payload)
                continue

            return ApiResult(success=True, data=payload, status_code=response.status_code, base_url=base)

        if last is None:
            last = self._failure(ApiErrorKind.NETWORK, None, message="没有可用的API地址")
        logger.error(f"API调用失败 {method} {endpoint}: {last.error_kind.value} {last.error}")
        return last

    async def get(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> ApiResult:
        return await self.call(endpoint, "GET", params=params)

    async def post(self, endpoint: str, json: Optional[Any] = None) -> ApiResult:
        return await self.call(endpoint, "POST", json=json)
