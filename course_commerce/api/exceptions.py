"""
异常处理器：所有错误统一返回 {success: false, error, errorType, timestamp}
"""

import logging

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from course_commerce.core.exceptions import (
    HTTP_STATUS_BY_TYPE,
    CommerceException,
    ErrorType,
    classify_error,
    create_error_response,
    status_to_error_type,
)

logger = logging.getLogger(__name__)


async def business_exception_handler(request: Request, exc: CommerceException) -> JSONResponse:
    """业务异常"""
    if exc.error_type in (ErrorType.SERVER, ErrorType.UNKNOWN):
        logger.error(f"业务异常 {request.method} {request.url.path}: {exc.message} {exc.details}")
    body = create_error_response(exc)
    if exc.details:
        body["details"] = exc.details
    return JSONResponse(status_code=exc.status_code, content=body)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """请求参数校验失败"""
    body = create_error_response(CommerceException(error_type=ErrorType.VALIDATION))
    body["details"] = {"errors": [
        {"loc": list(error.get("loc", [])), "msg": error.get("msg")} for error in exc.errors()
    ]}
    return JSONResponse(status_code=400, content=body)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """框架抛出的HTTP异常（404路由等）"""
    error_type = status_to_error_type(exc.status_code)
    body = create_error_response(CommerceException(str(exc.detail), error_type))
    return JSONResponse(status_code=exc.status_code, content=body)


async def database_exception_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    """数据库异常"""
    logger.error(f"数据库异常 {request.method} {request.url.path}: {exc}")
    error_type = classify_error(exc)
    return JSONResponse(status_code=HTTP_STATUS_BY_TYPE[error_type], content=create_error_response(error_type))


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """未处理异常"""
    logger.exception(f"未处理异常 {request.method} {request.url.path}: {exc}")
    return JSONResponse(status_code=500, content=create_error_response(ErrorType.UNKNOWN))
