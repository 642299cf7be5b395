from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exceptions import RequestValidationError
from contextlib import asynccontextmanager
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException
import uvicorn

from course_commerce.core.config import settings
from course_commerce.core.redis import redis_manager
from course_commerce.core.database import init_database, close_database
from course_commerce.core.exceptions import CommerceException
from course_commerce.services.common_cache import course_cache, coupon_cache
from course_commerce.services.realtime_sync import realtime_sync
from course_commerce.api.health import router as health_router
from course_commerce.api.courses import router as courses_router
from course_commerce.api.coupons import router as coupons_router
from course_commerce.api.checkout import router as checkout_router
from course_commerce.api.enrollments import router as enrollments_router
from course_commerce.api.progress import router as progress_router
from course_commerce.api.exceptions import (
    validation_exception_handler,
    http_exception_handler,
    database_exception_handler,
    general_exception_handler,
    business_exception_handler,
)

# 简化日志配置
import logging

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理"""
    logger.info("正在启动课程商城服务")

    try:
        await init_database()
        logger.info("PostgreSQL数据库初始化成功")

        await redis_manager.init_redis()
        await course_cache.init_redis(redis_manager.redis_pool)
        await coupon_cache.init_redis(redis_manager.redis_pool)
        logger.info("Redis初始化成功")

        logger.info("应用启动完成")

    except Exception as e:
        logger.error(f"应用启动失败: {e}")
        raise

    yield

    logger.info("正在关闭应用")
    await realtime_sync.close()
    await close_database()
    await redis_manager.close_redis()
    logger.info("应用关闭完成")


# 创建FastAPI应用
app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="课程商城 - 优惠券定价、支付对账报名、学习进度与模块解锁",
    debug=settings.debug,
    lifespan=lifespan
)

# CORS中间件
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# 注册路由
app.include_router(health_router)
app.include_router(courses_router)
app.include_router(coupons_router)
app.include_router(checkout_router)
app.include_router(enrollments_router)
app.include_router(progress_router)

# 注册异常处理器
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(StarletteHTTPException, http_exception_handler)
app.add_exception_handler(SQLAlchemyError, database_exception_handler)
app.add_exception_handler(CommerceException, business_exception_handler)
app.add_exception_handler(Exception, general_exception_handler)


@app.get("/")
async def root():
    """根路径"""
    return {
        "message": f"欢迎使用 {settings.app_name}",
        "version": settings.app_version,
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    uvicorn.run(
        "course_commerce.main:app",
        host="0.0.0.0",
        port=8002,
        reload=settings.debug,
        log_level=settings.log_level.lower()
    )
