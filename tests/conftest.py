"""
测试配置文件 - pytest fixtures和共用配置
"""

import pytest
import pytest_asyncio
from datetime import datetime, timedelta, timezone
from typing import Optional
from unittest.mock import AsyncMock

import jwt
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import NullPool

from course_commerce.core.config import settings
from course_commerce.core.database import Base
from course_commerce.core.redis import ChangeNotifier
from course_commerce.models import database as _database_models  # noqa: F401 注册表结构
from course_commerce.models.auth import Principal
from course_commerce.models.coupon import CouponCreate, CouponType
from course_commerce.models.course import Course
from course_commerce.repositories.coupon_repository import CouponRepository
from course_commerce.repositories.course_repository import CourseRepository
from course_commerce.services.enrollment_service import EnrollmentReconciler
from course_commerce.services.realtime_sync import RealtimeSyncService, subscription_key


# 配置pytest-asyncio
pytest_plugins = ('pytest_asyncio',)


COURSE_CATALOG = {
    "course_id": "C1",
    "title": "Python数据分析实战",
    "category": "python",
    "price": 10000,
    "currency": "INR",
    "is_published": True,
    "modules": [
        {
            "moduleId": "M1",
            "position": 0,
            "title": "入门",
            "unlockCondition": "none",
            "videos": [
                {"videoId": "V1", "title": "课程介绍", "durationSeconds": 600, "secureKey": "c1/v1", "isPreview": True},
                {"videoId": "V2", "title": "环境搭建", "durationSeconds": 300, "secureKey": "c1/v2"},
            ],
        },
        {
            "moduleId": "M2",
            "position": 1,
            "title": "进阶",
            "unlockCondition": "completePrevious",
            "videos": [
                {"videoId": "V3", "title": "Pandas", "durationSeconds": 400, "secureKey": "c1/v3"},
            ],
        },
        {
            "moduleId": "M3",
            "position": 2,
            "title": "结业",
            "unlockCondition": "completePrevious",
            "videos": [],
        },
    ],
}


@pytest_asyncio.fixture
async def test_db_engine(tmp_path):
    """测试数据库引擎 - 每个测试独立的SQLite文件"""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'commerce_test.db'}",
        echo=False,
        poolclass=NullPool
    )

    # 创建表结构
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def session_maker(test_db_engine) -> async_sessionmaker:
    """测试session工厂"""
    return async_sessionmaker(
        test_db_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )


@pytest_asyncio.fixture
async def db_session(session_maker) -> AsyncSession:
    """测试数据库会话"""
    async with session_maker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


@pytest.fixture
def mock_notifier():
    """模拟变更通知"""
    return AsyncMock(spec=ChangeNotifier)


class MemorySnapshotSource:
    """内存快照来源，测试中手动推送快照"""

    def __init__(self, initial=None):
        self.initial = initial or {}
        self.callbacks = {}
        self.subscribe_calls = []
        self.unsubscribed = []

    async def subscribe(self, collection, filters, on_snapshot):
        key = subscription_key(collection, filters)
        self.subscribe_calls.append(key)
        self.callbacks[key] = on_snapshot
        on_snapshot(list(self.initial.get(collection, [])))

        async def unsubscribe():
            self.unsubscribed.append(key)
            self.callbacks.pop(key, None)

        return unsubscribe

    def push(self, collection, filters, docs):
        self.callbacks[subscription_key(collection, filters)](docs)


@pytest.fixture
def sync_service():
    """内存快照来源上的实时同步层"""
    return RealtimeSyncService(MemorySnapshotSource())


@pytest.fixture
def reconciler(session_maker, mock_notifier, sync_service):
    """使用测试数据库的报名对账器"""
    return EnrollmentReconciler(
        session_maker=session_maker,
        notifier=mock_notifier,
        sync=sync_service,
        max_attempts=3,
        retry_backoff=0
    )


@pytest.fixture
def sample_course() -> Course:
    """示例课程：M1 无限制，M2/M3 需完成上一模块，M3 没有视频"""
    return Course(**COURSE_CATALOG)


@pytest_asyncio.fixture
async def seeded_course(session_maker, sample_course) -> Course:
    """写入数据库的示例课程"""
    async with session_maker() as session:
        await CourseRepository(session).create_course(sample_course)
        await session.commit()
    return sample_course


async def create_coupon(session_maker, **overrides):
    """写入一张优惠券，返回 CouponDB"""
    data = {
        "code": "save10",
        "name": "九折券",
        "discount_type": CouponType.PERCENT,
        "value": 10,
        "max_discount_amount": 500,
        "valid_from": datetime.now(timezone.utc) - timedelta(days=1),
        "valid_until": datetime.now(timezone.utc) + timedelta(days=30),
    }
    data.update(overrides)
    async with session_maker() as session:
        db_coupon = await CouponRepository(session).create_coupon(CouponCreate(**data))
        await session.commit()
    return db_coupon


@pytest.fixture
def student() -> Principal:
    return Principal(uid="user_001", email="student@example.com")


@pytest.fixture
def admin() -> Principal:
    return Principal(uid="admin_001", email="admin@example.com", is_admin=True)


def make_token(uid: str, admin: bool = False, expires_in: int = 3600, secret: Optional[str] = None) -> str:
    """签发测试用访问令牌"""
    claims = {
        "uid": uid,
        "email": f"{uid}@example.com",
        "admin": admin,
        "exp": datetime.now(timezone.utc) + timedelta(seconds=expires_in),
    }
    return jwt.encode(claims, secret or settings.jwt_secret, algorithm=settings.jwt_algorithm)
