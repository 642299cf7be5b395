"""
实时同步层

- 每个 (集合, 查询条件) 只维护一个底层订阅，多个使用方共享，最后一个使用方离开时退订
- 收到快照时整体替换本地缓存（以最后一次快照为准）
- 写操作先乐观更新本地缓存再提交存储；提交失败时回滚并把错误抛给调用方，
  若期间已收到新快照则以快照为准，不再回滚
"""

import asyncio
import copy
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, TypeVar

from course_commerce.core.database import get_session_maker
from course_commerce.core.redis import ChangeNotifier, RedisManager, redis_manager
from course_commerce.repositories.collection_reader import CollectionReader

logger = logging.getLogger(__name__)

T = TypeVar("T")

Document = Dict[str, Any]
SnapshotCallback = Callable[[List[Document]], None]
Unsubscribe = Callable[[], Awaitable[None]]
Listener = Callable[[List[Document]], None]


class SnapshotSource(Protocol):
    """快照来源：订阅一个查询，每次数据变化时推送完整结果集"""

    async def subscribe(
        self,
        collection: str,
        filters: Dict[str, Any],
        on_snapshot: SnapshotCallback
    ) -> Unsubscribe:
        ...


def subscription_key(collection: str, filters: Optional[Dict[str, Any]] = None) -> str:
    """同一集合和查询条件得到相同的key，与条件书写顺序无关"""
    return json.dumps([collection, filters or {}], sort_keys=True, default=str, separators=(",", ":"))


def matches(doc: Document, filters: Dict[str, Any]) -> bool:
    return all(doc.get(key) == value for key, value in filters.items())


@dataclass
class _Subscription:
    key: str
    collection: str
    filters: Dict[str, Any]
    docs: List[Document] = field(default_factory=list)
    version: int = 0
    refcount: int = 0
    listeners: List[Listener] = field(default_factory=list)
    unsubscribe: Optional[Unsubscribe] = None


class SubscriptionHandle:
    """使用方持有的订阅句柄"""

    def __init__(self, service: "RealtimeSyncService", key: str, listener: Optional[Listener] = None):
        self._service = service
        self.key = key
        self._listener = listener
        self._closed = False

    @property
    def docs(self) -> List[Document]:
        return self._service.snapshot(self.key)

    @property
    def closed(self) -> bool:
        return self._closed

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._service._release(self.key, self._listener)


class RealtimeSyncService:
    """订阅去重、快照替换和乐观写入"""

    def __init__(self, source: SnapshotSource):
        self.source = source
        self._subscriptions: Dict[str, _Subscription] = {}
        self._lock = asyncio.Lock()

    @property
    def active_keys(self) -> List[str]:
        return list(self._subscriptions.keys())

    def snapshot(self, key: str) -> List[Document]:
        subscription = self._subscriptions.get(key)
        return [dict(doc) for doc in subscription.docs] if subscription else []

    async def subscribe(
        self,
        collection: str,
        filters: Optional[Dict[str, Any]] = None,
        listener: Optional[Listener] = None
    ) -> SubscriptionHandle:
        """订阅集合查询；相同查询复用已有订阅"""
        filters = dict(filters or {})
        key = subscription_key(collection, filters)

        async with self._lock:
            subscription = self._subscriptions.get(key)
            if subscription is None:
                subscription = _Subscription(key=key, collection=collection, filters=filters)
                self._subscriptions[key] = subscription
                try:
                    subscription.unsubscribe = await self.source.subscribe(
                        collection, filters, lambda docs, s=subscription: self._on_snapshot(s, docs)
                    )
                except Exception:
                    del self._subscriptions[key]
                    raise
                logger.info(f"创建订阅: {key}")
            subscription.refcount += 1
            if listener is not None:
                subscription.listeners.append(listener)

        return SubscriptionHandle(self, key, listener)

    async def _release(self, key: str, listener: Optional[Listener]) -> None:
        async with self._lock:
            subscription = self._subscriptions.get(key)
            if subscription is None:
                return
            if listener is not None and listener in subscription.listeners:
                subscription.listeners.remove(listener)
            subscription.refcount -= 1
            if subscription.refcount > 0:
                return
            del self._subscriptions[key]

        if subscription.unsubscribe is not None:
            await subscription.unsubscribe()
        logger.info(f"退订: {key}")

    def _on_snapshot(self, subscription: _Subscription, docs: List[Document]) -> None:
        """快照整体替换本地缓存"""
        if self._subscriptions.get(subscription.key) is not subscription:
            return
        subscription.docs = [dict(doc) for doc in docs]
        subscription.version += 1
        self._emit(subscription)

    def _emit(self, subscription: _Subscription) -> None:
        docs = [dict(doc) for doc in subscription.docs]
        for listener in list(subscription.listeners):
            try:
                listener(docs)
            except Exception as e:
                logger.error(f"订阅回调执行失败 {subscription.key}: {e}")

    def _apply_local(self, subscription: _Subscription, doc_id: str, patch: Document, create: bool) -> None:
        docs = subscription.docs
        position = next((i for i, doc in enumerate(docs) if doc.get("id") == doc_id), None)
        if position is None:
            if not create:
                return
            candidate = {**patch, "id": doc_id}
            if matches(candidate, subscription.filters):
                docs.append(candidate)
        else:
            updated = {**docs[position], **patch, "id": doc_id}
            if matches(updated, subscription.filters):
                docs[position] = updated
            else:
                docs.pop(position)
        subscription.version += 1

    async def mutate(
        self,
        collection: str,
        doc_id: str,
        patch: Document,
        commit: Callable[[], Awaitable[T]],
        create: bool = False
    ) -> T:
        """乐观写入：先改本地缓存，再提交；提交失败回滚本地并重新抛出"""
        applied = []
        for subscription in list(self._subscriptions.values()):
            if subscription.collection != collection:
                continue
            before = (copy.deepcopy(subscription.docs), subscription.version)
            self._apply_local(subscription, doc_id, patch, create)
            if subscription.version != before[1]:
                applied.append((subscription, before[0], subscription.version))
                self._emit(subscription)

        try:
            return await commit()
        except Exception:
            for subscription, docs_before, version_after in applied:
                if subscription.version != version_after:
                    # 已有新快照，以快照为准
                    continue
                subscription.docs = docs_before
                subscription.version += 1
                self._emit(subscription)
            logger.warning(f"乐观写入提交失败，已回滚本地缓存: {collection}/{doc_id}")
            raise

    async def create_enrollment(self, doc: Document, commit: Callable[[], Awaitable[T]]) -> T:
        return await self.mutate("enrollments", doc["enrollment_id"], doc, commit, create=True)

    async def update_course(self, course_id: str, patch: Document, commit: Callable[[], Awaitable[T]]) -> T:
        return await self.mutate("courses", course_id, patch, commit)

    async def update_progress(self, user_id: str, course_id: str, patch: Document, commit: Callable[[], Awaitable[T]]) -> T:
        """进度文档按 user+course 写入，首次观看时创建"""
        patch = {**patch, "user_id": user_id, "course_id": course_id}
        return await self.mutate("progress", f"{user_id}:{course_id}", patch, commit, create=True)

    async def close(self) -> None:
        """关闭所有订阅"""
        async with self._lock:
            subscriptions = list(self._subscriptions.values())
            self._subscriptions.clear()
        for subscription in subscriptions:
            if subscription.unsubscribe is not None:
                await subscription.unsubscribe()


Loader = Callable[[str, Dict[str, Any]], Awaitable[List[Document]]]


async def load_from_database(collection: str, filters: Dict[str, Any]) -> List[Document]:
    """通过仓库层读取集合快照"""
    async with get_session_maker()() as session:
        return await CollectionReader(session).query(collection, filters)


class RedisSnapshotSource:
    """基于 Redis 变更通知的快照来源：收到 changes:<collection> 消息后重新加载查询结果"""

    def __init__(self, manager: Optional[RedisManager] = None, loader: Optional[Loader] = None):
        self.redis = manager or redis_manager
        self.loader = loader or load_from_database

    async def subscribe(
        self,
        collection: str,
        filters: Dict[str, Any],
        on_snapshot: SnapshotCallback
    ) -> Unsubscribe:
        pubsub = self.redis.pubsub()
        await pubsub.subscribe(ChangeNotifier.channel_for(collection))
        try:
            on_snapshot(await self.loader(collection, filters))
        except Exception:
            await pubsub.unsubscribe()
            await pubsub.aclose()
            raise

        async def _listen() -> None:
            try:
                async for message in pubsub.listen():
                    if message.get("type") != "message":
                        continue
                    try:
                        on_snapshot(await self.loader(collection, filters))
                    except Exception as e:
                        logger.error(f"重新加载快照失败 {collection}: {e}")
            except Exception as e:
                logger.error(f"变更通知监听中断，订阅不再更新 {collection}: {e}")

        task = asyncio.create_task(_listen())

        async def _unsubscribe() -> None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            await pubsub.unsubscribe()
            await pubsub.aclose()

        return _unsubscribe


# 全局实时同步实例，应用关闭时释放全部订阅
realtime_sync = RealtimeSyncService(RedisSnapshotSource())
