"""
实时同步层测试：订阅去重、快照替换、乐观写入回滚
"""

import asyncio
import logging
import pytest
from unittest.mock import AsyncMock, MagicMock

from course_commerce.services.realtime_sync import (
    RealtimeSyncService,
    RedisSnapshotSource,
    subscription_key,
)

from conftest import MemorySnapshotSource


def test_subscription_key_ignores_filter_order():
    assert subscription_key("enrollments", {"user_id": "u1", "status": "SUCCESS"}) == \
        subscription_key("enrollments", {"status": "SUCCESS", "user_id": "u1"})
    assert subscription_key("enrollments", {"user_id": "u1"}) != subscription_key("enrollments", {"user_id": "u2"})
    assert subscription_key("courses") == subscription_key("courses", {})


@pytest.mark.asyncio
class TestRealtimeSyncService:
    """实时同步测试类"""

    @pytest.fixture
    def source(self):
        return MemorySnapshotSource({"courses": [{"id": "C1", "title": "Python", "total_enrollments": 3}]})

    @pytest.fixture
    def sync(self, source):
        return RealtimeSyncService(source)

    async def test_identical_queries_share_subscription(self, sync, source):
        """测试相同查询只建立一个底层订阅"""
        first = await sync.subscribe("enrollments", {"user_id": "u1", "status": "SUCCESS"})
        second = await sync.subscribe("enrollments", {"status": "SUCCESS", "user_id": "u1"})

        assert first.key == second.key
        assert len(source.subscribe_calls) == 1
        assert sync.active_keys == [first.key]

    async def test_concurrent_subscribe_dedup(self, sync, source):
        handles = await asyncio.gather(*[sync.subscribe("courses") for _ in range(5)])
        assert len(source.subscribe_calls) == 1
        assert len({h.key for h in handles}) == 1

    async def test_last_release_unsubscribes(self, sync, source):
        """测试最后一个使用方离开时退订"""
        first = await sync.subscribe("courses")
        second = await sync.subscribe("courses")

        await first.close()
        assert source.unsubscribed == []

        await first.close()  # 重复关闭无效
        assert source.unsubscribed == []

        await second.close()
        assert source.unsubscribed == [second.key]
        assert sync.active_keys == []

    async def test_snapshot_replaces_cache(self, sync, source):
        """测试新快照整体替换本地缓存"""
        received = []
        handle = await sync.subscribe("courses", listener=received.append)
        assert handle.docs == [{"id": "C1", "title": "Python", "total_enrollments": 3}]

        source.push("courses", {}, [{"id": "C2", "title": "Go"}])

        assert handle.docs == [{"id": "C2", "title": "Go"}]
        assert received == [[{"id": "C2", "title": "Go"}]]

    async def test_optimistic_update_applied_before_commit(self, sync):
        handle = await sync.subscribe("courses")
        seen_during_commit = []

        async def commit():
            seen_during_commit.extend(handle.docs)
            return "ok"

        result = await sync.update_course("C1", {"title": "Python 2"}, commit)

        assert result == "ok"
        assert seen_during_commit[0]["title"] == "Python 2"
        assert handle.docs[0]["title"] == "Python 2"

    async def test_failed_commit_rolls_back(self, sync):
        """测试提交失败时回滚本地缓存并抛出异常"""
        received = []
        handle = await sync.subscribe("courses", listener=received.append)

        async def commit():
            raise RuntimeError("write rejected")

        with pytest.raises(RuntimeError):
            await sync.update_course("C1", {"title": "坏数据"}, commit)

        assert handle.docs == [{"id": "C1", "title": "Python", "total_enrollments": 3}]
        assert received[-1] == handle.docs

    async def test_snapshot_during_commit_wins(self, sync, source):
        """测试提交期间收到新快照时不再回滚"""
        handle = await sync.subscribe("courses")

        async def commit():
            source.push("courses", {}, [{"id": "C1", "title": "服务端版本"}])
            raise RuntimeError("write rejected")

        with pytest.raises(RuntimeError):
            await sync.update_course("C1", {"title": "本地版本"}, commit)

        assert handle.docs == [{"id": "C1", "title": "服务端版本"}]

    async def test_create_respects_filters(self, sync):
        """测试乐观创建只进入匹配条件的订阅"""
        mine = await sync.subscribe("enrollments", {"user_id": "u1"})
        others = await sync.subscribe("enrollments", {"user_id": "u2"})
        doc = {"enrollment_id": "ENR_1", "user_id": "u1", "course_id": "C1", "status": "SUCCESS"}

        async def commit():
            return doc

        await sync.create_enrollment(doc, commit)

        assert [d["id"] for d in mine.docs] == ["ENR_1"]
        assert others.docs == []

    async def test_update_unknown_doc_is_noop(self, sync):
        handle = await sync.subscribe("courses")

        async def commit():
            return None

        await sync.update_course("C404", {"title": "x"}, commit)
        assert [d["id"] for d in handle.docs] == ["C1"]

    async def test_progress_upsert_by_user_and_course(self, sync):
        """测试首次观看创建进度文档，之后按同一id更新"""
        handle = await sync.subscribe("progress", {"user_id": "u1"})

        async def commit():
            return True

        await sync.update_progress("u1", "C1", {"completion_percentage": 40}, commit)
        assert handle.docs == [{"id": "u1:C1", "user_id": "u1", "course_id": "C1", "completion_percentage": 40}]

        await sync.update_progress("u1", "C1", {"completion_percentage": 90}, commit)
        assert len(handle.docs) == 1
        assert handle.docs[0]["completion_percentage"] == 90

        await sync.update_progress("u2", "C1", {"completion_percentage": 10}, commit)
        assert [d["id"] for d in handle.docs] == ["u1:C1"]

    async def test_close_unsubscribes_everything(self, sync, source):
        await sync.subscribe("courses")
        await sync.subscribe("enrollments", {"user_id": "u1"})

        await sync.close()

        assert len(source.unsubscribed) == 2
        assert sync.active_keys == []


@pytest.mark.asyncio
class TestRedisSnapshotSource:
    """Redis快照来源测试"""

    async def test_initial_load_and_unsubscribe(self):
        pubsub = MagicMock()
        pubsub.subscribe = AsyncMock()
        pubsub.unsubscribe = AsyncMock()
        pubsub.aclose = AsyncMock()

        async def listen():
            await asyncio.Event().wait()
            yield {}

        pubsub.listen = listen
        manager = MagicMock()
        manager.pubsub.return_value = pubsub
        loader = AsyncMock(return_value=[{"id": "C1"}])
        snapshots = []

        source = RedisSnapshotSource(manager=manager, loader=loader)
        unsubscribe = await source.subscribe("courses", {"is_published": True}, snapshots.append)

        pubsub.subscribe.assert_awaited_once_with("changes:courses")
        loader.assert_awaited_once_with("courses", {"is_published": True})
        assert snapshots == [[{"id": "C1"}]]

        await unsubscribe()
        pubsub.unsubscribe.assert_awaited_once()
        pubsub.aclose.assert_awaited_once()

    def make_pubsub(self, messages=()):
        """消息发完后保持阻塞的 pubsub"""
        pubsub = MagicMock()
        pubsub.subscribe = AsyncMock()
        pubsub.unsubscribe = AsyncMock()
        pubsub.aclose = AsyncMock()

        async def listen():
            for message in messages:
                yield message
            await asyncio.Event().wait()

        pubsub.listen = listen
        manager = MagicMock()
        manager.pubsub.return_value = pubsub
        return manager, pubsub

    async def test_initial_load_failure_releases_pubsub(self):
        """测试首次加载失败时关闭 pubsub，同步层也不留下订阅"""
        manager, pubsub = self.make_pubsub()
        loader = AsyncMock(side_effect=ConnectionError("database down"))
        sync = RealtimeSyncService(RedisSnapshotSource(manager=manager, loader=loader))

        with pytest.raises(ConnectionError):
            await sync.subscribe("courses")

        pubsub.unsubscribe.assert_awaited_once()
        pubsub.aclose.assert_awaited_once()
        assert sync.active_keys == []

    async def test_change_message_reloads_snapshot(self):
        """测试收到 changes:<collection> 消息后重新查询并推送快照"""
        manager, pubsub = self.make_pubsub([
            {"type": "subscribe", "data": 1},
            {"type": "message", "data": "C1"},
        ])
        loader = AsyncMock(side_effect=[[{"id": "C1", "title": "旧"}], [{"id": "C1", "title": "新"}]])
        reloaded = asyncio.Event()
        snapshots = []

        def on_snapshot(docs):
            snapshots.append(docs)
            if len(snapshots) == 2:
                reloaded.set()

        source = RedisSnapshotSource(manager=manager, loader=loader)
        unsubscribe = await source.subscribe("courses", {}, on_snapshot)
        await asyncio.wait_for(reloaded.wait(), timeout=1)

        assert loader.await_count == 2
        assert snapshots == [[{"id": "C1", "title": "旧"}], [{"id": "C1", "title": "新"}]]
        await unsubscribe()

    async def test_listener_failure_is_logged(self, caplog):
        """测试监听任务异常退出时记录错误日志"""
        pubsub = MagicMock()
        pubsub.subscribe = AsyncMock()
        pubsub.unsubscribe = AsyncMock()
        pubsub.aclose = AsyncMock()

        async def listen():
            raise ConnectionError("redis connection lost")
            yield {}

        pubsub.listen = listen
        manager = MagicMock()
        manager.pubsub.return_value = pubsub
        loader = AsyncMock(return_value=[])

        source = RedisSnapshotSource(manager=manager, loader=loader)
        with caplog.at_level(logging.ERROR, logger="course_commerce.services.realtime_sync"):
            unsubscribe = await source.subscribe("enrollments", {}, lambda docs: None)
            for _ in range(5):
                await asyncio.sleep(0)

        assert "变更通知监听中断" in caplog.text
        assert "redis connection lost" in caplog.text
        await unsubscribe()
