import redis.asyncio as aioredis
from redis.asyncio.client import PubSub
import json
from typing import Any, Optional
from course_commerce.core.config import settings
import structlog

"redis连接管理器以及集合变更通知"

logger = structlog.get_logger()

CHANGE_CHANNEL_PREFIX = "changes:"


class RedisManager:
    """Redis连接管理器"""

    def __init__(self):
        self.redis_pool: Optional[aioredis.Redis] = None

    async def init_redis(self) -> None:
        """初始化Redis连接池"""
        try:
            self.redis_pool = aioredis.from_url(
                settings.redis_url_computed,
                encoding="utf-8",
                decode_responses=True,
                max_connections=20,
                retry_on_timeout=True
            )
            # 测试连接
            await self.redis_pool.ping()
            logger.info("Redis连接初始化成功")
        except Exception as e:
            logger.error("Redis连接初始化失败", error=str(e))
            raise

    async def close_redis(self) -> None:
        """关闭Redis连接"""
        if self.redis_pool:
            await self.redis_pool.close()
            logger.info("Redis连接已关闭")

    async def publish(self, channel: str, message: Any) -> int:
        """发布消息，返回接收者数量"""
        try:
            if isinstance(message, (dict, list)):
                message = json.dumps(message, ensure_ascii=False, default=str)
            return await self.redis_pool.publish(channel, message)
        except Exception as e:
            logger.error("Redis发布消息失败", channel=channel, error=str(e))
            return 0

    def pubsub(self) -> PubSub:
        """创建订阅对象"""
        if not self.redis_pool:
            raise RuntimeError("Redis未初始化，请先调用 init_redis()")
        return self.redis_pool.pubsub(ignore_subscribe_messages=True)


# 全局Redis管理器实例
redis_manager = RedisManager()


class ChangeNotifier:
    """集合变更通知（写入提交后发布）"""

    def __init__(self, manager: RedisManager):
        self.redis = manager

    @staticmethod
    def channel_for(collection: str) -> str:
        return f"{CHANGE_CHANNEL_PREFIX}{collection}"

    async def notify(self, collection: str, doc_id: Optional[str] = None) -> None:
        """通知订阅者某个集合发生了变化"""
        if not self.redis.redis_pool:
            logger.debug("Redis未初始化，跳过变更通知", collection=collection)
            return
        await self.redis.publish(
            self.channel_for(collection),
            {"collection": collection, "doc_id": doc_id}
        )


# 全局变更通知实例
change_notifier = ChangeNotifier(redis_manager)
