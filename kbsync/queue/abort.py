"""
预测任务取消

按 (flow_id, chat_id) 登记取消信号。queue 模式下预测在 worker 进程中执行，
取消请求通过 Redis 发布/订阅转发给所有 worker。
"""

import asyncio
import json
import logging

import redis.asyncio as aioredis

from kbsync.config import Settings, get_settings

logger = logging.getLogger(__name__)


def _abort_key(flow_id: str, chat_id: str) -> str:
    return f"{flow_id}_{chat_id}"


class AbortRegistry:
    """进程内的取消信号表"""

    def __init__(self) -> None:
        self._signals: dict[str, asyncio.Event] = {}

    def register(self, flow_id: str, chat_id: str) -> asyncio.Event:
        return self._signals.setdefault(_abort_key(flow_id, chat_id), asyncio.Event())

    def abort(self, flow_id: str, chat_id: str) -> bool:
        """触发取消，返回是否存在对应的任务"""
        signal = self._signals.pop(_abort_key(flow_id, chat_id), None)
        if signal is None:
            return False
        signal.set()
        return True

    def remove(self, flow_id: str, chat_id: str) -> None:
        self._signals.pop(_abort_key(flow_id, chat_id), None)

    def __contains__(self, key: tuple[str, str]) -> bool:
        return _abort_key(*key) in self._signals


def abort_channel(settings: Settings) -> str:
    return f"{settings.queue_prefix}:abort"


class AbortPublisher:
    """
    发送取消请求

    direct 模式直接触发本进程的取消信号；queue 模式发布到 Redis 频道。
    """

    def __init__(
        self,
        registry: AbortRegistry,
        client: aioredis.Redis | None = None,
        settings: Settings | None = None,
    ):
        self.registry = registry
        self.client = client
        self.settings = settings or get_settings()

    async def abort(self, flow_id: str, chat_id: str) -> None:
        if self.settings.mode != "queue" or self.client is None:
            self.registry.abort(flow_id, chat_id)
            return
        message = json.dumps({"flow_id": flow_id, "chat_id": chat_id})
        await self.client.publish(abort_channel(self.settings), message)
        logger.info(f"已发布取消请求: {flow_id} / {chat_id}")


class AbortSubscriber:
    """worker 端订阅取消请求"""

    def __init__(self, registry: AbortRegistry, client: aioredis.Redis, settings: Settings | None = None):
        self.registry = registry
        self.client = client
        self.settings = settings or get_settings()

    def handle_message(self, raw: str) -> bool:
        try:
            data = json.loads(raw)
            flow_id, chat_id = data["flow_id"], data["chat_id"]
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            logger.warning(f"无法解析取消请求: {raw} ({e})")
            return False
        return self.registry.abort(flow_id, chat_id)

    async def run(self, stop_event: asyncio.Event) -> None:
        pubsub = self.client.pubsub()
        await pubsub.subscribe(abort_channel(self.settings))
        try:
            while not stop_event.is_set():
                message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                if message and message.get("type") == "message":
                    self.handle_message(message["data"])
        finally:
            await pubsub.unsubscribe(abort_channel(self.settings))
            await pubsub.aclose()
