"""
Redis 任务队列

每个 (租户, 队列类别) 一个队列，名称为 {prefix}:{tenant_id}:{class}。

键结构：
- {name}:wait          待处理任务 ID 列表（LPUSH 入队，BLMOVE 出队）
- {name}:active        已被 worker 取走、尚未写回结果的任务 ID
- {name}:job:{id}      任务详情 hash（data / status / created_at）
- {name}:done:{id}     任务完成事件列表，worker RPUSH 结果，提交方 BLPOP 等待

worker 取任务时用 BLMOVE 原子地把任务 ID 从 :wait 移到 :active，写回结果后移除。
worker 中途退出时任务留在 :active 中，超过 stale_after 秒后由 requeue_stale 放回 :wait。
"""

import json
import logging
import time
from typing import Any, Callable
from uuid import uuid4

import redis.asyncio as aioredis

from kbsync.config import Settings, get_settings
from kbsync.exceptions import QueueExecutionError
from kbsync.services.tenant_config import TenantConfigService

logger = logging.getLogger(__name__)

RedisFactory = Callable[[str], aioredis.Redis]


def _default_redis_factory(url: str) -> aioredis.Redis:
    return aioredis.from_url(url, encoding="utf-8", decode_responses=True)


def queue_name(prefix: str, tenant_id: str, queue_class: str) -> str:
    return f"{prefix}:{tenant_id}:{queue_class}"


class RedisJobQueue:
    """单个命名队列"""

    def __init__(self, client: aioredis.Redis, name: str, result_ttl: int = 3600, stale_after: float = 600.0):
        self.client = client
        self.name = name
        self.result_ttl = result_ttl
        self.stale_after = stale_after

    @property
    def wait_key(self) -> str:
        return f"{self.name}:wait"

    @property
    def active_key(self) -> str:
        return f"{self.name}:active"

    def job_key(self, job_id: str) -> str:
        return f"{self.name}:job:{job_id}"

    def done_key(self, job_id: str) -> str:
        return f"{self.name}:done:{job_id}"

    async def add_job(self, data: dict[str, Any]) -> str:
        """入队，返回任务 ID"""
        job_id = str(uuid4())
        await self.client.hset(self.job_key(job_id), mapping={
            "data": json.dumps(data, ensure_ascii=False),
            "status": "waiting",
            "created_at": str(time.time()),
        })
        await self.client.lpush(self.wait_key, job_id)
        logger.debug(f"任务已入队: {self.name} / {job_id}")
        return job_id

    async def wait_until_finished(self, job_id: str, timeout: float) -> dict[str, Any] | None:
        """
        阻塞等待任务完成

        Returns:
            worker 写回的结果 {"status": "completed" | "failed", ...}

        Raises:
            QueueExecutionError: 等待超时
        """
        item = await self.client.blpop([self.done_key(job_id)], timeout=timeout)
        if item is None:
            raise QueueExecutionError(f"等待任务 {job_id} 完成超时（{timeout}s）")
        _, raw = item
        return json.loads(raw) if raw else None

    async def fetch_job(self, timeout: float = 1.0) -> tuple[str, dict[str, Any]] | None:
        """worker 取出一个任务，队列为空时返回 None"""
        job_id = await self.client.blmove(self.wait_key, self.active_key, timeout, "RIGHT", "LEFT")
        if job_id is None:
            return None
        raw = await self.client.hget(self.job_key(job_id), "data")
        if raw is None:
            logger.warning(f"任务数据不存在: {self.name} / {job_id}")
            await self.client.lrem(self.active_key, 1, job_id)
            return None
        await self.client.hset(self.job_key(job_id), mapping={"status": "active", "started_at": str(time.time())})
        return job_id, json.loads(raw)

    async def complete(self, job_id: str, outcome: dict[str, Any]) -> None:
        """写回任务结果并通知等待方"""
        done_key = self.done_key(job_id)
        job_key = self.job_key(job_id)
        await self.client.hset(job_key, "status", outcome.get("status", "completed"))
        await self.client.rpush(done_key, json.dumps(outcome, ensure_ascii=False))
        await self.client.expire(done_key, self.result_ttl)
        await self.client.expire(job_key, self.result_ttl)
        await self.client.lrem(self.active_key, 1, job_id)

    async def waiting_count(self) -> int:
        return int(await self.client.llen(self.wait_key))

    async def requeue_stale(self) -> list[str]:
        """
        把超过 stale_after 秒仍未完成的任务放回待处理列表

        Returns:
            被放回的任务 ID
        """
        now = time.time()
        requeued = []
        for job_id in await self.client.lrange(self.active_key, 0, -1):
            job_key = self.job_key(job_id)
            if await self.client.hget(job_key, "status") in ("completed", "failed"):
                # 结果已写回，只是没来得及移出 :active
                await self.client.lrem(self.active_key, 1, job_id)
                continue
            since = await self.client.hget(job_key, "started_at") or await self.client.hget(job_key, "created_at")
            if since is not None and now - float(since) < self.stale_after:
                continue
            # 多个 worker 同时检查时只有 LREM 成功的一方放回
            if not await self.client.lrem(self.active_key, 1, job_id):
                continue
            await self.client.hset(job_key, "status", "waiting")
            await self.client.rpush(self.wait_key, job_id)
            requeued.append(job_id)

        if requeued:
            logger.warning(f"队列 {self.name} 重新投递 {len(requeued)} 个超时任务: {requeued}")
        return requeued


class QueueManager:
    """
    队列管理器

    按 (租户, 队列类别) 创建并复用队列；同一个 Redis URL 复用同一个客户端。
    """

    def __init__(
        self,
        tenants: TenantConfigService,
        settings: Settings | None = None,
        redis_factory: RedisFactory | None = None,
    ):
        self.tenants = tenants
        self.settings = settings or get_settings()
        self._redis_factory = redis_factory or _default_redis_factory
        self._clients: dict[str, aioredis.Redis] = {}
        self._queues: dict[tuple[str, str], RedisJobQueue] = {}

    def get_queue(self, tenant_id: str, queue_class: str) -> RedisJobQueue:
        key = (tenant_id, queue_class)
        queue = self._queues.get(key)
        if queue is not None:
            return queue

        queue = RedisJobQueue(
            self.client_for(tenant_id),
            queue_name(self.settings.queue_prefix, tenant_id, queue_class),
            result_ttl=self.settings.queue_result_ttl,
            stale_after=self.settings.queue_stale_after,
        )
        self._queues[key] = queue
        logger.info(f"队列已创建: {queue.name}")
        return queue

    def client_for(self, tenant_id: str | None = None) -> aioredis.Redis:
        url = self.settings.redis_url
        if tenant_id and self.tenants.has(tenant_id):
            url = self.tenants.get(tenant_id).redis_url or url
        client = self._clients.get(url)
        if client is None:
            client = self._redis_factory(url)
            self._clients[url] = client
        return client

    async def close(self) -> None:
        clients = list(self._clients.values())
        self._clients.clear()
        self._queues.clear()
        for client in clients:
            try:
                await client.aclose()
            except Exception as e:  # noqa: BLE001
                logger.warning(f"关闭 Redis 客户端失败: {e}")
