"""
Redis 队列与取消通知测试（内存版 Redis）
"""

import asyncio
import json
import time
from unittest.mock import AsyncMock

import pytest

from conftest import TENANT_A, TENANT_B, FakeRedis, sqlite_tenant
from kbsync.exceptions import QueueExecutionError
from kbsync.queue.abort import AbortPublisher, AbortRegistry, AbortSubscriber, abort_channel
from kbsync.queue.redis_queue import QueueManager, RedisJobQueue, queue_name
from kbsync.services.tenant_config import TenantConfigService


class TestRedisJobQueue:
    """测试单个命名队列"""

    @pytest.fixture
    def queue(self, fake_redis):
        return RedisJobQueue(fake_redis, queue_name("kbsync", TENANT_A, "upsert"), result_ttl=60)

    def test_queue_name(self):
        assert queue_name("kbsync", "org_1", "prediction") == "kbsync:org_1:prediction"

    @pytest.mark.asyncio
    async def test_fetch_in_submission_order(self, queue, fake_redis):
        first = await queue.add_job({"n": 1})
        second = await queue.add_job({"n": 2})

        assert await queue.waiting_count() == 2
        assert await queue.fetch_job(0.01) == (first, {"n": 1})
        assert await queue.fetch_job(0.01) == (second, {"n": 2})
        assert fake_redis.hashes[queue.job_key(first)]["status"] == "active"

    @pytest.mark.asyncio
    async def test_fetch_empty(self, queue):
        assert await queue.fetch_job(0.01) is None

    @pytest.mark.asyncio
    async def test_complete_and_wait(self, queue, fake_redis):
        job_id = await queue.add_job({"n": 1})
        outcome = {"status": "completed", "result": {"中文": "结果"}}

        await queue.complete(job_id, outcome)

        assert await queue.wait_until_finished(job_id, timeout=0.1) == outcome
        assert fake_redis.hashes[queue.job_key(job_id)]["status"] == "completed"
        assert fake_redis.expires[queue.done_key(job_id)] == 60

    @pytest.mark.asyncio
    async def test_wait_timeout(self, queue):
        job_id = await queue.add_job({"n": 1})
        with pytest.raises(QueueExecutionError):
            await queue.wait_until_finished(job_id, timeout=0.02)

    @pytest.mark.asyncio
    async def test_fetched_job_tracked_until_complete(self, queue, fake_redis):
        job_id = await queue.add_job({"n": 1})

        await queue.fetch_job(0.01)
        assert fake_redis.lists[queue.active_key] == [job_id]
        assert await queue.waiting_count() == 0

        await queue.complete(job_id, {"status": "completed", "result": {}})
        assert fake_redis.lists[queue.active_key] == []

    @pytest.mark.asyncio
    async def test_requeue_job_of_dead_worker(self, queue, fake_redis):
        job_id = await queue.add_job({"n": 1})
        await queue.fetch_job(0.01)
        # worker 取走任务后退出，没有写回结果
        fake_redis.hashes[queue.job_key(job_id)]["started_at"] = str(time.time() - 3600)

        assert await queue.requeue_stale() == [job_id]
        assert fake_redis.lists[queue.active_key] == []
        assert fake_redis.hashes[queue.job_key(job_id)]["status"] == "waiting"
        assert await queue.fetch_job(0.01) == (job_id, {"n": 1})

    @pytest.mark.asyncio
    async def test_running_job_not_requeued(self, queue, fake_redis):
        job_id = await queue.add_job({"n": 1})
        await queue.fetch_job(0.01)

        assert await queue.requeue_stale() == []
        assert fake_redis.lists[queue.active_key] == [job_id]
        assert await queue.waiting_count() == 0

    @pytest.mark.asyncio
    async def test_finished_job_left_in_active_is_dropped(self, queue, fake_redis):
        job_id = await queue.add_job({"n": 1})
        await queue.fetch_job(0.01)
        fake_redis.hashes[queue.job_key(job_id)].update(status="completed", started_at=str(time.time() - 3600))

        assert await queue.requeue_stale() == []
        assert fake_redis.lists[queue.active_key] == []
        assert await queue.waiting_count() == 0


class TestQueueManager:
    """测试队列管理器"""

    @pytest.fixture
    def manager_and_urls(self, settings, tmp_path):
        tenants = TenantConfigService(
            [
                sqlite_tenant(TENANT_A, tmp_path / "a.db"),
                sqlite_tenant(TENANT_B, tmp_path / "b.db").model_copy(update={"redis_url": "redis://tenant-b:6379/0"}),
            ],
            settings,
        )
        urls: list[str] = []

        def factory(url: str) -> FakeRedis:
            urls.append(url)
            return FakeRedis()

        return QueueManager(tenants, settings, redis_factory=factory), urls

    def test_queue_reused(self, manager_and_urls):
        manager, _ = manager_and_urls
        assert manager.get_queue(TENANT_A, "upsert") is manager.get_queue(TENANT_A, "upsert")
        assert manager.get_queue(TENANT_A, "upsert") is not manager.get_queue(TENANT_A, "prediction")

    def test_tenant_redis_override(self, manager_and_urls, settings):
        manager, urls = manager_and_urls
        manager.get_queue(TENANT_A, "upsert")
        manager.get_queue(TENANT_A, "prediction")
        manager.get_queue(TENANT_B, "upsert")

        assert urls == [settings.redis_url, "redis://tenant-b:6379/0"]

    @pytest.mark.asyncio
    async def test_close(self, manager_and_urls):
        manager, _ = manager_and_urls
        client = manager.get_queue(TENANT_A, "upsert").client

        await manager.close()

        assert client.closed
        assert manager.get_queue(TENANT_A, "upsert").client is not client


class TestAbort:
    """测试预测任务取消"""

    def test_registry(self):
        registry = AbortRegistry()
        signal = registry.register("flow", "chat")

        assert ("flow", "chat") in registry
        assert registry.abort("flow", "chat") is True
        assert signal.is_set()
        assert ("flow", "chat") not in registry
        assert registry.abort("flow", "chat") is False

    @pytest.mark.asyncio
    async def test_direct_mode_aborts_locally(self, settings):
        registry = AbortRegistry()
        signal = registry.register("flow", "chat")

        await AbortPublisher(registry, None, settings).abort("flow", "chat")

        assert signal.is_set()

    @pytest.mark.asyncio
    async def test_queue_mode_publishes(self, settings, fake_redis):
        queue_settings = settings.model_copy(update={"mode": "queue"})
        registry = AbortRegistry()
        signal = registry.register("flow", "chat")

        await AbortPublisher(registry, fake_redis, queue_settings).abort("flow", "chat")

        assert not signal.is_set()
        channel, message = fake_redis.published[0]
        assert channel == abort_channel(queue_settings)
        assert json.loads(message) == {"flow_id": "flow", "chat_id": "chat"}

    def test_subscriber_handles_message(self, settings, fake_redis):
        registry = AbortRegistry()
        signal = registry.register("flow", "chat")
        subscriber = AbortSubscriber(registry, fake_redis, settings)

        assert subscriber.handle_message(json.dumps({"flow_id": "flow", "chat_id": "chat"})) is True
        assert signal.is_set()
        assert subscriber.handle_message("not json") is False
        assert subscriber.handle_message(json.dumps({"flow_id": "flow"})) is False

    @pytest.mark.asyncio
    async def test_subscriber_run(self, settings):
        registry = AbortRegistry()
        signal = registry.register("flow", "chat")
        stop_event = asyncio.Event()
        message = {"type": "message", "data": json.dumps({"flow_id": "flow", "chat_id": "chat"})}

        async def get_message(**kwargs):
            stop_event.set()
            return message

        pubsub = AsyncMock()
        pubsub.get_message.side_effect = get_message
        client = AsyncMock()
        client.pubsub = lambda: pubsub

        await AbortSubscriber(registry, client, settings).run(stop_event)

        assert signal.is_set()
        pubsub.subscribe.assert_awaited_once_with(abort_channel(settings))
        pubsub.aclose.assert_awaited_once()
