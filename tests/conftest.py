"""
测试公共 fixture

每个测试使用临时目录下的 SQLite 文件作为租户库（aiosqlite 驱动），
建连时自动建表。
"""

import asyncio
import time
from collections import defaultdict

import pytest
import pytest_asyncio

from kbsync.config import Settings
from kbsync.container import AppContext
from kbsync.infra.metrics import MetricsCollector
from kbsync.schemas.document_store import DocumentStoreCreate, LoaderDescriptor
from kbsync.schemas.tenant import TenantConfig, TenantDBConfig
from kbsync.services.tenant_config import TenantConfigService

TENANT_A = "org_a"
TENANT_B = "org_b"


def sqlite_tenant(tenant_id: str, path) -> TenantConfig:
    return TenantConfig(id=tenant_id, db=TenantDBConfig(kind="sqlite", database=str(path)))


def text_loader(text: str, chunk_size: int = 40, chunk_overlap: int = 0, **kwargs) -> LoaderDescriptor:
    """纯文本 loader + 定长切分器"""
    return LoaderDescriptor(
        loader_name="text",
        loader_config={"text": text},
        splitter_name="character",
        splitter_config={"chunk_size": chunk_size, "chunk_overlap": chunk_overlap},
        **kwargs,
    )


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        environment="test",
        mode="direct",
        file_storage_path=str(tmp_path / "storage"),
        enable_schema_provisioning=True,
        connect_retry_base_delay=2.0,
        connect_max_retries=3,
        loaders_max_retries=3,
        chunk_page_size=50,
        tenants_file=None,
        tenants_json=None,
        use_local_db=False,
    )


@pytest.fixture
def tenants(settings, tmp_path) -> TenantConfigService:
    return TenantConfigService(
        [
            sqlite_tenant(TENANT_A, tmp_path / "org_a.db"),
            sqlite_tenant(TENANT_B, tmp_path / "org_b.db"),
        ],
        settings,
    )


@pytest.fixture
def collector() -> MetricsCollector:
    return MetricsCollector()


@pytest_asyncio.fixture
async def context(settings, tenants, collector):
    ctx = AppContext.create(settings, tenants, collector=collector)
    yield ctx
    await ctx.close()


@pytest_asyncio.fixture
async def services(context):
    """租户 A 的服务集合"""
    return await context.tenant_services(TENANT_A)


@pytest_asyncio.fixture
async def store(services):
    """租户 A 下新建的空知识库"""
    return await services.stores.create_store(DocumentStoreCreate(name="测试知识库", created_by="tester"))


class FakeRedis:
    """内存版 Redis，只实现任务队列与取消通知用到的命令"""

    def __init__(self):
        self.lists: dict[str, list[str]] = defaultdict(list)
        self.hashes: dict[str, dict[str, str]] = defaultdict(dict)
        self.expires: dict[str, int] = {}
        self.published: list[tuple[str, str]] = []
        self.closed = False

    async def hset(self, key, field=None, value=None, mapping=None):
        if mapping:
            self.hashes[key].update(mapping)
        if field is not None:
            self.hashes[key][field] = value
        return 1

    async def hget(self, key, field):
        return self.hashes.get(key, {}).get(field)

    async def lpush(self, key, *values):
        for value in values:
            self.lists[key].insert(0, value)
        return len(self.lists[key])

    async def rpush(self, key, *values):
        self.lists[key].extend(values)
        return len(self.lists[key])

    async def llen(self, key):
        return len(self.lists.get(key, []))

    async def expire(self, key, seconds):
        self.expires[key] = seconds
        return True

    async def _blocking_pop(self, keys, timeout, from_end: bool):
        deadline = time.monotonic() + (timeout or 0)
        while True:
            for key in keys:
                if self.lists.get(key):
                    value = self.lists[key].pop() if from_end else self.lists[key].pop(0)
                    return key, value
            if time.monotonic() >= deadline:
                return None
            await asyncio.sleep(0.005)

    async def brpop(self, keys, timeout=0):
        return await self._blocking_pop(keys, timeout, from_end=True)

    async def blpop(self, keys, timeout=0):
        return await self._blocking_pop(keys, timeout, from_end=False)

    async def blmove(self, source, destination, timeout, src="LEFT", dest="RIGHT"):
        item = await self._blocking_pop([source], timeout, from_end=src == "RIGHT")
        if item is None:
            return None
        _, value = item
        if dest == "LEFT":
            self.lists[destination].insert(0, value)
        else:
            self.lists[destination].append(value)
        return value

    async def lrange(self, key, start, end):
        values = self.lists.get(key, [])
        return list(values[start:] if end == -1 else values[start:end + 1])

    async def lrem(self, key, count, value):
        values = self.lists.get(key, [])
        removed = 0
        while value in values and (count == 0 or removed < abs(count)):
            values.remove(value)
            removed += 1
        return removed

    async def publish(self, channel, message):
        self.published.append((channel, message))
        return 1

    async def aclose(self):
        self.closed = True


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()
