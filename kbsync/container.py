"""
应用上下文

进程内共享的对象（租户连接注册表、组件工厂、文件存储、队列管理器、任务分发器）
在这里显式构造，由 FastAPI lifespan 或 worker 入口创建后传给使用方。
"""

import logging
from dataclasses import dataclass, field
from typing import Any

from kbsync.capabilities.factory import CapabilityFactory
from kbsync.capabilities.registry import build_default_registry
from kbsync.capabilities.vector_store import MemoryVectorBackend
from kbsync.config import Settings, get_settings
from kbsync.db.registry import ConnectionRegistry, EngineFactory, TenantConnection
from kbsync.infra.metrics import MetricsCollector, metrics_collector
from kbsync.queue.abort import AbortPublisher, AbortRegistry
from kbsync.queue.dispatcher import JobDispatcher
from kbsync.queue.executor import Handler, JobExecutor
from kbsync.queue.redis_queue import QueueManager, RedisFactory
from kbsync.schemas.job import OperationKind
from kbsync.services.chunk_store import ChunkStore
from kbsync.services.document_store import DocumentStoreService
from kbsync.services.file_storage import LocalFileStorage
from kbsync.services.ingestion import IngestionPipeline
from kbsync.services.tenant_config import TenantConfigService

logger = logging.getLogger(__name__)


@dataclass
class TenantServices:
    """绑定到单个租户连接的服务集合"""
    tenant_id: str
    chunk_store: ChunkStore
    stores: DocumentStoreService
    pipeline: IngestionPipeline


@dataclass
class AppContext:
    settings: Settings
    tenants: TenantConfigService
    registry: ConnectionRegistry
    factory: CapabilityFactory
    file_storage: LocalFileStorage
    queue_manager: QueueManager
    abort_registry: AbortRegistry
    collector: MetricsCollector
    executor: JobExecutor = field(init=False)
    dispatcher: JobDispatcher = field(init=False)

    @classmethod
    def create(
        cls,
        settings: Settings | None = None,
        tenants: TenantConfigService | None = None,
        engine_factory: EngineFactory | None = None,
        redis_factory: RedisFactory | None = None,
        shared: dict[str, Any] | None = None,
        handlers: dict[OperationKind, Handler] | None = None,
        collector: MetricsCollector | None = None,
    ) -> "AppContext":
        settings = settings or get_settings()
        tenants = tenants or TenantConfigService.from_settings(settings)
        collector = collector or metrics_collector
        shared = {"vector_backend": MemoryVectorBackend(), **(shared or {})}

        context = cls(
            settings=settings,
            tenants=tenants,
            registry=ConnectionRegistry(tenants, settings, engine_factory=engine_factory),
            factory=CapabilityFactory(build_default_registry(), shared=shared, collector=collector),
            file_storage=LocalFileStorage(settings.file_storage_path),
            queue_manager=QueueManager(tenants, settings, redis_factory=redis_factory),
            abort_registry=AbortRegistry(),
            collector=collector,
        )
        context.executor = JobExecutor(context, handlers)
        context.dispatcher = JobDispatcher(context.executor, context.queue_manager, settings)
        return context

    def services_for(self, conn: TenantConnection) -> TenantServices:
        chunk_store = ChunkStore(conn.session_factory, self.settings)
        stores = DocumentStoreService(conn.tenant_id, chunk_store, self.file_storage)
        pipeline = IngestionPipeline(
            conn.tenant_id, chunk_store, stores, self.factory, self.file_storage, self.settings,
        )
        return TenantServices(conn.tenant_id, chunk_store, stores, pipeline)

    async def tenant_services(self, tenant_id: str) -> TenantServices:
        return self.services_for(await self.registry.ensure_initialized(tenant_id))

    def abort_publisher(self) -> AbortPublisher:
        client = self.queue_manager.client_for() if self.settings.mode == "queue" else None
        return AbortPublisher(self.abort_registry, client, self.settings)

    async def close(self) -> None:
        await self.queue_manager.close()
        await self.registry.close_all()
