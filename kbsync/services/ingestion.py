"""
文档摄取流水线

流程：加载 → 切分 → 持久化片段 →（可选）向量化入库

- preview_chunks: 只读预览，不落库、不向量化
- process_loader: 处理 loader 并替换其全部片段
- upsert: 把片段写入向量库并记录入库历史
- refresh_store: 重新处理并入库全部 loader
- delete_from_vector_store / query_vector_store

加载与切分是同步代码，在线程池中执行。
"""

import json
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from starlette.concurrency import run_in_threadpool

from kbsync.capabilities.base import (
    KIND_EMBEDDER,
    KIND_LOADER,
    KIND_RECORD_MANAGER,
    KIND_SPLITTER,
    KIND_VECTOR_STORE,
    Document,
)
from kbsync.capabilities.factory import CapabilityFactory
from kbsync.capabilities.loaders.file import is_data_uri, parse_data_uri, split_file_values
from kbsync.capabilities.metering import FEATURE_QUERY, FEATURE_UPSERT
from kbsync.config import Settings, get_settings
from kbsync.exceptions import (
    CapabilityInvocationError,
    ConfigurationError,
    KBSyncError,
    NotFoundError,
    wrap_errors,
)
from kbsync.infra.logging import StageTimer
from kbsync.models import DocumentStoreStatus
from kbsync.schemas.document_store import (
    ChunkPage,
    ComponentConfig,
    LoaderDescriptor,
    LoaderFile,
    PreviewChunk,
    PreviewRequest,
    PreviewResult,
    QueryRequest,
    UpsertRequest,
)
from kbsync.services.chunk_store import ChunkStore, clean_content
from kbsync.services.document_store import DocumentStoreService
from kbsync.services.file_storage import LocalFileStorage, is_placeholder, make_placeholder
from kbsync.services.sync_state import aggregate_status, ensure_can_upsert

logger = logging.getLogger(__name__)

# 入库结果中不对外返回、也不写入历史的字段
_RESULT_OMIT_KEYS = ("total_keys", "added_docs")


class IngestionPipeline:
    """
    单租户的摄取流水线

    使用示例：
        pipeline = IngestionPipeline(tenant_id, chunk_store, stores, factory, file_storage)
        page = await pipeline.process_loader(store_id, descriptor)
        result = await pipeline.upsert(UpsertRequest(store_id=store_id))
    """

    def __init__(
        self,
        tenant_id: str,
        chunk_store: ChunkStore,
        stores: DocumentStoreService,
        factory: CapabilityFactory,
        file_storage: LocalFileStorage,
        settings: Settings | None = None,
    ):
        self.tenant_id = tenant_id
        self.chunk_store = chunk_store
        self.stores = stores
        self.factory = factory
        self.file_storage = file_storage
        self.settings = settings or get_settings()

    # ==================== 预览 ====================

    @wrap_errors("ingestion.preview_chunks")
    async def preview_chunks(self, request: PreviewRequest) -> PreviewResult:
        """
        预览切分结果

        - 网页抓取类 loader 只抓取 preview_scraper_limit 个页面
        - preview_chunk_count 为 -1 或大于总数时返回全部片段
        """
        docs = await self._load_documents(request.store_id, request.loader, for_preview=True)

        total = len(docs)
        count = request.preview_chunk_count
        if count is None:
            count = self.settings.preview_default_chunk_count
        if count == -1 or count > total:
            count = total

        return PreviewResult(
            chunks=[PreviewChunk(page_content=d.page_content, metadata=d.metadata) for d in docs[:count]],
            total_chunks=total,
            preview_chunk_count=count,
        )

    # ==================== 处理 loader ====================

    @wrap_errors("ingestion.save_processing_loader")
    async def save_processing_loader(self, store_id: str, descriptor: LoaderDescriptor) -> LoaderDescriptor:
        """
        保存待处理的 loader

        与已有的同 id loader 合并，统计清零，状态置为 SYNCING。
        配置中新上传的文件先写入文件存储并替换为占位符，文件内容不会进入 loaders 列。
        """
        descriptor = await self._persist_uploads(store_id, descriptor)
        saved: dict[str, LoaderDescriptor] = {}

        def mutation(loaders: list[LoaderDescriptor]) -> list[LoaderDescriptor]:
            incoming = descriptor.model_dump(exclude_unset=True)
            result: list[LoaderDescriptor] = []
            merged = None
            for loader in loaders:
                if loader.id == descriptor.id:
                    merged = LoaderDescriptor.model_validate({**loader.model_dump(), **incoming})
                    result.append(merged)
                else:
                    result.append(loader)
            if merged is None:
                merged = descriptor.model_copy()
                result.append(merged)
            merged.total_chunks = 0
            merged.total_chars = 0
            merged.status = DocumentStoreStatus.SYNCING
            saved["loader"] = merged
            return result

        await self.chunk_store.mutate_loaders(
            store_id,
            mutation,
            status_rule=lambda _loaders, _status: DocumentStoreStatus.SYNCING,
        )
        return saved["loader"]

    @wrap_errors("ingestion.process_loader")
    async def process_loader(self, store_id: str, descriptor: LoaderDescriptor) -> ChunkPage:
        """
        处理 loader

        1. 保存 loader（SYNCING）
        2. 还原文件占位符，加载并切分
        3. 在一个事务内替换该 loader 的全部片段
        4. 按数据库聚合更新统计，loader 置为 SYNC，重新计算知识库状态
        """
        timer = StageTimer()
        loader = await self.save_processing_loader(store_id, descriptor)

        try:
            docs = await self._load_documents(store_id, loader, for_preview=False)
            timer.mark("load")

            total_chunks, total_chars = await self.chunk_store.replace_chunks(store_id, loader.id, docs)
            timer.mark("persist")
        except Exception:
            await self._mark_loader(store_id, loader.id, DocumentStoreStatus.STALE)
            raise

        def mutation(loaders: list[LoaderDescriptor]) -> list[LoaderDescriptor]:
            for item in loaders:
                if item.id == loader.id:
                    item.total_chunks = total_chunks
                    item.total_chars = total_chars
                    item.status = DocumentStoreStatus.SYNC
            return loaders

        _, status = await self.chunk_store.mutate_loaders(
            store_id,
            mutation,
            status_rule=lambda loaders, _status: aggregate_status(loaders),
        )
        logger.info(
            f"loader 处理完成: {loader.id}，片段 {total_chunks}，字符 {total_chars}，知识库状态 {status.value}",
            extra={"timing": timer.get_metrics()},
        )
        return await self.stores.get_chunks(store_id, loader.id)

    # ==================== 向量入库 ====================

    @wrap_errors("ingestion.upsert")
    async def upsert(self, request: UpsertRequest) -> dict[str, Any]:
        """
        把片段写入向量库

        请求中的组件配置会覆盖并保存到知识库；入库期间状态为 UPSERTING，
        失败时状态恢复为入库前的值。
        """
        record = await self.chunk_store.get_store(request.store_id)
        ensure_can_upsert(DocumentStoreStatus(record.status))

        record = await self.stores.save_vector_store_config(
            request.store_id,
            embedding=request.embedding,
            vector_store=request.vector_store,
            record_manager=request.record_manager,
            is_strict_save=request.is_strict_save,
        )
        embedding = _component_from(record.get_component("embedding_config"))
        vector_store = _component_from(record.get_component("vector_store_config"))
        record_manager = _component_from(record.get_component("record_manager_config"))
        if embedding is None:
            raise ConfigurationError("未配置 embedding 组件")
        if vector_store is None:
            raise ConfigurationError("未配置 vector_store 组件")

        if request.loader_id:
            loaders = await self.chunk_store.read_loaders(request.store_id)
            if not any(loader.id == request.loader_id for loader in loaders):
                raise NotFoundError(f"loader 不存在: {request.loader_id}")

        timer = StageTimer()
        async with self._status_guard(request.store_id, DocumentStoreStatus.UPSERTING):
            embedder = self.factory.build_component(
                KIND_EMBEDDER, embedding,
                {"tenant_id": self.tenant_id, "feature": FEATURE_UPSERT},
            )
            manager = None
            if record_manager is not None:
                manager = self.factory.build_component(
                    KIND_RECORD_MANAGER, record_manager,
                    {"session_factory": self.chunk_store.session_factory, "store_id": request.store_id},
                )
                await manager.create_schema()
            store = self.factory.build_component(
                KIND_VECTOR_STORE, vector_store,
                {"tenant_id": self.tenant_id, "store_id": request.store_id, "embedder": embedder},
            )
            timer.mark("build")

            rows = await self.chunk_store.get_chunks(request.store_id, request.loader_id)
            docs = [Document(page_content=r.page_content, metadata=r.get_metadata()) for r in rows]
            timer.mark("read")

            try:
                result = await store.upsert(docs, manager)
            except KBSyncError:
                raise
            except Exception as e:
                raise CapabilityInvocationError(f"向量库 {vector_store.name} 写入失败: {e}") from e
            timer.mark("upsert")

            # 历史与最终状态也在保护范围内，写入失败同样恢复原状态
            summary = {k: v for k, v in (result or {}).items() if k not in _RESULT_OMIT_KEYS}
            flow_data = {
                "embedding": embedding.public_dict(),
                "vector_store": vector_store.public_dict(),
            }
            if record_manager is not None:
                flow_data["record_manager"] = record_manager.public_dict()
            await self.chunk_store.add_history(request.store_id, flow_data, summary)
            await self.chunk_store.set_status(request.store_id, DocumentStoreStatus.UPSERTED)

        logger.info(
            f"知识库 {request.store_id} 入库完成: {summary}",
            extra={"timing": timer.get_metrics()},
        )
        return summary or {"result": "Successfully Upserted"}

    @wrap_errors("ingestion.process_and_upsert")
    async def process_and_upsert(self, store_id: str, descriptor: LoaderDescriptor, request: UpsertRequest | None = None) -> dict[str, Any]:
        """处理单个 loader 后立即对它入库"""
        page = await self.process_loader(store_id, descriptor)
        request = request or UpsertRequest(store_id=store_id)
        result = await self.upsert(request.model_copy(update={"store_id": store_id, "loader_id": page.loader_id}))
        return {"loader_id": page.loader_id, "total_chunks": page.count, **result}

    @wrap_errors("ingestion.refresh_store")
    async def refresh_store(self, store_id: str, items: list[dict[str, Any]] | None = None) -> dict[str, Any]:
        """
        重新处理并入库知识库中的 loader

        items 为空时处理全部 loader；否则只处理列出的 loader，
        每项可附带覆盖的 loader_config / splitter_config。
        """
        loaders = await self.chunk_store.read_loaders(store_id)
        if items:
            by_id = {loader.id: loader for loader in loaders}
            targets: list[LoaderDescriptor] = []
            for item in items:
                loader = by_id.get(item.get("id") or item.get("loader_id", ""))
                if loader is None:
                    raise NotFoundError(f"loader 不存在: {item.get('id') or item.get('loader_id')}")
                overrides = {k: item[k] for k in ("loader_config", "splitter_config") if k in item}
                targets.append(loader.model_copy(update=overrides))
        else:
            targets = loaders

        results = []
        for loader in targets:
            results.append(await self.process_and_upsert(store_id, loader))
        return {"store_id": store_id, "results": results}

    @wrap_errors("ingestion.delete_from_vector_store")
    async def delete_from_vector_store(self, store_id: str) -> dict[str, Any]:
        """
        从向量库删除知识库的全部向量

        有记录管理器时按记录的 key 删除，否则清空向量库集合。
        删除后清空组件配置，状态回到由 loader 决定的 SYNC / STALE。
        """
        record = await self.chunk_store.get_store(store_id)
        vector_store = _component_from(record.get_component("vector_store_config"))
        record_manager = _component_from(record.get_component("record_manager_config"))
        if vector_store is None:
            raise ConfigurationError("未配置 vector_store 组件")

        store = self.factory.build_component(
            KIND_VECTOR_STORE, vector_store,
            {"tenant_id": self.tenant_id, "store_id": store_id},
        )
        deleted = None
        try:
            if record_manager is not None:
                manager = self.factory.build_component(
                    KIND_RECORD_MANAGER, record_manager,
                    {"session_factory": self.chunk_store.session_factory, "store_id": store_id},
                )
                keys = await manager.list_keys()
                await store.delete(keys)
                await manager.delete_keys(keys)
                deleted = len(keys)
            else:
                await store.delete(None)
        except KBSyncError:
            raise
        except Exception as e:
            raise CapabilityInvocationError(f"向量库 {vector_store.name} 删除失败: {e}") from e

        loaders = await self.chunk_store.read_loaders(store_id)
        await self.chunk_store.update_store(
            store_id,
            vector_store_config=None,
            embedding_config=None,
            record_manager_config=None,
            status=aggregate_status(loaders).value,
        )
        return {"store_id": store_id, "num_deleted": deleted}

    @wrap_errors("ingestion.query_vector_store")
    async def query_vector_store(self, request: QueryRequest) -> dict[str, Any]:
        record = await self.chunk_store.get_store(request.store_id)
        embedding = _component_from(record.get_component("embedding_config"))
        vector_store = _component_from(record.get_component("vector_store_config"))
        if embedding is None or vector_store is None:
            raise ConfigurationError("知识库未配置 embedding / vector_store 组件")

        embedder = self.factory.build_component(
            KIND_EMBEDDER, embedding,
            {"tenant_id": self.tenant_id, "feature": FEATURE_QUERY},
        )
        store = self.factory.build_component(
            KIND_VECTOR_STORE, vector_store,
            {"tenant_id": self.tenant_id, "store_id": request.store_id, "embedder": embedder},
        )

        start = time.perf_counter()
        try:
            docs = await store.as_retriever(request.top_k).invoke(request.query)
        except KBSyncError:
            raise
        except Exception as e:
            raise CapabilityInvocationError(f"向量库 {vector_store.name} 检索失败: {e}") from e
        time_taken = round((time.perf_counter() - start) * 1000, 2)

        return {
            "time_taken_ms": time_taken,
            "docs": [{"page_content": d.page_content, "metadata": d.metadata} for d in docs],
        }

    # ==================== 内部实现 ====================

    async def _load_documents(
        self,
        store_id: str | None,
        descriptor: LoaderDescriptor,
        for_preview: bool,
    ) -> list[Document]:
        """预览与处理共用的加载 + 切分，保证两者切分结果一致"""
        loader_config = await self._rehydrate(store_id, descriptor.loader_config)

        splitter = None
        if descriptor.splitter_name:
            splitter = self.factory.build(KIND_SPLITTER, descriptor.splitter_name, descriptor.splitter_config)

        loader = self.factory.build(KIND_LOADER, descriptor.loader_name, loader_config)
        if for_preview and getattr(loader, "scrapes_pages", False):
            loader_config = {**loader_config, "limit": self.settings.preview_scraper_limit}
            loader = self.factory.build(KIND_LOADER, descriptor.loader_name, loader_config)

        try:
            docs = await run_in_threadpool(loader.load, splitter)
        except KBSyncError:
            raise
        except Exception as e:
            raise CapabilityInvocationError(f"loader {descriptor.loader_name} 加载失败: {e}") from e

        return [
            Document(page_content=clean_content(d.page_content), metadata=d.metadata)
            for d in docs
        ]

    async def _rehydrate(self, store_id: str | None, config: dict[str, Any]) -> dict[str, Any]:
        """把配置中的 FILE-STORAGE 占位符还原为 data URI"""
        result = dict(config)
        for key, value in config.items():
            if is_placeholder(value):
                if not store_id:
                    raise ConfigurationError(f"配置项 {key} 引用了已存储的文件，但未指定知识库")
                result[key] = await self.file_storage.rehydrate(self.tenant_id, store_id, value)
        return result

    async def _persist_uploads(self, store_id: str, descriptor: LoaderDescriptor) -> LoaderDescriptor:
        """
        保存新上传的文件

        配置中的 data URI 写入文件存储并替换为占位符；原本就是占位符的值保持不变。
        该 loader 旧文件中不再被引用的会被删除。没有新上传时原样返回。
        """
        config = dict(descriptor.loader_config)
        files: list[LoaderFile] = []

        for key, value in descriptor.loader_config.items():
            values = _data_uri_values(value)
            if not values:
                continue
            names = []
            for raw in values:
                f = parse_data_uri(raw)
                name = await self.file_storage.save(self.tenant_id, store_id, f.name, f.content)
                names.append(name)
                files.append(LoaderFile(name=name, mime_type=f.mime_type, size=len(f.content)))
            config[key] = make_placeholder(names)

        if not files:
            return descriptor

        previous = [
            old
            for loader in await self.chunk_store.read_loaders(store_id)
            if loader.id == descriptor.id
            for old in loader.files
        ]
        keep = {f.name for f in files}
        for old in previous:
            if old.name not in keep:
                await self.file_storage.delete_file(self.tenant_id, store_id, old.name)
        return descriptor.model_copy(update={"loader_config": config, "files": files})

    async def _mark_loader(self, store_id: str, loader_id: str, status: DocumentStoreStatus) -> None:
        def mutation(loaders: list[LoaderDescriptor]) -> list[LoaderDescriptor]:
            for item in loaders:
                if item.id == loader_id:
                    item.status = status
            return loaders

        try:
            await self.chunk_store.mutate_loaders(
                store_id, mutation, status_rule=lambda loaders, _status: aggregate_status(loaders),
            )
        except Exception as e:  # noqa: BLE001
            logger.error(f"更新 loader {loader_id} 状态失败: {e}")

    @asynccontextmanager
    async def _status_guard(self, store_id: str, status: DocumentStoreStatus) -> AsyncIterator[None]:
        """进入时设置状态，异常退出时恢复为原状态"""
        previous = await self.chunk_store.set_status(store_id, status)
        try:
            yield
        except BaseException:
            try:
                await self.chunk_store.set_status(store_id, previous)
            except Exception as e:  # noqa: BLE001
                logger.error(f"恢复知识库 {store_id} 状态失败: {e}")
            raise


def _component_from(data: dict[str, Any] | None) -> ComponentConfig | None:
    return ComponentConfig.model_validate(data) if data else None


def _data_uri_values(value: Any) -> list[str]:
    """取出配置值中的 data URI，不含 data URI 时返回空列表"""
    if isinstance(value, str) and value.startswith("["):
        try:
            values = split_file_values(value)
        except json.JSONDecodeError:
            return []
    elif isinstance(value, (str, list)):
        values = split_file_values(value)
    else:
        return []
    if values and all(is_data_uri(v) for v in values):
        return values
    return []
