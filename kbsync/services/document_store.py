"""
知识库服务

知识库的增删改查、loader 与片段的维护、组件配置的保存。
所有对外方法都经过 wrap_errors 包装，失败时抛出带操作名的 InternalError。
"""

import json
import logging
from typing import Any

from kbsync.exceptions import NotFoundError, wrap_errors
from kbsync.models import DocumentStoreRecord, DocumentStoreStatus
from kbsync.schemas.document_store import (
    ChunkPage,
    ChunkView,
    ComponentConfig,
    DocumentStoreCreate,
    DocumentStoreUpdate,
    DocumentStoreView,
    LoaderDescriptor,
)
from kbsync.services.chunk_store import ChunkStore, parse_loaders
from kbsync.services.file_storage import LocalFileStorage
from kbsync.services.sync_state import aggregate_status, status_after_config_change

logger = logging.getLogger(__name__)

# 组件类型 -> 知识库记录中的字段
COMPONENT_FIELDS = {
    "embedding": "embedding_config",
    "vector_store": "vector_store_config",
    "record_manager": "record_manager_config",
}


def to_view(record: DocumentStoreRecord) -> DocumentStoreView:
    loaders = parse_loaders(record.loaders)
    return DocumentStoreView(
        id=record.id,
        name=record.name,
        description=record.description,
        status=DocumentStoreStatus(record.status),
        loaders=loaders,
        where_used=record.get_where_used(),
        embedding=record.get_component("embedding_config"),
        vector_store=record.get_component("vector_store_config"),
        record_manager=record.get_component("record_manager_config"),
        total_chunks=sum(loader.total_chunks for loader in loaders),
        total_chars=sum(loader.total_chars for loader in loaders),
    )


def _component_dict(component: ComponentConfig | None) -> dict[str, Any] | None:
    return component.model_dump(mode="json") if component is not None else None


class DocumentStoreService:
    """单租户的知识库服务"""

    def __init__(self, tenant_id: str, chunk_store: ChunkStore, file_storage: LocalFileStorage):
        self.tenant_id = tenant_id
        self.chunk_store = chunk_store
        self.file_storage = file_storage

    @wrap_errors("document_store.create_store")
    async def create_store(self, data: DocumentStoreCreate) -> DocumentStoreView:
        record = await self.chunk_store.add_store(DocumentStoreRecord(
            name=data.name,
            description=data.description,
            created_by=data.created_by,
            last_modified_by=data.created_by,
            status=DocumentStoreStatus.NEW.value,
        ))
        logger.info(f"知识库已创建: {record.id} ({record.name})")
        return to_view(record)

    @wrap_errors("document_store.get_store")
    async def get_store(self, store_id: str) -> DocumentStoreView:
        return to_view(await self.chunk_store.get_store(store_id))

    @wrap_errors("document_store.list_stores")
    async def list_stores(self, page: int = 1, page_size: int = 50) -> tuple[list[DocumentStoreView], int]:
        records, total = await self.chunk_store.list_stores(page, page_size)
        return [to_view(r) for r in records], total

    @wrap_errors("document_store.update_store")
    async def update_store(self, store_id: str, data: DocumentStoreUpdate) -> DocumentStoreView:
        record = await self.chunk_store.get_store(store_id)
        values: dict[str, Any] = {}
        if data.name is not None:
            values["name"] = data.name
        if data.description is not None:
            values["description"] = data.description
        if data.where_used is not None:
            values["where_used"] = json.dumps(data.where_used, ensure_ascii=False)
        if data.last_modified_by is not None:
            values["last_modified_by"] = data.last_modified_by

        changed = False
        for key, field in COMPONENT_FIELDS.items():
            component = getattr(data, key)
            if component is None:
                continue
            new_value = _component_dict(component)
            if record.get_component(field) != new_value:
                record.set_component(field, new_value)
                values[field] = getattr(record, field)
                changed = True
        if changed:
            values["status"] = status_after_config_change(DocumentStoreStatus(record.status)).value

        record = await self.chunk_store.update_store(store_id, **values) if values else record
        return to_view(record)

    @wrap_errors("document_store.delete_store")
    async def delete_store(self, store_id: str) -> dict[str, Any]:
        """删除知识库：文件 → 片段、入库历史 → 知识库记录"""
        await self.chunk_store.get_store(store_id)
        await self.file_storage.delete_store(self.tenant_id, store_id)
        deleted = await self.chunk_store.delete_store(store_id)
        logger.info(
            f"知识库已删除: {store_id}，片段 {deleted['chunks']}，历史 {deleted['history']}"
        )
        return {"store_id": store_id, "deleted": True, **deleted}

    @wrap_errors("document_store.delete_loader")
    async def delete_loader(self, store_id: str, loader_id: str) -> DocumentStoreView:
        """删除 loader 及其片段、文件，重新计算知识库状态"""
        loaders = await self.chunk_store.read_loaders(store_id)
        target = next((loader for loader in loaders if loader.id == loader_id), None)
        if target is None:
            raise NotFoundError(f"loader 不存在: {loader_id}")

        await self.chunk_store.delete_chunks(store_id, loader_id)
        for f in target.files:
            await self.file_storage.delete_file(self.tenant_id, store_id, f.name)

        await self.chunk_store.mutate_loaders(
            store_id,
            lambda current: [loader for loader in current if loader.id != loader_id],
            status_rule=lambda current, _status: aggregate_status(current),
        )
        return to_view(await self.chunk_store.get_store(store_id))

    @wrap_errors("document_store.get_chunks")
    async def get_chunks(self, store_id: str, loader_id: str | None = None, page: int = 1) -> ChunkPage:
        """分页读取片段，loader_id 为空或 "all" 时读取整个知识库"""
        record = await self.chunk_store.get_store(store_id)
        scope = None if loader_id in (None, "all") else loader_id
        if scope is not None and not any(loader.id == scope for loader in parse_loaders(record.loaders)):
            raise NotFoundError(f"loader 不存在: {scope}")

        rows, count, characters = await self.chunk_store.page_chunks(store_id, scope, page)
        return ChunkPage(
            store_id=store_id,
            loader_id=scope,
            chunks=[ChunkView(**row.to_dict()) for row in rows],
            count=count,
            characters=characters,
            current_page=page,
            page_size=self.chunk_store.settings.chunk_page_size,
            status=DocumentStoreStatus(record.status),
        )

    @wrap_errors("document_store.delete_chunk")
    async def delete_chunk(self, store_id: str, loader_id: str, chunk_id: str) -> ChunkPage:
        chunk = await self.chunk_store.get_chunk(store_id, chunk_id)
        if chunk.doc_id != loader_id:
            raise NotFoundError(f"片段 {chunk_id} 不属于 loader {loader_id}")
        await self.chunk_store.delete_chunk(store_id, chunk_id)
        await self._refresh_loader_metrics(store_id, loader_id, content_changed=True)
        return await self.get_chunks(store_id, loader_id)

    @wrap_errors("document_store.edit_chunk")
    async def edit_chunk(
        self,
        store_id: str,
        loader_id: str,
        chunk_id: str,
        page_content: str,
        metadata: dict[str, Any] | None = None,
    ) -> ChunkPage:
        chunk = await self.chunk_store.get_chunk(store_id, chunk_id)
        if chunk.doc_id != loader_id:
            raise NotFoundError(f"片段 {chunk_id} 不属于 loader {loader_id}")
        await self.chunk_store.update_chunk(store_id, chunk_id, page_content, metadata)
        await self._refresh_loader_metrics(store_id, loader_id, content_changed=True)
        return await self.get_chunks(store_id, loader_id)

    @wrap_errors("document_store.save_vector_store_config")
    async def save_vector_store_config(
        self,
        store_id: str,
        embedding: ComponentConfig | None = None,
        vector_store: ComponentConfig | None = None,
        record_manager: ComponentConfig | None = None,
        is_strict_save: bool = False,
    ) -> DocumentStoreRecord:
        """
        保存组件配置

        请求中给出的组件覆盖已保存的配置；未给出的组件在 is_strict_save 时清空，
        否则沿用已保存的配置。有配置变化时按状态机调整状态。
        """
        record = await self.chunk_store.get_store(store_id)
        incoming = {"embedding": embedding, "vector_store": vector_store, "record_manager": record_manager}

        values: dict[str, Any] = {}
        for key, field in COMPONENT_FIELDS.items():
            component = incoming[key]
            if component is None and not is_strict_save:
                continue
            new_value = _component_dict(component)
            if record.get_component(field) != new_value:
                record.set_component(field, new_value)
                values[field] = getattr(record, field)

        if not values:
            return record
        values["status"] = status_after_config_change(DocumentStoreStatus(record.status)).value
        return await self.chunk_store.update_store(store_id, **values)

    @wrap_errors("document_store.update_vector_store_config_only")
    async def update_vector_store_config_only(self, store_id: str, vector_store: ComponentConfig) -> DocumentStoreView:
        """只更新向量库配置，不改变状态"""
        record = await self.chunk_store.get_store(store_id)
        record.set_component("vector_store_config", _component_dict(vector_store))
        record = await self.chunk_store.update_store(
            store_id, vector_store_config=record.vector_store_config,
        )
        return to_view(record)

    @wrap_errors("document_store.list_upsert_history")
    async def list_upsert_history(self, store_id: str) -> list[dict[str, Any]]:
        await self.chunk_store.get_store(store_id)
        return [h.to_dict() for h in await self.chunk_store.list_history(store_id)]

    async def _refresh_loader_metrics(self, store_id: str, loader_id: str, content_changed: bool = False) -> None:
        total_chunks, total_chars = await self.chunk_store.loader_metrics(store_id, loader_id)

        def mutation(loaders: list[LoaderDescriptor]) -> list[LoaderDescriptor]:
            for loader in loaders:
                if loader.id == loader_id:
                    loader.total_chunks = total_chunks
                    loader.total_chars = total_chars
            return loaders

        def status_rule(_loaders: list[LoaderDescriptor], status: DocumentStoreStatus) -> DocumentStoreStatus:
            return status_after_config_change(status) if content_changed else status

        await self.chunk_store.mutate_loaders(store_id, mutation, status_rule=status_rule)
