"""
任务执行器

进程内模式与队列 worker 共用同一个执行器，保证两种模式返回的结果结构一致：
结果统一转换为 JSON 兼容的 dict。
"""

import json
import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from pydantic import BaseModel

from kbsync.exceptions import ConfigurationError, to_internal_error
from kbsync.infra.logging import set_tenant_id
from kbsync.schemas.document_store import (
    ComponentConfig,
    LoaderDescriptor,
    PreviewRequest,
    UpsertRequest,
)
from kbsync.schemas.job import JobPayload, OperationKind

if TYPE_CHECKING:
    from kbsync.container import AppContext, TenantServices

logger = logging.getLogger(__name__)

Handler = Callable[["TenantServices", JobPayload], Awaitable[Any]]


def normalize_result(result: Any) -> dict[str, Any]:
    """把执行结果转换为 JSON 兼容的 dict"""
    if isinstance(result, BaseModel):
        return result.model_dump(mode="json")
    normalized = json.loads(json.dumps(result, ensure_ascii=False, default=str))
    if not isinstance(normalized, dict):
        return {"result": normalized}
    return normalized


def _require(payload: JobPayload, field: str) -> Any:
    value = getattr(payload, field)
    if not value:
        raise ConfigurationError(f"{payload.operation.value} 任务缺少 {field}")
    return value


def _component(data: dict[str, Any] | None) -> ComponentConfig | None:
    return ComponentConfig.model_validate(data) if data else None


def _upsert_request(payload: JobPayload) -> UpsertRequest:
    return UpsertRequest(
        store_id=_require(payload, "store_id"),
        loader_id=payload.loader_id,
        embedding=_component(payload.embedding_config),
        vector_store=_component(payload.vector_store_config),
        record_manager=_component(payload.record_manager_config),
        is_strict_save=bool(payload.options.get("is_strict_save", False)),
    )


async def _preview(services: "TenantServices", payload: JobPayload) -> Any:
    return await services.pipeline.preview_chunks(PreviewRequest(
        store_id=payload.store_id,
        loader=LoaderDescriptor.model_validate(_require(payload, "document_descriptor")),
        preview_chunk_count=payload.options.get("preview_chunk_count"),
    ))


async def _process(services: "TenantServices", payload: JobPayload) -> Any:
    return await services.pipeline.process_loader(
        _require(payload, "store_id"),
        LoaderDescriptor.model_validate(_require(payload, "document_descriptor")),
    )


async def _upsert(services: "TenantServices", payload: JobPayload) -> Any:
    return await services.pipeline.upsert(_upsert_request(payload))


async def _process_and_upsert(services: "TenantServices", payload: JobPayload) -> Any:
    return await services.pipeline.process_and_upsert(
        _require(payload, "store_id"),
        LoaderDescriptor.model_validate(_require(payload, "document_descriptor")),
        _upsert_request(payload),
    )


async def _refresh(services: "TenantServices", payload: JobPayload) -> Any:
    return await services.pipeline.refresh_store(
        _require(payload, "store_id"),
        payload.options.get("items"),
    )


DEFAULT_HANDLERS: dict[OperationKind, Handler] = {
    OperationKind.PREVIEW: _preview,
    OperationKind.PROCESS: _process,
    OperationKind.UPSERT: _upsert,
    OperationKind.PROCESS_AND_UPSERT: _process_and_upsert,
    OperationKind.REFRESH: _refresh,
}


class JobExecutor:
    """
    按任务类型执行

    prediction 类任务的处理器由宿主应用通过 handlers 注入。
    """

    def __init__(self, context: "AppContext", handlers: dict[OperationKind, Handler] | None = None):
        self.context = context
        self.handlers = {**DEFAULT_HANDLERS, **(handlers or {})}

    async def execute(self, payload: JobPayload) -> dict[str, Any]:
        set_tenant_id(payload.tenant_id)
        handler = self.handlers.get(payload.operation)
        operation = f"executor.{payload.operation.value}"
        try:
            if handler is None:
                raise ConfigurationError(f"没有注册 {payload.operation.value} 任务的处理器")
            services = await self.context.tenant_services(payload.tenant_id)
            result = await handler(services, payload)
        except Exception as e:
            raise to_internal_error(e, operation) from e
        return normalize_result(result)
