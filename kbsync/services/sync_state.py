"""
同步状态机

NEW → SYNCING → SYNC → UPSERTING → UPSERTED
- 处理 loader 后，所有 loader 都是 SYNC 时知识库为 SYNC，否则为 STALE
- 组件配置变更时，UPSERTED 回到 STALE
- UPSERTED 状态下可以随时重新入库
"""

from typing import Iterable

from kbsync.exceptions import ConcurrentModificationError, ConfigurationError
from kbsync.models.document_store import DocumentStoreStatus
from kbsync.schemas.document_store import LoaderDescriptor


def aggregate_status(loaders: Iterable[LoaderDescriptor]) -> DocumentStoreStatus:
    """由 loader 状态计算知识库状态"""
    if all(loader.status == DocumentStoreStatus.SYNC for loader in loaders):
        return DocumentStoreStatus.SYNC
    return DocumentStoreStatus.STALE


def status_after_config_change(current: DocumentStoreStatus) -> DocumentStoreStatus:
    if current == DocumentStoreStatus.UPSERTED:
        return DocumentStoreStatus.STALE
    return current


def ensure_can_upsert(current: DocumentStoreStatus) -> None:
    """
    校验当前状态是否允许入库

    Raises:
        ConfigurationError: 还没有可入库的片段（NEW / SYNCING）
        ConcurrentModificationError: 已有入库任务在进行
    """
    if current == DocumentStoreStatus.UPSERTING:
        raise ConcurrentModificationError("知识库正在入库中，请稍后重试")
    if current in (DocumentStoreStatus.NEW, DocumentStoreStatus.SYNCING):
        raise ConfigurationError(f"知识库状态为 {current.value}，需先完成 loader 处理")
