"""
增量入库

借助 RecordManager 记录每个文档的内容哈希：
- 已入库且内容未变的文档跳过
- 新文档写入向量库
- cleanup=incremental: 删除同一来源下本次未出现的旧文档
- cleanup=full: 删除本次未出现的所有旧文档
"""

import hashlib
import json
import logging
from typing import Any

from kbsync.capabilities.base import Document, RecordManager

logger = logging.getLogger(__name__)

CLEANUP_MODES = ("none", "incremental", "full")


def document_key(doc: Document) -> str:
    """文档内容 + 元数据的稳定哈希"""
    payload = json.dumps(
        {"page_content": doc.page_content, "metadata": doc.metadata},
        sort_keys=True,
        ensure_ascii=False,
        default=str,
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


async def index_documents(
    documents: list[Document],
    vector_store: Any,
    record_manager: RecordManager | None = None,
    cleanup: str = "none",
    source_id_key: str = "source",
) -> dict[str, Any]:
    """
    写入向量库

    Args:
        documents: 待入库文档
        vector_store: 需提供 add_documents(docs, ids) 与 delete(ids)
        record_manager: 去重记录，为空时全部直接写入
        cleanup: none / incremental / full
        source_id_key: incremental 模式下按哪个元数据字段判断来源

    Returns:
        {"num_added", "num_updated", "num_skipped", "num_deleted", "total_keys", "added_docs"}
    """
    if cleanup not in CLEANUP_MODES:
        raise ValueError(f"未知的 cleanup 模式: {cleanup}，可选: {CLEANUP_MODES}")

    # 同一批次内去重
    unique: dict[str, Document] = {}
    for doc in documents:
        unique.setdefault(document_key(doc), doc)
    keys = list(unique)
    docs = list(unique.values())

    if record_manager is None:
        await vector_store.add_documents(docs, ids=keys)
        return {
            "num_added": len(docs),
            "num_updated": 0,
            "num_skipped": len(documents) - len(docs),
            "num_deleted": 0,
            "total_keys": keys,
            "added_docs": docs,
        }

    index_start = await record_manager.get_time()
    exists = await record_manager.exists(keys)

    to_add_keys = [k for k, e in zip(keys, exists) if not e]
    to_add_docs = [unique[k] for k in to_add_keys]
    num_skipped = len(documents) - len(to_add_keys)

    if to_add_docs:
        await vector_store.add_documents(to_add_docs, ids=to_add_keys)

    group_ids = [unique[k].metadata.get(source_id_key) for k in keys]
    await record_manager.update(keys, group_ids=[str(g) if g is not None else None for g in group_ids])

    num_deleted = 0
    if cleanup != "none":
        if cleanup == "incremental":
            sources = sorted({str(g) for g in group_ids if g is not None})
            stale = await record_manager.list_keys(before=index_start, group_ids=sources) if sources else []
        else:
            stale = await record_manager.list_keys(before=index_start)
        if stale:
            await vector_store.delete(stale)
            await record_manager.delete_keys(stale)
            num_deleted = len(stale)

    logger.debug(
        f"入库完成: 新增 {len(to_add_keys)}，跳过 {num_skipped}，删除 {num_deleted}"
    )
    return {
        "num_added": len(to_add_keys),
        "num_updated": 0,
        "num_skipped": num_skipped,
        "num_deleted": num_deleted,
        "total_keys": keys,
        "added_docs": to_add_docs,
    }
