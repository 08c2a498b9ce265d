"""
ORM 模型

每个租户库中都包含以下表：
- kb_document_store: 知识库（DocumentStore）
- kb_document_store_chunk: 切分后的片段
- kb_upsert_history: 向量入库历史
- kb_upsertion_record: 记录管理器的去重记录
"""

from kbsync.models.chunk import ChunkRecord
from kbsync.models.document_store import DocumentStoreRecord, DocumentStoreStatus
from kbsync.models.upsert_history import UpsertHistoryRecord
from kbsync.models.upsertion_record import UpsertionRecord

__all__ = [
    "ChunkRecord",
    "DocumentStoreRecord",
    "DocumentStoreStatus",
    "UpsertHistoryRecord",
    "UpsertionRecord",
]
