"""
片段模型 (Chunk)

数据流向: Loader → Splitter → ChunkRecord → Embedder → 向量库
"""

import json
from typing import Any

from sqlalchemy import Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from kbsync.db.base import Base
from kbsync.models.mixins import UUID_PK


class ChunkRecord(Base):
    """片段表：同一 loader 下 chunk_no 从 1 开始连续编号"""
    __tablename__ = "kb_document_store_chunk"
    __table_args__ = (
        UniqueConstraint("store_id", "doc_id", "chunk_no", name="uq_chunk_store_doc_no"),
    )

    id: Mapped[UUID_PK]
    store_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    # 所属 loader 的 id
    doc_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    chunk_no: Mapped[int] = mapped_column(Integer, nullable=False)
    page_content: Mapped[str] = mapped_column(Text, nullable=False)
    # 字段名用 extra_metadata 避免与 SQLAlchemy 的 metadata 冲突
    extra_metadata: Mapped[str] = mapped_column("metadata", Text, nullable=False, default="{}")

    def get_metadata(self) -> dict[str, Any]:
        return json.loads(self.extra_metadata or "{}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "doc_id": self.doc_id,
            "chunk_no": self.chunk_no,
            "page_content": self.page_content,
            "metadata": self.get_metadata(),
        }
