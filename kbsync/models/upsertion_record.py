"""
记录管理器去重表

记录已写入向量库的文档哈希，用于增量入库时跳过未变化的文档、
清理已被删除的文档。
"""

from sqlalchemy import Float, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from kbsync.db.base import Base
from kbsync.models.mixins import UUID_PK


class UpsertionRecord(Base):
    __tablename__ = "kb_upsertion_record"
    __table_args__ = (
        UniqueConstraint("key", "namespace", name="uq_upsertion_key_namespace"),
    )

    id: Mapped[UUID_PK]
    key: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    namespace: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    group_id: Mapped[str | None] = mapped_column(String(512), index=True)
    # 写入时间（epoch 秒）
    updated_at: Mapped[float] = mapped_column(Float, nullable=False, index=True)
