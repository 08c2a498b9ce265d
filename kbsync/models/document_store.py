"""
知识库模型 (DocumentStore)

loaders 与各组件配置以 JSON 文本存储（兼容 Oracle 等不支持 JSON 类型的引擎），
读写通过下面的辅助方法完成。

loaders 的读-改-写必须经过 ChunkStore.mutate_loaders，
它以 version 列做乐观并发控制。
"""

import enum
import json
from typing import Any

from sqlalchemy import Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from kbsync.db.base import Base
from kbsync.models.mixins import UUID_PK, AuditMixin, TimestampMixin


class DocumentStoreStatus(str, enum.Enum):
    """
    同步状态机

    NEW → SYNCING → SYNC → UPSERTING → UPSERTED
    配置变更时 UPSERTED 回到 STALE；任一 loader 未完成时整体为 STALE。
    """
    NEW = "NEW"
    SYNCING = "SYNCING"
    SYNC = "SYNC"
    STALE = "STALE"
    UPSERTING = "UPSERTING"
    UPSERTED = "UPSERTED"


class DocumentStoreRecord(TimestampMixin, AuditMixin, Base):
    """知识库表"""
    __tablename__ = "kb_document_store"

    id: Mapped[UUID_PK]
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    # LoaderDescriptor 列表（JSON 文本）
    loaders: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    # 引用了该知识库的 flow id 列表（JSON 文本）
    where_used: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=DocumentStoreStatus.NEW.value,
    )
    # 组件配置：{"name": ..., "config": {...}}
    vector_store_config: Mapped[str | None] = mapped_column(Text)
    embedding_config: Mapped[str | None] = mapped_column(Text)
    record_manager_config: Mapped[str | None] = mapped_column(Text)
    # loaders 乐观锁版本号
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    def get_loaders(self) -> list[dict[str, Any]]:
        return json.loads(self.loaders or "[]")

    def get_where_used(self) -> list[str]:
        return json.loads(self.where_used or "[]")

    def get_component(self, field: str) -> dict[str, Any] | None:
        """读取组件配置，field 取 vector_store_config / embedding_config / record_manager_config"""
        raw = getattr(self, field)
        return json.loads(raw) if raw else None

    def set_component(self, field: str, value: dict[str, Any] | None) -> None:
        setattr(self, field, json.dumps(value, ensure_ascii=False) if value else None)
