"""向量入库历史（只追加）"""

import json
from datetime import datetime
from typing import Any

from sqlalchemy import DateTime, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from kbsync.db.base import Base
from kbsync.models.mixins import UUID_PK


class UpsertHistoryRecord(Base):
    __tablename__ = "kb_upsert_history"

    id: Mapped[UUID_PK]
    store_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    # 本次入库使用的组件配置（不含凭据）
    flow_data: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    # 入库结果摘要
    result: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "flow_data": json.loads(self.flow_data or "{}"),
            "result": json.loads(self.result or "{}"),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
