"""
知识库表共用的列
"""

from datetime import datetime
from typing import Annotated
from uuid import uuid4

from sqlalchemy import DateTime, String, func
from sqlalchemy.orm import Mapped, mapped_column

# 36 位 UUID 字符串主键，兼容 PostgreSQL / Oracle / SQLite
UUID_PK = Annotated[
    str,
    mapped_column(String(36), primary_key=True, default=lambda: str(uuid4())),
]


class TimestampMixin:
    """created_at / updated_at 由数据库填写"""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )


class AuditMixin:
    created_by: Mapped[str | None] = mapped_column(String(64))
    last_modified_by: Mapped[str | None] = mapped_column(String(64))
