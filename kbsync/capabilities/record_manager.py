"""
记录管理器组件

sql: 把入库记录保存在租户自己的数据库（kb_upsertion_record 表）中，
namespace 默认为知识库 ID。
"""

import time
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from kbsync.capabilities.indexing import CLEANUP_MODES
from kbsync.db.base import Base
from kbsync.models.upsertion_record import UpsertionRecord


class SQLRecordManager:
    name = "sql"

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        namespace: str,
        cleanup: str = "incremental",
        source_id_key: str = "source",
    ):
        if cleanup not in CLEANUP_MODES:
            raise ValueError(f"未知的 cleanup 模式: {cleanup}，可选: {CLEANUP_MODES}")
        self.session_factory = session_factory
        self.namespace = namespace
        self.cleanup = cleanup
        self.source_id_key = source_id_key

    async def create_schema(self) -> None:
        async with self.session_factory() as session:
            conn = await session.connection()
            await conn.run_sync(
                lambda sync_conn: Base.metadata.create_all(
                    sync_conn, tables=[UpsertionRecord.__table__],
                )
            )
            await session.commit()

    async def get_time(self) -> float:
        return time.time()

    async def exists(self, keys: list[str]) -> list[bool]:
        if not keys:
            return []
        async with self.session_factory() as session:
            result = await session.execute(
                select(UpsertionRecord.key).where(
                    UpsertionRecord.namespace == self.namespace,
                    UpsertionRecord.key.in_(keys),
                )
            )
            found = set(result.scalars().all())
        return [k in found for k in keys]

    async def update(self, keys: list[str], group_ids: list[str | None] | None = None) -> None:
        if not keys:
            return
        if group_ids is None:
            group_ids = [None] * len(keys)
        if len(group_ids) != len(keys):
            raise ValueError("keys 与 group_ids 数量不一致")

        now = await self.get_time()
        async with self.session_factory() as session:
            result = await session.execute(
                select(UpsertionRecord).where(
                    UpsertionRecord.namespace == self.namespace,
                    UpsertionRecord.key.in_(keys),
                )
            )
            existing = {r.key: r for r in result.scalars().all()}
            for key, group_id in zip(keys, group_ids):
                record = existing.get(key)
                if record is None:
                    session.add(UpsertionRecord(
                        key=key, namespace=self.namespace, group_id=group_id, updated_at=now,
                    ))
                else:
                    record.group_id = group_id
                    record.updated_at = now
            await session.commit()

    async def list_keys(
        self,
        before: float | None = None,
        group_ids: list[str] | None = None,
    ) -> list[str]:
        stmt = select(UpsertionRecord.key).where(UpsertionRecord.namespace == self.namespace)
        if before is not None:
            stmt = stmt.where(UpsertionRecord.updated_at < before)
        if group_ids is not None:
            stmt = stmt.where(UpsertionRecord.group_id.in_(group_ids))
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def delete_keys(self, keys: list[str]) -> None:
        if not keys:
            return
        async with self.session_factory() as session:
            await session.execute(
                delete(UpsertionRecord).where(
                    UpsertionRecord.namespace == self.namespace,
                    UpsertionRecord.key.in_(keys),
                )
            )
            await session.commit()


def build_sql_record_manager(config: dict[str, Any], deps: dict[str, Any]) -> SQLRecordManager:
    session_factory = deps.get("session_factory")
    if session_factory is None:
        raise ValueError("sql 记录管理器缺少 session_factory 依赖")
    return SQLRecordManager(
        session_factory=session_factory,
        namespace=config.get("namespace") or deps.get("store_id") or "default",
        cleanup=config.get("cleanup", "incremental"),
        source_id_key=config.get("source_id_key", "source"),
    )
