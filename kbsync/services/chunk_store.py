"""
片段与 loader 存储

对单个租户库中知识库记录、片段记录、入库历史的读写都经过这里：
- mutate_loaders 是 loaders 字段读-改-写的唯一入口，以 version 列做乐观并发控制
- replace_chunks 在一个事务内删除旧片段并写入新片段，然后按 SQL 聚合重新计算统计
"""

import json
import logging
from typing import Any, Callable

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from kbsync.capabilities.base import Document
from kbsync.config import Settings, get_settings
from kbsync.exceptions import ConcurrentModificationError, NotFoundError
from kbsync.models import (
    ChunkRecord,
    DocumentStoreRecord,
    DocumentStoreStatus,
    UpsertHistoryRecord,
    UpsertionRecord,
)
from kbsync.schemas.document_store import LoaderDescriptor

logger = logging.getLogger(__name__)

LoaderMutation = Callable[[list[LoaderDescriptor]], list[LoaderDescriptor]]
StatusRule = Callable[[list[LoaderDescriptor], DocumentStoreStatus], DocumentStoreStatus]


def clean_content(text: str) -> str:
    """去除空字节（PostgreSQL 文本列不接受 \\x00）"""
    return text.replace("\x00", "")


def dump_loaders(loaders: list[LoaderDescriptor]) -> str:
    return json.dumps([loader.model_dump(mode="json") for loader in loaders], ensure_ascii=False)


def parse_loaders(raw: str | None) -> list[LoaderDescriptor]:
    return [LoaderDescriptor.model_validate(item) for item in json.loads(raw or "[]")]


class ChunkStore:
    """单租户库的存储访问"""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings | None = None,
    ):
        self.session_factory = session_factory
        self.settings = settings or get_settings()

    # ==================== 知识库记录 ====================

    async def add_store(self, record: DocumentStoreRecord) -> DocumentStoreRecord:
        async with self.session_factory() as session:
            session.add(record)
            await session.commit()
            await session.refresh(record)
        return record

    async def get_store(self, store_id: str) -> DocumentStoreRecord:
        async with self.session_factory() as session:
            record = await session.get(DocumentStoreRecord, store_id)
        if record is None:
            raise NotFoundError(f"知识库不存在: {store_id}")
        return record

    async def list_stores(self, page: int = 1, page_size: int = 50) -> tuple[list[DocumentStoreRecord], int]:
        async with self.session_factory() as session:
            total = await session.scalar(select(func.count()).select_from(DocumentStoreRecord))
            result = await session.execute(
                select(DocumentStoreRecord)
                .order_by(DocumentStoreRecord.created_at.desc(), DocumentStoreRecord.id)
                .offset((max(page, 1) - 1) * page_size)
                .limit(page_size)
            )
            return list(result.scalars().all()), int(total or 0)

    async def update_store(self, store_id: str, **values: Any) -> DocumentStoreRecord:
        """更新知识库的非 loaders 字段"""
        if "loaders" in values or "version" in values:
            raise ValueError("loaders 只能通过 mutate_loaders 修改")
        async with self.session_factory() as session:
            record = await session.get(DocumentStoreRecord, store_id)
            if record is None:
                raise NotFoundError(f"知识库不存在: {store_id}")
            for key, value in values.items():
                setattr(record, key, value)
            await session.commit()
            await session.refresh(record)
        return record

    async def set_status(self, store_id: str, status: DocumentStoreStatus) -> DocumentStoreStatus:
        """设置知识库状态，返回修改前的状态"""
        async with self.session_factory() as session:
            record = await session.get(DocumentStoreRecord, store_id)
            if record is None:
                raise NotFoundError(f"知识库不存在: {store_id}")
            previous = DocumentStoreStatus(record.status)
            record.status = status.value
            await session.commit()
        return previous

    async def delete_store(self, store_id: str) -> dict[str, int]:
        """
        删除知识库及其片段、入库历史、去重记录

        在同一个事务内完成，先删子数据再删知识库本身。
        """
        async with self.session_factory() as session:
            async with session.begin():
                record = await session.get(DocumentStoreRecord, store_id)
                if record is None:
                    raise NotFoundError(f"知识库不存在: {store_id}")
                chunks = await session.execute(delete(ChunkRecord).where(ChunkRecord.store_id == store_id))
                history = await session.execute(
                    delete(UpsertHistoryRecord).where(UpsertHistoryRecord.store_id == store_id)
                )
                await session.execute(delete(UpsertionRecord).where(UpsertionRecord.namespace == store_id))
                await session.delete(record)
        return {"chunks": chunks.rowcount, "history": history.rowcount}

    # ==================== loaders ====================

    async def read_loaders(self, store_id: str) -> list[LoaderDescriptor]:
        record = await self.get_store(store_id)
        return parse_loaders(record.loaders)

    async def mutate_loaders(
        self,
        store_id: str,
        mutation: LoaderMutation,
        status_rule: StatusRule | None = None,
    ) -> tuple[list[LoaderDescriptor], DocumentStoreStatus]:
        """
        loaders 读-改-写

        读取当前 loaders 与 version，应用 mutation，然后以
        UPDATE ... WHERE version = 读到的版本 写回；版本不一致说明有并发修改，
        重新读取后再试，超过重试次数抛 ConcurrentModificationError。

        Args:
            mutation: 接收当前 loader 列表，返回新的列表
            status_rule: 由新 loader 列表与当前状态计算新状态，为空时状态不变

        Returns:
            (新的 loader 列表, 新的知识库状态)
        """
        max_retries = max(self.settings.loaders_max_retries, 1)
        for attempt in range(1, max_retries + 1):
            async with self.session_factory() as session:
                row = (await session.execute(
                    select(
                        DocumentStoreRecord.loaders,
                        DocumentStoreRecord.version,
                        DocumentStoreRecord.status,
                    ).where(DocumentStoreRecord.id == store_id)
                )).first()
                if row is None:
                    raise NotFoundError(f"知识库不存在: {store_id}")

                loaders = mutation(parse_loaders(row.loaders))
                status = DocumentStoreStatus(row.status)
                if status_rule is not None:
                    status = status_rule(loaders, status)

                written = await self._write_loaders(session, store_id, row.version, loaders, status)
                await session.commit()

            if written:
                return loaders, status
            logger.warning(f"知识库 {store_id} loaders 并发修改冲突，重试 {attempt}/{max_retries}")

        raise ConcurrentModificationError(f"知识库 {store_id} 的 loaders 并发修改冲突，重试已耗尽")

    async def _write_loaders(
        self,
        session: AsyncSession,
        store_id: str,
        expected_version: int,
        loaders: list[LoaderDescriptor],
        status: DocumentStoreStatus,
    ) -> bool:
        """按版本号条件写回，版本已变化时返回 False"""
        result = await session.execute(
            update(DocumentStoreRecord)
            .where(
                DocumentStoreRecord.id == store_id,
                DocumentStoreRecord.version == expected_version,
            )
            .values(
                loaders=dump_loaders(loaders),
                status=status.value,
                version=expected_version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    # ==================== 片段 ====================

    async def replace_chunks(self, store_id: str, loader_id: str, documents: list[Document]) -> tuple[int, int]:
        """
        替换 loader 的全部片段

        删除旧片段与写入新片段在同一个事务内，失败时旧片段保持不变。

        Returns:
            (片段数, 总字符数)
        """
        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(
                    delete(ChunkRecord).where(
                        ChunkRecord.store_id == store_id,
                        ChunkRecord.doc_id == loader_id,
                    )
                )
                session.add_all([
                    ChunkRecord(
                        store_id=store_id,
                        doc_id=loader_id,
                        chunk_no=index + 1,
                        page_content=clean_content(doc.page_content),
                        extra_metadata=json.dumps(doc.metadata, ensure_ascii=False, default=str),
                    )
                    for index, doc in enumerate(documents)
                ])
        return await self.loader_metrics(store_id, loader_id)

    async def loader_metrics(self, store_id: str, loader_id: str) -> tuple[int, int]:
        """按数据库聚合计算 loader 的片段数与字符数"""
        async with self.session_factory() as session:
            row = (await session.execute(
                select(
                    func.count(ChunkRecord.id),
                    func.coalesce(func.sum(func.length(ChunkRecord.page_content)), 0),
                ).where(
                    ChunkRecord.store_id == store_id,
                    ChunkRecord.doc_id == loader_id,
                )
            )).one()
        return int(row[0]), int(row[1])

    async def get_chunks(self, store_id: str, loader_id: str | None = None) -> list[ChunkRecord]:
        stmt = select(ChunkRecord).where(ChunkRecord.store_id == store_id)
        if loader_id:
            stmt = stmt.where(ChunkRecord.doc_id == loader_id)
        stmt = stmt.order_by(ChunkRecord.doc_id, ChunkRecord.chunk_no)
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def page_chunks(
        self,
        store_id: str,
        loader_id: str | None = None,
        page: int = 1,
        page_size: int | None = None,
    ) -> tuple[list[ChunkRecord], int, int]:
        """
        分页读取片段

        Returns:
            (当前页片段, 片段总数, 总字符数)
        """
        page_size = page_size or self.settings.chunk_page_size
        conditions = [ChunkRecord.store_id == store_id]
        if loader_id:
            conditions.append(ChunkRecord.doc_id == loader_id)

        async with self.session_factory() as session:
            totals = (await session.execute(
                select(
                    func.count(ChunkRecord.id),
                    func.coalesce(func.sum(func.length(ChunkRecord.page_content)), 0),
                ).where(*conditions)
            )).one()
            result = await session.execute(
                select(ChunkRecord)
                .where(*conditions)
                .order_by(ChunkRecord.doc_id, ChunkRecord.chunk_no)
                .offset((max(page, 1) - 1) * page_size)
                .limit(page_size)
            )
            return list(result.scalars().all()), int(totals[0]), int(totals[1])

    async def count_chunks(self, store_id: str) -> int:
        async with self.session_factory() as session:
            total = await session.scalar(
                select(func.count(ChunkRecord.id)).where(ChunkRecord.store_id == store_id)
            )
        return int(total or 0)

    async def delete_chunks(self, store_id: str, loader_id: str | None = None) -> int:
        stmt = delete(ChunkRecord).where(ChunkRecord.store_id == store_id)
        if loader_id:
            stmt = stmt.where(ChunkRecord.doc_id == loader_id)
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
        return result.rowcount

    async def get_chunk(self, store_id: str, chunk_id: str) -> ChunkRecord:
        async with self.session_factory() as session:
            chunk = await session.get(ChunkRecord, chunk_id)
        if chunk is None or chunk.store_id != store_id:
            raise NotFoundError(f"片段不存在: {chunk_id}")
        return chunk

    async def delete_chunk(self, store_id: str, chunk_id: str) -> ChunkRecord:
        async with self.session_factory() as session:
            chunk = await session.get(ChunkRecord, chunk_id)
            if chunk is None or chunk.store_id != store_id:
                raise NotFoundError(f"片段不存在: {chunk_id}")
            await session.delete(chunk)
            await session.commit()
        return chunk

    async def update_chunk(
        self,
        store_id: str,
        chunk_id: str,
        page_content: str,
        metadata: dict[str, Any] | None = None,
    ) -> ChunkRecord:
        async with self.session_factory() as session:
            chunk = await session.get(ChunkRecord, chunk_id)
            if chunk is None or chunk.store_id != store_id:
                raise NotFoundError(f"片段不存在: {chunk_id}")
            chunk.page_content = clean_content(page_content)
            if metadata is not None:
                chunk.extra_metadata = json.dumps(metadata, ensure_ascii=False, default=str)
            await session.commit()
            await session.refresh(chunk)
        return chunk

    # ==================== 入库历史 ====================

    async def add_history(self, store_id: str, flow_data: dict[str, Any], result: dict[str, Any]) -> UpsertHistoryRecord:
        record = UpsertHistoryRecord(
            store_id=store_id,
            flow_data=json.dumps(flow_data, ensure_ascii=False, default=str),
            result=json.dumps(result, ensure_ascii=False, default=str),
        )
        async with self.session_factory() as session:
            session.add(record)
            await session.commit()
            await session.refresh(record)
        return record

    async def list_history(self, store_id: str) -> list[UpsertHistoryRecord]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(UpsertHistoryRecord)
                .where(UpsertHistoryRecord.store_id == store_id)
                .order_by(UpsertHistoryRecord.created_at.desc())
            )
            return list(result.scalars().all())

    async def count_history(self, store_id: str) -> int:
        async with self.session_factory() as session:
            total = await session.scalar(
                select(func.count(UpsertHistoryRecord.id)).where(UpsertHistoryRecord.store_id == store_id)
            )
        return int(total or 0)
