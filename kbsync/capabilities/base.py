"""
组件基础类型定义

摄取流水线通过以下协议使用外部组件，不关心具体实现：
- Loader: 加载原始内容（可传入切分器，边加载边切分）
- Splitter: 文本切分
- Embedder: 向量化
- VectorStore: 向量写入 / 删除 / 检索
- RecordManager: 入库去重记录

同步组件（Loader、Splitter）由调用方放到线程池执行；
其余组件为异步接口。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

KIND_LOADER = "loader"
KIND_SPLITTER = "splitter"
KIND_EMBEDDER = "embedder"
KIND_VECTOR_STORE = "vector_store"
KIND_RECORD_MANAGER = "record_manager"

CAPABILITY_KINDS = (
    KIND_LOADER,
    KIND_SPLITTER,
    KIND_EMBEDDER,
    KIND_VECTOR_STORE,
    KIND_RECORD_MANAGER,
)


@dataclass
class Document:
    """组件间传递的文档单元"""
    page_content: str
    metadata: dict[str, Any] = field(default_factory=dict)


class Splitter(Protocol):
    name: str

    def split_text(self, text: str) -> list[str]:
        ...

    def split_documents(self, documents: list[Document]) -> list[Document]:
        ...


class Loader(Protocol):
    name: str
    # 是否为网页抓取类 loader（预览时限制抓取页数）
    scrapes_pages: bool

    def load(self, splitter: Splitter | None = None) -> list[Document]:
        ...


class Embedder(Protocol):
    name: str

    async def embed_documents(self, texts: list[str]) -> list[list[float]]:
        ...

    async def embed_query(self, text: str) -> list[float]:
        ...


class RecordManager(Protocol):
    name: str
    namespace: str

    async def create_schema(self) -> None:
        ...

    async def get_time(self) -> float:
        ...

    async def exists(self, keys: list[str]) -> list[bool]:
        ...

    async def update(self, keys: list[str], group_ids: list[str | None] | None = None) -> None:
        ...

    async def list_keys(
        self,
        before: float | None = None,
        group_ids: list[str] | None = None,
    ) -> list[str]:
        ...

    async def delete_keys(self, keys: list[str]) -> None:
        ...


class Retriever(Protocol):
    async def invoke(self, query: str) -> list[Document]:
        ...


class VectorStore(Protocol):
    name: str

    async def upsert(
        self,
        documents: list[Document],
        record_manager: RecordManager | None = None,
    ) -> dict[str, Any]:
        ...

    async def delete(self, ids: list[str] | None = None) -> None:
        ...

    def as_retriever(self, top_k: int = 4) -> Retriever:
        ...


class BaseSplitter:
    """切分器基类：实现 split_text 即可获得 split_documents"""
    name = "base"

    def split_text(self, text: str) -> list[str]:
        raise NotImplementedError

    def split_documents(self, documents: list[Document]) -> list[Document]:
        result: list[Document] = []
        for doc in documents:
            for piece in self.split_text(doc.page_content):
                result.append(Document(page_content=piece, metadata=dict(doc.metadata)))
        return result
