"""
向量库组件

memory: 进程内向量库，按 "{租户}:{collection}" 隔离。
后端对象（MemoryVectorBackend）由应用上下文持有并通过依赖注入传入，
组件实例本身每次操作重新构造。
"""

import asyncio
import logging
import math
from collections import defaultdict
from dataclasses import dataclass
from typing import Any

from kbsync.capabilities.base import Document, Embedder, RecordManager
from kbsync.capabilities.indexing import index_documents

logger = logging.getLogger(__name__)


@dataclass
class _Entry:
    vector: list[float]
    document: Document


class MemoryVectorBackend:
    """进程内向量存储后端"""

    def __init__(self) -> None:
        self._collections: dict[str, dict[str, _Entry]] = defaultdict(dict)
        self._lock = asyncio.Lock()

    async def add(self, collection: str, ids: list[str], vectors: list[list[float]], docs: list[Document]) -> None:
        async with self._lock:
            store = self._collections[collection]
            for doc_id, vector, doc in zip(ids, vectors, docs):
                store[doc_id] = _Entry(vector=vector, document=doc)

    async def delete(self, collection: str, ids: list[str] | None = None) -> int:
        async with self._lock:
            store = self._collections.get(collection)
            if not store:
                return 0
            if ids is None:
                count = len(store)
                store.clear()
                return count
            return sum(1 for doc_id in ids if store.pop(doc_id, None) is not None)

    async def search(self, collection: str, vector: list[float], k: int) -> list[tuple[Document, float]]:
        store = self._collections.get(collection, {})
        scored = [(entry.document, _cosine(vector, entry.vector)) for entry in store.values()]
        scored.sort(key=lambda item: item[1], reverse=True)
        return scored[:k]

    def count(self, collection: str) -> int:
        return len(self._collections.get(collection, {}))


def _cosine(a: list[float], b: list[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    return dot / norm if norm else 0.0


class MemoryRetriever:
    def __init__(self, store: "MemoryVectorStore", top_k: int):
        self.store = store
        self.top_k = top_k

    async def invoke(self, query: str) -> list[Document]:
        results = await self.store.similarity_search_with_score(query, self.top_k)
        docs = []
        for doc, score in results:
            docs.append(Document(page_content=doc.page_content, metadata={**doc.metadata, "score": score}))
        return docs


class MemoryVectorStore:
    name = "memory"

    def __init__(self, backend: MemoryVectorBackend, collection: str, embedder: Embedder | None):
        self.backend = backend
        self.collection = collection
        self.embedder = embedder

    def _require_embedder(self) -> Embedder:
        if self.embedder is None:
            raise ValueError("向量库未配置 embedder")
        return self.embedder

    async def add_documents(self, documents: list[Document], ids: list[str]) -> None:
        if not documents:
            return
        vectors = await self._require_embedder().embed_documents([d.page_content for d in documents])
        await self.backend.add(self.collection, ids, vectors, documents)

    async def upsert(
        self,
        documents: list[Document],
        record_manager: RecordManager | None = None,
    ) -> dict[str, Any]:
        cleanup = getattr(record_manager, "cleanup", "none") if record_manager else "none"
        source_id_key = getattr(record_manager, "source_id_key", "source") if record_manager else "source"
        return await index_documents(
            documents,
            self,
            record_manager=record_manager,
            cleanup=cleanup,
            source_id_key=source_id_key,
        )

    async def delete(self, ids: list[str] | None = None) -> None:
        removed = await self.backend.delete(self.collection, ids)
        logger.debug(f"向量库 {self.collection} 删除 {removed} 条")

    async def similarity_search_with_score(self, query: str, k: int = 4) -> list[tuple[Document, float]]:
        vector = await self._require_embedder().embed_query(query)
        return await self.backend.search(self.collection, vector, k)

    def as_retriever(self, top_k: int = 4) -> MemoryRetriever:
        return MemoryRetriever(self, top_k)


def build_memory_store(config: dict[str, Any], deps: dict[str, Any]) -> MemoryVectorStore:
    backend = deps.get("vector_backend")
    if backend is None:
        raise ValueError("memory 向量库缺少 vector_backend 依赖")
    collection = config.get("collection") or deps.get("store_id") or "default"
    tenant_id = deps.get("tenant_id") or "-"
    return MemoryVectorStore(
        backend=backend,
        collection=f"{tenant_id}:{collection}",
        embedder=deps.get("embedder"),
    )
