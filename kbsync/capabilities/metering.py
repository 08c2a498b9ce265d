"""
Embedding 用量计量

包装任意 Embedder，记录每次调用的租户、功能、耗时与 token 估算。
计量本身失败不会影响向量化结果。
"""

from typing import Any

from kbsync.capabilities.base import Embedder
from kbsync.infra.metrics import MetricsCollector, estimate_tokens, track_call

FEATURE_UPSERT = "document-store-upsert"
FEATURE_QUERY = "document-store-query"


class MeteredEmbedder:
    """带计量的 Embedder 装饰器"""

    def __init__(
        self,
        inner: Embedder,
        tenant_id: str | None,
        feature: str,
        collector: MetricsCollector | None = None,
    ):
        self.inner = inner
        self.name = getattr(inner, "name", type(inner).__name__)
        self.tenant_id = tenant_id
        self.feature = feature
        self.collector = collector

    async def embed_documents(self, texts: list[str]) -> list[list[float]]:
        with track_call(
            "embedding", self.name,
            feature=self.feature, tenant_id=self.tenant_id, collector=self.collector,
        ) as tracker:
            vectors = await self.inner.embed_documents(texts)
            tracker.set_usage(text_count=len(texts), input_tokens=estimate_tokens(texts))
        return vectors

    async def embed_query(self, text: str) -> list[float]:
        with track_call(
            "embedding", self.name,
            feature=self.feature, tenant_id=self.tenant_id, collector=self.collector,
        ) as tracker:
            vector = await self.inner.embed_query(text)
            tracker.set_usage(text_count=1, input_tokens=estimate_tokens(text))
        return vector

    def __getattr__(self, item: str) -> Any:
        return getattr(self.inner, item)
