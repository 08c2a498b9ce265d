"""
向量化组件

hash: 基于特征哈希的确定性向量化，无外部依赖，
用于本地开发与测试；生产环境的模型提供商由外部组件清单接入。
"""

import hashlib
import math
import re
from typing import Any

_TOKEN_PATTERN = re.compile(r"\w+", re.UNICODE)


class HashEmbedder:
    """
    特征哈希向量化

    每个词哈希到 [0, dimension) 中的一个桶，按哈希位决定正负号，
    最后做 L2 归一化。相同文本总是得到相同向量。
    """
    name = "hash"

    def __init__(self, dimension: int = 256):
        if dimension <= 0:
            raise ValueError(f"dimension 必须大于 0，当前为 {dimension}")
        self.dimension = dimension

    def _embed(self, text: str) -> list[float]:
        vector = [0.0] * self.dimension
        for token in _TOKEN_PATTERN.findall(text.lower()):
            digest = hashlib.md5(token.encode("utf-8")).digest()
            bucket = int.from_bytes(digest[:4], "big") % self.dimension
            sign = 1.0 if digest[4] & 1 else -1.0
            vector[bucket] += sign
        norm = math.sqrt(sum(v * v for v in vector))
        if norm == 0:
            return vector
        return [v / norm for v in vector]

    async def embed_documents(self, texts: list[str]) -> list[list[float]]:
        return [self._embed(t) for t in texts]

    async def embed_query(self, text: str) -> list[float]:
        return self._embed(text)


def build_hash_embedder(config: dict[str, Any], deps: dict[str, Any]) -> HashEmbedder:
    return HashEmbedder(dimension=int(config.get("dimension", 256)))
