"""
定长字符切分器

固定大小的窗口按步长滑动，相邻片段保持一定重叠。
overlap 为 0 时片段首尾相接，拼接后等于原文。
"""

from typing import Any

from kbsync.capabilities.base import BaseSplitter


class CharacterSplitter(BaseSplitter):
    """
    切分策略：
    - 步长 = chunk_size - chunk_overlap
    - 最后一个片段可能小于 chunk_size

    示例（chunk_size=40, chunk_overlap=0，原文 100 字符）：
    片段1: [0, 40)
    片段2: [40, 80)
    片段3: [80, 100)
    """
    name = "character"

    def __init__(self, chunk_size: int = 1000, chunk_overlap: int = 200):
        if chunk_size <= 0:
            raise ValueError(f"chunk_size 必须大于 0，当前为 {chunk_size}")
        if chunk_overlap < 0 or chunk_overlap >= chunk_size:
            raise ValueError(f"chunk_overlap ({chunk_overlap}) 必须在 [0, chunk_size) 范围内")
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap

    def split_text(self, text: str) -> list[str]:
        if not text:
            return []

        pieces: list[str] = []
        step = max(1, self.chunk_size - self.chunk_overlap)

        for start in range(0, len(text), step):
            end = start + self.chunk_size
            pieces.append(text[start:end])
            if end >= len(text):
                break

        return pieces


def build(config: dict[str, Any], deps: dict[str, Any]) -> CharacterSplitter:
    return CharacterSplitter(
        chunk_size=int(config.get("chunk_size", 1000)),
        chunk_overlap=int(config.get("chunk_overlap", 200)),
    )
