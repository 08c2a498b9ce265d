"""
递归字符切分器

依次尝试 段落 → 行 → 空格 → 单字符 作为分隔符，
只有当前粒度切不到 chunk_size 以内时才降到下一级。
"""

from typing import Any, Iterator

from kbsync.capabilities.base import BaseSplitter

# 配置里常以转义形式书写分隔符，如 "\\n\\n,\\n"
_ESCAPES = {"\\n\\n": "\n\n", "\\n": "\n", "\\t": "\t"}


def parse_separators(value: list[str] | str | None) -> list[str]:
    if value is None:
        return list(RecursiveSplitter.DEFAULT_SEPARATORS)
    if isinstance(value, str):
        value = [part.strip() for part in value.split(",")]
        value = [part for part in value if part]
    return [_ESCAPES.get(sep, sep) for sep in value]


class RecursiveSplitter(BaseSplitter):
    """
    1. 按第一个分隔符拆分，超长的段落交给下一个分隔符
    2. 所有分隔符用完仍超长时按 chunk_size 硬切
    3. 顺序拼接相邻的小段，新片段开头带上前一片段末尾的 chunk_overlap 个字符
    """
    name = "recursive"

    DEFAULT_SEPARATORS = ("\n\n", "\n", " ", "")

    def __init__(
        self,
        chunk_size: int = 1000,
        chunk_overlap: int = 200,
        separators: list[str] | str | None = None,
        keep_separator: bool = True,
    ):
        if chunk_size <= 0:
            raise ValueError(f"chunk_size 必须大于 0，当前为 {chunk_size}")
        if not 0 <= chunk_overlap < chunk_size:
            raise ValueError(f"chunk_overlap ({chunk_overlap}) 必须在 [0, chunk_size) 范围内")

        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self.keep_separator = keep_separator
        self.separators = parse_separators(separators)

    def split_text(self, text: str) -> list[str]:
        if not text:
            return []
        return [chunk for chunk in self._join(self._segments(text, 0)) if chunk.strip()]

    def _segments(self, text: str, level: int) -> Iterator[str]:
        """产出长度都不超过 chunk_size 的小段"""
        if level >= len(self.separators):
            yield from self._hard_cut(text)
            return

        sep = self.separators[level]
        if not sep:
            parts = list(text)
        else:
            parts = text.split(sep)
            if self.keep_separator:
                parts = [part + sep for part in parts[:-1]] + parts[-1:]

        for part in parts:
            if len(part) <= self.chunk_size:
                yield part
            else:
                yield from self._segments(part, level + 1)

    def _hard_cut(self, text: str) -> Iterator[str]:
        size = self.chunk_size
        for start in range(0, len(text), size):
            yield text[start:start + size]

    def _join(self, segments: Iterator[str]) -> list[str]:
        chunks: list[str] = []
        buffer = ""
        for segment in segments:
            if len(buffer) + len(segment) <= self.chunk_size:
                buffer += segment
                continue
            if buffer:
                chunks.append(buffer)
            buffer = segment
            if chunks and self.chunk_overlap:
                carried = chunks[-1][-self.chunk_overlap:] + segment
                if len(carried) <= self.chunk_size:
                    buffer = carried
        if buffer:
            chunks.append(buffer)
        return chunks


def build(config: dict[str, Any], deps: dict[str, Any]) -> RecursiveSplitter:
    return RecursiveSplitter(
        chunk_size=int(config.get("chunk_size", 1000)),
        chunk_overlap=int(config.get("chunk_overlap", 200)),
        separators=config.get("separators"),
        keep_separator=bool(config.get("keep_separator", True)),
    )
