"""
文件加载器

文件内容以 data URI 形式出现在配置中：
    data:{mime};base64,{内容},filename:{文件名}

config["file"] 可以是单个 data URI，也可以是 data URI 列表（或其 JSON 字符串）。
"""

import base64
import binascii
import json
from dataclasses import dataclass
from typing import Any

from kbsync.capabilities.base import Document, Splitter

FILENAME_MARKER = ",filename:"


@dataclass
class DataURIFile:
    name: str
    mime_type: str
    content: bytes


def is_data_uri(value: Any) -> bool:
    return isinstance(value, str) and value.startswith("data:") and ";base64," in value


def build_data_uri(name: str, mime_type: str, content: bytes) -> str:
    encoded = base64.b64encode(content).decode("ascii")
    return f"data:{mime_type};base64,{encoded}{FILENAME_MARKER}{name}"


def parse_data_uri(value: str) -> DataURIFile:
    """解析 data URI，格式错误抛 ValueError"""
    if not is_data_uri(value):
        raise ValueError("不是合法的 data URI")
    body, _, name = value.rpartition(FILENAME_MARKER)
    if not body:
        body, name = value, "file"
    header, _, encoded = body.partition(";base64,")
    mime_type = header[len("data:"):] or "application/octet-stream"
    try:
        content = base64.b64decode(encoded, validate=True)
    except binascii.Error as e:
        raise ValueError(f"文件 {name} 的 base64 内容无效") from e
    return DataURIFile(name=name, mime_type=mime_type, content=content)


def split_file_values(value: Any) -> list[str]:
    """把 config["file"] 统一为 data URI 列表"""
    if isinstance(value, list):
        return [str(v) for v in value]
    if isinstance(value, str) and value.startswith("["):
        return [str(v) for v in json.loads(value)]
    if isinstance(value, str) and value:
        return [value]
    return []


class FileLoader:
    name = "file"
    scrapes_pages = False

    def __init__(self, files: list[DataURIFile], metadata: dict[str, Any] | None = None):
        self.files = files
        self.metadata = metadata or {}

    def load(self, splitter: Splitter | None = None) -> list[Document]:
        docs = [
            Document(
                page_content=f.content.decode("utf-8", errors="replace"),
                metadata={**self.metadata, "source": f.name, "mime_type": f.mime_type},
            )
            for f in self.files
        ]
        if splitter is not None:
            return splitter.split_documents(docs)
        return docs


def build(config: dict[str, Any], deps: dict[str, Any]) -> FileLoader:
    values = split_file_values(config.get("file"))
    if not values:
        raise ValueError("file loader 缺少 file 配置")
    return FileLoader(
        files=[parse_data_uri(v) for v in values],
        metadata=config.get("metadata"),
    )
