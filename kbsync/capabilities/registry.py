"""
组件注册表

按 kind（类型）和 name（名称）两级索引管理组件的构造函数。
注册表由静态清单 MANIFEST 显式填充，不做任何目录扫描或动态导入。

使用方式：
    registry = build_default_registry()
    builder = registry.get("splitter", "character")
    splitter = builder(config, deps)
"""

from __future__ import annotations

from collections import defaultdict
from typing import Any, Callable

from kbsync.capabilities import embedders, record_manager, vector_store
from kbsync.capabilities.base import (
    CAPABILITY_KINDS,
    KIND_EMBEDDER,
    KIND_LOADER,
    KIND_RECORD_MANAGER,
    KIND_SPLITTER,
    KIND_VECTOR_STORE,
)
from kbsync.capabilities.loaders import file as file_loader
from kbsync.capabilities.loaders import text as text_loader
from kbsync.capabilities.loaders import web as web_loader
from kbsync.capabilities.splitters import character, recursive

# 构造函数签名：(config, deps) -> 组件实例
Builder = Callable[[dict[str, Any], dict[str, Any]], Any]


class CapabilityRegistry:
    """组件注册表"""

    def __init__(self) -> None:
        # 二级字典: kind -> name -> builder
        self._builders: dict[str, dict[str, Builder]] = defaultdict(dict)

    def register(self, kind: str, name: str, builder: Builder) -> None:
        if kind not in CAPABILITY_KINDS:
            raise ValueError(f"未知的组件类型: {kind}")
        self._builders[kind][name] = builder

    def get(self, kind: str, name: str) -> Builder | None:
        return self._builders.get(kind, {}).get(name)

    def list(self, kind: str) -> list[str]:
        return list(self._builders.get(kind, {}).keys())


MANIFEST: dict[str, dict[str, Builder]] = {
    KIND_LOADER: {
        "text": text_loader.build,
        "file": file_loader.build,
        "web_scraper": web_loader.build,
    },
    KIND_SPLITTER: {
        "character": character.build,
        "recursive": recursive.build,
    },
    KIND_EMBEDDER: {
        "hash": embedders.build_hash_embedder,
    },
    KIND_VECTOR_STORE: {
        "memory": vector_store.build_memory_store,
    },
    KIND_RECORD_MANAGER: {
        "sql": record_manager.build_sql_record_manager,
    },
}


def build_default_registry(manifest: dict[str, dict[str, Builder]] | None = None) -> CapabilityRegistry:
    """按清单构建注册表"""
    registry = CapabilityRegistry()
    for kind, builders in (manifest or MANIFEST).items():
        for name, builder in builders.items():
            registry.register(kind, name, builder)
    return registry
