"""
租户文件存储

上传的文件以 data URI 形式随 loader 配置提交，处理时被写入本地存储，
配置中的值替换为占位符：
    FILE-STORAGE::a.txt
    FILE-STORAGE::["a.txt", "b.pdf"]

再次处理时占位符会被还原（rehydrate）为 data URI 交给加载器。

目录结构：{root}/{tenant_id}/{store_id}/{文件名}
"""

import json
import logging
import mimetypes
import shutil
from pathlib import Path
from typing import Any

from starlette.concurrency import run_in_threadpool

from kbsync.capabilities.loaders.file import build_data_uri
from kbsync.exceptions import NotFoundError

logger = logging.getLogger(__name__)

FILE_STORAGE_PREFIX = "FILE-STORAGE::"


def is_placeholder(value: Any) -> bool:
    return isinstance(value, str) and value.startswith(FILE_STORAGE_PREFIX)


def parse_placeholder(value: str) -> list[str]:
    """解析占位符中的文件名列表"""
    body = value[len(FILE_STORAGE_PREFIX):]
    if body.startswith("["):
        return [str(name) for name in json.loads(body)]
    return [body] if body else []


def make_placeholder(names: list[str]) -> str:
    return FILE_STORAGE_PREFIX + json.dumps(names, ensure_ascii=False)


class LocalFileStorage:
    """本地磁盘文件存储"""

    def __init__(self, root: str | Path):
        self.root = Path(root)

    def _store_dir(self, tenant_id: str, store_id: str) -> Path:
        return self.root / tenant_id / store_id

    def _path(self, tenant_id: str, store_id: str, name: str) -> Path:
        # 只保留文件名部分，防止路径穿越
        return self._store_dir(tenant_id, store_id) / Path(name).name

    async def save(self, tenant_id: str, store_id: str, name: str, content: bytes) -> str:
        path = self._path(tenant_id, store_id, name)

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(content)

        await run_in_threadpool(_write)
        logger.debug(f"文件已保存: {path}")
        return path.name

    async def read(self, tenant_id: str, store_id: str, name: str) -> bytes:
        path = self._path(tenant_id, store_id, name)
        if not path.exists():
            raise NotFoundError(f"文件不存在: {name}")
        return await run_in_threadpool(path.read_bytes)

    async def delete_file(self, tenant_id: str, store_id: str, name: str) -> None:
        path = self._path(tenant_id, store_id, name)
        await run_in_threadpool(path.unlink, True)

    async def delete_store(self, tenant_id: str, store_id: str) -> None:
        """删除知识库下的全部文件"""
        directory = self._store_dir(tenant_id, store_id)
        await run_in_threadpool(shutil.rmtree, directory, True)

    async def list_files(self, tenant_id: str, store_id: str) -> list[str]:
        directory = self._store_dir(tenant_id, store_id)

        def _list() -> list[str]:
            if not directory.exists():
                return []
            return sorted(p.name for p in directory.iterdir() if p.is_file())

        return await run_in_threadpool(_list)

    async def rehydrate(self, tenant_id: str, store_id: str, value: str) -> str:
        """把占位符还原为 data URI（多个文件时为 JSON 列表字符串）"""
        uris = []
        for name in parse_placeholder(value):
            content = await self.read(tenant_id, store_id, name)
            mime_type = mimetypes.guess_type(name)[0] or "application/octet-stream"
            uris.append(build_data_uri(name, mime_type, content))
        if len(uris) == 1:
            return uris[0]
        return json.dumps(uris)
