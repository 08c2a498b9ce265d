"""
结构化日志

- 非开发环境输出 JSON（一行一条，便于 Loki / ELK 采集），开发环境输出带颜色的单行文本
- 当前租户与任务 ID 保存在 ContextVar 中，由 ContextFilter 写入每条日志
- StageTimer 记录流水线各阶段耗时，随日志的 extra 一起输出

使用示例：
    from kbsync.infra.logging import setup_logging, bind_job

    setup_logging()
    with bind_job("org_1", job_id):
        logger.info("开始处理 loader", extra={"store_id": store_id})
"""

import json
import logging
import sys
import time
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Iterator

from kbsync.config import get_settings

tenant_id_var: ContextVar[str | None] = ContextVar("tenant_id", default=None)
job_id_var: ContextVar[str | None] = ContextVar("job_id", default=None)

# LogRecord 自带的属性，其余属性视为调用方通过 extra 传入的字段
_RECORD_ATTRS = frozenset(
    logging.LogRecord("", logging.INFO, "", 0, "", None, None).__dict__
) | {"message", "asctime", "tenant_id", "job_id"}


def get_tenant_id() -> str | None:
    return tenant_id_var.get()


def set_tenant_id(tenant_id: str | None) -> None:
    tenant_id_var.set(tenant_id)


def get_job_id() -> str | None:
    return job_id_var.get()


def set_job_id(job_id: str | None) -> None:
    job_id_var.set(job_id)


@contextmanager
def bind_job(tenant_id: str | None, job_id: str | None = None) -> Iterator[None]:
    """在代码块内绑定租户与任务 ID，退出时恢复原值"""
    tenant_token = tenant_id_var.set(tenant_id)
    job_token = job_id_var.set(job_id)
    try:
        yield
    finally:
        job_id_var.reset(job_token)
        tenant_id_var.reset(tenant_token)


class ContextFilter(logging.Filter):
    """把当前租户与任务 ID 写到 LogRecord 上"""

    def filter(self, record: logging.LogRecord) -> bool:
        record.tenant_id = get_tenant_id()
        record.job_id = get_job_id()
        return True


def _extra_fields(record: logging.LogRecord) -> dict[str, Any]:
    return {
        key: value for key, value in record.__dict__.items()
        if key not in _RECORD_ATTRS and not key.startswith("_")
    }


class JSONFormatter(logging.Formatter):
    """
    JSON 日志

    {"timestamp": "...", "level": "INFO", "logger": "kbsync.services.ingestion",
     "message": "loader 处理完成", "tenant_id": "org_1", "job_id": "...",
     "extra": {"timing": {...}}}
    """

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        # 未经过 ContextFilter 的记录（如测试中直接构造）也能带上上下文
        for key, current in (("tenant_id", get_tenant_id), ("job_id", get_job_id)):
            value = getattr(record, key, None) or current()
            if value:
                payload[key] = value

        extra = _extra_fields(record)
        if extra:
            payload["extra"] = extra
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        elif record.levelno <= logging.DEBUG:
            payload["location"] = f"{record.module}:{record.lineno}"

        return json.dumps(payload, ensure_ascii=False, default=str)


class ConsoleFormatter(logging.Formatter):
    """
    开发环境日志

    12:00:00 INFO     org_1/3f2a9c1e kbsync.services.ingestion: loader 处理完成
    """

    LEVEL_COLORS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self, color: bool = True):
        super().__init__(datefmt="%H:%M:%S")
        self.color = color

    def format(self, record: logging.LogRecord) -> str:
        level = f"{record.levelname:<8}"
        if self.color:
            level = f"{self.LEVEL_COLORS.get(record.levelno, '')}{level}{self.RESET}"

        tenant_id = getattr(record, "tenant_id", None) or get_tenant_id()
        job_id = getattr(record, "job_id", None) or get_job_id()
        scope = "/".join(part for part in (tenant_id, job_id[:8] if job_id else None) if part)

        line = f"{self.formatTime(record, self.datefmt)} {level} "
        if scope:
            line += f"{scope} "
        line += f"{record.name}: {record.getMessage()}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(level: str | None = None, json_format: bool | None = None) -> None:
    """
    配置根 logger

    Args:
        level: 日志级别，默认取配置 LOG_LEVEL
        json_format: 是否输出 JSON，默认取配置 LOG_JSON，未配置时开发 / 测试环境输出文本
    """
    settings = get_settings()
    log_level = logging.getLevelName((level or settings.log_level).upper())
    if not isinstance(log_level, int):
        log_level = logging.INFO

    if json_format is None:
        json_format = settings.log_json
    if json_format is None:
        json_format = settings.environment not in ("dev", "development", "test")

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(ContextFilter())
    handler.setFormatter(JSONFormatter() if json_format else ConsoleFormatter(color=sys.stdout.isatty()))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(log_level)

    # 第三方库只保留警告以上
    for name in ("uvicorn.access", "httpx", "httpcore", "sqlalchemy.engine", "aiosqlite", "asyncio"):
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


class StageTimer:
    """
    流水线阶段计时

    mark(name) 记录从上一次 mark（或创建时）到现在的耗时；
    同名阶段多次出现时耗时累加。

        timer = StageTimer()
        docs = load()
        timer.mark("load")
        persist(docs)
        timer.mark("persist")
        timer.get_metrics()   # {"total_ms": ..., "load_ms": ..., "persist_ms": ...}
    """

    def __init__(self) -> None:
        self._started = time.perf_counter()
        self._last = self._started
        self._stages: dict[str, float] = {}

    def mark(self, name: str) -> None:
        now = time.perf_counter()
        self._stages[name] = self._stages.get(name, 0.0) + (now - self._last)
        self._last = now

    def get_metrics(self) -> dict[str, float]:
        metrics = {"total_ms": round((time.perf_counter() - self._started) * 1000, 2)}
        metrics.update({f"{name}_ms": round(seconds * 1000, 2) for name, seconds in self._stages.items()})
        return metrics
