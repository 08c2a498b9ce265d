"""
组件调用计量

按 (租户, 调用类型, 功能) 聚合外部组件调用（目前主要是 Embedding）的
次数、失败数、耗时与 token 估算，每次调用同时输出一条结构化日志。

使用示例：
    from kbsync.infra.metrics import estimate_tokens, track_call

    with track_call("embedding", "hash", feature="document-store-upsert", tenant_id="org_1") as call:
        vectors = await embedder.embed_documents(texts)
        call.set_usage(text_count=len(texts), input_tokens=estimate_tokens(texts))
"""

import logging
import math
import time
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from typing import Any, Iterator

from kbsync.infra.logging import get_job_id, get_tenant_id

logger = logging.getLogger(__name__)


def estimate_tokens(texts: list[str] | str) -> int:
    """按每 4 个字符 1 个 token 估算，逐条向上取整"""
    if isinstance(texts, str):
        texts = [texts]
    return sum(math.ceil(len(text) / 4) for text in texts)


@dataclass
class CallMetrics:
    """一次组件调用"""
    call_type: str
    provider: str
    feature: str | None = None
    model: str | None = None
    tenant_id: str | None = None
    job_id: str | None = None
    latency_ms: float = 0.0
    success: bool = True
    error: str | None = None
    text_count: int | None = None
    input_tokens: int | None = None

    @property
    def key(self) -> str:
        return f"{self.tenant_id or '-'}:{self.call_type}:{self.feature or '-'}"

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass
class UsageStats:
    """同一 key 下的累计用量"""
    count: int = 0
    errors: int = 0
    input_tokens: int = 0
    latency_ms: float = 0.0

    def add(self, call: CallMetrics) -> None:
        self.count += 1
        self.latency_ms += call.latency_ms
        self.input_tokens += call.input_tokens or 0
        if not call.success:
            self.errors += 1


class CallTracker:
    """track_call 中交给调用方的句柄"""

    def __init__(self, metrics: CallMetrics):
        self.metrics = metrics
        self._started = time.perf_counter()

    def set_usage(self, text_count: int | None = None, input_tokens: int | None = None) -> None:
        self.metrics.text_count = text_count
        self.metrics.input_tokens = input_tokens

    def fail(self, exc: BaseException) -> None:
        self.metrics.success = False
        self.metrics.error = f"{type(exc).__name__}: {exc}"

    def finish(self) -> CallMetrics:
        self.metrics.latency_ms = round((time.perf_counter() - self._started) * 1000, 2)
        return self.metrics


class MetricsCollector:
    """进程内的用量汇总"""

    def __init__(self) -> None:
        self._usage: dict[str, UsageStats] = defaultdict(UsageStats)

    def record_call(self, call: CallMetrics) -> None:
        self._usage[call.key].add(call)
        level = logging.INFO if call.success else logging.WARNING
        status = "完成" if call.success else f"失败: {call.error}"
        logger.log(
            level,
            f"[{call.call_type}] {call.provider} 调用{status}（{call.latency_ms:.1f}ms）",
            extra={"metrics": call.to_dict()},
        )

    def get_stats(self) -> dict[str, Any]:
        """{"calls": {"org_1:embedding:document-store-upsert": {"count": 3, "input_tokens": 120, ...}}}"""
        return {"calls": {key: asdict(stats) for key, stats in self._usage.items()}}

    def reset(self) -> None:
        self._usage.clear()


metrics_collector = MetricsCollector()


@contextmanager
def track_call(
    call_type: str,
    provider: str,
    model: str | None = None,
    feature: str | None = None,
    tenant_id: str | None = None,
    collector: MetricsCollector | None = None,
) -> Iterator[CallTracker]:
    """
    追踪一次组件调用

    被追踪代码的异常照常抛出；写入收集器失败只记日志，不影响调用结果。
    """
    tracker = CallTracker(CallMetrics(
        call_type=call_type,
        provider=provider,
        model=model,
        feature=feature,
        tenant_id=tenant_id or get_tenant_id(),
        job_id=get_job_id(),
    ))
    try:
        yield tracker
    except Exception as e:
        tracker.fail(e)
        raise
    finally:
        call = tracker.finish()
        try:
            (collector if collector is not None else metrics_collector).record_call(call)
        except Exception as e:  # noqa: BLE001
            logger.warning(f"记录调用指标失败: {e}")
