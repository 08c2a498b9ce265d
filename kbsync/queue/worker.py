"""
队列 worker

从队列中取出任务，重新挂载本地句柄（租户连接、组件工厂、文件存储）
后交给与进程内模式相同的 JobExecutor 执行，再把结果写回队列。
"""

import asyncio
import logging
from typing import Any

from pydantic import ValidationError

from kbsync.exceptions import InternalError, to_internal_error
from kbsync.infra.logging import bind_job
from kbsync.queue.executor import JobExecutor
from kbsync.queue.redis_queue import RedisJobQueue
from kbsync.schemas.job import JobPayload

logger = logging.getLogger(__name__)


class JobWorker:
    """单个队列的消费者"""

    def __init__(
        self,
        executor: JobExecutor,
        queue: RedisJobQueue,
        concurrency: int = 1,
        poll_timeout: float = 1.0,
    ):
        self.executor = executor
        self.queue = queue
        self.concurrency = max(concurrency, 1)
        self.poll_timeout = poll_timeout
        self.processed = 0

    async def process(self, job_id: str, data: dict[str, Any]) -> dict[str, Any]:
        """执行一个任务并写回结果"""
        with bind_job(data.get("tenant_id"), job_id):
            outcome = await self._execute(job_id, data)

        await self.queue.complete(job_id, outcome)
        self.processed += 1
        return outcome

    async def _execute(self, job_id: str, data: dict[str, Any]) -> dict[str, Any]:
        try:
            payload = JobPayload.model_validate(data)
            result = await self.executor.execute(payload)
        except ValidationError as e:
            error = InternalError(400, f"Error: worker.parse_payload - {e}", "worker.parse_payload")
            return {"status": "failed", "error": error.to_dict()}
        except Exception as e:
            error = to_internal_error(e, "worker.execute")
            logger.error(f"任务 {job_id} 执行失败: {error.message}")
            return {"status": "failed", "error": error.to_dict()}
        return {"status": "completed", "result": result}

    async def run_once(self) -> bool:
        """取一个任务执行，队列为空时返回 False"""
        job = await self.queue.fetch_job(self.poll_timeout)
        if job is None:
            return False
        await self.process(*job)
        return True

    async def run(self, stop_event: asyncio.Event) -> None:
        logger.info(f"worker 启动: {self.queue.name}（并发 {self.concurrency}）")
        await self.queue.requeue_stale()
        await asyncio.gather(*(self._consume(stop_event) for _ in range(self.concurrency)))
        logger.info(f"worker 已停止: {self.queue.name}，共处理 {self.processed} 个任务")

    async def _consume(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                if not await self.run_once():
                    # 空闲时顺带回收其他 worker 遗留的任务
                    await self.queue.requeue_stale()
            except Exception as e:  # noqa: BLE001
                logger.error(f"worker 处理任务异常: {e}", exc_info=True)
                await asyncio.sleep(self.poll_timeout)
