"""
任务分发器

对调用方提供统一的 "提交并等待结果" 接口：
- direct 模式：进程内直接执行
- queue 模式：投递到租户的命名队列，阻塞等待 worker 写回结果

两种模式的返回结构相同；worker 端的失败会以相同的 InternalError
（状态码 + 信息）在提交方重新抛出。
"""

import logging
from typing import Any

from kbsync.config import Settings, get_settings
from kbsync.exceptions import InternalError, QueueExecutionError, wrap_errors
from kbsync.infra.logging import set_job_id
from kbsync.queue.executor import JobExecutor
from kbsync.queue.redis_queue import QueueManager
from kbsync.schemas.job import JobPayload, queue_class_for

logger = logging.getLogger(__name__)


class JobDispatcher:
    def __init__(
        self,
        executor: JobExecutor,
        queue_manager: QueueManager | None = None,
        settings: Settings | None = None,
    ):
        self.executor = executor
        self.queue_manager = queue_manager
        self.settings = settings or get_settings()

    @property
    def mode(self) -> str:
        return self.settings.mode

    @wrap_errors("dispatcher.submit")
    async def submit(self, payload: JobPayload) -> dict[str, Any]:
        """提交任务并等待结果"""
        if self.mode != "queue":
            return await self.executor.execute(payload)
        return await self._submit_to_queue(payload)

    async def _submit_to_queue(self, payload: JobPayload) -> dict[str, Any]:
        if self.queue_manager is None:
            raise QueueExecutionError("queue 模式下未配置队列管理器")

        queue = self.queue_manager.get_queue(payload.tenant_id, queue_class_for(payload.operation))
        job_id = await queue.add_job(payload.to_queue_data())
        set_job_id(job_id)
        logger.info(f"任务已提交到队列 {queue.name}: {payload.operation.value}")

        outcome = await queue.wait_until_finished(job_id, self.settings.queue_completion_timeout)
        if not outcome:
            raise QueueExecutionError("Job execution failed")
        if outcome.get("status") == "failed":
            raise InternalError.from_dict(outcome.get("error") or {})
        # {} 是合法结果，与 direct 模式一致；只有缺少结果才算失败
        if outcome.get("status") != "completed" or outcome.get("result") is None:
            raise QueueExecutionError("Job execution failed")
        return outcome["result"]
