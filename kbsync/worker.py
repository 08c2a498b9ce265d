"""
队列 worker 启动入口

用法示例：
    python -m kbsync.worker --tenant org_1 --tenant org_2
    python -m kbsync.worker --all --queue upsert --concurrency 4
"""

import argparse
import asyncio
import logging
import signal

from kbsync.config import get_settings
from kbsync.container import AppContext
from kbsync.infra.logging import setup_logging
from kbsync.queue.abort import AbortSubscriber
from kbsync.queue.worker import JobWorker
from kbsync.schemas.job import QUEUE_CLASS_PREDICTION, QUEUE_CLASS_UPSERT

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run kbsync queue workers")
    parser.add_argument("--tenant", action="append", default=[], help="Tenant ID (repeatable)")
    parser.add_argument("--all", action="store_true", help="Consume queues of all configured tenants")
    parser.add_argument(
        "--queue",
        choices=[QUEUE_CLASS_UPSERT, QUEUE_CLASS_PREDICTION],
        default=QUEUE_CLASS_UPSERT,
        help="Queue class to consume",
    )
    parser.add_argument("--concurrency", type=int, default=None, help="Concurrent jobs per queue")
    return parser.parse_args(argv)


async def start_workers(
    context: AppContext,
    tenant_ids: list[str] | None,
    queue_class: str,
    concurrency: int,
) -> list[JobWorker]:
    """
    为租户创建 worker

    tenant_ids 为 None 时取全部已配置的租户；建连失败的租户只记日志并跳过。
    """
    report = await context.registry.initialize_all(tenant_ids)
    for tenant_id, error in report.failed.items():
        logger.error(f"租户 {tenant_id} 数据库不可用，不启动该租户的 worker: {error}")
    return [
        JobWorker(context.executor, context.queue_manager.get_queue(tenant_id, queue_class), concurrency)
        for tenant_id in report.succeeded
    ]


async def run(args: argparse.Namespace) -> None:
    if not args.all and not args.tenant:
        raise SystemExit("No tenant specified, use --tenant or --all")

    settings = get_settings()
    context = AppContext.create(settings)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    concurrency = args.concurrency or settings.worker_concurrency
    workers = await start_workers(context, None if args.all else args.tenant, args.queue, concurrency)
    if not workers:
        await context.close()
        raise SystemExit("No tenant database available")
    tasks = [worker.run(stop_event) for worker in workers]

    if args.queue == QUEUE_CLASS_PREDICTION:
        subscriber = AbortSubscriber(context.abort_registry, context.queue_manager.client_for(), settings)
        tasks.append(subscriber.run(stop_event))

    try:
        await asyncio.gather(*tasks)
    finally:
        await context.close()


def main() -> None:
    setup_logging()
    asyncio.run(run(parse_args()))


if __name__ == "__main__":
    main()
