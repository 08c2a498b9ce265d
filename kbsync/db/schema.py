"""
租户库建表

建连成功后（开启 enable_schema_provisioning 时）调用，
create_all 只创建缺失的表，可重复执行。
"""

import logging

from sqlalchemy import inspect
from sqlalchemy.ext.asyncio import AsyncEngine

from kbsync.db.base import Base
from kbsync.db.engines import EngineStrategy

logger = logging.getLogger(__name__)


async def provision_schema(engine: AsyncEngine, strategy: EngineStrategy) -> list[str]:
    """
    创建缺失的表

    Returns:
        本次新建的表名（按引擎的标识符规则）
    """
    from kbsync import models  # noqa: F401

    async with engine.begin() as conn:
        existing = set(await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names()))
        await conn.run_sync(Base.metadata.create_all)

    created = [
        strategy.normalize_identifier(name)
        for name in Base.metadata.tables
        if name not in existing
    ]
    if created:
        logger.info(f"已创建表: {', '.join(created)}")
    return created
