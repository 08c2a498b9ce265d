"""
租户连接注册表

每个租户（组织）拥有独立的数据库，注册表为每个租户维护一个连接池：
- 按需（或启动时批量）创建连接
- 建连后执行校验 SQL，校验失败的连接不会被保存
- 老引擎（Oracle）对可重试错误做指数退避重试
- 可选地在建连后自动建表，失败只记日志

租户之间相互隔离：一个租户建连失败不影响其他租户。
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from kbsync.config import Settings, get_settings
from kbsync.db.engines import EngineStrategy, resolve_engine_strategy
from kbsync.db.schema import provision_schema
from kbsync.exceptions import KBSyncError, NotInitializedError, TransientConnectionError
from kbsync.schemas.tenant import TenantConfig
from kbsync.services.tenant_config import TenantConfigService

logger = logging.getLogger(__name__)

EngineFactory = Callable[[EngineStrategy, TenantConfig, Settings], AsyncEngine]


class ConnectionValidationError(KBSyncError):
    """连接校验失败"""


@dataclass
class TenantConnection:
    """租户连接：引擎 + 会话工厂 + 引擎策略"""
    tenant_id: str
    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    strategy: EngineStrategy

    def session(self) -> AsyncSession:
        return self.session_factory()


@dataclass
class InitializationReport:
    """批量初始化结果"""
    succeeded: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return len(self.succeeded) + len(self.failed)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "succeeded": len(self.succeeded),
            "failed": len(self.failed),
            "errors": dict(self.failed),
        }


def _default_engine_factory(strategy: EngineStrategy, tenant: TenantConfig, settings: Settings) -> AsyncEngine:
    return strategy.create_engine(tenant.db, tenant.id, settings)


class ConnectionRegistry:
    """
    租户连接注册表

    使用示例：
        registry = ConnectionRegistry(TenantConfigService.from_settings())
        await registry.initialize_all()
        conn = await registry.ensure_initialized("org_1")
        async with conn.session() as session:
            ...
        await registry.close_all()
    """

    def __init__(
        self,
        tenants: TenantConfigService,
        settings: Settings | None = None,
        engine_factory: EngineFactory | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.tenants = tenants
        self.settings = settings or get_settings()
        self._engine_factory = engine_factory or _default_engine_factory
        self._sleep = sleep
        self._connections: dict[str, TenantConnection] = {}
        # 每个租户一把初始化锁，只保护懒创建过程
        self._locks: dict[str, asyncio.Lock] = {}

    async def ensure_initialized(self, tenant_id: str) -> TenantConnection:
        """获取租户连接，不存在时创建（幂等）"""
        conn = self._connections.get(tenant_id)
        if conn is not None:
            return conn

        lock = self._locks.setdefault(tenant_id, asyncio.Lock())
        async with lock:
            conn = self._connections.get(tenant_id)
            if conn is None:
                conn = await self._initialize(tenant_id)
                self._connections[tenant_id] = conn
        return conn

    def get(self, tenant_id: str) -> TenantConnection:
        """获取已初始化的租户连接，未初始化属于调用方错误"""
        conn = self._connections.get(tenant_id)
        if conn is None:
            raise NotInitializedError(f"租户 {tenant_id} 的数据库连接尚未初始化")
        return conn

    def has(self, tenant_id: str) -> bool:
        return tenant_id in self._connections

    def tenant_ids(self) -> list[str]:
        return list(self._connections)

    async def initialize_all(self, tenant_ids: list[str] | None = None) -> InitializationReport:
        """并发初始化租户（默认全部已配置的租户），单个租户失败不影响其他租户"""
        tenant_ids = list(tenant_ids) if tenant_ids is not None else self.tenants.tenant_ids()
        report = InitializationReport()
        if not tenant_ids:
            logger.warning("没有需要初始化的租户")
            return report

        logger.info(f"开始初始化 {len(tenant_ids)} 个租户的数据库连接")
        results = await asyncio.gather(
            *(self.ensure_initialized(tenant_id) for tenant_id in tenant_ids),
            return_exceptions=True,
        )
        for tenant_id, result in zip(tenant_ids, results):
            if isinstance(result, BaseException):
                report.failed[tenant_id] = str(result)
                logger.error(f"租户 {tenant_id} 数据库初始化失败: {result}")
            else:
                report.succeeded.append(tenant_id)

        logger.info(
            f"租户数据库初始化完成: 成功 {len(report.succeeded)}，失败 {len(report.failed)}",
            extra={"report": report.to_dict()},
        )
        return report

    async def close_all(self) -> None:
        """关闭所有租户连接池，单个失败只记日志"""
        connections = list(self._connections.values())
        self._connections.clear()
        for conn in connections:
            try:
                await conn.engine.dispose()
                logger.info(f"租户 {conn.tenant_id} 连接池已关闭")
            except Exception as e:  # noqa: BLE001
                logger.error(f"关闭租户 {conn.tenant_id} 连接池失败: {e}")

    def pool_status(self) -> dict[str, dict[str, Any]]:
        """各租户连接池状态"""
        status: dict[str, dict[str, Any]] = {}
        for tenant_id, conn in self._connections.items():
            pool = conn.engine.pool
            info: dict[str, Any] = {"kind": conn.strategy.kind, "status": pool.status()}
            for metric in ("size", "checkedout", "overflow", "checkedin"):
                fn = getattr(pool, metric, None)
                if callable(fn):
                    info[metric] = fn()
            status[tenant_id] = info
        return status

    def is_ready(self) -> bool:
        return bool(self._connections)

    # ==================== 内部实现 ====================

    async def _initialize(self, tenant_id: str) -> TenantConnection:
        tenant = self.tenants.get(tenant_id)
        strategy = resolve_engine_strategy(tenant.db.kind)

        engine = await self._open_with_retry(tenant, strategy)
        try:
            await self._validate(engine, strategy)
        except Exception:
            await engine.dispose()
            raise

        if self.settings.enable_schema_provisioning:
            try:
                await provision_schema(engine, strategy)
            except Exception as e:  # noqa: BLE001
                logger.error(f"租户 {tenant_id} 建表失败（继续运行）: {e}")

        logger.info(f"租户 {tenant_id} 数据库连接就绪 ({strategy.kind})")
        return TenantConnection(
            tenant_id=tenant_id,
            engine=engine,
            session_factory=async_sessionmaker(engine, expire_on_commit=False),
            strategy=strategy,
        )

    async def _open_with_retry(self, tenant: TenantConfig, strategy: EngineStrategy) -> AsyncEngine:
        """
        建立连接

        仅当策略开启重试且错误可重试时才重试，延迟 = base * 2^(attempt-1)；
        不可重试的错误立即抛出。
        """
        max_attempts = max(self.settings.connect_max_retries, 1) if strategy.retry_on_connect else 1

        def log_retry(retry_state: RetryCallState) -> None:
            logger.warning(
                f"租户 {tenant.id} 建连失败（第 {retry_state.attempt_number}/{max_attempts} 次），"
                f"{retry_state.next_action.sleep:.1f}s 后重试: {retry_state.outcome.exception()}"
            )

        retrying = AsyncRetrying(
            retry=retry_if_exception(strategy.is_transient),
            stop=stop_after_attempt(max_attempts),
            wait=wait_exponential(multiplier=self.settings.connect_retry_base_delay),
            before_sleep=log_retry,
            sleep=self._sleep,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    engine = self._engine_factory(strategy, tenant, self.settings)
                    try:
                        async with engine.connect():
                            pass
                    except Exception:
                        await engine.dispose()
                        raise
        except Exception as e:
            if strategy.retry_on_connect and strategy.is_transient(e):
                raise TransientConnectionError(
                    f"租户 {tenant.id} 建连失败，已重试 {max_attempts} 次: {e}"
                ) from e
            raise
        return engine

    async def _validate(self, engine: AsyncEngine, strategy: EngineStrategy) -> None:
        async with engine.connect() as conn:
            result = await conn.execute(text(strategy.validation_query))
            row = result.first()
        if row is None or row[0] != 1:
            raise ConnectionValidationError(f"连接校验失败: {strategy.validation_query}")
