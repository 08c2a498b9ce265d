"""
数据库引擎策略

每个租户按配置的 kind 解析出一个引擎策略，由它负责：
- 构建连接 URL 与连接池参数
- 提供连接校验 SQL
- 标识符大小写规则
- 判断建连错误是否可重试

策略在租户初始化时解析一次，之后不再按引擎类型分支。
"""

import asyncio
from typing import Any

from sqlalchemy.engine import URL
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from kbsync.config import Settings
from kbsync.exceptions import ConfigurationError
from kbsync.schemas.tenant import TenantDBConfig


class EngineStrategy:
    """引擎策略基类"""

    kind: str = "base"
    drivername: str = ""
    default_port: int | None = None
    validation_query: str = "SELECT 1 AS test_value"
    # 是否对可重试错误做指数退避重试
    retry_on_connect: bool = False

    def build_url(self, cfg: TenantDBConfig) -> URL:
        return URL.create(
            self.drivername,
            username=cfg.username,
            password=cfg.password,
            host=cfg.host,
            port=cfg.port or self.default_port,
            database=cfg.database,
        )

    def engine_kwargs(self, cfg: TenantDBConfig, tenant_id: str, settings: Settings) -> dict[str, Any]:
        return {
            "pool_pre_ping": True,
            "pool_size": max(cfg.min_pool_size, 1),
            "max_overflow": max(cfg.max_pool_size - max(cfg.min_pool_size, 1), 0),
            "pool_timeout": settings.pool_timeout,
            "pool_recycle": settings.pool_recycle,
        }

    def create_engine(self, cfg: TenantDBConfig, tenant_id: str, settings: Settings) -> AsyncEngine:
        return create_async_engine(
            self.build_url(cfg),
            echo=False,
            **self.engine_kwargs(cfg, tenant_id, settings),
        )

    def normalize_identifier(self, name: str) -> str:
        return name

    def is_transient(self, exc: BaseException) -> bool:
        """网络中断、超时类错误可重试"""
        if isinstance(exc, (ConnectionError, TimeoutError, asyncio.TimeoutError)):
            return True
        if isinstance(exc, DBAPIError):
            if exc.connection_invalidated:
                return True
            return isinstance(exc.orig, (ConnectionError, TimeoutError, OSError))
        return isinstance(exc, OSError)


class PostgresStrategy(EngineStrategy):
    kind = "postgres"
    drivername = "postgresql+asyncpg"
    default_port = 5432
    validation_query = "SELECT 1 AS test_value, NOW() AS server_time"

    def engine_kwargs(self, cfg: TenantDBConfig, tenant_id: str, settings: Settings) -> dict[str, Any]:
        kwargs = super().engine_kwargs(cfg, tenant_id, settings)
        connect_args: dict[str, Any] = {
            "server_settings": {"application_name": f"kbsync-org-{tenant_id}"},
        }
        use_ssl = settings.database_ssl if cfg.ssl is None else cfg.ssl
        if use_ssl:
            connect_args["ssl"] = "require"
        kwargs["connect_args"] = connect_args
        return kwargs


class OracleStrategy(EngineStrategy):
    """
    Oracle 策略

    - database 字段按 SID 处理
    - 未加引号的标识符在 Oracle 中统一为大写
    - 建连偶发网络错误较多，启用指数退避重试
    """
    kind = "oracle"
    drivername = "oracle+oracledb"
    default_port = 1521
    validation_query = "SELECT 1 AS test_value, SYSDATE AS server_time FROM DUAL"
    retry_on_connect = True

    # 监听超时、监听不可达、连接被断开等
    TRANSIENT_CODES = ("ORA-12170", "ORA-12541", "ORA-03113", "ORA-03114", "DPY-6005", "DPY-4011")

    def normalize_identifier(self, name: str) -> str:
        return name.upper()

    def is_transient(self, exc: BaseException) -> bool:
        if super().is_transient(exc):
            return True
        message = str(exc)
        return any(code in message for code in self.TRANSIENT_CODES)


class SqliteStrategy(EngineStrategy):
    """SQLite 策略，用于本地调试与测试"""
    kind = "sqlite"
    drivername = "sqlite+aiosqlite"

    def build_url(self, cfg: TenantDBConfig) -> URL:
        return URL.create(self.drivername, database=cfg.database)

    def engine_kwargs(self, cfg: TenantDBConfig, tenant_id: str, settings: Settings) -> dict[str, Any]:
        return {}


_STRATEGIES: dict[str, type[EngineStrategy]] = {
    PostgresStrategy.kind: PostgresStrategy,
    OracleStrategy.kind: OracleStrategy,
    SqliteStrategy.kind: SqliteStrategy,
}


def resolve_engine_strategy(kind: str) -> EngineStrategy:
    """根据引擎类型获取策略实例"""
    strategy_cls = _STRATEGIES.get(kind)
    if strategy_cls is None:
        raise ConfigurationError(f"不支持的数据库类型: {kind}，可选: {sorted(_STRATEGIES)}")
    return strategy_cls()
