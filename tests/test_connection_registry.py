"""
租户连接注册表单元测试

- 懒创建与幂等
- 租户间故障隔离
- Oracle 的指数退避重试
- 连接校验失败时丢弃连接
- 本地数据库覆盖
"""

import json
from unittest.mock import AsyncMock

import pytest

from kbsync.db.engines import (
    OracleStrategy,
    PostgresStrategy,
    SqliteStrategy,
    resolve_engine_strategy,
)
from kbsync.db.registry import ConnectionRegistry, ConnectionValidationError
from kbsync.exceptions import ConfigurationError, NotFoundError, NotInitializedError, TransientConnectionError
from kbsync.schemas.tenant import TenantConfig, TenantDBConfig
from kbsync.services.tenant_config import TenantConfigService

from conftest import TENANT_A, TENANT_B, sqlite_tenant


class FakeResult:
    def __init__(self, row):
        self._row = row

    def first(self):
        return self._row


class FakeConnection:
    def __init__(self, engine):
        self.engine = engine

    async def __aenter__(self):
        if self.engine.fail_with is not None:
            raise self.engine.fail_with
        return self

    async def __aexit__(self, *exc):
        return False

    async def execute(self, statement):
        self.engine.executed.append(str(statement))
        return FakeResult(self.engine.validation_row)


class FakeEngine:
    """模拟 AsyncEngine：可指定建连异常与校验结果"""

    def __init__(self, fail_with: BaseException | None = None, validation_row=(1,)):
        self.fail_with = fail_with
        self.validation_row = validation_row
        self.executed: list[str] = []
        self.disposed = False

    def connect(self):
        return FakeConnection(self)

    async def dispose(self):
        self.disposed = True


def oracle_tenant(tenant_id: str = "org_ora") -> TenantConfig:
    return TenantConfig(
        id=tenant_id,
        db=TenantDBConfig(kind="oracle", host="ora.local", username="u", password="p", database="ORCL"),
    )


def postgres_tenant(tenant_id: str = "org_pg") -> TenantConfig:
    return TenantConfig(
        id=tenant_id,
        db=TenantDBConfig(kind="postgres", host="pg.local", username="u", password="p", database="kb"),
    )


def make_registry(settings, tenant: TenantConfig, engines: list[FakeEngine]):
    settings.enable_schema_provisioning = False
    sleep = AsyncMock()
    registry = ConnectionRegistry(
        TenantConfigService([tenant], settings),
        settings,
        engine_factory=lambda strategy, cfg, s: engines.pop(0),
        sleep=sleep,
    )
    return registry, sleep


class TestLazyInitialization:
    """测试懒创建"""

    @pytest.mark.asyncio
    async def test_ensure_initialized_is_idempotent(self, settings, tenants):
        registry = ConnectionRegistry(tenants, settings)
        try:
            first = await registry.ensure_initialized(TENANT_A)
            second = await registry.ensure_initialized(TENANT_A)
            assert first is second
            assert registry.has(TENANT_A)
            assert registry.get(TENANT_A) is first
            assert not registry.has(TENANT_B)
        finally:
            await registry.close_all()

    def test_get_uninitialized_tenant_raises(self, settings, tenants):
        registry = ConnectionRegistry(tenants, settings)
        with pytest.raises(NotInitializedError):
            registry.get(TENANT_A)

    @pytest.mark.asyncio
    async def test_unknown_tenant(self, settings, tenants):
        registry = ConnectionRegistry(tenants, settings)
        with pytest.raises(NotFoundError):
            await registry.ensure_initialized("org_missing")

    @pytest.mark.asyncio
    async def test_schema_provisioned_on_connect(self, settings, tenants):
        from sqlalchemy import inspect

        registry = ConnectionRegistry(tenants, settings)
        try:
            conn = await registry.ensure_initialized(TENANT_A)
            async with conn.engine.connect() as c:
                tables = await c.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())
            assert "kb_document_store" in tables
            assert "kb_document_store_chunk" in tables
            assert "kb_upsert_history" in tables
        finally:
            await registry.close_all()


class TestTenantIsolation:
    """测试租户间故障隔离"""

    @pytest.mark.asyncio
    async def test_one_failure_does_not_block_others(self, settings, tmp_path):
        tenants = TenantConfigService(
            [
                # 目录不存在，SQLite 无法打开
                sqlite_tenant(TENANT_A, tmp_path / "missing" / "dir" / "a.db"),
                sqlite_tenant(TENANT_B, tmp_path / "b.db"),
            ],
            settings,
        )
        registry = ConnectionRegistry(tenants, settings)
        try:
            report = await registry.initialize_all()
            assert report.succeeded == [TENANT_B]
            assert TENANT_A in report.failed
            assert report.to_dict()["total"] == 2
            assert registry.has(TENANT_B)
            assert not registry.has(TENANT_A)
        finally:
            await registry.close_all()

    @pytest.mark.asyncio
    async def test_initialize_all_without_tenants(self, settings):
        registry = ConnectionRegistry(TenantConfigService([], settings), settings)
        report = await registry.initialize_all()
        assert report.total == 0


class TestRetry:
    """测试建连重试"""

    @pytest.mark.asyncio
    async def test_oracle_retries_transient_errors_with_backoff(self, settings):
        engines = [FakeEngine(OSError("reset")), FakeEngine(OSError("reset")), FakeEngine()]
        registry, sleep = make_registry(settings, oracle_tenant(), engines)

        conn = await registry.ensure_initialized("org_ora")

        assert conn.strategy.kind == "oracle"
        assert [call.args[0] for call in sleep.await_args_list] == [2.0, 4.0]

    @pytest.mark.asyncio
    async def test_oracle_error_code_is_transient(self, settings):
        engines = [FakeEngine(RuntimeError("ORA-12541: TNS:no listener")), FakeEngine()]
        registry, sleep = make_registry(settings, oracle_tenant(), engines)

        await registry.ensure_initialized("org_ora")
        assert sleep.await_count == 1

    @pytest.mark.asyncio
    async def test_non_transient_error_fails_immediately(self, settings):
        failing = FakeEngine(ValueError("ORA-01017: invalid username/password"))
        registry, sleep = make_registry(settings, oracle_tenant(), [failing, FakeEngine()])

        with pytest.raises(ValueError):
            await registry.ensure_initialized("org_ora")
        sleep.assert_not_awaited()
        assert failing.disposed
        assert not registry.has("org_ora")

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, settings):
        engines = [FakeEngine(OSError("timeout")) for _ in range(3)]
        registry, sleep = make_registry(settings, oracle_tenant(), engines)

        with pytest.raises(TransientConnectionError):
            await registry.ensure_initialized("org_ora")
        assert sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_postgres_does_not_retry(self, settings):
        registry, sleep = make_registry(settings, postgres_tenant(), [FakeEngine(OSError("refused")), FakeEngine()])

        with pytest.raises(OSError):
            await registry.ensure_initialized("org_pg")
        sleep.assert_not_awaited()


class TestValidation:
    """测试连接校验"""

    @pytest.mark.asyncio
    async def test_validation_query_per_engine(self, settings):
        engine = FakeEngine()
        registry, _ = make_registry(settings, oracle_tenant(), [engine])
        await registry.ensure_initialized("org_ora")
        assert "FROM DUAL" in engine.executed[0]

    @pytest.mark.asyncio
    async def test_failed_validation_discards_connection(self, settings):
        engine = FakeEngine(validation_row=None)
        registry, _ = make_registry(settings, postgres_tenant(), [engine])

        with pytest.raises(ConnectionValidationError):
            await registry.ensure_initialized("org_pg")
        assert engine.disposed
        assert not registry.has("org_pg")


class TestCloseAll:

    @pytest.mark.asyncio
    async def test_close_all_disposes_and_swallows_errors(self, settings):
        engine = FakeEngine()
        engine.dispose = AsyncMock(side_effect=RuntimeError("boom"))
        registry, _ = make_registry(settings, postgres_tenant(), [engine])
        await registry.ensure_initialized("org_pg")

        await registry.close_all()

        engine.dispose.assert_awaited_once()
        assert not registry.has("org_pg")


class TestEngineStrategies:
    """测试引擎策略"""

    def test_resolve(self):
        assert isinstance(resolve_engine_strategy("postgres"), PostgresStrategy)
        assert isinstance(resolve_engine_strategy("oracle"), OracleStrategy)
        assert isinstance(resolve_engine_strategy("sqlite"), SqliteStrategy)
        with pytest.raises(ConfigurationError):
            resolve_engine_strategy("mysql")

    def test_postgres_engine_kwargs(self, settings):
        cfg = TenantDBConfig(kind="postgres", database="kb", max_pool_size=10, min_pool_size=2, ssl=True)
        kwargs = PostgresStrategy().engine_kwargs(cfg, "org_1", settings)
        assert kwargs["pool_size"] == 2
        assert kwargs["max_overflow"] == 8
        assert kwargs["connect_args"]["server_settings"]["application_name"] == "kbsync-org-org_1"
        assert kwargs["connect_args"]["ssl"] == "require"

    def test_oracle_url_uses_sid(self):
        cfg = TenantDBConfig(kind="oracle", host="ora.local", username="u", password="p", database="ORCL")
        url = OracleStrategy().build_url(cfg)
        assert url.drivername == "oracle+oracledb"
        assert url.database == "ORCL"
        assert url.port == 1521

    def test_oracle_identifier_casing(self):
        assert OracleStrategy().normalize_identifier("kb_document_store") == "KB_DOCUMENT_STORE"
        assert PostgresStrategy().normalize_identifier("kb_document_store") == "kb_document_store"

    def test_transient_classification(self):
        oracle = OracleStrategy()
        assert oracle.is_transient(TimeoutError())
        assert oracle.is_transient(RuntimeError("DPY-6005: cannot connect"))
        assert not oracle.is_transient(ValueError("ORA-00942: table or view does not exist"))


class TestTenantConfigService:
    """测试租户配置加载"""

    def test_from_tenants_json(self, settings):
        settings.tenants_json = json.dumps([
            {"id": "org_1", "db": {"kind": "postgres", "database": "kb1"}},
            {"id": "org_2", "db": {"kind": "oracle", "database": "ORCL"}, "redis_url": "redis://r2:6379/0"},
        ])
        service = TenantConfigService.from_settings(settings)
        assert service.tenant_ids() == ["org_1", "org_2"]
        assert service.get("org_2").redis_url == "redis://r2:6379/0"

    def test_from_tenants_file(self, settings, tmp_path):
        path = tmp_path / "tenants.json"
        path.write_text(json.dumps([{"id": "org_f", "db": {"database": "kb"}}]), encoding="utf-8")
        settings.tenants_file = str(path)
        assert TenantConfigService.from_settings(settings).has("org_f")

    def test_invalid_config(self, settings):
        settings.tenants_json = "[{\"id\": \"x\"}]"
        with pytest.raises(ConfigurationError):
            TenantConfigService.from_settings(settings)

    def test_local_db_override(self, settings):
        settings.use_local_db = True
        settings.local_db_host = "127.0.0.1"
        settings.local_db_name = "local_kb"
        service = TenantConfigService([postgres_tenant("org_x")], settings)

        tenant = service.get("org_x")
        assert tenant.id == "org_x"
        assert tenant.db.host == "127.0.0.1"
        assert tenant.db.database == "local_kb"
