"""
租户配置服务

租户的数据库连接参数来自外部配置：
1. tenants_file 指向的 JSON 文件
2. tenants_json 环境变量（JSON 字符串）

两者格式相同：租户配置对象的列表。

开启 use_local_db 时，所有租户的连接参数都被替换为 local_db_* 配置，
租户 ID 保持不变。
"""

import json
import logging
from pathlib import Path

from pydantic import TypeAdapter, ValidationError

from kbsync.config import Settings, get_settings
from kbsync.exceptions import ConfigurationError, NotFoundError
from kbsync.schemas.tenant import TenantConfig, TenantDBConfig

logger = logging.getLogger(__name__)

_tenant_list_adapter = TypeAdapter(list[TenantConfig])


class TenantConfigService:
    """租户配置查询"""

    def __init__(self, tenants: list[TenantConfig] | None = None, settings: Settings | None = None):
        self.settings = settings or get_settings()
        self._tenants: dict[str, TenantConfig] = {}
        for tenant in tenants or []:
            self.register(tenant)

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "TenantConfigService":
        """从配置文件 / 环境变量加载"""
        settings = settings or get_settings()
        raw: str | None = None
        if settings.tenants_file:
            path = Path(settings.tenants_file)
            if not path.exists():
                raise ConfigurationError(f"租户配置文件不存在: {path}")
            raw = path.read_text(encoding="utf-8")
        elif settings.tenants_json:
            raw = settings.tenants_json

        tenants: list[TenantConfig] = []
        if raw:
            try:
                tenants = _tenant_list_adapter.validate_python(json.loads(raw))
            except (json.JSONDecodeError, ValidationError) as e:
                raise ConfigurationError(f"租户配置格式错误: {e}") from e
        else:
            logger.warning("未配置任何租户（TENANTS_FILE / TENANTS_JSON）")

        return cls(tenants, settings)

    def register(self, tenant: TenantConfig) -> None:
        if self.settings.use_local_db:
            tenant = tenant.model_copy(update={"db": self._local_db_config()})
        self._tenants[tenant.id] = tenant

    def get(self, tenant_id: str) -> TenantConfig:
        tenant = self._tenants.get(tenant_id)
        if tenant is None:
            raise NotFoundError(f"租户未配置: {tenant_id}")
        return tenant

    def has(self, tenant_id: str) -> bool:
        return tenant_id in self._tenants

    def tenant_ids(self) -> list[str]:
        return list(self._tenants)

    def _local_db_config(self) -> TenantDBConfig:
        s = self.settings
        return TenantDBConfig(
            kind=s.local_db_kind,
            host=s.local_db_host,
            port=s.local_db_port,
            username=s.local_db_user,
            password=s.local_db_password,
            database=s.local_db_name,
        )
