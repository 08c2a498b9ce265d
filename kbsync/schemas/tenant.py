"""租户连接配置模型"""

from typing import Literal

from pydantic import BaseModel, Field


class TenantDBConfig(BaseModel):
    """
    租户数据库连接参数

    kind 决定使用哪个引擎策略：
    - postgres: asyncpg 驱动
    - oracle: oracledb 驱动，database 字段为 SID
    - sqlite: aiosqlite 驱动，database 字段为文件路径（本地调试/测试）
    """
    kind: Literal["postgres", "oracle", "sqlite"] = "postgres"
    host: str = "localhost"
    port: int | None = None
    username: str | None = None
    password: str | None = None
    database: str = Field(..., description="数据库名 / Oracle SID / SQLite 文件路径")
    max_pool_size: int = Field(default=10, ge=1, description="连接池最大连接数")
    min_pool_size: int = Field(default=2, ge=0, description="连接池常驻连接数")
    ssl: bool | None = Field(default=None, description="是否启用 SSL，None 表示使用全局配置")


class TenantConfig(BaseModel):
    """租户配置"""
    id: str = Field(..., min_length=1, description="租户（组织）ID")
    name: str | None = None
    db: TenantDBConfig
    redis_url: str | None = Field(default=None, description="租户专属的队列 Redis，缺省用全局配置")
