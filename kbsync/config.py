"""
应用配置管理

使用 pydantic-settings 实现类型安全的配置管理：
- 支持从环境变量读取配置
- 支持从 .env 文件读取配置
- 提供默认值，确保开发环境开箱即用

配置优先级（从高到低）：
    1. 环境变量
    2. .env 文件
    3. 代码中的默认值

使用示例：
    from kbsync.config import get_settings
    settings = get_settings()
    print(settings.mode)
"""

from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """
    全局配置类

    所有配置项都可以通过环境变量覆盖，环境变量名与字段名相同（不区分大小写）。
    例如：MODE=queue 会把执行模式切换为队列模式。
    """

    # ==================== 应用基础配置 ====================
    app_name: str = "KB Sync Service"  # 应用名称
    environment: str = "dev"            # 运行环境：dev/staging/prod
    log_level: str = "INFO"             # 日志级别：DEBUG/INFO/WARNING/ERROR
    log_json: bool | None = None        # 日志格式：True=JSON，None=自动（prod用JSON）

    # ==================== 执行模式 ====================
    # direct: 进程内直接执行；queue: 投递到 Redis 队列由 worker 执行
    mode: Literal["direct", "queue"] = "direct"

    # ==================== 队列配置 ====================
    redis_url: str = "redis://localhost:6379/0"  # 默认 Redis，租户可单独覆盖
    queue_prefix: str = "kbsync"                 # 队列名前缀：{prefix}:{tenant}:{class}
    queue_completion_timeout: float = 600.0      # 等待任务完成的超时时间（秒）
    queue_result_ttl: int = 3600                 # 任务结果在 Redis 中的保留时间（秒）
    queue_stale_after: float = 600.0             # worker 取走后超过该时间未完成的任务会被重新投递（秒）
    worker_concurrency: int = 1                  # 单个 worker 进程的并发任务数

    # ==================== 租户数据库配置 ====================
    tenants_file: str | None = None  # 租户连接配置 JSON 文件路径
    tenants_json: str | None = None  # 直接以 JSON 字符串提供租户配置（优先级低于文件）

    # 本地数据库覆盖：开启后所有租户都连接到同一个本地库（开发调试用）
    use_local_db: bool = False
    local_db_kind: str = "postgres"
    local_db_host: str = "localhost"
    local_db_port: int = 5432
    local_db_user: str = "postgres"
    local_db_password: str = "postgres"
    local_db_name: str = "kbsync"

    database_ssl: bool = False  # PostgreSQL 是否启用 SSL
    pool_recycle: int = 1800    # 连接回收时间（秒），防止数据库端超时断开
    pool_timeout: int = 30      # 获取连接的超时时间（秒）

    # Oracle 等老引擎的建连重试：延迟 = base * 2^attempt
    connect_max_retries: int = 3
    connect_retry_base_delay: float = 2.0

    # 建连成功后是否自动建表（幂等）
    enable_schema_provisioning: bool = False

    # ==================== 摄取配置 ====================
    file_storage_path: str = "./storage"  # 租户文件存储根目录
    preview_default_chunk_count: int = 20  # 预览默认返回的片段数
    preview_scraper_limit: int = 3         # 预览时网页抓取类 loader 的页数上限
    chunk_page_size: int = 50              # 分页读取 Chunk 的每页数量
    loaders_max_retries: int = 5           # loaders 乐观锁冲突的最大重试次数

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }


@lru_cache
def get_settings() -> Settings:
    """
    获取配置单例

    使用 lru_cache 装饰器确保配置只加载一次，后续调用直接返回缓存的实例。
    测试中需要重新加载配置时调用 get_settings.cache_clear()。
    """
    return Settings()
