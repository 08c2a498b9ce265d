"""
数据库模块

- base: ORM 基类
- engines: 各数据库引擎的建连策略
- registry: 按租户管理连接池
- schema: 建表
"""

from kbsync.db.base import Base
from kbsync.db.registry import ConnectionRegistry, InitializationReport, TenantConnection

__all__ = ["Base", "ConnectionRegistry", "InitializationReport", "TenantConnection"]
