"""
kbsync - 租户知识库摄取与同步服务

加载 → 切分 → 持久化 Chunk → 向量化入库，按租户隔离数据库，
支持进程内执行与分布式队列执行两种模式。
"""

__version__ = "0.1.0"
