"""
异常定义

服务内部抛出的异常都继承自 KBSyncError，并带有对应的 HTTP 状态码。
对外的服务操作统一用 wrap_errors 包装，任何失败都会被转换为一个
InternalError(status_code, message)，message 中带有失败的操作名。
"""

import functools
from typing import Any, Awaitable, Callable, TypeVar

from pydantic import ValidationError

T = TypeVar("T")


class KBSyncError(Exception):
    """服务异常基类"""

    status_code: int = 500


class ConfigurationError(KBSyncError):
    """配置错误（组件名未知、参数非法等），不重试"""

    status_code = 400


class NotFoundError(KBSyncError):
    """资源不存在"""

    status_code = 404


class TransientConnectionError(KBSyncError):
    """可重试的连接错误（网络抖动、超时）"""

    status_code = 503


class NotInitializedError(KBSyncError):
    """租户连接尚未初始化"""


class CapabilityInvocationError(KBSyncError):
    """组件调用失败（加载、切分、向量化、入库）"""


class QueueExecutionError(KBSyncError):
    """队列任务执行失败或未返回结果"""


class ConcurrentModificationError(KBSyncError):
    """并发修改冲突，乐观锁重试耗尽"""

    status_code = 409


class InternalError(KBSyncError):
    """
    对外统一错误

    Attributes:
        status_code: HTTP 状态码
        message: 错误信息，包含失败的操作名
    """

    def __init__(self, status_code: int, message: str, operation: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.operation = operation

    def to_dict(self) -> dict[str, Any]:
        return {
            "status_code": self.status_code,
            "message": self.message,
            "operation": self.operation,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "InternalError":
        return cls(
            int(data.get("status_code", 500)),
            str(data.get("message", "")),
            data.get("operation"),
        )


def to_internal_error(exc: BaseException, operation: str) -> InternalError:
    """把任意异常转换为 InternalError，保留内部异常的状态码"""
    if isinstance(exc, InternalError):
        return exc
    if isinstance(exc, KBSyncError):
        status_code = exc.status_code
    elif isinstance(exc, ValidationError):
        status_code = 400
    else:
        status_code = 500
    return InternalError(status_code, f"Error: {operation} - {exc}", operation)


def wrap_errors(operation: str) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """
    服务操作错误包装装饰器

    使用示例：
        @wrap_errors("ingestion.preview_chunks")
        async def preview_chunks(...): ...
    """

    def decorator(fn: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(fn)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            try:
                return await fn(*args, **kwargs)
            except Exception as e:
                raise to_internal_error(e, operation) from e

        return wrapper

    return decorator
