"""
任务载荷模型

队列模式下载荷会被序列化到 Redis，因此只能包含 JSON 可序列化的字段；
数据库连接、组件实例等本地句柄由 worker 端重新挂载。
"""

import enum
import json
import logging
from typing import Any

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class OperationKind(str, enum.Enum):
    """任务类型"""
    PREVIEW = "preview"                        # 预览切分
    PROCESS = "process"                        # 处理 loader（不入库）
    UPSERT = "upsert"                          # 向量入库
    PROCESS_AND_UPSERT = "process_and_upsert"  # 处理 loader 后立即入库
    REFRESH = "refresh"                        # 重新处理并入库全部 loader
    PREDICTION = "prediction"


# 操作所属的队列类别
QUEUE_CLASS_UPSERT = "upsert"
QUEUE_CLASS_PREDICTION = "prediction"


def queue_class_for(operation: OperationKind) -> str:
    if operation is OperationKind.PREDICTION:
        return QUEUE_CLASS_PREDICTION
    return QUEUE_CLASS_UPSERT


class JobPayload(BaseModel):
    """
    任务载荷

    示例:
    ```json
    {
        "tenant_id": "org_1",
        "operation": "process",
        "store_id": "...",
        "document_descriptor": {"loader_name": "text", "loader_config": {"text": "..."}}
    }
    ```
    """
    tenant_id: str = Field(..., min_length=1)
    operation: OperationKind
    store_id: str | None = None
    loader_id: str | None = None
    document_descriptor: dict[str, Any] | None = None
    vector_store_config: dict[str, Any] | None = None
    embedding_config: dict[str, Any] | None = None
    record_manager_config: dict[str, Any] | None = None
    options: dict[str, Any] = Field(default_factory=dict)

    def to_queue_data(self) -> dict[str, Any]:
        """
        转换为可投递到队列的数据

        options 中无法 JSON 序列化的值（本地句柄等）会被剔除。
        """
        options: dict[str, Any] = {}
        for key, value in self.options.items():
            try:
                json.dumps(value)
            except (TypeError, ValueError):
                logger.debug(f"队列载荷剔除不可序列化字段: options.{key}")
                continue
            options[key] = value
        data = self.model_dump(mode="json", exclude={"options"})
        data["options"] = options
        return data
