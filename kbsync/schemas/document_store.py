"""知识库、loader、片段相关模型"""

from datetime import datetime
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field

from kbsync.models.document_store import DocumentStoreStatus


class ComponentConfig(BaseModel):
    """
    组件配置（embedder / vector store / record manager）

    示例:
    ```json
    {"name": "memory", "config": {"collection": "docs"}, "credential": "cred_1"}
    ```
    """
    name: str = Field(..., min_length=1, description="组件名称，对应组件注册表中的条目")
    config: dict[str, Any] = Field(default_factory=dict)
    credential: str | None = Field(default=None, description="凭据引用，不写入历史记录")

    def public_dict(self) -> dict[str, Any]:
        """去掉凭据后的配置"""
        return {"name": self.name, "config": self.config}


class LoaderFile(BaseModel):
    """loader 关联的上传文件"""
    id: str = Field(default_factory=lambda: str(uuid4()))
    name: str
    mime_type: str | None = None
    size: int | None = None
    status: str = "SYNC"
    uploaded: datetime | None = None


class LoaderDescriptor(BaseModel):
    """
    loader 描述（以 JSON 形式嵌入在知识库记录中）

    total_chunks / total_chars 与该 loader 的 ChunkRecord 保持一致，
    每次批量写入后由数据库聚合重新计算。
    """
    id: str = Field(default_factory=lambda: str(uuid4()))
    loader_name: str = Field(..., min_length=1)
    loader_config: dict[str, Any] = Field(default_factory=dict)
    splitter_name: str | None = None
    splitter_config: dict[str, Any] = Field(default_factory=dict)
    credential: str | None = None
    source: str | None = Field(default=None, description="展示用的来源描述")
    total_chunks: int = 0
    total_chars: int = 0
    status: DocumentStoreStatus = DocumentStoreStatus.NEW
    files: list[LoaderFile] = Field(default_factory=list)

    model_config = {"extra": "ignore", "use_enum_values": False}


class DocumentStoreCreate(BaseModel):
    """创建知识库请求"""
    name: str = Field(..., max_length=255)
    description: str | None = None
    created_by: str | None = None


class DocumentStoreUpdate(BaseModel):
    """更新知识库请求，未给出的字段保持不变"""
    name: str | None = Field(default=None, max_length=255)
    description: str | None = None
    where_used: list[str] | None = None
    embedding: ComponentConfig | None = None
    vector_store: ComponentConfig | None = None
    record_manager: ComponentConfig | None = None
    last_modified_by: str | None = None


class DocumentStoreView(BaseModel):
    """知识库响应"""
    id: str
    name: str
    description: str | None
    status: DocumentStoreStatus
    loaders: list[LoaderDescriptor]
    where_used: list[str]
    embedding: dict[str, Any] | None = None
    vector_store: dict[str, Any] | None = None
    record_manager: dict[str, Any] | None = None
    total_chunks: int = 0
    total_chars: int = 0


class PreviewRequest(BaseModel):
    """预览切分请求：只读，不落库、不向量化"""
    store_id: str | None = None
    loader: LoaderDescriptor
    preview_chunk_count: int | None = Field(
        default=None,
        ge=-1,
        description="返回的片段数；-1 或超过总数时返回全部",
    )


class PreviewChunk(BaseModel):
    page_content: str
    metadata: dict[str, Any] = Field(default_factory=dict)


class PreviewResult(BaseModel):
    chunks: list[PreviewChunk]
    total_chunks: int
    preview_chunk_count: int


class ChunkView(BaseModel):
    id: str
    store_id: str
    doc_id: str
    chunk_no: int
    page_content: str
    metadata: dict[str, Any] = Field(default_factory=dict)


class ChunkPage(BaseModel):
    """分页的片段列表"""
    store_id: str
    loader_id: str | None
    chunks: list[ChunkView]
    count: int
    characters: int
    current_page: int
    page_size: int
    status: DocumentStoreStatus | None = None


class UpsertRequest(BaseModel):
    """
    向量入库请求

    请求中给出的组件配置会覆盖并持久化到知识库；未给出时使用已保存的配置。
    loader_id 为空时对整个知识库入库。
    """
    store_id: str
    loader_id: str | None = None
    embedding: ComponentConfig | None = None
    vector_store: ComponentConfig | None = None
    record_manager: ComponentConfig | None = None
    is_strict_save: bool = Field(
        default=False,
        description="为 True 时请求中缺省的组件会被清空，而不是沿用已保存的配置",
    )


class QueryRequest(BaseModel):
    store_id: str
    query: str = Field(..., min_length=1)
    top_k: int = Field(default=4, ge=1, le=100)
