"""
组件工厂

把 (kind, name, config) 解析为组件实例。组件每次操作重新构造，不做缓存。
Embedder 统一包上用量计量。

使用示例：
    factory = CapabilityFactory(build_default_registry(), shared={"vector_backend": backend})
    splitter = factory.build("splitter", "character", {"chunk_size": 500})
"""

import logging
from typing import Any

from kbsync.capabilities.base import CAPABILITY_KINDS, KIND_EMBEDDER
from kbsync.capabilities.metering import FEATURE_UPSERT, MeteredEmbedder
from kbsync.capabilities.registry import CapabilityRegistry
from kbsync.exceptions import ConfigurationError
from kbsync.infra.metrics import MetricsCollector

logger = logging.getLogger(__name__)


class CapabilityFactory:
    """
    组件工厂

    Args:
        registry: 组件注册表
        shared: 所有组件共享的依赖（如向量库后端、HTTP 客户端）
        collector: 计量收集器，默认使用全局收集器
    """

    def __init__(
        self,
        registry: CapabilityRegistry,
        shared: dict[str, Any] | None = None,
        collector: MetricsCollector | None = None,
    ):
        self.registry = registry
        self.shared = shared or {}
        self.collector = collector

    def build(
        self,
        kind: str,
        name: str,
        config: dict[str, Any] | None = None,
        dependencies: dict[str, Any] | None = None,
    ) -> Any:
        """
        构造组件

        Raises:
            ConfigurationError: 组件类型或名称未知、配置非法
        """
        if kind not in CAPABILITY_KINDS:
            raise ConfigurationError(f"未知的组件类型: {kind}")
        builder = self.registry.get(kind, name)
        if builder is None:
            available = ", ".join(self.registry.list(kind)) or "无"
            raise ConfigurationError(f"未知的 {kind} 组件: {name}（可用: {available}）")

        deps = {**self.shared, **(dependencies or {})}
        try:
            instance = builder(dict(config or {}), deps)
        except (ValueError, TypeError, KeyError) as e:
            raise ConfigurationError(f"{kind} 组件 {name} 配置错误: {e}") from e

        if kind == KIND_EMBEDDER:
            instance = MeteredEmbedder(
                instance,
                tenant_id=deps.get("tenant_id"),
                feature=deps.get("feature", FEATURE_UPSERT),
                collector=self.collector,
            )
        logger.debug(f"已构造组件 {kind}/{name}")
        return instance

    def build_component(
        self,
        kind: str,
        component: Any,
        dependencies: dict[str, Any] | None = None,
    ) -> Any:
        """
        按已保存的组件配置构造组件，配置为空时返回 None

        component 可以是 {"name": ..., "config": ...} 字典，也可以是带 name / config 属性的对象。
        """
        if not component:
            return None
        if isinstance(component, dict):
            name, config = component.get("name"), component.get("config")
        else:
            name, config = component.name, component.config
        if not name:
            raise ConfigurationError(f"{kind} 组件配置缺少 name")
        return self.build(kind, name, config or {}, dependencies)
