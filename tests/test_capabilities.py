"""
组件单元测试

- 注册表与工厂
- 切分器
- 加载器
- Embedding 计量
- 增量入库
"""

import math
from unittest.mock import MagicMock

import httpx
import pytest

from kbsync.capabilities.base import Document
from kbsync.capabilities.embedders import HashEmbedder
from kbsync.capabilities.factory import CapabilityFactory
from kbsync.capabilities.indexing import document_key, index_documents
from kbsync.capabilities.loaders.file import build_data_uri, parse_data_uri
from kbsync.capabilities.loaders.web import WebScraperLoader
from kbsync.capabilities.metering import FEATURE_QUERY, MeteredEmbedder
from kbsync.capabilities.registry import build_default_registry
from kbsync.capabilities.splitters.character import CharacterSplitter
from kbsync.capabilities.splitters.recursive import RecursiveSplitter
from kbsync.capabilities.vector_store import MemoryVectorBackend
from kbsync.exceptions import ConfigurationError
from kbsync.infra.metrics import MetricsCollector, estimate_tokens
from kbsync.schemas.document_store import ComponentConfig


@pytest.fixture
def factory(collector):
    return CapabilityFactory(
        build_default_registry(),
        shared={"vector_backend": MemoryVectorBackend()},
        collector=collector,
    )


class TestRegistry:
    """测试组件注册表"""

    def test_manifest_entries(self):
        registry = build_default_registry()
        assert set(registry.list("loader")) == {"text", "file", "web_scraper"}
        assert set(registry.list("splitter")) == {"character", "recursive"}
        assert registry.list("embedder") == ["hash"]
        assert registry.list("vector_store") == ["memory"]
        assert registry.list("record_manager") == ["sql"]

    def test_register_unknown_kind(self):
        registry = build_default_registry()
        with pytest.raises(ValueError):
            registry.register("llm", "x", lambda c, d: None)


class TestFactory:
    """测试组件工厂"""

    def test_unknown_name(self, factory):
        with pytest.raises(ConfigurationError, match="未知的 splitter 组件"):
            factory.build("splitter", "markdown", {})

    def test_unknown_kind(self, factory):
        with pytest.raises(ConfigurationError):
            factory.build("llm", "openai", {})

    def test_bad_config(self, factory):
        with pytest.raises(ConfigurationError):
            factory.build("splitter", "character", {"chunk_size": 10, "chunk_overlap": 10})

    def test_missing_loader_config(self, factory):
        with pytest.raises(ConfigurationError):
            factory.build("loader", "text", {})

    def test_build_component_none(self, factory):
        assert factory.build_component("vector_store", None) is None

    def test_build_component_from_saved_config(self, factory):
        from_dict = factory.build_component(
            "splitter", {"name": "character", "config": {"chunk_size": 10, "chunk_overlap": 0}}
        )
        from_model = factory.build_component("embedder", ComponentConfig(name="hash", config={"dimension": 8}))

        assert from_dict.split_text("a" * 25) == ["a" * 10, "a" * 10, "a" * 5]
        assert isinstance(from_model, MeteredEmbedder)

    def test_build_component_without_name(self, factory):
        with pytest.raises(ConfigurationError):
            factory.build_component("vector_store", {"config": {}})

    def test_embedder_is_metered(self, factory):
        embedder = factory.build("embedder", "hash", {"dimension": 16}, {"tenant_id": "org_a"})
        assert isinstance(embedder, MeteredEmbedder)
        assert embedder.tenant_id == "org_a"

    def test_fresh_instance_per_build(self, factory):
        first = factory.build("splitter", "character", {"chunk_size": 10, "chunk_overlap": 0})
        second = factory.build("splitter", "character", {"chunk_size": 10, "chunk_overlap": 0})
        assert first is not second


class TestSplitters:
    """测试切分器"""

    def test_character_splitter_no_overlap(self):
        text = "a" * 100
        pieces = CharacterSplitter(chunk_size=40, chunk_overlap=0).split_text(text)
        assert [len(p) for p in pieces] == [40, 40, 20]
        assert "".join(pieces) == text

    def test_character_splitter_overlap(self):
        pieces = CharacterSplitter(chunk_size=10, chunk_overlap=3).split_text("0123456789abcdef")
        assert pieces[0] == "0123456789"
        assert pieces[1].startswith("789")

    def test_empty_text(self):
        assert CharacterSplitter(chunk_size=10, chunk_overlap=0).split_text("") == []

    def test_split_documents_keeps_metadata(self):
        docs = CharacterSplitter(chunk_size=5, chunk_overlap=0).split_documents(
            [Document(page_content="abcdefghij", metadata={"source": "x"})]
        )
        assert len(docs) == 2
        assert all(d.metadata == {"source": "x"} for d in docs)

    def test_recursive_splitter_respects_size(self):
        text = "第一段内容。\n\n第二段内容比较长一些。\n\n" + "很长的一行" * 30
        pieces = RecursiveSplitter(chunk_size=50, chunk_overlap=0).split_text(text)
        assert pieces
        assert all(len(p) <= 50 for p in pieces)

    def test_recursive_splitter_escaped_separators(self):
        splitter = RecursiveSplitter(chunk_size=20, chunk_overlap=0, separators="\\n\\n,\\n")
        assert splitter.separators == ["\n\n", "\n"]


class TestLoaders:
    """测试加载器"""

    def test_data_uri_round_trip(self):
        uri = build_data_uri("a.txt", "text/plain", "你好".encode("utf-8"))
        parsed = parse_data_uri(uri)
        assert parsed.name == "a.txt"
        assert parsed.mime_type == "text/plain"
        assert parsed.content.decode("utf-8") == "你好"

    def test_invalid_data_uri(self):
        with pytest.raises(ValueError):
            parse_data_uri("FILE-STORAGE::a.txt")

    def test_file_loader_multiple_files(self, factory):
        uris = [
            build_data_uri("a.txt", "text/plain", b"aaaa"),
            build_data_uri("b.txt", "text/plain", b"bbbb"),
        ]
        loader = factory.build("loader", "file", {"file": uris})
        docs = loader.load()
        assert [d.metadata["source"] for d in docs] == ["a.txt", "b.txt"]
        assert [d.page_content for d in docs] == ["aaaa", "bbbb"]

    def test_web_scraper_respects_limit(self):
        def handler(request: httpx.Request) -> httpx.Response:
            page = int(request.url.path.strip("/") or 0)
            links = "".join(f'<a href="/{i}">p{i}</a>' for i in range(page + 1, page + 4))
            return httpx.Response(200, text=f"<html><body><p>page {page}</p>{links}<script>x()</script></body></html>")

        client = httpx.Client(transport=httpx.MockTransport(handler))
        loader = WebScraperLoader("http://docs.local/", limit=3, client=client)
        docs = loader.load()

        assert len(docs) == 3
        assert docs[0].page_content.startswith("page 0")
        assert "x()" not in docs[0].page_content
        assert all(d.metadata["source"].startswith("http://docs.local/") for d in docs)


class TestMetering:
    """测试 Embedding 计量"""

    @pytest.mark.asyncio
    async def test_records_usage(self):
        collector = MetricsCollector()
        embedder = MeteredEmbedder(HashEmbedder(8), "org_a", "document-store-upsert", collector)

        vectors = await embedder.embed_documents(["abcde", "xyz"])

        assert len(vectors) == 2
        stats = collector.get_stats()["calls"]["org_a:embedding:document-store-upsert"]
        assert stats["count"] == 1
        assert stats["input_tokens"] == math.ceil(5 / 4) + math.ceil(3 / 4)

    @pytest.mark.asyncio
    async def test_query_feature(self):
        collector = MetricsCollector()
        embedder = MeteredEmbedder(HashEmbedder(8), "org_a", FEATURE_QUERY, collector)
        await embedder.embed_query("hello")
        assert "org_a:embedding:document-store-query" in collector.get_stats()["calls"]

    @pytest.mark.asyncio
    async def test_collector_failure_does_not_change_result(self):
        collector = MagicMock()
        collector.record_call.side_effect = RuntimeError("metrics down")
        inner = HashEmbedder(8)
        embedder = MeteredEmbedder(inner, "org_a", "document-store-upsert", collector)

        assert await embedder.embed_query("hello") == await inner.embed_query("hello")

    def test_estimate_tokens(self):
        assert estimate_tokens("") == 0
        assert estimate_tokens("abcd") == 1
        assert estimate_tokens(["abcde"]) == 2


class FakeRecordManager:
    """内存版记录管理器"""

    def __init__(self, cleanup: str = "incremental"):
        self.cleanup = cleanup
        self.source_id_key = "source"
        self.records: dict[str, tuple[str | None, float]] = {}
        self.clock = 0.0

    async def get_time(self) -> float:
        self.clock += 1
        return self.clock

    async def exists(self, keys):
        return [k in self.records for k in keys]

    async def update(self, keys, group_ids=None):
        now = await self.get_time()
        for key, group in zip(keys, group_ids or [None] * len(keys)):
            self.records[key] = (group, now)

    async def list_keys(self, before=None, group_ids=None):
        return [
            k for k, (g, t) in self.records.items()
            if (before is None or t < before) and (group_ids is None or g in group_ids)
        ]

    async def delete_keys(self, keys):
        for key in keys:
            self.records.pop(key, None)


class TestIndexing:
    """测试增量入库"""

    @pytest.fixture
    def vector_store(self, factory):
        embedder = factory.build("embedder", "hash", {"dimension": 16})
        return factory.build("vector_store", "memory", {}, {"tenant_id": "t", "store_id": "s", "embedder": embedder})

    @pytest.mark.asyncio
    async def test_without_record_manager(self, vector_store):
        docs = [Document("a", {"source": "1"}), Document("a", {"source": "1"}), Document("b", {"source": "1"})]
        result = await vector_store.upsert(docs)
        assert result["num_added"] == 2
        assert result["num_skipped"] == 1
        assert vector_store.backend.count("t:s") == 2

    @pytest.mark.asyncio
    async def test_skips_unchanged_and_cleans_up(self, vector_store):
        manager = FakeRecordManager(cleanup="incremental")
        first = [Document("a", {"source": "f1"}), Document("b", {"source": "f1"})]
        await index_documents(first, vector_store, manager, cleanup="incremental")

        second = [Document("a", {"source": "f1"}), Document("c", {"source": "f1"})]
        result = await index_documents(second, vector_store, manager, cleanup="incremental")

        assert result["num_added"] == 1
        assert result["num_skipped"] == 1
        assert result["num_deleted"] == 1
        assert document_key(Document("b", {"source": "f1"})) not in manager.records
        assert vector_store.backend.count("t:s") == 2

    @pytest.mark.asyncio
    async def test_invalid_cleanup(self, vector_store):
        with pytest.raises(ValueError):
            await index_documents([], vector_store, None, cleanup="sometimes")
