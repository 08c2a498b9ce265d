"""
网页抓取加载器

从起始 URL 开始抓取，limit > 1 时沿站内链接广度优先继续抓取，
最多抓取 limit 个页面。正文提取使用 BeautifulSoup。
"""

import logging
from collections import deque
from typing import Any
from urllib.parse import urljoin, urldefrag, urlparse

import httpx
from bs4 import BeautifulSoup

from kbsync.capabilities.base import Document, Splitter

logger = logging.getLogger(__name__)


class WebScraperLoader:
    name = "web_scraper"
    scrapes_pages = True

    def __init__(
        self,
        url: str,
        limit: int = 10,
        selector: str | None = None,
        timeout: float = 30.0,
        metadata: dict[str, Any] | None = None,
        client: httpx.Client | None = None,
    ):
        self.url = url
        self.limit = limit
        self.selector = selector
        self.timeout = timeout
        self.metadata = metadata or {}
        self._client = client

    def load(self, splitter: Splitter | None = None) -> list[Document]:
        client = self._client or httpx.Client(timeout=self.timeout, follow_redirects=True)
        try:
            docs = self._crawl(client)
        finally:
            if self._client is None:
                client.close()
        if splitter is not None:
            return splitter.split_documents(docs)
        return docs

    def _crawl(self, client: httpx.Client) -> list[Document]:
        host = urlparse(self.url).netloc
        queue: deque[str] = deque([self.url])
        seen: set[str] = {self.url}
        docs: list[Document] = []

        while queue and len(docs) < self.limit:
            url = queue.popleft()
            response = client.get(url)
            response.raise_for_status()
            soup = BeautifulSoup(response.text, "html.parser")

            docs.append(Document(
                page_content=self._extract_text(soup),
                metadata={**self.metadata, "source": url},
            ))

            for link in soup.find_all("a", href=True):
                target, _ = urldefrag(urljoin(url, link["href"]))
                if urlparse(target).netloc == host and target not in seen:
                    seen.add(target)
                    queue.append(target)

        logger.debug(f"抓取完成: {self.url}，共 {len(docs)} 页")
        return docs

    def _extract_text(self, soup: BeautifulSoup) -> str:
        for tag in soup(["script", "style", "noscript"]):
            tag.decompose()
        if self.selector:
            nodes = soup.select(self.selector)
            return "\n".join(node.get_text(" ", strip=True) for node in nodes)
        return soup.get_text(" ", strip=True)


def build(config: dict[str, Any], deps: dict[str, Any]) -> WebScraperLoader:
    url = config.get("url")
    if not url:
        raise ValueError("web_scraper loader 缺少 url 配置")
    return WebScraperLoader(
        url=url,
        limit=int(config.get("limit", 10)),
        selector=config.get("selector"),
        timeout=float(config.get("timeout", 30.0)),
        metadata=config.get("metadata"),
        client=deps.get("http_client"),
    )
