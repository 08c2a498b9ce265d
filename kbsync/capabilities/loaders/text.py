"""纯文本加载器：直接使用配置中的文本"""

from typing import Any

from kbsync.capabilities.base import Document, Splitter


class TextLoader:
    name = "text"
    scrapes_pages = False

    def __init__(self, text: str, metadata: dict[str, Any] | None = None):
        self.text = text
        self.metadata = metadata or {}

    def load(self, splitter: Splitter | None = None) -> list[Document]:
        docs = [Document(page_content=self.text, metadata=dict(self.metadata))]
        if splitter is not None:
            return splitter.split_documents(docs)
        return docs


def build(config: dict[str, Any], deps: dict[str, Any]) -> TextLoader:
    if "text" not in config:
        raise ValueError("text loader 缺少 text 配置")
    return TextLoader(text=str(config["text"]), metadata=config.get("metadata"))
