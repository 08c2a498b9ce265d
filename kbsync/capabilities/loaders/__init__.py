"""文档加载器"""
