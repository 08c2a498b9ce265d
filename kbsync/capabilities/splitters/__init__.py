"""文本切分器"""
