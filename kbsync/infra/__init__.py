"""基础设施：日志、指标"""
