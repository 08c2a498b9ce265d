"""请求/响应与内部参数模型"""
