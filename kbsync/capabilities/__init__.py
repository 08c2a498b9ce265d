"""可插拔组件：加载器、切分器、向量化、向量库、记录管理器"""
