"""
任务分发

- executor: 按任务类型路由到摄取流水线（两种模式共用）
- dispatcher: 根据执行模式进程内执行或投递到队列并等待结果
- redis_queue: 基于 Redis 的任务队列
- worker: 队列消费者
- abort: 预测任务的取消信号
"""
