"""
KB Sync Service - 启动入口

运行方式：
    - 直接执行：python main.py
    - 或者使用：uvicorn kbsync.main:app --reload

队列模式下还需要启动 worker：
    python -m kbsync.worker --all
"""

import uvicorn


def main() -> None:
    """使用 uvicorn 启动 FastAPI 服务"""
    uvicorn.run(
        "kbsync.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )


if __name__ == "__main__":
    main()
