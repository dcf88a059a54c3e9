"""中间件模块。

提供按方向划分的有序中间件链：
- MiddlewareChain: 单一方向的处理器链
- MiddlewareEntry: 注册项
- MiddlewareHandle: 集成持有的注册句柄
"""

from flowbot.middleware.chain import (
    ChainRun,
    DuplicateMiddlewareError,
    MiddlewareChain,
    MiddlewareEntry,
    RunState,
)
from flowbot.middleware.handle import MiddlewareHandle

__all__ = [
    "MiddlewareChain",
    "MiddlewareEntry",
    "MiddlewareHandle",
    "ChainRun",
    "RunState",
    "DuplicateMiddlewareError",
]
