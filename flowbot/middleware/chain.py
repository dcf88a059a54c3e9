"""中间件链模块。

按顺序把一个事件交给一组具名处理器，每个处理器通过续延回调决定后续走向：

- next_()                 继续下一个处理器
- next_(swallow=True)     吞掉事件，链立即结束
- next_(skip=True)        标记跳过，记录 mw:<name>:skipped 后继续
- next_(error)            以该异常终止整条链

处理器可以是同步函数或协程函数，签名为 handler(event, next_)。
每次调用受超时约束（条目超时优先，其次链默认超时，None 表示不限时）；
超时只停止等待，不取消处理器本身，迟到的续延会被丢弃。

执行顺序：order 升序，order 相同时按注册顺序。
有效链在每次 run() 开始时从当前注册表计算，运行中的注册变更只影响后续运行。
"""

import asyncio
import inspect
import itertools
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from loguru import logger

from flowbot.bus.events import Event, EventDirection

Next = Callable[..., None]
Handler = Callable[[Event, Next], Any]


class DuplicateMiddlewareError(Exception):
    """同一方向上注册了重名中间件。"""

    def __init__(self, name: str, direction: EventDirection):
        super().__init__(f"Middleware '{name}' is already registered for {direction.value} events")
        self.name = name
        self.direction = direction


@dataclass
class MiddlewareEntry:
    """中间件注册项。

    Attributes:
        name: 名称（同一方向内唯一）
        handler: 处理器 handler(event, next_)
        direction: 作用方向
        order: 执行顺序（升序）
        description: 说明
        timeout_ms: 单次调用超时（毫秒），None 时使用链默认值
        owner: 注册方（集成）标识，用于批量注销
    """

    name: str
    handler: Handler
    direction: EventDirection = EventDirection.INCOMING
    order: int = 0
    description: str = ""
    timeout_ms: float | None = None
    owner: str | None = None

    def __post_init__(self) -> None:
        self.direction = EventDirection(self.direction)


class RunState(str, Enum):
    """单次链运行的状态。"""
    PENDING = "pending"
    RUNNING = "running"
    SWALLOWED = "swallowed"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class ChainRun:
    """单次链运行的结果。

    Attributes:
        state: 终止状态（SWALLOWED / COMPLETED / FAILED）
        handler_index: 最后一个被调用的处理器下标
        invoked: 按调用顺序记录的处理器名称
        timed_out: 超时的处理器名称
        error: FAILED 时的异常
    """

    state: RunState = RunState.PENDING
    handler_index: int | None = None
    invoked: list[str] = field(default_factory=list)
    timed_out: list[str] = field(default_factory=list)
    error: BaseException | None = None

    @property
    def swallowed(self) -> bool:
        return self.state == RunState.SWALLOWED


class MiddlewareChain:
    """单一方向的有序中间件链。

    Attributes:
        direction: 链的方向（入站或出站）
        timeout_ms: 默认处理器超时（毫秒）
    """

    def __init__(self, direction: EventDirection, timeout_ms: float | None = None):
        self.direction = EventDirection(direction)
        self.timeout_ms = timeout_ms
        # name -> (注册序号, 条目)
        self._entries: dict[str, tuple[int, MiddlewareEntry]] = {}
        self._sequence = itertools.count()
        # 超时后仍在运行的处理器任务
        self._pending: set[asyncio.Future] = set()

    def use(self, entry: MiddlewareEntry) -> None:
        """注册中间件。

        Raises:
            DuplicateMiddlewareError: 名称已在本方向注册
            ValueError: 条目方向与链方向不一致
        """
        if entry.direction != self.direction:
            raise ValueError(
                f"Middleware '{entry.name}' targets {entry.direction.value} events, "
                f"chain handles {self.direction.value}"
            )
        if entry.name in self._entries:
            raise DuplicateMiddlewareError(entry.name, self.direction)
        self._entries[entry.name] = (next(self._sequence), entry)
        logger.debug(f"Registered {self.direction.value} middleware '{entry.name}' (order={entry.order})")

    register = use

    def remove(self, name: str) -> bool:
        """注销中间件；不存在时什么也不做。

        Returns:
            True 如果确实移除了条目
        """
        removed = self._entries.pop(name, None)
        if removed:
            logger.debug(f"Removed {self.direction.value} middleware '{name}'")
        return removed is not None

    def has(self, name: str) -> bool:
        return name in self._entries

    @property
    def entries(self) -> list[MiddlewareEntry]:
        """当前有效链：按 (order, 注册序号) 排序。"""
        ordered = sorted(self._entries.values(), key=lambda item: (item[1].order, item[0]))
        return [entry for _, entry in ordered]

    @property
    def names(self) -> list[str]:
        return [entry.name for entry in self.entries]

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, name: str) -> bool:
        return name in self._entries

    async def run(self, event: Event) -> ChainRun:
        """让事件依次通过链上的处理器。

        Args:
            event: 本次运行独占的事件

        Returns:
            ChainRun，状态为 SWALLOWED 或 COMPLETED

        Raises:
            处理器抛出或通过 next_(error) 传回的异常，原样向上传播
        """
        run = ChainRun()
        entries = self.entries
        run.state = RunState.RUNNING

        for index, entry in enumerate(entries):
            run.handler_index = index
            run.invoked.append(entry.name)
            try:
                outcome = await self._invoke(entry, event)
            except Exception as e:
                run.state = RunState.FAILED
                run.error = e
                raise

            if outcome is None:
                run.timed_out.append(entry.name)
                event.add_step(f"mw:{entry.name}:timedOut")
                logger.debug(f"Middleware '{entry.name}' timed out on event {event.id}")
                continue

            swallow, skip = outcome
            if swallow:
                event.add_step(f"mw:{entry.name}:swallowed")
                run.state = RunState.SWALLOWED
                return run
            if skip:
                event.add_step(f"mw:{entry.name}:skipped")
                continue
            event.add_step(f"mw:{entry.name}:completed")

        run.state = RunState.COMPLETED
        return run

    async def _invoke(self, entry: MiddlewareEntry, event: Event) -> tuple[bool, bool] | None:
        """调用单个处理器并等待其续延。

        Returns:
            (swallow, skip)，超时返回 None
        """
        loop = asyncio.get_running_loop()
        outcome: asyncio.Future = loop.create_future()

        def next_(error: BaseException | None = None, swallow: bool = False, skip: bool = False) -> None:
            if outcome.done():
                # 超时之后或重复调用
                return
            if error is not None:
                outcome.set_exception(error)
            else:
                outcome.set_result((bool(swallow), bool(skip)))

        result = entry.handler(event, next_)
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._pending.add(task)
            task.add_done_callback(lambda t: self._on_handler_done(entry, outcome, t))

        timeout_ms = entry.timeout_ms if entry.timeout_ms is not None else self.timeout_ms
        try:
            if timeout_ms is None:
                return await outcome
            return await asyncio.wait_for(outcome, timeout=timeout_ms / 1000)
        except asyncio.TimeoutError:
            return None

    def _on_handler_done(self, entry: MiddlewareEntry, outcome: asyncio.Future, task: asyncio.Future) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is None:
            return
        if not outcome.done():
            outcome.set_exception(error)
        else:
            logger.warning(f"Late failure from middleware '{entry.name}' discarded: {error}")
