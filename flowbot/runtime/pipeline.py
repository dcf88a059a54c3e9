"""事件管道。

EventEngine 持有入站/出站两条中间件链，是渠道适配器与对话引擎之间的唯一入口：

    入站: dispatch(event) -> [加载会话] -> 入站链 -> 对话处理器 -> [保存会话]
    出站: dispatch(event) -> 出站链 -> MessageBus 出站队列 -> 渠道发送回调

同一会话键的入站事件在会话锁内串行处理，不同会话的事件可以并发。
"""

from typing import Any, Awaitable, Callable

from loguru import logger

from flowbot.bus.events import Event, EventDestination, EventDirection
from flowbot.bus.queue import MessageBus
from flowbot.middleware.chain import ChainRun, MiddlewareChain, MiddlewareEntry
from flowbot.middleware.handle import MiddlewareHandle
from flowbot.session.manager import SessionManager

IncomingProcessor = Callable[[Event], Awaitable[Any]]


class EventEngine:
    """事件管道。

    Attributes:
        bus: 消息总线（出站事件经由它投递给渠道）
        sessions: 会话管理器；为 None 时不加载/保存会话状态
        processor: 入站链放行后调用的处理器（通常是 DialogEngine.process_event）
    """

    def __init__(
        self,
        bus: MessageBus,
        sessions: SessionManager | None = None,
        timeout_ms: float | None = None,
    ):
        self.bus = bus
        self.sessions = sessions
        self.processor: IncomingProcessor | None = None
        self._chains = {
            EventDirection.INCOMING: MiddlewareChain(EventDirection.INCOMING, timeout_ms),
            EventDirection.OUTGOING: MiddlewareChain(EventDirection.OUTGOING, timeout_ms),
        }

    @property
    def incoming(self) -> MiddlewareChain:
        return self._chains[EventDirection.INCOMING]

    @property
    def outgoing(self) -> MiddlewareChain:
        return self._chains[EventDirection.OUTGOING]

    def handle(self, owner: str) -> MiddlewareHandle:
        """为某个集成创建中间件注册句柄。"""
        return MiddlewareHandle(owner, self._chains)

    def register(self, entry: MiddlewareEntry) -> None:
        self._chains[entry.direction].use(entry)

    def remove(self, name: str, direction: EventDirection | str) -> bool:
        return self._chains[EventDirection(direction)].remove(name)

    async def dispatch(self, event: Event) -> ChainRun:
        """让事件通过对应方向的管道。

        Returns:
            中间件链运行结果

        Raises:
            中间件或对话处理器抛出的异常（不吞掉，由调用方记录）
        """
        if event.is_incoming:
            return await self._dispatch_incoming(event)

        run = await self.outgoing.run(event)
        if run.swallowed:
            logger.debug(f"[{event.bot_id}] [{event.target}] Outgoing event {event.id} swallowed")
        else:
            await self.bus.publish_outbound(event)
        return run

    async def _dispatch_incoming(self, event: Event) -> ChainRun:
        if self.sessions is None:
            return await self._run_incoming(event)

        async with self.sessions.transaction(event.session_key) as session:
            session.apply_to(event)
            run = await self._run_incoming(event)
            session.update_from(event.state)
        return run

    async def _run_incoming(self, event: Event) -> ChainRun:
        run = await self.incoming.run(event)
        if run.swallowed:
            logger.debug(f"[{event.bot_id}] [{event.target}] Incoming event {event.id} swallowed")
            return run
        if self.processor is not None:
            await self.processor(event)
        return run

    async def reply_to_event(
        self,
        destination: EventDestination,
        elements: list[dict[str, Any]],
        incoming_event_id: str | None = None,
    ) -> list[Event]:
        """把渲染好的元素作为出站事件发送。

        Args:
            destination: 投递目标
            elements: 渲染后的内容元素，每个元素一个出站事件
            incoming_event_id: 触发回复的入站事件 ID

        Returns:
            已发出的出站事件
        """
        events = []
        for element in elements:
            event = Event(
                bot_id=destination.bot_id,
                channel=destination.channel,
                target=destination.target,
                thread_id=destination.thread_id,
                type=element.get("type", "text"),
                direction=EventDirection.OUTGOING,
                payload=element,
                incoming_event_id=incoming_event_id,
            )
            await self.dispatch(event)
            events.append(event)
        return events

    async def send_event(self, event: Event) -> ChainRun:
        """直接发送一个出站事件（不关联入站事件）。

        Raises:
            ValueError: 事件不是出站方向
        """
        if event.is_incoming:
            raise ValueError(f"Event {event.id} is not an outgoing event")
        return await self.dispatch(event)
