"""异步消息队列模块。

提供解耦的渠道-运行时通信机制：
- 入站队列：渠道适配器推送事件到运行时
- 出站队列：出站中间件链放行的事件推送到渠道
- 发布/订阅模式：每个渠道订阅自己的出站事件
"""

import asyncio
from typing import Awaitable, Callable

from loguru import logger

from flowbot.bus.events import Event

ChannelSender = Callable[[Event], Awaitable[None]]


class MessageBus:
    """异步消息总线。

    解耦渠道适配器与运行时之间的通信：
    - 渠道将入站事件推入入站队列
    - 运行时处理后将出站事件推入出站队列
    - 渠道通过 subscribe_outbound 注册发送回调

    Attributes:
        inbound: 入站事件队列（渠道 -> 运行时）
        outbound: 出站事件队列（运行时 -> 渠道）
    """

    def __init__(self):
        self.inbound: asyncio.Queue[Event] = asyncio.Queue()
        self.outbound: asyncio.Queue[Event] = asyncio.Queue()
        # 出站订阅者：channel -> [回调列表]
        self._outbound_subscribers: dict[str, list[ChannelSender]] = {}
        self._running = False

    async def publish_inbound(self, event: Event) -> None:
        """发布入站事件（从渠道到运行时）。"""
        await self.inbound.put(event)

    async def consume_inbound(self) -> Event:
        """消费下一个入站事件（阻塞直到可用）。"""
        return await self.inbound.get()

    async def publish_outbound(self, event: Event) -> None:
        """发布出站事件（从运行时到渠道）。"""
        await self.outbound.put(event)

    def subscribe_outbound(self, channel: str, callback: ChannelSender) -> None:
        """订阅特定渠道的出站事件。

        Args:
            channel: 渠道名称（如 'slack', 'twilio'）
            callback: 异步回调函数，接收出站 Event
        """
        self._outbound_subscribers.setdefault(channel, []).append(callback)

    def unsubscribe_outbound(self, channel: str, callback: ChannelSender) -> None:
        """取消订阅；回调不存在时忽略。"""
        callbacks = self._outbound_subscribers.get(channel, [])
        if callback in callbacks:
            callbacks.remove(callback)

    async def deliver(self, event: Event) -> int:
        """把一个出站事件交给对应渠道的所有订阅者。

        单个订阅者失败只记录日志，不影响其他订阅者。

        Returns:
            成功投递的订阅者数量
        """
        delivered = 0
        for callback in self._outbound_subscribers.get(event.channel, []):
            try:
                await callback(event)
                delivered += 1
            except Exception as e:
                logger.error(f"Error dispatching to {event.channel}: {e}")
        if not delivered:
            logger.debug(f"No sender delivered event {event.id} on channel {event.channel}")
        return delivered

    async def dispatch_outbound(self) -> None:
        """调度出站事件到订阅的渠道。

        作为后台任务运行，持续检查出站队列并分发，直到 stop() 被调用。
        """
        self._running = True
        while self._running:
            try:
                # 超时1秒以便检查停止标志
                event = await asyncio.wait_for(self.outbound.get(), timeout=1.0)
            except asyncio.TimeoutError:
                continue
            await self.deliver(event)

    def stop(self) -> None:
        """停止调度器循环。"""
        self._running = False

    @property
    def inbound_size(self) -> int:
        return self.inbound.qsize()

    @property
    def outbound_size(self) -> int:
        return self.outbound.qsize()
