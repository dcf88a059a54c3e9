"""消息总线模块。

用于解耦渠道适配器与运行时之间的通信。
渠道将事件推入入站队列，运行时处理后把出站事件推送到出站队列。
"""

from flowbot.bus.events import DialogTurnHistory, Event, EventDestination, EventDirection, EventState
from flowbot.bus.queue import MessageBus

__all__ = [
    "MessageBus",
    "Event",
    "EventState",
    "EventDirection",
    "EventDestination",
    "DialogTurnHistory",
]
