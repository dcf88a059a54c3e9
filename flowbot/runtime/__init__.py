"""运行时模块：事件管道与主循环。"""

from flowbot.runtime.loop import BotRuntime
from flowbot.runtime.pipeline import EventEngine

__all__ = ["BotRuntime", "EventEngine"]
