"""实时推送模块。"""

from flowbot.realtime.backplane import Backplane, InMemoryBackplane, RedisBackplane
from flowbot.realtime.payload import RealTimePayload
from flowbot.realtime.server import RealtimeServer
from flowbot.realtime.service import RealtimeAuthError, RealtimeService

__all__ = [
    "Backplane",
    "InMemoryBackplane",
    "RealTimePayload",
    "RealtimeAuthError",
    "RealtimeServer",
    "RealtimeService",
    "RedisBackplane",
]
