"""实时推送载荷。"""

from dataclasses import dataclass
from typing import Any

GUEST_PREFIX = "guest."
VISITOR_ROOM_PREFIX = "visitor:"


def make_visitor_room_id(visitor_id: str) -> str:
    return f"{VISITOR_ROOM_PREFIX}{visitor_id}"


def unmake_visitor_id(room_id: str) -> str:
    return room_id.split(":", 1)[1]


@dataclass(frozen=True)
class RealTimePayload:
    """推送给客户端的一条通知。

    事件名以 guest. 开头时发往访客命名空间，否则发往管理端。
    载荷中的 __socketId / __room 把投递限定到单个连接或房间。

    Attributes:
        event_name: 事件名
        payload: 事件数据
    """

    event_name: str
    payload: Any

    @classmethod
    def for_admins(cls, event_name: str, payload: Any) -> "RealTimePayload":
        """构造发给所有管理端的通知。"""
        return cls(event_name=event_name, payload=payload)

    @classmethod
    def for_visitor(cls, visitor_id: str, event_name: str, payload: dict[str, Any]) -> "RealTimePayload":
        """构造只发给某个访客房间的通知。

        Raises:
            ValueError: visitor_id 为空
        """
        if not visitor_id:
            raise ValueError("A visitor id is required to target a visitor")
        if not event_name.lower().startswith(GUEST_PREFIX):
            event_name = f"{GUEST_PREFIX}{event_name}"
        return cls(event_name=event_name, payload={**payload, "__room": make_visitor_room_id(visitor_id)})
