"""实时推送服务。

把服务器端事件推送给已连接的客户端，并把客户端消息转交给服务器端监听者。

两个命名空间：
- admin: 管理端，连接时需要 JWT
- guest: 访客（网页聊天），按 visitorId 加入房间 visitor:<id>

投递规则：
- 事件名以 guest. 开头发往 guest，否则发往 admin
- 载荷带 __socketId / __room 时只发给对应连接或房间，否则广播 {"name", "data"}
- 客户端发来的事件只交给监听者，不会回发给客户端

投递是至多一次的：连接发送失败只记录日志，不重试。
"""

import fnmatch
import inspect
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol

import jwt
from loguru import logger

from flowbot.config.schema import RealtimeConfig
from flowbot.realtime.backplane import Backplane, RedisBackplane
from flowbot.realtime.payload import (
    GUEST_PREFIX,
    VISITOR_ROOM_PREFIX,
    RealTimePayload,
    make_visitor_room_id,
    unmake_visitor_id,
)

ADMIN_NAMESPACE = "admin"
GUEST_NAMESPACE = "guest"

# listener(name, data, from_, meta)
Listener = Callable[[str, Any, str, dict[str, Any]], Any]


class RealtimeAuthError(Exception):
    """管理端令牌缺失或无效。"""


class ClientSocket(Protocol):
    """客户端连接。"""

    id: str

    async def send(self, frame: dict[str, Any]) -> None: ...


@dataclass
class Namespace:
    """命名空间：连接与房间。"""

    name: str
    sockets: dict[str, ClientSocket] = field(default_factory=dict)
    rooms: dict[str, set[str]] = field(default_factory=dict)

    def add(self, socket: ClientSocket) -> None:
        self.sockets[socket.id] = socket

    def join(self, socket_id: str, room: str) -> None:
        self.rooms.setdefault(room, set()).add(socket_id)

    def remove(self, socket_id: str) -> None:
        self.sockets.pop(socket_id, None)
        for room in list(self.rooms):
            self.rooms[room].discard(socket_id)
            if not self.rooms[room]:
                del self.rooms[room]

    def socket_rooms(self, socket_id: str) -> set[str] | None:
        """本地查询连接所在房间（含以连接 id 命名的自身房间）。"""
        if socket_id not in self.sockets:
            return None
        rooms = {room for room, members in self.rooms.items() if socket_id in members}
        rooms.add(socket_id)
        return rooms

    def recipients(self, to: str | None) -> list[ClientSocket]:
        if to is None:
            return list(self.sockets.values())
        if to in self.sockets:
            return [self.sockets[to]]
        return [self.sockets[sid] for sid in self.rooms.get(to, ()) if sid in self.sockets]

    async def emit(self, frame: dict[str, Any], to: str | None = None) -> int:
        sent = 0
        for socket in self.recipients(to):
            try:
                await socket.send(frame)
                sent += 1
            except Exception as e:
                logger.warning(f"Failed to send '{frame.get('name')}' to socket {socket.id} in /{self.name}: {e}")
        return sent


class RealtimeService:
    """实时推送服务。

    Attributes:
        app_secret: 管理端 JWT 签名密钥
        backplane: 跨节点背板（None 表示单节点）
        node_id: 本节点标识
    """

    def __init__(self, app_secret: str = "", backplane: Backplane | None = None, node_id: str | None = None):
        self.app_secret = app_secret
        self.backplane = backplane
        self.node_id = node_id or uuid.uuid4().hex
        self.admin = Namespace(ADMIN_NAMESPACE)
        self.guest = Namespace(GUEST_NAMESPACE)
        self._listeners: list[tuple[str, Listener]] = []
        self._log_sink_id: int | None = None
        if backplane is not None:
            backplane.subscribe(self._on_backplane_event)

    @classmethod
    def from_config(cls, config: RealtimeConfig) -> "RealtimeService":
        backplane = RedisBackplane.from_url(config.redis_url) if config.use_redis else None
        service = cls(app_secret=config.app_secret, backplane=backplane)
        if config.forward_logs:
            service.install_log_sink()
        return service

    @property
    def use_backplane(self) -> bool:
        return self.backplane is not None

    def on(self, pattern: str, listener: Listener) -> None:
        """注册监听者，pattern 支持通配符（如 guest.*）。"""
        self._listeners.append((pattern, listener))

    def off(self, pattern: str, listener: Listener) -> None:
        if (pattern, listener) in self._listeners:
            self._listeners.remove((pattern, listener))

    async def send_to_socket(self, payload: RealTimePayload) -> None:
        """从服务器端发送一条通知。"""
        logger.trace(f"Send {payload.event_name}")
        await self._emit(payload.event_name, payload.payload, "server")

    async def _emit(self, name: str, data: Any, from_: str, meta: dict[str, Any] | None = None) -> None:
        await self._notify_listeners(name, data, from_, meta or {})
        if from_ == "client":
            # 客户端事件不回发
            return
        await self._fan_out(name, data)
        if self.backplane is not None:
            await self.backplane.publish(self.node_id, name, data)

    async def _notify_listeners(self, name: str, data: Any, from_: str, meta: dict[str, Any]) -> None:
        for pattern, listener in list(self._listeners):
            if not fnmatch.fnmatchcase(name, pattern):
                continue
            result = listener(name, data, from_, meta)
            if inspect.isawaitable(result):
                await result

    async def _fan_out(self, name: str, data: Any) -> int:
        namespace = self.guest if is_event_targeted(name) else self.admin
        frame = {"name": name, "data": data}
        target = None
        if isinstance(data, dict):
            target = data.get("__socketId") or data.get("__room")
        return await namespace.emit(frame, to=target)

    async def _on_backplane_event(self, node_id: str, name: str, data: Any) -> None:
        if node_id == self.node_id:
            return
        await self._fan_out(name, data)

    def authenticate_admin(self, token: str | None) -> dict[str, Any]:
        """校验管理端 JWT。

        Returns:
            令牌载荷

        Raises:
            RealtimeAuthError: 令牌缺失、密钥未配置或签名无效
        """
        if not token:
            raise RealtimeAuthError("Mandatory parameters are missing")
        if not self.app_secret:
            raise RealtimeAuthError("Realtime app secret is not configured")
        try:
            return jwt.decode(token, self.app_secret, algorithms=["HS256"])
        except jwt.InvalidTokenError as e:
            raise RealtimeAuthError(f"Invalid token: {e}") from e

    async def connect_admin(self, socket: ClientSocket, token: str | None) -> dict[str, Any]:
        """管理端连接：先认证再加入。

        Raises:
            RealtimeAuthError: 认证失败（连接不会被加入）
        """
        claims = self.authenticate_admin(token)
        self.admin.add(socket)
        logger.debug(f"Admin socket {socket.id} connected")
        return claims

    async def connect_guest(self, socket: ClientSocket, visitor_id: str | None) -> None:
        """访客连接：有 visitorId 时加入房间 visitor:<id>。"""
        self.guest.add(socket)
        if not visitor_id:
            return

        room = make_visitor_room_id(visitor_id)
        if self.backplane is not None:
            try:
                await self.backplane.remote_join(socket.id, room)
            except Exception as e:
                logger.error(f'socket "{socket.id}" for visitor "{visitor_id}" can\'t join the backplane room: {e}')
                return
        self.guest.join(socket.id, room)

    async def disconnect(self, socket: ClientSocket) -> None:
        self.admin.remove(socket.id)
        self.guest.remove(socket.id)
        if self.backplane is not None:
            try:
                await self.backplane.remove_socket(socket.id)
            except Exception as e:
                logger.warning(f"Failed to remove socket {socket.id} from backplane: {e}")

    async def handle_client_message(
        self,
        socket: ClientSocket,
        message: Any,
        namespace: str = GUEST_NAMESPACE,
        visitor_id: str | None = None,
    ) -> None:
        """处理客户端发来的 {"name", "data"}；没有 name 的消息被忽略。"""
        if not isinstance(message, dict) or not message.get("name"):
            return

        is_guest = namespace == GUEST_NAMESPACE
        meta = {"socketId": socket.id, "visitorId": visitor_id, "guest": is_guest, "admin": not is_guest}
        try:
            await self._emit(message["name"], message.get("data"), "client", meta)
        except Exception as e:
            logger.error(f"Error processing incoming {namespace} event: {e}")

    async def get_visitor_id_from_socket_id(self, socket_id: str) -> str | None:
        """由访客连接 id 反查 visitorId。

        本地查不到时向背板查询；查询失败或连接已断开时返回 None。
        """
        try:
            rooms = self.guest.socket_rooms(socket_id)
            if rooms is None and self.backplane is not None:
                rooms = await self.backplane.socket_rooms(socket_id)
        except Exception as e:
            logger.debug(f"Could not resolve rooms for socket {socket_id}: {e}")
            return None

        if not rooms:
            return None
        rooms = set(rooms)
        rooms.discard(socket_id)
        for room in sorted(rooms):
            if room.startswith(VISITOR_ROOM_PREFIX):
                return unmake_visitor_id(room)
        return None

    def install_log_sink(self, level: str = "INFO") -> int:
        """把日志以 logs 事件推送给管理端。"""
        if self._log_sink_id is None:
            self._log_sink_id = logger.add(
                self._log_sink,
                level=level,
                filter=lambda record: not record["name"].startswith("flowbot.realtime"),
            )
        return self._log_sink_id

    def remove_log_sink(self) -> None:
        if self._log_sink_id is not None:
            logger.remove(self._log_sink_id)
            self._log_sink_id = None

    async def _log_sink(self, message: Any) -> None:
        record = message.record
        payload = {
            "level": record["level"].name.lower(),
            "message": record["message"],
            "scope": record["name"],
            "time": record["time"].isoformat(),
        }
        await self.send_to_socket(RealTimePayload.for_admins("logs", payload))

    async def start(self) -> None:
        if self.backplane is not None:
            await self.backplane.start()

    async def stop(self) -> None:
        self.remove_log_sink()
        if self.backplane is not None:
            await self.backplane.stop()


def is_event_targeted(name: str) -> bool:
    """事件是否发往访客命名空间。"""
    return name.startswith(GUEST_PREFIX)
