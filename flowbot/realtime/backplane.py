"""跨节点背板。

多个进程各自持有一部分客户端连接；背板负责两件事：
- 房间成员关系的共享（本地查不到某个连接的房间时向背板查询）
- 服务器事件的跨节点广播（每个节点只向自己的连接投递）

InMemoryBackplane 用于单进程（或测试中多个服务实例共享同一个对象），
RedisBackplane 使用 Redis 集合保存成员关系、pub/sub 传递事件。
"""

import asyncio
import json
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable

import redis.asyncio as redis
from loguru import logger

# (node_id, name, data)
BackplaneListener = Callable[[str, str, Any], Awaitable[None]]


class Backplane(ABC):
    """背板接口。"""

    def __init__(self):
        self._listeners: list[BackplaneListener] = []

    def subscribe(self, listener: BackplaneListener) -> None:
        self._listeners.append(listener)

    async def _notify(self, node_id: str, name: str, data: Any) -> None:
        for listener in list(self._listeners):
            try:
                await listener(node_id, name, data)
            except Exception as e:
                logger.error(f"Backplane listener failed for '{name}': {e}")

    @abstractmethod
    async def remote_join(self, socket_id: str, room: str) -> None:
        pass

    @abstractmethod
    async def remove_socket(self, socket_id: str) -> None:
        pass

    @abstractmethod
    async def socket_rooms(self, socket_id: str) -> set[str] | None:
        """查询连接所在的房间；未知连接返回 None。"""
        pass

    @abstractmethod
    async def publish(self, node_id: str, name: str, data: Any) -> None:
        pass

    async def start(self) -> None:
        pass

    async def stop(self) -> None:
        pass


class InMemoryBackplane(Backplane):
    """进程内背板。"""

    def __init__(self):
        super().__init__()
        self._rooms: dict[str, set[str]] = {}

    async def remote_join(self, socket_id: str, room: str) -> None:
        self._rooms.setdefault(socket_id, set()).add(room)

    async def remove_socket(self, socket_id: str) -> None:
        self._rooms.pop(socket_id, None)

    async def socket_rooms(self, socket_id: str) -> set[str] | None:
        rooms = self._rooms.get(socket_id)
        return set(rooms) if rooms is not None else None

    async def publish(self, node_id: str, name: str, data: Any) -> None:
        await self._notify(node_id, name, data)


class RedisBackplane(Backplane):
    """Redis 背板。

    键布局：
    - {prefix}:rooms:{socket_id}  连接所在房间（集合）
    - {prefix}:events             事件广播频道
    """

    def __init__(self, redis_client: redis.Redis, prefix: str = "flowbot:realtime"):
        super().__init__()
        self.redis = redis_client
        self.prefix = prefix
        self._task: asyncio.Task | None = None

    @classmethod
    def from_url(cls, url: str, prefix: str = "flowbot:realtime") -> "RedisBackplane":
        return cls(redis.Redis.from_url(url, decode_responses=True), prefix)

    @property
    def channel(self) -> str:
        return f"{self.prefix}:events"

    def _rooms_key(self, socket_id: str) -> str:
        return f"{self.prefix}:rooms:{socket_id}"

    async def remote_join(self, socket_id: str, room: str) -> None:
        await self.redis.sadd(self._rooms_key(socket_id), room)

    async def remove_socket(self, socket_id: str) -> None:
        await self.redis.delete(self._rooms_key(socket_id))

    async def socket_rooms(self, socket_id: str) -> set[str] | None:
        members = await self.redis.smembers(self._rooms_key(socket_id))
        if not members:
            return None
        return {m.decode("utf-8") if isinstance(m, bytes) else m for m in members}

    async def publish(self, node_id: str, name: str, data: Any) -> None:
        message = json.dumps({"node": node_id, "name": name, "data": data}, default=str)
        await self.redis.publish(self.channel, message)

    async def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._listen())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _listen(self) -> None:
        pubsub = self.redis.pubsub()
        await pubsub.subscribe(self.channel)
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                raw = message["data"]
                if isinstance(raw, bytes):
                    raw = raw.decode("utf-8")
                try:
                    data = json.loads(raw)
                except json.JSONDecodeError:
                    logger.warning(f"Ignoring malformed backplane message: {raw!r}")
                    continue
                await self._notify(data.get("node", ""), data.get("name", ""), data.get("data"))
        finally:
            await pubsub.unsubscribe(self.channel)
            await pubsub.aclose()
