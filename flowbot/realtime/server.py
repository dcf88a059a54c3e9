"""websocket 接入层。

客户端连接地址：
    ws://host:port/guest?visitorId=<id>
    ws://host:port/admin?token=<jwt>&visitorId=<id>

收发的消息都是 JSON 文本帧 {"name": ..., "data": ...}。
"""

import json
from typing import Any
from urllib.parse import parse_qs, urlsplit

from loguru import logger
from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.exceptions import ConnectionClosed

from flowbot.realtime.service import ADMIN_NAMESPACE, GUEST_NAMESPACE, RealtimeAuthError, RealtimeService

# 认证失败时的关闭码（策略违规）
CLOSE_POLICY_VIOLATION = 1008


class WebSocketClient:
    """把 websockets 连接适配为 ClientSocket。"""

    def __init__(self, connection: ServerConnection):
        self.connection = connection
        self.id = str(connection.id)

    async def send(self, frame: dict[str, Any]) -> None:
        await self.connection.send(json.dumps(frame, ensure_ascii=False, default=str))


def parse_connection_path(path: str) -> tuple[str, dict[str, str]]:
    """解析连接路径，返回 (命名空间, 查询参数)。"""
    parts = urlsplit(path)
    namespace = parts.path.strip("/").split("/")[-1] or GUEST_NAMESPACE
    query = {key: values[0] for key, values in parse_qs(parts.query).items() if values}
    return namespace, query


class RealtimeServer:
    """websocket 服务器。

    Attributes:
        service: 实时推送服务
        host: 监听地址
        port: 监听端口
    """

    def __init__(self, service: RealtimeService, host: str = "0.0.0.0", port: int = 3100):
        self.service = service
        self.host = host
        self.port = port
        self._server: Server | None = None

    async def start(self) -> None:
        await self.service.start()
        self._server = await serve(self._handle_connection, self.host, self.port)
        logger.info(f"Realtime server listening on ws://{self.host}:{self.port}")

    async def stop(self) -> None:
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
        await self.service.stop()
        logger.info("Realtime server stopped")

    async def _handle_connection(self, connection: ServerConnection) -> None:
        namespace, query = parse_connection_path(connection.request.path)
        client = WebSocketClient(connection)
        visitor_id = query.get("visitorId")

        if namespace == ADMIN_NAMESPACE:
            try:
                await self.service.connect_admin(client, query.get("token"))
            except RealtimeAuthError as e:
                logger.warning(f"Rejected admin socket {client.id}: {e}")
                await connection.close(code=CLOSE_POLICY_VIOLATION, reason=str(e))
                return
        elif namespace == GUEST_NAMESPACE:
            await self.service.connect_guest(client, visitor_id)
        else:
            await connection.close(code=CLOSE_POLICY_VIOLATION, reason=f"Unknown namespace {namespace}")
            return

        try:
            async for raw in connection:
                try:
                    message = json.loads(raw)
                except (TypeError, json.JSONDecodeError):
                    logger.warning(f"Invalid JSON from socket {client.id}")
                    continue
                await self.service.handle_client_message(client, message, namespace, visitor_id)
        except ConnectionClosed:
            pass
        finally:
            await self.service.disconnect(client)
