"""远程动作服务器。

动作可以部署在独立进程中（动作服务器），指令写作 `<serverId>:<actionName> {...}`。
调用方式：
    POST <base_url>/action/run
    {"botId": ..., "actionName": ..., "incomingEvent": {...}, "actionArgs": {...}}

服务器返回的 incomingEvent.state 会合并回当前事件状态。
"""

from dataclasses import dataclass
from typing import Any

import httpx
from loguru import logger

from flowbot.bus.events import Event
from flowbot.config.schema import ActionServerConfig


@dataclass(frozen=True)
class ActionServer:
    """动作服务器地址。"""

    id: str
    base_url: str
    timeout: float = 10.0

    @property
    def run_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/action/run"


class ActionServersService:
    """动作服务器解析与远程调用。

    Attributes:
        transport: 可选的 httpx 传输层（测试时可注入 httpx.MockTransport）
    """

    def __init__(
        self,
        servers: list[ActionServer] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._servers: dict[str, ActionServer] = {s.id: s for s in servers or []}
        self.transport = transport

    @classmethod
    def from_config(cls, configs: list[ActionServerConfig]) -> "ActionServersService":
        return cls([ActionServer(id=c.id, base_url=c.base_url, timeout=c.timeout) for c in configs])

    def add_server(self, server: ActionServer) -> None:
        self._servers[server.id] = server

    def get_server(self, server_id: str) -> ActionServer | None:
        """按 id 查找服务器，不存在时返回 None。"""
        return self._servers.get(server_id)

    @property
    def servers(self) -> list[ActionServer]:
        return list(self._servers.values())

    async def run_remote(
        self,
        server: ActionServer,
        action_name: str,
        incoming_event: Event,
        action_args: dict[str, Any],
    ) -> dict[str, Any]:
        """在远程服务器上执行动作。

        Returns:
            服务器返回的 JSON 响应

        Raises:
            httpx.HTTPError: 网络错误或非 2xx 响应
        """
        body = {
            "botId": incoming_event.bot_id,
            "actionName": action_name,
            "incomingEvent": incoming_event.to_dict(),
            "actionArgs": action_args,
        }
        logger.debug(f"[{incoming_event.bot_id}] Running action '{action_name}' on server '{server.id}'")

        async with httpx.AsyncClient(transport=self.transport, timeout=server.timeout) as client:
            r = await client.post(server.run_url, json=body)
            r.raise_for_status()

        data = r.json() if r.content else {}
        returned_state = (data.get("incomingEvent") or {}).get("state")
        if returned_state:
            _merge_state(incoming_event, returned_state)
        return data


def _merge_state(event: Event, returned: dict[str, Any]) -> None:
    """把远端返回的状态按分区覆盖到事件状态上。"""
    state = event.state
    for key in ("user", "context", "session", "temp", "bot", "workflow"):
        if isinstance(returned.get(key), dict):
            setattr(state, key, returned[key])
    if isinstance(returned.get("__stacktrace"), list):
        state.stacktrace = returned["__stacktrace"]
