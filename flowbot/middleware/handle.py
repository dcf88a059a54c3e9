"""集成注册句柄。

集成不直接接触全局注册表，而是从运行时拿到一个 MiddlewareHandle，
通过它注册/注销自己的中间件；close() 时一次性移除它注册过的全部条目。
"""

from typing import Any

from loguru import logger

from flowbot.bus.events import EventDirection
from flowbot.middleware.chain import Handler, MiddlewareChain, MiddlewareEntry


class MiddlewareHandle:
    """绑定到某个注册方（owner）生命周期的中间件句柄。

    使用示例：
        handle = engine.handle("channel-slack")
        handle.register("slack.typing", on_typing, direction="outgoing", order=10)
        ...
        handle.close()  # 集成停用时
    """

    def __init__(self, owner: str, chains: dict[EventDirection, MiddlewareChain]):
        self.owner = owner
        self._chains = chains
        self._registered: list[tuple[EventDirection, str]] = []

    def register(
        self,
        name: str,
        handler: Handler,
        direction: EventDirection | str = EventDirection.INCOMING,
        order: int = 0,
        description: str = "",
        timeout_ms: float | None = None,
    ) -> MiddlewareEntry:
        """注册一个中间件并记录在本句柄名下。"""
        entry = MiddlewareEntry(
            name=name,
            handler=handler,
            direction=EventDirection(direction),
            order=order,
            description=description,
            timeout_ms=timeout_ms,
            owner=self.owner,
        )
        self._chains[entry.direction].use(entry)
        self._registered.append((entry.direction, name))
        return entry

    def unregister(self, name: str, direction: EventDirection | str | None = None) -> None:
        """注销本句柄注册过的中间件（幂等）。"""
        for registered_direction, registered_name in list(self._registered):
            if registered_name != name:
                continue
            if direction is not None and EventDirection(direction) != registered_direction:
                continue
            self._chains[registered_direction].remove(name)
            self._registered.remove((registered_direction, registered_name))

    def close(self) -> None:
        """移除本句柄注册过的所有中间件。"""
        for direction, name in self._registered:
            self._chains[direction].remove(name)
        if self._registered:
            logger.debug(f"Released {len(self._registered)} middleware(s) owned by '{self.owner}'")
        self._registered.clear()

    @property
    def names(self) -> list[str]:
        return [name for _, name in self._registered]

    def __enter__(self) -> "MiddlewareHandle":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()
