"""动作注册中心模块。

以名称为键管理机器人的本地动作，并负责调用：
- 注册/注销动作（实例或 @registry.action 装饰的函数）
- 参数验证
- 本地执行或转发给远程动作服务器

与工具注册中心不同，调用失败以异常形式抛出，由 ActionStrategy 统一转换为错误流程跳转。
"""

from typing import Any, Callable

from loguru import logger

from flowbot.actions.base import Action, FunctionAction
from flowbot.actions.servers import ActionServer, ActionServersService
from flowbot.bus.events import Event


class ActionNotFoundError(Exception):
    """本地注册表中不存在该动作。"""

    def __init__(self, action_name: str):
        super().__init__(f"Action '{action_name}' not found")
        self.action_name = action_name


class InvalidActionArgumentsError(Exception):
    """动作参数未通过验证。"""

    def __init__(self, action_name: str, errors: list[str]):
        super().__init__(f"Invalid arguments for action '{action_name}': " + "; ".join(errors))
        self.action_name = action_name
        self.errors = errors


class ActionExecutionError(Exception):
    """动作执行过程中抛出了异常。"""

    def __init__(self, action_name: str, cause: BaseException):
        super().__init__(f"Error executing action '{action_name}': {cause}")
        self.action_name = action_name
        self.cause = cause


class ActionRegistry:
    """本地动作注册中心。

    Attributes:
        servers: 远程动作服务器服务（可选）
    """

    def __init__(self, servers: ActionServersService | None = None):
        self._actions: dict[str, Action] = {}
        self.servers = servers

    def register(self, action: Action) -> None:
        self._actions[action.name] = action

    def unregister(self, name: str) -> None:
        self._actions.pop(name, None)

    def get(self, name: str) -> Action | None:
        return self._actions.get(name)

    def has_action(self, name: str) -> bool:
        return name in self._actions

    def action(
        self,
        name: str | None = None,
        description: str = "",
        parameters: dict[str, Any] | None = None,
    ) -> Callable[[Callable], Callable]:
        """函数装饰器：把函数注册为动作。

        使用示例：
            @registry.action("setLanguage")
            async def set_language(event, args):
                event.state.user["language"] = args["lang"]
        """

        def decorator(fn: Callable) -> Callable:
            self.register(FunctionAction(name or fn.__name__, fn, description, parameters))
            return fn

        return decorator

    async def run_action(
        self,
        action_name: str,
        incoming_event: Event,
        action_args: dict[str, Any],
        action_server: ActionServer | None = None,
    ) -> Any:
        """执行动作。

        Args:
            action_name: 动作名称
            incoming_event: 触发动作的入站事件
            action_args: 已渲染的参数
            action_server: 远程服务器；给出时在远端执行

        Raises:
            ActionNotFoundError: 本地动作不存在
            InvalidActionArgumentsError: 参数验证失败
            ActionExecutionError: 动作执行失败
        """
        if action_server is not None:
            if self.servers is None:
                raise ActionExecutionError(action_name, RuntimeError("No action server service configured"))
            try:
                return await self.servers.run_remote(action_server, action_name, incoming_event, action_args)
            except Exception as e:
                raise ActionExecutionError(action_name, e) from e

        action = self._actions.get(action_name)
        if action is None:
            raise ActionNotFoundError(action_name)

        errors = action.validate_params(action_args)
        if errors:
            raise InvalidActionArgumentsError(action_name, errors)

        logger.debug(f"[{incoming_event.bot_id}] Running action '{action_name}'")
        try:
            return await action.run(incoming_event, action_args)
        except Exception as e:
            raise ActionExecutionError(action_name, e) from e

    @property
    def action_names(self) -> list[str]:
        return list(self._actions.keys())

    def __len__(self) -> int:
        return len(self._actions)

    def __contains__(self, name: str) -> bool:
        return name in self._actions
