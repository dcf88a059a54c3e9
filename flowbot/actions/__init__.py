"""动作模块：本地动作注册与远程动作服务器。"""

from flowbot.actions.base import Action, FunctionAction
from flowbot.actions.registry import (
    ActionExecutionError,
    ActionNotFoundError,
    ActionRegistry,
    InvalidActionArgumentsError,
)
from flowbot.actions.servers import ActionServer, ActionServersService

__all__ = [
    "Action",
    "ActionExecutionError",
    "ActionNotFoundError",
    "ActionRegistry",
    "ActionServer",
    "ActionServersService",
    "FunctionAction",
    "InvalidActionArgumentsError",
]
