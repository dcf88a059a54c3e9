"""模板渲染与公共参数。

- extract_event_common_args: 从事件提取模板/表达式可见的公共变量
- render_template: 递归渲染字符串、字典、列表中的 {{ ... }} 模板

模板由流程作者编写，使用 jinja2 的沙箱环境渲染；未定义变量渲染为空串。
"""

from functools import lru_cache
from typing import Any

from jinja2.sandbox import SandboxedEnvironment

from flowbot.bus.events import Event

COMMON_ARG_KEYS = ("event", "user", "temp", "session", "bot", "workflow")


def extract_event_common_args(event: Event, args: dict[str, Any] | None = None) -> dict[str, Any]:
    """提取事件公共参数。

    返回的状态字典与事件共享引用，读取的是最新值。

    Args:
        event: 当前事件
        args: 额外参数（覆盖同名公共参数）

    Returns:
        {"event", "user", "temp", "session", "bot", "workflow", **args}
    """
    state = event.state
    return {
        "event": event.to_dict(),
        "user": state.user,
        "temp": state.temp,
        "session": state.session,
        "bot": state.bot,
        "workflow": state.workflow,
        **(args or {}),
    }


@lru_cache(maxsize=1)
def get_template_environment() -> SandboxedEnvironment:
    """获取共享的沙箱模板环境。"""
    return SandboxedEnvironment(autoescape=False, keep_trailing_newline=True)


def _is_template(text: str) -> bool:
    return "{{" in text or "{%" in text


def render_template(value: Any, context: dict[str, Any]) -> Any:
    """递归渲染模板。

    Args:
        value: 字符串、字典、列表或其他值
        context: 模板变量

    Returns:
        渲染后的值；非字符串的标量原样返回

    Raises:
        jinja2.TemplateSyntaxError: 模板语法错误
        jinja2.exceptions.SecurityError: 模板访问了不安全的属性
    """
    if isinstance(value, str):
        if not _is_template(value):
            return value
        return get_template_environment().from_string(value).render(**context)
    if isinstance(value, dict):
        return {key: render_template(item, context) for key, item in value.items()}
    if isinstance(value, list):
        return [render_template(item, context) for item in value]
    return value
