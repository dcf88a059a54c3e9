"""内容渲染器。

对话引擎执行 say 指令时，通过 ContentRenderer 把 (输出类型, 参数) 渲染成
渠道可发送的元素列表。真正的 CMS 是外部协作者；这里提供接口和一个基于
jinja2 模板的默认实现。
"""

from abc import ABC, abstractmethod
from typing import Any, Callable

from loguru import logger

from flowbot.bus.events import EventDestination
from flowbot.content.templating import COMMON_ARG_KEYS, render_template

# 内容元素引用前缀：#text、@builtin_text、!text
_ELEMENT_PREFIXES = "#@!"

ContentTypeRenderer = Callable[[dict[str, Any], EventDestination], list[dict[str, Any]]]


class ContentRenderer(ABC):
    """内容渲染接口。"""

    @abstractmethod
    async def render_element(
        self,
        content_type: str,
        args: dict[str, Any],
        destination: EventDestination,
    ) -> list[dict[str, Any]]:
        """渲染一个内容元素。

        Args:
            content_type: 输出类型（如 #text、#!greeting）
            args: 参数（已包含事件公共参数）
            destination: 投递目标，渲染器可按渠道调整输出

        Returns:
            渲染后的元素列表
        """
        pass


class TemplateRenderer(ContentRenderer):
    """基于模板的默认渲染器。

    - add_element: 注册具名内容元素（模板字典），如 greeting -> {"type": "text", "text": "Hi {{ user.name }}"}
    - add_content_type: 注册内容类型的渲染函数，如 text -> fn(args, destination)

    查找顺序：具名元素 > 内容类型 > 原样输出 {"type": key, **args}。
    """

    def __init__(self):
        self._elements: dict[str, dict[str, Any]] = {}
        self._content_types: dict[str, ContentTypeRenderer] = {}

    def add_element(self, element_id: str, template: dict[str, Any]) -> None:
        self._elements[element_id.lstrip(_ELEMENT_PREFIXES)] = template

    def add_content_type(self, content_type: str, renderer: ContentTypeRenderer) -> None:
        self._content_types[content_type.lstrip(_ELEMENT_PREFIXES)] = renderer

    async def render_element(
        self,
        content_type: str,
        args: dict[str, Any],
        destination: EventDestination,
    ) -> list[dict[str, Any]]:
        key = content_type.lstrip(_ELEMENT_PREFIXES)

        element = self._elements.get(key)
        if element is not None:
            rendered = render_template(element, args)
            return rendered if isinstance(rendered, list) else [rendered]

        renderer = self._content_types.get(key)
        if renderer is not None:
            return renderer(render_template(_own_args(args), args), destination)

        logger.debug(f"No template for content type '{content_type}', sending raw arguments")
        return [{"type": key, **render_template(_own_args(args), args)}]


def _own_args(args: dict[str, Any]) -> dict[str, Any]:
    """去掉事件公共参数，只保留指令自身的参数。"""
    return {k: v for k, v in args.items() if k not in COMMON_ARG_KEYS}
