"""内容渲染模块。"""

from flowbot.content.renderer import ContentRenderer, TemplateRenderer
from flowbot.content.templating import COMMON_ARG_KEYS, extract_event_common_args, render_template

__all__ = [
    "COMMON_ARG_KEYS",
    "ContentRenderer",
    "TemplateRenderer",
    "extract_event_common_args",
    "render_template",
]
