"""配置模块。"""

from flowbot.config.schema import Config

__all__ = ["Config"]
