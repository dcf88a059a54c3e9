"""配置模式模块。

使用 Pydantic 定义 flowbot 的配置结构，支持：
- 类型验证
- 环境变量加载
- 默认值
- 嵌套配置

环境变量格式：
- 顶层: FLOWBOT_KEY=value
- 嵌套: FLOWBOT_SECTION__KEY=value

示例：
    FLOWBOT_DIALOG__SANDBOX_TIMEOUT_MS=2000
    FLOWBOT_SESSIONS__BACKEND=redis
"""

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class MiddlewareConfig(BaseModel):
    """中间件链配置。

    Attributes:
        timeout_ms: 单个处理器的默认超时（毫秒），None 表示不限时
    """
    timeout_ms: float | None = None


class DialogConfig(BaseModel):
    """对话引擎配置。

    Attributes:
        disable_transition_sandbox: 是否允许安全表达式跳过隔离执行
        sandbox_timeout_ms: 隔离执行的硬超时（毫秒）
        error_flow: 动作失败时默认跳转的流程
        main_flow: 新会话的入口流程
        last_messages_limit: session.lastMessages 的最大保留条数
        max_transitions_per_turn: 单轮允许的最大跳转次数（防止死循环）
        flows_dir: 流程定义文件目录
    """
    disable_transition_sandbox: bool = False
    sandbox_timeout_ms: int = 5000
    error_flow: str = "error.flow.json"
    main_flow: str = "main.flow.json"
    last_messages_limit: int = 20
    max_transitions_per_turn: int = 50
    flows_dir: str = "~/.flowbot/flows"


class SessionsConfig(BaseModel):
    """会话存储配置。

    Attributes:
        backend: 存储后端（file 或 redis）
        directory: 文件后端的存储目录
        redis_url: Redis 后端连接地址
        key_prefix: Redis 键前缀
    """
    backend: Literal["file", "redis"] = "file"
    directory: str = "~/.flowbot/sessions"
    redis_url: str = "redis://localhost:6379/0"
    key_prefix: str = "flowbot:session:"


class ActionServerConfig(BaseModel):
    """远程动作服务器配置。

    Attributes:
        id: 服务器标识（指令中 `id:actionName` 的前缀）
        base_url: 服务器根地址
        timeout: 请求超时（秒）
    """
    id: str
    base_url: str
    timeout: float = 10.0


class RealtimeConfig(BaseModel):
    """实时推送配置。

    Attributes:
        host: websocket 监听地址
        port: websocket 监听端口
        app_secret: 管理端 JWT 签名密钥
        use_redis: 是否使用 Redis 作为跨节点背板
        redis_url: 背板 Redis 地址
        forward_logs: 是否把日志推送给管理端
    """
    host: str = "0.0.0.0"
    port: int = 3100
    app_secret: str = ""
    use_redis: bool = False
    redis_url: str = "redis://localhost:6379/1"
    forward_logs: bool = False


class Config(BaseSettings):
    """flowbot 根配置。

    支持从环境变量加载配置，前缀为 FLOWBOT_。
    嵌套配置使用 __ 分隔，如 FLOWBOT_DIALOG__ERROR_FLOW。

    Attributes:
        middleware: 中间件链配置
        dialog: 对话引擎配置
        sessions: 会话存储配置
        action_servers: 远程动作服务器列表
        realtime: 实时推送配置
    """
    middleware: MiddlewareConfig = Field(default_factory=MiddlewareConfig)
    dialog: DialogConfig = Field(default_factory=DialogConfig)
    sessions: SessionsConfig = Field(default_factory=SessionsConfig)
    action_servers: list[ActionServerConfig] = Field(default_factory=list)
    realtime: RealtimeConfig = Field(default_factory=RealtimeConfig)

    model_config = SettingsConfigDict(
        env_prefix="FLOWBOT_",  # 环境变量前缀
        env_nested_delimiter="__",  # 嵌套分隔符
    )

    @property
    def flows_path(self) -> Path:
        """获取展开后的流程目录。"""
        return Path(self.dialog.flows_dir).expanduser()

    @property
    def sessions_path(self) -> Path:
        """获取展开后的会话目录。"""
        return Path(self.sessions.directory).expanduser()
