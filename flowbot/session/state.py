"""对话会话状态。

每个 (bot, channel, user) 会话对应一条 DialogSession 记录，持久化的是事件状态中
跨轮次存活的部分：user、context、session、temp、workflow。
__stacktrace 只在单轮内有效，不持久化；bot 数据属于机器人级共享，也不随会话保存。
"""

import copy
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from flowbot.bus.events import Event, EventState

PERSISTED_KEYS = ("user", "context", "session", "temp", "workflow")


@dataclass
class DialogSession:
    """持久化的会话记录。

    Attributes:
        key: 会话键（bot_id:channel:target）
        user: 用户数据
        context: 当前流程/节点
        session: 会话记忆（lastMessages 等）
        temp: 临时变量（对话结束时清空）
        workflow: 工作流变量
        created_at: 创建时间
        updated_at: 最后保存时间
        metadata: 额外元数据
    """

    key: str
    user: dict[str, Any] = field(default_factory=dict)
    context: dict[str, Any] = field(default_factory=dict)
    session: dict[str, Any] = field(default_factory=dict)
    temp: dict[str, Any] = field(default_factory=dict)
    workflow: dict[str, Any] = field(default_factory=lambda: {"variables": {}})
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)
    metadata: dict[str, Any] = field(default_factory=dict)

    def apply_to(self, event: Event) -> None:
        """把会话数据拷贝进事件状态（事件持有独立副本）。"""
        state = event.state
        for key in PERSISTED_KEYS:
            setattr(state, key, copy.deepcopy(getattr(self, key)))
        state.workflow.setdefault("variables", {})

    def update_from(self, state: EventState) -> None:
        """从处理完的事件状态回写会话数据。"""
        for key in PERSISTED_KEYS:
            setattr(self, key, copy.deepcopy(getattr(state, key)))
        self.updated_at = datetime.now()

    def state_dict(self) -> dict[str, Any]:
        return {key: getattr(self, key) for key in PERSISTED_KEYS}

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "metadata": self.metadata,
            **self.state_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DialogSession":
        return cls(
            key=data["key"],
            user=data.get("user") or {},
            context=data.get("context") or {},
            session=data.get("session") or {},
            temp=data.get("temp") or {},
            workflow=data.get("workflow") or {"variables": {}},
            created_at=_parse_time(data.get("created_at")),
            updated_at=_parse_time(data.get("updated_at")),
            metadata=data.get("metadata") or {},
        )


def _parse_time(value: str | None) -> datetime:
    return datetime.fromisoformat(value) if value else datetime.now()
