"""消息总线事件类型定义。

定义了在管道中流通的事件数据结构：
- Event: 入站或出站的对话事件（统一信封）
- EventState: 事件携带的会话状态（user/context/session/temp/workflow/__stacktrace）
- EventDestination: 出站事件的投递目标
- DialogTurnHistory: session.lastMessages 中的一条轮次记录
"""

import copy
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class EventDirection(str, Enum):
    """事件方向。"""
    INCOMING = "incoming"
    OUTGOING = "outgoing"


def _default_workflow() -> dict[str, Any]:
    return {"variables": {}}


@dataclass
class EventState:
    """事件状态袋：对话引擎读写的会话数据。

    内部字典的键沿用流程作者使用的数据格式（如 currentFlow、lastMessages、
    onErrorFlowTo），因此保留驼峰命名。

    Attributes:
        user: 用户级持久数据
        context: 当前流程/节点位置及待执行队列
        session: 跨轮次的会话记忆（含 lastMessages）
        temp: 单轮临时变量（含 onErrorFlowTo）
        bot: 机器人级共享数据
        workflow: 当前工作流的变量（workflow["variables"]）
        stacktrace: 已访问节点列表 [{"flow": ..., "node": ...}]
    """

    user: dict[str, Any] = field(default_factory=dict)
    context: dict[str, Any] = field(default_factory=dict)
    session: dict[str, Any] = field(default_factory=dict)
    temp: dict[str, Any] = field(default_factory=dict)
    bot: dict[str, Any] = field(default_factory=dict)
    workflow: dict[str, Any] = field(default_factory=_default_workflow)
    stacktrace: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """转换为字典（stacktrace 使用 `__stacktrace` 键）。"""
        return {
            "user": self.user,
            "context": self.context,
            "session": self.session,
            "temp": self.temp,
            "bot": self.bot,
            "workflow": self.workflow,
            "__stacktrace": self.stacktrace,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EventState":
        workflow = data.get("workflow") or _default_workflow()
        workflow.setdefault("variables", {})
        return cls(
            user=data.get("user") or {},
            context=data.get("context") or {},
            session=data.get("session") or {},
            temp=data.get("temp") or {},
            bot=data.get("bot") or {},
            workflow=workflow,
            stacktrace=list(data.get("__stacktrace") or []),
        )

    def snapshot(self) -> "EventState":
        """深拷贝状态，供处理器在自身调用结束后异步使用。"""
        return copy.deepcopy(self)


@dataclass
class EventDestination:
    """出站投递目标。"""

    channel: str
    target: str
    bot_id: str
    thread_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "channel": self.channel,
            "target": self.target,
            "bot_id": self.bot_id,
            "thread_id": self.thread_id,
        }


@dataclass
class Event:
    """对话事件：所有组件之间流转的统一信封。

    事件由入站渠道适配器或对话引擎（出站回复）创建，只属于承载它的那一次
    管道调用，不会在并发的管道运行之间共享。

    Attributes:
        bot_id: 机器人标识
        channel: 渠道名称（slack, twilio, messenger, web 等）
        target: 目标用户标识
        type: 类型标签（text, image, carousel 等）
        direction: 事件方向（入站/出站）
        payload: 按类型变化的载荷
        thread_id: 会话线程标识（可选）
        id: 事件唯一标识
        preview: 预览文本
        nlu: NLU 结果（意图、实体等）
        state: 会话状态袋
        incoming_event_id: 出站事件对应的入站事件 ID
        created_on: 创建时间
        steps: 审计记录（如 mw:<name>:skipped）
    """

    bot_id: str
    channel: str
    target: str
    type: str
    direction: EventDirection = EventDirection.INCOMING
    payload: dict[str, Any] = field(default_factory=dict)
    thread_id: str | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    preview: str | None = None
    nlu: dict[str, Any] = field(default_factory=dict)
    state: EventState = field(default_factory=EventState)
    incoming_event_id: str | None = None
    created_on: datetime = field(default_factory=datetime.now)
    steps: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.direction = EventDirection(self.direction)
        if self.preview is None:
            text = self.payload.get("text")
            self.preview = text if isinstance(text, str) else self.type

    @property
    def session_key(self) -> str:
        """会话唯一键：格式 "{bot_id}:{channel}:{target}"。"""
        return f"{self.bot_id}:{self.channel}:{self.target}"

    @property
    def destination(self) -> EventDestination:
        return EventDestination(
            channel=self.channel,
            target=self.target,
            bot_id=self.bot_id,
            thread_id=self.thread_id,
        )

    @property
    def is_incoming(self) -> bool:
        return self.direction == EventDirection.INCOMING

    def add_step(self, step: str) -> None:
        """追加一条审计记录。"""
        self.steps.append(step)

    def to_dict(self) -> dict[str, Any]:
        """转换为 JSON 友好的字典（用于沙箱求值和远程动作服务器）。"""
        return {
            "id": self.id,
            "direction": self.direction.value,
            "bot_id": self.bot_id,
            "channel": self.channel,
            "target": self.target,
            "thread_id": self.thread_id,
            "type": self.type,
            "payload": self.payload,
            "preview": self.preview,
            "nlu": self.nlu,
            "state": self.state.to_dict(),
            "incoming_event_id": self.incoming_event_id,
            "created_on": self.created_on.isoformat(),
        }


@dataclass
class DialogTurnHistory:
    """session.lastMessages 中的一条记录。"""

    event_id: str
    incoming_preview: str | None
    reply_preview: str
    reply_confidence: float = 1.0
    reply_source: str = "dialogManager"
    reply_date: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "eventId": self.event_id,
            "incomingPreview": self.incoming_preview,
            "replyConfidence": self.reply_confidence,
            "replySource": self.reply_source,
            "replyDate": self.reply_date.isoformat(),
            "replyPreview": self.reply_preview,
        }
