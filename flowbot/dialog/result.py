"""指令处理结果。"""

from dataclasses import dataclass


@dataclass(frozen=True)
class ProcessingResult:
    """单条指令的执行结果。

    两种形态：
    - ProcessingResult.none(): 不跳转，保持当前流程位置
    - ProcessingResult.transition(node): 跳转到 node（可用 "other.flow.json#node" 跨流程）

    Attributes:
        transition_to: 跳转目标，None 表示不跳转
    """

    transition_to: str | None = None

    @classmethod
    def none(cls) -> "ProcessingResult":
        return cls()

    @classmethod
    def transition(cls, node: str) -> "ProcessingResult":
        return cls(transition_to=node)

    @property
    def is_transition(self) -> bool:
        return self.transition_to is not None

    def __repr__(self) -> str:
        if self.transition_to is None:
            return "ProcessingResult.none()"
        return f"ProcessingResult.transition({self.transition_to!r})"
