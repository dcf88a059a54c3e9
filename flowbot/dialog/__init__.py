"""对话模块：指令解析、表达式求值、指令策略与流程引擎。"""

from flowbot.dialog.engine import DialogEngine, InfiniteLoopError
from flowbot.dialog.evaluator import (
    Evaluator,
    FastEvaluator,
    IsolatedEvaluator,
    SandboxEvaluationError,
    SandboxPolicy,
    SandboxTimeoutError,
)
from flowbot.dialog.expression import ExpressionError, UnsafeExpressionError
from flowbot.dialog.flow import FlowDefinition, FlowLoader, FlowNode, FlowNotFoundError, NodeNotFoundError
from flowbot.dialog.instructions import (
    ActionInstruction,
    Instruction,
    InstructionParseError,
    InstructionType,
    SayInstruction,
    TransitionInstruction,
)
from flowbot.dialog.result import ProcessingResult
from flowbot.dialog.strategy import ActionStrategy, InstructionStrategy, TransitionStrategy

__all__ = [
    "ActionInstruction",
    "ActionStrategy",
    "DialogEngine",
    "Evaluator",
    "ExpressionError",
    "FastEvaluator",
    "FlowDefinition",
    "FlowLoader",
    "FlowNode",
    "FlowNotFoundError",
    "InfiniteLoopError",
    "Instruction",
    "InstructionParseError",
    "InstructionStrategy",
    "InstructionType",
    "IsolatedEvaluator",
    "NodeNotFoundError",
    "ProcessingResult",
    "SandboxEvaluationError",
    "SandboxPolicy",
    "SandboxTimeoutError",
    "SayInstruction",
    "TransitionInstruction",
    "TransitionStrategy",
    "UnsafeExpressionError",
]
