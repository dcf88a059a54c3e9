"""流程节点指令。

节点上的指令以函数字符串（fn）的形式保存，在流程加载时解析成带类型的指令：

- SayInstruction:        "say <outputType>[ <jsonArgs>]"
- ActionInstruction:     "[<serverId>:]<actionName>[ <jsonArgs>]"
- TransitionInstruction: 出边上的条件表达式 + 目标节点

`$name` 形式的变量引用在解析时被改写为 event.state.workflow.variables.name。
"""

import json
import re
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Union

SAY_PREFIX = "say "
# outputType 以此开头时，参数取自 instruction.args 而不是 fn
PARAM_REF_MARKER = "@"
VARIABLE_PATTERN = re.compile(r"\$[a-zA-Z][a-zA-Z0-9_-]*")


class InstructionParseError(ValueError):
    """指令文本无法解析（通常是参数不是合法 JSON）。"""


class InstructionType(str, Enum):
    """指令在节点上的位置。"""
    ON_ENTER = "on-enter"
    ON_RECEIVE = "on-receive"
    TRANSITION = "transition"


@dataclass
class Instruction:
    """节点上的原始指令。

    Attributes:
        type: 指令位置（onEnter / onReceive / transition）
        fn: 函数字符串或条件表达式
        node: 跳转目标（仅 transition）
        args: 预解析参数（@ 引用的输出类型，或动作的默认参数）
    """

    type: InstructionType
    fn: str
    node: str | None = None
    args: dict[str, Any] | None = None

    def __post_init__(self) -> None:
        self.type = InstructionType(self.type)


@dataclass(frozen=True)
class SayInstruction:
    """渲染输出的指令。"""

    output_type: str
    args: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ActionInstruction:
    """调用动作的指令。"""

    action_name: str
    args: dict[str, Any] = field(default_factory=dict)
    server_id: str | None = None


@dataclass(frozen=True)
class TransitionInstruction:
    """条件跳转指令。

    Attributes:
        source: 作者编写的原始条件
        expression: 改写变量引用后的表达式
        target_node: 条件成立时的跳转目标
    """

    source: str
    expression: str
    target_node: str


ParsedInstruction = Union[SayInstruction, ActionInstruction, TransitionInstruction]


def is_say_instruction(fn: str) -> bool:
    return fn.startswith(SAY_PREFIX)


def parse_say_instruction(fn: str, args: dict[str, Any] | None = None) -> SayInstruction:
    """解析 "say <outputType>[ <jsonArgs>]"。

    Raises:
        InstructionParseError: 缺少输出类型，或参数不是合法 JSON 对象
    """
    chunks = fn.split(" ")
    if len(chunks) < 2 or not chunks[1]:
        raise InstructionParseError('Invalid text instruction. Expected an instruction along "say #text Something"')

    output_type = chunks[1]
    params = " ".join(chunks[2:])

    if output_type.startswith(PARAM_REF_MARKER):
        return SayInstruction(output_type=output_type, args=dict(args or {}))

    parsed: dict[str, Any] = {}
    if params:
        try:
            parsed = json.loads(params)
        except json.JSONDecodeError as e:
            raise InstructionParseError(
                f'Say "{output_type}" has invalid arguments (not a valid JSON string): {params}'
            ) from e
        if not isinstance(parsed, dict):
            raise InstructionParseError(f'Say "{output_type}" arguments must be a JSON object: {params}')
    return SayInstruction(output_type=output_type, args=parsed)


def parse_action_instruction(fn: str) -> ActionInstruction:
    """解析 "[<serverId>:]<actionName>[ <jsonArgs>]"。

    Raises:
        InstructionParseError: 动作名为空，或参数不是合法 JSON 对象
    """
    chunks = fn.strip().split(" ")
    server_and_action = chunks[0]
    args_str = " ".join(chunks[1:]).strip()

    if ":" in server_and_action:
        server_id, action_name = server_and_action.split(":", 1)
    else:
        server_id, action_name = None, server_and_action

    if not action_name:
        raise InstructionParseError(f"Invalid action instruction: {fn!r}")

    args: dict[str, Any] = {}
    if args_str:
        try:
            args = json.loads(args_str)
        except json.JSONDecodeError as e:
            raise InstructionParseError(
                f'Action "{action_name}" has invalid arguments (not a valid JSON string): {args_str}'
            ) from e
        if not isinstance(args, dict):
            raise InstructionParseError(f'Action "{action_name}" arguments must be a JSON object: {args_str}')

    return ActionInstruction(action_name=action_name, args=args, server_id=server_id or None)


def rewrite_variables(expression: str) -> str:
    """把 `$name` 改写为 workflow 变量读取。"""
    return VARIABLE_PATTERN.sub(
        lambda m: f"event.state.workflow.variables.{m.group(0)[1:]}",
        expression,
    )


def compile_instruction(instruction: Instruction) -> ParsedInstruction:
    """把原始指令解析为带类型的指令。

    Raises:
        InstructionParseError: 指令文本非法
    """
    if instruction.type == InstructionType.TRANSITION:
        if not instruction.node:
            raise InstructionParseError(f"Transition {instruction.fn!r} has no target node")
        return TransitionInstruction(
            source=instruction.fn,
            expression=rewrite_variables(instruction.fn),
            target_node=instruction.node,
        )
    if is_say_instruction(instruction.fn):
        return parse_say_instruction(instruction.fn, instruction.args)
    parsed = parse_action_instruction(instruction.fn)
    if instruction.args:
        # fn 中内联的参数优先
        parsed = replace(parsed, args={**instruction.args, **parsed.args})
    return parsed
