"""指令执行策略。

对话引擎对节点上的每条指令选择一种策略执行，每次执行恰好产生一个 ProcessingResult：

- ActionStrategy: onEnter / onReceive 指令（say 输出或调用动作）
- TransitionStrategy: 出边上的条件表达式

两种策略都接受原始 Instruction（首次使用时解析）或加载流程时已解析好的指令。
"""

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

from loguru import logger

from flowbot.actions.registry import ActionRegistry
from flowbot.actions.servers import ActionServer, ActionServersService
from flowbot.bus.events import DialogTurnHistory, Event
from flowbot.content.renderer import ContentRenderer
from flowbot.content.templating import extract_event_common_args, render_template
from flowbot.dialog.evaluator import Evaluator, FastEvaluator, IsolatedEvaluator, SandboxPolicy
from flowbot.dialog.instructions import (
    ActionInstruction,
    Instruction,
    InstructionType,
    ParsedInstruction,
    SayInstruction,
    TransitionInstruction,
    compile_instruction,
)
from flowbot.dialog.result import ProcessingResult

if TYPE_CHECKING:
    from flowbot.runtime.pipeline import EventEngine

DEFAULT_ERROR_FLOW = "error.flow.json"
FLOW_SUFFIX = ".flow.json"


def _debug(event: Event, message: str) -> None:
    logger.debug(f"[{event.bot_id}] [{event.target}] {message}")


class InstructionStrategy(ABC):
    """指令执行策略接口。"""

    @abstractmethod
    async def process_instruction(
        self,
        bot_id: str,
        instruction: Instruction | ParsedInstruction,
        event: Event,
    ) -> ProcessingResult:
        """执行一条指令。

        Args:
            bot_id: 机器人标识
            instruction: 原始或已解析的指令
            event: 当前入站事件

        Returns:
            ProcessingResult
        """
        pass


class ActionStrategy(InstructionStrategy):
    """执行 say 输出和动作调用。

    Attributes:
        actions: 本地动作注册中心
        action_servers: 远程动作服务器解析
        renderer: 内容渲染器
        event_engine: 出站回复的发送方（EventEngine.reply_to_event）
        error_flow: 动作失败且未设置 temp.onErrorFlowTo 时的跳转目标
        last_messages_limit: session.lastMessages 最多保留的条数
    """

    def __init__(
        self,
        actions: ActionRegistry,
        renderer: ContentRenderer,
        event_engine: "EventEngine",
        action_servers: ActionServersService | None = None,
        error_flow: str = DEFAULT_ERROR_FLOW,
        last_messages_limit: int = 20,
    ):
        self.actions = actions
        self.renderer = renderer
        self.event_engine = event_engine
        self.action_servers = action_servers or actions.servers
        self.error_flow = error_flow
        self.last_messages_limit = last_messages_limit

    async def process_instruction(
        self,
        bot_id: str,
        instruction: Instruction | ParsedInstruction,
        event: Event,
    ) -> ProcessingResult:
        parsed = compile_instruction(instruction) if isinstance(instruction, Instruction) else instruction

        if isinstance(parsed, SayInstruction):
            return await self.invoke_output_processor(parsed, event)
        if isinstance(parsed, ActionInstruction):
            return await self.invoke_action(bot_id, parsed, event)
        raise TypeError(f"ActionStrategy cannot process {type(parsed).__name__}")

    async def invoke_output_processor(self, instruction: SayInstruction, event: Event) -> ProcessingResult:
        """渲染输出并回复；先记录轮次历史再发送。"""
        _debug(event, f"say {instruction.output_type}")

        history = DialogTurnHistory(
            event_id=event.id,
            incoming_preview=event.preview,
            reply_preview=instruction.output_type,
        )
        last_messages = event.state.session.setdefault("lastMessages", [])
        last_messages.append(history.to_dict())
        if len(last_messages) > self.last_messages_limit:
            del last_messages[: len(last_messages) - self.last_messages_limit]

        await self.invoke_send_message(instruction.args, instruction.output_type, event)
        return ProcessingResult.none()

    async def invoke_send_message(self, args: dict[str, Any], output_type: str, event: Event) -> None:
        context = extract_event_common_args(event, args)
        elements = await self.renderer.render_element(output_type, context, event.destination)
        await self.event_engine.reply_to_event(event.destination, elements, event.id)

    async def invoke_action(self, bot_id: str, instruction: ActionInstruction, event: Event) -> ProcessingResult:
        """调用动作；任何失败都转换为错误流程跳转。

        Raises:
            jinja2.TemplateError: 参数模板本身非法（编写错误，不做恢复）
        """
        action_name = instruction.action_name
        common_args = extract_event_common_args(event)
        args = {key: render_template(value, common_args) for key, value in instruction.args.items()}

        server: ActionServer | None = None
        if instruction.server_id:
            server = self.action_servers.get_server(instruction.server_id) if self.action_servers else None
            if server is None:
                logger.warning(
                    f"[{bot_id}] [{event.target}] Ignoring action {action_name} as action server "
                    f"\"{instruction.server_id}\" could not be found"
                )
                return ProcessingResult.none()

        _debug(event, f"action {action_name} {args}")
        try:
            await self.actions.run_action(action_name, event, args, action_server=server)
        except Exception as e:
            event.state.temp["__error"] = {
                "type": "action-execution",
                "message": str(e),
                "actionName": action_name,
                "actionArgs": args,
            }
            error_flow = self._error_flow(event)
            logger.warning(f"[{bot_id}] [{event.target}] Action {action_name} failed, redirecting to {error_flow}: {e}")
            return ProcessingResult.transition(error_flow)

        return ProcessingResult.none()

    def _error_flow(self, event: Event) -> str:
        on_error = event.state.temp.get("onErrorFlowTo")
        if isinstance(on_error, str) and on_error:
            return on_error
        return self.error_flow


class TransitionStrategy(InstructionStrategy):
    """评估出边条件。

    求值层级由 SandboxPolicy 选择：含括号或反引号的表达式总在隔离子进程中执行。
    """

    def __init__(
        self,
        policy: SandboxPolicy | None = None,
        fast: Evaluator | None = None,
        isolated: Evaluator | None = None,
    ):
        self.policy = policy or SandboxPolicy()
        self.fast = fast or FastEvaluator()
        self.isolated = isolated or IsolatedEvaluator()

    async def process_instruction(
        self,
        bot_id: str,
        instruction: Instruction | ParsedInstruction,
        event: Event,
    ) -> ProcessingResult:
        if isinstance(instruction, Instruction):
            if instruction.type != InstructionType.TRANSITION:
                raise TypeError(f"TransitionStrategy cannot process {instruction.type.value} instruction")
            instruction = compile_instruction(instruction)
        if not isinstance(instruction, TransitionInstruction):
            raise TypeError(f"TransitionStrategy cannot process {type(instruction).__name__}")

        if await self.evaluate_condition(instruction, event):
            _debug(event, f"transition ({instruction.source}) -> {instruction.target_node}")
            return ProcessingResult.transition(instruction.target_node)
        return ProcessingResult.none()

    async def evaluate_condition(self, instruction: TransitionInstruction, event: Event) -> bool:
        """判断条件是否成立。

        Raises:
            ExpressionError: 隔离求值超时、表达式非法等（不做恢复）
            NameError / SyntaxError: 快速层中表达式编写错误
        """
        condition = instruction.source.strip()
        if condition == "true":
            return True

        if condition.startswith("lastNode"):
            stack = event.state.stacktrace
            if len(stack) < 2:
                return False
            return condition == f"lastNode={stack[-2].get('node')}"

        expression = instruction.expression
        if "thisNode" in expression:
            expression = expression.replace("thisNode", this_node_reference(event))

        sandbox = extract_event_common_args(event)
        evaluator = self.policy.select(expression, self.fast, self.isolated)
        _debug(event, f"evaluating ({expression}) in {evaluator.tier} tier")
        return bool(await evaluator.evaluate(expression, sandbox))


def this_node_reference(event: Event) -> str:
    """当前节点在 temp 中的命名空间变量，如 (event.state.temp['main/entry'] || {})。

    未写入过的节点读作空对象。
    """
    context = event.state.context
    flow_name = str(context.get("currentFlow") or "")
    if flow_name.endswith(FLOW_SUFFIX):
        flow_name = flow_name[: -len(FLOW_SUFFIX)]
    key = f"{flow_name}/{context.get('currentNode') or ''}"
    return f"(event.state.temp[{key!r}] || {{}})"
