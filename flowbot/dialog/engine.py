"""对话引擎。

驱动流程图状态机：对一个入站事件，
1. 新会话进入主流程的起始节点；否则在当前节点上执行 onReceive
2. 依次评估当前节点的出边，第一个成立的条件决定跳转
3. 进入新节点：写入 context、追加 __stacktrace、执行 onEnter
4. 节点等待输入时结束本轮，否则继续评估出边

跳转目标的写法：
- "node"                  当前流程内的节点
- "other.flow.json"       其他流程的起始节点
- "other.flow.json#node"  其他流程的指定节点
- "END"                   结束对话（清空 context 和 temp）

指令返回的 Transition（例如动作失败后的错误流程）与出边跳转同样处理。
"""

from typing import TYPE_CHECKING

from loguru import logger

from flowbot.bus.events import Event
from flowbot.dialog.flow import FlowDefinition, FlowLoader, FlowNode
from flowbot.dialog.strategy import ActionStrategy, TransitionStrategy

if TYPE_CHECKING:
    from flowbot.config.schema import DialogConfig

END = "END"
FLOW_SUFFIX = ".flow.json"


class InfiniteLoopError(Exception):
    """单轮跳转次数超过上限。"""


class DialogEngine:
    """流程执行引擎。

    Attributes:
        flows: 流程加载器
        action_strategy: onEnter / onReceive 指令策略
        transition_strategy: 出边条件策略
        main_flow: 新会话入口流程
        max_transitions: 单轮最大跳转次数
    """

    def __init__(
        self,
        flows: FlowLoader,
        action_strategy: ActionStrategy,
        transition_strategy: TransitionStrategy,
        main_flow: str = "main.flow.json",
        max_transitions: int = 50,
    ):
        self.flows = flows
        self.action_strategy = action_strategy
        self.transition_strategy = transition_strategy
        self.main_flow = main_flow
        self.max_transitions = max_transitions

    @classmethod
    def from_config(
        cls,
        config: "DialogConfig",
        flows: FlowLoader,
        action_strategy: ActionStrategy,
        transition_strategy: TransitionStrategy,
    ) -> "DialogEngine":
        return cls(
            flows=flows,
            action_strategy=action_strategy,
            transition_strategy=transition_strategy,
            main_flow=config.main_flow,
            max_transitions=config.max_transitions_per_turn,
        )

    async def process_event(self, event: Event) -> Event:
        """对一个入站事件执行一轮对话。

        Returns:
            同一个事件（state 已更新）

        Raises:
            FlowNotFoundError / NodeNotFoundError: 跳转目标不存在
            InfiniteLoopError: 跳转次数超限
            InstructionParseError / ExpressionError: 编写错误，本轮终止
        """
        turn = _Turn(self.max_transitions)
        context = event.state.context
        flow_name = context.get("currentFlow")
        node_name = context.get("currentNode")

        if not flow_name or not node_name:
            logger.debug(f"[{event.bot_id}] [{event.target}] New dialog session, entering {self.main_flow}")
            event.state.stacktrace = []
            await self._enter(event, turn, self.flows.get_flow(self.main_flow), None)
            return event

        flow = self.flows.get_flow(flow_name)
        node = flow.get_node(node_name)
        event.state.stacktrace = [{"flow": flow.name, "node": node.name}]

        for instruction in node.on_receive or []:
            result = await self.action_strategy.process_instruction(event.bot_id, instruction, event)
            if result.is_transition:
                await self._transition(event, turn, flow, result.transition_to)
                return event

        await self._evaluate_transitions(event, turn, flow, node)
        return event

    async def jump_to(self, event: Event, target: str) -> Event:
        """把会话直接移动到目标节点（由外部触发，如管理端）。"""
        flow_name = event.state.context.get("currentFlow") or self.main_flow
        await self._transition(event, _Turn(self.max_transitions), self.flows.get_flow(flow_name), target)
        return event

    async def _evaluate_transitions(self, event: Event, turn: "_Turn", flow: FlowDefinition, node: FlowNode) -> None:
        for edge in node.next:
            result = await self.transition_strategy.process_instruction(event.bot_id, edge, event)
            if result.is_transition:
                await self._transition(event, turn, flow, result.transition_to)
                return

        if not node.waits_for_input:
            # 没有可走的出边且不等待输入：对话结束
            self._end(event)

    async def _transition(self, event: Event, turn: "_Turn", flow: FlowDefinition, target: str) -> None:
        turn.count(event, target)

        if target == END:
            self._end(event)
            return

        flow_part, _, node_part = target.partition("#")
        if flow_part.endswith(FLOW_SUFFIX):
            target_flow = self.flows.get_flow(flow_part)
            await self._enter(event, turn, target_flow, node_part or None)
        else:
            await self._enter(event, turn, flow, target)

    async def _enter(self, event: Event, turn: "_Turn", flow: FlowDefinition, node_name: str | None) -> None:
        node = flow.get_node(node_name) if node_name else flow.start
        context = event.state.context
        context["currentFlow"] = flow.name
        context["currentNode"] = node.name
        event.state.stacktrace.append({"flow": flow.name, "node": node.name})
        logger.debug(f"[{event.bot_id}] [{event.target}] Entered {flow.name}#{node.name}")

        for instruction in node.on_enter:
            result = await self.action_strategy.process_instruction(event.bot_id, instruction, event)
            if result.is_transition:
                await self._transition(event, turn, flow, result.transition_to)
                return

        if node.waits_for_input:
            return
        await self._evaluate_transitions(event, turn, flow, node)

    def _end(self, event: Event) -> None:
        logger.debug(f"[{event.bot_id}] [{event.target}] Dialog ended")
        event.state.context.clear()
        event.state.temp.clear()


class _Turn:
    """单轮跳转计数。"""

    def __init__(self, limit: int):
        self.limit = limit
        self.transitions = 0

    def count(self, event: Event, target: str) -> None:
        self.transitions += 1
        if self.transitions > self.limit:
            raise InfiniteLoopError(
                f"[{event.bot_id}] [{event.target}] More than {self.limit} transitions in one turn (last: {target})"
            )
