"""流程定义加载。

流程是 JSON 文档（文件名形如 main.flow.json）：

    {
        "startNode": "entry",
        "nodes": [
            {
                "name": "entry",
                "onEnter": ["say #text {\"text\": \"Hello\"}"],
                "onReceive": [{"fn": "saveAnswer", "args": {}}],
                "next": [{"condition": "$answer == 'yes'", "node": "done.flow.json"}]
            }
        ]
    }

onReceive 为 null（或缺省）表示节点不等待用户输入，执行完 onEnter 立即评估出边。
节点上的指令在加载时一次性解析，解析失败的流程整个加载失败。
"""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from loguru import logger

from flowbot.dialog.instructions import (
    Instruction,
    InstructionParseError,
    InstructionType,
    ParsedInstruction,
    TransitionInstruction,
    compile_instruction,
)


class FlowNotFoundError(Exception):
    """流程不存在。"""


class NodeNotFoundError(Exception):
    """节点不存在于流程中。"""

    def __init__(self, flow: str, node: str):
        super().__init__(f"Node '{node}' not found in flow '{flow}'")
        self.flow = flow
        self.node = node


@dataclass
class FlowNode:
    """流程节点。

    Attributes:
        name: 节点名称
        on_enter: 进入节点时执行的指令
        on_receive: 收到用户消息时执行的指令；None 表示不等待
        next: 按顺序评估的出边
    """

    name: str
    on_enter: list[ParsedInstruction] = field(default_factory=list)
    on_receive: list[ParsedInstruction] | None = None
    next: list[TransitionInstruction] = field(default_factory=list)

    @property
    def waits_for_input(self) -> bool:
        return self.on_receive is not None


@dataclass
class FlowDefinition:
    """已解析的流程。"""

    name: str
    start_node: str
    nodes: dict[str, FlowNode] = field(default_factory=dict)

    def get_node(self, name: str) -> FlowNode:
        node = self.nodes.get(name)
        if node is None:
            raise NodeNotFoundError(self.name, name)
        return node

    @property
    def start(self) -> FlowNode:
        return self.get_node(self.start_node)


def _raw_instruction(kind: InstructionType, item: Any) -> Instruction:
    if isinstance(item, str):
        return Instruction(type=kind, fn=item)
    return Instruction(type=kind, fn=item["fn"], args=item.get("args"))


def parse_flow(name: str, data: dict[str, Any]) -> FlowDefinition:
    """把流程 JSON 解析为 FlowDefinition。

    Raises:
        InstructionParseError: 节点指令或流程结构非法
    """
    nodes: dict[str, FlowNode] = {}
    for raw in data.get("nodes", []):
        node_name = raw.get("name")
        if not node_name:
            raise InstructionParseError(f"Flow '{name}' has a node without a name")

        try:
            on_enter = [
                compile_instruction(_raw_instruction(InstructionType.ON_ENTER, item))
                for item in raw.get("onEnter") or []
            ]
            on_receive = None
            if raw.get("onReceive") is not None:
                on_receive = [
                    compile_instruction(_raw_instruction(InstructionType.ON_RECEIVE, item))
                    for item in raw["onReceive"]
                ]
            transitions = [
                compile_instruction(
                    Instruction(type=InstructionType.TRANSITION, fn=edge.get("condition", "true"), node=edge.get("node"))
                )
                for edge in raw.get("next") or []
            ]
        except InstructionParseError as e:
            raise InstructionParseError(f"Flow '{name}', node '{node_name}': {e}") from e

        nodes[node_name] = FlowNode(name=node_name, on_enter=on_enter, on_receive=on_receive, next=transitions)

    start_node = data.get("startNode") or next(iter(nodes), None)
    if start_node is None or start_node not in nodes:
        raise InstructionParseError(f"Flow '{name}' has no valid start node")
    return FlowDefinition(name=name, start_node=start_node, nodes=nodes)


class FlowLoader:
    """按名称加载并缓存流程。

    Attributes:
        directory: 流程文件目录（可为 None，仅使用 add_flow 注册的流程）
    """

    def __init__(self, directory: Path | None = None):
        self.directory = directory
        self._cache: dict[str, FlowDefinition] = {}

    def add_flow(self, name: str, data: dict[str, Any]) -> FlowDefinition:
        """直接注册一个流程（不经过文件）。"""
        flow = parse_flow(name, data)
        self._cache[name] = flow
        return flow

    def get_flow(self, name: str) -> FlowDefinition:
        """获取流程，首次访问时从目录加载。

        Raises:
            FlowNotFoundError: 缓存和目录中都没有该流程
        """
        flow = self._cache.get(name)
        if flow is not None:
            return flow

        if self.directory is None:
            raise FlowNotFoundError(f"Flow '{name}' not found")
        path = self.directory / name
        if not path.exists():
            raise FlowNotFoundError(f"Flow '{name}' not found in {self.directory}")

        with open(path, encoding="utf-8") as f:
            data = json.load(f)
        flow = parse_flow(name, data)
        self._cache[name] = flow
        logger.debug(f"Loaded flow {name} ({len(flow.nodes)} nodes)")
        return flow

    def has_flow(self, name: str) -> bool:
        try:
            self.get_flow(name)
        except FlowNotFoundError:
            return False
        return True

    def load_all(self) -> list[str]:
        """加载目录下所有 *.flow.json，返回流程名列表。"""
        if self.directory is None or not self.directory.exists():
            return list(self._cache)
        for path in sorted(self.directory.glob("*.flow.json")):
            self.get_flow(path.name)
        return list(self._cache)

    def invalidate(self, name: str | None = None) -> None:
        """清除缓存（流程文件修改后调用）。"""
        if name is None:
            self._cache.clear()
        else:
            self._cache.pop(name, None)
