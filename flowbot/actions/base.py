"""动作基类模块。

动作是流程节点上由指令调用的服务端逻辑（例如查询订单、写入变量）。

核心属性（子类必须实现）：
- name: 动作名称（指令中的 actionName）
- run(): 执行动作逻辑，可直接修改 event.state

可选属性：
- description: 动作说明
- parameters: JSON Schema 格式的参数定义，用于 validate_params()
"""

import inspect
from abc import ABC, abstractmethod
from typing import Any, Callable

from flowbot.bus.events import Event


class Action(ABC):
    """动作抽象基类。

    使用示例：
        class SetLanguage(Action):
            name = "setLanguage"
            parameters = {
                "type": "object",
                "properties": {"lang": {"type": "string", "enum": ["en", "fr"]}},
                "required": ["lang"],
            }

            async def run(self, event, args):
                event.state.user["language"] = args["lang"]
    """

    # 类型映射：JSON Schema 类型 -> Python 类型
    _TYPE_MAP = {
        "string": str,
        "integer": int,
        "number": (int, float),
        "boolean": bool,
        "array": list,
        "object": dict,
    }

    name: str = ""
    description: str = ""
    parameters: dict[str, Any] = {}

    @abstractmethod
    async def run(self, event: Event, args: dict[str, Any]) -> Any:
        """执行动作。

        Args:
            event: 当前入站事件（可修改其 state）
            args: 已渲染的动作参数

        Returns:
            任意结果（对话引擎不使用）
        """
        pass

    def validate_params(self, params: dict[str, Any]) -> list[str]:
        """验证参数是否符合 JSON Schema。

        Returns:
            错误列表，空列表表示验证通过
        """
        schema = self.parameters or {}
        if not schema:
            return []
        if schema.get("type", "object") != "object":
            raise ValueError(f"Schema must be object type, got {schema.get('type')!r}")
        return self._validate(params, {**schema, "type": "object"}, "")

    def _validate(self, val: Any, schema: dict[str, Any], path: str) -> list[str]:
        t, label = schema.get("type"), path or "parameter"
        if t in self._TYPE_MAP and not isinstance(val, self._TYPE_MAP[t]):
            return [f"{label} should be {t}"]

        errors = []
        if "enum" in schema and val not in schema["enum"]:
            errors.append(f"{label} must be one of {schema['enum']}")
        if t in ("integer", "number"):
            if "minimum" in schema and val < schema["minimum"]:
                errors.append(f"{label} must be >= {schema['minimum']}")
            if "maximum" in schema and val > schema["maximum"]:
                errors.append(f"{label} must be <= {schema['maximum']}")
        if t == "object":
            props = schema.get("properties", {})
            for k in schema.get("required", []):
                if k not in val:
                    errors.append(f"missing required {path + '.' + k if path else k}")
            for k, v in val.items():
                if k in props:
                    errors.extend(self._validate(v, props[k], path + "." + k if path else k))
        if t == "array" and "items" in schema:
            for i, item in enumerate(val):
                errors.extend(self._validate(item, schema["items"], f"{path}[{i}]" if path else f"[{i}]"))
        return errors


class FunctionAction(Action):
    """把普通函数包装成动作（同步或异步均可）。"""

    def __init__(
        self,
        name: str,
        fn: Callable[[Event, dict[str, Any]], Any],
        description: str = "",
        parameters: dict[str, Any] | None = None,
    ):
        self.name = name
        self.fn = fn
        self.description = description or (fn.__doc__ or "").strip()
        self.parameters = parameters or {}

    async def run(self, event: Event, args: dict[str, Any]) -> Any:
        result = self.fn(event, args)
        if inspect.isawaitable(result):
            result = await result
        return result
