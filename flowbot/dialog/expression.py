"""条件表达式求值基础设施。

流程作者编写的条件是短小的布尔表达式，语法接近 JS：

    event.nlu.intent.name === 'greeting' && !temp.alreadyGreeted

求值前先做一次规范化（=== -> ==, && -> and, true -> True ...），
再用 ast 白名单检查语法节点，最后在只含沙箱变量的命名空间里 eval。

属性读取不会落到 Python 的 getattr 上：`a.b` 在编译前被改写为
read_property(a, 'b')，只能读取沙箱数据中的键：
- 字典（JsObject）返回对应键，缺失的键返回 UNDEFINED
- 字符串与列表只有 length
- 在 undefined / null 上取属性抛 TypeError，视为条件不成立
- 其他异常原样抛出
"""

import ast
import re
from typing import Any

from loguru import logger

# 出现这些字符的表达式必须在隔离进程中求值
UNSAFE_PATTERN = re.compile(r"[()`]")

# 改写后的属性读取函数在命名空间中的名字；作者无法引用下划线开头的名称
PROPERTY_READER = "_read_property"

_JS_TOKEN = re.compile(
    r"""('(?:\\.|[^'\\])*'|"(?:\\.|[^"\\])*")"""
    r"""|(===|!==|&&|\|\||!(?!=)|\b(?:true|false|null|undefined)\b)"""
)
_JS_REPLACEMENTS = {
    "===": "==",
    "!==": "!=",
    "&&": " and ",
    "||": " or ",
    "!": " not ",
    "true": "True",
    "false": "False",
    "null": "None",
    "undefined": "None",
}

SAFE_BUILTINS: dict[str, Any] = {
    "abs": abs,
    "all": all,
    "any": any,
    "bool": bool,
    "dict": dict,
    "float": float,
    "int": int,
    "len": len,
    "list": list,
    "max": max,
    "min": min,
    "round": round,
    "set": set,
    "sorted": sorted,
    "str": str,
    "sum": sum,
    "tuple": tuple,
}

# 允许出现的语法节点；不在其中的（lambda、推导式、生成器、海象赋值、幂运算等）一律拒绝
_ALLOWED_NODES = (
    ast.Expression,
    ast.BoolOp,
    ast.And,
    ast.Or,
    ast.UnaryOp,
    ast.Not,
    ast.USub,
    ast.UAdd,
    ast.BinOp,
    ast.Add,
    ast.Sub,
    ast.Mult,
    ast.Div,
    ast.Mod,
    ast.FloorDiv,
    ast.Compare,
    ast.Eq,
    ast.NotEq,
    ast.Lt,
    ast.LtE,
    ast.Gt,
    ast.GtE,
    ast.In,
    ast.NotIn,
    ast.Is,
    ast.IsNot,
    ast.IfExp,
    ast.Name,
    ast.Load,
    ast.Constant,
    ast.Attribute,
    ast.Subscript,
    ast.Slice,
    ast.List,
    ast.Tuple,
    ast.Dict,
    ast.Call,
)


class ExpressionError(Exception):
    """表达式求值失败的基类。"""


class UnsafeExpressionError(ExpressionError):
    """表达式使用了不允许的语法、名称或调用。"""


class _Undefined:
    """JS 的 undefined：假值，等于 None，取下标时抛 TypeError。"""

    __slots__ = ()

    def __bool__(self) -> bool:
        return False

    def __eq__(self, other: Any) -> bool:
        return other is None or isinstance(other, _Undefined)

    def __ne__(self, other: Any) -> bool:
        return not self.__eq__(other)

    def __hash__(self) -> int:
        return hash(None)

    def __getitem__(self, key: Any) -> Any:
        raise TypeError(f"Cannot read properties of undefined (reading '{key}')")

    def __repr__(self) -> str:
        return "undefined"


UNDEFINED = _Undefined()


class JsObject:
    """字典的只读视图，缺失的键读作 UNDEFINED。"""

    __slots__ = ("_data",)

    def __init__(self, data: dict[str, Any]):
        object.__setattr__(self, "_data", data)

    def __getitem__(self, key: Any) -> Any:
        return wrap(self._data.get(key, UNDEFINED))

    def __contains__(self, key: Any) -> bool:
        return key in self._data

    def __iter__(self):
        return iter(self._data)

    def __eq__(self, other: Any) -> bool:
        if isinstance(other, JsObject):
            return self._data == other._data
        return self._data == other

    __hash__ = None

    def __repr__(self) -> str:
        return f"JsObject({self._data!r})"


class JsArray(list):
    """列表视图：越界返回 UNDEFINED。"""

    def __getitem__(self, index: Any) -> Any:
        if isinstance(index, slice):
            return JsArray(list.__getitem__(self, index))
        try:
            return wrap(list.__getitem__(self, index))
        except IndexError:
            return UNDEFINED

    def __iter__(self):
        return (wrap(value) for value in list.__iter__(self))


def wrap(value: Any) -> Any:
    """把字典/列表包装成表达式友好的视图。"""
    if isinstance(value, dict):
        return JsObject(value)
    if isinstance(value, (list, tuple)) and not isinstance(value, JsArray):
        return JsArray(value)
    return value


def read_property(value: Any, name: str) -> Any:
    """按 JS 语义读取 value.name。

    Raises:
        TypeError: 在 undefined 或 null 上读取属性
    """
    if value is None or value is UNDEFINED:
        kind = "null" if value is None else "undefined"
        raise TypeError(f"Cannot read properties of {kind} (reading '{name}')")
    if isinstance(value, JsObject):
        return value[name]
    if isinstance(value, dict):
        return wrap(value.get(name, UNDEFINED))
    if name == "length" and isinstance(value, (str, list, tuple)):
        return len(value)
    return UNDEFINED


def normalize(expression: str) -> str:
    """把 JS 风格的运算符和字面量改写为 Python 语法（字符串字面量保持不变）。"""

    def replace(match: re.Match) -> str:
        if match.group(1):
            return match.group(1)
        return _JS_REPLACEMENTS[match.group(2)]

    return _JS_TOKEN.sub(replace, expression).strip()


def is_unsafe(expression: str) -> bool:
    """保守判断：含括号或反引号即视为不安全。"""
    return UNSAFE_PATTERN.search(expression) is not None


def _is_dunder(name: str) -> bool:
    return name.startswith("__") and name.endswith("__")


def _check_node(node: ast.AST) -> None:
    if not isinstance(node, _ALLOWED_NODES):
        raise UnsafeExpressionError(f"'{type(node).__name__}' is not allowed in expressions")
    if isinstance(node, ast.Name) and node.id.startswith("_"):
        raise UnsafeExpressionError(f"Access to '{node.id}' is not allowed in expressions")
    if isinstance(node, ast.Attribute) and _is_dunder(node.attr):
        raise UnsafeExpressionError(f"Access to '{node.attr}' is not allowed in expressions")
    if isinstance(node, ast.Constant) and isinstance(node.value, str) and _is_dunder(node.value):
        raise UnsafeExpressionError(f"Access to '{node.value}' is not allowed in expressions")
    if isinstance(node, ast.Call):
        func = node.func
        if not isinstance(func, ast.Name) or func.id not in SAFE_BUILTINS or node.keywords:
            raise UnsafeExpressionError("Only plain calls to built-in helpers are allowed in expressions")


class _PropertyReads(ast.NodeTransformer):
    """把 a.b 改写为 _read_property(a, 'b')。"""

    def visit_Attribute(self, node: ast.Attribute) -> ast.AST:
        self.generic_visit(node)
        call = ast.Call(
            func=ast.Name(id=PROPERTY_READER, ctx=ast.Load()),
            args=[node.value, ast.Constant(value=node.attr)],
            keywords=[],
        )
        return ast.copy_location(call, node)


def check_expression(code: str) -> ast.Expression:
    """解析表达式并按白名单检查每个语法节点。

    Raises:
        SyntaxError: 表达式语法错误
        UnsafeExpressionError: 使用了白名单之外的语法、下划线名称或调用
    """
    tree = ast.parse(code, mode="eval")
    for node in ast.walk(tree):
        _check_node(node)
    return tree


def compile_expression(expression: str):
    """规范化、检查并编译表达式。"""
    tree = _PropertyReads().visit(check_expression(normalize(expression)))
    return compile(ast.fix_missing_locations(tree), "<expression>", "eval")


def evaluate_expression(
    expression: str,
    sandbox: dict[str, Any],
    builtins: dict[str, Any] | None = None,
) -> Any:
    """在当前进程内求值表达式。

    Args:
        expression: 作者编写（已改写变量）的表达式
        sandbox: 可见变量（event、temp、session 等）
        builtins: 可用内置函数，默认为空

    Returns:
        表达式结果；TypeError 时返回 False
    """
    code = compile_expression(expression)
    scope = {name: wrap(value) for name, value in sandbox.items()}
    namespace = {"__builtins__": builtins or {}, **scope, PROPERTY_READER: read_property}
    try:
        return eval(code, namespace)  # noqa: S307
    except TypeError as e:
        logger.debug(f"Expression {expression!r} treated as false: {e}")
        return False
