"""隔离求值子进程入口。

用法（由 IsolatedEvaluator 调用）：
    python -m flowbot.dialog.sandbox_worker < request.json

从 stdin 读取 {"expression", "sandbox"}，向 stdout 写出一行 JSON 结果。
表达式本身的异常写成 {"error": ...} 并以退出码 0 结束。
"""

import json
import sys
from typing import Any

from flowbot.dialog.expression import SAFE_BUILTINS, UNDEFINED, JsArray, JsObject, evaluate_expression


def _to_json(value: Any) -> Any:
    if value is UNDEFINED:
        return None
    if isinstance(value, JsObject):
        return value._data
    if isinstance(value, JsArray):
        return list(list.__iter__(value))
    try:
        json.dumps(value)
    except (TypeError, ValueError):
        return bool(value)
    return value


def main() -> int:
    request = json.loads(sys.stdin.read())
    try:
        result = evaluate_expression(request["expression"], request.get("sandbox") or {}, SAFE_BUILTINS)
        reply = {"result": _to_json(result)}
    except Exception as e:
        reply = {"error": {"type": type(e).__name__, "message": str(e)}}
    sys.stdout.write(json.dumps(reply, default=str))
    sys.stdout.flush()
    return 0


if __name__ == "__main__":
    sys.exit(main())
