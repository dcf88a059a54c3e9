"""条件表达式求值器。

两种执行层级，统一在 Evaluator 接口之后：

- FastEvaluator: 进程内直接 eval，不提供任何内置函数。
  只用于不含括号/反引号的表达式（无法发起调用）。
- IsolatedEvaluator: 在独立子进程中求值，带硬超时。
  超时后杀死子进程并抛出 SandboxTimeoutError，不会遗留卡死的求值进程。

选择哪一层由 SandboxPolicy 决定；不安全字符的判断是保守的正则匹配，
误把安全表达式送进隔离层可以接受，反之不行。
"""

import asyncio
import json
import re
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from flowbot.dialog.expression import (
    UNSAFE_PATTERN,
    ExpressionError,
    UnsafeExpressionError,
    evaluate_expression,
)

WORKER_MODULE = "flowbot.dialog.sandbox_worker"


class SandboxTimeoutError(ExpressionError):
    """隔离求值超过了时限。"""


class SandboxEvaluationError(ExpressionError):
    """隔离求值过程中表达式抛出了异常。

    Attributes:
        error_type: 子进程中的异常类型名
    """

    def __init__(self, error_type: str, message: str):
        super().__init__(f"{error_type}: {message}")
        self.error_type = error_type


class Evaluator(ABC):
    """表达式求值器接口。"""

    tier: str = ""

    @abstractmethod
    async def evaluate(self, expression: str, sandbox: dict[str, Any]) -> Any:
        """求值表达式。

        Args:
            expression: 已改写变量引用的表达式
            sandbox: 可见变量，值必须可 JSON 序列化

        Returns:
            表达式结果（TypeError 类错误已转换为 False）
        """
        pass


class FastEvaluator(Evaluator):
    """进程内求值。"""

    tier = "fast"

    async def evaluate(self, expression: str, sandbox: dict[str, Any]) -> Any:
        return evaluate_expression(expression, sandbox)


class IsolatedEvaluator(Evaluator):
    """子进程隔离求值。

    请求通过 stdin 以 JSON 发送：{"expression": ..., "sandbox": ...}；
    子进程在 stdout 返回 {"result": ...} 或 {"error": {"type": ..., "message": ...}}。
    """

    tier = "isolated"

    def __init__(self, timeout_ms: int = 5000, python: str | None = None):
        """
        Args:
            timeout_ms: 硬超时（毫秒）
            python: 子进程解释器路径，默认与当前进程相同
        """
        self.timeout_ms = timeout_ms
        self.python = python or sys.executable

    async def evaluate(self, expression: str, sandbox: dict[str, Any]) -> Any:
        request = json.dumps({"expression": expression, "sandbox": sandbox}, default=str)

        process = await asyncio.create_subprocess_exec(
            self.python,
            "-m",
            WORKER_MODULE,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(request.encode("utf-8")),
                timeout=self.timeout_ms / 1000,
            )
        except asyncio.TimeoutError:
            # 超时杀死子进程并回收
            process.kill()
            await process.wait()
            raise SandboxTimeoutError(
                f"Expression {expression!r} did not finish within {self.timeout_ms} ms"
            )

        if process.returncode != 0:
            message = stderr.decode("utf-8", errors="replace").strip()
            raise SandboxEvaluationError("WorkerError", message or f"exit code {process.returncode}")

        reply = json.loads(stdout.decode("utf-8"))
        error = reply.get("error")
        if error:
            if error["type"] == UnsafeExpressionError.__name__:
                raise UnsafeExpressionError(error["message"])
            raise SandboxEvaluationError(error["type"], error["message"])
        return reply.get("result")


@dataclass
class SandboxPolicy:
    """求值层级选择策略。

    含不安全字符（括号、反引号）的表达式总是进入隔离层；
    disable_sandbox 只对不含这些字符的表达式生效，它们本就走快速层。

    Attributes:
        disable_sandbox: 兼容旧配置的沙箱关闭开关
        unsafe_pattern: 不安全字符正则
    """

    disable_sandbox: bool = False
    unsafe_pattern: re.Pattern = field(default=UNSAFE_PATTERN)

    def __post_init__(self) -> None:
        if self.disable_sandbox:
            logger.warning("Transition sandbox disabled: expressions with calls still run isolated")

    def requires_isolation(self, expression: str) -> bool:
        return self.unsafe_pattern.search(expression) is not None

    def select(self, expression: str, fast: Evaluator, isolated: Evaluator) -> Evaluator:
        """为表达式挑选求值器。"""
        if self.requires_isolation(expression):
            return isolated
        return fast
