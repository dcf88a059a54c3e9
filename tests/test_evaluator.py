"""Tests for evaluator tiers and the sandbox policy."""

import asyncio

import pytest

from flowbot.dialog.evaluator import (
    FastEvaluator,
    IsolatedEvaluator,
    SandboxEvaluationError,
    SandboxPolicy,
    SandboxTimeoutError,
)
from flowbot.dialog.expression import UnsafeExpressionError


class HangingProcess:
    """Subprocess stand-in that never answers."""

    def __init__(self):
        self.killed = False
        self.waited = False
        self.returncode = None

    async def communicate(self, data=None):
        await asyncio.sleep(3600)

    def kill(self):
        self.killed = True

    async def wait(self):
        self.waited = True
        self.returncode = -9
        return self.returncode


class TestSandboxPolicy:

    def test_calls_always_isolated(self):
        fast, isolated = FastEvaluator(), IsolatedEvaluator()

        for disabled in (False, True):
            policy = SandboxPolicy(disable_sandbox=disabled)
            assert policy.select("len(temp.items) > 0", fast, isolated) is isolated
            assert policy.select("a`b`", fast, isolated) is isolated

    def test_plain_expressions_are_fast(self):
        fast, isolated = FastEvaluator(), IsolatedEvaluator()
        policy = SandboxPolicy(disable_sandbox=True)

        assert policy.select("temp.count > 1", fast, isolated) is fast


class TestFastEvaluator:

    @pytest.mark.asyncio
    async def test_evaluates_in_process(self):
        result = await FastEvaluator().evaluate("temp.count >= 2", {"temp": {"count": 2}})
        assert result is True


class TestIsolatedEvaluator:

    @pytest.mark.asyncio
    async def test_evaluates_calls_in_subprocess(self):
        evaluator = IsolatedEvaluator(timeout_ms=10_000)

        result = await evaluator.evaluate("len(temp.items) == 2", {"temp": {"items": [1, 2]}})

        assert result is True

    @pytest.mark.asyncio
    async def test_type_error_is_false(self):
        evaluator = IsolatedEvaluator(timeout_ms=10_000)

        result = await evaluator.evaluate("str(temp.missing.deep)", {"temp": {}})

        assert result is False

    @pytest.mark.asyncio
    async def test_other_errors_propagate(self):
        evaluator = IsolatedEvaluator(timeout_ms=10_000)

        with pytest.raises(SandboxEvaluationError) as exc_info:
            await evaluator.evaluate("unknown_name == 1", {})

        assert exc_info.value.error_type == "NameError"

    @pytest.mark.asyncio
    async def test_dunder_access_rejected(self):
        evaluator = IsolatedEvaluator(timeout_ms=10_000)

        with pytest.raises(UnsafeExpressionError):
            await evaluator.evaluate("str(temp).__class__", {"temp": {}})

    @pytest.mark.asyncio
    async def test_generator_frame_escape_rejected(self, tmp_path):
        evaluator = IsolatedEvaluator(timeout_ms=10_000)
        marker = tmp_path / "escaped"
        expression = (
            "[*(g := (g.gi_frame.f_back.f_back.f_globals['__builtins__']['__import__']('os')"
            f".system('touch {marker}') for _ in [1]))]"
        )

        with pytest.raises(UnsafeExpressionError):
            await evaluator.evaluate(expression, {})

        assert not marker.exists()

    @pytest.mark.asyncio
    async def test_timeout_kills_worker(self, monkeypatch):
        process = HangingProcess()

        async def fake_exec(*args, **kwargs):
            return process

        monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_exec)
        evaluator = IsolatedEvaluator(timeout_ms=50)

        with pytest.raises(SandboxTimeoutError):
            await evaluator.evaluate("len(x) > 0", {"x": []})

        assert process.killed
        assert process.waited
