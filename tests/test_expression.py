"""Tests for expression normalization and in-process evaluation."""

import pytest

from flowbot.dialog.expression import (
    SAFE_BUILTINS,
    UNDEFINED,
    UnsafeExpressionError,
    evaluate_expression,
    is_unsafe,
    normalize,
)


class TestNormalize:

    def test_js_operators(self):
        assert normalize("a === 1 && b !== 2 || !c") == "a == 1  and  b != 2  or   not c"

    def test_literals(self):
        assert normalize("x == true || y == null") == "x == True  or  y == None"

    def test_string_literals_untouched(self):
        assert normalize("name === 'a && !b'") == "name == 'a && !b'"

    def test_not_equal_is_kept(self):
        assert normalize("a != b") == "a != b"


class TestUnsafePattern:

    @pytest.mark.parametrize("expression", ["len(x)", "a`b`", "(a)", "x == ')'"])
    def test_call_and_backtick_syntax_is_unsafe(self, expression):
        assert is_unsafe(expression)

    def test_plain_comparison_is_safe(self):
        assert not is_unsafe("event.nlu.intent.name === 'greeting'")


class TestEvaluate:

    def test_nested_attribute_access(self):
        sandbox = {"event": {"nlu": {"intent": {"name": "greeting"}}}, "temp": {}}

        assert evaluate_expression(
            "event.nlu.intent.name === 'greeting' && !temp.alreadyGreeted", sandbox
        ) is True

    def test_item_access(self):
        sandbox = {"temp": {"main/entry": 3}}
        assert evaluate_expression("temp['main/entry'] > 2", sandbox) is True

    def test_missing_key_is_undefined(self):
        assert evaluate_expression("temp.missing == undefined", {"temp": {}}) is True

    def test_type_error_is_false(self):
        assert evaluate_expression("temp.missing.deep == 1", {"temp": {}}) is False

    def test_array_length(self):
        assert evaluate_expression("temp.items.length == 2", {"temp": {"items": [1, 2]}}) is True

    def test_out_of_range_index_is_undefined(self):
        assert evaluate_expression("temp.items[5] == null", {"temp": {"items": []}}) is True

    def test_builtins_are_not_available_by_default(self):
        with pytest.raises(NameError):
            evaluate_expression("open", {})

    def test_dunder_access_rejected(self):
        with pytest.raises(UnsafeExpressionError):
            evaluate_expression("temp.__class__", {"temp": {}})

    def test_syntax_error_propagates(self):
        with pytest.raises(SyntaxError):
            evaluate_expression("a ==", {"a": 1})

    def test_undefined_is_falsy(self):
        assert not UNDEFINED
        assert UNDEFINED == None  # noqa: E711

    def test_string_length(self):
        sandbox = {"event": {"payload": {"text": "hi"}}}
        assert evaluate_expression("event.payload.text.length > 0", sandbox) is True

    def test_unknown_property_of_string_is_undefined(self):
        assert evaluate_expression("temp.name.upper == undefined", {"temp": {"name": "ada"}}) is True

    def test_null_property_read_is_false(self):
        assert evaluate_expression("temp.name.length > 0", {"temp": {"name": None}}) is False

    def test_other_errors_propagate(self):
        with pytest.raises(ZeroDivisionError):
            evaluate_expression("temp.count / 0 > 1", {"temp": {"count": 1}})


class TestSyntaxAllowlist:

    FRAME_ESCAPE = (
        "[*(g := (g.gi_frame.f_back.f_back.f_globals['__builtins__']['__import__']('os')"
        ".system('touch {marker}') for _ in [1]))]"
    )

    def test_frame_walk_is_rejected(self, tmp_path):
        marker = tmp_path / "escaped"

        with pytest.raises(UnsafeExpressionError):
            evaluate_expression(self.FRAME_ESCAPE.format(marker=marker), {}, SAFE_BUILTINS)

        assert not marker.exists()

    @pytest.mark.parametrize(
        "expression",
        [
            "(lambda: 1)",
            "[x for x in temp.items]",
            "(x := 1)",
            "sorted(temp.items, key=len)",
            "'{0}'.format(temp)",
            "temp['__builtins__']",
            "_read_property(temp, 'a')",
            "open('/etc/passwd')",
            "2 ** 2",
        ],
    )
    def test_disallowed_syntax(self, expression):
        with pytest.raises(UnsafeExpressionError):
            evaluate_expression(expression, {"temp": {"items": []}}, SAFE_BUILTINS)

    def test_safe_builtin_calls(self):
        assert evaluate_expression("len(temp.items) == 2", {"temp": {"items": [1, 2]}}, SAFE_BUILTINS) is True
