from __future__ import annotations

import pytest

from flowci.errors import ExpressionError
from flowci.expressions import (
    evaluate,
    evaluate_condition,
    interpolate,
    interpolate_value,
    uses_status_function,
    validate_template,
)

CTX = {
    "github": {"ref": "refs/heads/main", "event_name": "push"},
    "matrix": {"os": "linux", "py": "3.12"},
    "needs": {"build": {"result": "success", "outputs": {"version": "1.2.0"}}},
    "inputs": {"count": 3, "flag": False},
    "env": {"MODE": "Release"},
}


@pytest.mark.parametrize(
    "expr, expected",
    [
        ("github.ref == 'refs/heads/main'", True),
        ("github.ref != 'refs/heads/main'", False),
        ("env.MODE == 'release'", True),
        ("inputs.count > 2 && inputs.count <= 3", True),
        ("!inputs.flag", True),
        ("needs.build.outputs.version", "1.2.0"),
        ("matrix['os']", "linux"),
        ("github.missing", None),
        ("inputs.flag || 'fallback'", "fallback"),
        ("startsWith(github.ref, 'refs/heads/')", True),
        ("endsWith(github.ref, 'MAIN')", True),
        ("contains(github.ref, 'heads')", True),
        ("format('{0}-{1}', matrix.os, matrix.py)", "linux-3.12"),
        ("fromJSON('[1, 2]')", [1, 2]),
        ("(1 == 1.0)", True),
        ("'it''s'", "it's"),
        ("'3' == 3", True),
    ],
)
def test_evaluate(expr, expected) -> None:
    assert evaluate(expr, CTX) == expected


def test_wrapper_is_optional() -> None:
    assert evaluate("${{ matrix.os }}", CTX) == "linux"


def test_interpolate_renders_values() -> None:
    text = "build ${{ matrix.os }}/${{ inputs.count }} flag=${{ inputs.flag }} none=${{ github.nope }}"
    assert interpolate(text, CTX) == "build linux/3 flag=false none="


def test_interpolate_value_walks_nested_structures() -> None:
    value = {"a": ["${{ matrix.py }}", 1], "b": {"c": "v${{ needs.build.outputs.version }}"}}
    assert interpolate_value(value, CTX) == {"a": ["3.12", 1], "b": {"c": "v1.2.0"}}


def test_condition_without_status_function_requires_success() -> None:
    failed = {"success": False, "failure": True, "cancelled": False, "always": True}
    assert evaluate_condition("github.event_name == 'push'", CTX) is True
    assert evaluate_condition("github.event_name == 'push'", CTX, failed) is False
    assert evaluate_condition(None, CTX, failed) is False


def test_condition_with_status_functions() -> None:
    failed = {"success": False, "failure": True, "cancelled": False, "always": True}
    assert evaluate_condition("always()", CTX, failed) is True
    assert evaluate_condition("failure()", CTX, failed) is True
    assert evaluate_condition("failure() && matrix.os == 'mac'", CTX, failed) is False
    assert evaluate_condition("cancelled()", CTX, failed) is False


def test_uses_status_function() -> None:
    assert uses_status_function("always()")
    assert uses_status_function("${{ failure() || cancelled() }}")
    assert not uses_status_function("success() && github.ref == 'x'")
    assert not uses_status_function("github.ref == 'x'")


@pytest.mark.parametrize("expr", ["", "a ==", "nope()", "'open", "a ? b", "(a"])
def test_invalid_expressions(expr) -> None:
    with pytest.raises(ExpressionError):
        evaluate(expr, CTX)


def test_validate_template_catches_unterminated() -> None:
    validate_template("plain text")
    validate_template("${{ a }} and ${{ b.c }}")
    with pytest.raises(ExpressionError):
        validate_template("echo ${{ a")
