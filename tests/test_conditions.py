from __future__ import annotations

import pytest

from flashflow.service.conditions import evaluate_condition, iter_references, parse_condition, validate_condition
from flashflow.service.errors import UnsupportedConditionError
from flashflow.service.variables import resolve_value


CONTEXT = {
    "LLM": {"response": "Hi there, this is a REFUND request"},
    "Score": {"value": 0.9, "count": "3"},
    "Input": {"user_input": "yes", "tags": ["a", "b"]},
}


def _resolver(ref):
    return resolve_value(ref, CONTEXT)


@pytest.mark.parametrize(
    "condition,expected",
    [
        ("{{LLM.response}}.includes('REFUND')", True),
        ("{{LLM.response}}.includes('CANCEL')", False),
        ("LLM.response.startsWith('Hi')", True),
        ("{{LLM.response}}.endsWith(\"request\")", True),
        ("{{Score.value}} >= 0.8", True),
        ("{{Score.value}} < 0.5", False),
        ("{{Score.count}} > 2", True),
        ("{{Input.user_input}} === 'yes'", True),
        ("{{Input.user_input}} !== 'yes'", False),
        ("'yes' === {{Input.user_input}}", True),
        ("{{Input.user_input}} === 'yes' && {{Score.value}} > 2", False),
        ("{{Input.user_input}} === 'no' || {{Score.value}} > 0.5", True),
        ("{{Input.tags}}.includes('a')", True),
        ("{{Input.tags}}.includes('c')", False),
        ("true", True),
        ("false || true", True),
        ("", True),
    ],
)
def test_supported_conditions(condition, expected):
    assert evaluate_condition(condition, _resolver) is expected


def test_unresolved_reference_is_false_for_methods_and_ordering():
    assert evaluate_condition("{{Ghost.response}}.includes('x')", _resolver) is False
    assert evaluate_condition("{{Ghost.value}} > 1", _resolver) is False


@pytest.mark.parametrize(
    "condition",
    [
        "({{Score.value}} > 1)",
        "{{Input.user_input}} == 'yes'",
        "!{{Input.user_input}}",
        "foo()",
        "{{LLM.response}}.toUpperCase('x')",
        "{{LLM.response}}",
        "{{Score.value}} > 'high'",
        "{{Score.value}} >",
    ],
)
def test_unsupported_conditions_raise(condition):
    with pytest.raises(UnsupportedConditionError):
        evaluate_condition(condition, _resolver)


def test_validate_condition_reports_message():
    assert validate_condition("{{LLM.response}}.includes('a')") is None
    message = validate_condition("{{Input.user_input}} == 'yes'")
    assert message and "not supported" in message


def test_iter_references_lists_every_operand():
    expr = parse_condition("{{LLM.response}}.includes('a') && Score.value > {{Score.count}}")
    assert list(iter_references(expr)) == ["LLM.response", "Score.value", "Score.count"]
