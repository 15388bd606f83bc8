import pytest

from flowform.workflow.conditions import ConditionGroup, ConditionRule, ValueType, coerce_condition_value
from flowform.workflow.engine import MalformedCondition, evaluate_condition_group, evaluate_single_condition


def _cond(**kw):
    return ConditionRule.model_validate(kw)


@pytest.mark.parametrize("operator", ["equals", "not_equals", "contains", "greater_than", "less_than"])
def test_missing_answer_is_false_for_every_operator(operator):
    cond = _cond(field="q1", operator=operator, value="yes")
    assert evaluate_single_condition(cond, {}) is False
    assert evaluate_single_condition(cond, {"q1": None}) is False


def test_not_equals_with_answer_present():
    cond = _cond(field="q1", operator="not_equals", value="yes")
    assert evaluate_single_condition(cond, {"q1": "no"}) is True
    assert evaluate_single_condition(cond, {"q1": "yes"}) is False


def test_numeric_comparisons_coerce_string_answers():
    gt = _cond(field="age", operator="greater_than", value=18, valueType="number")
    assert evaluate_single_condition(gt, {"age": "21"}) is True
    assert evaluate_single_condition(gt, {"age": 18}) is False
    lt = _cond(field="age", operator="less_than", value="18", value_type="number")
    assert lt.value == 18
    assert evaluate_single_condition(lt, {"age": 3.5}) is True


def test_greater_than_on_text_answer_is_malformed_and_false():
    diagnostics = []
    cond = _cond(field="q1", operator="greater_than", value=5, value_type="number")
    assert evaluate_single_condition(cond, {"q1": "lots"}, diagnostics=diagnostics) is False
    assert len(diagnostics) == 1
    assert isinstance(diagnostics[0], MalformedCondition)
    assert diagnostics[0].condition_id == cond.id


def test_out_of_range_number_answer_is_malformed_not_raised():
    diagnostics = []
    gt = _cond(field="q1", operator="greater_than", value=5, value_type="number")
    eq = _cond(field="q1", operator="equals", value=5, value_type="number")
    assert evaluate_single_condition(gt, {"q1": 10**400}, diagnostics=diagnostics) is False
    assert evaluate_single_condition(eq, {"q1": 10**400}, diagnostics=diagnostics) is False
    assert len(diagnostics) == 2


def test_unknown_operator_is_false_and_reported():
    diagnostics = []
    cond = _cond(field="q1", operator="starts_with", value="a")
    assert evaluate_single_condition(cond, {"q1": "abc"}, diagnostics=diagnostics) is False
    assert diagnostics[0].reason == "unknown operator"


def test_contains_on_text_and_lists():
    cond = _cond(field="q1", operator="contains", value="blue")
    assert evaluate_single_condition(cond, {"q1": "dark blue"}) is True
    assert evaluate_single_condition(cond, {"q1": ["red", "blue"]}) is True
    assert evaluate_single_condition(cond, {"q1": ["red"]}) is False


def test_equals_on_multi_select_needs_exactly_that_value():
    cond = _cond(field="q1", operator="equals", value="red")
    assert evaluate_single_condition(cond, {"q1": ["red"]}) is True
    assert evaluate_single_condition(cond, {"q1": ["red", "blue"]}) is False


def test_boolean_and_date_values():
    yes = _cond(field="agree", operator="equals", value=True)
    assert yes.value_type is ValueType.BOOLEAN
    assert evaluate_single_condition(yes, {"agree": "yes"}) is True
    assert evaluate_single_condition(yes, {"agree": False}) is False

    after = _cond(field="when", operator="greater_than", value="2024-01-01", value_type="date")
    assert evaluate_single_condition(after, {"when": "2024-06-30T10:00:00Z"}) is True
    assert evaluate_single_condition(after, {"when": "2023-12-31"}) is False


def test_choice_field_reads_source_block_answer():
    cond = _cond(field="choice:green", operator="equals", value=True)
    assert evaluate_single_condition(cond, {"q3": ["red", "green"]}, source_block_id="q3") is True
    assert evaluate_single_condition(cond, {"q3": "blue"}, source_block_id="q3") is False
    legacy = _cond(field="choice:green_1", operator="equals", value=True)
    assert evaluate_single_condition(legacy, {"q3": "green"}, source_block_id="q3") is True


def test_source_relative_fields():
    length = _cond(field="length", operator="greater_than", value=3, value_type="number")
    assert evaluate_single_condition(length, {"q1": "hello"}, source_block_id="q1") is True
    domain = _cond(field="domain", operator="equals", value="example.com")
    assert evaluate_single_condition(domain, {"email": "Ann@Example.com"}, source_block_id="email") is True


def test_callable_answer_lookup_and_failing_lookup():
    cond = _cond(field="q1", operator="equals", value="x")
    assert evaluate_single_condition(cond, lambda bid: "x" if bid == "q1" else None) is True

    def broken(_):
        raise RuntimeError("boom")

    assert evaluate_single_condition(cond, broken) is False


def test_and_or_groups():
    true_cond = {"field": "q1", "operator": "equals", "value": "a"}
    false_cond = {"field": "q1", "operator": "equals", "value": "b"}
    answers = {"q1": "a"}
    and_group = ConditionGroup.model_validate({"logicalOperator": "AND", "conditions": [true_cond, false_cond]})
    or_group = ConditionGroup.model_validate({"logicalOperator": "or", "conditions": [true_cond, false_cond]})
    assert evaluate_condition_group(and_group, answers) is False
    assert evaluate_condition_group(or_group, answers) is True


def test_empty_group_never_matches():
    assert evaluate_condition_group(ConditionGroup(logical_operator="AND"), {"q1": "a"}) is False
    assert evaluate_condition_group(ConditionGroup(logical_operator="OR"), {"q1": "a"}) is False


def test_legacy_condition_without_value_type_is_tagged_from_value():
    assert _cond(field="q", value=3).value_type is ValueType.NUMBER
    assert _cond(field="q", value=False).value_type is ValueType.BOOLEAN
    assert _cond(field="q", value="3").value_type is ValueType.STRING
    assert _cond(field="q", value="x", value_type="weird").value_type is ValueType.STRING


def test_coerce_condition_value():
    assert coerce_condition_value("42", ValueType.NUMBER) == 42
    assert coerce_condition_value("1.5", ValueType.NUMBER) == 1.5
    assert coerce_condition_value("no", ValueType.BOOLEAN) is False
    assert coerce_condition_value("2024-03-05T12:00:00", ValueType.DATE) == "2024-03-05"
    with pytest.raises(ValueError):
        coerce_condition_value("abc", ValueType.NUMBER)
    with pytest.raises(ValueError):
        coerce_condition_value(True, ValueType.NUMBER)
