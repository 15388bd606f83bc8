from conftest import make_block, make_connection, make_rule

from flowform.workflow.conditions import Connection
from flowform.workflow.engine import (
    FormNavigator,
    NoTargetResolved,
    connection_for,
    resolve,
    resolve_for_block,
    resolve_next_block,
    resolve_with_order_fallback,
)

YES_RULE = {"field": "q1", "operator": "equals", "value": "yes"}


def test_default_target_without_rules():
    conn = make_connection("A", default="B")
    assert resolve_next_block(conn, {}) == "B"
    assert resolve_next_block(conn, {"A": "anything", "q1": "yes"}) == "B"


def test_matching_rule_wins():
    conn = make_connection("q1", default="D", rules=[make_rule("C", [YES_RULE])])
    assert resolve_next_block(conn, {"q1": "yes"}) == "C"


def test_non_matching_rule_falls_to_default():
    conn = make_connection("q1", default="D", rules=[make_rule("C", [YES_RULE])])
    assert resolve_next_block(conn, {"q1": "no"}) == "D"


def test_first_matching_rule_wins():
    r1 = make_rule("R1-target", [YES_RULE], rule_id="r1")
    r2 = make_rule("R2-target", [{"field": "q1", "operator": "contains", "value": "y"}], rule_id="r2")
    conn = make_connection("q1", default="D", rules=[r1, r2])
    res = resolve(conn, {"q1": "yes"})
    assert res.target_block_id == "R1-target"
    assert res.rule_id == "r1"
    assert res.resolved_by == "rule"


def test_no_default_and_no_match_returns_no_target_resolved():
    conn = make_connection("q1", rules=[make_rule("C", [YES_RULE])])
    result = resolve_next_block(conn, {"q1": "no"})
    assert isinstance(result, NoTargetResolved)
    assert not result
    assert result.source_block_id == "q1"


def test_matched_rule_without_target_is_skipped():
    conn = make_connection(
        "q1",
        default="D",
        rules=[make_rule(None, [YES_RULE]), make_rule("C", [YES_RULE])],
    )
    assert resolve_next_block(conn, {"q1": "yes"}) == "C"


def test_empty_condition_group_rule_never_matches():
    conn = make_connection("q1", default="D", rules=[make_rule("C", [])])
    assert resolve_next_block(conn, {"q1": "yes"}) == "D"


def test_malformed_condition_reported_but_navigation_continues():
    diagnostics = []
    bad = make_rule("C", [{"field": "q1", "operator": "greater_than", "value": 3, "value_type": "number"}])
    conn = make_connection("q1", default="D", rules=[bad])
    assert resolve_next_block(conn, {"q1": "many"}, diagnostics=diagnostics) == "D"
    assert len(diagnostics) == 1


def test_connection_parses_camel_case_and_json_string_rules():
    conn = Connection.model_validate(
        {
            "id": "c1",
            "sourceId": "q1",
            "defaultTargetId": "D",
            "rules": '[{"id": "r1", "target_block_id": "C", "condition_group": '
            '{"logicalOperator": "AND", "conditions": [{"field": "q1", "operator": "equals", "value": "yes"}]}}]',
        }
    )
    assert conn.source_id == "q1"
    assert resolve_next_block(conn, {"q1": "yes"}) == "C"
    dumped = conn.model_dump(by_alias=True)
    assert dumped["sourceId"] == "q1"
    assert dumped["defaultTargetId"] == "D"


def test_connection_for_picks_lowest_order_index():
    a = make_connection("q1", default="x", order_index=2)
    b = make_connection("q1", default="y", order_index=1)
    assert connection_for("q1", [a, b]) is b
    assert connection_for("zz", [a, b]) is None
    missing = resolve_for_block("zz", [a, b], {})
    assert isinstance(missing, NoTargetResolved)
    assert missing.reason == "no_connection"


def test_order_fallback(linear_blocks):
    res = resolve_with_order_fallback("q1", linear_blocks, [], {})
    assert (res.target_block_id, res.resolved_by) == ("q2", "order")
    end = resolve_with_order_fallback("q4", linear_blocks, [], {})
    assert (end.target_block_id, end.resolved_by) == (None, "end")


def test_order_fallback_skips_target_that_was_deleted(linear_blocks):
    linear_blocks[3] = linear_blocks[3].model_copy(update={"is_deleted": True})
    conn = make_connection("q1", default="q4")
    res = resolve_with_order_fallback("q1", linear_blocks, [conn], {})
    assert (res.target_block_id, res.resolved_by) == ("q2", "order")


def test_navigator_follows_rules_and_back_stack(linear_blocks):
    skip = make_rule("q4", [{"field": "q1", "operator": "equals", "value": "skip"}])
    nav = FormNavigator(blocks=linear_blocks, connections=[make_connection("q1", default="q2", rules=[skip])])
    assert nav.current_block_id == "q1"
    assert nav.go_to_next("skip") == "q4"
    assert nav.path[-1].resolved_by == "rule"
    assert nav.go_to_next("done") is None
    assert nav.is_complete
    assert nav.go_to_previous() == "q4"
    assert nav.go_to_previous() == "q1"
    assert nav.go_to_next("keep going") == "q2"
    assert nav.path[-1].resolved_by == "default"

    nav.reset()
    assert nav.current_block_id == "q1"
    assert nav.answers == {}
