from conftest import make_block, make_connection, make_rule

from flowform.workflow.graph import auto_connect, detect_cycles


def _edges(connections):
    return sorted((c.source_id, c.default_target_id) for c in connections)


def test_auto_connect_wires_adjacent_blocks(linear_blocks):
    out = auto_connect(linear_blocks, [])
    assert _edges(out) == [("q1", "q2"), ("q2", "q3"), ("q3", "q4")]
    assert all(not c.is_explicit for c in out)


def test_auto_connect_rebuilds_defaults_after_reorder(linear_blocks):
    first = auto_connect(linear_blocks, [])
    reordered = [b.model_copy(update={"order_index": i}) for i, b in enumerate(reversed(linear_blocks))]
    out = auto_connect(reordered, first)
    assert _edges(out) == [("q2", "q1"), ("q3", "q2"), ("q4", "q3")]


def test_auto_connect_keeps_explicit_and_rule_connections(linear_blocks):
    explicit = make_connection("q1", default="q4", is_explicit=True)
    ruled = make_connection("q2", rules=[make_rule("q4", [{"field": "q2", "operator": "equals", "value": 1}])])
    out = auto_connect(linear_blocks, [explicit, ruled])
    assert explicit in out and ruled in out
    assert _edges(out) == [("q1", "q4"), ("q2", None), ("q3", "q4")]


def test_auto_connect_for_inserted_block_only_touches_neighbours(linear_blocks):
    existing = [make_connection("q1", default="q2")]
    out = auto_connect(linear_blocks, existing, target_block_id="q3")
    assert _edges(out) == [("q1", "q2"), ("q2", "q3"), ("q3", "q4")]
    assert auto_connect(linear_blocks, existing, target_block_id="missing") == existing


def test_detect_cycles_reports_every_edge_on_the_loop(linear_blocks):
    a = make_connection("q1", default="q2", id="a")
    b = make_connection("q2", default="q3", id="b")
    c = make_connection("q3", rules=[make_rule("q1", [{"field": "q3", "operator": "equals", "value": "x"}])], id="c")
    d = make_connection("q4", default=None, id="d")
    report = detect_cycles(linear_blocks, [a, b, c, d])
    assert report.has_cycles
    assert report.cycle_connections == ["a", "b", "c"]


def test_detect_cycles_on_acyclic_form(linear_blocks):
    report = detect_cycles(linear_blocks, auto_connect(linear_blocks, []))
    assert not report.has_cycles
    assert report.cycle_connections == []


def test_self_loop_is_a_cycle():
    blocks = [make_block("x", 0)]
    report = detect_cycles(blocks, [make_connection("x", default="x", id="loop")])
    assert report.cycle_connections == ["loop"]


def test_detect_cycles_on_a_very_long_form():
    blocks = [make_block(f"b{i}", i) for i in range(1500)]
    connections = auto_connect(blocks, [])
    assert not detect_cycles(blocks, connections).has_cycles

    back = make_connection("b1499", default="b1490", id="back")
    report = detect_cycles(blocks, connections + [back])
    assert "back" in report.cycle_connections
    assert len(report.cycle_connections) == 10
