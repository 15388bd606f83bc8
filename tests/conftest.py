from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest


_REPO_ROOT = Path(__file__).resolve().parents[1]
_SRC = _REPO_ROOT / "src"
if _SRC.exists():
    sys.path.insert(0, str(_SRC))
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))


from flowform.blocks import Block  # noqa: E402
from flowform.workflow.conditions import ConditionGroup, ConditionRule, Connection, Rule  # noqa: E402


def make_block(block_id: str, order_index: int, type: str = "short_text", **kwargs: Any) -> Block:
    return Block(id=block_id, form_id="form-1", type=type, order_index=order_index, title=kwargs.pop("title", block_id), **kwargs)


def make_rule(
    target: Optional[str],
    conditions: List[Dict[str, Any]],
    logical_operator: str = "AND",
    rule_id: Optional[str] = None,
) -> Rule:
    data: Dict[str, Any] = {
        "target_block_id": target,
        "condition_group": ConditionGroup(
            logical_operator=logical_operator,
            conditions=[ConditionRule.model_validate(c) for c in conditions],
        ),
    }
    if rule_id:
        data["id"] = rule_id
    return Rule(**data)


def make_connection(source: str, default: Optional[str] = None, rules: Optional[List[Rule]] = None, **kwargs: Any) -> Connection:
    return Connection(form_id="form-1", source_id=source, default_target_id=default, rules=rules or [], **kwargs)


@pytest.fixture
def linear_blocks() -> List[Block]:
    return [
        make_block("q1", 0),
        make_block("q2", 1, type="number"),
        make_block("q3", 2, type="multiple_choice", settings={"choices": ["Red", "Green", "Blue"]}),
        make_block("q4", 3),
    ]


@pytest.fixture
def ai_block() -> Block:
    return make_block(
        "chat",
        0,
        type="ai_conversation",
        settings={"starterPrompt": "What brings you here today?", "maxQuestions": 3},
    )
