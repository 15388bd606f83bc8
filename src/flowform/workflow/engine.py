"""
Branching rule engine.

After a block is answered, `resolve_next_block` decides where the respondent goes:
the first rule whose condition group matches wins, otherwise the connection's
default target. When neither applies the engine returns `NoTargetResolved` and
the caller picks the fallback (next block by order, or end of form).

Nothing on this path raises. Missing answers, type mismatches and unknown
operators all evaluate to False; the malformed ones are logged for the author.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from flowform.blocks import CHOICE_FIELD_PREFIX, SOURCE_RELATIVE_FIELDS, Block, live_blocks, next_block_by_order
from flowform.workflow.conditions import (
    ConditionGroup,
    ConditionOperator,
    ConditionRule,
    Connection,
    LogicalOperator,
    ValueType,
    parse_boolean,
    parse_date,
    parse_number,
)

logger = logging.getLogger("flowform.workflow")

AnswerValue = Union[str, int, float, bool, List[str]]
Answers = Union[Mapping[str, Any], Callable[[str], Any]]

_KNOWN_OPERATORS = {op.value for op in ConditionOperator}
_LEGACY_CHOICE_SUFFIX = re.compile(r"_\d+$")


@dataclass(frozen=True)
class NoTargetResolved:
    """No rule matched and no default target is configured. Returned, never raised."""

    source_block_id: str
    reason: str = "no_default_target"

    def __bool__(self) -> bool:
        return False


@dataclass(frozen=True)
class MalformedCondition:
    condition_id: str
    field: str
    operator: str
    reason: str


@dataclass(frozen=True)
class Resolution:
    target_block_id: Optional[str]
    resolved_by: str  # "rule" | "default" | "order" | "end"
    rule_id: Optional[str] = None


class _Missing:
    pass


_MISSING = _Missing()


def _lookup(answers: Answers, block_id: Optional[str]) -> Any:
    if not block_id:
        return None
    if isinstance(answers, Mapping):
        return answers.get(block_id)
    if callable(answers):
        return answers(block_id)
    return None


def _as_text(v: Any) -> str:
    if isinstance(v, bool):
        return "true" if v else "false"
    if isinstance(v, float) and v.is_integer():
        return str(int(v))
    return str(v)


def _choice_selected(raw: Any, option_id: str) -> Optional[bool]:
    if isinstance(raw, (list, tuple, set)):
        selected = {_as_text(x) for x in raw}
    elif isinstance(raw, str):
        selected = {raw}
    else:
        return None
    if option_id in selected:
        return True
    # Older edges suffix the option with its position: `choice:<value>_<index>`.
    stripped = _LEGACY_CHOICE_SUFFIX.sub("", option_id)
    return stripped != option_id and stripped in selected


def _resolve_field(condition: ConditionRule, answers: Answers, source_block_id: Optional[str]) -> Tuple[Any, Optional[str]]:
    """Return (value, malformed_reason). `_MISSING` means there is no answer to inspect."""
    fid = str(condition.field or "").strip()
    if not fid:
        return _MISSING, None

    if fid.startswith(CHOICE_FIELD_PREFIX):
        raw = _lookup(answers, source_block_id)
        if raw is None:
            return _MISSING, None
        selected = _choice_selected(raw, fid[len(CHOICE_FIELD_PREFIX):])
        if selected is None:
            return _MISSING, f"choice field on non-choice answer {type(raw).__name__}"
        return selected, None

    if fid in SOURCE_RELATIVE_FIELDS and source_block_id:
        raw = _lookup(answers, source_block_id)
        if raw is None:
            return _MISSING, None
        if fid in {"answer", "rating"}:
            return raw, None
        if fid == "selected":
            if isinstance(raw, (list, tuple, set)):
                return len(raw) > 0, None
            if isinstance(raw, str):
                return bool(raw.strip()), None
            return _MISSING, f"selected on {type(raw).__name__} answer"
        if fid == "length":
            if isinstance(raw, str):
                return len(raw), None
            return _MISSING, f"length on {type(raw).__name__} answer"
        if fid == "domain":
            if isinstance(raw, str) and "@" in raw:
                return raw.rsplit("@", 1)[1].strip().lower(), None
            return _MISSING, "domain on answer without @"

    raw = _lookup(answers, fid)
    if raw is None:
        return _MISSING, None
    return raw, None


def _equals(target: Any, value: Any, value_type: ValueType) -> Optional[bool]:
    """None means the pair cannot be compared under the declared type."""
    try:
        if value_type is ValueType.NUMBER:
            return parse_number(target) == parse_number(value)
        if value_type is ValueType.BOOLEAN:
            return parse_boolean(target) == parse_boolean(value)
        if value_type is ValueType.DATE:
            return parse_date(target) == parse_date(value)
    except (TypeError, ValueError):
        return None
    if isinstance(target, (list, tuple)):
        return [_as_text(x) for x in target] == [_as_text(value)]
    if isinstance(target, (dict, set)):
        return None
    return _as_text(target) == _as_text(value)


def _contains(target: Any, value: Any) -> Optional[bool]:
    if isinstance(target, (list, tuple, set)):
        return _as_text(value) in {_as_text(x) for x in target}
    if isinstance(target, str):
        return _as_text(value) in target
    return None


def _compare(target: Any, value: Any, value_type: ValueType) -> Optional[int]:
    try:
        if value_type is ValueType.DATE:
            a, b = parse_date(target), parse_date(value)
        else:
            a, b = parse_number(target), parse_number(value)
    except (TypeError, ValueError):
        return None
    return (a > b) - (a < b)


def _malformed(
    condition: ConditionRule,
    reason: str,
    diagnostics: Optional[List[MalformedCondition]],
) -> bool:
    item = MalformedCondition(
        condition_id=condition.id,
        field=str(condition.field or ""),
        operator=str(condition.operator or ""),
        reason=reason,
    )
    logger.warning(
        "MalformedCondition id=%s field=%s operator=%s reason=%s",
        item.condition_id,
        item.field,
        item.operator,
        item.reason,
    )
    if diagnostics is not None:
        diagnostics.append(item)
    return False


def evaluate_single_condition(
    condition: ConditionRule,
    answers: Answers,
    source_block_id: Optional[str] = None,
    *,
    diagnostics: Optional[List[MalformedCondition]] = None,
) -> bool:
    """
    Evaluate one condition. A missing answer is False for every operator, `not_equals`
    included. Unknown operators and type mismatches are False and logged.
    """
    try:
        target, reason = _resolve_field(condition, answers, source_block_id)
    except Exception as exc:  # answer resolvers are external code
        return _malformed(condition, f"answer lookup failed: {exc!r}", diagnostics)
    if reason:
        return _malformed(condition, reason, diagnostics)
    if target is _MISSING:
        return False

    op = str(condition.operator or "").strip().lower()
    if op not in _KNOWN_OPERATORS:
        return _malformed(condition, "unknown operator", diagnostics)
    vt = condition.value_type
    value = condition.value

    if op in {ConditionOperator.EQUALS.value, ConditionOperator.NOT_EQUALS.value}:
        eq = _equals(target, value, vt)
        if eq is None:
            return _malformed(condition, f"cannot compare {type(target).__name__} as {vt.value}", diagnostics)
        return eq if op == ConditionOperator.EQUALS.value else not eq

    if op == ConditionOperator.CONTAINS.value:
        hit = _contains(target, value)
        if hit is None:
            return _malformed(condition, f"contains on {type(target).__name__} answer", diagnostics)
        return hit

    cmp = _compare(target, value, vt)
    if cmp is None:
        return _malformed(condition, f"{op} on non-{vt.value if vt is ValueType.DATE else 'numeric'} value", diagnostics)
    return cmp > 0 if op == ConditionOperator.GREATER_THAN.value else cmp < 0


def evaluate_condition_group(
    group: ConditionGroup,
    answers: Answers,
    source_block_id: Optional[str] = None,
    *,
    diagnostics: Optional[List[MalformedCondition]] = None,
) -> bool:
    """AND: every condition true. OR: any condition true. An empty group never matches."""
    if not group.conditions:
        return False
    # Evaluate every condition so malformed ones are all reported.
    results = [
        evaluate_single_condition(c, answers, source_block_id, diagnostics=diagnostics) for c in group.conditions
    ]
    lop = str(group.logical_operator or "").upper()
    if lop == LogicalOperator.AND.value:
        return all(results)
    if lop == LogicalOperator.OR.value:
        return any(results)
    logger.warning("Unknown logical operator %r; group evaluates false", group.logical_operator)
    return False


def resolve(
    connection: Connection,
    answers: Answers,
    *,
    diagnostics: Optional[List[MalformedCondition]] = None,
) -> Union[Resolution, NoTargetResolved]:
    for rule in connection.rules:
        if not evaluate_condition_group(rule.condition_group, answers, connection.source_id, diagnostics=diagnostics):
            continue
        if not rule.target_block_id:
            logger.warning("Rule %s matched but has no target; skipping", rule.id)
            continue
        return Resolution(target_block_id=rule.target_block_id, resolved_by="rule", rule_id=rule.id)
    if connection.default_target_id:
        return Resolution(target_block_id=connection.default_target_id, resolved_by="default")
    return NoTargetResolved(source_block_id=connection.source_id)


def resolve_next_block(
    connection: Connection,
    answers: Answers,
    *,
    diagnostics: Optional[List[MalformedCondition]] = None,
) -> Union[str, NoTargetResolved]:
    """
    Rules are tried in array order and the first match wins; later rules are not evaluated.
    With no match the default target is returned, or `NoTargetResolved` if there is none.
    """
    result = resolve(connection, answers, diagnostics=diagnostics)
    if isinstance(result, NoTargetResolved):
        return result
    return str(result.target_block_id)


def connection_for(source_block_id: str, connections: Iterable[Connection]) -> Optional[Connection]:
    """A source block has at most one connection; on duplicate rows the lowest order_index wins."""
    matches = [c for c in connections if c.source_id == source_block_id]
    if not matches:
        return None
    return sorted(matches, key=lambda c: c.order_index)[0]


def resolve_for_block(
    source_block_id: str,
    connections: Iterable[Connection],
    answers: Answers,
    *,
    diagnostics: Optional[List[MalformedCondition]] = None,
) -> Union[Resolution, NoTargetResolved]:
    connection = connection_for(source_block_id, connections)
    if connection is None:
        return NoTargetResolved(source_block_id=source_block_id, reason="no_connection")
    return resolve(connection, answers, diagnostics=diagnostics)


def resolve_with_order_fallback(
    source_block_id: str,
    blocks: Iterable[Block],
    connections: Iterable[Connection],
    answers: Answers,
    *,
    diagnostics: Optional[List[MalformedCondition]] = None,
) -> Resolution:
    """
    Resolve through the engine; when it cannot, or it names a block that is gone,
    advance by `order_index`. `resolved_by == "end"` means the form is finished.
    """
    blocks = list(blocks)
    live_ids = {b.id for b in live_blocks(blocks)}
    result = resolve_for_block(source_block_id, connections, answers, diagnostics=diagnostics)
    if isinstance(result, Resolution):
        if result.target_block_id in live_ids:
            return result
        logger.warning(
            "Connection from %s targets missing or deleted block %s; advancing by order",
            source_block_id,
            result.target_block_id,
        )
    nxt = next_block_by_order(blocks, source_block_id)
    if nxt is None:
        return Resolution(target_block_id=None, resolved_by="end")
    return Resolution(target_block_id=nxt.id, resolved_by="order")


@dataclass
class NavigationStep:
    source_block_id: str
    target_block_id: Optional[str]
    resolved_by: str
    rule_id: Optional[str] = None


_UNSET: Any = object()


@dataclass
class FormNavigator:
    """
    Respondent-side navigation across blocks: records answers, follows connections,
    keeps a back stack.
    """

    blocks: List[Block]
    connections: List[Connection]
    answers: Dict[str, Any] = field(default_factory=dict)
    history: List[str] = field(default_factory=list)
    path: List[NavigationStep] = field(default_factory=list)
    is_complete: bool = False

    def __post_init__(self) -> None:
        if not self.history:
            first = live_blocks(self.blocks)
            if first:
                self.history.append(first[0].id)

    @property
    def current_block_id(self) -> Optional[str]:
        return self.history[-1] if self.history else None

    @property
    def current_block(self) -> Optional[Block]:
        bid = self.current_block_id
        for b in self.blocks:
            if b.id == bid:
                return b
        return None

    def get_answer(self, block_id: str) -> Any:
        return self.answers.get(block_id)

    def go_to_next(self, answer: Any = _UNSET) -> Optional[str]:
        current = self.current_block_id
        if current is None or self.is_complete:
            return None
        if answer is not _UNSET:
            self.answers[current] = answer
        res = resolve_with_order_fallback(current, self.blocks, self.connections, self.get_answer)
        self.path.append(
            NavigationStep(
                source_block_id=current,
                target_block_id=res.target_block_id,
                resolved_by=res.resolved_by,
                rule_id=res.rule_id,
            )
        )
        if res.target_block_id is None:
            self.is_complete = True
            return None
        self.history.append(res.target_block_id)
        return res.target_block_id

    def go_to_previous(self) -> Optional[str]:
        if self.is_complete:
            self.is_complete = False
            return self.current_block_id
        if len(self.history) <= 1:
            return None
        self.history.pop()
        self.is_complete = False
        return self.history[-1]

    def reset(self) -> None:
        self.answers.clear()
        self.history.clear()
        self.path.clear()
        self.is_complete = False
        self.__post_init__()


__all__ = [
    "AnswerValue",
    "Answers",
    "NoTargetResolved",
    "MalformedCondition",
    "Resolution",
    "NavigationStep",
    "FormNavigator",
    "evaluate_single_condition",
    "evaluate_condition_group",
    "resolve",
    "resolve_next_block",
    "resolve_for_block",
    "resolve_with_order_fallback",
    "connection_for",
]
