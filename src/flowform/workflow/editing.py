"""
Authoring-side operations on a block's connection.

Unlike the engine, these reject bad input with `ConditionValidationError`.
Every mutation updates the in-memory `Connection` first and then enqueues an
`ApplyConnectionUpdate` carrying the changed fields.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from flowform.blocks import (
    CHOICE_FIELD_PREFIX,
    Block,
    FieldOption,
    available_fields,
    default_value_for,
    live_blocks,
    next_block_by_order,
)
from flowform.errors import ConditionValidationError, NotFound
from flowform.persistence import ApplyConnectionUpdate, PersistenceQueue
from flowform.workflow.conditions import (
    OPERATOR_LABELS,
    ConditionGroup,
    ConditionOperator,
    ConditionRule,
    Connection,
    LogicalOperator,
    Rule,
    coerce_condition_value,
)
from flowform.workflow.engine import connection_for

_FIELD_NAMES = {
    "answer": "Answer",
    "selected": "Selected",
    "rating": "Rating",
    "length": "Length",
    "domain": "Domain",
}


@dataclass
class ConnectionEditState:
    """Edit session for the one connection leaving `source_block`."""

    connection: Connection
    source_block: Block
    blocks: List[Block]
    queue: Optional[PersistenceQueue] = None
    persisted: bool = True
    _block_ids: set = field(default_factory=set, repr=False)

    def __post_init__(self) -> None:
        self._block_ids = {b.id for b in live_blocks(self.blocks)}

    @classmethod
    def for_block(
        cls,
        source_block: Block,
        blocks: Iterable[Block],
        connections: Iterable[Connection],
        *,
        queue: Optional[PersistenceQueue] = None,
    ) -> "ConnectionEditState":
        """Open the block's connection, creating an order-based one in memory if it has none yet."""
        blocks = list(blocks)
        existing = connection_for(source_block.id, connections)
        if existing is not None:
            return cls(connection=existing, source_block=source_block, blocks=blocks, queue=queue)
        nxt = next_block_by_order(blocks, source_block.id)
        created = Connection(
            form_id=source_block.form_id,
            source_id=source_block.id,
            default_target_id=nxt.id if nxt else None,
            is_explicit=False,
        )
        return cls(connection=created, source_block=source_block, blocks=blocks, queue=queue, persisted=False)

    # -- lookups ---------------------------------------------------------

    @property
    def prior_blocks(self) -> List[Block]:
        return [b for b in live_blocks(self.blocks) if b.order_index < self.source_block.order_index]

    def fields(self) -> List[FieldOption]:
        return available_fields(self.source_block, self.prior_blocks)

    def _field(self, field_id: str) -> Optional[FieldOption]:
        for opt in self.fields():
            if opt.id == field_id:
                return opt
        return None

    def _rule(self, rule_id: str) -> Rule:
        rule = self.connection.find_rule(rule_id)
        if rule is None:
            raise NotFound(f"rule {rule_id} not found on connection {self.connection.id}")
        return rule

    def _condition(self, rule_id: str, condition_id: str) -> ConditionRule:
        for cond in self._rule(rule_id).condition_group.conditions:
            if cond.id == condition_id:
                return cond
        raise NotFound(f"condition {condition_id} not found on rule {rule_id}")

    def _check_target(self, block_id: Optional[str]) -> None:
        if block_id is None:
            return
        if block_id not in self._block_ids:
            raise ConditionValidationError(f"target block {block_id} does not exist", details={"target": block_id})
        if block_id == self.source_block.id:
            raise ConditionValidationError("a block cannot target itself", details={"target": block_id})

    # -- persistence -----------------------------------------------------

    def _emit(self, *names: str) -> Optional[ApplyConnectionUpdate]:
        dumped = self.connection.model_dump(mode="json")
        if not self.persisted:
            fields: Dict[str, Any] = dumped
            self.persisted = True
        else:
            fields = {n: dumped[n] for n in names}
        cmd = ApplyConnectionUpdate(connection_id=self.connection.id, fields=fields)
        if self.queue is not None:
            self.queue.enqueue(cmd)
        return cmd

    # -- default target --------------------------------------------------

    def set_default_target(self, block_id: Optional[str]) -> None:
        self._check_target(block_id)
        self.connection.default_target_id = block_id
        self.connection.is_explicit = True
        self._emit("default_target_id", "is_explicit")

    # -- rules -----------------------------------------------------------

    def _new_condition(self, field_id: Optional[str] = None) -> ConditionRule:
        fields = self.fields()
        opt = self._field(field_id) if field_id else (fields[0] if fields else None)
        if field_id and opt is None:
            raise ConditionValidationError(f"unknown field {field_id}", details={"field": field_id})
        if opt is None:
            return ConditionRule(field="", operator=ConditionOperator.EQUALS.value, value="")
        return ConditionRule(
            field=opt.id,
            operator=ConditionOperator.EQUALS.value,
            value=default_value_for(opt.value_type),
            value_type=opt.value_type,
        )

    def add_rule(self, target_block_id: Optional[str] = None) -> Rule:
        self._check_target(target_block_id)
        rule = Rule(
            target_block_id=target_block_id,
            condition_group=ConditionGroup(
                logical_operator=LogicalOperator.AND.value,
                conditions=[self._new_condition()],
            ),
        )
        self.connection.rules.append(rule)
        self._emit("rules")
        return rule

    def remove_rule(self, rule_id: str) -> None:
        rule = self._rule(rule_id)
        self.connection.rules = [r for r in self.connection.rules if r.id != rule.id]
        self._emit("rules")

    def move_rule(self, rule_id: str, new_index: int) -> None:
        """Rules are evaluated in order, so position is part of the rule's meaning."""
        rule = self._rule(rule_id)
        rules = [r for r in self.connection.rules if r.id != rule.id]
        idx = max(0, min(int(new_index), len(rules)))
        rules.insert(idx, rule)
        self.connection.rules = rules
        self._emit("rules")

    def set_rule_target(self, rule_id: str, block_id: Optional[str]) -> None:
        self._check_target(block_id)
        self._rule(rule_id).target_block_id = block_id
        self._emit("rules")

    def set_logical_operator(self, rule_id: str, operator: str) -> None:
        op = str(operator or "").strip().upper()
        if op not in {LogicalOperator.AND.value, LogicalOperator.OR.value}:
            raise ConditionValidationError(f"logical operator must be AND or OR, got {operator!r}")
        self._rule(rule_id).condition_group.logical_operator = op
        self._emit("rules")

    # -- conditions ------------------------------------------------------

    def add_condition(self, rule_id: str, field_id: Optional[str] = None) -> ConditionRule:
        rule = self._rule(rule_id)
        cond = self._new_condition(field_id)
        rule.condition_group.conditions.append(cond)
        self._emit("rules")
        return cond

    def remove_condition(self, rule_id: str, condition_id: str) -> None:
        rule = self._rule(rule_id)
        cond = self._condition(rule_id, condition_id)
        rule.condition_group.conditions = [c for c in rule.condition_group.conditions if c.id != cond.id]
        self._emit("rules")

    def set_condition_field(self, rule_id: str, condition_id: str, field_id: str) -> ConditionRule:
        """Changing the field resets the operator to `equals` and the value to the new type's default."""
        opt = self._field(field_id)
        if opt is None:
            raise ConditionValidationError(f"unknown field {field_id}", details={"field": field_id})
        cond = self._condition(rule_id, condition_id)
        cond.field = opt.id
        cond.operator = ConditionOperator.EQUALS.value
        cond.value_type = opt.value_type
        cond.value = default_value_for(opt.value_type)
        self._emit("rules")
        return cond

    def set_condition_operator(self, rule_id: str, condition_id: str, operator: str) -> None:
        cond = self._condition(rule_id, condition_id)
        opt = self._field(cond.field)
        if opt is None:
            raise ConditionValidationError("select a field before choosing an operator", details={"condition": cond.id})
        if operator not in opt.operators:
            raise ConditionValidationError(
                f"operator {operator!r} is not available for {opt.label}",
                details={"allowed": list(opt.operators)},
            )
        cond.operator = operator
        self._emit("rules")

    def set_condition_value(self, rule_id: str, condition_id: str, value: Any) -> None:
        cond = self._condition(rule_id, condition_id)
        try:
            cond.value = coerce_condition_value(value, cond.value_type)
        except (TypeError, ValueError) as exc:
            raise ConditionValidationError(
                f"value {value!r} is not a valid {cond.value_type.value}",
                details={"condition": cond.id},
            ) from exc
        self._emit("rules")

    # -- validation ------------------------------------------------------

    def problems(self) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []
        if self.connection.default_target_id and self.connection.default_target_id not in self._block_ids:
            out.append({"problem": "default target does not exist", "target": self.connection.default_target_id})
        for rule in self.connection.rules:
            if not rule.target_block_id:
                out.append({"rule": rule.id, "problem": "rule has no target block"})
            elif rule.target_block_id not in self._block_ids:
                out.append({"rule": rule.id, "problem": "rule target does not exist"})
            if not rule.condition_group.conditions:
                out.append({"rule": rule.id, "problem": "rule has no conditions"})
            for cond in rule.condition_group.conditions:
                if not cond.field:
                    out.append({"rule": rule.id, "condition": cond.id, "problem": "no field selected"})
                    continue
                opt = self._field(cond.field)
                if opt is None:
                    out.append({"rule": rule.id, "condition": cond.id, "problem": "unknown field"})
                    continue
                if cond.operator not in opt.operators:
                    out.append({"rule": rule.id, "condition": cond.id, "problem": "operator not allowed"})
                try:
                    coerce_condition_value(cond.value, opt.value_type)
                except (TypeError, ValueError):
                    out.append({"rule": rule.id, "condition": cond.id, "problem": "value has the wrong type"})
        return out

    def validate(self) -> None:
        problems = self.problems()
        if problems:
            raise ConditionValidationError(
                f"connection {self.connection.id} has {len(problems)} problem(s)",
                details={"problems": problems},
            )

    def save(self) -> ApplyConnectionUpdate:
        """Validate and enqueue the whole connection."""
        self.validate()
        self.persisted = False
        cmd = self._emit()
        assert cmd is not None
        return cmd

    def summary(self) -> str:
        return summarize_connection(self.connection, self.source_block, self.blocks)


def get_field_name(field_id: str, source_block: Optional[Block] = None, blocks: Iterable[Block] = ()) -> str:
    if not field_id:
        return ""
    if field_id in _FIELD_NAMES:
        return _FIELD_NAMES[field_id]
    if field_id.startswith(CHOICE_FIELD_PREFIX):
        option_id = field_id[len(CHOICE_FIELD_PREFIX):]
        if source_block is not None:
            for opt in source_block.choices():
                if option_id in {opt.id, opt.value}:
                    return f'"{opt.label}"'
        return option_id
    for b in blocks:
        if b.id == field_id:
            return b.title or b.id
    return field_id


def summarize_condition(condition: ConditionRule, source_block: Optional[Block] = None, blocks: Iterable[Block] = ()) -> str:
    name = get_field_name(condition.field, source_block, blocks)
    if condition.field.startswith(CHOICE_FIELD_PREFIX):
        selected = condition.value is True
        if condition.operator == ConditionOperator.NOT_EQUALS.value:
            selected = not selected
        return f"{name} is {'selected' if selected else 'not selected'}"
    op = OPERATOR_LABELS.get(condition.operator, condition.operator)
    value = condition.value
    if isinstance(value, str) and len(value) > 20:
        text = f'"{value[:20]}..."'
    elif isinstance(value, bool):
        text = "Yes" if value else "No"
    else:
        text = f'"{value}"'
    return f"{name} {op} {text}"


def summarize_connection(connection: Connection, source_block: Optional[Block] = None, blocks: Iterable[Block] = ()) -> str:
    """Plain-language description for the builder sidebar."""
    blocks = list(blocks)
    if not connection.rules:
        return "Always proceed to default target"
    if len(connection.rules) == 1:
        group = connection.rules[0].condition_group
        if not group.conditions:
            return "Rule has no conditions and never matches; proceed to default target"
        joined = f" {group.logical_operator} ".join(summarize_condition(c, source_block, blocks) for c in group.conditions)
        return f"If {joined}, proceed to rule's target"
    return "Proceed based on multiple rules"


__all__ = [
    "ConnectionEditState",
    "get_field_name",
    "summarize_condition",
    "summarize_connection",
]
