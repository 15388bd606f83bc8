"""
Rule / condition-group / condition data model for workflow connections.

A `Connection` leaves exactly one source block. It carries a default target and
an ordered list of `Rule`s; each rule owns one `ConditionGroup` combining
`ConditionRule`s with AND / OR.

Condition values are a tagged union keyed by `value_type`. The tag is resolved
when the condition's field is chosen (see `flowform.workflow.editing`) and the
value is coerced once, when the model is built.
"""

from __future__ import annotations

import json
import math
import uuid
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator


class ConditionOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"


class LogicalOperator(str, Enum):
    AND = "AND"
    OR = "OR"


class ValueType(str, Enum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"


OPERATOR_LABELS: Dict[str, str] = {
    ConditionOperator.EQUALS.value: "equals",
    ConditionOperator.NOT_EQUALS.value: "does not equal",
    ConditionOperator.CONTAINS.value: "contains",
    ConditionOperator.GREATER_THAN.value: "is greater than",
    ConditionOperator.LESS_THAN.value: "is less than",
}

LOGICAL_OPERATOR_LABELS: Dict[str, str] = {
    LogicalOperator.AND.value: "AND (all conditions must match)",
    LogicalOperator.OR.value: "OR (any condition can match)",
}

_TRUE_STRINGS = {"true", "yes", "y", "1", "on"}
_FALSE_STRINGS = {"false", "no", "n", "0", "off"}


def new_id() -> str:
    return uuid.uuid4().hex


def parse_number(raw: Any) -> float:
    """Strict numeric parse. Booleans are not numbers."""
    if isinstance(raw, bool):
        raise ValueError("boolean is not a number")
    if not isinstance(raw, (int, float)) and not (isinstance(raw, str) and raw.strip()):
        raise ValueError(f"not a number: {raw!r}")
    try:
        num = float(raw.strip() if isinstance(raw, str) else raw)
    except OverflowError as exc:
        raise ValueError(f"number out of range: {raw!r}") from exc
    if not math.isfinite(num):
        raise ValueError(f"not a finite number: {raw!r}")
    return num


def parse_boolean(raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, (int, float)) and raw in (0, 1):
        return bool(raw)
    if isinstance(raw, str):
        t = raw.strip().lower()
        if t in _TRUE_STRINGS:
            return True
        if t in _FALSE_STRINGS:
            return False
    raise ValueError(f"not a boolean: {raw!r}")


def parse_date(raw: Any) -> date:
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    if not isinstance(raw, str) or not raw.strip():
        raise ValueError(f"not a date: {raw!r}")
    t = raw.strip()
    try:
        return date.fromisoformat(t[:10])
    except ValueError:
        return datetime.fromisoformat(t.replace("Z", "+00:00")).date()


def coerce_condition_value(raw: Any, value_type: ValueType) -> Any:
    """
    Coerce a comparand to its declared value type. Raises ValueError on mismatch.

    Numbers come back as int when integral so they round-trip cleanly through JSON.
    Dates are normalized to `YYYY-MM-DD` strings.
    """
    vt = ValueType(value_type)
    if vt is ValueType.NUMBER:
        num = parse_number(raw)
        return int(num) if num.is_integer() else num
    if vt is ValueType.BOOLEAN:
        return parse_boolean(raw)
    if vt is ValueType.DATE:
        return parse_date(raw).isoformat()
    if isinstance(raw, str):
        return raw
    if isinstance(raw, bool):
        return "true" if raw else "false"
    if isinstance(raw, (int, float)):
        return str(raw)
    raise ValueError(f"not a string: {raw!r}")


class ConditionRule(BaseModel):
    """One comparison of a prior answer against a comparand."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str = Field(default_factory=new_id)
    field: str = Field(default="", description="Block id, or a synthetic reference such as `choice:<optionId>`")
    operator: str = Field(default=ConditionOperator.EQUALS.value)
    value: Any = Field(default="")
    value_type: ValueType = Field(default=ValueType.STRING, alias="valueType")

    @model_validator(mode="before")
    @classmethod
    def _infer_missing_value_type(cls, data: Any) -> Any:
        """Legacy rows have no `value_type`; tag them from the stored comparand once, here."""
        if not isinstance(data, dict):
            return data
        if data.get("value_type") is not None or data.get("valueType") is not None:
            raw = data.get("value_type") if data.get("value_type") is not None else data.get("valueType")
            if str(raw) not in {v.value for v in ValueType}:
                out = dict(data)
                out.pop("valueType", None)
                out["value_type"] = ValueType.STRING.value
                return out
            return data
        value = data.get("value")
        if isinstance(value, bool):
            vt = ValueType.BOOLEAN
        elif isinstance(value, (int, float)):
            vt = ValueType.NUMBER
        else:
            vt = ValueType.STRING
        return {**data, "value_type": vt.value}

    @model_validator(mode="after")
    def _coerce_value(self) -> "ConditionRule":
        # Leave uncoercible stored values alone; the engine treats them as malformed.
        try:
            self.value = coerce_condition_value(self.value, self.value_type)
        except (TypeError, ValueError):
            pass
        return self


class ConditionGroup(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    logical_operator: str = Field(default=LogicalOperator.AND.value, alias="logicalOperator")
    conditions: List[ConditionRule] = Field(default_factory=list)

    @field_validator("logical_operator", mode="before")
    @classmethod
    def _upper(cls, v: Any) -> Any:
        return str(v or LogicalOperator.AND.value).strip().upper()


class Rule(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str = Field(default_factory=new_id)
    target_block_id: Optional[str] = Field(default=None, alias="targetBlockId")
    condition_group: ConditionGroup = Field(default_factory=ConditionGroup, alias="conditionGroup")


class Connection(BaseModel):
    """
    Directed edge out of one source block.

    `rules` empty means unconditional. `is_explicit` marks a default target the author
    picked, as opposed to one derived from block order.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str = Field(default_factory=new_id)
    form_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("form_id", "formId"),
        serialization_alias="formId",
    )
    source_id: str = Field(
        validation_alias=AliasChoices("source_id", "sourceId", "source_block_id"),
        serialization_alias="sourceId",
    )
    default_target_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("default_target_id", "defaultTargetId"),
        serialization_alias="defaultTargetId",
    )
    rules: List[Rule] = Field(default_factory=list)
    is_explicit: bool = Field(
        default=False,
        validation_alias=AliasChoices("is_explicit", "isExplicit"),
        serialization_alias="isExplicit",
    )
    order_index: int = Field(
        default=0,
        validation_alias=AliasChoices("order_index", "orderIndex"),
        serialization_alias="orderIndex",
    )

    @field_validator("rules", mode="before")
    @classmethod
    def _parse_rules(cls, v: Any) -> Any:
        # Older edge rows store rules as a JSON string.
        if v is None:
            return []
        if isinstance(v, str):
            try:
                parsed = json.loads(v) if v.strip() else []
            except json.JSONDecodeError:
                return []
            return parsed if isinstance(parsed, list) else []
        return v

    def find_rule(self, rule_id: str) -> Optional[Rule]:
        for rule in self.rules:
            if rule.id == rule_id:
                return rule
        return None


__all__ = [
    "ConditionOperator",
    "LogicalOperator",
    "ValueType",
    "OPERATOR_LABELS",
    "LOGICAL_OPERATOR_LABELS",
    "ConditionRule",
    "ConditionGroup",
    "Rule",
    "Connection",
    "coerce_condition_value",
    "parse_number",
    "parse_boolean",
    "parse_date",
    "new_id",
]
