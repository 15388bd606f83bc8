"""
Form blocks and the condition field catalog.

Blocks arrive from the store in snake_case and from the builder UI in camelCase;
`Block` accepts both. The field catalog answers "what can a rule on this block
inspect, with which operators, and what is a sensible default comparand".
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator

from flowform.workflow.conditions import ConditionOperator, ValueType


class BlockType:
    SHORT_TEXT = "short_text"
    LONG_TEXT = "long_text"
    EMAIL = "email"
    DATE = "date"
    MULTIPLE_CHOICE = "multiple_choice"
    CHECKBOX_GROUP = "checkbox_group"
    DROPDOWN = "dropdown"
    NUMBER = "number"
    SCALE = "scale"
    RATING = "rating"
    YES_NO = "yes_no"
    AI_CONVERSATION = "ai_conversation"
    PAGE_BREAK = "page_break"
    REDIRECT = "redirect"


CHOICE_BLOCK_TYPES = {BlockType.MULTIPLE_CHOICE, BlockType.CHECKBOX_GROUP, BlockType.DROPDOWN}
CHOICE_FIELD_PREFIX = "choice:"


class ChoiceOption(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str = ""
    value: str = ""
    label: str = ""

    @model_validator(mode="before")
    @classmethod
    def _from_plain_string(cls, data: Any) -> Any:
        if isinstance(data, str):
            return {"id": data, "value": data, "label": data}
        return data

    @model_validator(mode="after")
    def _fill_blanks(self) -> "ChoiceOption":
        self.value = self.value or self.label or self.id
        self.label = self.label or self.value
        self.id = self.id or self.value
        return self


class Block(BaseModel):
    """A question or content unit in a form. Soft-deleted blocks keep their row."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str
    form_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("form_id", "formId"),
        serialization_alias="formId",
    )
    type: str = Field(
        default=BlockType.SHORT_TEXT,
        validation_alias=AliasChoices("type", "subtype", "blockTypeId", "block_type_id"),
    )
    order_index: int = Field(
        default=0,
        validation_alias=AliasChoices("order_index", "orderIndex"),
        serialization_alias="orderIndex",
    )
    title: str = ""
    description: Optional[str] = None
    required: bool = False
    settings: Dict[str, Any] = Field(default_factory=dict)
    is_deleted: bool = Field(
        default=False,
        validation_alias=AliasChoices("is_deleted", "isDeleted"),
        serialization_alias="isDeleted",
    )

    @model_validator(mode="before")
    @classmethod
    def _prefer_subtype(cls, data: Any) -> Any:
        # DB rows carry a coarse `type` ("static", "dynamic") next to the real `subtype`.
        if isinstance(data, dict) and data.get("subtype") and data.get("type") in {"static", "dynamic", "integration", "layout"}:
            out = dict(data)
            out["type"] = out.pop("subtype")
            return out
        if isinstance(data, dict) and data.get("settings") is None and "settings" in data:
            return {**data, "settings": {}}
        return data

    def choices(self) -> List[ChoiceOption]:
        raw = self.settings.get("choices") or self.settings.get("options") or []
        if not isinstance(raw, list):
            return []
        out: List[ChoiceOption] = []
        for item in raw:
            try:
                out.append(ChoiceOption.model_validate(item))
            except ValueError:
                continue
        return out

    @property
    def starter_prompt(self) -> str:
        return str(self.settings.get("starterPrompt") or self.settings.get("startingPrompt") or "").strip()

    @property
    def max_questions(self) -> int:
        raw = self.settings.get("maxQuestions", self.settings.get("max_questions", 0))
        try:
            return max(0, int(raw or 0))
        except (TypeError, ValueError):
            return 0

    @property
    def ai_instructions(self) -> str:
        return str(self.settings.get("aiInstructions") or self.settings.get("ai_instructions") or "").strip()

    @property
    def temperature(self) -> Optional[float]:
        raw = self.settings.get("temperature")
        try:
            return float(raw) if raw is not None else None
        except (TypeError, ValueError):
            return None


def live_blocks(blocks: Iterable[Block]) -> List[Block]:
    """Non-deleted blocks in their default linear order."""
    return sorted((b for b in blocks if not b.is_deleted), key=lambda b: (b.order_index, b.id))


def next_block_by_order(blocks: Iterable[Block], block_id: str) -> Optional[Block]:
    ordered = live_blocks(blocks)
    for i, b in enumerate(ordered):
        if b.id == block_id:
            return ordered[i + 1] if i + 1 < len(ordered) else None
    return None


@dataclass(frozen=True)
class FieldOption:
    id: str
    label: str
    value_type: ValueType
    operators: List[str]
    value_options: List[ChoiceOption] = field(default_factory=list)


_EQ = [ConditionOperator.EQUALS.value, ConditionOperator.NOT_EQUALS.value]
_TEXT_OPS = _EQ + [ConditionOperator.CONTAINS.value]
_NUM_OPS = _EQ + [ConditionOperator.GREATER_THAN.value, ConditionOperator.LESS_THAN.value]

# (field id, label, value type, operators, block types)
_STANDARD_FIELDS = [
    (
        "answer",
        "Answer",
        ValueType.STRING,
        _TEXT_OPS,
        {
            BlockType.SHORT_TEXT,
            BlockType.LONG_TEXT,
            BlockType.EMAIL,
            BlockType.MULTIPLE_CHOICE,
            BlockType.DROPDOWN,
            BlockType.AI_CONVERSATION,
        },
    ),
    ("answer", "Answer", ValueType.NUMBER, _NUM_OPS, {BlockType.NUMBER, BlockType.SCALE}),
    ("answer", "Answer", ValueType.DATE, _NUM_OPS, {BlockType.DATE}),
    ("answer", "Answer", ValueType.BOOLEAN, _EQ, {BlockType.YES_NO}),
    ("selected", "Selected", ValueType.BOOLEAN, _EQ, {BlockType.CHECKBOX_GROUP, BlockType.DROPDOWN}),
    ("rating", "Rating", ValueType.NUMBER, _NUM_OPS, {BlockType.RATING}),
    (
        "length",
        "Length",
        ValueType.NUMBER,
        [ConditionOperator.EQUALS.value, ConditionOperator.GREATER_THAN.value, ConditionOperator.LESS_THAN.value],
        {BlockType.SHORT_TEXT, BlockType.LONG_TEXT},
    ),
    ("domain", "Domain", ValueType.STRING, _TEXT_OPS, {BlockType.EMAIL}),
]

SOURCE_RELATIVE_FIELDS = {"answer", "selected", "rating", "length", "domain"}


def answer_value_type(block: Block) -> ValueType:
    """Declared value type of a block's raw answer."""
    if block.type in {BlockType.NUMBER, BlockType.SCALE, BlockType.RATING}:
        return ValueType.NUMBER
    if block.type == BlockType.DATE:
        return ValueType.DATE
    if block.type == BlockType.YES_NO:
        return ValueType.BOOLEAN
    return ValueType.STRING


def _operators_for_value_type(value_type: ValueType, block: Block) -> List[str]:
    if value_type in {ValueType.NUMBER, ValueType.DATE}:
        return list(_NUM_OPS)
    if value_type is ValueType.BOOLEAN:
        return list(_EQ)
    if block.type == BlockType.CHECKBOX_GROUP:
        return [ConditionOperator.CONTAINS.value]
    return list(_TEXT_OPS)


def available_fields(source_block: Optional[Block], prior_blocks: Iterable[Block] = ()) -> List[FieldOption]:
    """
    Fields a rule on `source_block` may inspect.

    Standard fields read the source block's answer; `choice:<optionId>` fields test a single
    option; block-id fields read the answer of an earlier block in the form.
    """
    if source_block is None:
        return []
    out: List[FieldOption] = []
    for fid, label, vt, ops, types in _STANDARD_FIELDS:
        if source_block.type in types:
            out.append(FieldOption(id=fid, label=label, value_type=vt, operators=list(ops)))

    if source_block.type in CHOICE_BLOCK_TYPES:
        options = source_block.choices()
        for opt in options:
            out.append(
                FieldOption(
                    id=f"{CHOICE_FIELD_PREFIX}{opt.id}",
                    label=f'Option "{opt.label}"',
                    value_type=ValueType.BOOLEAN,
                    operators=list(_EQ),
                )
            )
        if out and out[0].id == "answer":
            out[0] = FieldOption(
                id="answer",
                label="Answer",
                value_type=ValueType.STRING,
                operators=out[0].operators,
                value_options=options,
            )

    for block in live_blocks(prior_blocks):
        if block.id == source_block.id or block.type in {BlockType.PAGE_BREAK, BlockType.REDIRECT}:
            continue
        vt = answer_value_type(block)
        out.append(
            FieldOption(
                id=block.id,
                label=f"Answer to {block.title or block.id}",
                value_type=vt,
                operators=_operators_for_value_type(vt, block),
                value_options=block.choices() if block.type in CHOICE_BLOCK_TYPES else [],
            )
        )
    return out


def find_field(field_id: str, source_block: Optional[Block], prior_blocks: Iterable[Block] = ()) -> Optional[FieldOption]:
    for opt in available_fields(source_block, prior_blocks):
        if opt.id == field_id:
            return opt
    return None


def operators_for_field(field_id: str, source_block: Optional[Block], prior_blocks: Iterable[Block] = ()) -> List[str]:
    opt = find_field(field_id, source_block, prior_blocks)
    if opt is None:
        return [ConditionOperator.EQUALS.value]
    return list(opt.operators)


def default_value_for(value_type: ValueType) -> Any:
    vt = ValueType(value_type)
    if vt is ValueType.NUMBER:
        return 0
    if vt is ValueType.BOOLEAN:
        return True
    return ""


__all__ = [
    "BlockType",
    "Block",
    "ChoiceOption",
    "FieldOption",
    "CHOICE_BLOCK_TYPES",
    "CHOICE_FIELD_PREFIX",
    "SOURCE_RELATIVE_FIELDS",
    "live_blocks",
    "next_block_by_order",
    "answer_value_type",
    "available_fields",
    "find_field",
    "operators_for_field",
    "default_value_for",
]
