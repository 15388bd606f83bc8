from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

_CONVERSATION_NS = uuid.UUID("6f1c8f0e-3a53-4d0b-9a57-2f6a3c1f9e41")


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def conversation_id_for(response_id: str, block_id: str) -> str:
    """Stable id for the one conversation a (block, response) pair owns."""
    return str(uuid.uuid5(_CONVERSATION_NS, f"{response_id}:{block_id}"))


class Turn(BaseModel):
    """One question / answer pair. Turn 0's question is always the block's starter prompt."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    index: int = Field(ge=0)
    question: str = ""
    answer: str = ""
    timestamp: str = Field(default_factory=utc_now_iso)
    edited_at: Optional[str] = Field(default=None, alias="editedAt")
    is_starter: bool = Field(default=False, alias="isStarter")


class ConversationRecord(BaseModel):
    """Stored shape of a conversation (one row of `dynamic_block_responses`)."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str
    response_id: str = Field(validation_alias=AliasChoices("response_id", "responseId"))
    block_id: str = Field(validation_alias=AliasChoices("block_id", "blockId"))
    turns: List[Turn] = Field(default_factory=list, validation_alias=AliasChoices("turns", "conversation"))
    next_question: Optional[str] = Field(default=None, validation_alias=AliasChoices("next_question", "nextQuestion"))
    started_at: Optional[str] = None
    completed_at: Optional[str] = None


class ConversationState(BaseModel):
    """
    Everything the state machine needs for one conversation, as a plain value object.

    `active_index` is the view pointer: `< len(turns)` reviews a past turn,
    `== len(turns)` addresses the unanswered frontier question.
    """

    model_config = ConfigDict(populate_by_name=True)

    conversation_id: str
    response_id: str
    block_id: str
    starter_prompt: str = ""
    max_questions: int = Field(default=0, ge=0)
    turns: List[Turn] = Field(default_factory=list)
    pending_question: Optional[str] = None
    explicit_complete: bool = False
    active_index: int = 0
    has_advanced: bool = False
    has_left_block: bool = False
    is_revisit: bool = False

    @property
    def questions(self) -> List[str]:
        return [t.question for t in self.turns]

    @property
    def answers(self) -> List[str]:
        return [t.answer for t in self.turns]


__all__ = ["Turn", "ConversationRecord", "ConversationState", "conversation_id_for", "utc_now_iso"]
