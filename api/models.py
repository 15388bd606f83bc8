from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from flowform.workflow.conditions import Rule


class NextBlockRequest(BaseModel):
    """Respondent answers so far, keyed by block id."""

    model_config = ConfigDict(populate_by_name=True)

    source_block_id: str = Field(..., alias="sourceBlockId", description="Block the respondent just finished")
    answers: Dict[str, Any] = Field(
        default_factory=dict,
        description="Answers keyed by block id. Missing keys evaluate every condition on them to false.",
    )


class ConnectionPatchRequest(BaseModel):
    """
    Partial connection update. Only fields present in the body are applied, so
    `{"defaultTargetId": null}` clears the default while `{}` changes nothing.
    """

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    form_id: Optional[str] = Field(default=None, alias="formId")
    source_id: Optional[str] = Field(default=None, alias="sourceId")
    default_target_id: Optional[str] = Field(default=None, alias="defaultTargetId")
    rules: Optional[List[Rule]] = Field(default=None, description="Full ordered rule list; replaces the stored one")
    is_explicit: Optional[bool] = Field(default=None, alias="isExplicit")
    order_index: Optional[int] = Field(default=None, alias="orderIndex")

    def fields(self) -> Dict[str, Any]:
        out = self.model_dump(exclude_unset=True, mode="json")
        if "rules" in out and out["rules"] is None:
            out["rules"] = []
        return out


class AutoConnectRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    target_block_id: Optional[str] = Field(
        default=None,
        alias="targetBlockId",
        description="Newly inserted block; only its neighbours are wired. Omit to rewire the whole form.",
    )


class ConversationRef(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    response_id: str = Field(..., alias="responseId")
    block_id: str = Field(..., alias="blockId")

    @field_validator("response_id", "block_id")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        t = str(v or "").strip()
        if not t:
            raise ValueError("must not be blank")
        return t


class SubmitAnswerRequest(ConversationRef):
    turn_index: int = Field(..., alias="turnIndex", ge=0)
    answer: str = Field(default="", description="Respondent's free-text answer")


class NavigateRequest(ConversationRef):
    turn_index: int = Field(..., alias="turnIndex", ge=0)


__all__ = [
    "NextBlockRequest",
    "ConnectionPatchRequest",
    "AutoConnectRequest",
    "ConversationRef",
    "SubmitAnswerRequest",
    "NavigateRequest",
]
