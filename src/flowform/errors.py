from __future__ import annotations

from typing import Any, Dict, Optional


class FlowformError(Exception):
    """Base error for authoring and conversation APIs. The navigation path never raises these."""

    code = "flowform_error"
    http_status = 400

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_payload(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"ok": False, "error": self.code, "message": self.message}
        if self.details:
            out["details"] = self.details
        return out


class ConditionValidationError(FlowformError):
    """An author tried to save a rule or condition that cannot be evaluated."""

    code = "invalid_condition"
    http_status = 422


class InvalidTurnIndex(FlowformError):
    code = "invalid_turn_index"
    http_status = 400


class ConversationBusyError(FlowformError):
    """A question generation call is still outstanding for this conversation."""

    code = "conversation_busy"
    http_status = 409


class ConversationCompleteError(FlowformError):
    code = "conversation_complete"
    http_status = 409


class GenerationFailed(FlowformError):
    """
    The question generator rejected or timed out.

    Recovered inside the conversation state machine; never reaches a respondent.
    """

    code = "generation_failed"
    http_status = 502


class NotFound(FlowformError):
    code = "not_found"
    http_status = 404


class StoreError(FlowformError):
    code = "store_error"
    http_status = 503


__all__ = [
    "FlowformError",
    "ConditionValidationError",
    "InvalidTurnIndex",
    "ConversationBusyError",
    "ConversationCompleteError",
    "GenerationFailed",
    "NotFound",
    "StoreError",
]
