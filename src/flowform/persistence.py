"""
Idempotent persistence commands.

State changes happen in memory first; each one enqueues a command describing the
resulting fields. Commands are upserts keyed by identity (connection id, or
conversation id + turn index), so a collaborator can retry a flush without
double-appending turns or duplicating rules.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol, Union

from flowform.blocks import Block
from flowform.conversation.models import ConversationRecord, Turn, utc_now_iso
from flowform.errors import NotFound, StoreError
from flowform.workflow.conditions import Connection

logger = logging.getLogger("flowform.persistence")


_CONNECTION_KEYS = {
    "formId": "form_id",
    "sourceId": "source_id",
    "source_block_id": "source_id",
    "defaultTargetId": "default_target_id",
    "isExplicit": "is_explicit",
    "orderIndex": "order_index",
}


def normalize_connection_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    """camelCase API keys -> snake_case column names. Rules are replaced as a whole list."""
    out: Dict[str, Any] = {}
    for k, v in (fields or {}).items():
        out[_CONNECTION_KEYS.get(k, k)] = v
    if "rules" in out and isinstance(out["rules"], list):
        out["rules"] = [
            r.model_dump(mode="json") if hasattr(r, "model_dump") else r for r in out["rules"]
        ]
    return out


def apply_connection_update(
    connection: Optional[Connection],
    fields: Dict[str, Any],
    *,
    connection_id: Optional[str] = None,
) -> Connection:
    """Merge `fields` over `connection` (or create it). Applying the same fields twice is a no-op."""
    base: Dict[str, Any] = connection.model_dump(mode="json") if connection is not None else {}
    if connection_id:
        base["id"] = connection_id
    patch = normalize_connection_fields(fields)
    patch.pop("id", None)
    return Connection.model_validate({**base, **patch})


def apply_conversation_turn(turns: List[Turn], turn: Turn) -> List[Turn]:
    """Upsert `turn` by index. Indexes past the end would leave a gap and are refused."""
    out = list(turns)
    if turn.index < len(out):
        out[turn.index] = turn
        return out
    if turn.index == len(out):
        out.append(turn)
        return out
    raise StoreError(
        f"turn {turn.index} would leave a gap after {len(out)} stored turns",
        details={"index": turn.index, "stored": len(out)},
    )


@dataclass(frozen=True)
class ApplyConnectionUpdate:
    connection_id: str
    fields: Dict[str, Any]

    @property
    def key(self) -> str:
        return f"connection:{self.connection_id}"


@dataclass(frozen=True)
class ApplyConversationTurn:
    conversation_id: str
    response_id: str
    block_id: str
    turn: Turn

    @property
    def key(self) -> str:
        return f"turn:{self.conversation_id}:{self.turn.index}"


@dataclass(frozen=True)
class ApplyConversationStatus:
    conversation_id: str
    response_id: str
    block_id: str
    fields: Dict[str, Any]

    @property
    def key(self) -> str:
        return f"status:{self.conversation_id}"


Command = Union[ApplyConnectionUpdate, ApplyConversationTurn, ApplyConversationStatus]


class FormStore(Protocol):
    def list_blocks(self, form_id: str) -> List[Block]: ...

    def get_block(self, block_id: str) -> Optional[Block]: ...

    def list_connections(self, form_id: str) -> List[Connection]: ...

    def get_connection(self, connection_id: str) -> Optional[Connection]: ...

    def apply_connection_update(self, connection_id: str, fields: Dict[str, Any]) -> Connection: ...

    def get_conversation(self, response_id: str, block_id: str) -> Optional[ConversationRecord]: ...

    def apply_conversation_turn(
        self, conversation_id: str, turn: Turn, *, response_id: str, block_id: str
    ) -> ConversationRecord: ...

    def apply_conversation_status(
        self, conversation_id: str, fields: Dict[str, Any], *, response_id: str, block_id: str
    ) -> ConversationRecord: ...


def dispatch(store: FormStore, command: Command) -> Any:
    if isinstance(command, ApplyConnectionUpdate):
        return store.apply_connection_update(command.connection_id, command.fields)
    if isinstance(command, ApplyConversationTurn):
        return store.apply_conversation_turn(
            command.conversation_id, command.turn, response_id=command.response_id, block_id=command.block_id
        )
    if isinstance(command, ApplyConversationStatus):
        return store.apply_conversation_status(
            command.conversation_id, command.fields, response_id=command.response_id, block_id=command.block_id
        )
    raise TypeError(f"unknown command {type(command).__name__}")


ConfirmCallback = Callable[[Command, Any], None]
FailureCallback = Callable[[Command, BaseException], None]


@dataclass
class _Entry:
    command: Command
    on_confirm: List[ConfirmCallback] = field(default_factory=list)
    on_failure: List[FailureCallback] = field(default_factory=list)


@dataclass
class FlushReport:
    confirmed: List[Command] = field(default_factory=list)
    failed: Optional[Command] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.failed is None


def _coalesce(older: Command, newer: Command) -> Command:
    if isinstance(older, ApplyConnectionUpdate) and isinstance(newer, ApplyConnectionUpdate):
        return ApplyConnectionUpdate(connection_id=newer.connection_id, fields={**older.fields, **newer.fields})
    if isinstance(older, ApplyConversationStatus) and isinstance(newer, ApplyConversationStatus):
        return ApplyConversationStatus(
            conversation_id=newer.conversation_id,
            response_id=newer.response_id,
            block_id=newer.block_id,
            fields={**older.fields, **newer.fields},
        )
    return newer


class PersistenceQueue:
    """
    Ordered queue of pending commands.

    Commands with the same key are coalesced. A merged status or connection
    update moves to the tail, behind every write queued before it; a turn edit
    keeps its slot. `flush` applies entries in order and stops at the first
    failure; the failed command and everything after it stay queued so a later
    flush retries them.
    """

    def __init__(self) -> None:
        self._entries: List[_Entry] = []

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def pending(self) -> List[Command]:
        return [e.command for e in self._entries]

    def enqueue(
        self,
        command: Command,
        *,
        on_confirm: Optional[ConfirmCallback] = None,
        on_failure: Optional[FailureCallback] = None,
    ) -> None:
        for i, entry in enumerate(self._entries):
            if entry.command.key == command.key:
                entry.command = _coalesce(entry.command, command)
                if not isinstance(command, ApplyConversationTurn):
                    # turn writes keep their slot so turns still land in index order
                    self._entries.append(self._entries.pop(i))
                break
        else:
            entry = _Entry(command=command)
            self._entries.append(entry)
        if on_confirm is not None:
            entry.on_confirm.append(on_confirm)
        if on_failure is not None:
            entry.on_failure.append(on_failure)

    def flush(self, store: FormStore) -> FlushReport:
        report = FlushReport()
        while self._entries:
            entry = self._entries[0]
            try:
                result = dispatch(store, entry.command)
            except Exception as exc:  # store errors are reported, the command stays queued
                logger.warning("Persistence command %s failed: %r", entry.command.key, exc)
                report.failed = entry.command
                report.error = exc
                for cb in entry.on_failure:
                    cb(entry.command, exc)
                return report
            self._entries.pop(0)
            report.confirmed.append(entry.command)
            for cb in entry.on_confirm:
                cb(entry.command, result)
        return report


class InMemoryStore:
    """Dict-backed `FormStore` for local runs and tests."""

    def __init__(
        self,
        *,
        blocks: Optional[List[Block]] = None,
        connections: Optional[List[Connection]] = None,
    ) -> None:
        self.blocks: Dict[str, Block] = {b.id: b for b in (blocks or [])}
        self.connections: Dict[str, Connection] = {c.id: c for c in (connections or [])}
        self.conversations: Dict[str, ConversationRecord] = {}

    def list_blocks(self, form_id: str) -> List[Block]:
        return [b for b in self.blocks.values() if b.form_id == form_id]

    def get_block(self, block_id: str) -> Optional[Block]:
        return self.blocks.get(block_id)

    def list_connections(self, form_id: str) -> List[Connection]:
        return [c for c in self.connections.values() if c.form_id == form_id]

    def get_connection(self, connection_id: str) -> Optional[Connection]:
        return self.connections.get(connection_id)

    def apply_connection_update(self, connection_id: str, fields: Dict[str, Any]) -> Connection:
        existing = self.connections.get(connection_id)
        if existing is None and "source_id" not in normalize_connection_fields(fields):
            raise NotFound(f"connection {connection_id} not found")
        updated = apply_connection_update(existing, fields, connection_id=connection_id)
        self.connections[connection_id] = updated
        return updated

    def get_conversation(self, response_id: str, block_id: str) -> Optional[ConversationRecord]:
        for rec in self.conversations.values():
            if rec.response_id == response_id and rec.block_id == block_id:
                return rec
        return None

    def _record(self, conversation_id: str, response_id: str, block_id: str) -> ConversationRecord:
        rec = self.conversations.get(conversation_id)
        if rec is None:
            rec = ConversationRecord(
                id=conversation_id,
                response_id=response_id,
                block_id=block_id,
                started_at=utc_now_iso(),
            )
            self.conversations[conversation_id] = rec
        return rec

    def apply_conversation_turn(
        self, conversation_id: str, turn: Turn, *, response_id: str, block_id: str
    ) -> ConversationRecord:
        rec = self._record(conversation_id, response_id, block_id)
        rec.turns = apply_conversation_turn(rec.turns, turn)
        return rec

    def apply_conversation_status(
        self, conversation_id: str, fields: Dict[str, Any], *, response_id: str, block_id: str
    ) -> ConversationRecord:
        rec = self._record(conversation_id, response_id, block_id)
        for k in ("next_question", "completed_at"):
            if k in fields:
                setattr(rec, k, fields[k])
        return rec


__all__ = [
    "normalize_connection_fields",
    "apply_connection_update",
    "apply_conversation_turn",
    "ApplyConnectionUpdate",
    "ApplyConversationTurn",
    "ApplyConversationStatus",
    "Command",
    "FormStore",
    "FlushReport",
    "PersistenceQueue",
    "InMemoryStore",
    "dispatch",
]
