"""
Supabase-backed form store.

Blocks live in `form_blocks`, connections in `workflow_edges`, and AI
conversations in `dynamic_block_responses` (one row per response + block).
Writes go through `upsert` on the row id so a retried command lands on the same
row instead of inserting a duplicate.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, List, Optional

from supabase import Client, create_client

from flowform.blocks import Block
from flowform.conversation.models import ConversationRecord, Turn, utc_now_iso
from flowform.errors import NotFound, StoreError
from flowform.persistence import apply_connection_update, apply_conversation_turn, normalize_connection_fields
from flowform.workflow.conditions import Connection

logger = logging.getLogger("api.supabase")

BLOCKS_TABLE = "form_blocks"
EDGES_TABLE = "workflow_edges"
CONVERSATIONS_TABLE = "dynamic_block_responses"

_client: Optional[Client] = None


def get_supabase_client() -> Optional[Client]:
    """Get or create Supabase client (singleton)."""
    global _client

    if _client is not None:
        return _client

    url = os.getenv("SUPABASE_URL") or os.getenv("NEXT_PUBLIC_SUPABASE_URL")
    # Service role key for the backend; anon key only for local read-mostly setups
    key = os.getenv("SUPABASE_SERVICE_ROLE_KEY") or os.getenv("NEXT_PUBLIC_SUPABASE_ANON_KEY")

    if not url or not key:
        return None

    try:
        _client = create_client(url, key)
        return _client
    except Exception as e:
        logger.error("Failed to create Supabase client: %s", e)
        return None


def _connection_row(conn: Connection) -> Dict[str, Any]:
    return {
        "id": conn.id,
        "form_id": conn.form_id,
        "source_id": conn.source_id,
        "default_target_id": conn.default_target_id,
        "rules": [r.model_dump(mode="json") for r in conn.rules],
        "is_explicit": conn.is_explicit,
        "order_index": conn.order_index,
    }


def _conversation_row(rec: ConversationRecord) -> Dict[str, Any]:
    return {
        "id": rec.id,
        "response_id": rec.response_id,
        "block_id": rec.block_id,
        "conversation": [t.model_dump(mode="json") for t in rec.turns],
        "next_question": rec.next_question,
        "started_at": rec.started_at,
        "completed_at": rec.completed_at,
    }


class SupabaseStore:
    """`FormStore` over the Supabase tables. Reads and writes are synchronous client calls."""

    def __init__(self, client: Client) -> None:
        self.client = client

    def _select(self, table: str, column: str, value: str) -> List[Dict[str, Any]]:
        try:
            result = self.client.table(table).select("*").eq(column, value).execute()
        except Exception as e:
            raise StoreError(f"failed to read {table}: {e}", details={"table": table}) from e
        return [row for row in (result.data or []) if isinstance(row, dict)]

    def _upsert(self, table: str, row: Dict[str, Any]) -> None:
        try:
            self.client.table(table).upsert(row, on_conflict="id").execute()
        except Exception as e:
            raise StoreError(f"failed to write {table}: {e}", details={"table": table, "id": row.get("id")}) from e

    # -- blocks ----------------------------------------------------------

    def list_blocks(self, form_id: str) -> List[Block]:
        return [Block.model_validate(row) for row in self._select(BLOCKS_TABLE, "form_id", form_id)]

    def get_block(self, block_id: str) -> Optional[Block]:
        rows = self._select(BLOCKS_TABLE, "id", block_id)
        return Block.model_validate(rows[0]) if rows else None

    # -- connections -----------------------------------------------------

    def list_connections(self, form_id: str) -> List[Connection]:
        out: List[Connection] = []
        for row in self._select(EDGES_TABLE, "form_id", form_id):
            try:
                out.append(Connection.model_validate(row))
            except ValueError as e:
                # navigation falls back to order for this source
                logger.warning("Skipping unreadable connection row %s: %s", row.get("id"), e)
        return out

    def get_connection(self, connection_id: str) -> Optional[Connection]:
        rows = self._select(EDGES_TABLE, "id", connection_id)
        return Connection.model_validate(rows[0]) if rows else None

    def apply_connection_update(self, connection_id: str, fields: Dict[str, Any]) -> Connection:
        existing = self.get_connection(connection_id)
        if existing is None and "source_id" not in normalize_connection_fields(fields):
            raise NotFound(f"connection {connection_id} not found")
        updated = apply_connection_update(existing, fields, connection_id=connection_id)
        self._upsert(EDGES_TABLE, _connection_row(updated))
        return updated

    # -- conversations ---------------------------------------------------

    def get_conversation(self, response_id: str, block_id: str) -> Optional[ConversationRecord]:
        try:
            result = (
                self.client.table(CONVERSATIONS_TABLE)
                .select("*")
                .eq("response_id", response_id)
                .eq("block_id", block_id)
                .limit(1)
                .execute()
            )
        except Exception as e:
            raise StoreError(f"failed to read {CONVERSATIONS_TABLE}: {e}") from e
        rows = result.data or []
        return ConversationRecord.model_validate(rows[0]) if rows else None

    def _load_or_new(self, conversation_id: str, response_id: str, block_id: str) -> ConversationRecord:
        rows = self._select(CONVERSATIONS_TABLE, "id", conversation_id)
        if rows:
            return ConversationRecord.model_validate(rows[0])
        return ConversationRecord(
            id=conversation_id, response_id=response_id, block_id=block_id, started_at=utc_now_iso()
        )

    def apply_conversation_turn(
        self, conversation_id: str, turn: Turn, *, response_id: str, block_id: str
    ) -> ConversationRecord:
        rec = self._load_or_new(conversation_id, response_id, block_id)
        rec.turns = apply_conversation_turn(rec.turns, turn)
        self._upsert(CONVERSATIONS_TABLE, _conversation_row(rec))
        return rec

    def apply_conversation_status(
        self, conversation_id: str, fields: Dict[str, Any], *, response_id: str, block_id: str
    ) -> ConversationRecord:
        rec = self._load_or_new(conversation_id, response_id, block_id)
        for k in ("next_question", "completed_at"):
            if k in fields:
                setattr(rec, k, fields[k])
        self._upsert(CONVERSATIONS_TABLE, _conversation_row(rec))
        return rec


def get_store() -> Optional[SupabaseStore]:
    client = get_supabase_client()
    if client is None:
        return None
    return SupabaseStore(client)


__all__ = ["get_supabase_client", "get_store", "SupabaseStore"]
