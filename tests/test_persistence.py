import asyncio

import pytest

from conftest import make_block, make_connection, make_rule

from flowform.conversation.models import Turn, conversation_id_for
from flowform.conversation.state import ConversationSession
from flowform.errors import NotFound, StoreError
from flowform.persistence import (
    ApplyConnectionUpdate,
    ApplyConversationStatus,
    ApplyConversationTurn,
    InMemoryStore,
    PersistenceQueue,
    apply_connection_update,
    apply_conversation_turn,
)


class FlakyStore(InMemoryStore):
    """Fails the first `failures` writes, then behaves."""

    def __init__(self, failures=1, **kwargs):
        super().__init__(**kwargs)
        self.failures = failures

    def _maybe_fail(self):
        if self.failures > 0:
            self.failures -= 1
            raise StoreError("connection reset")

    def apply_connection_update(self, connection_id, fields):
        self._maybe_fail()
        return super().apply_connection_update(connection_id, fields)

    def apply_conversation_turn(self, conversation_id, turn, *, response_id, block_id):
        self._maybe_fail()
        return super().apply_conversation_turn(conversation_id, turn, response_id=response_id, block_id=block_id)


def test_turn_upsert_is_idempotent():
    t0 = Turn(index=0, question="q0", answer="a0")
    t1 = Turn(index=1, question="q1", answer="a1")
    turns = apply_conversation_turn([], t0)
    turns = apply_conversation_turn(turns, t1)
    again = apply_conversation_turn(turns, t1)
    assert [t.answer for t in again] == ["a0", "a1"]
    with pytest.raises(StoreError):
        apply_conversation_turn(turns, Turn(index=5, question="q5"))


def test_connection_update_is_idempotent_and_accepts_camel_case():
    conn = make_connection("q1", default="q2", rules=[make_rule("q3", [{"field": "q1", "value": "x"}])], id="c1")
    fields = {"defaultTargetId": "q4", "isExplicit": True}
    once = apply_connection_update(conn, fields)
    twice = apply_connection_update(once, fields)
    assert once == twice
    assert twice.default_target_id == "q4"
    assert len(twice.rules) == 1


def test_queue_coalesces_connection_updates():
    queue = PersistenceQueue()
    queue.enqueue(ApplyConnectionUpdate("c1", {"default_target_id": "a"}))
    queue.enqueue(ApplyConnectionUpdate("c1", {"is_explicit": True}))
    queue.enqueue(ApplyConnectionUpdate("c2", {"default_target_id": "b"}))
    assert len(queue) == 2
    assert queue.pending[0].fields == {"default_target_id": "a", "is_explicit": True}


def test_failed_flush_keeps_commands_for_retry():
    store = FlakyStore(failures=1, connections=[make_connection("q1", default="q2", id="c1")])
    queue = PersistenceQueue()
    confirmed, failed = [], []
    queue.enqueue(
        ApplyConnectionUpdate("c1", {"default_target_id": "q3"}),
        on_confirm=lambda cmd, result: confirmed.append(result.default_target_id),
        on_failure=lambda cmd, exc: failed.append(str(exc)),
    )
    cid = conversation_id_for("r1", "chat")
    queue.enqueue(ApplyConversationTurn(cid, "r1", "chat", Turn(index=0, question="q", answer="a")))

    first = queue.flush(store)
    assert not first.ok
    assert failed == ["connection reset"]
    assert len(queue) == 2

    second = queue.flush(store)
    assert second.ok
    assert confirmed == ["q3"]
    assert len(queue) == 0
    assert store.get_connection("c1").default_target_id == "q3"


def test_replaying_turn_commands_does_not_duplicate():
    store = InMemoryStore()
    cid = conversation_id_for("r1", "chat")
    cmd = ApplyConversationTurn(cid, "r1", "chat", Turn(index=0, question="q", answer="a"))
    for _ in range(3):
        queue = PersistenceQueue()
        queue.enqueue(cmd)
        queue.enqueue(ApplyConversationStatus(cid, "r1", "chat", {"next_question": "next"}))
        assert queue.flush(store).ok
    record = store.get_conversation("r1", "chat")
    assert len(record.turns) == 1
    assert record.next_question == "next"
    assert record.id == cid


def test_updating_unknown_connection_without_source_is_not_found():
    store = InMemoryStore()
    with pytest.raises(NotFound):
        store.apply_connection_update("nope", {"default_target_id": "x"})
    created = store.apply_connection_update("new", {"sourceId": "q1", "defaultTargetId": "q2"})
    assert created.id == "new"
    assert created.source_id == "q1"


def test_conversation_ids_are_stable():
    assert conversation_id_for("r1", "b1") == conversation_id_for("r1", "b1")
    assert conversation_id_for("r1", "b1") != conversation_id_for("r1", "b2")


class FailsTurnStore(InMemoryStore):
    """Refuses writes of one turn index."""

    def __init__(self, index, **kwargs):
        super().__init__(**kwargs)
        self.index = index

    def apply_conversation_turn(self, conversation_id, turn, *, response_id, block_id):
        if turn.index == self.index:
            raise StoreError("write timeout")
        return super().apply_conversation_turn(conversation_id, turn, response_id=response_id, block_id=block_id)


def test_completion_is_not_stored_before_the_last_turn():
    block = make_block("chat", 0, type="ai_conversation", settings={"starterPrompt": "Hi?", "maxQuestions": 2})

    async def gen(questions, answers, turn_index, max_questions):
        return f"question {turn_index}"

    session = ConversationSession.start(block, "r1", gen, PersistenceQueue())
    asyncio.run(session.submit_answer(0, "a0"))
    asyncio.run(session.submit_answer(1, "a1"))
    assert session.effective_complete

    store = FailsTurnStore(1, blocks=[block])
    assert not session.queue.flush(store).ok
    record = store.get_conversation("r1", "chat")
    assert len(record.turns) == 1
    assert record.completed_at is None

    store.index = None
    assert session.queue.flush(store).ok
    record = store.get_conversation("r1", "chat")
    assert len(record.turns) == 2
    assert record.completed_at is not None


def test_merged_status_moves_behind_turns_but_turn_edits_keep_their_slot():
    cid = conversation_id_for("r1", "chat")
    queue = PersistenceQueue()
    queue.enqueue(ApplyConversationTurn(cid, "r1", "chat", Turn(index=0, question="q0", answer="a0")))
    queue.enqueue(ApplyConversationStatus(cid, "r1", "chat", {"next_question": "q1"}))
    queue.enqueue(ApplyConversationTurn(cid, "r1", "chat", Turn(index=1, question="q1", answer="a1")))
    queue.enqueue(ApplyConversationStatus(cid, "r1", "chat", {"completed_at": "2026-01-01T00:00:00+00:00"}))
    queue.enqueue(ApplyConversationTurn(cid, "r1", "chat", Turn(index=0, question="q0", answer="edited")))

    kinds = [type(c).__name__ for c in queue.pending]
    assert kinds == ["ApplyConversationTurn", "ApplyConversationTurn", "ApplyConversationStatus"]
    assert queue.pending[0].turn.answer == "edited"
    assert queue.pending[2].fields == {"next_question": "q1", "completed_at": "2026-01-01T00:00:00+00:00"}
