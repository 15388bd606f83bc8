"""
Live conversation sessions for the HTTP layer.

Sessions are cached per conversation id so the busy guard and the advance latch
survive across requests. A cache miss resumes the session from the store.
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, Optional

from flowform.blocks import Block, BlockType
from flowform.conversation.generator import DspyQuestionGenerator, QuestionGenerator
from flowform.conversation.models import conversation_id_for
from flowform.conversation.state import ConversationSession
from flowform.errors import NotFound
from flowform.persistence import FlushReport, FormStore, PersistenceQueue

logger = logging.getLogger("flowform.conversation")

GeneratorFactory = Callable[[Block], QuestionGenerator]


def default_generator_factory(block: Block) -> QuestionGenerator:
    return DspyQuestionGenerator.for_block(block)


class ConversationRegistry:
    def __init__(self, store: FormStore, generator_factory: Optional[GeneratorFactory] = None) -> None:
        self.store = store
        self.generator_factory = generator_factory or default_generator_factory
        self._sessions: Dict[str, ConversationSession] = {}

    def _block(self, block_id: str) -> Block:
        block = self.store.get_block(block_id)
        if block is None or block.is_deleted:
            raise NotFound(f"block {block_id} not found")
        if block.type != BlockType.AI_CONVERSATION:
            raise NotFound(f"block {block_id} is not an AI conversation block", details={"type": block.type})
        return block

    def get(self, response_id: str, block_id: str) -> ConversationSession:
        key = conversation_id_for(response_id, block_id)
        session = self._sessions.get(key)
        if session is not None:
            return session

        block = self._block(block_id)
        generator = self.generator_factory(block)
        record = self.store.get_conversation(response_id, block_id)
        queue = PersistenceQueue()
        if record is None or not record.turns:
            session = ConversationSession.start(block, response_id, generator, queue)
        else:
            session = ConversationSession.resume(
                block,
                record.turns,
                response_id=response_id,
                generator=generator,
                queue=queue,
                pending_question=record.next_question,
                completed=bool(record.completed_at),
            )
            logger.info("Resumed conversation %s with %d turn(s)", key, len(record.turns))
        self._sessions[key] = session
        return session

    def flush(self, session: ConversationSession) -> FlushReport:
        assert session.queue is not None
        report = session.queue.flush(self.store)
        if not report.ok:
            logger.warning(
                "Conversation %s has %d unsaved command(s): %r",
                session.state.conversation_id,
                len(session.queue),
                report.error,
            )
        return report

    def forget(self, response_id: str, block_id: str) -> None:
        self._sessions.pop(conversation_id_for(response_id, block_id), None)


__all__ = ["ConversationRegistry", "GeneratorFactory", "default_generator_factory"]
