"""
Conversation state machine for AI-conversation blocks.

A conversation is an ordered list of turns plus a pending frontier question.
Answers at the frontier append a turn and ask the generator for the next
question; answers at a past index edit that turn in place. The only suspension
point is the generator call, guarded so one conversation never has two results
racing to apply.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional

from flowform.blocks import Block
from flowform.conversation.generator import (
    GeneratedQuestion,
    QuestionGenerator,
    as_generated,
    fallback_question,
)
from flowform.conversation.models import ConversationState, Turn, conversation_id_for, utc_now_iso
from flowform.errors import ConversationBusyError, ConversationCompleteError, InvalidTurnIndex
from flowform.persistence import ApplyConversationStatus, ApplyConversationTurn, PersistenceQueue

logger = logging.getLogger("flowform.conversation")

AdvanceCallback = Callable[[ConversationState], None]


@dataclass
class SubmitResult:
    turn: Turn
    edited: bool = False
    pending_question: Optional[str] = None
    complete: bool = False
    advance: bool = False
    used_fallback: bool = False
    discarded: bool = False


def _with_starter(turns: List[Turn], starter_prompt: str) -> List[Turn]:
    """Turn 0's question always comes from the block's current starter prompt."""
    if turns and starter_prompt:
        turns[0] = turns[0].model_copy(update={"question": starter_prompt, "is_starter": True})
    return turns


class ConversationSession:
    def __init__(
        self,
        state: ConversationState,
        generator: QuestionGenerator,
        queue: Optional[PersistenceQueue] = None,
        *,
        on_advance: Optional[AdvanceCallback] = None,
    ) -> None:
        self.state = state
        self.generator = generator
        self.queue = queue
        self.on_advance = on_advance
        self._busy = False
        self._token = 0
        self._last_used_fallback = False

    @classmethod
    def start(
        cls,
        block: Block,
        response_id: str,
        generator: QuestionGenerator,
        queue: Optional[PersistenceQueue] = None,
        **kwargs: Any,
    ) -> "ConversationSession":
        state = ConversationState(
            conversation_id=conversation_id_for(response_id, block.id),
            response_id=response_id,
            block_id=block.id,
            starter_prompt=block.starter_prompt,
            max_questions=block.max_questions,
        )
        return cls(state, generator, queue, **kwargs)

    @classmethod
    def resume(
        cls,
        block: Block,
        stored_turns: Iterable[Turn],
        *,
        response_id: str,
        generator: QuestionGenerator,
        queue: Optional[PersistenceQueue] = None,
        pending_question: Optional[str] = None,
        completed: bool = False,
        **kwargs: Any,
    ) -> "ConversationSession":
        """
        Rebuild a session from stored turns.

        A conversation that is already complete comes back with its advance latch
        spent, so reopening it never moves the respondent forward on its own.
        """
        turns = sorted(stored_turns, key=lambda t: t.index)
        turns = _with_starter([t.model_copy(update={"index": i}) for i, t in enumerate(turns)], block.starter_prompt)
        max_q = block.max_questions
        state = ConversationState(
            conversation_id=conversation_id_for(response_id, block.id),
            response_id=response_id,
            block_id=block.id,
            starter_prompt=block.starter_prompt,
            max_questions=max_q,
            turns=turns,
            pending_question=pending_question or None,
            explicit_complete=bool(completed) and max_q <= 0 and bool(turns),
            active_index=min(len(turns), max_q or len(turns)),
        )
        session = cls(state, generator, queue, **kwargs)
        if session.raw_complete:
            state.has_advanced = True
            state.pending_question = None
        return session

    # -- derived state ---------------------------------------------------

    @property
    def busy(self) -> bool:
        return self._busy

    @property
    def raw_complete(self) -> bool:
        s = self.state
        return s.explicit_complete or (s.max_questions > 0 and len(s.turns) >= s.max_questions)

    @property
    def is_editing(self) -> bool:
        return self.state.active_index < len(self.state.turns)

    @property
    def effective_complete(self) -> bool:
        """Completion as the UI sees it: reviewing a past turn keeps the block interactive."""
        return self.raw_complete and not self.is_editing

    @property
    def frontier_question(self) -> Optional[str]:
        if self.raw_complete:
            return None
        if not self.state.turns:
            return self.state.starter_prompt
        return self.state.pending_question

    def display_turns(self) -> List[Turn]:
        """Turns as shown to the respondent; turn 0 always shows the current starter prompt."""
        return _with_starter(list(self.state.turns), self.state.starter_prompt)

    # -- persistence -----------------------------------------------------

    def _enqueue_turn(self, turn: Turn) -> None:
        if self.queue is None:
            return
        s = self.state
        self.queue.enqueue(
            ApplyConversationTurn(
                conversation_id=s.conversation_id, response_id=s.response_id, block_id=s.block_id, turn=turn
            )
        )

    def _enqueue_status(self, fields: Dict[str, Any]) -> None:
        if self.queue is None:
            return
        s = self.state
        self.queue.enqueue(
            ApplyConversationStatus(
                conversation_id=s.conversation_id, response_id=s.response_id, block_id=s.block_id, fields=fields
            )
        )

    # -- advance latch ---------------------------------------------------

    def check_advance(self) -> bool:
        """Fire the advance signal if due. Returns True only on the call that fires it."""
        s = self.state
        if s.has_advanced or s.is_revisit:
            return False
        if not self.effective_complete:
            return False
        s.has_advanced = True
        logger.debug("Conversation %s complete; advancing", s.conversation_id)
        if self.on_advance is not None:
            self.on_advance(s)
        return True

    # -- generator -------------------------------------------------------

    async def _generate(self) -> Optional[GeneratedQuestion]:
        """Ask for the question at the frontier. Returns None if the result was abandoned."""
        s = self.state
        self._busy = True
        self._token += 1
        token = self._token
        turn_index = len(s.turns)
        used_fallback = False
        try:
            try:
                gen = as_generated(await self.generator(s.questions, s.answers, turn_index, s.max_questions))
                if not gen.question.strip() and not gen.complete:
                    raise ValueError("generator returned an empty question")
            except Exception as exc:  # generation failure never blocks the respondent
                logger.warning("Question generation failed for %s turn %d: %r", s.conversation_id, turn_index, exc)
                gen = GeneratedQuestion(question=fallback_question(turn_index, s.max_questions))
                used_fallback = True
        finally:
            if token == self._token:
                self._busy = False

        if token != self._token:
            logger.info("Discarding abandoned question for %s turn %d", s.conversation_id, turn_index)
            return None

        if gen.complete and s.max_questions <= 0:
            s.explicit_complete = True
            s.pending_question = None
            self._enqueue_status({"next_question": None, "completed_at": utc_now_iso()})
        else:
            s.pending_question = gen.question.strip()
            self._enqueue_status({"next_question": s.pending_question})
        self._last_used_fallback = used_fallback
        return gen

    def abandon_pending(self) -> None:
        """Drop an in-flight generator result. Turns already appended stay."""
        if self._busy:
            self._token += 1
            self._busy = False

    async def ensure_pending_question(self) -> Optional[str]:
        """Regenerate a missing frontier question, e.g. after a reload mid-conversation."""
        s = self.state
        if self._busy:
            raise ConversationBusyError("a question is already being generated", details={"conversation": s.conversation_id})
        if self.raw_complete or not s.turns or s.pending_question:
            return self.frontier_question
        await self._generate()
        return self.frontier_question

    # -- actions ---------------------------------------------------------

    async def submit_answer(self, turn_index: int, answer: str) -> SubmitResult:
        s = self.state
        if self._busy:
            raise ConversationBusyError(
                "an answer is already being processed", details={"conversation": s.conversation_id}
            )
        if turn_index < 0 or turn_index > len(s.turns):
            raise InvalidTurnIndex(
                f"turn {turn_index} is outside [0, {len(s.turns)}]",
                details={"turnIndex": turn_index, "turns": len(s.turns)},
            )
        answer = str(answer or "")

        if turn_index < len(s.turns):
            old = s.turns[turn_index]
            turn = old.model_copy(update={"answer": answer, "edited_at": utc_now_iso()})
            s.turns[turn_index] = turn
            self._enqueue_turn(turn)
            s.active_index = turn_index + 1
            advance = self.check_advance()
            return SubmitResult(
                turn=turn,
                edited=True,
                pending_question=self.frontier_question,
                complete=self.effective_complete,
                advance=advance,
            )

        if self.raw_complete:
            raise ConversationCompleteError(
                "conversation is complete", details={"conversation": s.conversation_id, "turns": len(s.turns)}
            )

        question = self.frontier_question
        if question is None:
            # frontier question was abandoned before it arrived
            await self._generate()
            if self.raw_complete:
                raise ConversationCompleteError(
                    "conversation is complete", details={"conversation": s.conversation_id, "turns": len(s.turns)}
                )
            question = self.frontier_question
        if not question:
            logger.warning("No frontier question for %s turn %d; storing fallback", s.conversation_id, turn_index)
            question = fallback_question(turn_index, s.max_questions)
        turn = Turn(index=turn_index, question=question, answer=answer, is_starter=turn_index == 0)
        s.turns.append(turn)
        s.pending_question = None
        s.active_index = len(s.turns)
        # Enqueued before the generator call; an abandoned result keeps the turn.
        self._enqueue_turn(turn)

        used_fallback = False
        discarded = False
        if self.raw_complete:
            self._enqueue_status({"next_question": None, "completed_at": utc_now_iso()})
        else:
            self._last_used_fallback = False
            gen = await self._generate()
            discarded = gen is None
            used_fallback = self._last_used_fallback

        advance = False if discarded else self.check_advance()
        return SubmitResult(
            turn=turn,
            pending_question=self.frontier_question,
            complete=self.effective_complete,
            advance=advance,
            used_fallback=used_fallback,
            discarded=discarded,
        )

    def navigate_to(self, turn_index: int) -> int:
        """
        Move the view pointer within `[0, len(turns)]`.

        Once complete, index `len(turns)` is the closed end of the conversation rather than
        an open question; moving there ends review mode but never re-fires the advance latch.
        """
        s = self.state
        upper = len(s.turns)
        if turn_index < 0 or turn_index > upper:
            raise InvalidTurnIndex(
                f"turn {turn_index} is outside [0, {upper}]",
                details={"turnIndex": turn_index, "turns": len(s.turns)},
            )
        s.active_index = turn_index
        return turn_index

    def leave_block(self) -> None:
        self.abandon_pending()
        self.state.has_left_block = True

    def return_to_block(self) -> None:
        if self.state.has_left_block:
            self.state.is_revisit = True

    def snapshot(self) -> Dict[str, Any]:
        s = self.state
        return {
            "conversationId": s.conversation_id,
            "responseId": s.response_id,
            "blockId": s.block_id,
            "maxQuestions": s.max_questions,
            "turns": [t.model_dump(by_alias=True) for t in self.display_turns()],
            "activeIndex": s.active_index,
            "frontierQuestion": self.frontier_question,
            "complete": self.effective_complete,
            "rawComplete": self.raw_complete,
            "editing": self.is_editing,
            "busy": self._busy,
            "hasAdvanced": s.has_advanced,
            "isRevisit": s.is_revisit,
        }


__all__ = ["ConversationSession", "SubmitResult"]
