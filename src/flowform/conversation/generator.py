"""
Follow-up question generation for AI-conversation blocks.

The state machine only sees the `QuestionGenerator` call shape. The default
implementation is a DSPy `Predict` program; tests and local runs can pass any
async callable with the same arguments.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Sequence, Union

import anyio
import dspy

from flowform.config import QuestionLMConfig, question_lm_config
from flowform.conversation.prompts import build_follow_up_prompt, build_transcript_json
from flowform.errors import GenerationFailed

logger = logging.getLogger("flowform.conversation")

FALLBACK_QUESTION = "Could you tell me more about that?"
FALLBACK_CLOSING_QUESTION = (
    "Thank you for your responses! Is there anything else you'd like to add before we conclude?"
)


@dataclass(frozen=True)
class GeneratedQuestion:
    question: str
    complete: bool = False


GeneratorResult = Union[str, GeneratedQuestion]
QuestionGenerator = Callable[[Sequence[str], Sequence[str], int, int], Awaitable[GeneratorResult]]


def fallback_question(turn_index: int, max_questions: int) -> str:
    """Deterministic stand-in used when the generator fails. The final slot gets a closing prompt."""
    if max_questions > 0 and turn_index >= max_questions - 1:
        return FALLBACK_CLOSING_QUESTION
    return FALLBACK_QUESTION


def as_generated(result: GeneratorResult) -> GeneratedQuestion:
    if isinstance(result, GeneratedQuestion):
        return result
    return GeneratedQuestion(question=str(result or ""))


class FollowUpQuestionSignature(dspy.Signature):
    """
    Follow-up question signature.

    Prompt text lives in `flowform.conversation.prompts`.
    """

    starter_prompt: str = dspy.InputField(desc="The block's opening question; sets the topic.")
    block_instructions: str = dspy.InputField(desc="Author instructions for this block (may be empty).")
    transcript_json: str = dspy.InputField(desc="JSON array of {question, answer} pairs so far.")
    turn_index: int = dspy.InputField(desc="0-based index of the question being written.")
    max_questions: int = dspy.InputField(desc="Total questions in the conversation; 0 means unbounded.")
    next_question: str = dspy.OutputField(desc="The next question. Plain text only.")
    is_final: bool = dspy.OutputField(desc="True when the conversation should end after this question.")


FollowUpQuestionSignature.__doc__ = build_follow_up_prompt()


class FollowUpQuestionProgram(dspy.Module):
    """
    Thin DSPy wrapper for the follow-up call.
    """

    def __init__(self) -> None:
        super().__init__()
        self.prog = dspy.Predict(FollowUpQuestionSignature)

    def forward(  # type: ignore[override]
        self,
        *,
        starter_prompt: str,
        block_instructions: str,
        transcript_json: str,
        turn_index: int,
        max_questions: int,
    ):
        return self.prog(
            starter_prompt=starter_prompt,
            block_instructions=block_instructions,
            transcript_json=transcript_json,
            turn_index=turn_index,
            max_questions=max_questions,
        )


def _clean_question(raw: Any) -> str:
    text = str(raw or "").strip()
    if len(text) >= 2 and text[0] == text[-1] and text[0] in {'"', "'"}:
        text = text[1:-1].strip()
    return text


class DspyQuestionGenerator:
    """
    `QuestionGenerator` backed by DSPy.

    The LM is resolved from env on each call unless `lm_config` is given, so a
    missing key surfaces as `GenerationFailed` rather than at import time.
    """

    def __init__(
        self,
        *,
        starter_prompt: str = "",
        instructions: str = "",
        temperature: Optional[float] = None,
        lm_config: Optional[QuestionLMConfig] = None,
        program: Optional[Callable[..., Any]] = None,
    ) -> None:
        self.starter_prompt = starter_prompt
        self.instructions = instructions
        self.temperature = temperature
        self.lm_config = lm_config
        self.program = program or FollowUpQuestionProgram()

    @classmethod
    def for_block(cls, block: Any, **kwargs: Any) -> "DspyQuestionGenerator":
        return cls(
            starter_prompt=block.starter_prompt,
            instructions=block.ai_instructions,
            temperature=block.temperature,
            **kwargs,
        )

    def _lm(self, cfg: QuestionLMConfig) -> Any:
        return dspy.LM(
            model=cfg.model,
            temperature=cfg.temperature,
            max_tokens=cfg.max_tokens,
            timeout=cfg.timeout_sec,
            num_retries=0,
        )

    async def __call__(
        self,
        prior_questions: Sequence[str],
        prior_answers: Sequence[str],
        turn_index: int,
        max_questions: int,
    ) -> GeneratedQuestion:
        cfg = self.lm_config or question_lm_config(temperature=self.temperature)
        if cfg is None:
            raise GenerationFailed("question LM is not configured (missing provider or API key)")

        lm = self._lm(cfg)
        inputs = {
            "starter_prompt": self.starter_prompt or (prior_questions[0] if prior_questions else ""),
            "block_instructions": self.instructions,
            "transcript_json": build_transcript_json(prior_questions, prior_answers),
            "turn_index": int(turn_index),
            "max_questions": int(max_questions),
        }

        def _run() -> Any:
            with dspy.context(lm=lm):
                return self.program(**inputs)

        try:
            with anyio.fail_after(cfg.timeout_sec):
                pred = await anyio.to_thread.run_sync(_run, abandon_on_cancel=True)
        except TimeoutError as exc:
            raise GenerationFailed(
                f"question generation timed out after {cfg.timeout_sec}s", details={"model": cfg.model}
            ) from exc
        except GenerationFailed:
            raise
        except Exception as exc:
            raise GenerationFailed(f"question generation failed: {exc}", details={"model": cfg.model}) from exc

        question = _clean_question(getattr(pred, "next_question", None))
        if not question:
            raise GenerationFailed("question generation returned empty output", details={"model": cfg.model})
        complete = bool(getattr(pred, "is_final", False)) and max_questions <= 0
        logger.debug("Generated question %d (model=%s, final=%s)", turn_index, cfg.model, complete)
        return GeneratedQuestion(question=question, complete=complete)


__all__ = [
    "DspyQuestionGenerator",
    "FollowUpQuestionProgram",
    "FollowUpQuestionSignature",
    "GeneratedQuestion",
    "QuestionGenerator",
    "as_generated",
    "fallback_question",
    "FALLBACK_QUESTION",
    "FALLBACK_CLOSING_QUESTION",
]
