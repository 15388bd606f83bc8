"""
Prompt text for the follow-up question signature.

Kept out of the signature module so the signature file stays short.
"""

from __future__ import annotations

import json
from typing import Any, Dict, List, Sequence

FOLLOW_UP_HARD_RULES = """HARD RULES:
- Output ONE question in `next_question`. Plain text only: no numbering, no quotes, no markdown.
- Ask about something the respondent has not already answered in `transcript_json`.
- Build on the most recent answer; stay on the topic set by `starter_prompt`.
- Follow `block_instructions` when present (tone, focus, things to avoid).
- Keep it short and conversational: one thing at a time, under 25 words.
- Set `is_final` to true only when `max_questions` is 0 and the topic is clearly exhausted.
"""

FINAL_SLOT_RULES = """FINAL QUESTION:
- When `turn_index` is `max_questions - 1`, this is the last question of the conversation.
  Ask a closing question that invites anything else the respondent wants to add.
"""


def build_follow_up_prompt() -> str:
    return "\n".join(
        [
            "You are the interviewer inside an adaptive form.",
            "Given the conversation so far, write the next follow-up question for the respondent.",
            "",
            "`transcript_json` is a JSON array of {question, answer} objects in the order they were asked.",
            "",
            FOLLOW_UP_HARD_RULES,
            FINAL_SLOT_RULES,
        ]
    )


def build_transcript_json(questions: Sequence[str], answers: Sequence[str]) -> str:
    """Pair questions with answers; unanswered trailing questions are dropped."""
    pairs: List[Dict[str, Any]] = []
    for q, a in zip(questions, answers):
        pairs.append({"question": str(q or ""), "answer": str(a or "")})
    return json.dumps(pairs, ensure_ascii=False, separators=(",", ":"))


__all__ = ["build_follow_up_prompt", "build_transcript_json", "FOLLOW_UP_HARD_RULES"]
