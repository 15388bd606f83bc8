from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional


def env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None or str(raw).strip() == "":
        return bool(default)
    return str(raw).strip().lower() in {"1", "true", "yes", "y", "on"}


def env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or str(raw).strip() == "":
        return int(default)
    try:
        return int(str(raw).strip())
    except ValueError:
        return int(default)


def env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or str(raw).strip() == "":
        return float(default)
    try:
        return float(str(raw).strip())
    except ValueError:
        return float(default)


def _prefixed_model(provider: str, model_name: str) -> str:
    p = str(provider or "").strip().lower()
    m = str(model_name or "").strip()
    if not p:
        return m
    if m.startswith(f"{p}/"):
        return m
    return f"{p}/{m}"


@dataclass(frozen=True)
class QuestionLMConfig:
    provider: str
    model: str
    model_name: str
    temperature: float
    max_tokens: int
    timeout_sec: float


def question_lm_config(*, temperature: Optional[float] = None) -> Optional[QuestionLMConfig]:
    """
    Resolve the LM used for follow-up questions, or None if not configured.

    Env resolution order:
      - FLOWFORM_QUESTION_PROVIDER / DSPY_PROVIDER (default groq)
      - FLOWFORM_QUESTION_MODEL / DSPY_MODEL (default openai/gpt-oss-20b)
      - FLOWFORM_QUESTION_TEMPERATURE / DSPY_TEMPERATURE, unless the block sets one
    The provider API key (GROQ_API_KEY / OPENAI_API_KEY) must be present.
    """
    provider = (os.getenv("FLOWFORM_QUESTION_PROVIDER") or os.getenv("DSPY_PROVIDER") or "groq").strip().lower()
    model_name = (os.getenv("FLOWFORM_QUESTION_MODEL") or os.getenv("DSPY_MODEL") or "openai/gpt-oss-20b").strip()

    if provider == "groq" and not os.getenv("GROQ_API_KEY"):
        return None
    if provider == "openai" and not os.getenv("OPENAI_API_KEY"):
        return None
    if provider not in {"groq", "openai"}:
        return None

    if temperature is None:
        temperature = env_float("FLOWFORM_QUESTION_TEMPERATURE", env_float("DSPY_TEMPERATURE", 0.7))

    return QuestionLMConfig(
        provider=provider,
        model=_prefixed_model(provider, model_name),
        model_name=model_name,
        temperature=float(temperature),
        max_tokens=env_int("FLOWFORM_QUESTION_MAX_TOKENS", 400),
        timeout_sec=env_float("FLOWFORM_QUESTION_TIMEOUT_SEC", 20.0),
    )


__all__ = ["env_bool", "env_int", "env_float", "QuestionLMConfig", "question_lm_config"]
