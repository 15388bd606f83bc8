import asyncio
import dataclasses
import json
import time
from types import SimpleNamespace

import pytest
from dspy.utils import DummyLM

from flowform.config import QuestionLMConfig, question_lm_config
from flowform.conversation.generator import (
    FALLBACK_CLOSING_QUESTION,
    FALLBACK_QUESTION,
    DspyQuestionGenerator,
    FollowUpQuestionProgram,
    FollowUpQuestionSignature,
    GeneratedQuestion,
    fallback_question,
)
from flowform.conversation.prompts import build_follow_up_prompt, build_transcript_json
from flowform.errors import GenerationFailed

from conftest import make_block

_CFG = QuestionLMConfig(
    provider="groq",
    model="groq/openai/gpt-oss-20b",
    model_name="openai/gpt-oss-20b",
    temperature=0.7,
    max_tokens=200,
    timeout_sec=2.0,
)


class _OfflineGenerator(DspyQuestionGenerator):
    def _lm(self, cfg):
        return None


def _run(gen, questions=("Start?",), answers=("a0",), turn_index=1, max_questions=3):
    return asyncio.run(gen(list(questions), list(answers), turn_index, max_questions))


def test_fallback_question_uses_closing_prompt_on_final_slot():
    assert fallback_question(1, 3) == FALLBACK_QUESTION
    assert fallback_question(2, 3) == FALLBACK_CLOSING_QUESTION
    assert fallback_question(7, 0) == FALLBACK_QUESTION


def test_program_receives_transcript_and_output_is_cleaned():
    seen = {}

    def program(**kwargs):
        seen.update(kwargs)
        return SimpleNamespace(next_question='  "What made you choose us?" ', is_final=False)

    gen = _OfflineGenerator(starter_prompt="Start?", instructions="Be brief", lm_config=_CFG, program=program)
    result = _run(gen)
    assert result == GeneratedQuestion(question="What made you choose us?", complete=False)
    assert json.loads(seen["transcript_json"]) == [{"question": "Start?", "answer": "a0"}]
    assert seen["block_instructions"] == "Be brief"
    assert seen["turn_index"] == 1


def test_final_flag_only_completes_unbounded_conversations():
    program = lambda **kw: SimpleNamespace(next_question="Anything else?", is_final=True)  # noqa: E731
    gen = _OfflineGenerator(lm_config=_CFG, program=program)
    assert _run(gen, max_questions=3).complete is False
    assert _run(gen, max_questions=0).complete is True


def test_missing_configuration_raises(monkeypatch):
    monkeypatch.setenv("FLOWFORM_QUESTION_PROVIDER", "groq")
    monkeypatch.delenv("GROQ_API_KEY", raising=False)
    gen = _OfflineGenerator(program=lambda **kw: SimpleNamespace(next_question="x"))
    with pytest.raises(GenerationFailed):
        _run(gen)


def test_program_error_and_empty_output_raise():
    def boom(**kwargs):
        raise RuntimeError("rate limited")

    with pytest.raises(GenerationFailed):
        _run(_OfflineGenerator(lm_config=_CFG, program=boom))
    with pytest.raises(GenerationFailed):
        _run(_OfflineGenerator(lm_config=_CFG, program=lambda **kw: SimpleNamespace(next_question="   ")))


def test_timeout_raises_generation_failed():
    cfg = dataclasses.replace(_CFG, timeout_sec=0.05)

    def slow(**kwargs):
        time.sleep(0.5)
        return SimpleNamespace(next_question="late")

    with pytest.raises(GenerationFailed):
        _run(_OfflineGenerator(lm_config=cfg, program=slow))


def test_for_block_reads_block_settings():
    block = make_block(
        "chat",
        0,
        type="ai_conversation",
        settings={"starterPrompt": "Why us?", "aiInstructions": "Stay friendly", "temperature": "0.2"},
    )
    gen = DspyQuestionGenerator.for_block(block, program=lambda **kw: None)
    assert gen.starter_prompt == "Why us?"
    assert gen.instructions == "Stay friendly"
    assert gen.temperature == 0.2


def test_question_lm_config_from_env(monkeypatch):
    monkeypatch.setenv("FLOWFORM_QUESTION_PROVIDER", "openai")
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    monkeypatch.setenv("FLOWFORM_QUESTION_MODEL", "gpt-4o-mini")
    monkeypatch.setenv("FLOWFORM_QUESTION_MAX_TOKENS", "123")
    cfg = question_lm_config(temperature=0.1)
    assert cfg is not None
    assert cfg.model == "openai/gpt-4o-mini"
    assert cfg.max_tokens == 123
    assert cfg.temperature == 0.1

    monkeypatch.setenv("FLOWFORM_QUESTION_PROVIDER", "someone-else")
    assert question_lm_config() is None


def test_prompt_helpers():
    assert "next_question" in build_follow_up_prompt()
    assert json.loads(build_transcript_json(["a", "b"], ["1"])) == [{"question": "a", "answer": "1"}]


class _DummyLMGenerator(DspyQuestionGenerator):
    def __init__(self, answers, **kwargs):
        super().__init__(**kwargs)
        self.answers = answers

    def _lm(self, cfg):
        return DummyLM(self.answers)


def test_signature_declares_block_inputs():
    assert list(FollowUpQuestionSignature.input_fields) == [
        "starter_prompt",
        "block_instructions",
        "transcript_json",
        "turn_index",
        "max_questions",
    ]
    assert list(FollowUpQuestionSignature.output_fields) == ["next_question", "is_final"]
    assert "HARD RULES" in FollowUpQuestionSignature.instructions


def test_real_program_runs_against_dummy_lm():
    gen = _DummyLMGenerator(
        [{"next_question": "What made you pick this plan?", "is_final": False}],
        starter_prompt="Why us?",
        instructions="Stay friendly",
        lm_config=_CFG,
    )
    assert isinstance(gen.program, FollowUpQuestionProgram)
    result = _run(gen, questions=["Why us?"], answers=["Price"], turn_index=1, max_questions=3)
    assert result == GeneratedQuestion(question="What made you pick this plan?", complete=False)
