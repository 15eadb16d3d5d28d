"""Tests for tip generation and completion parsing.

Tests: JSON cleaning, stage normalization, option validation, TipEngine
       request shape and error wrapping against a fake OpenAI client.

Run: pytest test_tip_engine.py
"""

import asyncio
import json
from types import SimpleNamespace

import pytest

from callcoach.models import ConversationStage, NextTipRequest, Speaker, TranscriptSegment
from callcoach.tip_engine import (
    GenerationError,
    TipEngine,
    clean_json_response,
    normalize_stage,
    parse_tip,
)

VALID_TIP = {
    "heading": "Find Pain",
    "stage": "DISCOVERY",
    "context": "Customer mentioned slow renewals",
    "options": [
        {"label": "Minimal", "script": "What slows renewals down?"},
        {"label": "Explanative", "script": "Teams we help lose weeks on renewals. Where does it stall for you?"},
    ],
}


class FakeCompletions:
    def __init__(self, content=None, error=None):
        self.content = content
        self.error = error
        self.kwargs = []

    async def create(self, **kwargs):
        self.kwargs.append(kwargs)
        if self.error:
            raise self.error
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def _engine(content=None, error=None):
    completions = FakeCompletions(content, error)
    client = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    return TipEngine(api_key="test", model="test-model", client=client), completions


def _history(n):
    speakers = [Speaker.AGENT, Speaker.CALLER]
    return [TranscriptSegment(speakers[i % 2], f"line {i}", 1000 + i) for i in range(n)]


# ======================================================================
# Test Group 1: Cleaning and normalization
# ======================================================================

def test_clean_json_strips_fences_and_chatter():
    raw = 'Sure! Here it is:\n```json\n{"heading": "Hi"}\n```\nGood luck.'
    assert clean_json_response(raw) == '{"heading": "Hi"}'


def test_clean_json_leaves_plain_json():
    assert clean_json_response('  {"a": 1}  ') == '{"a": 1}'


def test_normalize_stage_aliases():
    default = ConversationStage.DISCOVERY
    assert normalize_stage("REBUTTAL", default) is ConversationStage.OBJECTION_HANDLING
    assert normalize_stage("closing", default) is ConversationStage.NEXT_STEPS
    assert normalize_stage("value prop", default) is ConversationStage.VALUE_PROP
    assert normalize_stage("SMALL_TALK", default) is default
    assert normalize_stage(None, ConversationStage.GREETING) is ConversationStage.GREETING


# ======================================================================
# Test Group 2: parse_tip validation
# ======================================================================

def test_parse_tip_builds_recommendation():
    tip = parse_tip(json.dumps(VALID_TIP), "conv-1")
    assert tip.conversation_id == "conv-1"
    assert tip.stage is ConversationStage.DISCOVERY
    assert tip.heading == "Find Pain"
    assert [o.label for o in tip.options] == ["Minimal", "Explanative"]
    assert tip.recommendation_id
    assert tip.to_dict()["options"][0] == {"label": "Minimal", "script": "What slows renewals down?"}


def test_parse_tip_ids_are_unique():
    content = json.dumps(VALID_TIP)
    assert parse_tip(content, "c").recommendation_id != parse_tip(content, "c").recommendation_id


@pytest.mark.parametrize("content", [
    None,
    "",
    "   ",
    "not json at all",
    "[1, 2, 3]",
    json.dumps({"heading": "x"}),
    json.dumps({"heading": "x", "options": []}),
    json.dumps({"heading": "x", "options": [{"label": "Minimal"}]}),
    json.dumps({"heading": "x", "options": [{"label": "", "script": "Hi"}]}),
    json.dumps({"heading": "x", "options": ["Hi"]}),
])
def test_parse_tip_rejects_unusable_output(content):
    with pytest.raises(GenerationError):
        parse_tip(content, "conv-1")


# ======================================================================
# Test Group 3: TipEngine against a fake client
# ======================================================================

def test_greeting_uses_json_mode_and_recent_history():
    engine, completions = _engine(json.dumps({**VALID_TIP, "stage": "unknown"}))
    tip = asyncio.run(engine.generate_greeting_tip("conv-1", _history(12)))

    assert tip.stage is ConversationStage.GREETING
    call = completions.kwargs[0]
    assert call["model"] == "test-model"
    assert call["response_format"] == {"type": "json_object"}
    user = call["messages"][1]["content"]
    assert "line 11" in user and "line 7" in user
    assert "line 6" not in user


def test_periodic_uses_last_ten_segments():
    engine, completions = _engine(json.dumps(VALID_TIP))
    asyncio.run(engine.generate_periodic_tip("conv-1", _history(15)))
    user = completions.kwargs[0]["messages"][1]["content"]
    assert "line 5" in user and "line 14" in user
    assert ": line 4\n" not in user


def test_contextual_prompt_carries_capture():
    request = NextTipRequest(
        conversation_id="conv-1",
        selected_option=1,
        selected_script="What slows renewals down?",
        agent_response=TranscriptSegment(Speaker.AGENT, "So what slows your renewals?", 1),
        customer_reaction=TranscriptSegment(Speaker.CALLER, "Legal review, mostly.", 2),
        transcript_history=_history(3),
    )
    engine, completions = _engine(json.dumps({**VALID_TIP, "stage": "REBUTTAL"}))
    tip = asyncio.run(engine.generate_contextual_tip(request))

    assert tip.stage is ConversationStage.OBJECTION_HANDLING
    user = completions.kwargs[0]["messages"][1]["content"]
    assert "What slows renewals down?" in user
    assert "So what slows your renewals?" in user
    assert "Legal review, mostly." in user


def test_contextual_prompt_without_reaction():
    request = NextTipRequest(conversation_id="c", selected_option=1, selected_script="Hi there")
    prompt = TipEngine.build_contextual_prompt(request)
    assert "has not responded yet" in prompt
    assert "Hi there" in prompt


def test_provider_error_becomes_generation_error():
    engine, _ = _engine(error=RuntimeError("rate limited"))
    with pytest.raises(GenerationError):
        asyncio.run(engine.generate_periodic_tip("conv-1", []))


def test_empty_completion_becomes_generation_error():
    engine, _ = _engine(content=None)
    with pytest.raises(GenerationError):
        asyncio.run(engine.generate_greeting_tip("conv-1", []))
