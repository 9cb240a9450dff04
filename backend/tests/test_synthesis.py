from __future__ import annotations

import json

import pytest

from coachdesk.pipeline.synthesis import (
    ERROR_SUMMARY,
    ClientContext,
    Degraded,
    Parsed,
    SynthesisFailure,
    SynthesisResult,
    clamp_score,
    parse_action_items,
    parse_summary,
    strip_code_fences,
    synthesize,
)


TRANSCRIPT = "[0:00] coach: How are you?\n[0:10] client: Great, ready to apply for the promotion."
CLIENT = ClientContext(name="Dana Reyes", coaching_type="career", goals=("get promoted",))


class ScriptedGenerator:
    """Returns (or raises) one scripted reply per call, in order."""

    def __init__(self, *replies) -> None:
        self.replies = list(replies)
        self.prompts: list[str] = []

    async def generate(self, prompt: str) -> str:
        self.prompts.append(prompt)
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


SUMMARY_JSON = json.dumps(
    {
        "summary": "Dana is ready to apply for the promotion.",
        "summary_structured": {
            "overview": "Promotion readiness",
            "key_themes": ["confidence", "career growth"],
            "breakthroughs": ["Decided to apply"],
            "concerns": [],
            "coaching_techniques_used": ["powerful questions"],
        },
        "mood_score": 82,
        "energy_score": 77.6,
        "engagement_score": 90,
        "breakthrough_flagged": True,
    }
)
ACTIONS_JSON = json.dumps(
    [
        {"task": "Update resume", "priority": "HIGH", "due_date_suggestion": "Friday"},
        {"task": "Ask manager for feedback", "priority": "urgent"},
        {"task": "   "},
        "not an object",
    ]
)


@pytest.mark.asyncio
async def test_full_run_produces_scores_and_prioritised_items() -> None:
    generator = ScriptedGenerator(SUMMARY_JSON, ACTIONS_JSON, "Great work today, Dana.")

    outcome = await synthesize(generator, transcript=TRANSCRIPT, client=CLIENT, session_number=4)

    assert isinstance(outcome, SynthesisResult)
    assert outcome.degraded_stages == []
    scores = outcome.scores
    assert scores.summary
    assert (scores.mood_score, scores.energy_score, scores.engagement_score) == (82, 78, 90)
    assert all(1 <= value <= 100 for value in (scores.mood_score, scores.energy_score, scores.engagement_score))
    assert scores.breakthrough_flagged is True
    assert [item.task for item in outcome.action_items] == ["Update resume", "Ask manager for feedback"]
    assert all(item.priority in {"high", "medium", "low"} for item in outcome.action_items)
    assert outcome.action_items[0].due_date_suggestion == "Friday"
    assert outcome.followup_email_body == "Great work today, Dana."
    assert "get promoted" in generator.prompts[0]
    assert "Session Number: 4" in generator.prompts[0]
    assert "Update resume" in generator.prompts[2]


@pytest.mark.asyncio
async def test_non_json_summary_degrades_and_pipeline_continues() -> None:
    generator = ScriptedGenerator("Sorry, I can't help with that.", "[]", "See you next week.")

    outcome = await synthesize(generator, transcript=TRANSCRIPT, client=CLIENT, session_number=1)

    assert isinstance(outcome, SynthesisResult)
    assert isinstance(outcome.summary_stage, Degraded)
    assert outcome.scores.summary == "Sorry, I can't help with that."
    assert (outcome.scores.mood_score, outcome.scores.energy_score, outcome.scores.engagement_score) == (50, 50, 50)
    assert outcome.scores.breakthrough_flagged is False
    assert len(generator.prompts) == 3
    assert outcome.degraded_stages == ["summary"]


@pytest.mark.asyncio
async def test_summary_call_failure_is_a_pipeline_failure() -> None:
    generator = ScriptedGenerator(RuntimeError("quota exceeded"))

    outcome = await synthesize(generator, transcript=TRANSCRIPT, client=CLIENT, session_number=1)

    assert isinstance(outcome, SynthesisFailure)
    assert outcome.stage == "summary"
    assert "quota exceeded" in outcome.error
    assert outcome.summary == ERROR_SUMMARY


@pytest.mark.asyncio
async def test_action_item_call_failure_is_a_pipeline_failure() -> None:
    generator = ScriptedGenerator(SUMMARY_JSON, TimeoutError("deadline"))

    outcome = await synthesize(generator, transcript=TRANSCRIPT, client=CLIENT, session_number=1)

    assert isinstance(outcome, SynthesisFailure)
    assert outcome.stage == "action_items"


@pytest.mark.asyncio
async def test_followup_failure_only_degrades_the_message() -> None:
    generator = ScriptedGenerator(SUMMARY_JSON, ACTIONS_JSON, RuntimeError("timeout"))

    outcome = await synthesize(generator, transcript=TRANSCRIPT, client=CLIENT, session_number=2)

    assert isinstance(outcome, SynthesisResult)
    assert outcome.followup_email_body is None
    assert outcome.degraded_stages == ["followup"]
    assert len(outcome.action_items) == 2


@pytest.mark.asyncio
async def test_blank_followup_is_degraded() -> None:
    generator = ScriptedGenerator(SUMMARY_JSON, "[]", "   \n")

    outcome = await synthesize(generator, transcript=TRANSCRIPT, client=CLIENT, session_number=2)

    assert outcome.followup_email_body is None
    assert "followup" in outcome.degraded_stages


def test_code_fences_are_stripped_before_parsing() -> None:
    fenced = "```json\n" + SUMMARY_JSON + "\n```"

    assert strip_code_fences(fenced) == SUMMARY_JSON
    assert isinstance(parse_summary(fenced), Parsed)
    assert isinstance(parse_action_items("```\n[]\n```"), Parsed)


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        (0, 1),
        (-20, 1),
        (250, 100),
        (64.4, 64),
        ("73", 73),
        ("high", 50),
        (None, 50),
        (True, 50),
        (float("nan"), 50),
    ],
)
def test_clamp_score(value, expected: int) -> None:
    assert clamp_score(value) == expected


def test_summary_falls_back_to_overview_and_defaults() -> None:
    result = parse_summary(json.dumps({"summary_structured": {"overview": "Short overview"}, "mood_score": "x"}))

    assert isinstance(result, Parsed)
    assert result.value.summary == "Short overview"
    assert result.value.mood_score == 50
    assert result.value.summary_structured["key_themes"] == []
    assert result.value.breakthrough_flagged is False


def test_summary_json_array_is_degraded() -> None:
    result = parse_summary("[1, 2, 3]")

    assert isinstance(result, Degraded)
    assert result.value.summary == "[1, 2, 3]"


def test_action_items_accept_wrapped_object() -> None:
    result = parse_action_items(json.dumps({"action_items": [{"task": "Journal daily", "priority": "low"}]}))

    assert isinstance(result, Parsed)
    assert result.value[0].task == "Journal daily"
    assert result.value[0].priority == "low"


def test_action_items_non_json_degrades_to_empty() -> None:
    result = parse_action_items("Here are some ideas: journal more.")

    assert isinstance(result, Degraded)
    assert result.value == []
