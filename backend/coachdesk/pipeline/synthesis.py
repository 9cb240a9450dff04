"""Three-stage post-session synthesis against a text-generation service.

Stage A asks for a JSON summary with wellbeing scores, stage B for a JSON
array of action items, stage C for a plain-text follow-up message that
uses A's summary and B's items as context.  Each stage's parse produces a
``Parsed`` or ``Degraded`` result so callers never branch on exceptions.
A call-level failure in stage A or B ends the run with a
``SynthesisFailure``; a call-level failure in stage C only degrades the
follow-up message.
"""

from __future__ import annotations

import json
import logging
import math
import re
from dataclasses import asdict, dataclass
from typing import Any, Generic, Sequence, TypeVar, Union

from ..integrations.textgen import TextGenerator
from ..prompts import (
    PRIORITIES,
    build_action_items_prompt,
    build_followup_prompt,
    build_summary_prompt,
)


logger = logging.getLogger("coachdesk")

T = TypeVar("T")

DEFAULT_SCORE = 50
DEFAULT_PRIORITY = "medium"
ERROR_SUMMARY = "Session processing encountered an error. Please contact support."
STRUCTURED_LIST_FIELDS = ("key_themes", "breakthroughs", "concerns", "coaching_techniques_used")

STAGE_SUMMARY = "summary"
STAGE_ACTION_ITEMS = "action_items"
STAGE_FOLLOWUP = "followup"

_CODE_FENCE = re.compile(r"```(?:json)?\n?", re.IGNORECASE)


@dataclass(frozen=True)
class Parsed(Generic[T]):
    value: T


@dataclass(frozen=True)
class Degraded(Generic[T]):
    value: T
    reason: str


StageResult = Union[Parsed[T], Degraded[T]]


@dataclass(frozen=True)
class ClientContext:
    name: str
    coaching_type: str | None = None
    goals: tuple[str, ...] = ()

    @classmethod
    def from_client(cls, client: Any) -> "ClientContext":
        goals = client.goals or ()
        return cls(
            name=client.full_name,
            coaching_type=client.coaching_type,
            goals=tuple(str(goal) for goal in goals),
        )


@dataclass
class SummaryAndScores:
    summary: str
    summary_structured: dict[str, Any]
    mood_score: int = DEFAULT_SCORE
    energy_score: int = DEFAULT_SCORE
    engagement_score: int = DEFAULT_SCORE
    breakthrough_flagged: bool = False


@dataclass(frozen=True)
class ActionItemDraft:
    task: str
    priority: str = DEFAULT_PRIORITY
    due_date_suggestion: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class SynthesisResult:
    summary_stage: StageResult[SummaryAndScores]
    action_items_stage: StageResult[list[ActionItemDraft]]
    followup_stage: StageResult[str | None]

    @property
    def scores(self) -> SummaryAndScores:
        return self.summary_stage.value

    @property
    def action_items(self) -> list[ActionItemDraft]:
        return self.action_items_stage.value

    @property
    def followup_email_body(self) -> str | None:
        return self.followup_stage.value

    @property
    def degraded_stages(self) -> list[str]:
        stages = (
            (STAGE_SUMMARY, self.summary_stage),
            (STAGE_ACTION_ITEMS, self.action_items_stage),
            (STAGE_FOLLOWUP, self.followup_stage),
        )
        return [name for name, result in stages if isinstance(result, Degraded)]


@dataclass(frozen=True)
class SynthesisFailure:
    stage: str
    error: str
    summary: str = ERROR_SUMMARY


SynthesisOutcome = Union[SynthesisResult, SynthesisFailure]


def strip_code_fences(raw: str) -> str:
    return _CODE_FENCE.sub("", raw).strip()


def clamp_score(value: Any) -> int:
    """Coerce a model-provided score into an integer in [1, 100]."""
    if isinstance(value, bool):
        return DEFAULT_SCORE
    try:
        number = float(value)
    except (TypeError, ValueError):
        return DEFAULT_SCORE
    if math.isnan(number) or math.isinf(number):
        return DEFAULT_SCORE
    return min(max(int(round(number)), 1), 100)


def normalize_priority(value: Any) -> str:
    text = str(value or "").strip().lower()
    return text if text in PRIORITIES else DEFAULT_PRIORITY


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(item).strip() for item in value if str(item).strip()]


def degraded_summary(raw: str, reason: str) -> Degraded[SummaryAndScores]:
    return Degraded(
        SummaryAndScores(
            summary=raw,
            summary_structured={
                "overview": raw,
                **{name: [] for name in STRUCTURED_LIST_FIELDS},
            },
        ),
        reason,
    )


def parse_summary(raw: str) -> StageResult[SummaryAndScores]:
    try:
        data = json.loads(strip_code_fences(raw))
    except json.JSONDecodeError as exc:
        return degraded_summary(raw, f"invalid JSON: {exc.msg}")
    if not isinstance(data, dict):
        return degraded_summary(raw, "expected a JSON object")

    structured_raw = data.get("summary_structured")
    if not isinstance(structured_raw, dict):
        structured_raw = {}
    summary = data.get("summary")
    if not isinstance(summary, str) or not summary.strip():
        summary = str(structured_raw.get("overview") or raw)
    overview = structured_raw.get("overview")
    structured = {
        "overview": overview.strip() if isinstance(overview, str) and overview.strip() else summary,
        **{name: _string_list(structured_raw.get(name)) for name in STRUCTURED_LIST_FIELDS},
    }
    breakthrough = data.get("breakthrough_flagged")
    return Parsed(
        SummaryAndScores(
            summary=summary.strip(),
            summary_structured=structured,
            mood_score=clamp_score(data.get("mood_score")),
            energy_score=clamp_score(data.get("energy_score")),
            engagement_score=clamp_score(data.get("engagement_score")),
            breakthrough_flagged=breakthrough is True,
        )
    )


def parse_action_items(raw: str) -> StageResult[list[ActionItemDraft]]:
    try:
        data = json.loads(strip_code_fences(raw))
    except json.JSONDecodeError as exc:
        return Degraded([], f"invalid JSON: {exc.msg}")
    if isinstance(data, dict) and isinstance(data.get("action_items"), list):
        data = data["action_items"]
    if not isinstance(data, list):
        return Degraded([], "expected a JSON array")

    items: list[ActionItemDraft] = []
    for entry in data:
        if not isinstance(entry, dict):
            continue
        task = entry.get("task")
        if not isinstance(task, str) or not task.strip():
            continue
        due = entry.get("due_date_suggestion")
        items.append(
            ActionItemDraft(
                task=task.strip(),
                priority=normalize_priority(entry.get("priority")),
                due_date_suggestion=str(due).strip() if due not in (None, "") else None,
            )
        )
    return Parsed(items)


async def _generate_followup(
    generator: TextGenerator,
    *,
    transcript: str,
    client: ClientContext,
    summary: str,
    action_items: Sequence[ActionItemDraft],
) -> StageResult[str | None]:
    prompt = build_followup_prompt(
        transcript,
        client_name=client.name,
        summary=summary,
        action_items=[item.to_dict() for item in action_items],
    )
    try:
        raw = await generator.generate(prompt)
    except Exception as exc:
        logger.exception("Follow-up stage failed: %s", exc)
        return Degraded(None, f"call failed: {exc}")
    text = raw.strip()
    if not text:
        return Degraded(None, "empty response")
    return Parsed(text)


async def synthesize(
    generator: TextGenerator,
    *,
    transcript: str,
    client: ClientContext,
    session_number: int,
) -> SynthesisOutcome:
    """Run stages A, B and C in order.  Never raises."""
    try:
        raw_summary = await generator.generate(
            build_summary_prompt(
                transcript,
                client_name=client.name,
                coaching_type=client.coaching_type,
                goals=client.goals,
                session_number=session_number,
            )
        )
    except Exception as exc:
        logger.exception("Summary stage call failed: %s", exc)
        return SynthesisFailure(stage=STAGE_SUMMARY, error=str(exc))
    summary_stage = parse_summary(raw_summary)
    if isinstance(summary_stage, Degraded):
        logger.warning("Summary stage degraded: %s", summary_stage.reason)

    try:
        raw_actions = await generator.generate(
            build_action_items_prompt(transcript, client_name=client.name, goals=client.goals)
        )
    except Exception as exc:
        logger.exception("Action item stage call failed: %s", exc)
        return SynthesisFailure(stage=STAGE_ACTION_ITEMS, error=str(exc))
    actions_stage = parse_action_items(raw_actions)
    if isinstance(actions_stage, Degraded):
        logger.warning("Action item stage degraded: %s", actions_stage.reason)

    followup_stage = await _generate_followup(
        generator,
        transcript=transcript,
        client=client,
        summary=summary_stage.value.summary,
        action_items=actions_stage.value,
    )
    return SynthesisResult(
        summary_stage=summary_stage,
        action_items_stage=actions_stage,
        followup_stage=followup_stage,
    )
