"""Best-effort persistence of a synthesis run.

The writes run in a fixed order and each one commits on its own: a failed
step is logged and rolled back without undoing the steps before it, and
the remaining steps still run.  Partial application is accepted; the
session is never left in ``processing``.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable

from sqlalchemy import delete, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import (
    SESSION_COMPLETED,
    ActionItem,
    Client,
    ClientProgress,
    Coach,
    Session,
)
from .synthesis import SynthesisFailure, SynthesisOutcome, SynthesisResult


logger = logging.getLogger("coachdesk")

REPROCESS_APPEND = "append"
REPROCESS_REPLACE = "replace"

STEP_SESSION = "session"
STEP_ACTION_ITEMS = "action_items"
STEP_PROGRESS = "client_progress"
STEP_CLIENT_ROLLUPS = "client_rollups"
STEP_COACH_COUNTER = "coach_counter"
STEP_STATUS_FALLBACK = "status_fallback"


@dataclass(frozen=True)
class FanoutTarget:
    """Plain identifiers captured before any write, so a rollback that
    expires ORM instances cannot affect later steps."""

    session_id: uuid.UUID
    client_id: uuid.UUID
    coach_id: str
    reprocess: bool = False
    rollups_applied: bool = False
    coach_counter_applied: bool = False


@dataclass
class FanoutReport:
    completed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    action_items_inserted: int = 0

    @property
    def ok(self) -> bool:
        return not self.failed


async def _run_step(
    db: AsyncSession,
    report: FanoutReport,
    name: str,
    operation: Callable[[], Awaitable[None]],
) -> bool:
    try:
        await operation()
        await db.commit()
    except Exception as exc:
        logger.exception("Fan-out step %s failed: %s", name, exc)
        report.failed.append(name)
        await db.rollback()
        return False
    report.completed.append(name)
    return True


def _session_values(result: SynthesisResult, ai_notes: dict) -> dict:
    scores = result.scores
    values = {
        "status": SESSION_COMPLETED,
        "summary": scores.summary,
        "summary_structured": scores.summary_structured,
        "mood_score": scores.mood_score,
        "energy_score": scores.energy_score,
        "engagement_score": scores.engagement_score,
        "breakthrough_flagged": scores.breakthrough_flagged,
        "ai_notes": {**ai_notes, "degraded_stages": result.degraded_stages},
    }
    if result.followup_email_body is not None:
        values["followup_email_body"] = result.followup_email_body
        values["followup_email_sent"] = False
        values["followup_email_sent_at"] = None
    return values


async def persist_synthesis(
    db: AsyncSession,
    target: FanoutTarget,
    outcome: SynthesisOutcome,
    *,
    ai_notes: dict | None = None,
    reprocess_policy: str = REPROCESS_APPEND,
    now: datetime | None = None,
) -> FanoutReport:
    """Write a synthesis outcome in the order session, action items,
    progress, client rollups, coach counter."""
    now = now or datetime.now(timezone.utc)
    notes = dict(ai_notes or {})
    report = FanoutReport()
    by_id = Session.id == target.session_id

    if isinstance(outcome, SynthesisFailure):
        notes["pipeline_error"] = {"stage": outcome.stage, "error": outcome.error}

        async def mark_failed() -> None:
            await db.execute(
                update(Session)
                .where(by_id)
                .values(status=SESSION_COMPLETED, summary=outcome.summary, ai_notes=notes)
            )

        if not await _run_step(db, report, STEP_SESSION, mark_failed):
            await _force_completed(db, report, target)
        return report

    async def write_session() -> None:
        await db.execute(update(Session).where(by_id).values(**_session_values(outcome, notes)))

    async def write_action_items() -> None:
        if target.reprocess and reprocess_policy == REPROCESS_REPLACE:
            await db.execute(delete(ActionItem).where(ActionItem.session_id == target.session_id))
        rows = [
            ActionItem(
                session_id=target.session_id,
                client_id=target.client_id,
                coach_id=target.coach_id,
                task=item.task,
                priority=item.priority,
                due_date=item.due_date_suggestion,
                completed=False,
                nudge_sent=False,
            )
            for item in outcome.action_items
        ]
        if rows:
            db.add_all(rows)
        report.action_items_inserted = len(rows)

    async def write_progress() -> None:
        scores = outcome.scores
        db.add_all(
            [
                ClientProgress(
                    client_id=target.client_id,
                    session_id=target.session_id,
                    date=now.date(),
                    type=kind,
                    value=value,
                )
                for kind, value in (("mood", scores.mood_score), ("energy", scores.energy_score))
            ]
        )

    async def advance_client_rollups() -> None:
        await db.execute(
            update(Client)
            .where(Client.id == target.client_id)
            .values(
                session_count=Client.session_count + 1,
                current_streak=Client.current_streak + 1,
                last_session_at=now,
            )
        )
        await db.execute(update(Session).where(by_id).values(rollups_applied=True))

    async def advance_coach_counter() -> None:
        await db.execute(
            update(Coach)
            .where(Coach.id == target.coach_id)
            .values(session_count_this_month=Coach.session_count_this_month + 1)
        )
        await db.execute(update(Session).where(by_id).values(coach_counter_applied=True))

    session_written = await _run_step(db, report, STEP_SESSION, write_session)
    if not await _run_step(db, report, STEP_ACTION_ITEMS, write_action_items):
        report.action_items_inserted = 0
    await _run_step(db, report, STEP_PROGRESS, write_progress)
    if target.rollups_applied:
        report.skipped.append(STEP_CLIENT_ROLLUPS)
    else:
        await _run_step(db, report, STEP_CLIENT_ROLLUPS, advance_client_rollups)
    if target.coach_counter_applied:
        report.skipped.append(STEP_COACH_COUNTER)
    else:
        await _run_step(db, report, STEP_COACH_COUNTER, advance_coach_counter)

    if not session_written:
        await _force_completed(db, report, target)
    return report


async def _force_completed(db: AsyncSession, report: FanoutReport, target: FanoutTarget) -> None:
    async def mark_completed() -> None:
        await db.execute(
            update(Session).where(Session.id == target.session_id).values(status=SESSION_COMPLETED)
        )

    await _run_step(db, report, STEP_STATUS_FALLBACK, mark_completed)
