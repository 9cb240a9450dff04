"""Session state machine and the side effects each transition triggers.

    scheduled --start--> in_progress --end--> processing --complete--> completed
    scheduled --cancel--> cancelled

``end`` may be re-issued on a session that is already ``processing`` or
``completed``; that reprocesses the persisted transcript.  Nothing leaves
``cancelled`` and nothing skips ``in_progress``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import AsyncSession

from .integrations.mailer import Mailer
from .integrations.rooms import RoomProvider, provision_room
from .integrations.textgen import TextGenerator
from .live.transcript import TranscriptSnapshot
from .models import (
    SESSION_CANCELLED,
    SESSION_COMPLETED,
    SESSION_IN_PROGRESS,
    SESSION_PROCESSING,
    SESSION_SCHEDULED,
    Client,
    Session,
)
from .pipeline.fanout import FanoutReport, FanoutTarget, persist_synthesis
from .pipeline.notify import dispatch_followup, send_join_link
from .pipeline.synthesis import ClientContext, SynthesisResult, synthesize
from .settings import settings


logger = logging.getLogger("coachdesk")

START = "start"
END = "end"
COMPLETE = "complete"
CANCEL = "cancel"

TRANSITIONS: dict[str, tuple[frozenset[str], str]] = {
    START: (frozenset({SESSION_SCHEDULED}), SESSION_IN_PROGRESS),
    END: (
        frozenset({SESSION_IN_PROGRESS, SESSION_PROCESSING, SESSION_COMPLETED}),
        SESSION_PROCESSING,
    ),
    COMPLETE: (frozenset({SESSION_PROCESSING}), SESSION_COMPLETED),
    CANCEL: (frozenset({SESSION_SCHEDULED}), SESSION_CANCELLED),
}

REPROCESSABLE = frozenset({SESSION_PROCESSING, SESSION_COMPLETED})

CAPTURE_LIVE = "live"
CAPTURE_DRAFT = "live-draft"
CAPTURE_UPLOAD = "upload"
CAPTURE_NONE = "none"


class SessionTransitionError(ValueError):
    def __init__(self, action: str, status: str) -> None:
        super().__init__(f"Cannot {action} a session that is {status}")
        self.action = action
        self.status = status


def next_status(current: str, action: str) -> str:
    try:
        allowed_from, target = TRANSITIONS[action]
    except KeyError:
        raise ValueError(f"Unknown session action: {action}") from None
    if current not in allowed_from:
        raise SessionTransitionError(action, current)
    return target


def is_reprocess(current: str) -> bool:
    return current in REPROCESSABLE


def record_transcript(session: Session, snapshot: TranscriptSnapshot, *, capture_mode: str) -> None:
    """Copy a buffer snapshot onto the session, keeping text and raw in step."""
    session.transcript_raw = snapshot.raw()
    session.transcript_text = snapshot.text if not snapshot.is_empty() else None
    session.ai_notes = {
        **(session.ai_notes or {}),
        "capture_mode": capture_mode,
        "word_count": snapshot.word_count,
        "flagged_moments": [moment.to_dict() for moment in snapshot.flagged_moments],
    }


async def start_session(
    db: AsyncSession,
    session: Session,
    *,
    client: Client,
    coach_name: str,
    rooms: RoomProvider,
    mailer: Mailer,
    now: datetime | None = None,
) -> Session:
    """Provision a room, mark the session live and email the join link."""
    target = next_status(session.status, START)
    room = await provision_room(rooms, session.id)
    session.status = target
    session.started_at = now or datetime.now(timezone.utc)
    session.room_name = room.name
    session.room_url = room.url
    await db.commit()
    await db.refresh(session)
    logger.info("Session %s started in room %s", session.id, room.name)

    await send_join_link(
        mailer,
        to=client.email,
        client_name=client.full_name,
        coach_name=coach_name,
        room_url=room.url,
    )
    return session


async def cancel_session(db: AsyncSession, session: Session) -> Session:
    session.status = next_status(session.status, CANCEL)
    await db.commit()
    await db.refresh(session)
    logger.info("Session %s cancelled", session.id)
    return session


@dataclass
class EndOutcome:
    success: bool
    status: str
    reprocessed: bool = False
    followup_email_sent: bool = False
    action_items_created: int = 0
    error: str | None = None
    fanout: FanoutReport = field(default_factory=FanoutReport)

    def payload(self) -> dict:
        body = {
            "success": self.success,
            "status": self.status,
            "reprocessed": self.reprocessed,
            "followup_email_sent": self.followup_email_sent,
            "action_items_created": self.action_items_created,
        }
        if self.error:
            body["error"] = self.error
        return body


async def end_session(
    db: AsyncSession,
    session: Session,
    *,
    client: Client,
    coach_name: str,
    generator: TextGenerator,
    mailer: Mailer,
    snapshot: TranscriptSnapshot | None = None,
    capture_mode: str = CAPTURE_LIVE,
    reprocess_policy: str | None = None,
    now: datetime | None = None,
) -> EndOutcome:
    """Move the session to ``processing``, synthesize, fan out and notify.

    Whatever the pipeline does, the session finishes ``completed``.
    Callers must not run two ``end_session`` calls for one session at the
    same time.
    """
    previous = session.status
    next_status(previous, END)
    reprocess = is_reprocess(previous)
    now = now or datetime.now(timezone.utc)

    if reprocess:
        if snapshot is not None:
            logger.warning("Ignoring transcript for session %s: it is already %s", session.id, previous)
        logger.info("Reprocessing session %s", session.id)
    else:
        session.ended_at = now
        if session.started_at is not None:
            session.duration_seconds = max(int((now - session.started_at).total_seconds()), 0)
        if snapshot is not None:
            record_transcript(session, snapshot, capture_mode=capture_mode)
        elif not session.transcript_raw:
            session.ai_notes = {**(session.ai_notes or {}), "capture_mode": CAPTURE_NONE}
    session.status = SESSION_PROCESSING
    ai_notes = {**(session.ai_notes or {}), "last_run_at": now.isoformat(), "reprocessed": reprocess}
    await db.commit()

    target = FanoutTarget(
        session_id=session.id,
        client_id=session.client_id,
        coach_id=session.coach_id,
        reprocess=reprocess,
        rollups_applied=bool(session.rollups_applied),
        coach_counter_applied=bool(session.coach_counter_applied),
    )
    transcript = session.transcript_text or settings.transcript_placeholder
    client_email, client_name, portal_token = client.email, client.full_name, client.portal_token

    outcome = await synthesize(
        generator,
        transcript=transcript,
        client=ClientContext.from_client(client),
        session_number=session.session_number,
    )
    report = await persist_synthesis(
        db,
        target,
        outcome,
        ai_notes=ai_notes,
        reprocess_policy=reprocess_policy or settings.action_items_on_reprocess,
        now=now,
    )

    if not isinstance(outcome, SynthesisResult):
        logger.warning("Session %s completed with a pipeline error at %s", target.session_id, outcome.stage)
        return EndOutcome(
            success=False,
            status=SESSION_COMPLETED,
            reprocessed=reprocess,
            error="Processing failed",
            fanout=report,
        )

    email_sent = await dispatch_followup(
        db,
        mailer,
        session_id=target.session_id,
        to=client_email,
        client_name=client_name,
        coach_name=coach_name,
        body=outcome.followup_email_body,
        portal_token=portal_token,
        now=now,
    )
    logger.info(
        "Session %s completed; action items=%s degraded=%s email_sent=%s",
        target.session_id,
        report.action_items_inserted,
        outcome.degraded_stages,
        email_sent,
    )
    return EndOutcome(
        success=True,
        status=SESSION_COMPLETED,
        reprocessed=reprocess,
        followup_email_sent=email_sent,
        action_items_created=report.action_items_inserted,
        fanout=report,
    )
