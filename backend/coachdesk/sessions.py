import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Body, Depends, HTTPException
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from . import auth as auth_utils
from . import lifecycle
from .db import get_db
from .integrations.mailer import Mailer, get_mailer
from .integrations.rooms import RoomProvider, get_room_provider
from .integrations.textgen import TextGenerator, get_text_generator
from .models import SESSION_COMPLETED, SESSION_SCHEDULED, ActionItem, Client, Coach, Session
from .pipeline.notify import dispatch_followup
from .prompts import build_prep_brief_prompt
from .schemas import (
    EndSessionOut,
    PrepBriefOut,
    SendEmailOut,
    SessionCreate,
    SessionEnd,
    SessionOut,
)


logger = logging.getLogger("coachdesk")

router = APIRouter(prefix="/api/sessions", tags=["sessions"])

DEFAULT_COACH_NAME = "Your Coach"
PREP_BRIEF_HISTORY = 3


async def get_owned_session(
    db: AsyncSession,
    session_id: uuid.UUID,
    coach_id: str,
) -> Session:
    result = await db.execute(select(Session).where(Session.id == session_id))
    session = result.scalar_one_or_none()
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    if session.coach_id != coach_id:
        raise HTTPException(status_code=403, detail="Not authorised to access this session")
    return session


async def load_participants(db: AsyncSession, session: Session) -> tuple[Client, str]:
    """Return the session's client and the display name of its coach."""
    client = await db.get(Client, session.client_id)
    if client is None:
        raise HTTPException(status_code=404, detail="Client not found")
    coach = await db.get(Coach, session.coach_id)
    coach_name = coach.full_name if coach is not None and coach.full_name else DEFAULT_COACH_NAME
    return client, coach_name


@router.post("", response_model=SessionOut)
async def create_session(
    payload: SessionCreate,
    current_coach: dict = Depends(auth_utils.get_current_coach),
    db: AsyncSession = Depends(get_db),
) -> SessionOut:
    """Schedule a session with one of the coach's clients.

    The session number is one more than the client's highest existing
    number; the unique (client, number) constraint turns a concurrent
    duplicate into a 409.
    """
    coach = await auth_utils.ensure_coach(db, current_coach)
    client = await db.get(Client, payload.client_id)
    if client is None or client.coach_id != coach.id:
        raise HTTPException(status_code=404, detail="Client not found")

    result = await db.execute(
        select(func.max(Session.session_number)).where(Session.client_id == client.id)
    )
    last_number = result.scalar_one_or_none() or 0
    session = Session(
        coach_id=coach.id,
        client_id=client.id,
        session_number=last_number + 1,
        status=SESSION_SCHEDULED,
        scheduled_at=payload.scheduled_at,
        breakthrough_flagged=False,
        followup_email_sent=False,
        rollups_applied=False,
    )
    db.add(session)
    try:
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        raise HTTPException(status_code=409, detail="Session number already taken; retry") from exc
    await db.refresh(session)
    return SessionOut.model_validate(session)


@router.get("", response_model=list[SessionOut])
async def list_sessions(
    current_coach: dict = Depends(auth_utils.get_current_coach),
    db: AsyncSession = Depends(get_db),
) -> list[SessionOut]:
    """List the coach's sessions, newest first."""
    result = await db.execute(
        select(Session)
        .where(Session.coach_id == current_coach["uid"])
        .order_by(Session.created_at.desc())
    )
    return [SessionOut.model_validate(session) for session in result.scalars().all()]


@router.get("/{session_id}", response_model=SessionOut)
async def get_session(
    session_id: uuid.UUID,
    current_coach: dict = Depends(auth_utils.get_current_coach),
    db: AsyncSession = Depends(get_db),
) -> SessionOut:
    session = await get_owned_session(db, session_id, current_coach["uid"])
    return SessionOut.model_validate(session)


@router.post("/{session_id}/start", response_model=SessionOut)
async def start_session(
    session_id: uuid.UUID,
    current_coach: dict = Depends(auth_utils.get_current_coach),
    db: AsyncSession = Depends(get_db),
    rooms: RoomProvider = Depends(get_room_provider),
    mailer: Mailer = Depends(get_mailer),
) -> SessionOut:
    """Provision the video room and move the session to ``in_progress``."""
    session = await get_owned_session(db, session_id, current_coach["uid"])
    client, coach_name = await load_participants(db, session)
    try:
        session = await lifecycle.start_session(
            db,
            session,
            client=client,
            coach_name=coach_name,
            rooms=rooms,
            mailer=mailer,
        )
    except lifecycle.SessionTransitionError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return SessionOut.model_validate(session)


@router.post("/{session_id}/end", response_model=EndSessionOut)
async def end_session(
    session_id: uuid.UUID,
    payload: Optional[SessionEnd] = Body(default=None),
    current_coach: dict = Depends(auth_utils.get_current_coach),
    db: AsyncSession = Depends(get_db),
    generator: TextGenerator = Depends(get_text_generator),
    mailer: Mailer = Depends(get_mailer),
) -> EndSessionOut:
    """End (or reprocess) a session and run the synthesis pipeline.

    An optional transcript in the body replaces whatever was captured over
    the live socket.  Pipeline and email failures never fail the request:
    the session always comes back ``completed``.
    """
    session = await get_owned_session(db, session_id, current_coach["uid"])
    client, coach_name = await load_participants(db, session)
    snapshot = payload.to_snapshot() if payload is not None and payload.transcript else None
    try:
        outcome = await lifecycle.end_session(
            db,
            session,
            client=client,
            coach_name=coach_name,
            generator=generator,
            mailer=mailer,
            snapshot=snapshot,
            capture_mode=lifecycle.CAPTURE_UPLOAD,
        )
    except lifecycle.SessionTransitionError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return EndSessionOut(**outcome.payload())


@router.post("/{session_id}/cancel", response_model=SessionOut)
async def cancel_session(
    session_id: uuid.UUID,
    current_coach: dict = Depends(auth_utils.get_current_coach),
    db: AsyncSession = Depends(get_db),
) -> SessionOut:
    session = await get_owned_session(db, session_id, current_coach["uid"])
    try:
        session = await lifecycle.cancel_session(db, session)
    except lifecycle.SessionTransitionError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return SessionOut.model_validate(session)


@router.post("/{session_id}/send-email", response_model=SendEmailOut)
async def send_followup_email(
    session_id: uuid.UUID,
    current_coach: dict = Depends(auth_utils.get_current_coach),
    db: AsyncSession = Depends(get_db),
    mailer: Mailer = Depends(get_mailer),
) -> SendEmailOut:
    """Re-send the stored follow-up body regardless of pipeline state."""
    session = await get_owned_session(db, session_id, current_coach["uid"])
    if not session.followup_email_body:
        raise HTTPException(status_code=409, detail="This session has no follow-up email to send")
    client, coach_name = await load_participants(db, session)
    sent = await dispatch_followup(
        db,
        mailer,
        session_id=session.id,
        to=client.email,
        client_name=client.full_name,
        coach_name=coach_name,
        body=session.followup_email_body,
        portal_token=client.portal_token,
    )
    if not sent:
        raise HTTPException(status_code=502, detail="Failed to send follow-up email")
    return SendEmailOut(success=True, followup_email_sent=True)


def _session_date(session: Session) -> str:
    moment = session.ended_at or session.started_at or session.scheduled_at or session.created_at
    return moment.date().isoformat() if moment else "unknown date"


@router.post("/{session_id}/prep-brief", response_model=PrepBriefOut)
async def generate_prep_brief(
    session_id: uuid.UUID,
    current_coach: dict = Depends(auth_utils.get_current_coach),
    db: AsyncSession = Depends(get_db),
    generator: TextGenerator = Depends(get_text_generator),
) -> PrepBriefOut:
    """Draft a pre-session brief from recent sessions and open action items."""
    session = await get_owned_session(db, session_id, current_coach["uid"])
    client, _coach_name = await load_participants(db, session)

    recent_result = await db.execute(
        select(Session)
        .where(
            Session.client_id == session.client_id,
            Session.status == SESSION_COMPLETED,
            Session.id != session.id,
        )
        .order_by(Session.ended_at.desc())
        .limit(PREP_BRIEF_HISTORY)
    )
    recent = recent_result.scalars().all()
    items_result = await db.execute(
        select(ActionItem)
        .where(ActionItem.client_id == session.client_id)
        .order_by(ActionItem.created_at)
    )
    items = items_result.scalars().all()

    prompt = build_prep_brief_prompt(
        client_name=client.full_name,
        coaching_type=client.coaching_type,
        goals=client.goals,
        recent_sessions=[
            {
                "session_number": past.session_number,
                "date": _session_date(past),
                "summary": past.summary or "No summary recorded.",
                "action_items": [item.task for item in items if item.session_id == past.id],
            }
            for past in recent
        ],
        open_action_items=[
            {"task": item.task, "completed": item.completed, "due_date": item.due_date}
            for item in items
            if not item.completed
        ],
    )
    try:
        brief = (await generator.generate(prompt)).strip()
    except Exception as exc:
        logger.exception("Prep brief generation failed for session %s: %s", session.id, exc)
        raise HTTPException(status_code=502, detail="Failed to generate prep brief") from exc
    if not brief:
        raise HTTPException(status_code=502, detail="Failed to generate prep brief")

    session.prep_brief = brief
    session.prep_brief_generated_at = datetime.now(timezone.utc)
    await db.commit()
    return PrepBriefOut(prep_brief=brief, prep_brief_generated_at=session.prep_brief_generated_at)
