import logging
import uuid
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from . import auth as auth_utils
from .db import get_db
from .integrations.mailer import Mailer, get_mailer
from .integrations.textgen import TextGenerator, get_text_generator
from .models import ActionItem, Client, Coach, Session
from .pipeline.notify import send_nudge
from .prompts import build_nudge_prompt
from .schemas import ActionItemOut, ActionItemUpdate, NudgeOut
from .sessions import DEFAULT_COACH_NAME, get_owned_session


logger = logging.getLogger("coachdesk")

router = APIRouter(prefix="/api", tags=["action-items"])


async def _get_owned_action_item(db: AsyncSession, item_id: uuid.UUID, coach_id: str) -> ActionItem:
    item = await db.get(ActionItem, item_id)
    if item is None:
        raise HTTPException(status_code=404, detail="Action item not found")
    if item.coach_id != coach_id:
        raise HTTPException(status_code=403, detail="Not authorised to access this action item")
    return item


@router.get("/sessions/{session_id}/action-items", response_model=list[ActionItemOut])
async def list_action_items(
    session_id: uuid.UUID,
    current_coach: dict = Depends(auth_utils.get_current_coach),
    db: AsyncSession = Depends(get_db),
) -> list[ActionItemOut]:
    session = await get_owned_session(db, session_id, current_coach["uid"])
    result = await db.execute(
        select(ActionItem)
        .where(ActionItem.session_id == session.id)
        .order_by(ActionItem.created_at)
    )
    return [ActionItemOut.model_validate(item) for item in result.scalars().all()]


@router.patch("/action-items/{item_id}", response_model=ActionItemOut)
async def update_action_item(
    item_id: uuid.UUID,
    payload: ActionItemUpdate,
    current_coach: dict = Depends(auth_utils.get_current_coach),
    db: AsyncSession = Depends(get_db),
) -> ActionItemOut:
    """Mark an action item done or reopen it."""
    item = await _get_owned_action_item(db, item_id, current_coach["uid"])
    item.completed = payload.completed
    item.completed_at = datetime.now(timezone.utc) if payload.completed else None
    await db.commit()
    await db.refresh(item)
    return ActionItemOut.model_validate(item)


@router.post("/action-items/{item_id}/nudge", response_model=NudgeOut)
async def nudge_action_item(
    item_id: uuid.UUID,
    current_coach: dict = Depends(auth_utils.get_current_coach),
    db: AsyncSession = Depends(get_db),
    generator: TextGenerator = Depends(get_text_generator),
    mailer: Mailer = Depends(get_mailer),
) -> NudgeOut:
    """Draft a short reminder about an open action item and email it."""
    item = await _get_owned_action_item(db, item_id, current_coach["uid"])
    if item.completed:
        raise HTTPException(status_code=409, detail="Action item is already completed")
    client = await db.get(Client, item.client_id)
    if client is None:
        raise HTTPException(status_code=404, detail="Client not found")
    coach = await db.get(Coach, item.coach_id)
    coach_name = coach.full_name if coach is not None and coach.full_name else DEFAULT_COACH_NAME

    now = datetime.now(timezone.utc)
    session = await db.get(Session, item.session_id)
    anchor = (session.ended_at if session is not None else None) or item.created_at or now
    days_since = max((now - anchor).days, 0)

    prompt = build_nudge_prompt(
        client_name=client.full_name,
        task=item.task,
        due_date=item.due_date,
        days_since_session=days_since,
    )
    try:
        message = (await generator.generate(prompt)).strip()
    except Exception as exc:
        logger.exception("Nudge generation failed for action item %s: %s", item.id, exc)
        raise HTTPException(status_code=502, detail="Failed to generate nudge") from exc
    if not message:
        raise HTTPException(status_code=502, detail="Failed to generate nudge")

    try:
        await send_nudge(
            mailer,
            to=client.email,
            client_name=client.full_name,
            coach_name=coach_name,
            message=message,
        )
    except Exception as exc:
        logger.exception("Nudge delivery failed for action item %s: %s", item.id, exc)
        raise HTTPException(status_code=502, detail="Failed to send nudge") from exc

    item.nudge_sent = True
    item.nudge_sent_at = now
    await db.commit()
    return NudgeOut(message=message, nudge_sent=True)
