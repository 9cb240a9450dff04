"""Email notifications sent around a session, decoupled from pipeline success."""

from __future__ import annotations

import html
import logging
import uuid
from datetime import datetime, timezone

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from ..integrations.mailer import Mailer
from ..models import Session
from ..prompts import first_name
from ..settings import settings


logger = logging.getLogger("coachdesk")

_FONT = "font-family: -apple-system, 'Segoe UI', sans-serif;"


def portal_url(portal_token: str) -> str:
    return f"{settings.app_url}/portal/{portal_token}"


def followup_subject(today: datetime) -> str:
    return f"Your session recap - {today:%B} {today.day}"


def render_followup_html(client_name: str, body: str, portal: str) -> str:
    return (
        f'<div style="{_FONT} max-width: 600px; margin: 0 auto; color: #1C1917;">'
        f'<p style="font-size: 16px;">Hi {html.escape(first_name(client_name))},</p>'
        f'<div style="font-size: 15px; line-height: 1.8; white-space: pre-wrap;">{html.escape(body)}</div>'
        '<div style="margin-top: 24px; padding: 20px; background: #E6F4F4; border-radius: 12px;">'
        '<p style="margin: 0 0 8px; font-weight: 600;">Your Client Portal</p>'
        '<p style="margin: 0 0 12px; font-size: 14px;">Track your progress, review action items, and see your journey.</p>'
        f'<a href="{html.escape(portal, quote=True)}">Open Your Portal</a>'
        "</div></div>"
    )


def render_join_html(client_name: str, coach_name: str, room_url: str) -> str:
    return (
        f'<div style="{_FONT} max-width: 500px; margin: 0 auto; color: #1C1917;">'
        f'<p style="font-size: 16px;">Hi {html.escape(first_name(client_name))},</p>'
        f'<p style="font-size: 15px;">{html.escape(coach_name)} has started your coaching session.</p>'
        f'<p><a href="{html.escape(room_url, quote=True)}">Join the session</a></p>'
        "</div>"
    )


def render_nudge_html(client_name: str, coach_name: str, message: str) -> str:
    return (
        f'<div style="{_FONT} max-width: 500px; margin: 0 auto; color: #1C1917;">'
        f'<p style="font-size: 16px;">Hi {html.escape(first_name(client_name))},</p>'
        f'<p style="font-size: 15px; line-height: 1.8;">{html.escape(message)}</p>'
        f'<p style="margin-top: 24px; font-size: 13px;">{html.escape(coach_name)}</p>'
        "</div>"
    )


async def dispatch_followup(
    db: AsyncSession,
    mailer: Mailer,
    *,
    session_id: uuid.UUID,
    to: str,
    client_name: str,
    coach_name: str,
    body: str | None,
    portal_token: str,
    now: datetime | None = None,
) -> bool:
    """Send the follow-up message and record it as sent.

    Returns ``False`` when there is nothing to send or delivery failed; the
    session keeps ``followup_email_sent = false`` for a later resend.
    """
    if not body:
        logger.info("No follow-up body for session %s; skipping email", session_id)
        return False
    now = now or datetime.now(timezone.utc)
    try:
        await mailer.send(
            to,
            followup_subject(now),
            render_followup_html(client_name, body, portal_url(portal_token)),
            sender_name=coach_name,
        )
    except Exception as exc:
        logger.exception("Failed to send follow-up email for session %s: %s", session_id, exc)
        return False

    try:
        await db.execute(
            update(Session)
            .where(Session.id == session_id)
            .values(followup_email_sent=True, followup_email_sent_at=now)
        )
        await db.commit()
    except Exception as exc:
        logger.exception("Follow-up sent but not recorded for session %s: %s", session_id, exc)
        await db.rollback()
    return True


async def send_join_link(
    mailer: Mailer,
    *,
    to: str,
    client_name: str,
    coach_name: str,
    room_url: str,
) -> bool:
    try:
        await mailer.send(
            to,
            "Your coaching session is starting",
            render_join_html(client_name, coach_name, room_url),
            sender_name=coach_name,
        )
    except Exception as exc:
        logger.warning("Failed to send join link to client: %s", exc)
        return False
    return True


async def send_nudge(
    mailer: Mailer,
    *,
    to: str,
    client_name: str,
    coach_name: str,
    message: str,
) -> None:
    """Send an action-item nudge.  Delivery errors propagate to the caller."""
    await mailer.send(
        to,
        f"Quick check-in from {coach_name}",
        render_nudge_html(client_name, coach_name, message),
        sender_name=coach_name,
    )
