"""Main FastAPI application entry point."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from sqlalchemy import select

from . import lifecycle
from .action_items import router as action_items_router
from .auth import init_firebase, verify_firebase_token
from .db import AsyncSessionLocal, init_db
from .integrations.mailer import get_mailer
from .integrations.textgen import get_text_generator
from .live.capture import CaptureSession
from .live.protocol import (
    CLIENT_END,
    SERVER_ENDED,
    SERVER_ERROR,
    SERVER_RECOGNITION_START,
    SERVER_RECOGNITION_STOP,
    SERVER_STATUS,
    decode_client_message,
)
from .live.transcript import TranscriptBuffer, TranscriptSnapshot
from .models import SESSION_IN_PROGRESS, Session
from .sessions import get_owned_session, load_participants
from .sessions import router as sessions_router
from .settings import settings


logger = logging.getLogger("coachdesk")


@asynccontextmanager
async def lifespan(_app: FastAPI):
    """Initialise Firebase and create the tables if needed."""
    init_firebase()
    await init_db()
    logger.info(
        "Firebase and database initialised; text model=%s; reprocess action items=%s",
        settings.model_id,
        settings.action_items_on_reprocess,
    )
    yield


app = FastAPI(title="CoachDesk Backend", version="0.1.0", lifespan=lifespan)
app.include_router(sessions_router)
app.include_router(action_items_router)


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health endpoint to confirm the service is up."""
    return {"status": "ok"}


class _BrowserRecognitionSource:
    """Recognition source backed by the recognizer running in the browser.

    Once the socket is gone, ``closed`` is set and every send is dropped.
    """

    def __init__(self, ws: WebSocket) -> None:
        self.ws = ws
        self.closed = False

    async def send(self, payload: dict) -> None:
        if self.closed:
            return
        await self.ws.send_json(payload)

    async def start(self) -> None:
        await self.send({"type": SERVER_RECOGNITION_START})

    async def stop(self) -> None:
        await self.send({"type": SERVER_RECOGNITION_STOP})


def _capture_offset(started_at: Optional[datetime], now: Optional[datetime] = None) -> float:
    """Seconds between the session start and now."""
    if started_at is None:
        return 0.0
    if started_at.tzinfo is None:
        started_at = started_at.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max((now - started_at).total_seconds(), 0.0)


async def _load_capture_session(session_id: UUID, coach_id: str) -> Session:
    async with AsyncSessionLocal() as db:
        session = await get_owned_session(db, session_id, coach_id)
        if session.status != SESSION_IN_PROGRESS:
            raise HTTPException(status_code=409, detail=f"Session is {session.status}, not in_progress")
        return session


async def _finish_session(session_id: UUID, coach_id: str, snapshot: TranscriptSnapshot) -> dict:
    """Run the end transition with the live transcript."""
    async with AsyncSessionLocal() as db:
        session = await get_owned_session(db, session_id, coach_id)
        client, coach_name = await load_participants(db, session)
        outcome = await lifecycle.end_session(
            db,
            session,
            client=client,
            coach_name=coach_name,
            generator=get_text_generator(),
            mailer=get_mailer(),
            snapshot=snapshot,
            capture_mode=lifecycle.CAPTURE_LIVE,
        )
        return outcome.payload()


async def _persist_draft_transcript(session_id: UUID, snapshot: TranscriptSnapshot) -> None:
    """Keep what was captured so a later ``POST /end`` can use it."""
    if snapshot.is_empty():
        return
    async with AsyncSessionLocal() as db:
        result = await db.execute(select(Session).where(Session.id == session_id))
        session = result.scalar_one_or_none()
        if session is None or session.status != SESSION_IN_PROGRESS:
            return
        lifecycle.record_transcript(session, snapshot, capture_mode=lifecycle.CAPTURE_DRAFT)
        await db.commit()
        logger.info("Saved draft transcript for session %s (%s words)", session_id, snapshot.word_count)


async def _save_draft(session_id: UUID, capture: CaptureSession) -> None:
    try:
        await _persist_draft_transcript(session_id, await capture.stop())
    except Exception as exc:
        logger.exception("Failed to save draft transcript for session %s: %s", session_id, exc)


@app.websocket("/ws/sessions/{session_id}/capture")
async def capture_endpoint(ws: WebSocket, session_id: str) -> None:
    """Host the live transcript capture for an in-progress session."""
    await ws.accept()

    token = ws.query_params.get("token", "").strip()
    if not token:
        await ws.send_json({"type": SERVER_ERROR, "message": "Missing token"})
        await ws.close(code=1008)
        return

    try:
        parsed_id = UUID(session_id)
    except ValueError:
        await ws.send_json({"type": SERVER_ERROR, "message": "session_id must be a valid UUID"})
        await ws.close(code=1008)
        return

    try:
        coach = await asyncio.to_thread(verify_firebase_token, token)
        session = await _load_capture_session(parsed_id, coach["uid"])
    except HTTPException as exc:
        await ws.send_json({"type": SERVER_ERROR, "message": exc.detail})
        await ws.close(code=1008)
        return
    except Exception as exc:
        logger.exception("Failed to validate capture session: %s", exc)
        await ws.send_json({"type": SERVER_ERROR, "message": "Unable to validate the session"})
        await ws.close(code=1011)
        return

    buffer = TranscriptBuffer.restore(
        session.transcript_raw,
        (session.ai_notes or {}).get("flagged_moments"),
    )
    source = _BrowserRecognitionSource(ws)
    capture = CaptureSession(
        source,
        buffer=buffer,
        on_event=source.send,
        offset_seconds=_capture_offset(session.started_at),
    )
    end_requested = False
    finished = False

    try:
        await source.send(
            {
                "type": SERVER_STATUS,
                "state": "connected",
                "speaker": capture.buffer.speaker,
                "word_count": capture.buffer.word_count,
            }
        )
        await capture.start()

        while True:
            try:
                message = await ws.receive_json()
            except WebSocketDisconnect:
                source.closed = True
                break
            except (ValueError, TypeError):
                await ws.send_json({"type": SERVER_ERROR, "message": "Malformed JSON message"})
                continue

            if not isinstance(message, dict):
                await ws.send_json({"type": SERVER_ERROR, "message": "Messages must be JSON objects"})
                continue

            if str(message.get("type", "")).strip() == CLIENT_END:
                end_requested = True
                break
            try:
                capture.submit(decode_client_message(message))
            except ValueError as exc:
                await ws.send_json({"type": SERVER_ERROR, "message": str(exc)})

        if end_requested:
            payload = await _finish_session(parsed_id, coach["uid"], await capture.stop())
            finished = True
            await source.send({"type": SERVER_ENDED, **payload})
    except Exception as exc:
        logger.exception("Unexpected error in capture socket for session %s: %s", parsed_id, exc)
        with contextlib.suppress(Exception):
            await source.send({"type": SERVER_ERROR, "message": f"Capture error: {exc}"})
    finally:
        disconnected = source.closed
        if not finished:
            source.closed = True
            # runs to completion even if this handler is being cancelled
            await asyncio.shield(_save_draft(parsed_id, capture))
        if not disconnected:
            with contextlib.suppress(RuntimeError):
                await ws.close()
