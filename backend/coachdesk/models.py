"""SQLAlchemy models for the CoachDesk application.

A coach (identified by their Firebase UID) works with clients.  Each
coaching encounter is a ``Session`` that moves through the lifecycle in
``coachdesk.lifecycle``.  The synthesis pipeline derives ``ActionItem``
rows and ``ClientProgress`` observations from a finished session and
advances the rollup counters on ``Client`` and ``Coach``.
"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import DeclarativeBase


SESSION_SCHEDULED = "scheduled"
SESSION_IN_PROGRESS = "in_progress"
SESSION_PROCESSING = "processing"
SESSION_COMPLETED = "completed"
SESSION_CANCELLED = "cancelled"



class Base(DeclarativeBase):
    pass


class Coach(Base):
    """A coach profile.  ``session_count_this_month`` is advanced once per
    completed session by the persistence fan-out."""

    __tablename__ = "coaches"

    id: str = Column(String(128), primary_key=True)
    full_name: str = Column(String(256), nullable=False, default="")
    email: Optional[str] = Column(String(320), nullable=True)
    session_count_this_month: int = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class Client(Base):
    """A coaching client owned by one coach.

    ``goals`` is a JSON list of short goal statements.  The portal token
    addresses the client's read-only portal, which is linked from emails.
    The rollup columns are never recomputed from history.
    """

    __tablename__ = "clients"

    id: uuid.UUID = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    coach_id: str = Column(String(128), ForeignKey("coaches.id"), nullable=False, index=True)

    full_name: str = Column(String(256), nullable=False)
    email: str = Column(String(320), nullable=False)
    coaching_type: Optional[str] = Column(String(32), nullable=True)
    goals: list = Column(JSONB, nullable=False, default=list)
    status: str = Column(String(16), nullable=False, default="active")
    portal_token: str = Column(
        String(64), nullable=False, unique=True, default=lambda: uuid.uuid4().hex
    )

    session_count: int = Column(Integer, nullable=False, default=0)
    current_streak: int = Column(Integer, nullable=False, default=0)
    last_session_at: Optional[datetime] = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class Session(Base):
    """One coaching encounter between a coach and a client.

    ``transcript_raw`` holds the ordered list of
    ``{timestamp, speaker, text, flagged}`` entries and ``transcript_text``
    its newline-joined form.  ``summary_structured`` carries ``overview``,
    ``key_themes``, ``breakthroughs``, ``concerns`` and
    ``coaching_techniques_used``.  ``ai_notes`` is free-form pipeline
    metadata (capture mode, word count, flagged moments, degraded stages).
    ``rollups_applied`` records that the client counters were advanced for
    this session and ``coach_counter_applied`` that the coach's monthly
    counter was.
    """

    __tablename__ = "sessions"
    __table_args__ = (UniqueConstraint("client_id", "session_number"),)

    id: uuid.UUID = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    coach_id: str = Column(String(128), ForeignKey("coaches.id"), nullable=False, index=True)
    client_id: uuid.UUID = Column(
        UUID(as_uuid=True), ForeignKey("clients.id"), nullable=False, index=True
    )
    session_number: int = Column(Integer, nullable=False)
    status: str = Column(String(16), nullable=False, default=SESSION_SCHEDULED)

    scheduled_at: Optional[datetime] = Column(DateTime(timezone=True), nullable=True)
    started_at: Optional[datetime] = Column(DateTime(timezone=True), nullable=True)
    ended_at: Optional[datetime] = Column(DateTime(timezone=True), nullable=True)
    duration_seconds: Optional[int] = Column(Integer, nullable=True)

    room_name: Optional[str] = Column(String(128), nullable=True)
    room_url: Optional[str] = Column(String(512), nullable=True)

    transcript_raw: Optional[list] = Column(JSONB, nullable=True)
    transcript_text: Optional[str] = Column(Text, nullable=True)

    summary: Optional[str] = Column(Text, nullable=True)
    summary_structured: Optional[dict] = Column(JSONB, nullable=True)
    mood_score: Optional[int] = Column(Integer, nullable=True)
    energy_score: Optional[int] = Column(Integer, nullable=True)
    engagement_score: Optional[int] = Column(Integer, nullable=True)
    breakthrough_flagged: bool = Column(Boolean, nullable=False, default=False)
    ai_notes: Optional[dict] = Column(JSONB, nullable=True)

    followup_email_body: Optional[str] = Column(Text, nullable=True)
    followup_email_sent: bool = Column(Boolean, nullable=False, default=False)
    followup_email_sent_at: Optional[datetime] = Column(DateTime(timezone=True), nullable=True)

    prep_brief: Optional[str] = Column(Text, nullable=True)
    prep_brief_generated_at: Optional[datetime] = Column(DateTime(timezone=True), nullable=True)

    rollups_applied: bool = Column(Boolean, nullable=False, default=False)
    coach_counter_applied: bool = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class ActionItem(Base):
    """A commitment extracted from a session.  Only the coach mutates it
    after creation (completion toggle, nudge bookkeeping)."""

    __tablename__ = "action_items"

    id: uuid.UUID = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    session_id: uuid.UUID = Column(
        UUID(as_uuid=True), ForeignKey("sessions.id"), nullable=False, index=True
    )
    client_id: uuid.UUID = Column(
        UUID(as_uuid=True), ForeignKey("clients.id"), nullable=False, index=True
    )
    coach_id: str = Column(String(128), ForeignKey("coaches.id"), nullable=False)

    task: str = Column(Text, nullable=False)
    priority: str = Column(String(8), nullable=False, default="medium")
    due_date: Optional[str] = Column(String(128), nullable=True)

    completed: bool = Column(Boolean, nullable=False, default=False)
    completed_at: Optional[datetime] = Column(DateTime(timezone=True), nullable=True)
    nudge_sent: bool = Column(Boolean, nullable=False, default=False)
    nudge_sent_at: Optional[datetime] = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class ClientProgress(Base):
    """One append-only observation in a client's progress time series."""

    __tablename__ = "client_progress"

    id: uuid.UUID = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    client_id: uuid.UUID = Column(
        UUID(as_uuid=True), ForeignKey("clients.id"), nullable=False, index=True
    )
    session_id: Optional[uuid.UUID] = Column(
        UUID(as_uuid=True), ForeignKey("sessions.id"), nullable=True
    )
    date = Column(Date, nullable=False)
    type: str = Column(String(16), nullable=False)
    value: Optional[float] = Column(Float, nullable=True)
    label: Optional[str] = Column(String(256), nullable=True)
    notes: Optional[str] = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
