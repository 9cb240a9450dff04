"""Pydantic schemas for request and response bodies.

These mirror the SQLAlchemy models for reads and describe the few write
payloads the lifecycle endpoints accept.
"""

import uuid
from datetime import datetime
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from .live.transcript import FlaggedMoment, TranscriptEntry, TranscriptSnapshot


class SessionCreate(BaseModel):
    """Schema for scheduling a new session."""

    client_id: uuid.UUID
    scheduled_at: Optional[datetime] = Field(None, description="When the session is planned")


class TranscriptEntryIn(BaseModel):
    timestamp: str = Field(..., description="Elapsed-time label such as 12:04")
    speaker: Literal["coach", "client"]
    text: str = Field(..., min_length=1)
    flagged: bool = False


class FlaggedMomentIn(BaseModel):
    timestamp: str
    text: str


class SessionEnd(BaseModel):
    """Optional transcript captured outside the live socket."""

    transcript: List[TranscriptEntryIn] = Field(default_factory=list)
    flagged_moments: List[FlaggedMomentIn] = Field(default_factory=list)
    word_count: Optional[int] = Field(None, ge=0)

    def to_snapshot(self) -> TranscriptSnapshot:
        entries = tuple(
            TranscriptEntry(
                timestamp=item.timestamp,
                speaker=item.speaker,
                text=" ".join(item.text.split()),
                flagged=item.flagged,
            )
            for item in self.transcript
        )
        word_count = self.word_count
        if word_count is None:
            word_count = sum(len(entry.text.split()) for entry in entries)
        return TranscriptSnapshot(
            entries=entries,
            word_count=word_count,
            flagged_moments=tuple(
                FlaggedMoment(timestamp=item.timestamp, text=item.text) for item in self.flagged_moments
            ),
        )


class SummaryStructured(BaseModel):
    overview: str = ""
    key_themes: List[str] = Field(default_factory=list)
    breakthroughs: List[str] = Field(default_factory=list)
    concerns: List[str] = Field(default_factory=list)
    coaching_techniques_used: List[str] = Field(default_factory=list)


class SessionOut(BaseModel):
    """Schema for session retrieval responses."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    coach_id: str
    client_id: uuid.UUID
    session_number: int
    status: str
    scheduled_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    duration_seconds: Optional[int] = None
    room_name: Optional[str] = None
    room_url: Optional[str] = None
    transcript_raw: Optional[List[dict[str, Any]]] = None
    transcript_text: Optional[str] = None
    summary: Optional[str] = None
    summary_structured: Optional[SummaryStructured] = None
    mood_score: Optional[int] = None
    energy_score: Optional[int] = None
    engagement_score: Optional[int] = None
    breakthrough_flagged: bool = False
    ai_notes: Optional[dict[str, Any]] = None
    followup_email_body: Optional[str] = None
    followup_email_sent: bool = False
    followup_email_sent_at: Optional[datetime] = None
    prep_brief: Optional[str] = None
    prep_brief_generated_at: Optional[datetime] = None


class EndSessionOut(BaseModel):
    success: bool
    status: str
    reprocessed: bool = False
    followup_email_sent: bool = False
    action_items_created: int = 0
    error: Optional[str] = None


class SendEmailOut(BaseModel):
    success: bool
    followup_email_sent: bool


class PrepBriefOut(BaseModel):
    prep_brief: str
    prep_brief_generated_at: datetime


class ActionItemOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    session_id: uuid.UUID
    client_id: uuid.UUID
    task: str
    priority: Literal["high", "medium", "low"]
    due_date: Optional[str] = None
    completed: bool = False
    completed_at: Optional[datetime] = None
    nudge_sent: bool = False
    nudge_sent_at: Optional[datetime] = None


class ActionItemUpdate(BaseModel):
    completed: bool


class NudgeOut(BaseModel):
    message: str
    nudge_sent: bool
