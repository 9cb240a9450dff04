"""In-memory transcript accumulated while a session is live."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field


SPEAKER_COACH = "coach"
SPEAKER_CLIENT = "client"
SPEAKERS = (SPEAKER_COACH, SPEAKER_CLIENT)


def format_elapsed(seconds: float) -> str:
    """Render an offset from session start as ``m:ss`` or ``h:mm:ss``."""
    total = max(int(seconds), 0)
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


@dataclass
class TranscriptEntry:
    """One committed utterance."""

    timestamp: str
    speaker: str
    text: str
    flagged: bool = False

    def to_dict(self) -> dict:
        return asdict(self)

    def render(self) -> str:
        return f"[{self.timestamp}] {self.speaker}: {self.text}"


@dataclass(frozen=True)
class FlaggedMoment:
    timestamp: str
    text: str

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class TranscriptSnapshot:
    """Immutable copy of a buffer handed to the end-of-session transition."""

    entries: tuple[TranscriptEntry, ...]
    word_count: int
    flagged_moments: tuple[FlaggedMoment, ...]

    @property
    def text(self) -> str:
        return render_transcript(self.entries)

    def raw(self) -> list[dict]:
        return [entry.to_dict() for entry in self.entries]

    def is_empty(self) -> bool:
        return not self.entries


def render_transcript(entries) -> str:
    return "\n".join(entry.render() for entry in entries)


@dataclass
class TranscriptBuffer:
    """Turns partial and final recognition results into an ordered transcript.

    Final results with non-empty text are committed as entries; interim
    results only replace ``interim``, which is display state and never part
    of a snapshot.
    """

    speaker: str = SPEAKER_COACH
    entries: list[TranscriptEntry] = field(default_factory=list)
    flagged_moments: list[FlaggedMoment] = field(default_factory=list)
    interim: str = ""
    word_count: int = 0

    @classmethod
    def restore(cls, raw_entries: list[dict] | None, flagged_moments: list[dict] | None = None) -> "TranscriptBuffer":
        """Rebuild a buffer from a persisted draft so a reconnect keeps appending."""
        entries = [
            TranscriptEntry(
                timestamp=str(item.get("timestamp", "")),
                speaker=item.get("speaker") if item.get("speaker") in SPEAKERS else SPEAKER_COACH,
                text=str(item.get("text", "")),
                flagged=bool(item.get("flagged", False)),
            )
            for item in raw_entries or []
            if isinstance(item, dict) and item.get("text")
        ]
        moments = [
            FlaggedMoment(timestamp=str(item.get("timestamp", "")), text=str(item.get("text", "")))
            for item in flagged_moments or []
            if isinstance(item, dict)
        ]
        return cls(
            entries=entries,
            flagged_moments=moments,
            word_count=sum(len(entry.text.split()) for entry in entries),
        )

    def set_speaker(self, speaker: str) -> None:
        if speaker not in SPEAKERS:
            raise ValueError(f"Unknown speaker: {speaker}")
        self.speaker = speaker

    def on_result(
        self,
        *,
        is_final: bool,
        text: str,
        elapsed_seconds: float,
        speaker: str | None = None,
    ) -> TranscriptEntry | None:
        if not is_final:
            self.interim = text
            return None

        self.interim = ""
        clean = " ".join(text.split())
        if not clean:
            return None
        entry = TranscriptEntry(
            timestamp=format_elapsed(elapsed_seconds),
            speaker=speaker if speaker in SPEAKERS else self.speaker,
            text=clean,
        )
        self.entries.append(entry)
        self.word_count += len(clean.split())
        return entry

    def flag_last(self, elapsed_seconds: float) -> FlaggedMoment | None:
        if not self.entries:
            return None
        last = self.entries[-1]
        last.flagged = True
        moment = FlaggedMoment(timestamp=format_elapsed(elapsed_seconds), text=last.text)
        self.flagged_moments.append(moment)
        return moment

    def clear_interim(self) -> None:
        self.interim = ""

    @property
    def text(self) -> str:
        return render_transcript(self.entries)

    def snapshot(self) -> TranscriptSnapshot:
        return TranscriptSnapshot(
            entries=tuple(
                TranscriptEntry(e.timestamp, e.speaker, e.text, e.flagged) for e in self.entries
            ),
            word_count=self.word_count,
            flagged_moments=tuple(self.flagged_moments),
        )
