"""Message protocol for the live capture WebSocket.

The browser runs the speech recognizer and forwards what it observes:
recognition results, unsolicited ends of the recognition stream, and
recognition errors.  It also forwards the coach's controls (pause,
resume, flag, speaker switch, end).  Every inbound message is decoded
into one of the event dataclasses below and enqueued on the capture
session, which drains them in order.

The server answers with display updates and with recognition start/stop
requests that the browser applies to its recognizer.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Union


# Types of messages sent by the client
CLIENT_RESULT = "client.result"
CLIENT_RECOGNITION_END = "client.recognition_end"
CLIENT_RECOGNITION_ERROR = "client.recognition_error"
CLIENT_PAUSE = "client.pause"
CLIENT_RESUME = "client.resume"
CLIENT_FLAG = "client.flag"
CLIENT_SPEAKER = "client.speaker"
CLIENT_END = "client.end"

# Types of messages sent by the server
SERVER_STATUS = "server.status"
SERVER_RECOGNITION_START = "server.recognition.start"
SERVER_RECOGNITION_STOP = "server.recognition.stop"
SERVER_INTERIM = "server.interim"
SERVER_ENTRY = "server.entry"
SERVER_FLAG = "server.flag"
SERVER_WARNING = "server.warning"
SERVER_ENDED = "server.ended"
SERVER_ERROR = "error"

NO_SPEECH_ERROR = "no-speech"


@dataclass(frozen=True)
class RecognitionResult:
    """A partial (``is_final=False``) or final recognition result."""

    is_final: bool
    text: str
    speaker: str | None = None


@dataclass(frozen=True)
class RecognitionEnded:
    """The recognition stream stopped without being asked to."""


@dataclass(frozen=True)
class RecognitionFailed:
    error: str


@dataclass(frozen=True)
class PauseCapture:
    pass


@dataclass(frozen=True)
class ResumeCapture:
    pass


@dataclass(frozen=True)
class FlagLastEntry:
    pass


@dataclass(frozen=True)
class SwitchSpeaker:
    speaker: str


CaptureEvent = Union[
    RecognitionResult,
    RecognitionEnded,
    RecognitionFailed,
    PauseCapture,
    ResumeCapture,
    FlagLastEntry,
    SwitchSpeaker,
]


def decode_client_message(message: dict[str, Any]) -> CaptureEvent:
    """Decode one inbound message into a capture event.

    ``client.end`` is handled by the socket loop itself and is rejected
    here along with unknown types.
    """
    message_type = str(message.get("type", "")).strip()
    if message_type == CLIENT_RESULT:
        text = message.get("text")
        if not isinstance(text, str):
            raise ValueError("client.result requires a text string")
        is_final = message.get("is_final", message.get("isFinal", False))
        speaker = message.get("speaker")
        return RecognitionResult(
            is_final=bool(is_final),
            text=text,
            speaker=speaker if isinstance(speaker, str) else None,
        )
    if message_type == CLIENT_RECOGNITION_END:
        return RecognitionEnded()
    if message_type == CLIENT_RECOGNITION_ERROR:
        return RecognitionFailed(error=str(message.get("error") or "unknown"))
    if message_type == CLIENT_PAUSE:
        return PauseCapture()
    if message_type == CLIENT_RESUME:
        return ResumeCapture()
    if message_type == CLIENT_FLAG:
        return FlagLastEntry()
    if message_type == CLIENT_SPEAKER:
        return SwitchSpeaker(speaker=str(message.get("speaker", "")))
    raise ValueError(f"Unsupported message type: {message_type}")
