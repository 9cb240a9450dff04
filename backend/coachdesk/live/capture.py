"""Owned capture session driving a transcript buffer from a recognition source."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional, Protocol

from .protocol import (
    NO_SPEECH_ERROR,
    SERVER_ENTRY,
    SERVER_FLAG,
    SERVER_INTERIM,
    SERVER_STATUS,
    SERVER_WARNING,
    CaptureEvent,
    FlagLastEntry,
    PauseCapture,
    RecognitionEnded,
    RecognitionFailed,
    RecognitionResult,
    ResumeCapture,
    SwitchSpeaker,
)
from .transcript import TranscriptBuffer, TranscriptSnapshot


logger = logging.getLogger("coachdesk")

EventSink = Callable[[dict], Awaitable[None]]


class RecognitionSource(Protocol):
    """Anything that can be asked to (re)start or stop producing results."""

    async def start(self) -> None:
        ...

    async def stop(self) -> None:
        ...


class CaptureSession:
    """Single-consumer event loop around a ``TranscriptBuffer``.

    Producers call ``submit``; one task drains the queue, so buffer
    mutations happen exactly in submission order.  An unsolicited
    ``RecognitionEnded`` is answered with a restart of the source unless
    the session is paused or has been stopped.

    ``offset_seconds`` is how far into the session capture begins, so
    entry labels stay relative to the session start across reconnects.
    """

    def __init__(
        self,
        source: RecognitionSource,
        *,
        buffer: TranscriptBuffer | None = None,
        on_event: EventSink | None = None,
        clock: Callable[[], float] = time.monotonic,
        offset_seconds: float = 0.0,
    ) -> None:
        self.source = source
        self.buffer = buffer or TranscriptBuffer()
        self._on_event = on_event
        self._clock = clock
        self._offset = max(offset_seconds, 0.0)
        self._queue: asyncio.Queue[CaptureEvent | None] = asyncio.Queue()
        self._consumer: Optional[asyncio.Task[None]] = None
        self._started_at: float | None = None
        self.active = False
        self.paused = False
        self.restarts = 0
        self.warnings: list[str] = []

    @property
    def elapsed_seconds(self) -> float:
        if self._started_at is None:
            return self._offset
        return self._offset + max(self._clock() - self._started_at, 0.0)

    @property
    def running(self) -> bool:
        return self._consumer is not None

    async def start(self) -> None:
        if self._consumer is not None:
            return
        self.active = True
        self._started_at = self._clock()
        self._consumer = asyncio.create_task(self._drain())
        await self._start_source()

    def submit(self, event: CaptureEvent) -> None:
        if self._consumer is None or not self.active:
            raise RuntimeError("Capture session is not running")
        self._queue.put_nowait(event)

    async def stop(self) -> TranscriptSnapshot:
        """Deactivate capture, drain pending events and return the transcript."""
        consumer = self._consumer
        if consumer is not None:
            if self.active:
                self.active = False
                self._queue.put_nowait(None)
            # a cancelled caller must not cancel the drain
            await asyncio.shield(consumer)
            self._consumer = None
            await self._stop_source()
        self.buffer.clear_interim()
        return self.buffer.snapshot()

    async def _drain(self) -> None:
        while True:
            event = await self._queue.get()
            if event is None:
                return
            try:
                await self._handle(event)
            except Exception as exc:
                logger.exception("Capture event %r failed: %s", event, exc)
                await self._warn(f"Failed to apply {type(event).__name__}")

    async def _handle(self, event: CaptureEvent) -> None:
        if isinstance(event, RecognitionResult):
            await self._on_result(event)
        elif isinstance(event, RecognitionEnded):
            await self._on_recognition_ended()
        elif isinstance(event, RecognitionFailed):
            await self._on_recognition_failed(event.error)
        elif isinstance(event, PauseCapture):
            await self._pause()
        elif isinstance(event, ResumeCapture):
            await self._resume()
        elif isinstance(event, FlagLastEntry):
            moment = self.buffer.flag_last(self.elapsed_seconds)
            if moment is None:
                await self._warn("Nothing to flag yet")
            else:
                await self._emit({"type": SERVER_FLAG, "moment": moment.to_dict()})
        elif isinstance(event, SwitchSpeaker):
            self.buffer.set_speaker(event.speaker)
        else:
            raise TypeError(f"Unknown capture event: {event!r}")

    async def _on_result(self, event: RecognitionResult) -> None:
        if self.paused:
            return
        entry = self.buffer.on_result(
            is_final=event.is_final,
            text=event.text,
            elapsed_seconds=self.elapsed_seconds,
            speaker=event.speaker,
        )
        if not event.is_final:
            await self._emit({"type": SERVER_INTERIM, "text": self.buffer.interim})
            return
        if entry is not None:
            await self._emit(
                {
                    "type": SERVER_ENTRY,
                    "entry": entry.to_dict(),
                    "word_count": self.buffer.word_count,
                }
            )
        await self._emit({"type": SERVER_INTERIM, "text": ""})

    async def _on_recognition_ended(self) -> None:
        if not self.active or self.paused:
            return
        self.restarts += 1
        logger.info("Recognition stream ended; restarting (restart #%s)", self.restarts)
        await self._start_source()
        await self._emit({"type": SERVER_STATUS, "state": "restarted", "restarts": self.restarts})

    async def _on_recognition_failed(self, error: str) -> None:
        if error == NO_SPEECH_ERROR:
            return
        logger.warning("Recognition error during capture: %s", error)
        await self._warn(f"Speech recognition error: {error}")

    async def _pause(self) -> None:
        if self.paused:
            return
        self.paused = True
        self.buffer.clear_interim()
        await self._stop_source()
        await self._emit({"type": SERVER_STATUS, "state": "paused"})

    async def _resume(self) -> None:
        if not self.paused:
            return
        self.paused = False
        if self.active:
            await self._start_source()
        await self._emit({"type": SERVER_STATUS, "state": "resumed"})

    async def _start_source(self) -> None:
        try:
            await self.source.start()
        except Exception as exc:
            logger.warning("Recognition source failed to start: %s", exc)
            await self._warn(f"Speech recognition could not start: {exc}")

    async def _stop_source(self) -> None:
        try:
            await self.source.stop()
        except Exception as exc:
            logger.warning("Recognition source failed to stop: %s", exc)

    async def _warn(self, message: str) -> None:
        self.warnings.append(message)
        await self._emit({"type": SERVER_WARNING, "message": message})

    async def _emit(self, payload: dict) -> None:
        if self._on_event is None:
            return
        try:
            await self._on_event(payload)
        except Exception as exc:
            logger.warning("Dropping capture update %s: %s", payload.get("type"), exc)
