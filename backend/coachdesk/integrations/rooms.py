"""Video-room collaborator backed by the Daily REST API."""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from functools import lru_cache
from typing import Protocol

import httpx

from ..settings import settings


logger = logging.getLogger("coachdesk")

DEFAULT_TIMEOUT = httpx.Timeout(10.0)


class RoomProvisioningError(RuntimeError):
    pass


@dataclass(frozen=True)
class VideoRoom:
    name: str
    url: str
    placeholder: bool = False


class RoomProvider(Protocol):
    async def create(self, room_id: str) -> VideoRoom:
        ...


def room_name_for(session_id: uuid.UUID | str) -> str:
    return f"cd-{str(session_id)[:8]}"


def placeholder_room(session_id: uuid.UUID | str, domain: str = "") -> VideoRoom:
    """Deterministic stand-in used when the provider cannot create a room."""
    name = room_name_for(session_id)
    return VideoRoom(name=name, url=f"https://{domain or 'mock'}.daily.co/{name}", placeholder=True)


class DailyRoomProvider:
    def __init__(
        self,
        *,
        api_key: str,
        api_base: str = "https://api.daily.co/v1",
        ttl_seconds: int = 7200,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.api_base = api_base.rstrip("/")
        self.ttl_seconds = ttl_seconds
        self._transport = transport

    async def create(self, room_id: str) -> VideoRoom:
        if not self.api_key:
            raise RoomProvisioningError("COACHDESK_DAILY_API_KEY is not set")
        payload = {
            "name": room_name_for(room_id),
            "privacy": "private",
            "properties": {
                "enable_recording": "cloud",
                "enable_chat": True,
                "exp": int(time.time()) + self.ttl_seconds,
            },
        }
        async with httpx.AsyncClient(timeout=DEFAULT_TIMEOUT, transport=self._transport) as client:
            try:
                response = await client.post(
                    f"{self.api_base}/rooms",
                    headers={"Authorization": f"Bearer {self.api_key}"},
                    json=payload,
                )
            except httpx.HTTPError as exc:
                raise RoomProvisioningError(f"Daily request failed: {exc}") from exc
        if response.status_code >= 400:
            raise RoomProvisioningError(
                f"Daily room creation failed {response.status_code}: {response.text}"
            )
        try:
            data = response.json()
        except ValueError as exc:
            raise RoomProvisioningError("Daily returned a non-JSON response") from exc
        name, url = data.get("name"), data.get("url")
        if not name or not url:
            raise RoomProvisioningError(f"Daily response missing name/url: {data}")
        return VideoRoom(name=name, url=url)


async def provision_room(provider: RoomProvider, session_id: uuid.UUID | str) -> VideoRoom:
    """Create a room, degrading to the placeholder address on any failure."""
    try:
        return await provider.create(str(session_id))
    except Exception as exc:
        logger.warning("Video room provisioning failed for session %s: %s", session_id, exc)
        return placeholder_room(session_id, settings.daily_domain)


@lru_cache
def get_room_provider() -> RoomProvider:
    return DailyRoomProvider(
        api_key=settings.daily_api_key,
        api_base=settings.daily_api_base,
        ttl_seconds=settings.room_ttl_seconds,
    )
