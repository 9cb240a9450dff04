"""Text-generation collaborator backed by Gemini on Vertex AI."""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Any, Protocol

from google.auth import default as google_auth_default
from google.auth.exceptions import DefaultCredentialsError

from ..settings import settings


logger = logging.getLogger("coachdesk")

VERTEX_SCOPE = "https://www.googleapis.com/auth/cloud-platform"


class TextGenerationError(RuntimeError):
    """Raised when the model call itself fails or returns nothing usable."""


class TextGenerator(Protocol):
    async def generate(self, prompt: str) -> str:
        ...


def _resolve_project_id(project_id: str) -> str:
    if project_id:
        return project_id
    try:
        _credentials, detected = google_auth_default(scopes=[VERTEX_SCOPE])
    except DefaultCredentialsError as exc:
        raise TextGenerationError("No Google Cloud project configured") from exc
    if not detected:
        raise TextGenerationError("No Google Cloud project configured")
    return detected


class GeminiTextGenerator:
    """Opaque ``generate(prompt) -> text`` over the google-genai async client."""

    def __init__(
        self,
        *,
        model_id: str,
        location: str,
        project_id: str = "",
        system_instruction: str | None = None,
        max_output_tokens: int = 2000,
    ) -> None:
        self.model_id = model_id
        self.location = location
        self.project_id = project_id
        self.system_instruction = system_instruction
        self.max_output_tokens = max_output_tokens
        self._client: Any | None = None

    def _require_client(self) -> Any:
        if self._client is None:
            from google import genai

            self._client = genai.Client(
                vertexai=True,
                project=_resolve_project_id(self.project_id),
                location=self.location,
            )
        return self._client

    async def generate(self, prompt: str) -> str:
        from google.genai import types

        client = self._require_client()
        try:
            response = await client.aio.models.generate_content(
                model=self.model_id,
                contents=prompt,
                config=types.GenerateContentConfig(
                    system_instruction=self.system_instruction,
                    max_output_tokens=self.max_output_tokens,
                ),
            )
        except Exception as exc:
            raise TextGenerationError(f"Gemini call failed: {exc}") from exc
        text = response.text
        if text is None:
            raise TextGenerationError("Gemini returned no text")
        return text


@lru_cache
def get_text_generator() -> TextGenerator:
    return GeminiTextGenerator(
        model_id=settings.model_id,
        location=settings.location,
        project_id=settings.project_id,
        system_instruction=settings.system_instructions,
        max_output_tokens=settings.max_output_tokens,
    )
