import os
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .prompts import DEFAULT_SYSTEM_INSTRUCTIONS


DEPRECATED_TEXT_MODEL_IDS = ("gemini-1.0-pro", "gemini-1.5-flash-001", "gemini-1.5-pro-001")


class Settings(BaseSettings):
    """Global configuration for the CoachDesk backend."""

    database_url: str = ""

    model_id: str = "gemini-2.5-flash"
    location: str = "us-central1"
    project_id: str = Field(
        default_factory=lambda: (
            os.getenv("GOOGLE_CLOUD_PROJECT")
            or os.getenv("GCLOUD_PROJECT")
            or os.getenv("GOOGLE_CLOUD_PROJECT_ID")
            or ""
        )
    )
    max_output_tokens: int = 2000
    system_instructions: str = DEFAULT_SYSTEM_INSTRUCTIONS

    daily_api_key: str = ""
    daily_api_base: str = "https://api.daily.co/v1"
    daily_domain: str = ""
    room_ttl_seconds: int = 7200

    resend_api_key: str = ""
    resend_api_base: str = "https://api.resend.com"
    email_from: str = "hello@coachdesk.app"

    app_url: str = "http://localhost:3000"
    transcript_placeholder: str = "No transcript available. This session was not recorded."
    action_items_on_reprocess: Literal["append", "replace"] = "append"

    model_config = SettingsConfigDict(env_prefix="COACHDESK_", extra="ignore")

    @field_validator("model_id")
    @classmethod
    def validate_model_id(cls, value: str) -> str:
        if value in DEPRECATED_TEXT_MODEL_IDS:
            raise ValueError(f"The retired Gemini model {value} is not allowed.")
        return value

    @field_validator("app_url")
    @classmethod
    def strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")


settings = Settings()  # type: ignore[call-arg]
