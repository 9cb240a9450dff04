"""Validate the local CoachDesk backend environment.

Usage:
  set -a
  source backend/.env
  set +a
  python3 backend/check_local_env.py
"""

from __future__ import annotations

import os
import sys
from pathlib import Path


DEPRECATED_TEXT_MODELS = ("gemini-1.0-pro", "gemini-1.5-flash-001", "gemini-1.5-pro-001")
ENV_PATH = Path(__file__).resolve().parent / ".env"


def load_env_file(path: Path) -> None:
    if not path.exists():
        return
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
            value = value[1:-1]
        os.environ.setdefault(key.strip(), value)


def check_file_path(name: str, errors: list[str], warnings: list[str]) -> None:
    value = os.getenv(name, "").strip()
    if not value:
        warnings.append(f"{name} is not set")
        return
    if value.startswith("{"):
        return
    if not Path(value).expanduser().exists():
        errors.append(f"{name} points to a missing file: {value}")


def check_database(errors: list[str], warnings: list[str]) -> None:
    if os.getenv("COACHDESK_DATABASE_URL", "").strip():
        return
    for name in ("DB_USER", "DB_PASSWORD", "DB_NAME"):
        if not os.getenv(name, "").strip():
            errors.append(f"{name} is missing (or set COACHDESK_DATABASE_URL)")
    if os.getenv("CLOUDSQL_INSTANCE_CONNECTION_NAME", "").strip():
        warnings.append(
            "CLOUDSQL_INSTANCE_CONNECTION_NAME is set. For local TCP testing, leave it blank and use DB_HOST/DB_PORT."
        )
    elif not os.getenv("DB_HOST", "").strip():
        warnings.append("DB_HOST is not set; defaulting to 127.0.0.1")


def check_delivery(warnings: list[str]) -> None:
    if not os.getenv("COACHDESK_DAILY_API_KEY", "").strip():
        warnings.append("COACHDESK_DAILY_API_KEY is not set; sessions will get placeholder room URLs")
    if not os.getenv("COACHDESK_RESEND_API_KEY", "").strip():
        warnings.append("COACHDESK_RESEND_API_KEY is not set; follow-up emails will fail and stay unsent")
    if not os.getenv("COACHDESK_APP_URL", "").strip():
        warnings.append("COACHDESK_APP_URL is not set; portal links will point at http://localhost:3000")


def main() -> int:
    load_env_file(ENV_PATH)

    py_version = sys.version_info
    if py_version < (3, 11):
        print(
            "Unsupported Python version: "
            f"{py_version.major}.{py_version.minor}. "
            "Use Python 3.11 or newer for this repo."
        )
        return 1

    errors: list[str] = []
    warnings: list[str] = []

    check_database(errors, warnings)
    if not (
        os.getenv("COACHDESK_PROJECT_ID", "").strip()
        or os.getenv("GOOGLE_CLOUD_PROJECT", "").strip()
    ):
        warnings.append("No project id set; Vertex AI will resolve it from Application Default Credentials")

    if os.getenv("COACHDESK_MODEL_ID", "").strip() in DEPRECATED_TEXT_MODELS:
        errors.append("COACHDESK_MODEL_ID names a retired text model")

    policy = os.getenv("COACHDESK_ACTION_ITEMS_ON_REPROCESS", "").strip()
    if policy and policy not in ("append", "replace"):
        errors.append("COACHDESK_ACTION_ITEMS_ON_REPROCESS must be 'append' or 'replace'")

    if "GOOGLE_APPLICATION_CREDENTIALS" in os.environ and not os.environ[
        "GOOGLE_APPLICATION_CREDENTIALS"
    ].strip():
        errors.append(
            "GOOGLE_APPLICATION_CREDENTIALS is explicitly set to an empty value. "
            "Remove it or comment it out to use gcloud ADC."
        )

    check_file_path("FIREBASE_SERVICE_ACCOUNT_JSON", errors, warnings)
    check_file_path("GOOGLE_APPLICATION_CREDENTIALS", errors, warnings)
    check_delivery(warnings)

    print(f"Loaded env file: {ENV_PATH}")
    if errors:
        print("\nErrors:")
        for item in errors:
            print(f"  - {item}")
    if warnings:
        print("\nWarnings:")
        for item in warnings:
            print(f"  - {item}")

    if errors:
        print("\nLocal environment is not ready.")
        return 1

    print("\nLocal environment looks ready.")
    print("Next:")
    print("  1. cd backend")
    print("  2. uvicorn coachdesk.main:app --reload")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
