"""Runtime settings for RuralDoc services."""

from __future__ import annotations

import os
from dataclasses import dataclass, field


def _first_env(*names: str) -> str | None:
    for name in names:
        value = os.getenv(name)
        if value:
            return value
    return None


@dataclass(frozen=True)
class Settings:
    app_name: str = field(default_factory=lambda: os.getenv("RURALDOC_APP_NAME", "ruraldoc-api"))

    # Oracle model (overridable via env).
    gemini_model: str = field(
        default_factory=lambda: os.getenv("RURALDOC_GEMINI_MODEL", "gemini-3-pro-preview")
    )
    gemini_fallback_model: str = field(
        default_factory=lambda: os.getenv("RURALDOC_GEMINI_FALLBACK_MODEL", "gemini-3-flash")
    )
    gemini_api_key: str | None = field(
        default_factory=lambda: _first_env(
            "GEMINI_API_KEY",
            "API_KEY",
            "GOOGLE_API_KEY",
        )
    )

    request_timeout_sec: float = field(
        default_factory=lambda: float(os.getenv("RURALDOC_REQUEST_TIMEOUT_SEC", "25"))
    )
    # Upper bound on one oracle turn as seen by the orchestrator.
    oracle_timeout_sec: float = field(
        default_factory=lambda: float(os.getenv("RURALDOC_ORACLE_TIMEOUT_SEC", "30"))
    )

    default_language: str = field(default_factory=lambda: os.getenv("RURALDOC_DEFAULT_LANGUAGE", "en"))
    max_image_bytes: int = field(
        default_factory=lambda: int(os.getenv("RURALDOC_MAX_IMAGE_BYTES", str(5 * 1024 * 1024)))
    )
    max_follow_up_rounds: int = field(
        default_factory=lambda: int(os.getenv("RURALDOC_MAX_FOLLOW_UP_ROUNDS", "1"))
    )

    trend_window: int = field(default_factory=lambda: int(os.getenv("RURALDOC_TREND_WINDOW", "5")))
    trend_min_records: int = field(
        default_factory=lambda: int(os.getenv("RURALDOC_TREND_MIN_RECORDS", "2"))
    )

    escalation_delay_sec: float = field(
        default_factory=lambda: float(os.getenv("RURALDOC_ESCALATION_DELAY_SEC", "0.5"))
    )

    # Persistence
    s3_bucket: str | None = field(default_factory=lambda: os.getenv("RURALDOC_S3_BUCKET"))
    s3_region: str = field(default_factory=lambda: os.getenv("RURALDOC_S3_REGION", "us-east-1"))
    s3_prefix: str = field(default_factory=lambda: os.getenv("RURALDOC_S3_PREFIX", "ruraldoc"))
    local_storage_dir: str = field(
        default_factory=lambda: os.getenv("RURALDOC_LOCAL_STORAGE_DIR", ".ruraldoc_local_store")
    )


def get_settings() -> Settings:
    return Settings()
