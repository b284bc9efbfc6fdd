"""Mata Finance — Application configuration via environment variables."""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings


class MataSettings(BaseSettings):
    """Central configuration loaded from environment / .env file."""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    # ── PostgreSQL (Transaction Store) ─────────────────────────
    postgres_user: str = "mata_finance"
    postgres_password: str = "change-me-in-production"
    postgres_db: str = "mata_finance"
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    database_url: str = ""

    @property
    def database_url_sync(self) -> str:
        if self.database_url:
            return self.database_url
        return (
            f"postgresql+psycopg2://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    # ── API ────────────────────────────────────────────────────
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    jwt_secret_key: str = "change-me-generate-a-random-secret"
    jwt_algorithm: str = "HS256"
    jwt_expiration_minutes: int = 1440

    # ── Lifecycle Policy ───────────────────────────────────────
    draft_window_hours: int = 24
    near_deadline_hours: int = 6
    ocr_tolerance_percent: float = 5.0
    min_reason_length: int = 10
    required_documents: dict[str, list[str]] = Field(
        default_factory=lambda: {"payment": ["invoice"]}
    )

    # ── Approval Queue ─────────────────────────────────────────
    time_sensitive_after_hours: int = 24
    decision_history_days: int = 60
    decision_history_limit: int = 100

    # ── System Notices ─────────────────────────────────────────
    notice_exposure_window_days: int = 7
    notice_display_limit: int = 2

    # ── Logging ────────────────────────────────────────────────
    log_level: str = "INFO"
    log_format: str = "json"


settings = MataSettings()
