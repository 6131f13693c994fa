"""API configuration via pydantic-settings."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from filz_audit.audit.models import AuditAction


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(
        env_prefix="FILZ_AUDIT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Server configuration
    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = False
    log_level: str = "INFO"

    # API configuration
    api_title: str = "Filz Audit API"
    api_version: str = "1.0.0"

    # CORS origins
    cors_origins: list[str] = ["http://localhost:3000"]

    # === STORAGE SETTINGS ===
    storage_type: Literal["file", "postgres"] = "file"
    storage_path: str = "data/audit"
    database_url: str | None = None

    # === CHAIN SETTINGS ===
    hash_algorithm: str = "sha256"
    excluded_actions: set[AuditAction] = Field(default_factory=set)
    # Log and drop audit storage failures instead of failing the business action
    fail_open: bool = False

    # === VERIFICATION SETTINGS ===
    verification_enabled: bool = True
    verification_interval_seconds: int = Field(default=86400, ge=1)

    # Operator token for changing the exclusion set (disabled when unset)
    admin_token: str | None = None
