"""
Audit Trail Configuration.

Manages settings for the audit query, correlation and snapshot layer with
environment variable overrides.
"""

from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class AuditSettings(BaseSettings):
    """
    Audit trail configuration from environment variables.

    Environment Variables:
        AUDIT_DB_PATH: SQLite database holding the audit logs (default: data/audit.db)
        AUDIT_TIMEZONE: Timezone for date-only filter bounds (default: UTC)
        AUDIT_DEFAULT_PAGE_SIZE: Page size when none is requested (default: 50)
        AUDIT_SYSTEM_ACTOR_IDS: JSON list of automation actor ids (default: ["automation", "system"])
        AUDIT_TEXT_SEARCH_ENABLED: Evaluate global search in memory (default: True)
        AUDIT_ACTOR_SEARCH_ENABLED: Advertise case-insensitive actor search (default: True)
        AUDIT_CONTEXT_LOOKUP_ENABLED: Advertise @context lookups in the store (default: True)
        AUDIT_CORRELATION_MAX_WORKERS: Threads for scatter-gather fan-out (default: 4)
        AUDIT_TIMELINE_WINDOW_MINUTES: Default actor timeline window (default: 30)
        AUDIT_LOG_LEVEL: Log level (default: INFO)
        AUDIT_LOG_JSON: JSON log output (default: True)

    Usage:
        settings = get_settings()
        database = AuditDatabase(settings.db_path)
    """

    model_config = SettingsConfigDict(
        env_prefix="AUDIT_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Storage
    db_path: str = Field(default="data/audit.db", description="SQLite audit database path")
    timezone: str = Field(default="UTC", description="Timezone for date-only filter bounds")

    # Querying
    default_page_size: int = Field(default=50, ge=1, le=500, description="Default page size")
    text_search_enabled: bool = Field(default=True, description="Evaluate global search in memory")
    actor_search_enabled: bool = Field(default=True, description="Case-insensitive actor search")
    context_lookup_enabled: bool = Field(default=True, description="Structured @context lookups")

    # Actor classification
    system_actor_ids: list[str] = Field(
        default_factory=lambda: ["automation", "system"],
        description="Actor ids reserved for automated changes",
    )

    # Correlation
    correlation_max_workers: int = Field(default=4, ge=1, le=32, description="Fan-out threads")
    timeline_window_minutes: int = Field(default=30, ge=1, le=1440, description="Actor timeline window")

    # Logging
    log_level: str = Field(default="INFO", description="Log level")
    log_json: bool = Field(default=True, description="JSON log output")

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        """Reject unknown timezone names early."""
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone: {v}") from e
        return v

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    def to_dict(self) -> dict:
        """Export config as dictionary (safe for logging)."""
        return {
            "db_path": self.db_path,
            "timezone": self.timezone,
            "default_page_size": self.default_page_size,
            "text_search_enabled": self.text_search_enabled,
            "actor_search_enabled": self.actor_search_enabled,
            "context_lookup_enabled": self.context_lookup_enabled,
            "system_actor_ids": list(self.system_actor_ids),
            "correlation_max_workers": self.correlation_max_workers,
            "timeline_window_minutes": self.timeline_window_minutes,
        }


# Global settings instance (singleton pattern)
_settings_instance: AuditSettings | None = None


def get_settings(force_reload: bool = False) -> AuditSettings:
    """
    Get global audit settings singleton.

    Args:
        force_reload: Force reload from environment (useful for testing)

    Returns:
        AuditSettings instance
    """
    global _settings_instance

    if _settings_instance is None or force_reload:
        _settings_instance = AuditSettings()

    return _settings_instance


def reset_settings() -> None:
    """Reset global settings instance (for testing)."""
    global _settings_instance
    _settings_instance = None
