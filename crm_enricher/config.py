from pathlib import Path
from zoneinfo import ZoneInfo

from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PATH = Path(__file__).resolve().parent.parent / ".env.local"


class Settings(BaseSettings):
    # Environment settings
    environment: str = "development"
    debug: bool = False
    LOG_LEVEL: str = "INFO"

    # Redis settings
    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_MAX_CONNECTIONS: int = 20
    REDIS_KEY_PREFIX: str = "enrich"

    # Auth settings (bearer JWT verified against a JWKS endpoint)
    AUTH_ENABLED: bool = False
    AUTH_JWKS_URL: str | None = None
    AUTH_AUDIENCE: str = "authenticated"
    AUTH_ALGORITHMS: list[str] = ["ES256", "RS256"]

    # =================================================================
    # HUMAN PATTERN SETTINGS
    # =================================================================
    PATTERN_TIMEZONE: str = "UTC"
    HUMAN_PATTERNS_FILE: str | None = None
    DEFAULT_PATTERN_NAME: str = "off_hours"

    # =================================================================
    # RATE LIMITS - per quota key
    # =================================================================
    DAILY_LIMIT: int = 100
    HOURLY_LIMIT: int = 15
    DEFAULT_MIN_DELAY_SECONDS: float = 8.0
    DEFAULT_MAX_DELAY_SECONDS: float = 45.0

    COOLDOWN_DAYS: int = 30

    # Worker settings
    COLLABORATOR_TIMEOUT_SECONDS: float = 30.0
    MAX_ERROR_LOG: int = 100
    MAX_CREDENTIAL_FAILURES: int = 3
    WORKER_LEASE_TTL_SECONDS: int = 120

    # Recovery supervisor settings
    RECOVERY_ENABLED: bool = True
    RECOVERY_INTERVAL_SECONDS: int = 300
    STALE_JOB_MINUTES: int = 30
    MAX_RESPAWN_ATTEMPTS: int = 3

    # CRM (Dataverse) settings
    CRM_API_VERSION: str = "v9.2"
    CRM_PROFILE_URL_FIELD: str = "uds_linkedin"
    CRM_OAUTH_TOKEN_URL: str = "https://login.microsoftonline.com/{tenant_id}/oauth2/v2.0/token"
    CRM_OAUTH_REDIRECT_URI: str = "http://localhost:5678"

    # Profile source settings
    PROFILE_API_BASE_URL: str = "http://localhost:8080"

    CORS_ALLOW_ORIGINS: list[str] = ["*"]

    model_config = SettingsConfigDict(
        env_file=str(ENV_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def pattern_zone(self) -> ZoneInfo:
        """Timezone used to evaluate human patterns and counter buckets."""
        return ZoneInfo(self.PATTERN_TIMEZONE)

    def get_limits(self) -> dict:
        """
        Get per-quota-key limits.
        Adjust environment-specific settings based on self.environment.
        """
        limits = {
            "daily_limit": self.DAILY_LIMIT,
            "hourly_limit": self.HOURLY_LIMIT,
            "default_min_delay": self.DEFAULT_MIN_DELAY_SECONDS,
            "default_max_delay": self.DEFAULT_MAX_DELAY_SECONDS,
        }

        if self.environment == "development":
            # Shorter pacing for local runs, same quotas
            limits.update({"default_min_delay": 1.0, "default_max_delay": 3.0})

        return limits

    def recovery_config(self) -> dict:
        """Get recovery supervisor configuration."""
        return {
            "interval_seconds": self.RECOVERY_INTERVAL_SECONDS,
            "stale_after_minutes": self.STALE_JOB_MINUTES,
            "max_respawn_attempts": self.MAX_RESPAWN_ATTEMPTS,
        }


settings = Settings()

# =================================================================
# QUICK CONFIGURATION REFERENCE
# =================================================================
"""
CONSERVATIVE (new or sensitive accounts):
    DAILY_LIMIT: int = 50
    HOURLY_LIMIT: int = 8

BALANCED (default):
    DAILY_LIMIT: int = 100
    HOURLY_LIMIT: int = 15

Pattern windows are evaluated in PATTERN_TIMEZONE; set it to the
timezone the CRM users actually work in (e.g. "Asia/Baku").
"""
