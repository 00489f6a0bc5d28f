"""Application configuration using pydantic-settings."""
from functools import lru_cache
from pathlib import Path
from typing import Dict

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""
    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).resolve().parents[3] / ".env"),
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    log_level: str = "INFO"
    state_db_path: str = "./data/freightline.db"
    app_mode: str = "development"

    # Identity
    auth_enabled: bool = False
    # Comma-separated `token:user_id` pairs used when auth_enabled is true.
    user_tokens: str = ""
    # Required (X-Admin-Bootstrap-Token) to register admin accounts when set.
    admin_bootstrap_token: str = ""

    # Bidding
    bid_default_ttl_hours: int = 48

    # Documents
    upload_base_url: str = "https://uploads.freightline.local/upload"
    max_upload_size: int = 52428800  # 50MB

    # Geofencing
    geofence_default_radius: float = 100.0
    geofence_require_containment: bool = False

    # Notifications
    notification_webhook_url: str = ""
    notification_webhook_timeout_seconds: float = 5.0

    idempotency_max_entries: int = 10000

    def parsed_user_tokens(self) -> Dict[str, str]:
        """Parse `token:user_id` comma-separated values."""
        mapping: Dict[str, str] = {}
        for segment in (self.user_tokens or "").split(","):
            item = segment.strip()
            if not item or ":" not in item:
                continue
            token, user_id = item.split(":", 1)
            if token.strip() and user_id.strip():
                mapping[token.strip()] = user_id.strip()
        return mapping

    def is_production(self) -> bool:
        return (self.app_mode or "").strip().lower() == "production"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
