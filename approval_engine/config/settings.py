"""Application Settings - Central Configuration"""
from functools import lru_cache
from typing import List
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # MongoDB
    mongo_uri: str = "mongodb://localhost:27017"
    mongo_db: str = "approval_engine_dev"

    # Logging
    logs_path: str = "./logs"
    log_level: str = "INFO"

    # Permissions - comma separated role tags
    admin_override_roles: str = "admin,librarian"  # May act on any step
    cancel_roles: str = "admin,librarian"
    committee_admin_roles: str = "admin,librarian"  # Manage committee members and rounds

    # Committee
    consensus_policy: str = "unanimity"  # unanimity | majority | president_tiebreak

    # SLA
    sla_delay_threshold_days: float = 5  # Instances older than this are flagged as delayed
    delay_scan_interval_minutes: int = 60

    # Event outbox / scheduler
    scheduler_interval_seconds: int = 10  # Dispatch pending events every 10 seconds
    event_max_retries: int = 5
    event_lock_duration_seconds: int = 60  # How long a worker holds an outbox entry
    event_batch_size: int = 50
    stale_lock_cleanup_minutes: int = 10

    @property
    def admin_override_roles_list(self) -> List[str]:
        """Parse override roles string to list"""
        return _split_roles(self.admin_override_roles)

    @property
    def cancel_roles_list(self) -> List[str]:
        """Parse cancel roles string to list"""
        return _split_roles(self.cancel_roles)

    @property
    def committee_admin_roles_list(self) -> List[str]:
        """Parse committee admin roles string to list"""
        return _split_roles(self.committee_admin_roles)


def _split_roles(value: str) -> List[str]:
    return [role.strip() for role in value.split(",") if role.strip()]


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


settings = get_settings()
