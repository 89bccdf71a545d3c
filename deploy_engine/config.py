#deploy_engine\config.py

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

from deploy_engine.backup.models import RetentionPolicy


class EngineSettings(BaseSettings):
    """Engine configuration from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Database
    database_url: str = "sqlite:///./data/deploy_engine.db"
    pool_size: int = 10
    max_overflow: int = 20
    pool_timeout: int = 30
    pool_recycle: int = 3600
    echo_sql: bool = False

    # Orchestration
    compose_binary: str = "docker"
    compose_work_dir: str = "./data/stacks"
    compose_timeout_seconds: float = 300.0
    compose_pull: bool = False

    # Tunnel agent
    tunnel_image: str = "fosrl/newt:latest"
    tunnel_domain: str = ""
    tunnel_log_level: str = "INFO"

    # Backups
    backup_storage_type: str = "local"
    backup_storage_path: str = "./data/backups"
    backup_staging_path: str = "./data/staging"
    # Key files live under <backup_key_path>/keys
    backup_key_path: str = "./data"

    s3_bucket: str = ""
    s3_prefix: str = "backups/"
    s3_region: Optional[str] = None
    s3_endpoint_url: Optional[str] = None

    # Retention (scheduled backups)
    retention_daily_days: int = 7
    retention_weekly_weeks: int = 4
    retention_monthly_months: int = 6

    # Workers
    max_background_workers: int = 4
    scheduler_poll_seconds: float = 30.0

    # Templates
    templates_dir: str = "./templates"

    @property
    def retention_policy(self) -> RetentionPolicy:
        return RetentionPolicy(
            daily_days=self.retention_daily_days,
            weekly_weeks=self.retention_weekly_weeks,
            monthly_months=self.retention_monthly_months,
        )

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")


@lru_cache()
def get_settings() -> EngineSettings:
    return EngineSettings()
