from __future__ import annotations

from decimal import Decimal

from pydantic import ConfigDict, Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    api_key: str = "test-api-key"
    trusted_proxies: list[str] = Field(
        default_factory=lambda: ["127.0.0.1", "testclient"]
    )
    rate_limit_ip_per_min: int = 30
    rate_limit_user_per_min: int = 120
    log_level: str = Field("INFO", alias="LOG_LEVEL")

    database_url: str = Field("sqlite:////tmp/blueprint_ai_test.db", alias="DATABASE_URL")
    db_create_all: bool = Field(False, alias="DB_CREATE_ALL")

    redis_url: str = Field("redis://localhost:6379", alias="REDIS_URL")
    analysis_queue: str = Field("symbol-detection", alias="ANALYSIS_QUEUE")

    # Tier quotas per calendar month; premium has no limit.
    free_monthly_limit: int = 10
    basic_monthly_limit: int = 50
    default_analysis_cost: Decimal = Decimal("0.01")
    paywall_enabled: bool = Field(True, alias="PAYWALL_ENABLED")

    job_poll_interval_s: float = Field(3.0, alias="JOB_POLL_INTERVAL_S")
    job_poll_deadline_s: float = Field(
        120.0,
        alias="JOB_POLL_DEADLINE_S",
        description="Upper bound for one job watch session",
    )

    model_config = ConfigDict(
        extra="ignore",
        env_file=".env",
        case_sensitive=False,
    )
