import logging
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Configuration sourced from environment variables."""

    # Resilience
    retry_max_retries: int = 3
    retry_base_delay: float = 1.0
    breaker_failure_threshold: int = 5
    breaker_open_timeout: float = 60.0

    # Request deadlines (seconds)
    text_deadline: float = 3.0
    media_deadline: float = 5.0

    # Domain trust
    domain_intel_url: str | None = None
    domain_intel_api_key: str | None = None
    http_timeout: float = 4.0
    shortener_max_hops: int = 5
    typosquat_max_distance: int = 2
    new_domain_days: int = 30
    domain_trust_ttl: int = 86400
    domain_trust_redis_url: str | None = None
    trusted_domains: list[str] = Field(default_factory=list)
    suspicious_domains: list[str] = Field(default_factory=list)

    # Regional truth
    lookback_days: int = 90
    trend_window_days: int = 7
    trend_min_reports: int = 3
    trend_ratio: float = 2.0
    pattern_expiry_days: int = 365
    degraded_cache_size: int = 256

    # Alerts
    default_language: str = "en"

    # Logging
    log_level: str = "INFO"
    log_file: str | None = None

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "env_prefix": "SCAMGUARD_",
        "case_sensitive": False,
    }


@lru_cache(1)
def get_settings() -> Settings:
    return Settings()


def configure_logging(settings: Settings | None = None) -> None:
    settings = settings or get_settings()
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if settings.log_file:
        handlers.append(logging.FileHandler(settings.log_file))
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=handlers,
    )
