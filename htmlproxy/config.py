import logging
from typing import List

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings

_logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    # App
    APP_NAME: str = "htmlproxy"
    APP_VERSION: str = "0.1.0"
    PORT: int = 3000

    # Lifecycle: "true" keeps one shared session pool across requests
    PERSISTENT_CRAWLER: bool = False

    # Proxy sources (merged and deduplicated)
    PROXY_URLS: str = ""  # comma-separated
    PROXY_FILE: str = "proxy.txt"  # one proxy per line, '#' comments allowed
    PROXY_ROTATION: str = "round_robin"  # round_robin | random

    # Browser
    BROWSER_ENGINE: str = "firefox"
    BROWSER_HEADLESS: bool = True
    NAVIGATION_WAIT_UNTIL: str = "load"

    # Challenge-protected hosts (matched by hostname suffix)
    CHALLENGE_HOSTS: List[str] = ["mircli.ru"]
    CHALLENGE_ENGINE: str = "chromium"
    CHALLENGE_HEADLESS: bool = Field(
        default=True,
        validation_alias=AliasChoices("CHALLENGE_HEADLESS", "MIRCLI_HEADLESS"),
    )
    CHALLENGE_ACCEPT_LANGUAGE: str = "ru-RU,ru;q=0.9,en-US;q=0.8,en;q=0.7"

    # Fetching
    FETCH_TIMEOUT_MS: int = 30000
    CHALLENGE_TIMEOUT_MS: int = 45000
    MAX_REQUEST_RETRIES: int = 2

    # Session pool
    SESSION_POOL_SIZE: int = 20
    SESSION_MAX_USAGE: int = 50
    SESSION_MAX_ERROR_SCORE: int = 3

    # Unclaimed results kept before the oldest are evicted
    RESULT_BUFFER_SIZE: int = 256
    TEARDOWN_TIMEOUT_SECONDS: float = 10.0

    # Sentry
    SENTRY_DSN: str = ""
    SENTRY_TRACES_SAMPLE_RATE: float = 0.2
    SENTRY_ENVIRONMENT: str = "development"

    # Logging
    LOG_FORMAT: str = "json"  # "json" for production, "text" for development
    LOG_LEVEL: str = "INFO"

    # Metrics
    METRICS_ENABLED: bool = True

    def model_post_init(self, __context) -> None:
        if self.PROXY_ROTATION not in ("round_robin", "random"):
            _logger.warning(
                "Unknown PROXY_ROTATION %r, falling back to round_robin",
                self.PROXY_ROTATION,
            )
            object.__setattr__(self, "PROXY_ROTATION", "round_robin")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
        "populate_by_name": True,
    }


settings = Settings()
