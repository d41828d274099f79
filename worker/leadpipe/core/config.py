"""Application configuration helpers."""

import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

_TRUTHY = {"1", "true", "yes"}


class ConfigError(RuntimeError):
    """Raised when mandatory configuration is missing."""


@dataclass(frozen=True)
class Settings:
    database_url: str
    google_api_key: str = ""
    openai_api_key: str = ""
    scoring_model: str = "gpt-4.1-mini"
    queue_backend: str = "postgres"
    port: int = 8080

    # Places ingestion
    places_requests_per_second: float = 5.0
    places_max_attempts: int = 3
    default_max_results_per_search: int = 60

    # Scrape stage
    scrape_max_concurrency: int = 30
    scrape_batch_size: int = 10
    scrape_max_batching_window_s: float = 30.0
    scrape_visibility_timeout_s: int = 15 * 60
    scrape_grace_window_s: int = 10 * 60
    enrich_use_js_renderer: bool = True
    default_phone_region: Optional[str] = "US"

    # Scoring stage
    score_max_concurrency: int = 2
    score_batch_size: int = 10
    score_max_batching_window_s: float = 30.0
    score_visibility_timeout_s: int = 5 * 60
    score_timeout_s: float = 60.0

    # Redelivery backoff after a failed task
    max_receive_count: int = 3
    retry_base_delay_s: float = 10.0
    retry_max_delay_s: float = 300.0

    run_error_messages_limit: int = 50


def _int_env(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _float_env(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in _TRUTHY


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load settings from environment variables with sensible defaults."""
    load_dotenv()

    database_url = os.getenv("DATABASE_URL", "")
    google_api_key = os.getenv("GOOGLE_API_KEY", "")
    openai_api_key = os.getenv("OPENAI_API_KEY", "")
    queue_backend = os.getenv("QUEUE_BACKEND", "postgres").strip().lower()
    default_phone_region_raw = os.getenv("DEFAULT_PHONE_REGION", "US")
    default_phone_region = default_phone_region_raw.strip().upper() if default_phone_region_raw else None

    if queue_backend not in {"postgres", "memory"}:
        raise ConfigError(f"QUEUE_BACKEND must be 'postgres' or 'memory', got {queue_backend!r}")

    score_timeout_s = _float_env("SCORE_TIMEOUT_S", 60.0)
    if score_timeout_s > 60:
        logger.warning("SCORE_TIMEOUT_S=%s exceeds the 60s ceiling; clamping.", score_timeout_s)
        score_timeout_s = 60.0

    if not database_url:
        logger.warning("DATABASE_URL is not set; database operations will fail.")
    if not google_api_key:
        logger.warning("GOOGLE_API_KEY is not configured; Google Places requests will fail.")
    if not openai_api_key:
        logger.warning("OPENAI_API_KEY is not configured; lead scoring will fail.")

    return Settings(
        database_url=database_url,
        google_api_key=google_api_key,
        openai_api_key=openai_api_key,
        scoring_model=os.getenv("SCORING_MODEL", "gpt-4.1-mini"),
        queue_backend=queue_backend,
        port=_int_env("PORT", 8080),
        places_requests_per_second=_float_env("PLACES_REQUESTS_PER_SECOND", 5.0),
        places_max_attempts=_int_env("PLACES_MAX_ATTEMPTS", 3),
        default_max_results_per_search=_int_env("DEFAULT_MAX_RESULTS_PER_SEARCH", 60),
        scrape_max_concurrency=_int_env("SCRAPE_MAX_CONCURRENCY", 30),
        scrape_batch_size=_int_env("SCRAPE_BATCH_SIZE", 10),
        scrape_max_batching_window_s=_float_env("SCRAPE_MAX_BATCHING_WINDOW_S", 30.0),
        scrape_visibility_timeout_s=_int_env("SCRAPE_VISIBILITY_TIMEOUT_S", 15 * 60),
        scrape_grace_window_s=_int_env("SCRAPE_GRACE_WINDOW_S", 10 * 60),
        enrich_use_js_renderer=_bool_env("ENRICH_USE_JS_RENDERER", True),
        default_phone_region=default_phone_region,
        score_max_concurrency=_int_env("SCORE_MAX_CONCURRENCY", 2),
        score_batch_size=_int_env("SCORE_BATCH_SIZE", 10),
        score_max_batching_window_s=_float_env("SCORE_MAX_BATCHING_WINDOW_S", 30.0),
        score_visibility_timeout_s=_int_env("SCORE_VISIBILITY_TIMEOUT_S", 5 * 60),
        score_timeout_s=score_timeout_s,
        max_receive_count=_int_env("MAX_RECEIVE_COUNT", 3),
        retry_base_delay_s=_float_env("RETRY_BASE_DELAY_S", 10.0),
        retry_max_delay_s=_float_env("RETRY_MAX_DELAY_S", 300.0),
        run_error_messages_limit=_int_env("RUN_ERROR_MESSAGES_LIMIT", 50),
    )
