"""Centralized configuration loading."""

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

DEFAULT_USER_AGENT = "SeloBot/1.0 (Site Audit)"


@dataclass(frozen=True)
class Config:
    """Application configuration."""

    # Storage
    db_path: Path

    # Fetching
    user_agent: str
    fetch_timeout: float
    fetch_max_bytes: int

    # Batch budget
    batch_max_pages: int
    batch_time_budget_seconds: float
    max_pages_per_audit: int

    # Crawling
    crawl_concurrency: int
    crawl_delay_seconds: float
    respect_robots_txt: bool

    # Lifecycle
    stale_threshold_seconds: int
    max_concurrent_batches: int
    audit_retention_days: int
    recent_checks_limit: int


def _get_optional_env(key: str, default: str) -> str:
    """Get optional environment variable with default."""
    value = os.getenv(key)
    return value.strip() if value else default


def _get_bool_env(key: str, default: bool) -> bool:
    """Parse a boolean flag such as 1/true/yes."""
    value = _get_optional_env(key, "true" if default else "false")
    return value.lower() in ("1", "true", "yes", "on")


def _get_default_db_path() -> Path:
    """Get default database path in user's cache directory."""
    cache_dir = Path.home() / ".cache" / "siteaudit"
    cache_dir.mkdir(parents=True, exist_ok=True)
    return cache_dir / "audits.db"


def load_config() -> Config:
    """Load and validate configuration from environment."""
    load_dotenv()
    db_path_env = os.getenv("AUDIT_DB_PATH")
    db_path = Path(db_path_env) if db_path_env else _get_default_db_path()

    config = Config(
        db_path=db_path,
        user_agent=_get_optional_env("AUDIT_USER_AGENT", DEFAULT_USER_AGENT),
        fetch_timeout=float(_get_optional_env("FETCH_TIMEOUT_SECONDS", "30")),
        fetch_max_bytes=int(_get_optional_env("FETCH_MAX_BYTES", str(5 * 1024 * 1024))),
        # Batch budget
        batch_max_pages=int(_get_optional_env("BATCH_MAX_PAGES", "50")),
        batch_time_budget_seconds=float(_get_optional_env("BATCH_TIME_BUDGET_SECONDS", "240")),
        max_pages_per_audit=int(_get_optional_env("MAX_PAGES_PER_AUDIT", "500")),
        # Crawling
        crawl_concurrency=int(_get_optional_env("CRAWL_CONCURRENCY", "4")),
        crawl_delay_seconds=float(_get_optional_env("CRAWL_DELAY_SECONDS", "0.1")),
        respect_robots_txt=_get_bool_env("RESPECT_ROBOTS_TXT", True),
        # Lifecycle
        stale_threshold_seconds=int(_get_optional_env("STALE_THRESHOLD_SECONDS", "900")),
        max_concurrent_batches=int(_get_optional_env("MAX_CONCURRENT_BATCHES", "10")),
        audit_retention_days=int(_get_optional_env("AUDIT_RETENTION_DAYS", "30")),
        recent_checks_limit=int(_get_optional_env("RECENT_CHECKS_LIMIT", "50")),
    )

    if config.batch_max_pages < 1:
        raise ValueError("BATCH_MAX_PAGES must be at least 1")
    if config.crawl_concurrency < 1:
        raise ValueError("CRAWL_CONCURRENCY must be at least 1")

    return config


# Singleton config instance (lazy loaded)
_config: Config | None = None


def get_config() -> Config:
    """Get the configuration singleton."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reset_config() -> None:
    """Reset config singleton (useful for testing)."""
    global _config
    _config = None
