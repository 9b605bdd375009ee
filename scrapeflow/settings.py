"""Runtime settings loaded from the environment (and an optional ``.env``)."""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parents[1]

TASKS_TOPIC = "scraping-tasks"
RESULTS_TOPIC = "scraping-results"
DEAD_LETTER_TOPIC = "scraping-results-dlq"
WORKER_GROUP = "scraper-group"
CONSUMER_GROUP = "core-results-group"


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if not value:
        return default
    return int(value)


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if not value:
        return default
    return float(value)


def get_db_connection_string() -> str:
    """Get database connection string from environment."""
    if conn_str := os.getenv("DATABASE_URL"):
        return conn_str
    if conn_str := os.getenv("PG_DSN"):
        return conn_str

    host = os.getenv("PG_HOST", "localhost")
    port = os.getenv("PG_PORT", "5432")
    user = os.getenv("PG_USER", "scrapeflow")
    password = os.getenv("PG_PASS", "scrapeflow")
    database = os.getenv("PG_DB", "scrapeflow")

    return f"postgresql://{user}:{password}@{host}:{port}/{database}"


@dataclass
class Settings:
    """Channel, store and browser settings for every scrapeflow process."""

    dsn: str
    tasks_topic: str = TASKS_TOPIC
    results_topic: str = RESULTS_TOPIC
    dead_letter_topic: str = DEAD_LETTER_TOPIC
    worker_group: str = WORKER_GROUP
    consumer_group: str = CONSUMER_GROUP
    partitions: int = 4
    poll_interval: float = 1.0
    headless: bool = True
    apply_attempts: int = 5
    apply_backoff_max: float = 30.0
    lease_timeout: float = 1800.0
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env_file: Optional[Path] = None) -> Settings:
        """Build settings from ``SCRAPEFLOW_*`` variables.

        Parameters
        ----------
        env_file : Path, optional
            Dotenv file to load first (defaults to ``.env`` at the repo root).
            Variables already present in the environment win.
        """
        load_dotenv(env_file or BASE_DIR / ".env")
        return cls(
            dsn=get_db_connection_string(),
            tasks_topic=os.getenv("SCRAPEFLOW_TASKS_TOPIC", TASKS_TOPIC),
            results_topic=os.getenv("SCRAPEFLOW_RESULTS_TOPIC", RESULTS_TOPIC),
            dead_letter_topic=os.getenv("SCRAPEFLOW_DLQ_TOPIC", DEAD_LETTER_TOPIC),
            worker_group=os.getenv("SCRAPEFLOW_WORKER_GROUP", WORKER_GROUP),
            consumer_group=os.getenv("SCRAPEFLOW_CONSUMER_GROUP", CONSUMER_GROUP),
            partitions=_env_int("SCRAPEFLOW_PARTITIONS", 4),
            poll_interval=_env_float("SCRAPEFLOW_POLL_INTERVAL", 1.0),
            headless=_env_bool("SCRAPEFLOW_HEADLESS", True),
            apply_attempts=_env_int("SCRAPEFLOW_APPLY_ATTEMPTS", 5),
            apply_backoff_max=_env_float("SCRAPEFLOW_APPLY_BACKOFF_MAX", 30.0),
            lease_timeout=_env_float("SCRAPEFLOW_LEASE_TIMEOUT", 1800.0),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )
