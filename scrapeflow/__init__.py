"""Distributed multi-page scraping jobs with queue-based orchestration.

This package provides:
- Declarative extraction configs and a field extraction engine
- A per-task pagination/label state machine driving a Playwright browser
- A partitioned task/result channel (Postgres or in-memory)
- Transactional application of results to the task store
"""

from .channel import Channel, MemoryChannel, PostgresChannel
from .consumer import ConsumerConfig, ResultConsumer
from .models import ExtractionConfig, ScrapedItem, Task, TaskStatus
from .producer import TaskProducer
from .scraper import TaskScraper
from .store import MemoryTaskStore, PostgresTaskStore, TaskStore
from .urls import build_url
from .worker import Worker, WorkerConfig

__version__ = "0.1.0"

__all__ = [
    "Channel",
    "MemoryChannel",
    "PostgresChannel",
    "ConsumerConfig",
    "ResultConsumer",
    "ExtractionConfig",
    "ScrapedItem",
    "Task",
    "TaskStatus",
    "TaskProducer",
    "TaskScraper",
    "MemoryTaskStore",
    "PostgresTaskStore",
    "TaskStore",
    "build_url",
    "Worker",
    "WorkerConfig",
]
