"""Task creation: validate, persist as pending, enqueue."""
from __future__ import annotations

import logging
from typing import Any, Dict, Union
from urllib.parse import urlsplit

from .channel import Channel
from .errors import ConfigError, MessagingError, PersistenceError
from .messages import FailedResult, TaskMessage, encode
from .models import ExtractionConfig, Task
from .settings import TASKS_TOPIC
from .store import TaskStore

LOGGER = logging.getLogger(__name__)


class TaskProducer:
    """Creates tasks and publishes them to the tasks topic."""

    def __init__(self, store: TaskStore, channel: Channel, topic: str = TASKS_TOPIC) -> None:
        self.store = store
        self.channel = channel
        self.topic = topic

    def create_task(
        self,
        url: str,
        data_type: str,
        config: Union[ExtractionConfig, Dict[str, Any]],
        pages: int = 1,
    ) -> Task:
        """Create a pending task and enqueue it for the workers.

        Parameters
        ----------
        url : str
            Base listing URL
        data_type : str
            Free-form category of the scraped items
        config : ExtractionConfig or dict
            Extraction config; raw dicts use the camelCase wire names
        pages : int
            Requested page count (``maxPages`` in the config wins)

        Returns
        -------
        Task
            The stored task, still ``pending``

        Raises
        ------
        ConfigError
            Invalid input; nothing is stored or published
        MessagingError
            Task stored but could not be enqueued; it is marked failed
        PersistenceError
            Task could not be stored; nothing is published
        """
        parts = urlsplit(url or "")
        if parts.scheme not in ("http", "https") or not parts.netloc:
            raise ConfigError(f"URL must be an absolute http(s) URL, got {url!r}")
        if not data_type:
            raise ConfigError("dataType is required")
        if pages < 1:
            raise ConfigError(f"pages must be >= 1, got {pages}")

        task = Task(
            url=url,
            max_pages=pages,
            data_type=data_type,
            config=ExtractionConfig.parse(config),
        )
        self.store.create_task(task)

        message = TaskMessage.from_task(task)
        try:
            self.channel.publish(self.topic, message.key, encode(message))
        except MessagingError as exc:
            LOGGER.error("Failed to enqueue task %s: %s", task.id, exc)
            try:
                self.store.apply(
                    FailedResult(
                        task_id=task.id,
                        source_url=task.url,
                        error=f"Failed to enqueue: {exc}",
                    )
                )
            except PersistenceError as store_exc:
                LOGGER.error("Failed to mark task %s as failed: %s", task.id, store_exc)
            raise

        LOGGER.info("Enqueued task %s: %s (%s)", task.id, task.url, task.data_type)
        return task
