"""Worker for processing scraping tasks."""
from __future__ import annotations

import logging
import signal
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Union

from .browser import PageProvider
from .channel import Channel, Delivery
from .errors import ConfigError, MessagingError
from .messages import (
    CompletedResult,
    FailedResult,
    ProcessingResult,
    decode_task,
    encode,
    peek_task_id,
)
from .scraper import TaskScraper
from .settings import RESULTS_TOPIC, TASKS_TOPIC, WORKER_GROUP

LOGGER = logging.getLogger(__name__)


@dataclass
class WorkerConfig:
    """Worker configuration."""

    worker_id: str
    group: str = WORKER_GROUP
    tasks_topic: str = TASKS_TOPIC
    results_topic: str = RESULTS_TOPIC
    partitions: Optional[List[int]] = None  # None = all partitions
    poll_interval: float = 1.0  # Seconds between empty polls
    graceful_shutdown: bool = True
    max_tasks: Optional[int] = None  # Max tasks before shutdown (for testing)


class Worker:
    """Consumes task messages one at a time and runs the scraper on each."""

    def __init__(
        self,
        config: WorkerConfig,
        channel: Channel,
        pages: PageProvider,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialize worker.

        Parameters
        ----------
        config : WorkerConfig
            Worker configuration
        channel : Channel
            Channel carrying the tasks and results topics
        pages : PageProvider
            Rendering pages, normally the process's ``BrowserSession``
        sleep : callable
            Used for poll back-off and inter-page delays
        """
        self.config = config
        self.channel = channel
        self.pages = pages
        self.sleep = sleep
        self.running = False
        self.tasks_processed = 0
        self.tasks_succeeded = 0
        self.tasks_failed = 0
        self._setup_signal_handlers()

    def _setup_signal_handlers(self) -> None:
        """Setup signal handlers for graceful shutdown."""
        if self.config.graceful_shutdown:
            signal.signal(signal.SIGINT, self._handle_shutdown)
            signal.signal(signal.SIGTERM, self._handle_shutdown)

    def _handle_shutdown(self, signum, frame) -> None:
        """Handle shutdown signal; the current task is allowed to finish."""
        LOGGER.info("Received shutdown signal %s, stopping after current task...", signum)
        self.running = False

    def publish(self, message: Union[ProcessingResult, CompletedResult, FailedResult]) -> None:
        self.channel.publish(self.config.results_topic, message.key, encode(message))

    def run(self) -> None:
        """Run worker loop."""
        LOGGER.info(
            "Starting worker %s (group=%s, partitions=%s)",
            self.config.worker_id,
            self.config.group,
            self.config.partitions if self.config.partitions is not None else "all",
        )

        self.running = True

        while self.running:
            if self.config.max_tasks is not None and self.tasks_processed >= self.config.max_tasks:
                LOGGER.info("Reached max tasks limit (%d), shutting down", self.config.max_tasks)
                break

            try:
                if not self.run_once():
                    LOGGER.debug("No tasks available, sleeping...")
                    self.sleep(self.config.poll_interval)
            except KeyboardInterrupt:
                LOGGER.info("Keyboard interrupt, shutting down...")
                self.running = False
            except Exception as exc:
                LOGGER.error("Worker error: %s", exc, exc_info=True)
                self.sleep(self.config.poll_interval)

        self._log_stats()

    def run_once(self) -> bool:
        """Poll and process at most one task.

        Returns
        -------
        bool
            True if a message was handled

        Raises
        ------
        MessagingError
            Poll, publish or ack failed; the message stays unacknowledged and
            will be redelivered from page 1
        """
        delivery = self.channel.poll(
            self.config.tasks_topic,
            self.config.group,
            self.config.partitions,
            member=self.config.worker_id,
        )
        if delivery is None:
            return False

        self._process(delivery)
        self.channel.ack(delivery, self.config.group)
        self.tasks_processed += 1
        return True

    def _process(self, delivery: Delivery) -> None:
        try:
            task = decode_task(delivery.value)
        except ConfigError as exc:
            task_id = peek_task_id(delivery.value)
            LOGGER.error("Rejected task message %s: %s", task_id or delivery.key, exc)
            if task_id:
                self.publish(FailedResult(task_id=task_id, source_url="", error=str(exc)))
            self.tasks_failed += 1
            return
        except MessagingError as exc:
            LOGGER.error(
                "Dropping undecodable message %s[%d]@%d: %s",
                delivery.topic,
                delivery.partition,
                delivery.offset,
                exc,
            )
            self.tasks_failed += 1
            return

        LOGGER.info("Received task %s: %s", task.task_id, task.url)
        start_time = time.time()

        try:
            result = TaskScraper(task, self.pages, self.publish, sleep=self.sleep).run()
        except MessagingError:
            raise
        except Exception as exc:
            LOGGER.error("Exception processing task %s: %s", task.task_id, exc, exc_info=True)
            self.publish(
                FailedResult(
                    task_id=task.task_id,
                    source_url=task.url,
                    error=f"Scrape exception: {exc}",
                )
            )
            self.tasks_failed += 1
            return

        if isinstance(result, CompletedResult):
            self.tasks_succeeded += 1
        else:
            self.tasks_failed += 1
        LOGGER.info(
            "Task %s finished as %s (took %.2fs)",
            task.task_id,
            result.status,
            time.time() - start_time,
        )

    def _log_stats(self) -> None:
        """Log worker statistics."""
        LOGGER.info(
            "Worker %s shutting down: processed=%d, succeeded=%d, failed=%d",
            self.config.worker_id,
            self.tasks_processed,
            self.tasks_succeeded,
            self.tasks_failed,
        )
