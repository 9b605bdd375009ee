"""Result consumer: applies result messages to the store, in partition order."""
from __future__ import annotations

import json
import logging
import signal
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

from tenacity import Retrying, before_sleep_log, retry_if_exception, stop_after_attempt, wait_exponential

from .channel import Channel, Delivery
from .errors import MessagingError, PersistenceError, StatusRegressionError, UnknownTaskError
from .messages import decode_result
from .settings import CONSUMER_GROUP, DEAD_LETTER_TOPIC, RESULTS_TOPIC
from .store import ResultMessage, TaskStore

LOGGER = logging.getLogger(__name__)


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, PersistenceError) and not isinstance(
        exc, (StatusRegressionError, UnknownTaskError)
    )


@dataclass
class ConsumerConfig:
    """Result consumer configuration."""

    consumer_id: str
    group: str = CONSUMER_GROUP
    results_topic: str = RESULTS_TOPIC
    dead_letter_topic: str = DEAD_LETTER_TOPIC
    partitions: Optional[List[int]] = None
    poll_interval: float = 1.0
    apply_attempts: int = 5
    backoff_max: float = 30.0
    graceful_shutdown: bool = True
    max_messages: Optional[int] = None


class ResultConsumer:
    """Applies each result message exactly once per delivery, then acks it.

    Transient store failures are retried with exponential backoff. Messages
    that still cannot be applied (or never can: malformed payloads, unknown
    tasks, terminal status regressions) go to the dead-letter topic with the
    error attached, and only then is the offset committed.
    """

    def __init__(
        self,
        config: ConsumerConfig,
        channel: Channel,
        store: TaskStore,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.channel = channel
        self.store = store
        self.sleep = sleep
        self.running = False
        self.messages_applied = 0
        self.messages_skipped = 0
        self.messages_dead_lettered = 0
        if config.graceful_shutdown:
            signal.signal(signal.SIGINT, self._handle_shutdown)
            signal.signal(signal.SIGTERM, self._handle_shutdown)

    def _handle_shutdown(self, signum, frame) -> None:
        LOGGER.info("Received shutdown signal %s, stopping gracefully...", signum)
        self.running = False

    @property
    def messages_handled(self) -> int:
        return self.messages_applied + self.messages_skipped + self.messages_dead_lettered

    def run(self) -> None:
        """Run consumer loop."""
        LOGGER.info(
            "Starting result consumer %s (group=%s)",
            self.config.consumer_id,
            self.config.group,
        )
        self.running = True

        while self.running:
            if (
                self.config.max_messages is not None
                and self.messages_handled >= self.config.max_messages
            ):
                LOGGER.info("Reached max messages limit (%d), shutting down", self.config.max_messages)
                break

            try:
                if not self.run_once():
                    self.sleep(self.config.poll_interval)
            except KeyboardInterrupt:
                LOGGER.info("Keyboard interrupt, shutting down...")
                self.running = False
            except Exception as exc:
                LOGGER.error("Consumer error: %s", exc, exc_info=True)
                self.sleep(self.config.poll_interval)

        LOGGER.info(
            "Consumer %s shutting down: applied=%d, skipped=%d, dead_lettered=%d",
            self.config.consumer_id,
            self.messages_applied,
            self.messages_skipped,
            self.messages_dead_lettered,
        )

    def run_once(self) -> bool:
        """Poll and handle at most one result message.

        Returns
        -------
        bool
            True if a message was handled
        """
        delivery = self.channel.poll(
            self.config.results_topic,
            self.config.group,
            self.config.partitions,
            member=self.config.consumer_id,
        )
        if delivery is None:
            return False

        self._handle(delivery)
        self.channel.ack(delivery, self.config.group)
        return True

    def _apply(self, message: ResultMessage) -> bool:
        retrying = Retrying(
            stop=stop_after_attempt(self.config.apply_attempts),
            wait=wait_exponential(multiplier=0.5, max=self.config.backoff_max),
            retry=retry_if_exception(_is_transient),
            sleep=self.sleep,
            before_sleep=before_sleep_log(LOGGER, logging.WARNING),
            reraise=True,
        )
        return retrying(self.store.apply, message)

    def _handle(self, delivery: Delivery) -> None:
        try:
            message = decode_result(delivery.value)
        except MessagingError as exc:
            LOGGER.error(
                "Undecodable result at %s[%d]@%d: %s",
                delivery.topic,
                delivery.partition,
                delivery.offset,
                exc,
            )
            self._dead_letter(delivery, str(exc))
            return

        try:
            applied = self._apply(message)
        except StatusRegressionError as exc:
            LOGGER.error("Ordering violation for task %s: %s", message.task_id, exc)
            self._dead_letter(delivery, str(exc))
            return
        except PersistenceError as exc:
            LOGGER.error(
                "Giving up on %s result for task %s: %s",
                message.status,
                message.task_id,
                exc,
            )
            self._dead_letter(delivery, str(exc))
            return

        if applied:
            self.messages_applied += 1
            LOGGER.info("Applied %s result for task %s", message.status, message.task_id)
        else:
            self.messages_skipped += 1

    def _dead_letter(self, delivery: Delivery, error: str) -> None:
        """Park a message on the dead-letter topic; raises if that fails too."""
        record = {
            "error": error,
            "topic": delivery.topic,
            "partition": delivery.partition,
            "offset": delivery.offset,
            "payload": delivery.value,
        }
        self.channel.publish(self.config.dead_letter_topic, delivery.key, json.dumps(record))
        self.messages_dead_lettered += 1
