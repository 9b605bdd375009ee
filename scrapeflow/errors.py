"""Exception hierarchy shared by the producer, workers and result consumer."""
from __future__ import annotations


class ScrapeflowError(Exception):
    """Base class for all scrapeflow errors."""


class ConfigError(ScrapeflowError):
    """Extraction config or task input is malformed."""


class NavigationError(ScrapeflowError):
    """Page could not be fetched or its content never appeared.

    Fatal to the whole task; reported through a ``failed`` result.
    """


class ExtractionError(ScrapeflowError):
    """A single field could not be evaluated."""


class MessagingError(ScrapeflowError):
    """Channel connect, publish or poll failure."""


class PersistenceError(ScrapeflowError):
    """Result could not be applied to the store."""


class StatusRegressionError(PersistenceError):
    """A message would move a task out of a terminal status."""

    def __init__(self, task_id: str, current: str, incoming: str) -> None:
        super().__init__(
            f"Task {task_id} is already {current}; refusing {incoming} message"
        )
        self.task_id = task_id
        self.current = current
        self.incoming = incoming


class UnknownTaskError(PersistenceError):
    """A result references a task the store does not know."""
