"""Pagination and label state machine for one task.

For every label (or once, with no label) the scraper walks pages
``1..min(10, maxPages)``::

    idle -> navigating -> waiting_for_content -> extracting -> deciding
                 ^                                                |
                 +--------------------- continue -----------------+
                                                                  |
                                         completed / failed <-----+

Each page either yields a ``processing`` result and continues, or ends the
label (no valid items, no next page, page cap). A ``TaskFailure`` on any page
abandons the remaining labels and ends the task with a ``failed`` result;
otherwise a single ``completed`` result follows the last label.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Union

from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import Page

from .browser import PageProvider, auto_scroll, has_next_page, navigate, wait_for_content
from .errors import NavigationError
from .extraction import extract_records, filter_valid
from .messages import CompletedResult, FailedResult, ProcessingResult, TaskMessage
from .urls import build_page_url

LOGGER = logging.getLogger(__name__)

# Safety ceiling applied on top of any configured maxPages.
HARD_PAGE_CAP = 10


class ScrapeState(str, Enum):
    IDLE = "idle"
    NAVIGATING = "navigating"
    WAITING_FOR_CONTENT = "waiting_for_content"
    EXTRACTING = "extracting"
    DECIDING = "deciding"
    COMPLETED = "completed"
    FAILED = "failed"


class PageOutcome(str, Enum):
    """How a successful page iteration ends."""

    CONTINUE = "continue"
    EXHAUSTED = "exhausted"


@dataclass(frozen=True)
class TaskFailure:
    """A page iteration that failed the whole task."""

    error: str
    page: int
    label: Optional[str] = None


Publish = Callable[[Union[ProcessingResult, CompletedResult, FailedResult]], None]


class TaskScraper:
    """Drive the fetch -> extract -> decide loop for one task message."""

    def __init__(
        self,
        task: TaskMessage,
        pages: PageProvider,
        publish: Publish,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialize scraper.

        Parameters
        ----------
        task : TaskMessage
            Task to run
        pages : PageProvider
            Source of rendering pages (normally a ``BrowserSession``)
        publish : callable
            Sends one result message to the results channel
        sleep : callable
            Used for the inter-page delay
        """
        self.task = task
        self.config = task.config
        self.pages = pages
        self.publish = publish
        self.sleep = sleep
        self.state = ScrapeState.IDLE
        self.pages_emitted = 0
        self.page_limit = self.config.page_limit(task.pages, HARD_PAGE_CAP)

    def _enter(self, state: ScrapeState) -> None:
        LOGGER.debug("Task %s: %s -> %s", self.task.task_id, self.state.value, state.value)
        self.state = state

    def run(self) -> Union[CompletedResult, FailedResult]:
        """Run every label and publish the terminal result.

        Returns
        -------
        CompletedResult or FailedResult
            The terminal message that was published
        """
        LOGGER.info(
            "Task %s: scraping %s (labels=%s, page_limit=%d)",
            self.task.task_id,
            self.task.url,
            list(self.config.label_runs()),
            self.page_limit,
        )

        for label in self.config.label_runs():
            failure = self._run_label(label)
            if failure is not None:
                self._enter(ScrapeState.FAILED)
                LOGGER.error(
                    "Task %s failed on page %d (label=%s): %s",
                    self.task.task_id,
                    failure.page,
                    failure.label or "none",
                    failure.error,
                )
                message = FailedResult(
                    task_id=self.task.task_id,
                    source_url=self.task.url,
                    error=failure.error,
                )
                self.publish(message)
                return message

        self._enter(ScrapeState.COMPLETED)
        LOGGER.info(
            "Task %s completed: %d page(s) with items",
            self.task.task_id,
            self.pages_emitted,
        )
        message = CompletedResult(
            task_id=self.task.task_id,
            source_url=self.task.url,
            total_pages=self.pages_emitted,
        )
        self.publish(message)
        return message

    def _run_label(self, label: Optional[str]) -> Optional[TaskFailure]:
        LOGGER.info("Task %s: processing label %s", self.task.task_id, label or "none")
        current_page = 1
        try:
            with self.pages.page(self.config.block_resource_types) as page:
                while current_page <= self.page_limit:
                    outcome = self._run_page(page, label, current_page)
                    if isinstance(outcome, TaskFailure):
                        return outcome
                    if outcome is PageOutcome.EXHAUSTED:
                        break
                    if current_page < self.page_limit and self.config.page_delay_ms:
                        LOGGER.debug("Waiting %dms before next page", self.config.page_delay_ms)
                        self.sleep(self.config.page_delay_ms / 1000)
                    current_page += 1
        except NavigationError as exc:
            return TaskFailure(str(exc), current_page, label)
        return None

    def _run_page(
        self,
        page: Page,
        label: Optional[str],
        current_page: int,
    ) -> Union[PageOutcome, TaskFailure]:
        url = build_page_url(self.config, self.task.url, current_page, label)
        LOGGER.info("Task %s: scraping page %d: %s", self.task.task_id, current_page, url)

        try:
            self._enter(ScrapeState.NAVIGATING)
            navigate(page, url, self.config)

            self._enter(ScrapeState.WAITING_FOR_CONTENT)
            wait_for_content(page, self.config)
            if self.config.scroll_to_bottom:
                auto_scroll(page)

            self._enter(ScrapeState.EXTRACTING)
            records = extract_records(page, self.config)
            items = filter_valid(records, self.config.require_fields)
            LOGGER.info(
                "Task %s: page %d yielded %d record(s), %d valid",
                self.task.task_id,
                current_page,
                len(records),
                len(items),
            )

            self._enter(ScrapeState.DECIDING)
            if not items:
                LOGGER.info("No valid items found, stopping pagination")
                return PageOutcome.EXHAUSTED

            self.publish(
                ProcessingResult(
                    task_id=self.task.task_id,
                    source_url=url,
                    page=current_page,
                    items=items,
                    label=label,
                )
            )
            self.pages_emitted += 1

            if self.config.next_page_selector:
                more = has_next_page(page, self.config.next_page_selector)
                LOGGER.info("Next page available: %s", more)
                if not more:
                    return PageOutcome.EXHAUSTED
            return PageOutcome.CONTINUE

        except (NavigationError, PlaywrightError) as exc:
            return TaskFailure(str(exc), current_page, label)
