"""Durable task/item storage and transactional application of results.

Supports Postgres (psycopg2) and an in-memory backend with identical
semantics. Every ``apply`` is one transaction:

- ``processing``: status -> processing, current_page, items bulk-inserted
- ``completed``: status -> completed, items untouched
- ``failed``: status -> failed with error text, items retained

A terminal status never regresses. A ``processing`` message already applied
for the same ``(task, label, page)`` is acknowledged without inserting items
twice, so redelivered results are safe to reapply.
"""
from __future__ import annotations

import copy
import json
import logging
import math
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Protocol, Set, Tuple, Union

import psycopg2
from psycopg2.extras import Json, RealDictCursor, execute_values

from .errors import PersistenceError, StatusRegressionError, UnknownTaskError
from .messages import CompletedResult, FailedResult, ProcessingResult
from .models import ExtractionConfig, ScrapedItem, Task, TaskStatus, utcnow

LOGGER = logging.getLogger(__name__)

ResultMessage = Union[ProcessingResult, CompletedResult, FailedResult]


def check_transition(task_id: str, current: TaskStatus, message: ResultMessage) -> bool:
    """Decide whether ``message`` may be applied to a task in ``current``.

    Returns
    -------
    bool
        False for a repeat of the terminal message already applied

    Raises
    ------
    StatusRegressionError
        If the task is terminal and the message would change that
    """
    incoming = TaskStatus(message.status)
    if not current.is_terminal:
        return True
    if incoming == current:
        return False
    raise StatusRegressionError(task_id, current.value, incoming.value)


def _page_key(message: ProcessingResult) -> Tuple[str, str, int]:
    return (message.task_id, message.label or "", message.page)


class TaskStore(Protocol):
    """Abstract store interface."""

    def create_task(self, task: Task) -> Task:
        ...

    def get_task(self, task_id: str) -> Optional[Task]:
        ...

    def list_items(self, task_id: str, page: int = 1, limit: int = 10) -> List[ScrapedItem]:
        """Items of one task, newest first."""
        ...

    def search_items(
        self,
        data_type: Optional[str] = None,
        filters: Optional[Dict[str, Any]] = None,
        page: int = 1,
        limit: int = 10,
    ) -> Tuple[List[ScrapedItem], int]:
        """Items across tasks matching ``data_type`` and field equality filters.

        Returns
        -------
        tuple
            (page of items newest first, total number of matches)
        """
        ...

    def apply(self, message: ResultMessage) -> bool:
        """Apply a result message atomically.

        Returns
        -------
        bool
            True if the store changed, False for a duplicate delivery

        Raises
        ------
        StatusRegressionError
            Message would move a terminal task
        UnknownTaskError
            Task does not exist
        PersistenceError
            Store failure; nothing was applied
        """
        ...

    def stats(self) -> Dict[str, int]:
        """Number of tasks per status."""
        ...


class MemoryTaskStore:
    """In-memory store, used for local runs and tests."""

    def __init__(self) -> None:
        self._tasks: Dict[str, Task] = {}
        self._items: List[ScrapedItem] = []
        self._applied_pages: Set[Tuple[str, str, int]] = set()
        self._lock = threading.Lock()

    def create_task(self, task: Task) -> Task:
        with self._lock:
            if task.id in self._tasks:
                raise PersistenceError(f"Task {task.id} already exists")
            self._tasks[task.id] = task.model_copy(deep=True)
        return task

    def get_task(self, task_id: str) -> Optional[Task]:
        with self._lock:
            task = self._tasks.get(task_id)
            return task.model_copy(deep=True) if task else None

    def list_items(self, task_id: str, page: int = 1, limit: int = 10) -> List[ScrapedItem]:
        with self._lock:
            items = [item for item in reversed(self._items) if item.task_id == task_id]
        start = (page - 1) * limit
        return [item.model_copy(deep=True) for item in items[start:start + limit]]

    def search_items(
        self,
        data_type: Optional[str] = None,
        filters: Optional[Dict[str, Any]] = None,
        page: int = 1,
        limit: int = 10,
    ) -> Tuple[List[ScrapedItem], int]:
        filters = filters or {}
        with self._lock:
            matches = [
                item
                for item in reversed(self._items)
                if (data_type is None or self._tasks[item.task_id].data_type == data_type)
                and all(item.data.get(key) == value for key, value in filters.items())
            ]
        start = (page - 1) * limit
        return [item.model_copy(deep=True) for item in matches[start:start + limit]], len(matches)

    def apply(self, message: ResultMessage) -> bool:
        with self._lock:
            task = self._tasks.get(message.task_id)
            if task is None:
                raise UnknownTaskError(f"Task {message.task_id} not found")
            if not check_transition(task.id, task.status, message):
                LOGGER.info("Task %s: duplicate %s message ignored", task.id, message.status)
                return False

            now = utcnow()
            if isinstance(message, ProcessingResult):
                key = _page_key(message)
                if key in self._applied_pages:
                    LOGGER.info("Task %s: page %d already applied", task.id, message.page)
                    return False
                items = [
                    ScrapedItem(
                        task_id=task.id,
                        source_url=message.source_url,
                        data=copy.deepcopy(record),
                        created_at=now,
                    )
                    for record in message.items
                ]
                self._applied_pages.add(key)
                self._items.extend(items)
                task.status = TaskStatus.PROCESSING
                task.current_page = message.page
            elif isinstance(message, CompletedResult):
                task.status = TaskStatus.COMPLETED
            else:
                task.status = TaskStatus.FAILED
                task.error = message.error
            task.updated_at = now
        return True

    def stats(self) -> Dict[str, int]:
        stats: Dict[str, int] = {}
        with self._lock:
            for task in self._tasks.values():
                stats[task.status.value] = stats.get(task.status.value, 0) + 1
        return stats


def _jsonb_safe(value: Any) -> Any:
    """Replace non-finite floats, which JSONB cannot hold, by their JS spelling."""
    if isinstance(value, float) and not math.isfinite(value):
        if math.isnan(value):
            return "NaN"
        return "Infinity" if value > 0 else "-Infinity"
    if isinstance(value, dict):
        return {key: _jsonb_safe(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_jsonb_safe(item) for item in value]
    return value


def _dumps(value: Any) -> str:
    return json.dumps(_jsonb_safe(value))


class PostgresTaskStore:
    """Postgres-backed task store."""

    def __init__(self, conn_string: str) -> None:
        """Initialize Postgres store.

        Parameters
        ----------
        conn_string : str
            PostgreSQL connection string
        """
        self.conn_string = conn_string
        self._ensure_tables()

    @contextmanager
    def _connection(self) -> Iterator:
        try:
            conn = psycopg2.connect(self.conn_string)
        except psycopg2.Error as exc:
            raise PersistenceError(f"Cannot connect to store: {exc}") from exc
        try:
            with conn:
                yield conn
        except psycopg2.Error as exc:
            raise PersistenceError(str(exc)) from exc
        finally:
            conn.close()

    def _ensure_tables(self) -> None:
        """Create tables if not exist."""
        create_sql = """
        CREATE TABLE IF NOT EXISTS scrape_tasks (
            id VARCHAR(64) PRIMARY KEY,
            url TEXT NOT NULL,
            max_pages INTEGER NOT NULL DEFAULT 1,
            data_type VARCHAR(100) NOT NULL,
            config JSONB NOT NULL,
            status VARCHAR(20) NOT NULL DEFAULT 'pending',
            current_page INTEGER NOT NULL DEFAULT 0,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            error TEXT
        );

        CREATE TABLE IF NOT EXISTS scraped_items (
            id BIGSERIAL PRIMARY KEY,
            task_id VARCHAR(64) NOT NULL REFERENCES scrape_tasks(id) ON DELETE CASCADE,
            source_url TEXT NOT NULL,
            data JSONB NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        );

        CREATE TABLE IF NOT EXISTS scrape_task_pages (
            task_id VARCHAR(64) NOT NULL REFERENCES scrape_tasks(id) ON DELETE CASCADE,
            label TEXT NOT NULL DEFAULT '',
            page INTEGER NOT NULL,
            applied_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            PRIMARY KEY (task_id, label, page)
        );

        CREATE INDEX IF NOT EXISTS idx_scraped_items_task
            ON scraped_items(task_id, created_at DESC);
        CREATE INDEX IF NOT EXISTS idx_scrape_tasks_status
            ON scrape_tasks(status);
        """
        with self._connection() as conn:
            with conn.cursor() as cur:
                cur.execute(create_sql)

        LOGGER.info("Ensured scrape_tasks/scraped_items tables exist")

    def create_task(self, task: Task) -> Task:
        insert_sql = """
        INSERT INTO scrape_tasks
            (id, url, max_pages, data_type, config, status, current_page, created_at, updated_at)
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
        """
        with self._connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    insert_sql,
                    (
                        task.id,
                        task.url,
                        task.max_pages,
                        task.data_type,
                        Json(task.config.model_dump(mode="json", by_alias=True)),
                        task.status.value,
                        task.current_page,
                        task.created_at,
                        task.updated_at,
                    ),
                )

        LOGGER.debug("Stored task %s (%s)", task.id, task.url)
        return task

    def get_task(self, task_id: str) -> Optional[Task]:
        with self._connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute("SELECT * FROM scrape_tasks WHERE id = %s", (task_id,))
                row = cur.fetchone()

        if row is None:
            return None
        return Task(
            id=row["id"],
            url=row["url"],
            max_pages=row["max_pages"],
            data_type=row["data_type"],
            config=ExtractionConfig.model_validate(row["config"]),
            status=TaskStatus(row["status"]),
            current_page=row["current_page"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            error=row["error"],
        )

    @staticmethod
    def _to_item(row: Dict[str, Any]) -> ScrapedItem:
        return ScrapedItem(
            id=str(row["id"]),
            task_id=row["task_id"],
            source_url=row["source_url"],
            data=row["data"],
            created_at=row["created_at"],
        )

    def list_items(self, task_id: str, page: int = 1, limit: int = 10) -> List[ScrapedItem]:
        select_sql = """
        SELECT id, task_id, source_url, data, created_at
        FROM scraped_items
        WHERE task_id = %s
        ORDER BY created_at DESC, id DESC
        LIMIT %s OFFSET %s
        """
        with self._connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(select_sql, (task_id, limit, (page - 1) * limit))
                rows = cur.fetchall()
        return [self._to_item(row) for row in rows]

    def search_items(
        self,
        data_type: Optional[str] = None,
        filters: Optional[Dict[str, Any]] = None,
        page: int = 1,
        limit: int = 10,
    ) -> Tuple[List[ScrapedItem], int]:
        where = ["i.data @> %s"]
        params: List[Any] = [Json(filters or {})]
        if data_type is not None:
            where.append("t.data_type = %s")
            params.append(data_type)
        where_sql = " AND ".join(where)

        select_sql = f"""
        SELECT i.id, i.task_id, i.source_url, i.data, i.created_at
        FROM scraped_items i
        JOIN scrape_tasks t ON t.id = i.task_id
        WHERE {where_sql}
        ORDER BY i.created_at DESC, i.id DESC
        LIMIT %s OFFSET %s
        """
        count_sql = f"""
        SELECT COUNT(*) AS total
        FROM scraped_items i
        JOIN scrape_tasks t ON t.id = i.task_id
        WHERE {where_sql}
        """
        with self._connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(select_sql, (*params, limit, (page - 1) * limit))
                rows = cur.fetchall()
                cur.execute(count_sql, params)
                total = cur.fetchone()["total"]
        return [self._to_item(row) for row in rows], int(total)

    def apply(self, message: ResultMessage) -> bool:
        with self._connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT status FROM scrape_tasks WHERE id = %s FOR UPDATE",
                    (message.task_id,),
                )
                row = cur.fetchone()
                if row is None:
                    raise UnknownTaskError(f"Task {message.task_id} not found")
                if not check_transition(message.task_id, TaskStatus(row[0]), message):
                    LOGGER.info(
                        "Task %s: duplicate %s message ignored",
                        message.task_id,
                        message.status,
                    )
                    return False

                if isinstance(message, ProcessingResult):
                    return self._apply_processing(cur, message)

                if isinstance(message, CompletedResult):
                    cur.execute(
                        """
                        UPDATE scrape_tasks
                        SET status = 'completed', updated_at = NOW()
                        WHERE id = %s
                        """,
                        (message.task_id,),
                    )
                else:
                    cur.execute(
                        """
                        UPDATE scrape_tasks
                        SET status = 'failed', error = %s, updated_at = NOW()
                        WHERE id = %s
                        """,
                        (message.error, message.task_id),
                    )
        return True

    def _apply_processing(self, cur, message: ProcessingResult) -> bool:
        task_id, label, page = _page_key(message)
        cur.execute(
            """
            INSERT INTO scrape_task_pages (task_id, label, page)
            VALUES (%s, %s, %s)
            ON CONFLICT DO NOTHING
            RETURNING page
            """,
            (task_id, label, page),
        )
        if cur.fetchone() is None:
            LOGGER.info("Task %s: page %d already applied", task_id, page)
            return False

        cur.execute(
            """
            UPDATE scrape_tasks
            SET status = 'processing', current_page = %s, updated_at = NOW()
            WHERE id = %s
            """,
            (page, task_id),
        )
        if message.items:
            execute_values(
                cur,
                "INSERT INTO scraped_items (task_id, source_url, data) VALUES %s",
                [
                    (task_id, message.source_url, Json(record, dumps=_dumps))
                    for record in message.items
                ],
            )
        return True

    def stats(self) -> Dict[str, int]:
        with self._connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute("SELECT status, COUNT(*) AS count FROM scrape_tasks GROUP BY status")
                rows = cur.fetchall()
        return {row["status"]: row["count"] for row in rows}
