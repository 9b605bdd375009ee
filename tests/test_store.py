import math
import os

import pytest

from scrapeflow.errors import PersistenceError, StatusRegressionError, UnknownTaskError
from scrapeflow.messages import CompletedResult, FailedResult, ProcessingResult
from scrapeflow.models import ExtractionConfig, Task, TaskStatus
from scrapeflow.store import PostgresTaskStore, check_transition


def new_task(store, product_config, data_type="product"):
    task = Task(
        url="https://shop.example/list",
        data_type=data_type,
        config=ExtractionConfig.parse(product_config),
    )
    return store.create_task(task)


def processing(task, page, items, label=None):
    return ProcessingResult(
        task_id=task.id,
        source_url=f"{task.url}?page={page}",
        page=page,
        items=items,
        label=label,
    )


def test_check_transition():
    done = CompletedResult(task_id="t", source_url="u", total_pages=1)
    assert check_transition("t", TaskStatus.PENDING, done)
    assert check_transition("t", TaskStatus.PROCESSING, done)
    assert not check_transition("t", TaskStatus.COMPLETED, done)
    with pytest.raises(StatusRegressionError):
        check_transition("t", TaskStatus.FAILED, done)


def test_processing_then_completed(store, product_config):
    task = new_task(store, product_config)
    assert store.apply(processing(task, 1, [{"title": "a"}, {"title": "b"}]))

    stored = store.get_task(task.id)
    assert stored.status is TaskStatus.PROCESSING
    assert stored.current_page == 1

    assert store.apply(processing(task, 2, [{"title": "c"}]))
    assert store.apply(CompletedResult(task_id=task.id, source_url=task.url, total_pages=2))

    stored = store.get_task(task.id)
    assert stored.status is TaskStatus.COMPLETED
    assert stored.current_page == 2
    assert [i.data["title"] for i in store.list_items(task.id)] == ["c", "b", "a"]


def test_failed_keeps_items_and_records_error(store, product_config):
    task = new_task(store, product_config)
    store.apply(processing(task, 1, [{"title": "a"}]))
    store.apply(FailedResult(task_id=task.id, source_url=task.url, error="Timeout"))

    stored = store.get_task(task.id)
    assert stored.status is TaskStatus.FAILED
    assert stored.error == "Timeout"
    assert len(store.list_items(task.id)) == 1


def test_terminal_status_never_regresses(store, product_config):
    task = new_task(store, product_config)
    store.apply(CompletedResult(task_id=task.id, source_url=task.url, total_pages=0))

    with pytest.raises(StatusRegressionError):
        store.apply(processing(task, 1, [{"title": "late"}]))
    with pytest.raises(StatusRegressionError):
        store.apply(FailedResult(task_id=task.id, source_url=task.url, error="x"))

    assert store.get_task(task.id).status is TaskStatus.COMPLETED
    assert store.list_items(task.id) == []


def test_duplicate_messages_are_skipped(store, product_config):
    task = new_task(store, product_config)
    page = processing(task, 1, [{"title": "a"}])
    assert store.apply(page)
    assert not store.apply(page)
    # Same page number under another label is a different page.
    assert store.apply(processing(task, 1, [{"title": "b"}], label="b"))

    done = CompletedResult(task_id=task.id, source_url=task.url, total_pages=2)
    assert store.apply(done)
    assert not store.apply(done)
    assert len(store.list_items(task.id)) == 2


def test_unknown_task(store):
    with pytest.raises(UnknownTaskError):
        store.apply(FailedResult(task_id="missing", source_url="u", error="x"))
    assert store.get_task("missing") is None


def test_duplicate_task_id(store, product_config):
    task = new_task(store, product_config)
    with pytest.raises(PersistenceError):
        store.create_task(task)


def test_returned_tasks_are_copies(store, product_config):
    task = new_task(store, product_config)
    copy = store.get_task(task.id)
    copy.status = TaskStatus.FAILED
    assert store.get_task(task.id).status is TaskStatus.PENDING


def test_list_items_paginates(store, product_config):
    task = new_task(store, product_config)
    store.apply(processing(task, 1, [{"n": n} for n in range(5)]))
    assert [i.data["n"] for i in store.list_items(task.id, page=1, limit=2)] == [4, 3]
    assert [i.data["n"] for i in store.list_items(task.id, page=3, limit=2)] == [0]


def test_search_items(store, product_config):
    shoes = new_task(store, product_config, data_type="shoes")
    hats = new_task(store, product_config, data_type="hats")
    store.apply(processing(shoes, 1, [{"brand": "acme", "n": 1}, {"brand": "zeta", "n": 2}]))
    store.apply(processing(hats, 1, [{"brand": "acme", "n": 3}]))

    items, total = store.search_items(filters={"brand": "acme"})
    assert total == 2
    assert [i.data["n"] for i in items] == [3, 1]

    items, total = store.search_items(data_type="shoes", filters={"brand": "acme"})
    assert (total, items[0].data["n"]) == (1, 1)

    items, total = store.search_items(limit=1, page=2)
    assert total == 3
    assert len(items) == 1


def test_stats(store, product_config):
    new_task(store, product_config)
    done = new_task(store, product_config)
    store.apply(CompletedResult(task_id=done.id, source_url=done.url, total_pages=0))
    assert store.stats() == {"pending": 1, "completed": 1}


@pytest.fixture
def pg_store():
    dsn = os.getenv("PG_DSN")
    if not dsn:
        pytest.skip("PG_DSN not set")
    return PostgresTaskStore(dsn)


def test_postgres_apply_round_trip(pg_store, product_config):
    task = new_task(pg_store, product_config)
    assert pg_store.apply(processing(task, 1, [{"title": "a", "price": math.nan}]))
    assert not pg_store.apply(processing(task, 1, [{"title": "a", "price": math.nan}]))
    assert pg_store.apply(FailedResult(task_id=task.id, source_url=task.url, error="boom"))

    stored = pg_store.get_task(task.id)
    assert stored.status is TaskStatus.FAILED
    assert stored.error == "boom"
    assert stored.config == task.config

    items = pg_store.list_items(task.id)
    assert len(items) == 1
    assert items[0].data == {"title": "a", "price": "NaN"}

    with pytest.raises(StatusRegressionError):
        pg_store.apply(CompletedResult(task_id=task.id, source_url=task.url, total_pages=1))


def test_failed_item_build_leaves_page_unapplied(store, product_config, monkeypatch):
    task = new_task(store, product_config)
    page = processing(task, 1, [{"title": "a"}])

    def broken_item(**kwargs):
        raise ValueError("bad record")

    monkeypatch.setattr("scrapeflow.store.ScrapedItem", broken_item)
    with pytest.raises(ValueError):
        store.apply(page)
    monkeypatch.undo()

    assert store.get_task(task.id).status is TaskStatus.PENDING
    assert store.apply(page)
    assert len(store.list_items(task.id)) == 1
