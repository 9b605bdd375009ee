"""CLI for the scrapeflow producer, workers and result consumer."""
from __future__ import annotations

import json
import logging
import os
import sys
import uuid
from typing import List, Optional, Tuple

import click
import yaml

from .browser import BrowserSession
from .channel import PostgresChannel
from .consumer import ConsumerConfig, ResultConsumer
from .errors import ConfigError, MessagingError, PersistenceError
from .producer import TaskProducer
from .settings import Settings
from .store import PostgresTaskStore
from .worker import Worker, WorkerConfig

LOGGER = logging.getLogger(__name__)


def _member_id(prefix: str) -> str:
    hostname = os.getenv("HOSTNAME", "localhost")
    return f"{prefix}-{hostname}-{uuid.uuid4().hex[:8]}"


def _parse_partitions(value: Optional[str]) -> Optional[List[int]]:
    if not value:
        return None
    try:
        return [int(part) for part in value.split(",") if part.strip()]
    except ValueError:
        raise click.BadParameter(f"expected comma-separated integers, got {value!r}") from None


def _connect(settings: Settings) -> Tuple[PostgresTaskStore, PostgresChannel]:
    try:
        return (
            PostgresTaskStore(settings.dsn),
            PostgresChannel(
                settings.dsn,
                partitions=settings.partitions,
                lease_timeout=settings.lease_timeout,
            ),
        )
    except (MessagingError, PersistenceError) as exc:
        click.echo(f"❌ Cannot start: {exc}", err=True)
        sys.exit(1)


@click.group()
@click.option("--log-level", default=None, help="Logging level (default: $LOG_LEVEL or INFO)")
@click.pass_context
def cli(ctx: click.Context, log_level: Optional[str]) -> None:
    """Distributed multi-page scraping jobs."""
    settings = Settings.from_env()
    logging.basicConfig(
        level=(log_level or settings.log_level).upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    ctx.obj = settings


@cli.command("init-db")
@click.pass_obj
def init_db(settings: Settings) -> None:
    """Create store and channel tables."""
    _connect(settings)
    click.echo("✅ Tables ready")


@cli.command()
@click.option("--url", required=True, help="Base listing URL")
@click.option("--data-type", required=True, help="Category of the scraped items")
@click.option(
    "--config",
    "config_path",
    required=True,
    type=click.Path(exists=True, dir_okay=False),
    help="Extraction config file (JSON or YAML)",
)
@click.option("--pages", default=1, type=int, help="Pages to scrape (capped at 10)")
@click.pass_obj
def enqueue(settings: Settings, url: str, data_type: str, config_path: str, pages: int) -> None:
    """Create a scraping task and enqueue it."""
    with open(config_path, "r", encoding="utf-8") as f:
        config = yaml.safe_load(f)

    store, channel = _connect(settings)
    producer = TaskProducer(store, channel, topic=settings.tasks_topic)
    try:
        task = producer.create_task(url, data_type, config, pages=pages)
    except ConfigError as exc:
        raise click.BadParameter(str(exc), param_hint="--config") from exc
    except MessagingError as exc:
        click.echo(f"❌ Task stored but not enqueued: {exc}", err=True)
        sys.exit(1)
    except PersistenceError as exc:
        click.echo(f"❌ Task not stored: {exc}", err=True)
        sys.exit(1)

    click.echo(f"✅ Enqueued task {task.id}: {url}")


@cli.command()
@click.option("--worker-id", help="Worker ID (defaults to hostname-UUID)")
@click.option("--partitions", help="Comma-separated partitions to consume (default: all)")
@click.option("--poll-interval", type=float, help="Seconds between empty polls")
@click.option("--max-tasks", type=int, help="Max tasks before shutdown (for testing)")
@click.option("--headed", is_flag=True, help="Run the browser with a visible window")
@click.pass_obj
def worker(
    settings: Settings,
    worker_id: Optional[str],
    partitions: Optional[str],
    poll_interval: Optional[float],
    max_tasks: Optional[int],
    headed: bool,
) -> None:
    """Run a worker that scrapes tasks from the tasks topic."""
    worker_id = worker_id or _member_id("worker")
    click.echo(f"🚀 Starting worker: {worker_id}")

    _, channel = _connect(settings)
    config = WorkerConfig(
        worker_id=worker_id,
        group=settings.worker_group,
        tasks_topic=settings.tasks_topic,
        results_topic=settings.results_topic,
        partitions=_parse_partitions(partitions),
        poll_interval=poll_interval or settings.poll_interval,
        max_tasks=max_tasks,
    )

    with BrowserSession(headless=settings.headless and not headed) as browser:
        try:
            Worker(config, channel, browser).run()
        finally:
            channel.close()


@cli.command()
@click.option("--consumer-id", help="Consumer ID (defaults to hostname-UUID)")
@click.option("--partitions", help="Comma-separated partitions to consume (default: all)")
@click.option("--poll-interval", type=float, help="Seconds between empty polls")
@click.option("--max-messages", type=int, help="Max messages before shutdown (for testing)")
@click.pass_obj
def consumer(
    settings: Settings,
    consumer_id: Optional[str],
    partitions: Optional[str],
    poll_interval: Optional[float],
    max_messages: Optional[int],
) -> None:
    """Run the result consumer that applies results to the store."""
    consumer_id = consumer_id or _member_id("consumer")
    click.echo(f"🚀 Starting result consumer: {consumer_id}")

    store, channel = _connect(settings)
    config = ConsumerConfig(
        consumer_id=consumer_id,
        group=settings.consumer_group,
        results_topic=settings.results_topic,
        dead_letter_topic=settings.dead_letter_topic,
        partitions=_parse_partitions(partitions),
        poll_interval=poll_interval or settings.poll_interval,
        apply_attempts=settings.apply_attempts,
        backoff_max=settings.apply_backoff_max,
        max_messages=max_messages,
    )
    try:
        ResultConsumer(config, channel, store).run()
    finally:
        channel.close()


@cli.command()
@click.argument("task_id")
@click.option("--page", default=1, type=int, help="Items page")
@click.option("--limit", default=10, type=int, help="Items per page")
@click.pass_obj
def task(settings: Settings, task_id: str, page: int, limit: int) -> None:
    """Show a task and its most recent items."""
    store, _ = _connect(settings)
    found = store.get_task(task_id)
    if found is None:
        click.echo(f"❌ Task {task_id} not found", err=True)
        sys.exit(1)

    items = store.list_items(task_id, page=page, limit=limit)
    payload = found.model_dump(mode="json", by_alias=True, exclude={"config"})
    payload["items"] = [item.model_dump(mode="json") for item in items]
    click.echo(json.dumps(payload, indent=2, ensure_ascii=False))


@cli.command()
@click.option("--data-type", help="Only items of tasks with this data type")
@click.option("--filter", "filters", multiple=True, help="Field equality filter, key=value")
@click.option("--page", default=1, type=int)
@click.option("--limit", default=10, type=int)
@click.pass_obj
def search(
    settings: Settings,
    data_type: Optional[str],
    filters: Tuple[str, ...],
    page: int,
    limit: int,
) -> None:
    """Search scraped items across tasks."""
    parsed = {}
    for raw in filters:
        key, sep, value = raw.partition("=")
        if not sep:
            raise click.BadParameter(f"expected key=value, got {raw!r}", param_hint="--filter")
        parsed[key] = yaml.safe_load(value)

    store, _ = _connect(settings)
    items, total = store.search_items(data_type=data_type, filters=parsed, page=page, limit=limit)
    click.echo(
        json.dumps(
            {
                "items": [item.model_dump(mode="json") for item in items],
                "total": total,
                "page": page,
                "totalPages": -(-total // limit) if limit else 0,
            },
            indent=2,
            ensure_ascii=False,
        )
    )


@cli.command()
@click.pass_obj
def stats(settings: Settings) -> None:
    """Show task and channel statistics."""
    store, channel = _connect(settings)
    task_stats = store.stats()

    click.echo("\n📊 Task Statistics\n" + "=" * 40)
    click.echo(f"Total tasks: {sum(task_stats.values())}")
    for status, count in sorted(task_stats.items()):
        click.echo(f"  {status:15s}: {count:6d}")

    click.echo("\n📨 Channel Lag\n" + "=" * 40)
    for topic, group in (
        (settings.tasks_topic, settings.worker_group),
        (settings.results_topic, settings.consumer_group),
    ):
        click.echo(f"  {topic} ({group}): {channel.lag(topic, group)}")
    click.echo()


@cli.command()
@click.confirmation_option(prompt="Delete messages every consumer group has acknowledged?")
@click.pass_obj
def purge(settings: Settings) -> None:
    """Remove consumed messages from the channel tables."""
    _, channel = _connect(settings)
    count = sum(
        channel.purge_consumed(topic)
        for topic in (settings.tasks_topic, settings.results_topic)
    )
    click.echo(f"✅ Purged {count} message(s)")


if __name__ == "__main__":
    cli()
