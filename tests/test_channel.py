import os
import uuid

import pytest

from scrapeflow.channel import MemoryChannel, PostgresChannel, partition_for


def test_partition_for_is_stable():
    assert partition_for("task-1", 4) == partition_for("task-1", 4)
    assert 0 <= partition_for("task-1", 4) < 4
    assert partition_for("anything", 1) == 0


def test_same_key_preserves_publish_order(channel):
    for n in range(5):
        channel.publish("results", "task-1", f"m{n}")

    seen = []
    while (delivery := channel.poll("results", "g")) is not None:
        seen.append(delivery.value)
        channel.ack(delivery, "g")
    assert seen == ["m0", "m1", "m2", "m3", "m4"]


def test_unacked_message_is_redelivered(channel):
    channel.publish("tasks", "k", "hello")
    first = channel.poll("tasks", "g")
    again = channel.poll("tasks", "g")
    assert first == again

    channel.ack(first, "g")
    assert channel.poll("tasks", "g") is None


def test_groups_consume_independently(channel):
    channel.publish("tasks", "k", "hello")
    channel.ack(channel.poll("tasks", "workers"), "workers")
    assert channel.poll("tasks", "workers") is None
    assert channel.poll("tasks", "audit").value == "hello"


def test_partition_assignment(channel):
    channel.publish("tasks", "k", "v")
    owner = partition_for("k", channel.partitions)
    others = [p for p in range(channel.partitions) if p != owner]
    assert channel.poll("tasks", "g", others) is None
    assert channel.poll("tasks", "g", [owner]).partition == owner


def test_lag_and_stale_ack(channel):
    for n in range(3):
        channel.publish("tasks", "k", str(n))
    assert channel.lag("tasks", "g") == 3

    first = channel.poll("tasks", "g")
    stale = channel.poll("tasks", "g")
    channel.ack(first, "g")
    channel.ack(channel.poll("tasks", "g"), "g")
    # Acking an older delivery never moves the committed offset back.
    channel.ack(stale, "g")
    assert channel.lag("tasks", "g") == 1
    assert channel.poll("tasks", "g").value == "2"


def test_messages_lists_everything(channel):
    channel.publish("t", "a", "1")
    channel.publish("t", "b", "2")
    assert sorted(d.value for d in channel.messages("t")) == ["1", "2"]
    assert channel.messages("other") == []


@pytest.fixture
def pg_channel():
    dsn = os.getenv("PG_DSN")
    if not dsn:
        pytest.skip("PG_DSN not set")
    channel = PostgresChannel(dsn, partitions=MemoryChannel().partitions)
    try:
        yield channel
    finally:
        channel.close()


def test_postgres_channel_delivers_in_order(pg_channel):
    topic = f"test-{uuid.uuid4().hex}"
    pg_channel.publish(topic, "task-1", "a")
    pg_channel.publish(topic, "task-1", "b")

    first = pg_channel.poll(topic, "g")
    assert first.value == "a"
    assert pg_channel.poll(topic, "g") == first
    pg_channel.ack(first, "g")
    second = pg_channel.poll(topic, "g")
    assert second.value == "b"
    assert second.offset == first.offset + 1
    pg_channel.ack(second, "g")
    assert pg_channel.lag(topic, "g") == 0


def _key_on_other_partition(channel, key):
    taken = partition_for(key, channel.partitions)
    return next(
        f"k{n}" for n in range(1000) if partition_for(f"k{n}", channel.partitions) != taken
    )


def test_partition_head_goes_to_one_member(channel):
    channel.publish("tasks", "t1", "only")

    first = channel.poll("tasks", "scraper-group", member="w1")
    assert first.value == "only"
    assert channel.poll("tasks", "scraper-group", member="w2") is None
    # The lease holder keeps getting its message until it acks.
    assert channel.poll("tasks", "scraper-group", member="w1") == first


def test_members_share_work_across_partitions(channel):
    channel.publish("tasks", "t1", "a")
    channel.publish("tasks", _key_on_other_partition(channel, "t1"), "b")

    first = channel.poll("tasks", "g", member="w1")
    second = channel.poll("tasks", "g", member="w2")
    assert {first.value, second.value} == {"a", "b"}
    assert first.partition != second.partition


def test_ack_releases_partition_to_other_members(channel):
    channel.publish("tasks", "t1", "a")
    channel.publish("tasks", "t1", "b")

    channel.ack(channel.poll("tasks", "g", member="w1"), "g")
    assert channel.poll("tasks", "g", member="w2").value == "b"


def test_expired_lease_is_taken_over():
    now = [0.0]
    channel = MemoryChannel(partitions=2, lease_timeout=60, clock=lambda: now[0])
    channel.publish("tasks", "t1", "a")

    stale = channel.poll("tasks", "g", member="w1")
    now[0] = 30.0
    assert channel.poll("tasks", "g", member="w2") is None
    now[0] = 61.0
    taken = channel.poll("tasks", "g", member="w2")
    assert taken.value == "a"
    assert taken.member == "w2"

    # The late ack of the old holder commits but leaves the new lease alone.
    channel.ack(stale, "g")
    channel.publish("tasks", "t1", "b")
    assert channel.poll("tasks", "g", member="w1") is None
    assert channel.poll("tasks", "g", member="w2").value == "b"


def test_leases_are_per_group(channel):
    channel.publish("tasks", "t1", "a")
    assert channel.poll("tasks", "workers", member="w1") is not None
    assert channel.poll("tasks", "audit", member="w2") is not None


def test_postgres_channel_leases_partition(pg_channel):
    topic = f"test-{uuid.uuid4().hex}"
    pg_channel.publish(topic, "task-1", "a")

    first = pg_channel.poll(topic, "g", member="w1")
    assert first.value == "a"
    assert pg_channel.poll(topic, "g", member="w2") is None
    pg_channel.ack(first, "g")
    pg_channel.publish(topic, "task-1", "b")
    assert pg_channel.poll(topic, "g", member="w2").value == "b"
