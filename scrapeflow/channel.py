"""Partitioned message channel used for the tasks and results topics.

Delivery is at-least-once: ``poll`` keeps returning the head message of a
partition until the consumer group acknowledges it. Polling a head leases its
partition to the polling member, so other members of the group skip that
partition until the delivery is acknowledged or the lease times out.
Messages sharing a key land on the same partition and are delivered in
publish order.

Two backends are provided:

- ``MemoryChannel`` for single-process runs and tests
- ``PostgresChannel``, an append-only log table with per-group committed
  offsets
"""
from __future__ import annotations

import logging
import threading
import time
import zlib
from contextlib import contextmanager
from dataclasses import dataclass, replace
from typing import Callable, Dict, Iterator, List, Optional, Protocol, Sequence, Tuple

import psycopg2

from .errors import MessagingError

LOGGER = logging.getLogger(__name__)

DEFAULT_MEMBER = "default"

# Long enough for a full ten-page scrape at the default navigation timeout.
LEASE_TIMEOUT = 1800.0


def partition_for(key: str, partitions: int) -> int:
    """Stable partition for ``key``."""
    return zlib.crc32(key.encode("utf-8")) % partitions


@dataclass(frozen=True)
class Delivery:
    """One message handed to a consumer group member."""

    topic: str
    partition: int
    offset: int
    key: str
    value: str
    member: Optional[str] = None


class Channel(Protocol):
    """Abstract channel interface."""

    partitions: int

    def publish(self, topic: str, key: str, value: str) -> None:
        """Append a message to the partition owned by ``key``."""
        ...

    def poll(
        self,
        topic: str,
        group: str,
        partitions: Optional[Sequence[int]] = None,
        member: str = DEFAULT_MEMBER,
    ) -> Optional[Delivery]:
        """Return the oldest unacknowledged message for ``group``.

        The partition of the returned message is leased to ``member``; other
        members polling the same group skip it until the delivery is acked or
        the lease expires. Polling again as the lease holder returns the same
        message.

        Parameters
        ----------
        topic : str
            Topic name
        group : str
            Consumer group id
        partitions : sequence of int, optional
            Partitions assigned to this member (all when omitted)
        member : str
            Id of the polling group member
        """
        ...

    def ack(self, delivery: Delivery, group: str) -> None:
        """Commit the offset of ``delivery`` for ``group`` and release its lease."""
        ...

    def lag(self, topic: str, group: str) -> int:
        """Number of messages ``group`` has not acknowledged yet."""
        ...

    def close(self) -> None:
        ...


class MemoryChannel:
    """In-process channel with the same delivery semantics as the Postgres one."""

    def __init__(
        self,
        partitions: int = 4,
        lease_timeout: float = LEASE_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.partitions = partitions
        self.lease_timeout = lease_timeout
        self.clock = clock
        self._logs: Dict[str, List[List[Delivery]]] = {}
        self._committed: Dict[Tuple[str, str, int], int] = {}
        self._leases: Dict[Tuple[str, str, int], Tuple[str, float]] = {}
        self._lock = threading.Lock()

    def _log(self, topic: str) -> List[List[Delivery]]:
        return self._logs.setdefault(topic, [[] for _ in range(self.partitions)])

    def _leased_to_other(self, key: Tuple[str, str, int], member: str, now: float) -> bool:
        lease = self._leases.get(key)
        return lease is not None and lease[0] != member and lease[1] > now

    def publish(self, topic: str, key: str, value: str) -> None:
        with self._lock:
            partition = partition_for(key, self.partitions)
            log = self._log(topic)[partition]
            log.append(Delivery(topic, partition, len(log), key, value))

    def poll(
        self,
        topic: str,
        group: str,
        partitions: Optional[Sequence[int]] = None,
        member: str = DEFAULT_MEMBER,
    ) -> Optional[Delivery]:
        with self._lock:
            now = self.clock()
            log = self._log(topic)
            heads = []
            for partition in partitions if partitions is not None else range(self.partitions):
                key = (topic, group, partition)
                offset = self._committed.get(key, 0)
                if offset < len(log[partition]) and not self._leased_to_other(key, member, now):
                    heads.append(log[partition][offset])
            if not heads:
                return None
            # Messages carry no timestamp; global publish order approximated by offset.
            head = min(heads, key=lambda d: (d.offset, d.partition))
            self._leases[(topic, group, head.partition)] = (member, now + self.lease_timeout)
            return replace(head, member=member)

    def ack(self, delivery: Delivery, group: str) -> None:
        with self._lock:
            key = (delivery.topic, group, delivery.partition)
            self._committed[key] = max(self._committed.get(key, 0), delivery.offset + 1)
            lease = self._leases.get(key)
            if lease is not None and lease[0] == delivery.member:
                del self._leases[key]

    def lag(self, topic: str, group: str) -> int:
        with self._lock:
            log = self._log(topic)
            return sum(
                len(log[p]) - self._committed.get((topic, group, p), 0)
                for p in range(self.partitions)
            )

    def messages(self, topic: str) -> List[Delivery]:
        """All messages ever published to ``topic``, partition by partition."""
        with self._lock:
            return [d for log in self._log(topic) for d in log]

    def close(self) -> None:
        pass


class PostgresChannel:
    """Postgres-backed partitioned log."""

    def __init__(
        self,
        conn_string: str,
        partitions: int = 4,
        lease_timeout: float = LEASE_TIMEOUT,
    ) -> None:
        """Initialize Postgres channel.

        Parameters
        ----------
        conn_string : str
            PostgreSQL connection string
        partitions : int
            Partition count; must be identical for every process
        lease_timeout : float
            Seconds a polled partition stays reserved for its member
            without an ack
        """
        self.conn_string = conn_string
        self.partitions = partitions
        self.lease_timeout = lease_timeout
        self._ensure_tables()

    @contextmanager
    def _connection(self) -> Iterator:
        try:
            conn = psycopg2.connect(self.conn_string)
        except psycopg2.Error as exc:
            raise MessagingError(f"Cannot connect to channel database: {exc}") from exc
        try:
            with conn:
                yield conn
        except psycopg2.Error as exc:
            raise MessagingError(str(exc)) from exc
        finally:
            conn.close()

    def _ensure_tables(self) -> None:
        create_sql = """
        CREATE TABLE IF NOT EXISTS channel_partitions (
            topic VARCHAR(200) NOT NULL,
            partition INTEGER NOT NULL,
            next_offset BIGINT NOT NULL DEFAULT 0,
            PRIMARY KEY (topic, partition)
        );

        CREATE TABLE IF NOT EXISTS channel_messages (
            topic VARCHAR(200) NOT NULL,
            partition INTEGER NOT NULL,
            msg_offset BIGINT NOT NULL,
            msg_key TEXT NOT NULL,
            payload TEXT NOT NULL,
            created_at TIMESTAMPTZ DEFAULT clock_timestamp(),
            PRIMARY KEY (topic, partition, msg_offset)
        );

        CREATE TABLE IF NOT EXISTS channel_offsets (
            topic VARCHAR(200) NOT NULL,
            group_id VARCHAR(200) NOT NULL,
            partition INTEGER NOT NULL,
            committed BIGINT NOT NULL DEFAULT 0,
            updated_at TIMESTAMPTZ DEFAULT NOW(),
            PRIMARY KEY (topic, group_id, partition)
        );

        CREATE TABLE IF NOT EXISTS channel_leases (
            topic VARCHAR(200) NOT NULL,
            group_id VARCHAR(200) NOT NULL,
            partition INTEGER NOT NULL,
            member_id VARCHAR(200) NOT NULL,
            expires_at TIMESTAMPTZ NOT NULL,
            PRIMARY KEY (topic, group_id, partition)
        );
        """
        with self._connection() as conn:
            with conn.cursor() as cur:
                cur.execute(create_sql)

        LOGGER.info("Ensured channel tables exist")

    def publish(self, topic: str, key: str, value: str) -> None:
        partition = partition_for(key, self.partitions)
        # The partition row lock serialises writers so offsets are dense and
        # become visible in offset order.
        offset_sql = """
        INSERT INTO channel_partitions (topic, partition, next_offset)
        VALUES (%s, %s, 1)
        ON CONFLICT (topic, partition) DO UPDATE
        SET next_offset = channel_partitions.next_offset + 1
        RETURNING next_offset - 1
        """
        insert_sql = """
        INSERT INTO channel_messages (topic, partition, msg_offset, msg_key, payload)
        VALUES (%s, %s, %s, %s, %s)
        """
        with self._connection() as conn:
            with conn.cursor() as cur:
                cur.execute(offset_sql, (topic, partition))
                offset = cur.fetchone()[0]
                cur.execute(insert_sql, (topic, partition, offset, key, value))

        LOGGER.debug("Published %s[%d]@%d key=%s", topic, partition, offset, key)

    def poll(
        self,
        topic: str,
        group: str,
        partitions: Optional[Sequence[int]] = None,
        member: str = DEFAULT_MEMBER,
    ) -> Optional[Delivery]:
        assigned = list(partitions) if partitions is not None else list(range(self.partitions))
        # Heads of assigned partitions that no other live member holds.
        select_sql = """
        SELECT m.partition, m.msg_offset, m.msg_key, m.payload
        FROM channel_messages m
        LEFT JOIN channel_offsets o
          ON o.topic = m.topic
         AND o.group_id = %s
         AND o.partition = m.partition
        LEFT JOIN channel_leases l
          ON l.topic = m.topic
         AND l.group_id = %s
         AND l.partition = m.partition
        WHERE m.topic = %s
          AND m.partition = ANY(%s)
          AND m.msg_offset = COALESCE(o.committed, 0)
          AND (l.member_id IS NULL OR l.member_id = %s OR l.expires_at < NOW())
        ORDER BY m.created_at, m.partition
        """
        # The conflicting row lock makes concurrent claims of one partition
        # resolve to a single winner.
        claim_sql = """
        INSERT INTO channel_leases (topic, group_id, partition, member_id, expires_at)
        VALUES (%s, %s, %s, %s, NOW() + %s * INTERVAL '1 second')
        ON CONFLICT (topic, group_id, partition) DO UPDATE
        SET member_id = EXCLUDED.member_id,
            expires_at = EXCLUDED.expires_at
        WHERE channel_leases.member_id = EXCLUDED.member_id
           OR channel_leases.expires_at < NOW()
        RETURNING partition
        """
        moved_sql = """
        SELECT 1 FROM channel_offsets
        WHERE topic = %s AND group_id = %s AND partition = %s AND committed > %s
        """
        release_sql = """
        DELETE FROM channel_leases
        WHERE topic = %s AND group_id = %s AND partition = %s AND member_id = %s
        """
        with self._connection() as conn:
            with conn.cursor() as cur:
                cur.execute(select_sql, (group, group, topic, assigned, member))
                candidates = cur.fetchall()

                for partition, offset, key, payload in candidates:
                    cur.execute(
                        claim_sql,
                        (topic, group, partition, member, self.lease_timeout),
                    )
                    if cur.fetchone() is None:
                        continue
                    # Another member may have acked this head since the select.
                    cur.execute(moved_sql, (topic, group, partition, offset))
                    if cur.fetchone() is not None:
                        cur.execute(release_sql, (topic, group, partition, member))
                        continue
                    return Delivery(topic, partition, offset, key, payload, member)

        return None

    def ack(self, delivery: Delivery, group: str) -> None:
        ack_sql = """
        INSERT INTO channel_offsets (topic, group_id, partition, committed)
        VALUES (%s, %s, %s, %s)
        ON CONFLICT (topic, group_id, partition) DO UPDATE
        SET committed = GREATEST(channel_offsets.committed, EXCLUDED.committed),
            updated_at = NOW()
        """
        release_sql = """
        DELETE FROM channel_leases
        WHERE topic = %s AND group_id = %s AND partition = %s AND member_id = %s
        """
        with self._connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    ack_sql,
                    (delivery.topic, group, delivery.partition, delivery.offset + 1),
                )
                cur.execute(
                    release_sql,
                    (delivery.topic, group, delivery.partition, delivery.member),
                )

        LOGGER.debug(
            "Acked %s[%d]@%d for %s",
            delivery.topic,
            delivery.partition,
            delivery.offset,
            group,
        )

    def lag(self, topic: str, group: str) -> int:
        lag_sql = """
        SELECT COALESCE(SUM(p.next_offset - COALESCE(o.committed, 0)), 0)
        FROM channel_partitions p
        LEFT JOIN channel_offsets o
          ON o.topic = p.topic
         AND o.group_id = %s
         AND o.partition = p.partition
        WHERE p.topic = %s
        """
        with self._connection() as conn:
            with conn.cursor() as cur:
                cur.execute(lag_sql, (group, topic))
                return int(cur.fetchone()[0])

    def purge_consumed(self, topic: str) -> int:
        """Delete messages every known group has acknowledged.

        Returns
        -------
        int
            Number of messages removed
        """
        delete_sql = """
        DELETE FROM channel_messages m
        WHERE m.topic = %s
          AND EXISTS (
              SELECT 1 FROM channel_offsets o
              WHERE o.topic = m.topic AND o.partition = m.partition
          )
          AND m.msg_offset < (
              SELECT MIN(o.committed) FROM channel_offsets o
              WHERE o.topic = m.topic AND o.partition = m.partition
          )
        """
        with self._connection() as conn:
            with conn.cursor() as cur:
                cur.execute(delete_sql, (topic,))
                count = cur.rowcount

        if count > 0:
            LOGGER.info("Purged %d consumed message(s) from %s", count, topic)
        return count

    def close(self) -> None:
        pass
