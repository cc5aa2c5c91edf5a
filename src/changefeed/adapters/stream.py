"""
Change capture stream adapters.

Each partition is an append-only stream of change notifications with
positions of the form ``<ms>-<seq>``. Order is strict within a partition;
there is no ordering across partitions. Entries older than the retention
window are trimmed, and asking to resume after a position that old raises
PositionExpired so the consumer can resynchronise from the event store.
"""

import abc
import logging
import threading
import time
from collections import defaultdict
from datetime import timedelta
from typing import Callable, Dict, Iterator, List, Optional, Tuple

import redis

from changefeed.domain.model import (
    ChangeNotification,
    format_position,
    next_position,
    parse_position,
)
from shared.domain.errors import PositionExpired

logger = logging.getLogger(__name__)

BEGINNING = "0-0"


def _text(value) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else value


class AbstractChangeStream(abc.ABC):
    """Ordered, restartable per-partition change notifications with bounded retention."""

    def __init__(self, retention: timedelta = timedelta(hours=24), clock: Callable[[], float] = time.time):
        self.retention = retention
        self._clock = clock

    @abc.abstractmethod
    def append(self, notification: ChangeNotification) -> str:
        """Append a notification to its partition and return the assigned position."""
        raise NotImplementedError

    @abc.abstractmethod
    def _read(self, partition: str, start: str, count: int) -> List[ChangeNotification]:
        raise NotImplementedError

    @abc.abstractmethod
    def latest_position(self, partition: str) -> str:
        raise NotImplementedError

    @abc.abstractmethod
    def partitions(self) -> List[str]:
        raise NotImplementedError

    @abc.abstractmethod
    def trim(self, partition: str) -> int:
        """Drop entries older than the retention window; returns how many were dropped."""
        raise NotImplementedError

    def read(self, partition: str, after: Optional[str] = None, count: int = 100) -> List[ChangeNotification]:
        """
        Read up to ``count`` notifications strictly after ``after``.

        ``None`` (or ``0-0``) reads from the oldest retained entry.

        Raises:
            PositionExpired: ``after`` is older than the retention window
        """
        if after is None or after == BEGINNING:
            return self._read(partition, "-", count)
        self._check_retention(partition, after)
        return self._read(partition, next_position(after), count)

    def changes(self, partition: str, after: Optional[str] = None, batch_size: int = 100) -> Iterator[ChangeNotification]:
        """
        Lazily yield notifications after ``after`` until the stream is drained.

        Restart by passing the position of the last notification handled.
        Pass ``"$"`` to start from now.
        """
        if after == "$":
            after = self.latest_position(partition)
        while True:
            batch = self.read(partition, after, batch_size)
            if not batch:
                return
            for notification in batch:
                yield notification
                after = notification.stream_position

    def cutoff_ms(self) -> int:
        return int((self._clock() - self.retention.total_seconds()) * 1000)

    def _check_retention(self, partition: str, after: str):
        ms, _ = parse_position(after)
        if ms < self.cutoff_ms():
            raise PositionExpired(partition, after)


class RedisChangeStream(AbstractChangeStream):
    """Change stream on Redis Streams: one stream key per partition."""

    def __init__(
        self,
        client: redis.Redis,
        prefix: str = "changes",
        retention: timedelta = timedelta(hours=24),
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(retention=retention, clock=clock)
        self.client = client
        self.prefix = prefix

    def _key(self, partition: str) -> str:
        return f"{self.prefix}:{partition}"

    def append(self, notification: ChangeNotification) -> str:
        key = self._key(notification.partition)
        position = _text(self.client.xadd(key, notification.to_fields()))
        logger.info(f"Captured change {notification.event_key} at {key}@{position}")
        self.trim(notification.partition)
        return position

    def _read(self, partition, start, count):
        entries = self.client.xrange(self._key(partition), min=start, max="+", count=count)
        return [
            ChangeNotification.from_fields(
                {_text(k): _text(v) for k, v in fields.items()},
                _text(position),
            )
            for position, fields in entries
        ]

    def latest_position(self, partition):
        entries = self.client.xrevrange(self._key(partition), max="+", min="-", count=1)
        if not entries:
            return BEGINNING
        return _text(entries[0][0])

    def partitions(self):
        prefix = f"{self.prefix}:"
        return sorted(_text(key)[len(prefix):] for key in self.client.scan_iter(match=f"{prefix}*"))

    def trim(self, partition):
        cutoff = format_position(max(self.cutoff_ms(), 0), 0)
        return self.client.xtrim(self._key(partition), minid=cutoff, approximate=False)


class InMemoryChangeStream(AbstractChangeStream):
    """Process-local change stream with the same position and retention semantics."""

    def __init__(self, retention: timedelta = timedelta(hours=24), clock: Callable[[], float] = time.time):
        super().__init__(retention=retention, clock=clock)
        self._entries = defaultdict(list)  # type: Dict[str, List[Tuple[Tuple[int, int], ChangeNotification]]]
        self._lock = threading.Lock()

    def append(self, notification):
        with self._lock:
            entries = self._entries[notification.partition]
            ms = int(self._clock() * 1000)
            seq = 0
            if entries:
                last_ms, last_seq = entries[-1][0]
                if ms <= last_ms:
                    ms, seq = last_ms, last_seq + 1
            position = format_position(ms, seq)
            entries.append(((ms, seq), notification.at(position)))
        self.trim(notification.partition)
        return position

    def _read(self, partition, start, count):
        with self._lock:
            entries = list(self._entries.get(partition, []))
        floor = (0, 0) if start == "-" else parse_position(start)
        return [n for key, n in entries if key >= floor][:count]

    def latest_position(self, partition):
        with self._lock:
            entries = self._entries.get(partition)
            if not entries:
                return BEGINNING
            return entries[-1][1].stream_position

    def partitions(self):
        with self._lock:
            return sorted(p for p, entries in self._entries.items() if entries)

    def trim(self, partition):
        cutoff = self.cutoff_ms()
        with self._lock:
            entries = self._entries.get(partition, [])
            kept = [(key, n) for key, n in entries if key[0] >= cutoff]
            dropped = len(entries) - len(kept)
            self._entries[partition] = kept
        return dropped


class AbstractCheckpointStore(abc.ABC):
    """Last handled stream position per consumer and partition."""

    @abc.abstractmethod
    def get(self, consumer: str, partition: str) -> Optional[str]:
        raise NotImplementedError

    @abc.abstractmethod
    def save(self, consumer: str, partition: str, position: str):
        raise NotImplementedError


class RedisCheckpointStore(AbstractCheckpointStore):
    def __init__(self, client: redis.Redis, prefix: str = "checkpoints"):
        self.client = client
        self.prefix = prefix

    def get(self, consumer, partition):
        value = self.client.hget(f"{self.prefix}:{consumer}", partition)
        return _text(value) if value is not None else None

    def save(self, consumer, partition, position):
        self.client.hset(f"{self.prefix}:{consumer}", partition, position)


class InMemoryCheckpointStore(AbstractCheckpointStore):
    def __init__(self):
        self.positions = {}  # type: Dict[Tuple[str, str], str]

    def get(self, consumer, partition):
        return self.positions.get((consumer, partition))

    def save(self, consumer, partition, position):
        self.positions[(consumer, partition)] = position
