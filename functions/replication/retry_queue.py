"""
Storage for sync operations waiting to be retried.

The in-memory queue is the default: pending retries are lost when the
process exits. The Redis-backed queue keeps them across restarts and holds
pushes in memory while Redis is unreachable.
"""

from __future__ import annotations

import json
import logging
from collections import deque
from dataclasses import asdict, dataclass, field
from typing import Optional, Protocol

import redis
from dacite import Config, from_dict
from dacite.exceptions import DaciteError
from redis import exceptions as redis_exceptions

from shared.types import SyncKind, SyncOperation

logger = logging.getLogger(__name__)

_REDIS_UNAVAILABLE = (redis_exceptions.ConnectionError, redis_exceptions.TimeoutError)


class RetryQueue(Protocol):
    """FIFO of SyncOperations."""

    def push(self, operation: SyncOperation) -> None:
        ...

    def pop(self) -> Optional[SyncOperation]:
        ...

    def __len__(self) -> int:
        ...


@dataclass
class InMemoryRetryQueue:
    items: deque = field(default_factory=deque)

    def push(self, operation: SyncOperation) -> None:
        self.items.append(operation)

    def pop(self) -> Optional[SyncOperation]:
        if not self.items:
            return None
        return self.items.popleft()

    def __len__(self) -> int:
        return len(self.items)


def encode_operation(operation: SyncOperation) -> str:
    data = asdict(operation)
    data["kind"] = operation.kind.value
    return json.dumps(data, default=str)


def decode_operation(raw: bytes | str) -> SyncOperation:
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")
    return from_dict(
        data_class=SyncOperation,
        data=json.loads(raw),
        config=Config(cast=[SyncKind]),
    )


@dataclass
class RedisRetryQueue:
    """
    Redis list of JSON-encoded operations (RPUSH / LPOP).

    While Redis is unreachable, pushed operations are held in `overflow` and
    written to the list, in order, once a later call reconnects.
    """

    url: str
    queue_key: str = "heritage:sync-retries"
    overflow: deque = field(default_factory=deque)

    def __post_init__(self):
        self.client = redis.Redis.from_url(self.url)

    def _reconnect(self) -> None:
        # Managed Redis drops idle connections.
        self.client = redis.Redis.from_url(self.url)

    def _flush_overflow(self) -> bool:
        while self.overflow:
            try:
                self.client.rpush(self.queue_key, encode_operation(self.overflow[0]))
            except _REDIS_UNAVAILABLE:
                self._reconnect()
                return False
            self.overflow.popleft()
        return True

    def push(self, operation: SyncOperation) -> None:
        if self._flush_overflow():
            try:
                self.client.rpush(self.queue_key, encode_operation(operation))
                return
            except _REDIS_UNAVAILABLE as exc:
                logger.warning("Redis unavailable, holding retry %s in memory: %s", operation.id, exc)
                self._reconnect()
        self.overflow.append(operation)

    def pop(self) -> Optional[SyncOperation]:
        self._flush_overflow()
        try:
            raw = self.client.lpop(self.queue_key)
        except _REDIS_UNAVAILABLE:
            self._reconnect()
            return self.overflow.popleft() if self.overflow else None
        if raw is None:
            return None
        try:
            return decode_operation(raw)
        except (ValueError, DaciteError) as exc:
            logger.error("Dropping undecodable retry entry: %s", exc)
            return None

    def __len__(self) -> int:
        try:
            return int(self.client.llen(self.queue_key)) + len(self.overflow)
        except _REDIS_UNAVAILABLE:
            self._reconnect()
            return len(self.overflow)
