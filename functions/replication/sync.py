"""
Replication of the family dataset to the versioned target.

`SyncOrchestrator.sync` pushes a full dataset snapshot immediately. When the
push fails the snapshot is queued and a single background thread retries the
queue in FIFO order, waiting 5 minutes between attempts while fewer than 3
consecutive failures have been seen and 1 hour after that. An operation whose
retry has failed 5 times is abandoned and reported in the sync log.
"""

from __future__ import annotations

import json
import logging
import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional
from uuid import uuid4

from replication.commit_messages import dataset_commit_message
from replication.retry_queue import InMemoryRetryQueue, RetryQueue
from replication.versioned_store import VersionedStore, VersionedStoreError
from shared.result import Result
from shared.types import SyncKind, SyncOperation

logger = logging.getLogger(__name__)

SYNC_LOG_LIMIT = 100
SYNC_LOG_VISIBLE = 20


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _describe_delay(seconds: float) -> str:
    if seconds >= 3600 and seconds % 3600 == 0:
        hours = int(seconds // 3600)
        return "1 hour" if hours == 1 else f"{hours} hours"
    if seconds >= 60 and seconds % 60 == 0:
        minutes = int(seconds // 60)
        return "1 minute" if minutes == 1 else f"{minutes} minutes"
    return f"{seconds:g} seconds"


def serialize_dataset(dataset: list[dict]) -> bytes:
    return json.dumps(dataset, indent=2, ensure_ascii=False).encode("utf-8")


@dataclass(frozen=True)
class SyncResult:
    success: bool
    error: Optional[str] = None


@dataclass(frozen=True)
class RetryOutcome:
    success: bool
    message: str


@dataclass(frozen=True)
class SyncLogEntry:
    timestamp: datetime
    message: str
    success: bool

    def as_dict(self) -> dict:
        return {
            "timestamp": self.timestamp.isoformat(),
            "message": self.message,
            "success": self.success,
        }


@dataclass(frozen=True)
class SyncStatus:
    pending_operations: int
    failed_retries: int
    is_retrying: bool
    last_sync: Optional[datetime]
    error: Optional[str]


class SyncOrchestrator:
    """Pushes dataset snapshots to the versioned target, queueing failures."""

    def __init__(
        self,
        store: VersionedStore,
        *,
        data_path: str,
        queue: Optional[RetryQueue] = None,
        short_delay_seconds: float = 300.0,
        long_delay_seconds: float = 3600.0,
        failure_threshold: int = 3,
        max_attempts: int = 5,
        autostart: bool = True,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.data_path = data_path
        self.queue = queue if queue is not None else InMemoryRetryQueue()
        self.short_delay_seconds = short_delay_seconds
        self.long_delay_seconds = long_delay_seconds
        self.failure_threshold = failure_threshold
        self.max_attempts = max_attempts
        self.autostart = autostart
        self.clock = clock

        self._state_lock = threading.RLock()
        # Serializes pushes so an immediate sync never races a retry.
        self._push_lock = threading.Lock()
        self._wake = threading.Event()
        self._stopping = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._running = False
        self._failure_count = 0
        self._last_sync: Optional[datetime] = None
        self._last_error: Optional[str] = None
        self._logs: deque[SyncLogEntry] = deque(maxlen=SYNC_LOG_LIMIT)

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def next_retry_delay(self) -> float:
        """Wait before the next retry, chosen from the global failure count."""
        if self._failure_count < self.failure_threshold:
            return self.short_delay_seconds
        return self.long_delay_seconds

    def push(
        self, kind: SyncKind, record: Optional[dict], dataset: list[dict]
    ) -> Result[str, VersionedStoreError]:
        """Write `dataset` over the current content at `data_path`."""
        with self._push_lock:
            current = self.store.read(self.data_path)
            if current.is_err():
                if current.error.kind != VersionedStoreError.NOT_FOUND:
                    return current
                revision = None
            else:
                revision = current.value.revision
            return self.store.write(
                self.data_path,
                serialize_dataset(dataset),
                dataset_commit_message(kind, record),
                revision,
            )

    def sync(
        self, kind: SyncKind | str, record: Optional[dict], dataset: list[dict]
    ) -> SyncResult:
        """
        Push `dataset` now; on failure queue it for retry. Never raises for
        target failures since the local change has already been stored.
        """
        kind = SyncKind(kind)
        result = self.push(kind, record, dataset)
        if result.is_ok():
            self._record_success()
            self._add_log(f"{kind.value} operation synced successfully", True)
            return SyncResult(success=True)

        error = str(result.error)
        self._add_log(f"Sync failed: {error}", False)
        self._check_retryable(result.error)
        operation = SyncOperation(
            id=uuid4().hex,
            kind=kind,
            payload={"record": record or {}, "dataset": dataset},
            last_error=error,
        )
        with self._state_lock:
            self._last_error = error
            self.queue.push(operation)
            self._failure_count += 1
            if self.autostart:
                self._ensure_worker()
        return SyncResult(success=False, error=error)

    def process_next(self) -> bool:
        """
        Retry the operation at the head of the queue. Returns False when the
        queue is empty.
        """
        with self._state_lock:
            operation = self.queue.pop()
        if operation is None:
            return False

        result = self.push(operation.kind, operation.record, operation.dataset)
        if result.is_ok():
            self._record_success()
            self._add_log(f"Retry successful for {operation.kind.value} operation", True)
            return True

        error = str(result.error)
        self._check_retryable(result.error)
        operation.attempts += 1
        operation.last_error = error
        with self._state_lock:
            self._failure_count += 1
            self._last_error = error
            if operation.attempts >= self.max_attempts:
                abandoned = True
            else:
                abandoned = False
                self.queue.push(operation)
        if abandoned:
            self._add_log(
                f"Giving up on {operation.kind.value} operation after "
                f"{operation.attempts} attempts: {error}",
                False,
            )
            logger.error(
                "[sync] Abandoned operation %s (%s); the target may be missing this change",
                operation.id,
                operation.kind.value,
            )
        else:
            self._add_log(f"Retry failed: {error}", False)
        return True

    def manual_retry(self) -> RetryOutcome:
        with self._state_lock:
            pending = len(self.queue)
            if pending == 0:
                return RetryOutcome(success=True, message="No pending operations to retry")
            self._failure_count = 0
            self._ensure_worker()
        self._wake.set()
        return RetryOutcome(success=True, message=f"Retrying {pending} pending operations...")

    def get_status(self) -> SyncStatus:
        with self._state_lock:
            return SyncStatus(
                pending_operations=len(self.queue),
                failed_retries=self._failure_count,
                is_retrying=self._running,
                last_sync=self._last_sync,
                error=self._last_error,
            )

    def get_sync_logs(self) -> list[SyncLogEntry]:
        with self._state_lock:
            return list(self._logs)[-SYNC_LOG_VISIBLE:]

    def add_log(self, message: str, success: bool) -> None:
        """Record an event from a collaborator (backups, cleanup) in the sync log."""
        self._add_log(message, success)

    def start(self) -> None:
        """Resume retries left in a durable queue from a previous process."""
        self._stopping.clear()
        with self._state_lock:
            if len(self.queue) > 0:
                self._ensure_worker()

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stopping.set()
        self._wake.set()
        self.join(timeout)

    def join(self, timeout: Optional[float] = None) -> None:
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)

    def _record_success(self) -> None:
        with self._state_lock:
            self._failure_count = 0
            self._last_sync = self.clock()
            self._last_error = None

    def _check_retryable(self, error: VersionedStoreError) -> None:
        # Logged only; the operation stays queued either way.
        if not error.retryable:
            logger.error(
                "[sync] Non-retryable %s failure writing %s: %s",
                error.kind,
                self.data_path,
                error,
            )

    def _add_log(self, message: str, success: bool) -> None:
        entry = SyncLogEntry(timestamp=self.clock(), message=message, success=success)
        with self._state_lock:
            self._logs.append(entry)
        if success:
            logger.info("[sync] %s", message)
        else:
            logger.warning("[sync] %s", message)

    def _ensure_worker(self) -> None:
        # Caller holds _state_lock.
        if self._running or self._stopping.is_set():
            return
        self._running = True
        self._thread = threading.Thread(
            target=self._run, name="sync-retry", daemon=True
        )
        self._thread.start()

    def _run(self) -> None:
        try:
            while not self._stopping.is_set():
                with self._state_lock:
                    if len(self.queue) == 0:
                        self._running = False
                        self._thread = None
                        return
                    delay = self.next_retry_delay()
                self._add_log(f"Retrying sync in {_describe_delay(delay)}...", False)
                self._wake.wait(delay)
                self._wake.clear()
                if self._stopping.is_set():
                    break
                try:
                    self.process_next()
                except Exception:
                    logger.exception("[sync] Unexpected error while retrying")
        finally:
            with self._state_lock:
                if self._thread is threading.current_thread():
                    self._running = False
                    self._thread = None

