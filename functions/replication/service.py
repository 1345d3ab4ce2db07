"""
Replication service: wires the record store, sync orchestrator, backup
manager and reconciliation runner together and exposes the status/control
operations used by the HTTP layer.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from replication.backups import BackupManager
from replication.config import Settings
from replication.reconciliation import ReconciliationReport, ReconciliationRunner
from replication.records import (
    InMemoryRecordStore,
    MonarchStore,
    RecordNotFoundError,
    RecordStore,
    SqlRecordStore,
    load_seed_documents,
)
from replication.retry_queue import InMemoryRetryQueue, RedisRetryQueue, RetryQueue
from replication.sync import RetryOutcome, SyncLogEntry, SyncOrchestrator, SyncResult
from replication.temporal import get_overlapping
from replication.versioned_store import (
    GitHubVersionedStore,
    InMemoryVersionedStore,
    S3VersionedStore,
    VersionedStore,
)
from shared.json_utils import convert_keys
from shared.types import BackupMetadata, BackupTrigger, FamilyMember, Monarch, SyncKind

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConnectionCheck:
    connected: bool
    checked_at: float
    error: Optional[str] = None


@dataclass(frozen=True)
class MutationResult:
    record: Optional[dict]
    dataset: list
    sync: SyncResult


def build_versioned_store(settings: Settings) -> tuple[VersionedStore, bool]:
    """Returns the configured target and whether it is a real remote."""
    if settings.use_in_memory_backends:
        return InMemoryVersionedStore(), False
    if settings.github_token and settings.github_owner and settings.github_repo:
        return (
            GitHubVersionedStore(
                settings.github_token,
                settings.github_owner,
                settings.github_repo,
                branch=settings.github_branch,
                api_url=settings.github_api_url,
                timeout=settings.request_timeout_seconds,
            ),
            True,
        )
    if settings.s3_bucket:
        return (
            S3VersionedStore(
                settings.s3_bucket,
                region=settings.s3_region or "",
                endpoint=settings.s3_endpoint or "",
                access_key_id=settings.aws_access_key_id or "",
                secret_access_key=settings.aws_secret_access_key or "",
            ),
            True,
        )
    return InMemoryVersionedStore(), False


def build_record_store(settings: Settings):
    if settings.use_in_memory_backends or not settings.database_url:
        records = load_seed_documents(settings.seed_data_path) if settings.seed_data_path else []
        monarchs = (
            load_seed_documents(settings.monarch_seed_path) if settings.monarch_seed_path else []
        )
        return InMemoryRecordStore(records, monarchs)
    return SqlRecordStore(settings.database_url)


def build_retry_queue(settings: Settings) -> RetryQueue:
    if settings.redis_url and not settings.use_in_memory_backends:
        return RedisRetryQueue(url=settings.redis_url, queue_key=settings.redis_retry_queue_key)
    return InMemoryRetryQueue()


class ReplicationService:
    def __init__(
        self,
        records: RecordStore,
        monarchs: MonarchStore,
        store: VersionedStore,
        *,
        orchestrator: SyncOrchestrator,
        backups: BackupManager,
        available: bool = True,
        connection_check_ttl_seconds: float = 300.0,
        local_backup_dir: Optional[str] = None,
    ):
        self.records = records
        self.monarchs = monarchs
        self.store = store
        self.orchestrator = orchestrator
        self.backups = backups
        self.available = available
        self.connection_check_ttl_seconds = connection_check_ttl_seconds
        self.reconciliation = ReconciliationRunner(
            records,
            monarchs,
            backups=backups,
            sync=orchestrator,
            local_backup_dir=local_backup_dir,
        )
        self._last_check: Optional[ConnectionCheck] = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        records: Optional[RecordStore] = None,
        store: Optional[VersionedStore] = None,
        queue: Optional[RetryQueue] = None,
    ) -> "ReplicationService":
        if store is None:
            store, available = build_versioned_store(settings)
        else:
            available = True
        if records is None:
            records = build_record_store(settings)
        orchestrator = SyncOrchestrator(
            store,
            data_path=settings.data_path,
            queue=queue if queue is not None else build_retry_queue(settings),
            short_delay_seconds=settings.retry_short_seconds,
            long_delay_seconds=settings.retry_long_seconds,
            failure_threshold=settings.retry_failure_threshold,
            max_attempts=settings.max_sync_attempts,
        )
        backups = BackupManager(
            store, backups_dir=settings.backups_dir, on_event=orchestrator.add_log
        )
        return cls(
            records,
            records,
            store,
            orchestrator=orchestrator,
            backups=backups,
            available=available,
            connection_check_ttl_seconds=settings.connection_check_ttl_seconds,
            local_backup_dir=settings.local_backup_dir,
        )

    def start(self) -> None:
        self.orchestrator.start()
        logger.info("Replication service started (remote target: %s)", self.available)

    def stop(self) -> None:
        self.orchestrator.stop()
        logger.info("Replication service stopped")

    # Status / control

    def test_connection(self) -> dict:
        result = self.store.whoami()
        if result.is_ok():
            self._last_check = ConnectionCheck(connected=True, checked_at=time.time())
            return {"connected": True}
        error = str(result.error)
        self._last_check = ConnectionCheck(connected=False, checked_at=time.time(), error=error)
        return {"connected": False, "error": error}

    def _is_connected(self) -> bool:
        check = self._last_check
        if check is None or not check.connected:
            return False
        return time.time() - check.checked_at <= self.connection_check_ttl_seconds

    def get_status(self) -> dict:
        status = self.orchestrator.get_status()
        error = status.error
        if error is None and self._last_check and not self._last_check.connected:
            error = self._last_check.error
        return convert_keys(
            {
                "available": self.available,
                "connected": self._is_connected(),
                "last_sync": _isoformat(status.last_sync),
                "pending_operations": status.pending_operations,
                "failed_retries": status.failed_retries,
                "is_retrying": status.is_retrying,
                "error": error,
            },
            "snake_to_camel",
        )

    def manual_retry(self) -> RetryOutcome:
        return self.orchestrator.manual_retry()

    def get_sync_logs(self) -> list[SyncLogEntry]:
        return self.orchestrator.get_sync_logs()

    def run_reconciliation(self, dry_run: bool = True) -> ReconciliationReport:
        return self.reconciliation.run(dry_run=dry_run)

    # Backups

    def list_backups(self) -> list[BackupMetadata]:
        return self.backups.list_backups()

    def create_backup(self, trigger: BackupTrigger | str = BackupTrigger.MANUAL) -> BackupMetadata:
        return self.backups.create_backup(self.records.get_all(), trigger)

    def get_backup_content(self, filename: str) -> list[dict]:
        return self.backups.get_backup_content(filename)

    def delete_backup(self, filename: str) -> None:
        self.backups.delete_backup(filename)
        self.orchestrator.add_log(f"Deleted backup: {filename}", True)

    def restore_backup(self, filename: str) -> MutationResult:
        """Replace the dataset with a backup, keeping a pre-restore backup first."""
        content = self.backups.get_backup_content(filename)
        self.backups.create_backup(self.records.get_all(), BackupTrigger.PRE_RESTORE)
        dataset = self.records.replace_all(content)
        result = self.orchestrator.sync(SyncKind.BULK, {"count": len(dataset)}, dataset)
        self.orchestrator.add_log(f"Restored backup {filename} ({len(dataset)} members)", True)
        return MutationResult(record=None, dataset=dataset, sync=result)

    # Record mutations

    def create_record(self, record: dict) -> MutationResult:
        dataset = self.records.create(record)
        result = self.orchestrator.sync(SyncKind.CREATE, record, dataset)
        return MutationResult(record=record, dataset=dataset, sync=result)

    def update_record(self, external_id: str, patch: dict) -> MutationResult:
        dataset = self.records.update(external_id, patch)
        record = self.records.get(external_id)
        result = self.orchestrator.sync(SyncKind.UPDATE, record, dataset)
        return MutationResult(record=record, dataset=dataset, sync=result)

    def delete_record(self, external_id: str) -> MutationResult:
        record = self.records.get(external_id)
        if record is None:
            raise RecordNotFoundError(external_id)
        dataset = self.records.delete(external_id)
        result = self.orchestrator.sync(SyncKind.DELETE, record, dataset)
        return MutationResult(record=record, dataset=dataset, sync=result)

    def bulk_update_records(self, records: list[dict]) -> tuple[MutationResult, int, int]:
        dataset, updated, created = self.records.bulk_upsert(records)
        result = self.orchestrator.sync(SyncKind.BULK, {"count": len(records)}, dataset)
        return MutationResult(record=None, dataset=dataset, sync=result), updated, created

    def get_monarchs_during_lifetime(self, external_id: str) -> list[dict]:
        doc = self.records.get(external_id)
        if doc is None:
            raise RecordNotFoundError(external_id)
        member = FamilyMember.from_document(doc)
        if member.born is None:
            raise ValueError("Family member must have a birth year")
        monarchs = [Monarch.from_document(m) for m in self.monarchs.get_all_monarchs()]
        return [m.to_document() for m in get_overlapping(member.born, member.died, monarchs)]


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None
