"""
Point-in-time backups of the family dataset in the versioned target.

Backups live under `<backups_dir>/family-data_<YYYY-MM-DD_HH-MM-SS>_<trigger>.json`.
Automatic backups are pruned per trigger (5 auto-bulk, 3 pre-restore);
manual backups are only removed by an explicit delete.
"""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timezone
from typing import Callable, Optional

from replication.commit_messages import backup_commit_message, cleanup_commit_message
from replication.versioned_store import VersionedStore, VersionedStoreError
from shared.types import BackupMetadata, BackupTrigger

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%d_%H-%M-%S"
BACKUP_FILENAME_PATTERN = re.compile(
    r"^family-data_(\d{4}-\d{2}-\d{2}_\d{2}-\d{2}-\d{2})_(manual|auto-bulk|pre-restore)\.json$"
)
RETENTION = {
    BackupTrigger.AUTO_BULK: 5,
    BackupTrigger.PRE_RESTORE: 3,
}


class BackupError(Exception):
    """Creating or deleting a backup in the versioned target failed."""


class BackupNotFoundError(BackupError, LookupError):
    pass


class BackupFormatError(BackupError, ValueError):
    pass


def backup_filename(timestamp: datetime, trigger: BackupTrigger) -> str:
    return f"family-data_{timestamp.strftime(TIMESTAMP_FORMAT)}_{trigger.value}.json"


def parse_backup_filename(filename: str, size: int = 0) -> Optional[BackupMetadata]:
    """Metadata encoded in a backup filename, or None if it doesn't match."""
    match = BACKUP_FILENAME_PATTERN.match(filename)
    if not match:
        return None
    timestamp_str, trigger = match.groups()
    try:
        timestamp = datetime.strptime(timestamp_str, TIMESTAMP_FORMAT).replace(
            tzinfo=timezone.utc
        )
    except ValueError:
        return None
    return BackupMetadata(
        filename=filename,
        timestamp=timestamp,
        trigger=BackupTrigger(trigger),
        # Not recoverable from the listing without fetching the content.
        record_count=None,
        size_bytes=size,
    )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BackupManager:
    def __init__(
        self,
        store: VersionedStore,
        *,
        backups_dir: str = "backups",
        clock: Callable[[], datetime] = _utcnow,
        on_event: Optional[Callable[[str, bool], None]] = None,
    ):
        self.store = store
        self.backups_dir = backups_dir.rstrip("/")
        self.clock = clock
        self._on_event = on_event

    def _path(self, filename: str) -> str:
        return f"{self.backups_dir}/{filename}"

    def _event(self, message: str, success: bool) -> None:
        if self._on_event is not None:
            self._on_event(message, success)
        elif success:
            logger.info(message)
        else:
            logger.warning(message)

    def create_backup(
        self, dataset: list[dict], trigger: BackupTrigger | str
    ) -> BackupMetadata:
        trigger = BackupTrigger(trigger)
        timestamp = self.clock().astimezone(timezone.utc).replace(microsecond=0)
        filename = backup_filename(timestamp, trigger)
        content = json.dumps(dataset, indent=2, ensure_ascii=False).encode("utf-8")

        result = self.store.write(
            self._path(filename),
            content,
            backup_commit_message(trigger.value, len(dataset)),
        )
        if result.is_err():
            self._event(f"Failed to create backup: {result.error}", False)
            raise BackupError(f"Failed to create {trigger.value} backup: {result.error}")

        metadata = BackupMetadata(
            filename=filename,
            timestamp=timestamp,
            trigger=trigger,
            record_count=len(dataset),
            size_bytes=len(content),
        )
        self._event(f"Created {trigger.value} backup: {filename}", True)

        if trigger != BackupTrigger.MANUAL:
            self.cleanup_old_backups(trigger)
        return metadata

    def list_backups(self) -> list[BackupMetadata]:
        """Backups newest first. Files that don't match the naming scheme are ignored."""
        result = self.store.list_dir(self.backups_dir)
        if result.is_err():
            if result.error.kind != VersionedStoreError.NOT_FOUND:
                self._event(f"Failed to list backups: {result.error}", False)
            return []

        backups = []
        for entry in result.value:
            if entry.type != "file":
                continue
            metadata = parse_backup_filename(entry.name, entry.size)
            if metadata is not None:
                backups.append(metadata)
        backups.sort(key=lambda b: b.timestamp, reverse=True)
        return backups

    def get_backup_content(self, filename: str) -> list[dict]:
        if parse_backup_filename(filename) is None:
            raise BackupNotFoundError(f"Not a backup file: {filename}")
        result = self.store.read(self._path(filename))
        if result.is_err():
            self._event(f"Failed to get backup content: {result.error}", False)
            if result.error.kind == VersionedStoreError.NOT_FOUND:
                raise BackupNotFoundError(filename) from result.error
            raise result.error
        try:
            data = json.loads(result.value.content.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise BackupFormatError(f"Backup {filename} is not valid JSON") from exc
        if not isinstance(data, list):
            raise BackupFormatError(f"Backup {filename} does not contain a list of records")
        return data

    def delete_backup(self, filename: str, message: Optional[str] = None) -> None:
        """Delete one backup. Raises on failure."""
        if parse_backup_filename(filename) is None:
            raise BackupNotFoundError(f"Not a backup file: {filename}")
        path = self._path(filename)
        current = self.store.read(path)
        if current.is_err():
            if current.error.kind == VersionedStoreError.NOT_FOUND:
                raise BackupNotFoundError(filename) from current.error
            raise BackupError(f"Failed to delete backup {filename}: {current.error}")
        result = self.store.delete(
            path, message or f"backup: delete {filename}", current.value.revision
        )
        if result.is_err():
            raise BackupError(f"Failed to delete backup {filename}: {result.error}")

    def cleanup_old_backups(self, trigger: BackupTrigger | str) -> list[str]:
        """
        Delete all but the newest backups for `trigger`. Returns the deleted
        filenames; individual failures are logged and skipped.
        """
        trigger = BackupTrigger(trigger)
        keep = RETENTION.get(trigger)
        if keep is None:
            return []

        candidates = [b for b in self.list_backups() if b.trigger == trigger]
        deleted = []
        for backup in candidates[keep:]:
            try:
                self.delete_backup(backup.filename, cleanup_commit_message(trigger.value))
            except BackupError as exc:
                self._event(f"Failed to delete backup {backup.filename}: {exc}", False)
                continue
            deleted.append(backup.filename)
            self._event(f"Cleaned up old backup: {backup.filename}", True)
        return deleted
