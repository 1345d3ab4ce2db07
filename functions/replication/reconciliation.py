"""
Recompute every family member's `monarchIds` from reign overlaps.

A dry run reports what would change; an apply run first snapshots the
dataset (remote backup, or a local copy if that fails) and then writes the
changed associations back through the record store.
"""

from __future__ import annotations

import copy
import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Callable, List, Optional

from replication.backups import BackupError, BackupManager
from replication.records import MonarchStore, RecordStore
from replication.temporal import get_overlapping
from shared.types import BackupTrigger, FamilyMember, Monarch, SyncKind

if TYPE_CHECKING:
    from replication.sync import SyncOrchestrator

logger = logging.getLogger(__name__)

STATUS_UPDATED = "updated"
STATUS_WOULD_UPDATE = "would_update"
STATUS_NO_CHANGE = "no_change"
STATUS_SKIPPED = "skipped"
STATUS_ERROR = "error"


class ReconciliationInProgressError(RuntimeError):
    pass


@dataclass
class MemberReconciliation:
    member_id: str
    member_name: Optional[str]
    status: str
    old_monarch_count: Optional[int] = None
    new_monarch_count: Optional[int] = None
    monarch_ids: Optional[List[str]] = None
    reason: Optional[str] = None

    def as_dict(self) -> dict:
        return {
            "member_id": self.member_id,
            "member_name": self.member_name,
            "status": self.status,
            "old_monarch_count": self.old_monarch_count,
            "new_monarch_count": self.new_monarch_count,
            "monarch_ids": self.monarch_ids,
            "reason": self.reason,
        }


@dataclass
class ReconciliationReport:
    updated: int
    processed: int
    total: int
    dry_run: bool
    detailed_report: List[MemberReconciliation] = field(default_factory=list)
    message: str = ""
    backup_filename: Optional[str] = None

    def as_dict(self) -> dict:
        return {
            "updated": self.updated,
            "processed": self.processed,
            "total": self.total,
            "dry_run": self.dry_run,
            "detailed_report": [m.as_dict() for m in self.detailed_report],
            "message": self.message,
            "backup_filename": self.backup_filename,
        }


@dataclass
class LocalSnapshot:
    taken_at: datetime
    records: list
    path: Optional[str] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _same_association(stored: List[str], computed: List[str]) -> bool:
    # Reference order isn't stable, so compare as sorted id lists.
    return sorted(stored) == sorted(computed)


class ReconciliationRunner:
    def __init__(
        self,
        records: RecordStore,
        monarchs: MonarchStore,
        *,
        backups: Optional[BackupManager] = None,
        sync: Optional["SyncOrchestrator"] = None,
        local_backup_dir: Optional[str] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.records = records
        self.monarchs = monarchs
        self.backups = backups
        self.sync = sync
        self.local_backup_dir = local_backup_dir
        self.clock = clock
        self.last_local_snapshot: Optional[LocalSnapshot] = None
        self._lock = threading.Lock()

    def run(self, dry_run: bool = True) -> ReconciliationReport:
        if not self._lock.acquire(blocking=False):
            raise ReconciliationInProgressError("A reconciliation run is already in progress")
        try:
            return self._run(dry_run)
        finally:
            self._lock.release()

    def _run(self, dry_run: bool) -> ReconciliationReport:
        dataset = self.records.get_all()
        monarchs = [Monarch.from_document(doc) for doc in self.monarchs.get_all_monarchs()]

        entries: List[MemberReconciliation] = []
        pending: list[tuple[MemberReconciliation, List[str]]] = []
        for doc in dataset:
            member = FamilyMember.from_document(doc)
            if member.born is None:
                entries.append(
                    MemberReconciliation(
                        member_id=member.external_id,
                        member_name=member.name,
                        status=STATUS_SKIPPED,
                        reason="missing birth year",
                    )
                )
                continue

            new_ids = [m.id for m in get_overlapping(member.born, member.died, monarchs)]
            if _same_association(member.monarch_ids, new_ids):
                entry = MemberReconciliation(
                    member_id=member.external_id,
                    member_name=member.name,
                    status=STATUS_NO_CHANGE,
                    old_monarch_count=len(member.monarch_ids),
                    new_monarch_count=len(new_ids),
                    monarch_ids=new_ids,
                )
                entries.append(entry)
                continue

            entry = MemberReconciliation(
                member_id=member.external_id,
                member_name=member.name,
                status=STATUS_WOULD_UPDATE if dry_run else STATUS_UPDATED,
                old_monarch_count=len(member.monarch_ids),
                new_monarch_count=len(new_ids),
                monarch_ids=new_ids,
            )
            entries.append(entry)
            pending.append((entry, new_ids))

        backup_filename = None
        if not dry_run and pending:
            backup_filename = self._snapshot_before_apply(dataset)
            for entry, new_ids in pending:
                try:
                    self.records.update(entry.member_id, {"monarchIds": new_ids})
                except Exception as exc:
                    logger.exception("Failed to update monarchIds for %s", entry.member_id)
                    entry.status = STATUS_ERROR
                    entry.reason = str(exc)

        updated = sum(1 for e in entries if e.status in (STATUS_UPDATED, STATUS_WOULD_UPDATE))
        processed = sum(1 for e in entries if e.status != STATUS_SKIPPED)
        report = ReconciliationReport(
            updated=updated,
            processed=processed,
            total=len(dataset),
            dry_run=dry_run,
            detailed_report=entries,
            backup_filename=backup_filename,
        )
        if dry_run:
            report.message = (
                f"Dry run: {updated} of {processed} members would be updated "
                f"({len(dataset) - processed} skipped)"
            )
        else:
            report.message = (
                f"Updated {updated} of {processed} members "
                f"({len(dataset) - processed} skipped)"
            )
        logger.info(report.message)

        if not dry_run and updated and self.sync is not None:
            self.sync.sync(SyncKind.BULK, {"count": updated}, self.records.get_all())
        return report

    def _snapshot_before_apply(self, dataset: list[dict]) -> Optional[str]:
        """Back up the dataset; fall back to a local copy. Never raises."""
        if self.backups is not None:
            try:
                metadata = self.backups.create_backup(dataset, BackupTrigger.AUTO_BULK)
                return metadata.filename
            except BackupError as exc:
                logger.warning("Pre-reconciliation backup failed, using local snapshot: %s", exc)
        self.last_local_snapshot = self._local_snapshot(dataset)
        return None

    def _local_snapshot(self, dataset: list[dict]) -> LocalSnapshot:
        snapshot = LocalSnapshot(taken_at=self.clock(), records=copy.deepcopy(dataset))
        if self.local_backup_dir:
            filename = f"family-data_{snapshot.taken_at.strftime('%Y-%m-%d_%H-%M-%S')}_local.json"
            path = Path(self.local_backup_dir) / filename
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                path.write_text(json.dumps(dataset, indent=2, ensure_ascii=False), encoding="utf-8")
                snapshot.path = str(path)
            except OSError as exc:
                logger.warning("Could not write local snapshot %s: %s", path, exc)
        return snapshot
