import json
import os
import tempfile
import threading
import unittest

from replication.backups import BackupManager
from replication.reconciliation import (
    STATUS_ERROR,
    STATUS_NO_CHANGE,
    STATUS_SKIPPED,
    STATUS_UPDATED,
    STATUS_WOULD_UPDATE,
    ReconciliationInProgressError,
    ReconciliationRunner,
)
from replication.records import InMemoryRecordStore
from replication.sync import SyncOrchestrator
from replication.versioned_store import InMemoryVersionedStore
from testing_utils import ALL_VASA_IDS, GUSTAV_II_ADOLF, VASA_MONARCHS, StepClock, member

DATA_PATH = "functions/data/family-members.json"


class FailingUpdateStore(InMemoryRecordStore):
    def __init__(self, *args, fail_for=(), **kwargs):
        super().__init__(*args, **kwargs)
        self.fail_for = set(fail_for)

    def update(self, external_id, patch):
        if external_id in self.fail_for:
            raise RuntimeError(f"write rejected for {external_id}")
        return super().update(external_id, patch)


class ReconciliationRunnerTests(unittest.TestCase):
    def setUp(self):
        self.records = InMemoryRecordStore(
            records=[
                member("0", "Lars Tygesson", 1515, 1559, ["gustav-i-vasa"]),
                member("0.1", "Tyge Larsson", 1545, 1625, ["gustav-i-vasa", "erik-xiv"]),
            ],
            monarchs=VASA_MONARCHS + [GUSTAV_II_ADOLF],
        )
        self.versioned = InMemoryVersionedStore()
        clock = StepClock()
        self.backups = BackupManager(self.versioned, clock=clock)
        self.sync = SyncOrchestrator(
            self.versioned, data_path=DATA_PATH, autostart=False, clock=clock
        )
        self.runner = ReconciliationRunner(
            self.records, self.records, backups=self.backups, sync=self.sync, clock=clock
        )

    def test_dry_run_reports_without_writing(self):
        report = self.runner.run(dry_run=True)

        self.assertTrue(report.dry_run)
        self.assertEqual(report.total, 2)
        self.assertEqual(report.processed, 2)
        self.assertEqual(report.updated, 1)
        self.assertIsNone(report.backup_filename)

        lars, tyge = report.detailed_report
        self.assertEqual(lars.status, STATUS_NO_CHANGE)
        self.assertEqual(tyge.status, STATUS_WOULD_UPDATE)
        self.assertEqual(tyge.old_monarch_count, 2)
        self.assertEqual(tyge.new_monarch_count, 6)
        self.assertEqual(tyge.monarch_ids, ALL_VASA_IDS + ["gustav-ii-adolf"])

        self.assertEqual(self.records.get("0.1")["monarchIds"], ["gustav-i-vasa", "erik-xiv"])
        self.assertEqual(self.versioned.files, {})

    def test_member_without_birth_year_is_skipped(self):
        self.records.create(member("9", "Unknown", None, 1600, ["karl-ix"]))

        report = self.runner.run(dry_run=True)

        skipped = [e for e in report.detailed_report if e.member_id == "9"][0]
        self.assertEqual(skipped.status, STATUS_SKIPPED)
        self.assertEqual(report.total, 3)
        self.assertEqual(report.processed, 2)

    def test_apply_backs_up_then_updates_and_syncs(self):
        report = self.runner.run(dry_run=False)

        self.assertFalse(report.dry_run)
        self.assertEqual(report.updated, 1)
        self.assertEqual(report.detailed_report[1].status, STATUS_UPDATED)
        self.assertTrue(report.backup_filename.endswith("_auto-bulk.json"))

        backup_content, _ = self.versioned.files["backups/" + report.backup_filename]
        self.assertEqual(
            json.loads(backup_content)[1]["monarchIds"], ["gustav-i-vasa", "erik-xiv"]
        )
        self.assertEqual(
            self.records.get("0.1")["monarchIds"], ALL_VASA_IDS + ["gustav-ii-adolf"]
        )

        messages = [c[2] for c in self.versioned.commits]
        self.assertEqual(messages[0], "backup: create auto-bulk backup (2 members)")
        self.assertEqual(messages[-1], "[data-only] admin: bulk update 1 family members")
        synced, _ = self.versioned.files[DATA_PATH]
        self.assertEqual(json.loads(synced), self.records.get_all())

    def test_dry_run_predicts_apply(self):
        self.records.create(member("0.2", "Olof Larsson", 1550, 1610))
        self.records.create(member("9", "Unknown", None, 1600, ["karl-ix"]))

        dry = self.runner.run(dry_run=True)
        applied = self.runner.run(dry_run=False)

        def ids_with(report, status):
            return {e.member_id for e in report.detailed_report if e.status == status}

        self.assertEqual(dry.updated, applied.updated)
        self.assertEqual(dry.updated, 2)
        self.assertEqual((dry.processed, dry.total), (applied.processed, applied.total))
        self.assertEqual(ids_with(dry, STATUS_WOULD_UPDATE), ids_with(applied, STATUS_UPDATED))
        self.assertEqual(ids_with(dry, STATUS_WOULD_UPDATE), {"0.1", "0.2"})
        self.assertEqual(ids_with(dry, STATUS_NO_CHANGE), ids_with(applied, STATUS_NO_CHANGE))
        self.assertEqual(ids_with(dry, STATUS_SKIPPED), ids_with(applied, STATUS_SKIPPED))
        self.assertEqual(ids_with(applied, STATUS_ERROR), set())
        self.assertEqual(
            [(e.member_id, e.monarch_ids) for e in dry.detailed_report],
            [(e.member_id, e.monarch_ids) for e in applied.detailed_report],
        )

    def test_second_apply_changes_nothing(self):
        self.runner.run(dry_run=False)
        commits = len(self.versioned.commits)

        report = self.runner.run(dry_run=False)

        self.assertEqual(report.updated, 0)
        self.assertIsNone(report.backup_filename)
        self.assertTrue(all(e.status == STATUS_NO_CHANGE for e in report.detailed_report))
        self.assertEqual(len(self.versioned.commits), commits)

    def test_stored_order_does_not_matter(self):
        self.records.update("0.1", {"monarchIds": list(reversed(ALL_VASA_IDS + ["gustav-ii-adolf"]))})

        report = self.runner.run(dry_run=True)

        self.assertEqual(report.updated, 0)
        self.assertEqual(report.detailed_report[1].status, STATUS_NO_CHANGE)

    def test_backup_failure_falls_back_to_local_snapshot(self):
        self.versioned.write_failures = 1
        with tempfile.TemporaryDirectory() as tmp:
            runner = ReconciliationRunner(
                self.records,
                self.records,
                backups=self.backups,
                sync=self.sync,
                local_backup_dir=tmp,
                clock=StepClock(),
            )

            report = runner.run(dry_run=False)

            self.assertIsNone(report.backup_filename)
            self.assertEqual(report.updated, 1)
            snapshot = runner.last_local_snapshot
            self.assertIsNotNone(snapshot)
            self.assertEqual(snapshot.records[1]["monarchIds"], ["gustav-i-vasa", "erik-xiv"])
            self.assertTrue(os.path.exists(snapshot.path))
            with open(snapshot.path, encoding="utf-8") as f:
                self.assertEqual(len(json.load(f)), 2)

    def test_without_backup_manager_keeps_in_memory_snapshot(self):
        runner = ReconciliationRunner(self.records, self.records)

        report = runner.run(dry_run=False)

        self.assertEqual(report.updated, 1)
        self.assertIsNone(runner.last_local_snapshot.path)
        self.assertEqual(len(runner.last_local_snapshot.records), 2)

    def test_write_error_is_reported_per_member(self):
        records = FailingUpdateStore(
            records=self.records.get_all(),
            monarchs=self.records.get_all_monarchs(),
            fail_for={"0.1"},
        )
        runner = ReconciliationRunner(records, records, backups=self.backups, sync=self.sync)

        report = runner.run(dry_run=False)

        entry = report.detailed_report[1]
        self.assertEqual(entry.status, STATUS_ERROR)
        self.assertIn("write rejected", entry.reason)
        self.assertEqual(report.updated, 0)
        self.assertNotIn(DATA_PATH, self.versioned.files)

    def test_concurrent_run_is_rejected(self):
        entered = threading.Event()
        release = threading.Event()

        class SlowStore(InMemoryRecordStore):
            def get_all(self):
                entered.set()
                release.wait(5)
                return super().get_all()

        slow = SlowStore(records=self.records.get_all(), monarchs=VASA_MONARCHS)
        runner = ReconciliationRunner(slow, slow)
        worker = threading.Thread(target=runner.run)
        worker.start()
        try:
            self.assertTrue(entered.wait(5))
            with self.assertRaises(ReconciliationInProgressError):
                runner.run()
        finally:
            release.set()
            worker.join(5)

        self.assertEqual(runner.run().total, 2)


if __name__ == "__main__":
    unittest.main()
