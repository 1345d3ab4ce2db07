import json
import os
import tempfile
import unittest

from replication.records import (
    DuplicateRecordError,
    InMemoryRecordStore,
    RecordNotFoundError,
    SqlRecordStore,
    load_seed_documents,
)
from testing_utils import GUSTAV_II_ADOLF, VASA_MONARCHS, member


class RecordStoreContract:
    """Behaviour shared by every record store implementation."""

    def make_store(self):
        raise NotImplementedError

    def setUp(self):
        self.store = self.make_store()
        self.store.create(member("0", "Lars Tygesson", 1515, 1559))
        self.store.create(member("0.1", "Tyge Larsson", 1545, 1625, notes="Ryttmästare"))

    def test_create_returns_full_dataset_in_insertion_order(self):
        dataset = self.store.create(member("0.1.1", "Lars Tygesson", 1580, 1640))
        self.assertEqual([r["externalId"] for r in dataset], ["0", "0.1", "0.1.1"])

    def test_create_duplicate_raises(self):
        with self.assertRaises(DuplicateRecordError):
            self.store.create(member("0", "Someone", 1500, 1550))

    def test_create_without_id_raises(self):
        with self.assertRaises(ValueError):
            self.store.create({"name": "Nameless"})

    def test_update_merges_patch_and_keeps_unknown_fields(self):
        dataset = self.store.update("0.1", {"monarchIds": ["erik-xiv"], "externalId": "x"})

        tyge = dataset[1]
        self.assertEqual(tyge["externalId"], "0.1")
        self.assertEqual(tyge["monarchIds"], ["erik-xiv"])
        self.assertEqual(tyge["notes"], "Ryttmästare")
        self.assertEqual(self.store.get("0.1")["monarchIds"], ["erik-xiv"])

    def test_update_and_delete_missing_raise(self):
        with self.assertRaises(RecordNotFoundError):
            self.store.update("404", {"name": "x"})
        with self.assertRaises(RecordNotFoundError):
            self.store.delete("404")

    def test_delete(self):
        dataset = self.store.delete("0")
        self.assertEqual([r["externalId"] for r in dataset], ["0.1"])
        self.assertIsNone(self.store.get("0"))

    def test_bulk_upsert_counts(self):
        dataset, updated, created = self.store.bulk_upsert(
            [
                {"externalId": "0", "died": 1560},
                member("0.2", "Olof Larsson", 1550, 1610),
            ]
        )
        self.assertEqual((updated, created), (1, 1))
        self.assertEqual(len(dataset), 3)
        self.assertEqual(self.store.get("0")["died"], 1560)
        self.assertEqual(self.store.get("0")["name"], "Lars Tygesson")

    def test_replace_all(self):
        dataset = self.store.replace_all([member("7", "Only One", 1600, 1650)])
        self.assertEqual(dataset, [member("7", "Only One", 1600, 1650)])
        self.assertIsNone(self.store.get("0"))

    def test_returned_documents_are_copies(self):
        self.store.get_all()[0]["name"] = "changed"
        self.assertEqual(self.store.get("0")["name"], "Lars Tygesson")


class InMemoryRecordStoreTests(RecordStoreContract, unittest.TestCase):
    def make_store(self):
        return InMemoryRecordStore(monarchs=VASA_MONARCHS)

    def test_monarchs(self):
        self.store.add_monarch(GUSTAV_II_ADOLF)
        self.assertEqual(self.store.get_all_monarchs(), VASA_MONARCHS + [GUSTAV_II_ADOLF])

    def test_reset(self):
        self.store.reset()
        self.assertEqual(self.store.get_all(), [])
        self.assertEqual(self.store.get_all_monarchs(), [])


class SqlRecordStoreTests(RecordStoreContract, unittest.TestCase):
    def make_store(self):
        store = SqlRecordStore("sqlite+pysqlite:///:memory:")
        for monarch in VASA_MONARCHS:
            store.add_monarch(monarch)
        return store

    def test_monarchs_keep_insertion_order(self):
        self.store.add_monarch(GUSTAV_II_ADOLF)
        self.assertEqual(
            [m["id"] for m in self.store.get_all_monarchs()],
            [m["id"] for m in VASA_MONARCHS] + ["gustav-ii-adolf"],
        )

    def test_add_monarch_replaces_existing(self):
        changed = dict(VASA_MONARCHS[0], name="Gustav Eriksson")
        self.store.add_monarch(changed)
        monarchs = self.store.get_all_monarchs()
        self.assertEqual(len(monarchs), len(VASA_MONARCHS))
        self.assertEqual(monarchs[0]["name"], "Gustav Eriksson")

    def test_requires_url(self):
        with self.assertRaises(ValueError):
            SqlRecordStore("")


class LoadSeedDocumentsTests(unittest.TestCase):
    def _write(self, text):
        handle = tempfile.NamedTemporaryFile("w", suffix=".json", delete=False, encoding="utf-8")
        with handle:
            handle.write(text)
        self.addCleanup(os.remove, handle.name)
        return handle.name

    def test_camel_case_documents_pass_through(self):
        docs = [member("0", "Lars Tygesson", 1515, 1559, ["gustav-i-vasa"])]
        path = self._write(json.dumps(docs))
        self.assertEqual(load_seed_documents(path), docs)

    def test_flat_export_rows_are_converted(self):
        path = self._write(
            '[{"ID": 1.1, "Name": "Per", "Born": 1650.0, "Died": 9999, '
            '"Father": NaN, "Sex": "Male", "DiedYoung": true}]'
        )

        (doc,) = load_seed_documents(path)

        self.assertEqual(doc["externalId"], "1.1")
        self.assertEqual(doc["born"], 1650)
        self.assertIsNone(doc["died"])
        self.assertIsNone(doc["father"])
        self.assertEqual(doc["biologicalSex"], "Male")
        self.assertTrue(doc["diedYoung"])
        self.assertEqual(doc["monarchDuringLife"], [])

    def test_non_array_rejected(self):
        path = self._write('{"externalId": "0"}')
        with self.assertRaises(ValueError):
            load_seed_documents(path)


if __name__ == "__main__":
    unittest.main()
