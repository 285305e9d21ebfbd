import os
import sys
import unittest
import uuid

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

USE_DB = os.getenv("USE_DB", "0") == "1"
DB_URL = os.getenv("DATABASE_URL")

if USE_DB and DB_URL:
    from app.db import get_db_stats, reset_db_stats
    from app.errors import ConcurrencyConflict, DuplicateEntityCode, NotFound
    from app.metadata import MetadataService
    from app.stores_db import DbGenericRecordStore, DbMetadataStore, ensure_schema


@unittest.skipUnless(USE_DB and DB_URL, "DB store tests require USE_DB=1 and DATABASE_URL")
class TestDbStores(unittest.TestCase):
    @classmethod
    def setUpClass(cls) -> None:
        ensure_schema()

    def setUp(self) -> None:
        self.records = DbGenericRecordStore()
        self.metadata = MetadataService(DbMetadataStore(), self.records)
        self.code = f"perf_{uuid.uuid4().hex[:8]}"

    def test_record_version_round_trip(self) -> None:
        record = self.records.create(self.code, '{"title": "A"}')
        try:
            reset_db_stats()
            updated = self.records.update(record["id"], '{"title": "B"}', expected_version=record["version"])
            self.assertEqual(get_db_stats().get("queries"), 1)
            self.assertEqual(updated["version"], record["version"] + 1)
            with self.assertRaises(ConcurrencyConflict):
                self.records.update(record["id"], '{"title": "C"}', expected_version=record["version"])
            self.assertEqual([r["id"] for r in self.records.list(self.code)], [record["id"]])
        finally:
            self.records.delete(record["id"])
        with self.assertRaises(NotFound):
            self.records.update(record["id"], "{}")

    def test_duplicate_code_and_fields(self) -> None:
        definition = self.metadata.create_definition({"name": "Perf", "entity_code": self.code})
        try:
            self.metadata.add_field(definition["id"], {"system_name": "title", "is_required": True})
            self.metadata.add_field(definition["id"], {"system_name": "price", "data_type": "Money"})
            with self.assertRaises(DuplicateEntityCode):
                self.metadata.create_definition({"name": "Again", "entity_code": self.code})
            fields = self.metadata.catalog.load_fields(self.code)
            self.assertEqual([(f["system_name"], f["sort_order"]) for f in fields], [("title", 1), ("price", 2)])
        finally:
            self.metadata.delete_definition(definition["id"])


if __name__ == "__main__":
    unittest.main()
