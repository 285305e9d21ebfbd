import os
import sys
import tempfile
import unittest
from pathlib import Path
from unittest import mock


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from app.attachments import UploadedFile, stage_files, web_to_disk
from app.errors import ConcurrencyConflict, NotFound, RecordValidationError
from app.metadata import MetadataService
from app.records import RecordService
from app.records_validation import FormSubmission
from app.stores import MemoryGenericRecordStore, MemoryMetadataStore
from medplat.property_json import bag_dumps


class RecordServiceTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.web_root = Path(self._tmp.name)
        self._env = mock.patch.dict(os.environ, {"MEDPLAT_WEB_ROOT": self._tmp.name})
        self._env.start()
        self.records = MemoryGenericRecordStore()
        self.metadata = MetadataService(MemoryMetadataStore(), self.records)
        self.service = RecordService(self.metadata, self.records)
        definition = self.metadata.create_definition({"name": "Test", "entity_code": "test"})
        self.metadata.add_field(definition["id"], {"system_name": "title", "label": "Заголовок", "is_required": True})
        self.metadata.add_field(definition["id"], {"system_name": "price", "data_type": "Money"})
        self.metadata.add_field(definition["id"], {"system_name": "attachment", "data_type": "File"})
        self.metadata.add_field(definition["id"], {"system_name": "docs", "data_type": "File", "is_array": True})
        self.metadata.add_field(definition["id"], {"system_name": "note", "label": "Примечание"})

    def tearDown(self) -> None:
        self._env.stop()
        self._tmp.cleanup()

    def _temp_dirs(self) -> list:
        temp_root = self.web_root / "uploads" / "temp"
        return list(temp_root.iterdir()) if temp_root.exists() else []


class TestCreate(RecordServiceTestCase):
    def test_create_finalizes_files(self) -> None:
        form = FormSubmission.from_pairs(
            [("title", "A"), ("price", "12,5"), ("attachment", UploadedFile("report.pdf", b"pdf"))]
        )
        record = self.service.create("test", form)
        props = record["properties"]
        self.assertEqual(props["title"], "A")
        self.assertEqual(props["price"], 12.5)
        self.assertEqual(props["attachment"], f"/uploads/test/{record['id']}/report.pdf")
        self.assertEqual(web_to_disk(props["attachment"]).read_bytes(), b"pdf")
        self.assertEqual(record["version"], 2)
        self.assertEqual(self._temp_dirs(), [])

    def test_two_same_named_files(self) -> None:
        form = FormSubmission.from_pairs(
            [("title", "A"), ("docs", UploadedFile("report.pdf", b"1")), ("docs", UploadedFile("report.pdf", b"2"))]
        )
        record = self.service.create("test", form)
        docs = record["properties"]["docs"]
        self.assertEqual(len(set(docs)), 2)
        self.assertEqual(sorted(web_to_disk(p).read_bytes() for p in docs), [b"1", b"2"])

    def test_without_files_single_write(self) -> None:
        record = self.service.create("test", FormSubmission.from_pairs([("title", "A")]))
        self.assertEqual(record["version"], 1)
        self.assertNotIn("attachment", record["properties"])

    def test_validation_errors_discard_staged_files(self) -> None:
        form = FormSubmission.from_pairs([("price", "abc"), ("attachment", UploadedFile("a.pdf", b"a"))])
        with self.assertRaises(RecordValidationError) as ctx:
            self.service.create("test", form)
        codes = [e["code"] for e in ctx.exception.errors]
        self.assertEqual(codes, ["MISSING_REQUIRED_FIELD", "INVALID_FIELD_VALUE"])
        self.assertEqual(self.records.count("test"), 0)
        self.assertEqual(self._temp_dirs(), [])

    def test_unknown_entity(self) -> None:
        with self.assertRaises(NotFound):
            self.service.create("missing", FormSubmission())

    def test_required_file_field(self) -> None:
        definition = self.metadata.get_definition_by_code("test")
        self.metadata.add_field(definition["id"], {"system_name": "consent", "data_type": "File", "is_required": True})
        with self.assertRaises(RecordValidationError) as ctx:
            self.service.create("test", FormSubmission.from_pairs([("title", "A")]))
        self.assertEqual([e["path"] for e in ctx.exception.errors], ["consent"])

    def test_scalar_file_field_keeps_single_upload(self) -> None:
        form = FormSubmission.from_pairs(
            [("title", "A"), ("attachment", UploadedFile("one.pdf", b"1")), ("attachment", UploadedFile("two.pdf", b"2"))]
        )
        record = self.service.create("test", form)
        self.assertEqual(record["properties"]["attachment"], f"/uploads/test/{record['id']}/one.pdf")
        folder = self.web_root / "uploads" / "test" / record["id"]
        self.assertEqual([p.name for p in folder.iterdir()], ["one.pdf"])
        self.assertEqual(self._temp_dirs(), [])

    def test_text_with_traversal_path_moves_nothing(self) -> None:
        secret = self.web_root / "secret.txt"
        secret.write_bytes(b"s")
        form = FormSubmission.from_pairs([("title", "A"), ("note", "/uploads/temp/../../secret.txt")])
        record = self.service.create("test", form)
        self.assertEqual(record["properties"]["note"], "/uploads/temp/../../secret.txt")
        self.assertEqual(record["version"], 1)
        self.assertEqual(secret.read_bytes(), b"s")
        self.assertFalse((self.web_root / "uploads" / "test").exists())

    def test_text_holding_staged_path_is_not_finalized(self) -> None:
        paths, _ = stage_files({"system_name": "attachment"}, [UploadedFile("a.pdf", b"a")])
        record = self.service.create("test", FormSubmission.from_pairs([("title", "A"), ("note", paths[0])]))
        self.assertEqual(record["properties"]["note"], paths[0])
        self.assertEqual(web_to_disk(paths[0]).read_bytes(), b"a")

    def test_money_keeps_exact_value(self) -> None:
        form = FormSubmission.from_pairs([("title", "A"), ("price", "12345678901234567,89")])
        record = self.service.create("test", form)
        self.assertEqual(record["properties"]["price"], "12345678901234567.89")


class TestUpdate(RecordServiceTestCase):
    def _create(self) -> dict:
        form = FormSubmission.from_pairs([("title", "A"), ("attachment", UploadedFile("report.pdf", b"v1"))])
        return self.service.create("test", form)

    def test_edit_keeps_omitted_values_and_files(self) -> None:
        record = self._create()
        updated = self.service.update(record["id"], FormSubmission.from_pairs([("title", "B")]))
        self.assertEqual(updated["properties"]["title"], "B")
        self.assertEqual(updated["properties"]["attachment"], record["properties"]["attachment"])

    def test_edit_without_title_uses_stored_value(self) -> None:
        record = self._create()
        updated = self.service.update(record["id"], FormSubmission.from_pairs([("price", "3")]))
        self.assertEqual(updated["properties"]["title"], "A")
        self.assertEqual(updated["properties"]["price"], 3)

    def test_blank_clears_optional(self) -> None:
        record = self.service.create("test", FormSubmission.from_pairs([("title", "A"), ("price", "5")]))
        updated = self.service.update(record["id"], FormSubmission.from_pairs([("price", "")]))
        self.assertNotIn("price", updated["properties"])

    def test_new_upload_replaces_and_collides(self) -> None:
        record = self._create()
        form = FormSubmission.from_pairs([("attachment", UploadedFile("report.pdf", b"v2"))])
        updated = self.service.update(record["id"], form)
        path = updated["properties"]["attachment"]
        self.assertNotEqual(path, record["properties"]["attachment"])
        self.assertRegex(path, r"/report_[0-9a-f]{4}\.pdf$")
        self.assertEqual(web_to_disk(path).read_bytes(), b"v2")

    def test_stale_version_conflicts(self) -> None:
        record = self._create()
        self.service.update(record["id"], FormSubmission.from_pairs([("title", "B")]))
        with self.assertRaises(ConcurrencyConflict):
            self.service.update(record["id"], FormSubmission.from_pairs([("title", "C")]), expected_version=record["version"])
        self.assertEqual(self.service.get(record["id"])["properties"]["title"], "B")

    def test_conflict_during_write_discards_new_files(self) -> None:
        record = self._create()
        form = FormSubmission.from_pairs([("attachment", UploadedFile("late.pdf", b"x"))])
        real_update = self.records.update

        def racing_update(record_id, properties_json, expected_version=None):
            real_update(record_id, self.records.get(record_id)["properties_json"])
            return real_update(record_id, properties_json, expected_version=expected_version)

        with mock.patch.object(self.records, "update", side_effect=racing_update):
            with self.assertRaises(ConcurrencyConflict):
                self.service.update(record["id"], form)
        self.assertFalse((self.web_root / "uploads" / "test" / record["id"] / "late.pdf").exists())

    def test_conflict_keeps_files_the_stored_row_references(self) -> None:
        paths, _ = stage_files({"system_name": "attachment"}, [UploadedFile("a.pdf", b"a")])
        record = self.records.create("test", bag_dumps({"title": "A", "attachment": paths[0]}))
        real_update = self.records.update

        def racing_update(record_id, properties_json, expected_version=None):
            real_update(record_id, self.records.get(record_id)["properties_json"])
            return real_update(record_id, properties_json, expected_version=expected_version)

        with mock.patch.object(self.records, "update", side_effect=racing_update):
            with self.assertRaises(ConcurrencyConflict):
                self.service.update(record["id"], FormSubmission.from_pairs([("title", "B")]))
        self.service.reconcile_staged_records(max_age_hours=24)
        stored = self.service.get(record["id"])["properties"]["attachment"]
        self.assertEqual(stored, f"/uploads/test/{record['id']}/a.pdf")
        self.assertEqual(web_to_disk(stored).read_bytes(), b"a")

    def test_entity_mismatch_is_not_found(self) -> None:
        record = self._create()
        with self.assertRaises(NotFound):
            self.service.update(record["id"], FormSubmission(), entity_code="Patient")


class TestDeleteAndList(RecordServiceTestCase):
    def test_delete_removes_row_and_files(self) -> None:
        form = FormSubmission.from_pairs([("title", "A"), ("attachment", UploadedFile("a.pdf", b"a"))])
        record = self.service.create("test", form)
        self.service.delete(record["id"], entity_code="test")
        self.assertIsNone(self.records.get(record["id"]))
        self.assertFalse((self.web_root / "uploads" / "test" / record["id"]).exists())
        with self.assertRaises(NotFound):
            self.service.delete(record["id"])

    def test_list_and_render(self) -> None:
        self.service.create("test", FormSubmission.from_pairs([("title", "A")]))
        second = self.service.create("test", FormSubmission.from_pairs([("title", "B")]))
        listed = self.service.list("test")
        self.assertEqual(listed[0]["id"], second["id"])
        values = {v["system_name"]: v for v in listed[0]["values"]}
        self.assertEqual(values["title"]["label"], "Заголовок")
        self.assertEqual(values["title"]["value"], "B")
        self.assertIsNone(values["attachment"]["value"])
        self.assertTrue(values["docs"]["is_array"])


class TestReconcile(RecordServiceTestCase):
    def test_repairs_record_left_with_staged_path(self) -> None:
        paths, _ = stage_files({"system_name": "attachment"}, [UploadedFile("a.pdf", b"a")])
        record = self.records.create("test", bag_dumps({"title": "A", "attachment": paths[0]}))
        result = self.service.reconcile_staged_records(max_age_hours=24)
        self.assertEqual(result["repaired"], 1)
        stored = self.service.get(record["id"])["properties"]["attachment"]
        self.assertEqual(stored, f"/uploads/test/{record['id']}/a.pdf")

    def test_traversal_path_in_file_field_left_alone(self) -> None:
        secret = self.web_root / "secret.txt"
        secret.write_bytes(b"s")
        bag = {"title": "A", "attachment": "/uploads/temp/../../secret.txt"}
        record = self.records.create("test", bag_dumps(bag))
        result = self.service.reconcile_staged_records(max_age_hours=24)
        self.assertEqual(result["repaired"], 0)
        self.assertEqual(self.records.get(record["id"])["version"], 1)
        self.assertEqual(secret.read_bytes(), b"s")

    def test_sweeps_orphans(self) -> None:
        stage_files({"system_name": "attachment"}, [UploadedFile("orphan.pdf", b"o")])
        result = self.service.reconcile_staged_records(max_age_hours=0)
        self.assertEqual(result["swept"], 1)
        self.assertEqual(self._temp_dirs(), [])


if __name__ == "__main__":
    unittest.main()
