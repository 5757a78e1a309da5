"""
Tests for the record store and the legacy migration.
"""
import json
import os
from datetime import date

import pytest

from error_handlers import RecordNotFoundError, StorageError
from layer4_records import ExemptionRecord
from storage import (
    LEGACY_KEY,
    JsonRecordStore,
    KeyValueStore,
    delete_record,
    migrate_legacy,
    upsert_record,
)


def make_record(record_id, last_name="DUPONT", days=3):
    return ExemptionRecord(
        id=record_id,
        last_name=last_name,
        first_name="Marie",
        student_class="602",
        received_at=date(2024, 3, 1),
        start_date=date(2024, 3, 1),
        duration_days=days,
    )


@pytest.fixture
def store(tmp_path):
    return JsonRecordStore(str(tmp_path / "data" / "exemptions.json"))


@pytest.fixture
def kv_store(tmp_path):
    return KeyValueStore(str(tmp_path / "data" / "local_storage.json"))


class TestJsonRecordStore:
    """Test the JSON record store."""

    def test_empty_when_missing(self, store):
        """Test a missing file is an empty collection."""
        assert store.list() == []

    def test_replace_all_and_list(self, store):
        """Test records survive a write and read."""
        records = [make_record("2"), make_record("1", "MARTIN")]
        store.replace_all(records)

        assert store.list() == records
        assert not os.path.exists(store.path + ".tmp")

    def test_file_format(self, store):
        """Test the stored form uses the camelCase record keys."""
        store.replace_all([make_record("1")])
        with open(store.path, encoding='utf-8') as f:
            data = json.load(f)
        assert data[0]["lastName"] == "DUPONT"
        assert data[0]["endDate"] == "2024-03-04"

    def test_clear(self, store):
        """Test clear empties the store."""
        store.replace_all([make_record("1")])
        store.clear()
        assert store.list() == []

    def test_corrupt_file(self, store):
        """Test an unreadable file loads as empty."""
        os.makedirs(os.path.dirname(store.path))
        with open(store.path, 'w', encoding='utf-8') as f:
            f.write("{not json")
        assert store.list() == []

    def test_bad_entries_skipped(self, store):
        """Test entries without an id are skipped."""
        os.makedirs(os.path.dirname(store.path))
        with open(store.path, 'w', encoding='utf-8') as f:
            json.dump([{"lastName": "NOID"}, make_record("1").to_dict()], f)
        assert [r.id for r in store.list()] == ["1"]

    def test_out_of_range_duration_skipped(self, store):
        """Test entries with impossible durations are skipped instead of breaking the load."""
        huge = make_record("2").to_dict()
        huge["durationDays"] = 99999999
        endless = make_record("3").to_dict()
        endless["durationDays"] = float('inf')
        os.makedirs(os.path.dirname(store.path))
        with open(store.path, 'w', encoding='utf-8') as f:
            json.dump([huge, endless, make_record("1").to_dict()], f)
        assert [r.id for r in store.list()] == ["1"]

    def test_write_failure(self, tmp_path):
        """Test write failures raise StorageError."""
        blocker = tmp_path / "blocker"
        blocker.write_text("a file, not a directory")
        store = JsonRecordStore(str(blocker / "exemptions.json"))

        with pytest.raises(StorageError) as exc_info:
            store.replace_all([make_record("1")])
        assert exc_info.value.error_code == "STORAGE_WRITE_FAILED"


class TestRecordHelpers:
    """Test upsert and delete by id."""

    def test_upsert_new_goes_first(self):
        """Test new records are prepended."""
        records = upsert_record([make_record("1")], make_record("2"))
        assert [r.id for r in records] == ["2", "1"]

    def test_upsert_replaces_in_place(self):
        """Test an existing id is replaced at its position."""
        records = [make_record("2"), make_record("1")]
        updated = upsert_record(records, make_record("1", days=9))
        assert [r.id for r in updated] == ["2", "1"]
        assert updated[1].duration_days == 9
        assert records[1].duration_days == 3

    def test_delete(self):
        """Test delete removes by id and rejects unknown ids."""
        records = [make_record("2"), make_record("1")]
        assert [r.id for r in delete_record(records, "2")] == ["1"]
        with pytest.raises(RecordNotFoundError):
            delete_record(records, "3")


class TestLegacyMigration:
    """Test the one-time legacy import."""

    def test_migrates_once(self, kv_store, store):
        """Test running the migration twice does not duplicate records."""
        kv_store.set(LEGACY_KEY, json.dumps([make_record("1700000000000").to_dict()]))

        assert migrate_legacy(kv_store, store) == 1
        assert kv_store.get(LEGACY_KEY) is None

        assert migrate_legacy(kv_store, store) == 0
        assert [r.id for r in store.list()] == ["1700000000000"]

    def test_keeps_order_and_existing_records(self, kv_store, store):
        """Test legacy order is preserved and ids already stored are replaced."""
        store.replace_all([make_record("1", "OLD")])
        kv_store.set(LEGACY_KEY, json.dumps([
            make_record("3").to_dict(),
            make_record("1", "NEW").to_dict(),
        ]))

        migrate_legacy(kv_store, store)

        records = store.list()
        assert [r.id for r in records] == ["3", "1"]
        assert records[1].last_name == "NEW"

    def test_legacy_end_date_recomputed(self, kv_store, store):
        """Test legacy blobs with stale end dates and photos load cleanly."""
        legacy = make_record("5").to_dict()
        legacy["endDate"] = "2020-01-01T00:00:00.000Z"
        legacy["photoBase64"] = "/9j/4AAQ"
        kv_store.set(LEGACY_KEY, json.dumps([legacy]))

        migrate_legacy(kv_store, store)

        record = store.list()[0]
        assert record.end_date == date(2024, 3, 4)
        assert record.photo == "/9j/4AAQ"

    def test_corrupt_blob_is_dropped(self, kv_store, store):
        """Test an unreadable blob imports nothing and is removed."""
        kv_store.set(LEGACY_KEY, "{oops")
        assert migrate_legacy(kv_store, store) == 0
        assert kv_store.get(LEGACY_KEY) is None
        assert store.list() == []

    def test_failed_write_keeps_legacy_entry(self, tmp_path, kv_store):
        """Test the legacy entry survives when the record store cannot be written."""
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        broken_store = JsonRecordStore(str(blocker / "exemptions.json"))
        kv_store.set(LEGACY_KEY, json.dumps([make_record("1").to_dict()]))

        with pytest.raises(StorageError):
            migrate_legacy(kv_store, broken_store)
        assert kv_store.get(LEGACY_KEY) is not None
