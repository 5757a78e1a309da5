"""
Storage — Persistent record store
Component: JSON file stores
Responsibility: Keep the exemption collection across restarts

The collection is written whole on every change; the last writer wins.
"""
import os
import json
import logging

from error_handlers import RecordNotFoundError, StorageError
from layer4_records.records import ExemptionRecord

logger = logging.getLogger(__name__)


def _ensure_parent(path):
    directory = os.path.dirname(path)
    if directory and not os.path.exists(directory):
        os.makedirs(directory)
        logger.info(f"Created directory: {directory}")


def _write_json_atomic(path, data):
    """Write to a sibling temp file, then rename over the target"""
    _ensure_parent(path)
    tmp_path = path + ".tmp"
    with open(tmp_path, 'w', encoding='utf-8') as f:
        json.dump(data, f, indent=2, ensure_ascii=False)
    os.replace(tmp_path, path)


class JsonRecordStore:
    """Exemption records kept as one JSON array on disk"""

    def __init__(self, path):
        self.path = path
        logger.info(f"JsonRecordStore initialized")
        logger.debug(f"  Records file: {path}")

    def list(self):
        """
        Load every stored record

        Entries that cannot be read are skipped with a warning; an unreadable
        file yields an empty collection.

        Returns:
            list: ExemptionRecord objects in stored order
        """
        if not os.path.exists(self.path):
            return []

        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                raw = json.load(f)
        except (OSError, ValueError) as e:
            logger.error(f"Could not read records from {self.path}: {e}")
            return []

        if not isinstance(raw, list):
            logger.error(f"Records file {self.path} does not hold a list")
            return []

        records = []
        for entry in raw:
            try:
                records.append(ExemptionRecord.from_dict(entry))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping unreadable record {entry!r:.80}: {e}")
        return records

    def replace_all(self, records):
        """
        Replace the stored collection

        Raises:
            StorageError: File could not be written
        """
        data = [record.to_dict() for record in records]
        try:
            _write_json_atomic(self.path, data)
        except OSError as e:
            raise StorageError(self.path, e)
        logger.debug(f"Saved {len(data)} records to {self.path}")

    def clear(self):
        """Delete every stored record"""
        self.replace_all([])
        logger.info("Record store cleared")


class KeyValueStore:
    """
    String values stored under string keys in one JSON object

    Stands in for the browser storage the desk used to keep its records in.
    """

    def __init__(self, path):
        self.path = path

    def _load(self):
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.error(f"Could not read key-value store {self.path}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def _save(self, data):
        try:
            _write_json_atomic(self.path, data)
        except OSError as e:
            raise StorageError(self.path, e)

    def get(self, key):
        return self._load().get(key)

    def set(self, key, value):
        data = self._load()
        data[key] = value
        self._save(data)

    def remove(self, key):
        data = self._load()
        if key in data:
            del data[key]
            self._save(data)


def upsert_record(records, record):
    """
    Insert or replace by id

    A new record goes to the front; an existing one keeps its position.

    Returns:
        list: New collection
    """
    updated = list(records)
    for i, existing in enumerate(updated):
        if existing.id == record.id:
            updated[i] = record
            return updated
    return [record] + updated


def delete_record(records, record_id):
    """
    Remove by id

    Raises:
        RecordNotFoundError: No record with that id
    """
    records = list(records)
    remaining = [r for r in records if r.id != record_id]
    if len(remaining) == len(records):
        raise RecordNotFoundError(record_id)
    return remaining
