"""
Storage
Persistent record store and the one-time legacy migration.
"""
from .legacy import LEGACY_KEY, migrate_legacy
from .store import JsonRecordStore, KeyValueStore, delete_record, upsert_record

__all__ = [
    'LEGACY_KEY',
    'JsonRecordStore',
    'KeyValueStore',
    'delete_record',
    'migrate_legacy',
    'upsert_record',
]
