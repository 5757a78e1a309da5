"""
Storage — Legacy migration
Component: One-time import of the browser-era record blob
Responsibility: Move the single JSON blob kept under 'eps-inaptitudes' into
the record store, then remove it. There is no way back.
"""
import json
import logging

from layer4_records.records import ExemptionRecord
from .store import upsert_record

logger = logging.getLogger(__name__)

LEGACY_KEY = 'eps-inaptitudes'


def _parse_blob(blob):
    if isinstance(blob, (list, tuple)):
        return list(blob)
    try:
        data = json.loads(blob)
    except (TypeError, ValueError) as e:
        logger.error(f"Legacy blob is not valid JSON, discarding it: {e}")
        return []
    if not isinstance(data, list):
        logger.error("Legacy blob does not hold a list, discarding it")
        return []
    return data


def migrate_legacy(kv_store, record_store, key=LEGACY_KEY):
    """
    Import legacy records once

    Records are upserted by id, so records already present are replaced
    rather than duplicated. The legacy entry is removed only after the
    record store write succeeded.

    Args:
        kv_store: Store holding the legacy blob (get / remove)
        record_store: Destination (list / replace_all)
        key: Legacy storage key

    Returns:
        int: Number of records imported (0 when there was nothing to migrate)

    Raises:
        StorageError: Record store could not be written; the legacy entry is kept
    """
    blob = kv_store.get(key)
    if blob is None:
        logger.debug("No legacy records to migrate")
        return 0

    logger.info("=" * 60)
    logger.info(f"Migrating legacy records from '{key}'")

    records = record_store.list()
    imported = 0
    # Oldest first, so prepending keeps the stored order
    for entry in reversed(_parse_blob(blob)):
        try:
            record = ExemptionRecord.from_dict(entry)
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            logger.warning(f"Skipping unreadable legacy record: {e}")
            continue
        records = upsert_record(records, record)
        imported += 1

    record_store.replace_all(records)
    kv_store.remove(key)

    logger.info(f"Migrated {imported} legacy records")
    logger.info("=" * 60)
    return imported
