"""
Layer 4 — Exemption Records
Reconciles extracted fields into drafts, drives the editing session and
lists committed records.
"""
from .dates import days_remaining, derive_end_date, format_date, is_expired, to_date
from .lifecycle import ExemptionSession, SessionState
from .listing import exemption_stats, exemption_summary, filter_exemptions
from .reconciler import (
    MISSING,
    ExemptionDraft,
    apply_parental_note,
    clean_value,
    draft_from_record,
    reconcile,
)
from .records import ExemptionRecord, new_record_id

__all__ = [
    'MISSING',
    'ExemptionDraft',
    'ExemptionRecord',
    'ExemptionSession',
    'SessionState',
    'apply_parental_note',
    'clean_value',
    'days_remaining',
    'derive_end_date',
    'draft_from_record',
    'exemption_stats',
    'exemption_summary',
    'filter_exemptions',
    'format_date',
    'is_expired',
    'new_record_id',
    'reconcile',
    'to_date',
]
