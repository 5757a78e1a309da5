"""
Layer 4 — Exemption Record Lifecycle
State machine of one editing session, from blank (or edited) draft to a
committed record.

    IDLE -> CAPTURING -> ANALYZING -> RECONCILED | FAILED -> IDLE

Submission is possible from IDLE (manual entry, parental note) and
RECONCILED. A FAILED session goes back to IDLE on the next user action.
"""
import logging
import threading
from datetime import date
from enum import Enum
from typing import Iterable, Optional

from error_handlers import (
    DeskError,
    FieldUpdateError,
    InvalidTransitionError,
    ValidationError,
    handle_error,
)
from .dates import MAX_DURATION_DAYS, to_date
from .reconciler import (
    REQUIRED_FIELDS,
    TEXT_FIELDS,
    ExemptionDraft,
    apply_parental_note,
    draft_from_record,
    reconcile,
)
from .records import ExemptionRecord, new_record_id

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    IDLE = 'idle'
    CAPTURING = 'capturing'
    ANALYZING = 'analyzing'
    RECONCILED = 'reconciled'
    FAILED = 'failed'


EDITABLE_FIELDS = TEXT_FIELDS + ('received_at', 'start_date', 'duration_days', 'is_terminale')

# Wire names accepted by update_fields
FIELD_ALIASES = {
    'lastName': 'last_name',
    'firstName': 'first_name',
    'studentClass': 'student_class',
    'receivedAt': 'received_at',
    'startDate': 'start_date',
    'durationDays': 'duration_days',
    'isTerminale': 'is_terminale',
}


def _coerce(name, value):
    if name in TEXT_FIELDS:
        return '' if value is None else str(value)
    if name in ('received_at', 'start_date'):
        try:
            return to_date(value)
        except (TypeError, ValueError) as e:
            raise FieldUpdateError(name, e)
    if name == 'duration_days':
        if isinstance(value, bool):
            raise FieldUpdateError(name, "expected a number of days")
        # An emptied number input counts as zero days
        if value in ('', None):
            return 0
        try:
            days = int(value)
        except (TypeError, ValueError, OverflowError):
            raise FieldUpdateError(name, "expected a number of days")
        if not 0 <= days <= MAX_DURATION_DAYS:
            raise FieldUpdateError(name, f"expected 0 to {MAX_DURATION_DAYS} days, got {days}")
        return days
    if name == 'is_terminale':
        if not isinstance(value, bool):
            raise FieldUpdateError(name, "expected true or false")
        return value
    raise FieldUpdateError(name, "field is not editable")


class ExemptionSession:
    """
    The single active editing session.

    Transitions are serialized by a lock; a second analysis while one is in
    flight is refused rather than queued.
    """

    def __init__(self, normalizer, extraction_client,
                 record: Optional[ExemptionRecord] = None):
        self.normalizer = normalizer
        self.extraction_client = extraction_client
        self.draft = draft_from_record(record)
        self.state = SessionState.IDLE
        self._lock = threading.Lock()
        logger.info(f"Editing session opened ({'edit ' + record.id if record else 'new exemption'})")

    @property
    def is_editing_existing(self) -> bool:
        return self.draft.record_id is not None

    def _require(self, action, *allowed):
        if self.state not in allowed:
            raise InvalidTransitionError(self.state.value, action)

    def _leave_failed(self):
        if self.state == SessionState.FAILED:
            self.state = SessionState.IDLE

    # ------------------------------------------------------------------
    # Capture and analysis
    # ------------------------------------------------------------------

    def begin_capture(self):
        with self._lock:
            self._require('start a capture', SessionState.IDLE, SessionState.RECONCILED,
                          SessionState.FAILED)
            self.state = SessionState.CAPTURING
            logger.info("[Session] Capturing")

    def cancel_capture(self):
        with self._lock:
            self._require('cancel a capture', SessionState.CAPTURING)
            self.state = SessionState.IDLE
            logger.info("[Session] Capture cancelled")

    def analyze(self, capture) -> ExemptionDraft:
        """
        Normalize, extract and reconcile one captured or imported document.

        Every failure on this path is caught here: the session ends FAILED
        with the previous draft intact apart from its error annotation.

        Raises:
            InvalidTransitionError: An analysis is already running
        """
        with self._lock:
            self._require('analyze a document', SessionState.IDLE, SessionState.CAPTURING,
                          SessionState.RECONCILED, SessionState.FAILED)
            self.state = SessionState.ANALYZING
            before = self.draft

        logger.info("=" * 60)
        logger.info("Starting document analysis")

        try:
            logger.info("[Layer 2] Normalizing document...")
            document = self.normalizer.normalize(capture)

            logger.info("[Layer 3] Extracting fields...")
            fields = self.extraction_client.extract(document)

            logger.info("[Layer 4] Reconciling fields...")
            draft = reconcile(fields, before)
            draft.attach_document(document.payload, document.media_type)
        except Exception as e:
            if isinstance(e, DeskError):
                logger.info("[Session] Analysis failed with known error")
            else:
                logger.error("[Session] Analysis failed with unexpected error")
            error = handle_error(e)
            with self._lock:
                self.draft = before
                self.draft.error = error
                self.state = SessionState.FAILED
            logger.info("=" * 60)
            return self.draft

        with self._lock:
            self.draft = draft
            self.state = SessionState.RECONCILED

        logger.info("[Session] Reconciled")
        logger.info("=" * 60)
        return self.draft

    # ------------------------------------------------------------------
    # User edits
    # ------------------------------------------------------------------

    def update_fields(self, **changes) -> ExemptionDraft:
        """
        Apply user edits. Unknown or malformed fields reject the whole update.

        Raises:
            FieldUpdateError: Unknown field or bad value
            InvalidTransitionError: An analysis is running
        """
        with self._lock:
            self._require('edit the draft', SessionState.IDLE, SessionState.RECONCILED,
                          SessionState.FAILED)

            coerced = {}
            for key, value in changes.items():
                name = FIELD_ALIASES.get(key, key)
                if name not in EDITABLE_FIELDS:
                    raise FieldUpdateError(key, "field is not editable")
                coerced[name] = _coerce(name, value)

            self._leave_failed()
            for name, value in coerced.items():
                setattr(self.draft, name, value)
            return self.draft

    def focus(self, name: str) -> ExemptionDraft:
        name = FIELD_ALIASES.get(name, name)
        with self._lock:
            self._require('edit the draft', SessionState.IDLE, SessionState.RECONCILED,
                          SessionState.FAILED)
            self._leave_failed()
            self.draft.focus(name)
            return self.draft

    def mark_parental_note(self, today: Optional[date] = None) -> ExemptionDraft:
        with self._lock:
            self._require('mark a parental note', SessionState.IDLE, SessionState.RECONCILED,
                          SessionState.FAILED)
            self.state = SessionState.IDLE
            self.draft = apply_parental_note(self.draft, today=today)
            return self.draft

    def remove_document(self) -> ExemptionDraft:
        with self._lock:
            self._require('remove the document', SessionState.IDLE, SessionState.RECONCILED,
                          SessionState.FAILED)
            self._leave_failed()
            self.draft.remove_document()
            return self.draft

    def dismiss_error(self) -> ExemptionDraft:
        with self._lock:
            self._leave_failed()
            self.draft.error = None
            return self.draft

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def submit(self, existing_ids: Iterable[str] = ()) -> ExemptionRecord:
        """
        Validate the draft and build the record to persist.

        Raises:
            ValidationError: Last or first name still MISSING
            InvalidTransitionError: Session is not IDLE or RECONCILED
        """
        with self._lock:
            self._require('submit', SessionState.IDLE, SessionState.RECONCILED)

            missing = self.draft.missing_fields(REQUIRED_FIELDS)
            if missing:
                raise ValidationError(missing)

            draft = self.draft
            record = ExemptionRecord(
                id=draft.record_id or new_record_id(existing_ids),
                last_name=draft.last_name,
                first_name=draft.first_name,
                student_class=draft.student_class,
                received_at=draft.received_at,
                start_date=draft.start_date,
                duration_days=draft.duration_days,
                photo=None if draft.is_parental_note else (draft.photo or None),
                is_parental_note=draft.is_parental_note,
                is_terminale=draft.is_terminale,
            )
            self.state = SessionState.IDLE
            logger.info(f"[Session] Submitted exemption {record.id} (ends {record.end_date.isoformat()})")
            return record

    def to_dict(self):
        return {
            'state': self.state.value,
            'editing': self.is_editing_existing,
            'draft': self.draft.to_dict(),
        }
