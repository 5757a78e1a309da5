"""
Layer 4 — Field Reconciler
Merges untrusted extraction output into the draft the user edits.

Text fields use three distinguishable states:
- MISSING: extraction could not fill it and the user has not touched it
- "": the user cleared it
- anything else: a real value

A MISSING field is cleared to "" the first time the user focuses it.
"""
import base64
import logging
from dataclasses import dataclass, field, replace
from datetime import date
from typing import Any, Dict, List, Optional

from .dates import derive_end_date
from .records import ExemptionRecord

logger = logging.getLogger(__name__)

MISSING = "A compléter"

# Compared after strip() and lower()
PLACEHOLDER_VALUES = frozenset({
    '',
    'null',
    'none',
    'undefined',
    'non renseignée',
    'non renseignee',
    'non renseigné',
    'non renseigne',
    'à compléter',
    'à completer',
    'a compléter',
    'a completer',
})

TEXT_FIELDS = ('last_name', 'first_name', 'student_class')
REQUIRED_FIELDS = ('last_name', 'first_name')

PDF_BASE64_PREFIX = 'JVBER'


def clean_value(value: Any) -> str:
    """Trimmed text, or MISSING for None and known placeholder strings."""
    if value is None:
        return MISSING
    text = str(value).strip()
    if text.lower() in PLACEHOLDER_VALUES:
        return MISSING
    return text


def is_missing(value: Any) -> bool:
    return value == MISSING


def photo_media_type(photo: Optional[str]) -> str:
    """Media type of a stored base64 document."""
    if photo and photo.startswith(PDF_BASE64_PREFIX):
        return 'application/pdf'
    return 'image/jpeg'


@dataclass
class ExemptionDraft:
    """Record in progress, owned by the active editing session."""
    last_name: str = MISSING
    first_name: str = MISSING
    student_class: str = MISSING
    received_at: date = field(default_factory=date.today)
    start_date: date = field(default_factory=date.today)
    duration_days: int = 1
    is_parental_note: bool = False
    is_terminale: bool = False
    photo: str = ''
    photo_media_type: str = 'image/jpeg'
    record_id: Optional[str] = None
    error: Optional[Dict[str, Any]] = None

    @property
    def end_date(self) -> date:
        return derive_end_date(self.start_date, self.duration_days)

    def missing_fields(self, names=TEXT_FIELDS) -> List[str]:
        return [name for name in names if is_missing(getattr(self, name))]

    def focus(self, name: str) -> bool:
        """
        Auto-clear a MISSING field when the user focuses it.

        Returns:
            bool: True if the field was cleared
        """
        if name in TEXT_FIELDS and is_missing(getattr(self, name)):
            setattr(self, name, '')
            return True
        return False

    def attach_document(self, payload: bytes, media_type: str):
        self.photo = base64.b64encode(payload).decode('ascii')
        self.photo_media_type = media_type

    def remove_document(self):
        self.photo = ''
        self.photo_media_type = 'image/jpeg'

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.record_id,
            'lastName': self.last_name,
            'firstName': self.first_name,
            'studentClass': self.student_class,
            'receivedAt': self.received_at.isoformat(),
            'startDate': self.start_date.isoformat(),
            'endDate': self.end_date.isoformat(),
            'durationDays': self.duration_days,
            'isParentalNote': self.is_parental_note,
            'isTerminale': self.is_terminale,
            'photoBase64': self.photo,
            'mimeType': self.photo_media_type,
            'missingFields': self.missing_fields(),
            'error': self.error,
        }


def draft_from_record(record: Optional[ExemptionRecord] = None) -> ExemptionDraft:
    """Initial draft: blank for a new exemption, or a copy of the record being edited."""
    if record is None:
        return ExemptionDraft()

    return ExemptionDraft(
        last_name=clean_value(record.last_name),
        first_name=clean_value(record.first_name),
        student_class=clean_value(record.student_class),
        received_at=record.received_at,
        start_date=record.start_date,
        duration_days=record.duration_days or 1,
        is_parental_note=record.is_parental_note,
        is_terminale=record.is_terminale,
        photo=record.photo or '',
        photo_media_type=photo_media_type(record.photo),
        record_id=record.id,
    )


def reconcile(fields, draft: ExemptionDraft) -> ExemptionDraft:
    """
    Map an extraction answer onto a draft.

    Pure: returns a new draft and never mutates its inputs, so the same
    answer and the same starting draft always give an equal result.
    is_parental_note is always reset to False: a readable extraction means a
    scanned medical document.
    """
    last_name = clean_value(fields.last_name)
    if not is_missing(last_name):
        last_name = last_name.upper()

    return replace(
        draft,
        last_name=last_name,
        first_name=clean_value(fields.first_name),
        student_class=clean_value(fields.student_class),
        duration_days=fields.duration_days or 1,
        start_date=fields.start_date if fields.start_date is not None else draft.start_date,
        is_terminale=bool(fields.is_terminale),
        is_parental_note=False,
        error=None,
    )


def apply_parental_note(draft: ExemptionDraft, today: Optional[date] = None) -> ExemptionDraft:
    """Switch the draft to a parental note: one day from today, no document."""
    return replace(
        draft,
        is_parental_note=True,
        duration_days=1,
        start_date=today or date.today(),
        photo='',
        photo_media_type='image/jpeg',
    )
