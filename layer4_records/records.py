"""
Layer 4 — Exemption records
Committed records and their storage representation.

Records are serialized with the camelCase keys of the browser-era
storage so that legacy blobs load without conversion.
"""
import logging
import time
from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, Iterable, Optional

from .dates import MAX_DURATION_DAYS, derive_end_date, to_date

logger = logging.getLogger(__name__)


def new_record_id(existing_ids: Iterable[str] = ()) -> str:
    """Millisecond timestamp id, bumped until it is unused."""
    taken = set(existing_ids)
    candidate = int(time.time() * 1000)
    while str(candidate) in taken:
        candidate += 1
    return str(candidate)


def _stored_duration(value) -> int:
    try:
        days = int(value or 0)
    except OverflowError:
        raise ValueError(f"durationDays out of range: {value}")
    if not 0 <= days <= MAX_DURATION_DAYS:
        raise ValueError(f"durationDays out of range: {value}")
    return days


@dataclass(frozen=True)
class ExemptionRecord:
    """A committed exemption. end_date is always derived from start + duration."""
    id: str
    last_name: str
    first_name: str
    student_class: str
    received_at: date
    start_date: date
    duration_days: int
    photo: Optional[str] = None
    is_parental_note: bool = False
    is_terminale: bool = False

    @property
    def end_date(self) -> date:
        return derive_end_date(self.start_date, self.duration_days)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'id': self.id,
            'lastName': self.last_name,
            'firstName': self.first_name,
            'studentClass': self.student_class,
            'receivedAt': self.received_at.isoformat(),
            'startDate': self.start_date.isoformat(),
            'endDate': self.end_date.isoformat(),
            'durationDays': self.duration_days,
            'isParentalNote': self.is_parental_note,
            'isTerminale': self.is_terminale,
        }
        if self.photo:
            data['photoBase64'] = self.photo
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ExemptionRecord':
        """
        Build a record from its stored form.

        A stored endDate is ignored; it is recomputed from start and duration.
        """
        start_date = to_date(data.get('startDate') or date.today())
        duration_days = _stored_duration(data.get('durationDays'))
        is_parental_note = bool(data.get('isParentalNote', False))
        photo = data.get('photoBase64') or data.get('photo') or None

        if is_parental_note and photo:
            logger.warning(f"Dropping document attached to parental note {data.get('id')}")
            photo = None

        return cls(
            id=str(data['id']),
            last_name=str(data.get('lastName') or ''),
            first_name=str(data.get('firstName') or ''),
            student_class=str(data.get('studentClass') or ''),
            received_at=to_date(data.get('receivedAt') or start_date),
            start_date=start_date,
            duration_days=duration_days,
            photo=photo,
            is_parental_note=is_parental_note,
            is_terminale=bool(data.get('isTerminale', False)),
        )
