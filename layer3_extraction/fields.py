"""
Layer 3 — Extracted fields
Schema of the structured answer returned by the extraction provider.
"""
import json
import logging
import math
import re
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Dict, Optional, Union

from error_handlers import MalformedResponseError
from layer4_records.dates import MAX_DURATION_DAYS

logger = logging.getLogger(__name__)

_FRENCH_DATE_RE = re.compile(r"(\d{1,2})[/.-](\d{1,2})[/.-](\d{4})")

# JSON schema sent with every request (OpenAPI subset understood by the provider)
RESPONSE_SCHEMA = {
    'type': 'OBJECT',
    'properties': {
        'lastName': {'type': 'STRING', 'nullable': True},
        'firstName': {'type': 'STRING', 'nullable': True},
        'studentClass': {'type': 'STRING', 'nullable': True},
        'durationDays': {'type': 'NUMBER', 'nullable': True},
        'startDate': {'type': 'STRING', 'nullable': True},
        'isTerminale': {'type': 'BOOLEAN'},
    },
    'required': ['isTerminale'],
}


@dataclass(frozen=True)
class ExtractedFields:
    """One extraction answer. Every field may be None; nothing here is trusted yet."""
    last_name: Optional[str] = None
    first_name: Optional[str] = None
    student_class: Optional[str] = None
    duration_days: Optional[int] = None
    start_date: Optional[date] = None
    is_terminale: Optional[bool] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'lastName': self.last_name,
            'firstName': self.first_name,
            'studentClass': self.student_class,
            'durationDays': self.duration_days,
            'startDate': self.start_date.isoformat() if self.start_date else None,
            'isTerminale': self.is_terminale,
        }


def _text_field(data: Dict[str, Any], key: str) -> Optional[str]:
    value = data.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (str, int, float)):
        raise MalformedResponseError(f"'{key}' must be a string or null, got {type(value).__name__}")
    return str(value)


def _duration_field(data: Dict[str, Any]) -> Optional[int]:
    value = data.get('durationDays')
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise MalformedResponseError(f"'durationDays' must be a number or null, got {type(value).__name__}")
    if (isinstance(value, float) and not math.isfinite(value)) or not 0 <= value <= MAX_DURATION_DAYS:
        raise MalformedResponseError(
            f"'durationDays' must be between 0 and {MAX_DURATION_DAYS}, got {value}"
        )
    return int(round(value))


def parse_start_date(value: Any) -> Optional[date]:
    """
    Read a start date given as YYYY-MM-DD (or DD/MM/YYYY as printed on
    French certificates). Unreadable dates are dropped rather than guessed.
    """
    if value is None:
        return None
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        raise MalformedResponseError(f"'startDate' must be a string or null, got {type(value).__name__}")

    text = value.strip()
    if not text:
        return None
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        pass

    m = _FRENCH_DATE_RE.fullmatch(text)
    if m:
        try:
            return datetime.strptime(f"{m.group(1)}/{m.group(2)}/{m.group(3)}", "%d/%m/%Y").date()
        except ValueError:
            pass

    logger.warning(f"Ignoring unreadable start date: {value!r}")
    return None


def parse_extracted_fields(raw: Union[str, bytes, Dict[str, Any], ExtractedFields]) -> ExtractedFields:
    """
    Validate a provider answer against the six-field schema.

    Raises:
        MalformedResponseError: If the answer is not a JSON object of that shape
    """
    if isinstance(raw, ExtractedFields):
        return raw

    if isinstance(raw, (str, bytes)):
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise MalformedResponseError(f"not valid JSON ({e})") from e
    else:
        data = raw

    if not isinstance(data, dict):
        raise MalformedResponseError(f"expected a JSON object, got {type(data).__name__}")

    is_terminale = data.get('isTerminale')
    if is_terminale is not None and not isinstance(is_terminale, bool):
        raise MalformedResponseError(f"'isTerminale' must be a boolean, got {type(is_terminale).__name__}")

    return ExtractedFields(
        last_name=_text_field(data, 'lastName'),
        first_name=_text_field(data, 'firstName'),
        student_class=_text_field(data, 'studentClass'),
        duration_days=_duration_field(data),
        start_date=parse_start_date(data.get('startDate')),
        is_terminale=is_terminale,
    )
