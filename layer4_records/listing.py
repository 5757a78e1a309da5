"""
Layer 4 — Dashboard listing
Search, filter, sort and count committed exemptions.
"""
import unicodedata
from datetime import date
from typing import Dict, Iterable, List, Optional

from .dates import days_remaining, format_date, is_expired
from .records import ExemptionRecord

TYPE_FILTERS = ('ALL', 'CERTIF', 'NOTE')
STATUS_FILTERS = ('ALL', 'ACTIVE', 'EXPIRED')
SORT_ORDERS = ('ALPHA_ASC', 'ALPHA_DESC', 'CHRONO_ASC', 'CHRONO_DESC', 'CLASS_ASC')
DEFAULT_SORT = 'CHRONO_DESC'
ENDING_SOON_DAYS = 3


def _fold(text: str) -> str:
    """Case and accent insensitive comparison key."""
    decomposed = unicodedata.normalize('NFKD', text or '')
    return ''.join(c for c in decomposed if not unicodedata.combining(c)).casefold()


def _matches(record: ExemptionRecord, needle: str) -> bool:
    full_name = _fold(f"{record.first_name} {record.last_name}")
    return needle in full_name or needle in _fold(record.student_class)


def filter_exemptions(records: Iterable[ExemptionRecord], search: str = '',
                      type_filter: str = 'ALL', status_filter: str = 'ALL',
                      sort_order: str = DEFAULT_SORT,
                      today: Optional[date] = None) -> List[ExemptionRecord]:
    """
    Dashboard view of the records.

    Args:
        records: Committed exemptions
        search: Matched against "first last" and the class
        type_filter: ALL, CERTIF (medical certificates) or NOTE (parental notes)
        status_filter: ALL, ACTIVE or EXPIRED
        sort_order: One of SORT_ORDERS

    Returns:
        list: Matching records, sorted
    """
    if type_filter not in TYPE_FILTERS:
        raise ValueError(f"Unknown type filter: {type_filter}")
    if status_filter not in STATUS_FILTERS:
        raise ValueError(f"Unknown status filter: {status_filter}")
    if sort_order not in SORT_ORDERS:
        raise ValueError(f"Unknown sort order: {sort_order}")

    today = today or date.today()
    result = list(records)

    needle = _fold(search.strip())
    if needle:
        result = [r for r in result if _matches(r, needle)]

    if type_filter == 'CERTIF':
        result = [r for r in result if not r.is_parental_note]
    elif type_filter == 'NOTE':
        result = [r for r in result if r.is_parental_note]

    if status_filter == 'ACTIVE':
        result = [r for r in result if not is_expired(r.end_date, today)]
    elif status_filter == 'EXPIRED':
        result = [r for r in result if is_expired(r.end_date, today)]

    # sorted() is stable, so ties keep their stored order
    if sort_order == 'ALPHA_ASC':
        result.sort(key=lambda r: _fold(r.last_name))
    elif sort_order == 'ALPHA_DESC':
        result.sort(key=lambda r: _fold(r.last_name), reverse=True)
    elif sort_order == 'CHRONO_ASC':
        result.sort(key=lambda r: r.start_date)
    elif sort_order == 'CHRONO_DESC':
        result.sort(key=lambda r: r.start_date, reverse=True)
    elif sort_order == 'CLASS_ASC':
        result.sort(key=lambda r: (_fold(r.student_class), _fold(r.last_name)))

    return result


def exemption_stats(records: Iterable[ExemptionRecord],
                    today: Optional[date] = None) -> Dict[str, int]:
    records = list(records)
    expired = sum(1 for r in records if is_expired(r.end_date, today))
    return {
        'total': len(records),
        'active': len(records) - expired,
        'expired': expired,
    }


def exemption_summary(record: ExemptionRecord, today: Optional[date] = None) -> Dict:
    """Stored form of a record plus its status and display dates for the dashboard card."""
    today = today or date.today()
    expired = is_expired(record.end_date, today)
    remaining = days_remaining(record.end_date, today)
    summary = record.to_dict()
    summary.update({
        'expired': expired,
        'daysRemaining': remaining,
        'endingSoon': not expired and remaining <= ENDING_SOON_DAYS,
        'startDateDisplay': format_date(record.start_date),
        'endDateDisplay': format_date(record.end_date),
    })
    return summary
