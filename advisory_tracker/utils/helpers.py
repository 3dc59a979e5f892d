"""Shared utility functions for services and blueprints.

utcnow:          timezone-aware "now" used by every service
as_utc:          re-attach UTC to datetimes read back naive (SQLite)
parse_date:      lenient date parsing for spreadsheet and form input
normalize_yes_no: map yes/no style input onto the 'Y' / 'N' column values
get_or_raise:    primary-key lookup raising NotFoundError
"""
import logging
from datetime import date, datetime, timezone

from advisory_tracker.core.exceptions import NotFoundError
from advisory_tracker.models import db

logger = logging.getLogger(__name__)

_YES = {"y", "yes", "true", "1"}
_NO = {"n", "no", "false", "0"}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value):
    """Return ``value`` as an aware UTC datetime (None passes through)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_date(value):
    """Parse a date string (ISO or DD.MM.YYYY) to a date object.

    Returns None for empty/invalid input. Supports:
    - YYYY-MM-DD (ISO format)
    - YYYY-MM-DDTHH:MM:SS (datetime ISO → .date())
    - DD.MM.YYYY and DD/MM/YYYY
    """
    if not value:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    try:
        return date.fromisoformat(text)
    except (ValueError, TypeError):
        pass
    try:
        return datetime.fromisoformat(text).date()
    except (ValueError, TypeError):
        pass
    for fmt in ("%d.%m.%Y", "%d/%m/%Y"):
        try:
            return datetime.strptime(text, fmt).date()
        except (ValueError, TypeError):
            continue
    logger.debug("Unparseable date value %r", value)
    return None


def normalize_yes_no(value):
    """Map booleans and yes/no strings to 'Y' / 'N'.

    Empty input returns None so that "not answered" stays distinguishable
    from an explicit 'N'. Unknown strings are returned stripped, unchanged.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        return "Y" if value else "N"
    text = str(value).strip()
    if not text:
        return None
    lowered = text.lower()
    if lowered in _YES:
        return "Y"
    if lowered in _NO:
        return "N"
    return text


def is_blank(value) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    return False


def get_or_raise(model, pk, label=None):
    """Fetch a model instance by primary key or raise NotFoundError."""
    obj = db.session.get(model, pk)
    if obj is None:
        raise NotFoundError(resource=label or model.__name__, resource_id=pk)
    return obj
