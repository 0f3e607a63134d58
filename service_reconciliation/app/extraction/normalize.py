"""
Value normalization helpers for request payloads.
"""

import math
import re
from typing import Any, Optional, Union
from datetime import date, datetime, timezone

from shared.errors import UnparsableDateError

_DATE_PREFIX = re.compile(r"^\s*(\d{4})-(\d{1,2})-(\d{1,2})")
_REQUEST_NUMBER = re.compile(r"(\d+)\s*$")


def parse_date(value: Any) -> date:
    """Parse a payload date, dropping any time-of-day.

    Raises UnparsableDateError when the value is not a recognizable date.
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        match = _DATE_PREFIX.match(value)
        if match:
            try:
                return date(int(match.group(1)), int(match.group(2)), int(match.group(3)))
            except ValueError:
                pass
    raise UnparsableDateError(value)


def coerce_date(value: Any) -> Union[date, Any]:
    """Normalize a date, keeping the raw value when it cannot be parsed.

    Keeping the raw value lets unparsable dates still take part in diffing
    while ``EntitlementRecord.end_date`` reports them as unknown.
    """
    if value is None or value == "":
        return None
    try:
        return parse_date(value)
    except UnparsableDateError:
        return value


def coerce_number(value: Any) -> Any:
    """Normalize a quantity to int or float, keeping unparsable values as-is."""
    if isinstance(value, bool) or value is None:
        return value
    if isinstance(value, (int, float)):
        number = value
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return value
    else:
        return value

    if isinstance(number, float) and not math.isfinite(number):
        return value
    if isinstance(number, float) and number.is_integer():
        return int(number)
    return number


def parse_request_number(request_id: Optional[str]) -> Optional[int]:
    """Extract the trailing number of an identifier like ``PS-4640``."""
    if not request_id:
        return None
    match = _REQUEST_NUMBER.search(str(request_id))
    return int(match.group(1)) if match else None


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse a request creation timestamp into an aware datetime."""
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        # Salesforce style offsets such as +0000
        text = re.sub(r"([+-]\d{2})(\d{2})$", r"\1:\2", text)
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
