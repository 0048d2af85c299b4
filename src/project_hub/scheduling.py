"""
Calendar scheduling helpers.

Normalizes event timestamps to a single sortable UTC form so that SQLite
string comparison orders them correctly, resolves query ranges for the
date-range intersection filter, and validates recurrence rules. Recurrence
rules are stored verbatim (after normalization); occurrences are never
expanded.
"""

from datetime import datetime, date, time, timezone
from typing import Optional, Tuple, Iterable, List

EVENT_TIME_FORMAT = "%Y-%m-%dT%H:%M:%SZ"

RECURRENCE_FREQUENCIES = {
    "SECONDLY", "MINUTELY", "HOURLY", "DAILY", "WEEKLY", "MONTHLY", "YEARLY",
}
RECURRENCE_KEYS = {
    "FREQ", "UNTIL", "COUNT", "INTERVAL", "BYSECOND", "BYMINUTE", "BYHOUR",
    "BYDAY", "BYMONTHDAY", "BYYEARDAY", "BYWEEKNO", "BYMONTH", "BYSETPOS", "WKST",
}


def _is_date_only(value: str) -> bool:
    return len(value) == 10 and value[4] == "-" and value[7] == "-"


def parse_timestamp(value: str) -> datetime:
    """
    Parse an ISO-8601 date or datetime into an aware UTC datetime.

    Naive values are taken to be UTC. A trailing ``Z`` is accepted.

    Raises:
        ValueError: If the value is empty or not ISO-8601
    """
    if value is None or not str(value).strip():
        raise ValueError("Timestamp cannot be empty")
    text = str(value).strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    try:
        if _is_date_only(text):
            parsed = datetime.combine(date.fromisoformat(text), time.min)
        else:
            parsed = datetime.fromisoformat(text)
    except ValueError:
        raise ValueError(f"Invalid timestamp '{value}', expected ISO-8601")
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_timestamp(moment: datetime) -> str:
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc)
    return moment.strftime(EVENT_TIME_FORMAT)


def normalize_event_time(value: str) -> str:
    """Normalize any accepted timestamp to ``YYYY-MM-DDTHH:MM:SSZ``."""
    return format_timestamp(parse_timestamp(value))


def _range_end(end_date: str) -> datetime:
    range_end = parse_timestamp(end_date)
    if _is_date_only(str(end_date).strip()):
        range_end = range_end.replace(hour=23, minute=59, second=59)
    return range_end


def resolve_date_range(start_date: str, end_date: str) -> Tuple[str, str]:
    """
    Turn the calendar query bounds into normalized inclusive timestamps.

    A date-only ``end_date`` covers that whole day.

    Raises:
        ValueError: For unparseable bounds or an end before the start
    """
    range_start = parse_timestamp(start_date)
    range_end = _range_end(end_date)
    if range_end < range_start:
        raise ValueError("end_date must not be before start_date")
    return format_timestamp(range_start), format_timestamp(range_end)


def resolve_open_range(start_date: Optional[str],
                       end_date: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """Same as ``resolve_date_range`` but either bound may be omitted."""
    if start_date and end_date:
        return resolve_date_range(start_date, end_date)
    range_start = normalize_event_time(start_date) if start_date else None
    range_end = format_timestamp(_range_end(end_date)) if end_date else None
    return range_start, range_end


def normalize_recurrence_rule(rule: Optional[str]) -> Optional[str]:
    """
    Validate an RFC 5545 style rule (``FREQ=WEEKLY;BYDAY=MO,WE``).

    The ``RRULE:`` prefix is dropped and the rule uppercased. Empty input
    means the event does not recur.

    Raises:
        ValueError: For malformed parts, unknown keys or a missing FREQ
    """
    if rule is None:
        return None
    text = rule.strip().upper()
    if text.startswith("RRULE:"):
        text = text[len("RRULE:"):]
    if not text:
        return None

    parts = {}
    for part in text.strip(";").split(";"):
        key, sep, val = part.partition("=")
        if not sep or not key or not val:
            raise ValueError(f"Malformed recurrence rule part '{part}'")
        if key not in RECURRENCE_KEYS:
            raise ValueError(f"Unknown recurrence rule key '{key}'")
        parts[key] = val

    freq = parts.get("FREQ")
    if freq not in RECURRENCE_FREQUENCIES:
        raise ValueError("Recurrence rule requires FREQ=" + "|".join(sorted(RECURRENCE_FREQUENCIES)))
    if "COUNT" in parts and "UNTIL" in parts:
        raise ValueError("Recurrence rule cannot combine COUNT and UNTIL")
    for numeric in ("COUNT", "INTERVAL"):
        if numeric in parts and not (parts[numeric].isdigit() and int(parts[numeric]) > 0):
            raise ValueError(f"{numeric} must be a positive integer")
    return ";".join(f"{k}={v}" for k, v in parts.items())


def reconcile_participants(current: Iterable[int], requested: Iterable[int]) -> Tuple[List[int], List[int]]:
    """Return (to_add, to_remove) so that ``current`` becomes ``requested``."""
    current_set = set(current)
    requested_list = list(dict.fromkeys(requested))
    to_add = [uid for uid in requested_list if uid not in current_set]
    to_remove = sorted(current_set - set(requested_list))
    return to_add, to_remove
