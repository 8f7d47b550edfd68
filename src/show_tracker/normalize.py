"""Normalization functions for show and entry fields.

Every function is pure: it accepts loosely-typed input (API bodies, stored
JSON rows, YAML config) and returns a canonical value without raising.
"""

from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable

_ASSIGNMENT_NAME_KEYS = ("displayName", "name", "fullName", "label")
_TRUTHY = frozenset({"yes", "y", "true", "1"})
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_ONE_MS = timedelta(milliseconds=1)


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None or not isinstance(value, str):
        return None
    v = value.strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: clean_text
# ---------------------------------------------------------------------------

def clean_text(value: Any) -> str:
    """Return the stripped string, or "" for None and non-string input."""
    return trim(value) or ""


# ---------------------------------------------------------------------------
# Rule 3: name lists
# ---------------------------------------------------------------------------

def normalize_name_list(values: Iterable[Any] | None, sort: bool = False) -> list[str]:
    """Trim, drop blanks, and dedupe case-insensitively.

    The first spelling seen wins. With sort=True the result is ordered
    case-insensitively.
    """
    if values is None or isinstance(values, (str, bytes, dict)):
        return []
    seen: set[str] = set()
    result: list[str] = []
    for raw in values:
        v = trim(raw)
        if v is None:
            continue
        key = v.casefold()
        if key in seen:
            continue
        seen.add(key)
        result.append(v)
    if sort:
        result.sort(key=str.casefold)
    return result


# ---------------------------------------------------------------------------
# Rule 4: assignment display names
# ---------------------------------------------------------------------------

def extract_display_name(raw: Any) -> str:
    """Return the person name from a plain string or an assignment mapping.

    Mappings are searched for displayName, name, fullName, label in that
    order; the first non-blank value wins.
    """
    if isinstance(raw, str):
        return raw.strip()
    if isinstance(raw, dict):
        for key in _ASSIGNMENT_NAME_KEYS:
            v = trim(raw.get(key))
            if v:
                return v
    return ""


def normalize_assignment_list(values: Iterable[Any] | None) -> list[str]:
    if values is None or isinstance(values, (str, bytes, dict)):
        return []
    return normalize_name_list(extract_display_name(v) for v in values)


# ---------------------------------------------------------------------------
# Rule 5: timestamps
# ---------------------------------------------------------------------------

def _is_finite_number(value: Any) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
    )


def get_timestamp(value: Any) -> int | None:
    """Coerce value to epoch milliseconds.

    Accepts numbers, numeric strings, ISO-8601 strings and datetimes.
    Naive datetimes are taken as UTC. Returns None when nothing parses.
    """
    if _is_finite_number(value):
        return int(value)
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return (value - _EPOCH) // _ONE_MS
    if isinstance(value, str):
        v = value.strip()
        if not v:
            return None
        try:
            numeric = float(v)
        except ValueError:
            numeric = None
        if numeric is not None:
            return int(numeric) if math.isfinite(numeric) else None
        try:
            parsed = datetime.fromisoformat(v.replace("Z", "+00:00"))
        except ValueError:
            return None
        return get_timestamp(parsed)
    return None


def ms_to_datetime(value: int | None) -> datetime | None:
    if value is None:
        return None
    return _EPOCH + timedelta(milliseconds=value)


def ms_to_iso(value: int) -> str:
    """Render epoch ms as an ISO-8601 UTC string with a trailing Z."""
    return ms_to_datetime(value).isoformat(timespec="milliseconds").replace("+00:00", "Z")


# ---------------------------------------------------------------------------
# Rule 6: numeric and yes/no fields
# ---------------------------------------------------------------------------

def coerce_delay(value: Any) -> int | float | None:
    """Return a non-negative number of seconds, or None.

    Blank, non-numeric and negative input all map to None.
    Integral floats collapse to int so JSON output stays stable.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        v = value.strip()
        if not v:
            return None
        try:
            value = float(v)
        except ValueError:
            return None
    if not _is_finite_number(value) or value < 0:
        return None
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


def yes_no_to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in _TRUTHY
    return False


# ---------------------------------------------------------------------------
# Rule 7: staff pools
# ---------------------------------------------------------------------------

def normalize_staff(lists: dict[str, Any] | None) -> dict[str, list[str]]:
    """Normalize the three staff pools, each deduped and sorted.

    "operators" is read as an alias for "pilots", "crewLeads" for
    "monkeyLeads". A missing pool becomes an empty list.
    """
    lists = lists or {}
    pilots = lists.get("pilots")
    if pilots is None:
        pilots = lists.get("operators")
    leads = lists.get("monkeyLeads")
    if leads is None:
        leads = lists.get("crewLeads")
    return {
        "crew": normalize_name_list(lists.get("crew"), sort=True),
        "pilots": normalize_name_list(pilots, sort=True),
        "monkeyLeads": normalize_name_list(leads, sort=True),
    }
