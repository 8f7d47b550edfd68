"""Canonical Show and Entry records.

Both storage engines build every document they persist through this
module, so the JSON shape is identical whichever engine is active.
"""

from __future__ import annotations

import uuid
from typing import Any, Iterable

from show_tracker.normalize import (
    clean_text,
    coerce_delay,
    extract_display_name,
    get_timestamp,
    normalize_assignment_list,
    normalize_name_list,
)
from show_tracker.shared import Clock, ValidationError, now_ms

MAX_SHOWS_PER_DATE = 5

SHOW_FIELDS = (
    "id", "date", "time", "label", "crew", "leadPilot", "monkeyLead",
    "notes", "entries", "createdAt", "updatedAt",
)

ENTRY_FIELDS = (
    "id", "ts", "unitId", "planned", "launched", "status", "primaryIssue",
    "subIssue", "otherDetail", "severity", "rootCause", "actions",
    "operator", "batteryId", "delaySec", "commandRx", "notes",
)

_ENTRY_TEXT_FIELDS = (
    "unitId", "planned", "launched", "status", "primaryIssue", "subIssue",
    "otherDetail", "severity", "rootCause",
)


def new_id() -> str:
    return str(uuid.uuid4())


def _pick(raw: dict[str, Any], primary: str, alias: str) -> Any:
    """Return raw[alias] when present, else raw[primary]."""
    if raw.get(alias) is not None:
        return raw[alias]
    return raw.get(primary)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def assert_required_show_fields(raw: dict[str, Any]) -> None:
    """Raise ValidationError for the first missing required field."""
    if not clean_text(raw.get("date")):
        raise ValidationError("Date is required")
    if not clean_text(raw.get("time")):
        raise ValidationError("Show start time is required")
    if not clean_text(raw.get("label")):
        raise ValidationError("Show label is required")
    if not extract_display_name(_pick(raw, "leadPilot", "lead")):
        raise ValidationError("Lead assignment is required")
    if not extract_display_name(_pick(raw, "monkeyLead", "crewLead")):
        raise ValidationError("Crew lead assignment is required")


def assert_daily_limit(
    shows: Iterable[dict[str, Any]],
    date: str,
    exclude_id: str | None = None,
) -> None:
    """Reject a sixth show on the same date.

    exclude_id is the show being written, so an update never counts
    against itself. A blank date is not limited.
    """
    target = clean_text(date)
    if not target:
        return
    matching = [
        s for s in shows
        if isinstance(s, dict)
        and clean_text(s.get("date")) == target
        and s.get("id") != exclude_id
    ]
    if len(matching) >= MAX_SHOWS_PER_DATE:
        raise ValidationError(
            f"Daily show limit reached. Maximum of {MAX_SHOWS_PER_DATE} shows per date."
        )


def assert_operator_unique(show: dict[str, Any] | None, entry: dict[str, Any]) -> None:
    """Reject an entry whose operator already flies another entry of the show."""
    if not show:
        return
    name = clean_text(entry.get("operator")).casefold()
    if not name:
        return
    for existing in show.get("entries") or []:
        if not isinstance(existing, dict) or existing.get("id") == entry.get("id"):
            continue
        if clean_text(existing.get("operator")).casefold() == name:
            raise ValidationError("Operator already has an entry for this show.")


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------

def _operator_name(raw: dict[str, Any]) -> str:
    name = clean_text(raw.get("operatorName"))
    if name:
        return name
    operator = raw.get("operator")
    if isinstance(operator, str):
        name = operator.strip()
    if not name:
        assigned = raw.get("assignedOperator")
        name = extract_display_name(assigned if assigned is not None else operator)
    return name


def normalize_entry(raw: dict[str, Any], clock: Clock = now_ms) -> dict[str, Any]:
    ts = get_timestamp(raw.get("ts"))
    entry: dict[str, Any] = {
        "id": clean_text(raw.get("id")) or new_id(),
        "ts": ts if ts is not None else clock(),
    }
    for key in _ENTRY_TEXT_FIELDS:
        entry[key] = clean_text(raw.get(key))
    entry["actions"] = normalize_name_list(raw.get("actions"))
    entry["operator"] = _operator_name(raw)
    entry["batteryId"] = clean_text(raw.get("batteryId"))
    entry["delaySec"] = coerce_delay(raw.get("delaySec"))
    entry["commandRx"] = clean_text(raw.get("commandRx"))
    entry["notes"] = clean_text(raw.get("notes"))
    return entry


def normalize_show(
    raw: dict[str, Any],
    clock: Clock = now_ms,
    fill_timestamps: bool = True,
) -> dict[str, Any]:
    """Return the canonical Show for raw.

    Lead names may arrive as leadPilot/lead and monkeyLead/crewLead,
    either as plain strings or assignment mappings. Crew is deduped and
    sorted case-insensitively. Missing timestamps default to now, or stay
    None when fill_timestamps is False.
    """
    crew = normalize_assignment_list(raw.get("crew"))
    crew.sort(key=str.casefold)
    entries = raw.get("entries")
    created_at = get_timestamp(raw.get("createdAt"))
    updated_at = get_timestamp(raw.get("updatedAt"))
    now = clock() if fill_timestamps else None
    return {
        "id": raw.get("id"),
        "date": clean_text(raw.get("date")),
        "time": clean_text(raw.get("time")),
        "label": clean_text(raw.get("label")),
        "crew": crew,
        "leadPilot": extract_display_name(_pick(raw, "leadPilot", "lead")),
        "monkeyLead": extract_display_name(_pick(raw, "monkeyLead", "crewLead")),
        "notes": clean_text(raw.get("notes")),
        "entries": [
            normalize_entry(e, clock) for e in entries if isinstance(e, dict)
        ] if isinstance(entries, list) else [],
        "createdAt": created_at if created_at is not None else now,
        "updatedAt": updated_at if updated_at is not None else now,
    }


# ---------------------------------------------------------------------------
# Transitions applied by the storage engines
# ---------------------------------------------------------------------------

def build_new_show(payload: dict[str, Any] | None, clock: Clock = now_ms) -> dict[str, Any]:
    """Validate create input and assign id and timestamps.

    updatedAt is never earlier than createdAt.
    """
    payload = payload or {}
    assert_required_show_fields(payload)
    now = clock()
    created_at = get_timestamp(payload.get("createdAt"))
    if created_at is None:
        created_at = now
    updated_at = get_timestamp(payload.get("updatedAt"))
    if updated_at is None:
        updated_at = now
    if updated_at < created_at:
        updated_at = created_at
    return normalize_show(
        {
            **payload,
            "id": clean_text(payload.get("id")) or new_id(),
            "createdAt": created_at,
            "updatedAt": updated_at,
            "entries": payload.get("entries") if isinstance(payload.get("entries"), list) else [],
        },
        clock,
    )


def apply_show_updates(
    existing: dict[str, Any],
    updates: dict[str, Any] | None,
    clock: Clock = now_ms,
) -> dict[str, Any]:
    """Merge updates over an existing show, re-validate and bump updatedAt."""
    merged = {**existing, **(updates or {})}
    assert_required_show_fields(merged)
    merged["id"] = existing["id"]
    merged["updatedAt"] = clock()
    return normalize_show(merged, clock)


def build_entry(entry_input: dict[str, Any] | None, clock: Clock = now_ms) -> dict[str, Any]:
    entry_input = entry_input or {}
    return normalize_entry(
        {
            **entry_input,
            "id": clean_text(entry_input.get("id")) or new_id(),
            "ts": entry_input.get("ts") or clock(),
        },
        clock,
    )


def find_entry_index(show: dict[str, Any], entry_id: str) -> int:
    for idx, existing in enumerate(show.get("entries") or []):
        if existing.get("id") == entry_id:
            return idx
    return -1


def merge_entry_into_show(show: dict[str, Any], entry: dict[str, Any]) -> None:
    """Replace the entry with the same id in place, or append it."""
    idx = find_entry_index(show, entry["id"])
    if idx >= 0:
        show["entries"][idx] = entry
    else:
        show["entries"].append(entry)
