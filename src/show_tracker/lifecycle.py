"""Archival and retention policy shared by both storage engines.

A show moves active -> archived -> purged and never back:

  * archived: every active show whose date group has an earliest
    createdAt at least ARCHIVE_AFTER_MS old. The whole group goes at once.
  * purged: an archive record whose createdAt plus
    ARCHIVE_RETENTION_MONTHS calendar months has been reached.

The engines own the SQL; this module only decides which rows move and
shapes the archive projection.
"""

from __future__ import annotations

import json
import logging
from collections import defaultdict
from typing import Any, Iterable

from dateutil.relativedelta import relativedelta

from show_tracker.models import normalize_show
from show_tracker.normalize import clean_text, get_timestamp, ms_to_datetime, ms_to_iso
from show_tracker.shared import Clock, ReconcileCounters, now_ms

log = logging.getLogger(__name__)

ARCHIVE_AFTER_MS = 12 * 60 * 60 * 1000
ARCHIVE_RETENTION_MONTHS = 2
UNDATED_GROUP = "__undated__"


# ---------------------------------------------------------------------------
# Row decoding
# ---------------------------------------------------------------------------

def decode_document(data: Any) -> dict[str, Any] | None:
    """Return the stored JSON document as a dict, or None when malformed."""
    if isinstance(data, (bytes, bytearray, memoryview)):
        data = bytes(data).decode("utf-8", errors="replace")
    if isinstance(data, str):
        try:
            data = json.loads(data)
        except ValueError:
            return None
    return data if isinstance(data, dict) else None


# ---------------------------------------------------------------------------
# active -> archived
# ---------------------------------------------------------------------------

def group_key(show: dict[str, Any]) -> str:
    return clean_text(show.get("date")) or UNDATED_GROUP


def select_due_for_archive(shows: Iterable[dict[str, Any]], now: int) -> list[dict[str, Any]]:
    """Return every show whose date group is due for archival.

    A group is due when now minus its earliest createdAt (falling back to
    updatedAt) is at least ARCHIVE_AFTER_MS. Shows with no usable
    timestamp do not set the group age but are archived with it.
    """
    groups: dict[str, list[dict[str, Any]]] = defaultdict(list)
    for show in shows:
        groups[group_key(show)].append(show)

    due: list[dict[str, Any]] = []
    for members in groups.values():
        stamps = []
        for show in members:
            ts = get_timestamp(show.get("createdAt"))
            if ts is None:
                ts = get_timestamp(show.get("updatedAt"))
            if ts is not None:
                stamps.append(ts)
        if not stamps:
            continue
        if now - min(stamps) >= ARCHIVE_AFTER_MS:
            due.extend(members)
    return due


# ---------------------------------------------------------------------------
# archived -> purged
# ---------------------------------------------------------------------------

def add_months(timestamp: int, months: int) -> int:
    """Shift an epoch-ms instant by calendar months in UTC.

    Day-of-month is clipped to the target month's last day (Jan 31 + 1
    month is Feb 28/29).
    """
    shifted = ms_to_datetime(timestamp) + relativedelta(months=months)
    return get_timestamp(shifted)


def is_archive_expired(created_at: int | None, now: int) -> bool:
    if created_at is None:
        return False
    return now >= add_months(created_at, ARCHIVE_RETENTION_MONTHS)


def select_expired_archives(rows: Iterable[tuple[str, Any, Any]], now: int) -> list[str]:
    """Return archive ids past retention.

    rows yields (id, data, created_at column). The document's own
    createdAt wins over the column.
    """
    expired: list[str] = []
    for archive_id, data, created_column in rows:
        doc = decode_document(data) or {}
        created_at = get_timestamp(doc.get("createdAt"))
        if created_at is None:
            created_at = get_timestamp(created_column)
        if is_archive_expired(created_at, now):
            expired.append(archive_id)
    return expired


# ---------------------------------------------------------------------------
# Archive projection
# ---------------------------------------------------------------------------

def build_archive_record(
    show: dict[str, Any],
    archived_at: int,
    deleted_at: int | None = None,
) -> dict[str, Any]:
    """Canonical show plus archivedAt, and deletedAt only when set."""
    record = dict(show)
    record["archivedAt"] = archived_at
    if deleted_at is not None:
        record["deletedAt"] = deleted_at
    else:
        record.pop("deletedAt", None)
    return record


def map_archive_record(
    data: Any,
    archived_at: Any = None,
    created_at: Any = None,
    deleted_at: Any = None,
    clock: Clock = now_ms,
) -> dict[str, Any] | None:
    """Rebuild the archive projection from a stored row.

    Column values win for archivedAt and deletedAt; the document wins for
    createdAt. Returns None for a malformed document.
    """
    doc = decode_document(data)
    if doc is None:
        return None
    created = get_timestamp(doc.get("createdAt"))
    if created is None:
        created = get_timestamp(created_at)
    show = normalize_show({**doc, "createdAt": created}, clock)
    archived = get_timestamp(archived_at)
    if archived is None:
        archived = get_timestamp(doc.get("archivedAt"))
    deleted = get_timestamp(deleted_at)
    if deleted is None:
        deleted = get_timestamp(doc.get("deletedAt"))
    if archived is None:
        archived = show["updatedAt"]
    return build_archive_record(show, archived, deleted)


# ---------------------------------------------------------------------------
# Webhook fan-out for automatic archival
# ---------------------------------------------------------------------------

def dispatch_archived_batch(
    dispatcher: Any,
    shows: list[dict[str, Any]],
    triggered_at: int,
    counters: ReconcileCounters,
) -> None:
    """Send one show.archived event per show, in order.

    A failure is logged and counted; it never stops the rest of the batch
    and never reaches the caller.
    """
    if dispatcher is None or not shows:
        return
    triggered_iso = ms_to_iso(triggered_at)
    total = len(shows)
    for index, show in enumerate(shows):
        meta = {
            "trigger": "auto-archive",
            "totalShows": total,
            "showIndex": index,
            "triggeredAt": triggered_iso,
        }
        try:
            result = dispatcher.dispatch_show_event("show.archived", show, meta)
        except Exception as exc:
            counters.dispatch_failures += 1
            counters.warnings.append(f"show.archived dispatch raised for {show.get('id')}: {exc}")
            log.warning("show.archived dispatch raised for %s: %s", show.get("id"), exc)
            continue
        if not isinstance(result, dict) or result.get("skipped"):
            continue
        if result.get("success") is False:
            counters.dispatch_failures += 1
            counters.warnings.append(
                f"show.archived dispatch failed for {show.get('id')}: {result.get('error')}"
            )
            log.warning(
                "show.archived dispatch failed for %s: %s", show.get("id"), result.get("error"),
            )
        else:
            counters.dispatched += 1
