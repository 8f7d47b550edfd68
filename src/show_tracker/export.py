"""Fixed tabular export of shows and entries.

The same row feeds the webhook payloads, the CSV download and any
spreadsheet receiver, so column names and order never change.
"""

from __future__ import annotations

import csv
import io
from typing import Any, Iterable

EXPORT_COLUMNS: tuple[str, ...] = (
    "showId", "showDate", "showTime", "showLabel", "crew", "leadPilot",
    "monkeyLead", "showNotes", "entryId", "unitId", "planned", "launched",
    "status", "primaryIssue", "subIssue", "otherDetail", "severity",
    "rootCause", "actions", "operator", "batteryId", "delaySec",
    "commandRx", "notes",
)

# Blanked when an entry completed cleanly
ISSUE_COLUMNS = ("primaryIssue", "subIssue", "otherDetail", "severity", "rootCause")

COMPLETED_STATUS = "Completed"


def _text(value: Any) -> str:
    return value if isinstance(value, str) else ""


def _joined(values: Any) -> str:
    if not isinstance(values, list):
        return ""
    return "|".join(str(v) for v in values)


def build_table_row(show: dict[str, Any] | None, entry: dict[str, Any] | None) -> dict[str, Any]:
    """Flatten one entry of a show into the export row (keyed by column)."""
    show = show or {}
    entry = entry or {}
    completed = entry.get("status") == COMPLETED_STATUS
    delay = entry.get("delaySec")
    row: dict[str, Any] = {
        "showId": _text(show.get("id")),
        "showDate": _text(show.get("date")),
        "showTime": _text(show.get("time")),
        "showLabel": _text(show.get("label")),
        "crew": _joined(show.get("crew")),
        "leadPilot": _text(show.get("leadPilot")),
        "monkeyLead": _text(show.get("monkeyLead")),
        "showNotes": _text(show.get("notes")),
        "entryId": _text(entry.get("id")),
        "unitId": _text(entry.get("unitId")),
        "planned": _text(entry.get("planned")),
        "launched": _text(entry.get("launched")),
        "status": _text(entry.get("status")),
    }
    for column in ISSUE_COLUMNS:
        row[column] = "" if completed else _text(entry.get(column))
    row["actions"] = _joined(entry.get("actions"))
    row["operator"] = _text(entry.get("operator"))
    row["batteryId"] = _text(entry.get("batteryId"))
    row["delaySec"] = "" if delay is None else delay
    row["commandRx"] = _text(entry.get("commandRx"))
    row["notes"] = _text(entry.get("notes"))
    return row


def row_values(row: dict[str, Any]) -> list[Any]:
    """Row values in EXPORT_COLUMNS order; missing cells become ""."""
    return ["" if row.get(c) is None else row[c] for c in EXPORT_COLUMNS]


def build_message_payload(row: dict[str, Any]) -> dict[str, Any]:
    return dict(zip(EXPORT_COLUMNS, row_values(row)))


def csv_escape(value: Any) -> str:
    """Quote a cell when it holds a quote, comma or line break."""
    text = "" if value is None else str(value)
    if any(ch in text for ch in ('"', ",", "\n", "\r")):
        return '"' + text.replace('"', '""') + '"'
    return text


def build_csv_row(row: dict[str, Any]) -> str:
    return ",".join(csv_escape(v) for v in row_values(row))


def iter_export_rows(shows: Iterable[dict[str, Any]]) -> Iterable[dict[str, Any]]:
    for show in shows:
        for entry in show.get("entries") or []:
            yield build_table_row(show, entry)


def write_csv_export(shows: Iterable[dict[str, Any]], fh: Any) -> int:
    """Write header plus one line per entry to fh; return data rows written."""
    writer = csv.writer(fh, lineterminator="\r\n")
    writer.writerow(EXPORT_COLUMNS)
    count = 0
    for row in iter_export_rows(shows):
        writer.writerow(row_values(row))
        count += 1
    return count


def build_csv_export(shows: Iterable[dict[str, Any]]) -> str:
    """Return the whole CSV document (CRLF line endings)."""
    buf = io.StringIO()
    write_csv_export(shows, buf)
    return buf.getvalue()
