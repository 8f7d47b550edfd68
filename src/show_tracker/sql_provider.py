"""Embedded-file storage engine.

The whole SQLite database lives in an in-memory connection. It is loaded
from disk with Connection.deserialize() on init and the complete image is
written back with Connection.serialize() after every mutation. There is
no WAL and no incremental write.

Tables are thin envelopes around canonical JSON documents:

  shows         (id, data, updated_at)
  show_archive  (id, data, show_date, created_at, archived_at, deleted_at)
  staff         (id, name, role, created_at)     role in crew | pilot
  monkey_leads  (id, name, created_at)
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
from pathlib import Path
from typing import Any

from show_tracker.lifecycle import (
    build_archive_record,
    decode_document,
    dispatch_archived_batch,
    map_archive_record,
    select_due_for_archive,
    select_expired_archives,
)
from show_tracker.models import (
    apply_show_updates,
    assert_daily_limit,
    assert_operator_unique,
    build_entry,
    build_new_show,
    find_entry_index,
    merge_entry_into_show,
    new_id,
    normalize_entry,
    normalize_show,
)
from show_tracker.normalize import clean_text, normalize_staff
from show_tracker.provider import DEFAULT_STAFF
from show_tracker.shared import (
    Clock,
    ProviderNotInitializedError,
    ReconcileCounters,
    now_ms,
)

log = logging.getLogger(__name__)

STORAGE_LABEL = "SQLite file v2"
DEFAULT_FILENAME = Path("data") / "show-tracker.sqlite"

# (column, declaration used by CREATE TABLE, declaration used by ALTER TABLE)
_SCHEMA: dict[str, list[tuple[str, str, str]]] = {
    "shows": [
        ("id", "TEXT PRIMARY KEY", "TEXT"),
        ("data", "TEXT NOT NULL", "TEXT"),
        ("updated_at", "INTEGER NOT NULL", "INTEGER"),
    ],
    "show_archive": [
        ("id", "TEXT PRIMARY KEY", "TEXT"),
        ("data", "TEXT NOT NULL", "TEXT"),
        ("show_date", "TEXT", "TEXT"),
        ("created_at", "INTEGER", "INTEGER"),
        ("archived_at", "INTEGER NOT NULL", "INTEGER"),
        ("deleted_at", "INTEGER", "INTEGER"),
    ],
    "staff": [
        ("id", "TEXT PRIMARY KEY", "TEXT"),
        ("name", "TEXT NOT NULL", "TEXT"),
        ("role", "TEXT NOT NULL", "TEXT"),
        ("created_at", "INTEGER NOT NULL", "INTEGER"),
    ],
    "monkey_leads": [
        ("id", "TEXT PRIMARY KEY", "TEXT"),
        ("name", "TEXT NOT NULL", "TEXT"),
        ("created_at", "INTEGER NOT NULL", "INTEGER"),
    ],
}

_INDEXES = (
    "CREATE INDEX IF NOT EXISTS idx_shows_updated_at ON shows(updated_at)",
    "CREATE INDEX IF NOT EXISTS idx_show_archive_archived_at ON show_archive(archived_at)",
    "CREATE INDEX IF NOT EXISTS idx_staff_role ON staff(role)",
)


class SqlProvider:
    """StorageProvider backed by a single SQLite file."""

    def __init__(
        self,
        config: dict[str, Any] | None = None,
        dispatcher: Any = None,
        clock: Clock = now_ms,
        staff_defaults: dict[str, Any] | None = None,
    ) -> None:
        config = config or {}
        self.filename = Path(config.get("filename") or DEFAULT_FILENAME)
        self._dispatcher = dispatcher
        self._clock = clock
        self._staff_defaults = normalize_staff(staff_defaults or DEFAULT_STAFF)
        self._conn: sqlite3.Connection | None = None
        self._reported_malformed: set[str] = set()
        self.last_reconcile = ReconcileCounters()

    # -----------------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------------

    def init(self) -> None:
        """Load or create the database file, bootstrap schema, reconcile."""
        if self._conn is not None:
            return
        self.filename.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(":memory:")
        conn.row_factory = sqlite3.Row
        existed = self.filename.exists() and self.filename.stat().st_size > 0
        self._conn = conn
        try:
            if existed:
                conn.deserialize(self.filename.read_bytes())
            mutated = self._ensure_schema()
            mutated = self._seed_staff() or mutated
            if mutated or not existed:
                self._persist_database()
        except (sqlite3.Error, OSError):
            self._conn = None
            conn.close()
            raise
        log.info("sqlite store ready: %s", self.filename)
        self.last_reconcile = self.reconcile()

    def dispose(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def get_storage_label(self) -> str:
        return STORAGE_LABEL

    def get_storage_metadata(self) -> dict[str, Any]:
        return {
            "label": self.get_storage_label(),
            "driver": "sqlite",
            "filename": str(self.filename),
        }

    @property
    def _db(self) -> sqlite3.Connection:
        if self._conn is None:
            raise ProviderNotInitializedError("SqlProvider.init() has not been called")
        return self._conn

    # -----------------------------------------------------------------------
    # Schema bootstrap (additive only)
    # -----------------------------------------------------------------------

    def _table_exists(self, name: str) -> bool:
        row = self._db.execute(
            "SELECT name FROM sqlite_master WHERE type = 'table' AND name = ?", (name,)
        ).fetchone()
        return row is not None

    def _columns(self, table: str) -> set[str]:
        return {row["name"] for row in self._db.execute(f"PRAGMA table_info({table})")}

    def _ensure_schema(self) -> bool:
        mutated = False
        with self._db:
            for table, columns in _SCHEMA.items():
                if not self._table_exists(table):
                    decls = ", ".join(f"{name} {create}" for name, create, _ in columns)
                    self._db.execute(f"CREATE TABLE {table} ({decls})")
                    mutated = True
                    continue
                existing = self._columns(table)
                for name, _, alter in columns:
                    if name not in existing:
                        self._db.execute(f"ALTER TABLE {table} ADD COLUMN {name} {alter}")
                        log.info("added column %s.%s", table, name)
                        mutated = True
            for statement in _INDEXES:
                self._db.execute(statement)
        return mutated

    def _seed_staff(self) -> bool:
        staff_rows = self._db.execute("SELECT COUNT(*) FROM staff").fetchone()[0]
        lead_rows = self._db.execute("SELECT COUNT(*) FROM monkey_leads").fetchone()[0]
        if staff_rows or lead_rows:
            return False
        self._write_staff(self._staff_defaults)
        log.info("seeded default staff lists")
        return True

    # -----------------------------------------------------------------------
    # Persistence helpers
    # -----------------------------------------------------------------------

    def _persist_database(self) -> None:
        """Rewrite the whole database file from the in-memory image."""
        data = self._db.serialize()
        tmp = self.filename.with_name(self.filename.name + ".tmp")
        tmp.write_bytes(data)
        os.replace(tmp, self.filename)

    def _decode_show(
        self, show_id: str, data: Any, fill_timestamps: bool = True
    ) -> dict[str, Any] | None:
        doc = decode_document(data)
        if doc is None:
            if show_id not in self._reported_malformed:
                self._reported_malformed.add(show_id)
                log.warning("skipping malformed show row %s", show_id)
            return None
        return normalize_show(doc, self._clock, fill_timestamps)

    def _select_show_row(self, show_id: str) -> sqlite3.Row | None:
        return self._db.execute(
            "SELECT id, data FROM shows WHERE id = ?", (show_id,)
        ).fetchone()

    def _upsert_show(self, show: dict[str, Any]) -> None:
        self._db.execute(
            """
            INSERT INTO shows (id, data, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                data = excluded.data,
                updated_at = excluded.updated_at
            """,
            (show["id"], json.dumps(show), show["updatedAt"]),
        )

    def _write_show(self, show: dict[str, Any]) -> None:
        with self._db:
            self._upsert_show(show)
        self._persist_database()

    def _save_archive_row(self, record: dict[str, Any]) -> None:
        self._db.execute(
            """
            INSERT INTO show_archive
                (id, data, show_date, created_at, archived_at, deleted_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                data = excluded.data,
                show_date = excluded.show_date,
                created_at = excluded.created_at,
                archived_at = excluded.archived_at,
                deleted_at = excluded.deleted_at
            """,
            (
                record["id"],
                json.dumps(record),
                clean_text(record.get("date")),
                record.get("createdAt"),
                record["archivedAt"],
                record.get("deletedAt"),
            ),
        )

    def _archive(self, show: dict[str, Any], archived_at: int, deleted_at: int | None) -> dict[str, Any]:
        """Move one show into the archive table. Caller owns the transaction."""
        record = build_archive_record(show, archived_at, deleted_at)
        self._save_archive_row(record)
        self._db.execute("DELETE FROM shows WHERE id = ?", (show["id"],))
        return record

    # -----------------------------------------------------------------------
    # Archival / retention
    # -----------------------------------------------------------------------

    def reconcile(self) -> ReconcileCounters:
        """Archive due date groups, purge expired archives, then notify."""
        counters = ReconcileCounters()
        now = self._clock()
        shows = []
        for row in self._db.execute("SELECT id, data FROM shows"):
            # undated shows must not look freshly created to the group age
            show = self._decode_show(row["id"], row["data"], fill_timestamps=False)
            if show is not None:
                shows.append(show)
        due = select_due_for_archive(shows, now)

        archived: list[dict[str, Any]] = []
        with self._db:
            for show in due:
                archived.append(self._archive(normalize_show(show, self._clock), now, None))
            expired = select_expired_archives(
                (
                    (row["id"], row["data"], row["created_at"])
                    for row in self._db.execute("SELECT id, data, created_at FROM show_archive")
                ),
                now,
            )
            for archive_id in expired:
                self._db.execute("DELETE FROM show_archive WHERE id = ?", (archive_id,))

        counters.archived = len(archived)
        counters.purged = len(expired)
        if counters.mutated:
            self._persist_database()
            log.info("reconcile: archived=%d purged=%d", counters.archived, counters.purged)
        dispatch_archived_batch(self._dispatcher, archived, now, counters)
        return counters

    def run_archive_maintenance(self) -> ReconcileCounters:
        return self.reconcile()

    # -----------------------------------------------------------------------
    # Shows
    # -----------------------------------------------------------------------

    def list_shows(self) -> list[dict[str, Any]]:
        self.reconcile()
        rows = self._db.execute(
            "SELECT id, data FROM shows ORDER BY updated_at DESC, id ASC"
        ).fetchall()
        shows = (self._decode_show(row["id"], row["data"]) for row in rows)
        return [s for s in shows if s is not None]

    def get_show(self, show_id: str) -> dict[str, Any] | None:
        self.reconcile()
        row = self._select_show_row(show_id)
        if row is None:
            return None
        return self._decode_show(row["id"], row["data"])

    def create_show(self, payload: dict[str, Any]) -> dict[str, Any]:
        show = build_new_show(payload, self._clock)
        assert_daily_limit(self.list_shows(), show["date"], show["id"])
        self._write_show(show)
        self.reconcile()
        return show

    def update_show(self, show_id: str, updates: dict[str, Any]) -> dict[str, Any] | None:
        existing = self.get_show(show_id)
        if existing is None:
            return None
        updated = apply_show_updates(existing, updates, self._clock)
        assert_daily_limit(self.list_shows(), updated["date"], updated["id"])
        self._write_show(updated)
        self.reconcile()
        return updated

    def delete_show(self, show_id: str) -> dict[str, Any] | None:
        """Move an active show to the archive with deletedAt set."""
        if not show_id:
            return None
        row = self._select_show_row(show_id)
        if row is None:
            return None
        show = self._decode_show(row["id"], row["data"])
        with self._db:
            if show is None:
                self._db.execute("DELETE FROM shows WHERE id = ?", (show_id,))
            else:
                now = self._clock()
                self._archive(show, now, now)
        self._persist_database()
        if show is None:
            return None
        return self.get_archived_show(show_id)

    def archive_show_now(self, show_id: str) -> dict[str, Any] | None:
        if not show_id:
            return None
        row = self._select_show_row(show_id)
        if row is None:
            return self.get_archived_show(show_id)
        show = self._decode_show(row["id"], row["data"])
        if show is None:
            return None
        with self._db:
            self._archive(show, self._clock(), None)
        self._persist_database()
        return self.get_archived_show(show_id)

    def replace_show(self, show: dict[str, Any]) -> dict[str, Any]:
        """Overwrite a show document as given, without validation."""
        normalized = normalize_show(show, self._clock)
        if not clean_text(normalized["id"]):
            normalized["id"] = new_id()
        self._write_show(normalized)
        self.reconcile()
        return normalized

    # -----------------------------------------------------------------------
    # Entries
    # -----------------------------------------------------------------------

    def add_entry(self, show_id: str, entry: dict[str, Any]) -> dict[str, Any] | None:
        """Add an entry, or replace the one with the same id."""
        show = self.get_show(show_id)
        if show is None:
            return None
        built = build_entry(entry, self._clock)
        assert_operator_unique(show, built)
        merge_entry_into_show(show, built)
        show["updatedAt"] = self._clock()
        self._write_show(show)
        self.reconcile()
        return built

    def update_entry(
        self, show_id: str, entry_id: str, updates: dict[str, Any]
    ) -> dict[str, Any] | None:
        show = self.get_show(show_id)
        if show is None:
            return None
        idx = find_entry_index(show, entry_id)
        if idx < 0:
            return None
        entry = normalize_entry(
            {**show["entries"][idx], **(updates or {}), "id": entry_id}, self._clock
        )
        assert_operator_unique(show, entry)
        show["entries"][idx] = entry
        show["updatedAt"] = self._clock()
        self._write_show(show)
        self.reconcile()
        return entry

    def delete_entry(self, show_id: str, entry_id: str) -> bool | None:
        show = self.get_show(show_id)
        if show is None:
            return None
        idx = find_entry_index(show, entry_id)
        if idx < 0:
            return None
        del show["entries"][idx]
        show["updatedAt"] = self._clock()
        self._write_show(show)
        self.reconcile()
        return True

    # -----------------------------------------------------------------------
    # Archive reads
    # -----------------------------------------------------------------------

    def list_archived_shows(self) -> list[dict[str, Any]]:
        self.reconcile()
        rows = self._db.execute(
            """
            SELECT data, archived_at, created_at, deleted_at FROM show_archive
            ORDER BY archived_at DESC, id ASC
            """
        ).fetchall()
        records = (
            map_archive_record(
                r["data"], r["archived_at"], r["created_at"], r["deleted_at"], self._clock
            )
            for r in rows
        )
        return [r for r in records if r is not None]

    def get_archived_show(self, show_id: str) -> dict[str, Any] | None:
        if not show_id:
            return None
        self.reconcile()
        row = self._db.execute(
            """
            SELECT data, archived_at, created_at, deleted_at FROM show_archive
            WHERE id = ?
            """,
            (show_id,),
        ).fetchone()
        if row is None:
            return None
        return map_archive_record(
            row["data"], row["archived_at"], row["created_at"], row["deleted_at"], self._clock
        )

    # -----------------------------------------------------------------------
    # Staff
    # -----------------------------------------------------------------------

    def _write_staff(self, staff: dict[str, list[str]]) -> None:
        now = self._clock()
        with self._db:
            self._db.execute("DELETE FROM staff")
            self._db.execute("DELETE FROM monkey_leads")
            self._db.executemany(
                "INSERT INTO staff (id, name, role, created_at) VALUES (?, ?, ?, ?)",
                [(new_id(), name, "crew", now) for name in staff["crew"]]
                + [(new_id(), name, "pilot", now) for name in staff["pilots"]],
            )
            self._db.executemany(
                "INSERT INTO monkey_leads (id, name, created_at) VALUES (?, ?, ?)",
                [(new_id(), name, now) for name in staff["monkeyLeads"]],
            )

    def get_staff(self) -> dict[str, list[str]]:
        crew, pilots = [], []
        for row in self._db.execute("SELECT name, role FROM staff"):
            (crew if row["role"] == "crew" else pilots).append(row["name"])
        leads = [row["name"] for row in self._db.execute("SELECT name FROM monkey_leads")]
        return normalize_staff({"crew": crew, "pilots": pilots, "monkeyLeads": leads})

    def replace_staff(self, lists: dict[str, Any]) -> dict[str, list[str]]:
        """Replace all three staff pools; a missing pool becomes empty."""
        staff = normalize_staff(lists)
        self._write_staff(staff)
        self._persist_database()
        return self.get_staff()
