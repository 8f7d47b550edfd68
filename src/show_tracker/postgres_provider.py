"""Relational-server storage engine (PostgreSQL via psycopg 3).

Same envelope layout as the file engine, with JSONB documents and
TIMESTAMPTZ bookkeeping columns. Every table and index can live under an
optional schema. Multi-statement transitions run in one transaction.

init() creates the target database when it is missing by connecting to
an administrative database first.
"""

from __future__ import annotations

import logging
import os
import re
from contextlib import contextmanager
from typing import Any, Iterator, Mapping

import psycopg
from psycopg import sql
from psycopg.conninfo import conninfo_to_dict, make_conninfo
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool

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
from show_tracker.normalize import clean_text, ms_to_datetime, normalize_staff
from show_tracker.provider import DEFAULT_STAFF
from show_tracker.shared import (
    Clock,
    ProviderNotInitializedError,
    ReconcileCounters,
    now_ms,
)

log = logging.getLogger(__name__)

STORAGE_LABEL = "PostgreSQL v1"
IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 5432
DEFAULT_DATABASE = "show_tracker"
DEFAULT_USER = "postgres"
DEFAULT_PASSWORD = "postgres"
DEFAULT_ADMIN_DATABASE = "postgres"

_URL_ENV = ("DATABASE_URL", "POSTGRES_URL", "PGURL")
_PARAM_ENV = {
    "host": ("PGHOST", "POSTGRES_HOST"),
    "port": ("PGPORT", "POSTGRES_PORT"),
    "dbname": ("PGDATABASE", "POSTGRES_DB"),
    "user": ("PGUSER", "POSTGRES_USER"),
    "password": ("PGPASSWORD", "POSTGRES_PASSWORD"),
    "sslmode": ("PGSSLMODE", "POSTGRES_SSLMODE"),
}
# config key -> libpq keyword
_CONFIG_KEYS = {
    "host": "host",
    "port": "port",
    "database": "dbname",
    "user": "user",
    "password": "password",
    "sslmode": "sslmode",
}


# ---------------------------------------------------------------------------
# Identifiers
# ---------------------------------------------------------------------------

def sanitize_identifier(value: Any) -> str | None:
    """Return a trimmed SQL identifier, None for blank, ValueError if unsafe."""
    if not isinstance(value, str):
        return None
    v = value.strip()
    if not v:
        return None
    if not IDENTIFIER_RE.match(v):
        raise ValueError(f"Invalid identifier: {v}")
    return v


# ---------------------------------------------------------------------------
# Connection settings
# ---------------------------------------------------------------------------

def _first_env(environ: Mapping[str, str], names: tuple[str, ...]) -> str | None:
    for name in names:
        v = (environ.get(name) or "").strip()
        if v:
            return v
    return None


def build_conninfo(config: Mapping[str, Any], environ: Mapping[str, str] | None = None) -> str:
    """Build a libpq conninfo string from config, then env, then defaults.

    Explicit config keys override a connection string. Without a
    connection string, PG*/POSTGRES_* variables fill gaps and the local
    defaults fill the rest.
    """
    environ = os.environ if environ is None else environ
    base = clean_text(config.get("connectionString")) or _first_env(environ, _URL_ENV) or ""

    params: dict[str, Any] = {}
    for key, keyword in _CONFIG_KEYS.items():
        value = config.get(key)
        if value is not None and value != "":
            params[keyword] = str(value)

    if not base:
        for keyword, names in _PARAM_ENV.items():
            if keyword not in params:
                env_value = _first_env(environ, names)
                if env_value:
                    params[keyword] = env_value
        if "host" not in params:
            params.setdefault("host", DEFAULT_HOST)
            params.setdefault("port", str(DEFAULT_PORT))
            params.setdefault("dbname", DEFAULT_DATABASE)
            params.setdefault("user", DEFAULT_USER)
            params.setdefault("password", DEFAULT_PASSWORD)
        params.setdefault("dbname", DEFAULT_DATABASE)

    timeout_ms = config.get("connectionTimeoutMillis")
    if isinstance(timeout_ms, (int, float)) and timeout_ms > 0:
        params["connect_timeout"] = str(max(1, int(timeout_ms // 1000)))
    statement_timeout = config.get("statement_timeout")
    if isinstance(statement_timeout, (int, float)) and statement_timeout > 0:
        params["options"] = f"-c statement_timeout={int(statement_timeout)}"
    return make_conninfo(base, **params)


def admin_database_name(config: Mapping[str, Any], environ: Mapping[str, str] | None = None) -> str:
    environ = os.environ if environ is None else environ
    return (
        clean_text(config.get("adminDatabase"))
        or _first_env(environ, ("PGADMIN_DB", "PGDEFAULT_DB"))
        or DEFAULT_ADMIN_DATABASE
    )


def _is_missing_database(exc: psycopg.Error) -> bool:
    if isinstance(exc, psycopg.errors.InvalidCatalogName) or exc.sqlstate == "3D000":
        return True
    # libpq connection failures carry no SQLSTATE, only the server message
    message = str(exc)
    return "database" in message and "does not exist" in message


# ---------------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------------

class PostgresProvider:
    """StorageProvider backed by a PostgreSQL database."""

    def __init__(
        self,
        config: dict[str, Any] | None = None,
        dispatcher: Any = None,
        clock: Clock = now_ms,
        staff_defaults: dict[str, Any] | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self.config = dict(config or {})
        self.schema = sanitize_identifier(self.config.get("schema"))
        self.conninfo = build_conninfo(self.config, environ)
        self.admin_database = admin_database_name(self.config, environ)
        self._dispatcher = dispatcher
        self._clock = clock
        self._staff_defaults = normalize_staff(staff_defaults or DEFAULT_STAFF)
        self._pool: ConnectionPool | None = None
        self._reported_malformed: set[str] = set()
        self.last_reconcile = ReconcileCounters()

    # -----------------------------------------------------------------------
    # Identifiers
    # -----------------------------------------------------------------------

    def _table(self, name: str) -> sql.Identifier:
        if not IDENTIFIER_RE.match(name):
            raise ValueError(f"Invalid table name: {name}")
        if self.schema:
            return sql.Identifier(self.schema, name)
        return sql.Identifier(name)

    def _index(self, name: str) -> sql.Identifier:
        base = f"{self.schema or 'public'}_{name}".lower()
        if not IDENTIFIER_RE.match(base):
            raise ValueError(f"Invalid index name: {base}")
        return sql.Identifier(base)

    def _q(self, template: str, **tables: str) -> sql.Composed:
        return sql.SQL(template).format(**{k: self._table(v) for k, v in tables.items()})

    # -----------------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------------

    def init(self) -> None:
        """Create the database if needed, open the pool, bootstrap, reconcile."""
        if self._pool is not None:
            self.dispose()
        self._ensure_database_exists()
        params = conninfo_to_dict(self.conninfo)
        pool = ConnectionPool(
            self.conninfo,
            min_size=int(self.config.get("min") or 1),
            max_size=int(self.config.get("max") or 10),
            kwargs={"row_factory": dict_row},
            open=False,
            name="show-tracker",
        )
        timeout_ms = self.config.get("connectionTimeoutMillis") or 5000
        try:
            pool.open(wait=True, timeout=max(1.0, timeout_ms / 1000))
            with pool.connection() as conn:
                conn.execute("SELECT 1")
        except Exception:
            pool.close()
            raise
        self._pool = pool
        log.info(
            "postgres store ready: %s@%s/%s schema=%s",
            params.get("user"), params.get("host"), params.get("dbname"),
            self.schema or "public",
        )
        self._ensure_schema()
        self._seed_staff()
        self.last_reconcile = self.reconcile()

    def dispose(self) -> None:
        if self._pool is not None:
            pool, self._pool = self._pool, None
            pool.close()

    def get_storage_label(self) -> str:
        return STORAGE_LABEL

    def get_storage_metadata(self) -> dict[str, Any]:
        params = conninfo_to_dict(self.conninfo)
        port = params.get("port")
        return {
            "label": self.get_storage_label(),
            "driver": "postgres",
            "host": params.get("host"),
            "port": int(port) if port and str(port).isdigit() else port,
            "database": params.get("dbname"),
            "user": params.get("user"),
            "schema": self.schema or "public",
        }

    @property
    def _db(self) -> ConnectionPool:
        if self._pool is None:
            raise ProviderNotInitializedError("PostgresProvider.init() has not been called")
        return self._pool

    @contextmanager
    def _transaction(self) -> Iterator[psycopg.Cursor]:
        """One pooled connection, one transaction; rolled back on error."""
        with self._db.connection() as conn:
            with conn.transaction():
                with conn.cursor() as cur:
                    yield cur

    def _fetchall(self, query: sql.Composable, params: tuple = ()) -> list[dict[str, Any]]:
        with self._db.connection() as conn:
            return conn.execute(query, params).fetchall()

    def _fetchone(self, query: sql.Composable, params: tuple = ()) -> dict[str, Any] | None:
        with self._db.connection() as conn:
            return conn.execute(query, params).fetchone()

    # -----------------------------------------------------------------------
    # Database and schema bootstrap
    # -----------------------------------------------------------------------

    def _ensure_database_exists(self) -> None:
        dbname = conninfo_to_dict(self.conninfo).get("dbname")
        if not dbname:
            return
        try:
            with psycopg.connect(self.conninfo, autocommit=True) as conn:
                conn.execute("SELECT 1")
        except psycopg.Error as exc:
            if not _is_missing_database(exc):
                raise
            self._create_database(dbname)

    def _create_database(self, dbname: str) -> None:
        admin_conninfo = make_conninfo(self.conninfo, dbname=self.admin_database)
        log.info("database %s missing; creating via %s", dbname, self.admin_database)
        try:
            with psycopg.connect(admin_conninfo, autocommit=True) as conn:
                conn.execute(sql.SQL("CREATE DATABASE {}").format(sql.Identifier(dbname)))
        except psycopg.errors.DuplicateDatabase:
            log.info("database %s created concurrently", dbname)

    def _ensure_schema(self) -> None:
        with self._transaction() as cur:
            if self.schema:
                cur.execute(
                    sql.SQL("CREATE SCHEMA IF NOT EXISTS {}").format(sql.Identifier(self.schema))
                )
            cur.execute(self._q(
                """
                CREATE TABLE IF NOT EXISTS {shows} (
                    id TEXT PRIMARY KEY,
                    data JSONB NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL
                )
                """,
                shows="shows",
            ))
            cur.execute(self._q(
                """
                CREATE TABLE IF NOT EXISTS {archive} (
                    id TEXT PRIMARY KEY,
                    data JSONB NOT NULL,
                    show_date TEXT,
                    created_at TIMESTAMPTZ,
                    archived_at TIMESTAMPTZ NOT NULL,
                    deleted_at TIMESTAMPTZ
                )
                """,
                archive="show_archive",
            ))
            cur.execute(self._q(
                "ALTER TABLE {archive} ADD COLUMN IF NOT EXISTS show_date TEXT",
                archive="show_archive",
            ))
            cur.execute(self._q(
                "ALTER TABLE {archive} ADD COLUMN IF NOT EXISTS deleted_at TIMESTAMPTZ",
                archive="show_archive",
            ))
            cur.execute(self._q(
                """
                CREATE TABLE IF NOT EXISTS {staff} (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    role TEXT NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL
                )
                """,
                staff="staff",
            ))
            cur.execute(self._q(
                """
                CREATE TABLE IF NOT EXISTS {leads} (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL
                )
                """,
                leads="monkey_leads",
            ))
            cur.execute(sql.SQL("CREATE INDEX IF NOT EXISTS {} ON {} (updated_at DESC)").format(
                self._index("shows_updated_at_idx"), self._table("shows"),
            ))
            cur.execute(sql.SQL("CREATE INDEX IF NOT EXISTS {} ON {} (archived_at DESC)").format(
                self._index("show_archive_archived_at_idx"), self._table("show_archive"),
            ))

    def _seed_staff(self) -> None:
        staff_rows = self._fetchone(self._q("SELECT COUNT(*) AS n FROM {t}", t="staff"))
        lead_rows = self._fetchone(self._q("SELECT COUNT(*) AS n FROM {t}", t="monkey_leads"))
        if staff_rows["n"] or lead_rows["n"]:
            return
        self._write_staff(self._staff_defaults)
        log.info("seeded default staff lists")

    # -----------------------------------------------------------------------
    # Row helpers
    # -----------------------------------------------------------------------

    def _decode_show(
        self, show_id: str, data: Any, fill_timestamps: bool = True
    ) -> dict[str, Any] | None:
        doc = decode_document(data)
        if doc is None:
            if show_id not in self._reported_malformed:
                self._reported_malformed.add(show_id)
                log.warning("skipping malformed show row %s", show_id)
            return None
        # JSONB does not keep key order; rebuild the canonical shape
        return normalize_show(doc, self._clock, fill_timestamps)

    def _upsert_show(self, cur: psycopg.Cursor, show: dict[str, Any]) -> None:
        cur.execute(
            self._q(
                """
                INSERT INTO {shows} (id, data, updated_at) VALUES (%s, %s, %s)
                ON CONFLICT (id) DO UPDATE SET
                    data = EXCLUDED.data,
                    updated_at = EXCLUDED.updated_at
                """,
                shows="shows",
            ),
            (show["id"], Jsonb(show), ms_to_datetime(show["updatedAt"])),
        )

    def _write_show(self, show: dict[str, Any]) -> None:
        with self._transaction() as cur:
            self._upsert_show(cur, show)

    def _archive(
        self,
        cur: psycopg.Cursor,
        show: dict[str, Any],
        archived_at: int,
        deleted_at: int | None,
    ) -> dict[str, Any]:
        record = build_archive_record(show, archived_at, deleted_at)
        cur.execute(
            self._q(
                """
                INSERT INTO {archive}
                    (id, data, show_date, created_at, archived_at, deleted_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                ON CONFLICT (id) DO UPDATE SET
                    data = EXCLUDED.data,
                    show_date = EXCLUDED.show_date,
                    created_at = EXCLUDED.created_at,
                    archived_at = EXCLUDED.archived_at,
                    deleted_at = EXCLUDED.deleted_at
                """,
                archive="show_archive",
            ),
            (
                record["id"],
                Jsonb(record),
                clean_text(record.get("date")),
                ms_to_datetime(record.get("createdAt")),
                ms_to_datetime(record["archivedAt"]),
                ms_to_datetime(record.get("deletedAt")),
            ),
        )
        cur.execute(self._q("DELETE FROM {shows} WHERE id = %s", shows="shows"), (show["id"],))
        return record

    def _map_archive_row(self, row: dict[str, Any]) -> dict[str, Any] | None:
        return map_archive_record(
            row["data"], row["archived_at"], row["created_at"], row["deleted_at"], self._clock
        )

    # -----------------------------------------------------------------------
    # Archival / retention
    # -----------------------------------------------------------------------

    def reconcile(self) -> ReconcileCounters:
        """Archive due date groups and purge expired archives in one
        transaction; notify only after it commits."""
        counters = ReconcileCounters()
        now = self._clock()
        archived: list[dict[str, Any]] = []
        with self._transaction() as cur:
            rows = cur.execute(self._q("SELECT id, data FROM {shows}", shows="shows")).fetchall()
            shows = [
                s for s in (
                    self._decode_show(r["id"], r["data"], fill_timestamps=False) for r in rows
                ) if s
            ]
            for show in select_due_for_archive(shows, now):
                archived.append(self._archive(cur, normalize_show(show, self._clock), now, None))
            archive_rows = cur.execute(
                self._q("SELECT id, data, created_at FROM {archive}", archive="show_archive")
            ).fetchall()
            expired = select_expired_archives(
                ((r["id"], r["data"], r["created_at"]) for r in archive_rows), now
            )
            if expired:
                cur.execute(
                    self._q("DELETE FROM {archive} WHERE id = ANY(%s)", archive="show_archive"),
                    (expired,),
                )
        counters.archived = len(archived)
        counters.purged = len(expired)
        if counters.mutated:
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
        rows = self._fetchall(
            self._q("SELECT id, data FROM {shows} ORDER BY updated_at DESC, id ASC", shows="shows")
        )
        shows = (self._decode_show(r["id"], r["data"]) for r in rows)
        return [s for s in shows if s is not None]

    def _select_show_row(self, show_id: str) -> dict[str, Any] | None:
        return self._fetchone(
            self._q("SELECT id, data FROM {shows} WHERE id = %s", shows="shows"), (show_id,)
        )

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
        with self._transaction() as cur:
            row = cur.execute(
                self._q("SELECT id, data FROM {shows} WHERE id = %s FOR UPDATE", shows="shows"),
                (show_id,),
            ).fetchone()
            if row is None:
                return None
            show = self._decode_show(row["id"], row["data"])
            if show is None:
                cur.execute(self._q("DELETE FROM {shows} WHERE id = %s", shows="shows"), (show_id,))
            else:
                now = self._clock()
                self._archive(cur, show, now, now)
        if show is None:
            return None
        return self.get_archived_show(show_id)

    def archive_show_now(self, show_id: str) -> dict[str, Any] | None:
        if not show_id:
            return None
        with self._transaction() as cur:
            row = cur.execute(
                self._q("SELECT id, data FROM {shows} WHERE id = %s FOR UPDATE", shows="shows"),
                (show_id,),
            ).fetchone()
            show = None if row is None else self._decode_show(row["id"], row["data"])
            if show is not None:
                self._archive(cur, show, self._clock(), None)
        if row is not None and show is None:
            return None
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
        rows = self._fetchall(self._q(
            """
            SELECT data, archived_at, created_at, deleted_at FROM {archive}
            ORDER BY archived_at DESC, id ASC
            """,
            archive="show_archive",
        ))
        records = (self._map_archive_row(r) for r in rows)
        return [r for r in records if r is not None]

    def get_archived_show(self, show_id: str) -> dict[str, Any] | None:
        if not show_id:
            return None
        self.reconcile()
        row = self._fetchone(
            self._q(
                "SELECT data, archived_at, created_at, deleted_at FROM {archive} WHERE id = %s",
                archive="show_archive",
            ),
            (show_id,),
        )
        return None if row is None else self._map_archive_row(row)

    # -----------------------------------------------------------------------
    # Staff
    # -----------------------------------------------------------------------

    def _write_staff(self, staff: dict[str, list[str]]) -> None:
        created = ms_to_datetime(self._clock())
        with self._transaction() as cur:
            cur.execute(self._q("DELETE FROM {t}", t="staff"))
            cur.execute(self._q("DELETE FROM {t}", t="monkey_leads"))
            staff_rows = [(new_id(), n, "crew", created) for n in staff["crew"]]
            staff_rows += [(new_id(), n, "pilot", created) for n in staff["pilots"]]
            if staff_rows:
                cur.executemany(
                    self._q(
                        "INSERT INTO {t} (id, name, role, created_at) VALUES (%s, %s, %s, %s)",
                        t="staff",
                    ),
                    staff_rows,
                )
            if staff["monkeyLeads"]:
                cur.executemany(
                    self._q("INSERT INTO {t} (id, name, created_at) VALUES (%s, %s, %s)", t="monkey_leads"),
                    [(new_id(), n, created) for n in staff["monkeyLeads"]],
                )

    def get_staff(self) -> dict[str, list[str]]:
        crew, pilots = [], []
        for row in self._fetchall(self._q("SELECT name, role FROM {t}", t="staff")):
            (crew if row["role"] == "crew" else pilots).append(row["name"])
        leads = [r["name"] for r in self._fetchall(self._q("SELECT name FROM {t}", t="monkey_leads"))]
        return normalize_staff({"crew": crew, "pilots": pilots, "monkeyLeads": leads})

    def replace_staff(self, lists: dict[str, Any]) -> dict[str, list[str]]:
        """Replace all three staff pools; a missing pool becomes empty."""
        self._write_staff(normalize_staff(lists))
        return self.get_staff()
