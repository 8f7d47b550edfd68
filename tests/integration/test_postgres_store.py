"""Integration tests for the PostgreSQL engine (real server)."""

from __future__ import annotations

import uuid
from unittest.mock import MagicMock

import psycopg
import pytest
from psycopg.types.json import Jsonb

from show_tracker.lifecycle import ARCHIVE_AFTER_MS
from show_tracker.postgres_provider import PostgresProvider
from show_tracker.shared import ValidationError

HOUR = 60 * 60 * 1000

SHOW = {
    "date": "2024-07-04",
    "time": "21:00",
    "label": "Demo",
    "leadPilot": "Alex",
    "monkeyLead": "Nazar",
}


@pytest.fixture
def dispatcher():
    d = MagicMock()
    d.dispatch_show_event.return_value = {"success": True, "dispatched": 1}
    return d


@pytest.fixture
def pg_store(pg_config, clock, dispatcher):
    provider = PostgresProvider(pg_config, dispatcher=dispatcher, clock=clock, environ={})
    provider.init()
    yield provider
    provider.dispose()


def _conn(pg_config, dbname=None):
    return psycopg.connect(
        host=pg_config["host"],
        port=pg_config["port"],
        dbname=dbname or pg_config["database"],
        user=pg_config["user"],
        password=pg_config["password"],
        autocommit=True,
    )


# ---------------------------------------------------------------------------
# Bootstrap
# ---------------------------------------------------------------------------

class TestBootstrap:
    def test_tables_created(self, pg_store, pg_config):
        with _conn(pg_config) as conn:
            rows = conn.execute(
                "SELECT table_name FROM information_schema.tables WHERE table_schema = 'public'"
            ).fetchall()
        assert {"shows", "show_archive", "staff", "monkey_leads"} <= {r[0] for r in rows}

    def test_schema_prefix(self, pg_config, clock):
        provider = PostgresProvider({**pg_config, "schema": "ops"}, clock=clock, environ={})
        provider.init()
        try:
            provider.create_show(SHOW)
            assert provider.get_storage_metadata()["schema"] == "ops"
        finally:
            provider.dispose()
        with _conn(pg_config) as conn:
            count = conn.execute("SELECT COUNT(*) FROM ops.shows").fetchone()[0]
            index = conn.execute(
                "SELECT 1 FROM pg_indexes WHERE indexname = 'ops_shows_updated_at_idx'"
            ).fetchone()
        assert count == 1
        assert index is not None

    def test_init_twice_is_safe(self, pg_store):
        show = pg_store.create_show(SHOW)
        pg_store.init()
        assert pg_store.get_show(show["id"]) == show

    def test_missing_database_is_created(self, pg_config, clock):
        dbname = f"show_tracker_{uuid.uuid4().hex[:8]}"
        provider = PostgresProvider({**pg_config, "database": dbname}, clock=clock, environ={})
        provider.init()
        try:
            assert provider.list_shows() == []
            assert provider.get_staff()["pilots"] == ["Alex", "Jordan", "Taylor"]
        finally:
            provider.dispose()
        with _conn(pg_config) as conn:
            conn.execute(f'DROP DATABASE "{dbname}"')


# ---------------------------------------------------------------------------
# CRUD
# ---------------------------------------------------------------------------

class TestCrud:
    def test_show_round_trip(self, pg_store):
        show = pg_store.create_show({**SHOW, "crew": ["nazar", "Alex"], "notes": "n"})
        assert pg_store.get_show(show["id"]) == show
        assert list(pg_store.get_show(show["id"])) == list(show)

    def test_daily_limit(self, pg_store):
        for i in range(5):
            pg_store.create_show({**SHOW, "label": f"S{i}"})
        with pytest.raises(ValidationError, match="Daily show limit reached"):
            pg_store.create_show(SHOW)

    def test_entries(self, pg_store, clock):
        show = pg_store.create_show(SHOW)
        clock.advance(1000)
        entry = pg_store.add_entry(show["id"], {"unitId": "M-1", "operator": "Taylor", "delaySec": "4"})
        assert entry["delaySec"] == 4
        with pytest.raises(ValidationError):
            pg_store.add_entry(show["id"], {"operator": "TAYLOR"})
        updated = pg_store.update_entry(show["id"], entry["id"], {"status": "Completed"})
        assert pg_store.get_show(show["id"])["entries"] == [updated]
        assert pg_store.delete_entry(show["id"], entry["id"]) is True
        assert pg_store.get_show(show["id"])["entries"] == []

    def test_update_and_list_order(self, pg_store, clock):
        a = pg_store.create_show({**SHOW, "label": "A"})
        clock.advance(1000)
        b = pg_store.create_show({**SHOW, "label": "B"})
        clock.advance(1000)
        pg_store.update_show(a["id"], {"notes": "x"})
        assert [s["id"] for s in pg_store.list_shows()] == [a["id"], b["id"]]

    def test_staff_replace(self, pg_store):
        result = pg_store.replace_staff({"pilots": ["kim", "Ari"]})
        assert result == {"crew": [], "pilots": ["Ari", "kim"], "monkeyLeads": []}


# ---------------------------------------------------------------------------
# Archival
# ---------------------------------------------------------------------------

class TestArchival:
    def test_group_archival_and_dispatch(self, pg_store, clock, dispatcher):
        first = pg_store.create_show(SHOW)
        clock.advance(11 * HOUR)
        other = pg_store.create_show({**SHOW, "date": "2024-07-05"})
        clock.advance(2 * HOUR)

        assert [s["id"] for s in pg_store.list_shows()] == [other["id"]]
        record = pg_store.get_archived_show(first["id"])
        assert record["archivedAt"] == clock.now
        assert "deletedAt" not in record
        calls = dispatcher.dispatch_show_event.call_args_list
        assert [(c.args[0], c.args[1]["id"]) for c in calls] == [("show.archived", first["id"])]

    def test_boundary(self, pg_store, clock):
        show = pg_store.create_show(SHOW)
        clock.advance(ARCHIVE_AFTER_MS - 1)
        assert pg_store.get_show(show["id"]) is not None
        clock.advance(1)
        assert pg_store.get_show(show["id"]) is None

    def test_delete_and_archive_now(self, pg_store, clock, dispatcher):
        a = pg_store.create_show(SHOW)
        b = pg_store.create_show({**SHOW, "label": "B"})
        clock.advance(500)
        deleted = pg_store.delete_show(a["id"])
        archived = pg_store.archive_show_now(b["id"])
        assert deleted["deletedAt"] == deleted["archivedAt"] == clock.now
        assert "deletedAt" not in archived
        assert pg_store.archive_show_now(b["id"]) == archived
        assert pg_store.delete_show(a["id"]) is None
        dispatcher.dispatch_show_event.assert_not_called()

    def test_undated_show_never_ages(self, pg_store, pg_config, clock):
        with _conn(pg_config) as conn:
            conn.execute(
                "INSERT INTO shows (id, data, updated_at) VALUES (%s, %s, now())",
                ("undated", Jsonb({"id": "undated", "date": "2024-07-04"})),
            )
        clock.advance(13 * HOUR)
        assert pg_store.reconcile().archived == 0
        assert pg_store.get_show("undated") is not None

    def test_retention_purge(self, pg_store, clock):
        show = pg_store.create_show(SHOW)
        pg_store.archive_show_now(show["id"])
        clock.advance(60 * 24 * HOUR)
        assert [r["id"] for r in pg_store.list_archived_shows()] == [show["id"]]
        clock.advance(2 * 24 * HOUR)
        assert pg_store.list_archived_shows() == []

    def test_malformed_row_skipped(self, pg_store, pg_config):
        good = pg_store.create_show(SHOW)
        with _conn(pg_config) as conn:
            conn.execute(
                "INSERT INTO shows (id, data, updated_at) VALUES ('bad', '[]'::jsonb, now())"
            )
        assert [s["id"] for s in pg_store.list_shows()] == [good["id"]]
        assert pg_store.delete_show("bad") is None
