"""Unit test fixtures: a controllable clock and a file-backed store."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from show_tracker.sql_provider import SqlProvider

# 2024-07-04T12:00:00Z
BASE_MS = 1720094400000


class FakeClock:
    def __init__(self, now: int = BASE_MS) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def dispatcher():
    d = MagicMock()
    d.dispatch_show_event.return_value = {"success": True, "dispatched": 1}
    return d


@pytest.fixture
def store(tmp_path, clock, dispatcher):
    provider = SqlProvider(
        {"filename": str(tmp_path / "db" / "shows.sqlite")},
        dispatcher=dispatcher,
        clock=clock,
    )
    provider.init()
    yield provider
    provider.dispose()


def _show_payload(**overrides):
    payload = {
        "date": "2024-07-04",
        "time": "21:00",
        "label": "Demo",
        "leadPilot": "Alex",
        "monkeyLead": "Nazar",
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def show_payload():
    return _show_payload
