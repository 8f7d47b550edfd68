"""Unit tests for show_tracker.webhook (HTTP layer mocked)."""

from __future__ import annotations

import logging
from unittest.mock import MagicMock

import pytest
import requests

from show_tracker.export import EXPORT_COLUMNS
from show_tracker.models import build_entry, build_new_show
from show_tracker.webhook import (
    SECRET_HEADER,
    WebhookDispatcher,
    build_archived_entry_payload,
    normalize_header_list,
    normalize_webhook_config,
)

URL = "https://hooks.example.test/drone"


def _resp(status: int) -> MagicMock:
    return MagicMock(status_code=status)


def _session(*statuses) -> MagicMock:
    session = MagicMock()
    session.request.side_effect = [
        s if isinstance(s, Exception) else _resp(s) for s in statuses
    ]
    return session


def _dispatcher(session, **config) -> WebhookDispatcher:
    d = WebhookDispatcher(session=session, clock=lambda: 1720094400000)
    d._config = normalize_webhook_config({"enabled": True, "url": URL, **config})
    return d


def _methods(session) -> list[str]:
    return [c.args[0] for c in session.request.call_args_list]


SHOW = {
    "id": "s1",
    "date": "2024-07-04",
    "time": "21:00",
    "label": "Show 3",
    "crew": ["Alex"],
    "leadPilot": "Alex",
    "monkeyLead": "Nazar",
    "notes": "",
    "entries": [
        {"id": "e1", "unitId": "M-1", "operator": "Taylor", "planned": "Yes",
         "launched": "No", "commandRx": "yes", "primaryIssue": "GPS", "subIssue": "Drift",
         "actions": ["Reboot"]},
        {"id": "e2", "unitId": "M-2", "operator": "Jordan", "planned": "No",
         "launched": "Yes", "commandRx": "", "status": "Completed"},
    ],
}


# ---------------------------------------------------------------------------
# Config normalization
# ---------------------------------------------------------------------------

class TestNormalizeConfig:
    def test_defaults(self):
        cfg = normalize_webhook_config(None)
        assert cfg == {
            "enabled": False, "url": "", "method": "POST", "secret": "",
            "headers": [], "timeoutMs": 8000,
        }

    def test_method_uppercased_and_timeout_clamped(self):
        cfg = normalize_webhook_config({"method": " put ", "timeoutMs": 10})
        assert cfg["method"] == "PUT"
        assert cfg["timeoutMs"] == 1000
        assert normalize_webhook_config({"timeoutMs": 10**9})["timeoutMs"] == 60000
        assert normalize_webhook_config({"timeoutMs": "abc"})["timeoutMs"] == 8000

    def test_header_shapes(self):
        assert normalize_header_list({"X-A": 1}) == [{"name": "X-A", "value": "1"}]
        assert normalize_header_list(["X-B: two", "junk", ": nameless"]) == [
            {"name": "X-B", "value": "two"}
        ]
        assert normalize_header_list([{"key": "X-C", "value": None}, {"value": "x"}]) == [
            {"name": "X-C", "value": ""}
        ]


# ---------------------------------------------------------------------------
# Headers
# ---------------------------------------------------------------------------

class TestRequestHeaders:
    def test_secret_adds_header_and_bearer(self):
        d = _dispatcher(MagicMock(), secret="s3cret")
        headers = d.build_request_headers()
        assert headers["Content-Type"] == "application/json"
        assert headers[SECRET_HEADER] == "s3cret"
        assert headers["Authorization"] == "Bearer s3cret"

    def test_custom_authorization_wins(self):
        d = _dispatcher(MagicMock(), secret="s3cret", headers=[{"name": "authorization", "value": "Basic x"}])
        headers = d.build_request_headers()
        assert headers["authorization"] == "Basic x"
        assert "Authorization" not in headers

    def test_no_secret_no_auth(self):
        headers = _dispatcher(MagicMock()).build_request_headers(content_type=False)
        assert headers == {}


# ---------------------------------------------------------------------------
# Handshake
# ---------------------------------------------------------------------------

class TestHandshake:
    def test_disabled_makes_no_request(self):
        session = MagicMock()
        d = WebhookDispatcher({"enabled": False, "url": URL}, session=session)
        assert d.get_status()["state"] == "disabled"
        session.request.assert_not_called()

    def test_blank_url_is_disabled(self):
        session = MagicMock()
        d = WebhookDispatcher({"enabled": True, "url": "  "}, session=session)
        assert d.get_status()["state"] == "disabled"
        assert d.enabled is False
        session.request.assert_not_called()

    def test_head_ok(self):
        session = _session(204)
        status = _dispatcher(session).handshake()
        assert status["state"] == "ok"
        assert status["lastStatus"] == 204
        assert _methods(session) == ["HEAD"]

    def test_method_not_allowed_falls_through(self):
        session = _session(405, 501, 200)
        status = _dispatcher(session).handshake()
        assert status["state"] == "ok"
        assert _methods(session) == ["HEAD", "OPTIONS", "GET"]

    def test_auth_challenge_counts_as_reachable(self):
        session = _session(401)
        assert _dispatcher(session).handshake()["state"] == "ok"

    def test_server_error_stops(self):
        session = _session(500)
        status = _dispatcher(session).handshake()
        assert status["state"] == "error"
        assert status["errorCode"] == "HTTP_500"
        assert _methods(session) == ["HEAD"]

    def test_all_methods_time_out(self):
        session = _session(requests.Timeout("t"), requests.Timeout("t"), requests.Timeout("t"))
        status = _dispatcher(session).handshake()
        assert status["state"] == "error"
        assert status["errorCode"] == "ETIMEDOUT"
        assert session.request.call_count == 3

    def test_connection_error_then_ok(self):
        session = _session(requests.ConnectionError("refused"), 200)
        assert _dispatcher(session).handshake()["state"] == "ok"

    def test_no_redirect_following(self):
        session = _session(302)
        d = _dispatcher(session, timeoutMs=2500)
        assert d.handshake()["state"] == "ok"
        kwargs = session.request.call_args.kwargs
        assert kwargs["allow_redirects"] is False
        assert kwargs["timeout"] == 2.5

    def test_set_config_runs_handshake(self):
        session = _session(200)
        d = WebhookDispatcher(session=session)
        status = d.set_webhook_config({"enabled": True, "url": URL, "secret": "x"})
        assert status["state"] == "ok"
        assert status["hasSecret"] is True
        assert status["url"] == URL


# ---------------------------------------------------------------------------
# Entry events
# ---------------------------------------------------------------------------

class TestDispatchEntryEvent:
    def test_payload_shape(self):
        session = _session(200)
        d = _dispatcher(session)
        entry = {**SHOW["entries"][1], "delaySec": None}
        result = d.dispatch_entry_event("entry.created", SHOW, entry)
        assert result == {"success": True, "status": 200}

        kwargs = session.request.call_args.kwargs
        payload = kwargs["json"]
        assert session.request.call_args.args == ("POST", URL)
        assert payload["event"] == "entry.created"
        assert payload["schemaVersion"] == 2
        assert payload["dispatchedAt"] == "2024-07-04T12:00:00.000Z"
        assert payload["table"]["columns"] == list(EXPORT_COLUMNS)
        row = payload["table"]["row"]
        assert row[12] == "Completed"
        assert row[13] == ""
        assert payload["csv"]["header"] == list(EXPORT_COLUMNS)
        assert payload["message"]["unitId"] == "M-2"
        assert payload["show"] == {
            "id": "s1", "label": "Show 3", "date": "2024-07-04", "time": "21:00", "crew": ["Alex"],
        }
        assert payload["entry"]["actions"] == []

    def test_completed_entry_blanks_primary_issue(self):
        show = build_new_show({
            "date": "2024-07-04", "time": "21:00", "label": "Demo",
            "leadPilot": "Alex", "monkeyLead": "Nazar",
        })
        entry = build_entry({
            "unitId": "Drone-01", "planned": "Yes", "launched": "Yes",
            "status": "Completed", "operator": "Alex", "primaryIssue": "GPS",
        })
        session = _session(200)
        _dispatcher(session).dispatch_entry_event("entry.created", show, entry)
        row = session.request.call_args.kwargs["json"]["table"]["row"]
        assert row[12] == "Completed"
        assert row[14] == ""
        assert row[13] == ""

    def test_failure_result(self):
        session = _session(503)
        d = _dispatcher(session)
        result = d.dispatch_entry_event("entry.updated", SHOW, SHOW["entries"][0])
        assert result["success"] is False
        assert result["status"] == 503
        assert result["errorCode"] == "HTTP_503"
        status = d.get_status()
        assert status["state"] == "error"
        assert status["lastEvent"] == "entry.updated"

    def test_transport_error_never_raises(self):
        session = _session(requests.ConnectionError("down"))
        result = _dispatcher(session).dispatch_entry_event("entry.created", SHOW, {})
        assert result["success"] is False
        assert result["errorCode"] == "ConnectionError"

    def test_disabled_skips_and_logs_once(self, caplog):
        session = MagicMock()
        d = WebhookDispatcher({"enabled": False}, session=session)
        with caplog.at_level(logging.INFO, logger="show_tracker.webhook"):
            first = d.dispatch_entry_event("entry.created", SHOW, {})
            second = d.dispatch_entry_event("entry.created", SHOW, {})
        assert first == second == {"skipped": True, "reason": "webhook disabled"}
        assert len([r for r in caplog.records if "skipped" in r.getMessage()]) == 1
        session.request.assert_not_called()

    def test_missing_url_reason(self):
        d = WebhookDispatcher({"enabled": True, "url": ""}, session=MagicMock())
        assert d.dispatch_entry_event("entry.created", SHOW, {})["reason"] == "webhook URL not configured"


# ---------------------------------------------------------------------------
# Show events
# ---------------------------------------------------------------------------

class TestDispatchShowEvent:
    def test_archived_fans_out_per_entry(self):
        session = _session(200, 200)
        d = _dispatcher(session)
        meta = {"trigger": "auto-archive", "totalShows": 1, "showIndex": 0}
        result = d.dispatch_show_event("show.archived", SHOW, meta)

        assert result["success"] is True
        assert result["dispatched"] == 2
        assert result["failed"] == 0
        payloads = [c.kwargs["json"] for c in session.request.call_args_list]
        assert payloads[0] == {
            "showDate": "2024-07-04",
            "showTime": "21:00",
            "showNumber": "Show 3",
            "leadPilot": "Alex",
            "monkeyLead": "Nazar",
            "operator": "Taylor",
            "monkeyId": "M-1",
            "planned": True,
            "launched": False,
            "commandReceived": True,
            "primaryIssue": "GPS",
            "subIssue": "Drift",
            "meta": meta,
        }
        assert payloads[1]["monkeyId"] == "M-2"
        assert payloads[1]["commandReceived"] is False

    def test_archived_partial_failure(self):
        session = _session(200, 500)
        result = _dispatcher(session).dispatch_show_event("show.archived", SHOW)
        assert result["success"] is False
        assert result["dispatched"] == 1
        assert result["failed"] == 1
        assert result["error"] == "HTTP 500"
        assert "meta" not in session.request.call_args_list[0].kwargs["json"]

    def test_archived_without_entries_sends_nothing(self):
        session = MagicMock()
        result = _dispatcher(session).dispatch_show_event("show.archived", {**SHOW, "entries": []})
        assert result["success"] is True
        assert result["dispatched"] == 0
        session.request.assert_not_called()

    def test_other_show_event_single_payload(self):
        session = _session(200)
        result = _dispatcher(session).dispatch_show_event("show.updated", SHOW, {"source": "ui"})
        assert result["success"] is True
        payload = session.request.call_args.kwargs["json"]
        assert payload["event"] == "show.updated"
        assert len(payload["table"]["rows"]) == 2
        assert len(payload["csv"]["rows"]) == 2
        assert payload["show"]["label"] == "Show 3"
        assert payload["message"]["show"]["id"] == "s1"
        assert payload["meta"] == {"source": "ui"}

    @pytest.mark.parametrize("value, expected", [("Yes", True), ("no", False), (None, False)])
    def test_archived_booleans(self, value, expected):
        payload = build_archived_entry_payload(SHOW, {"planned": value})
        assert payload["planned"] is expected
