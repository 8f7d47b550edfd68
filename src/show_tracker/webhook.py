"""Outbound webhook delivery.

One WebhookDispatcher holds the active endpoint configuration, a
requests.Session and a status snapshot. Delivery is best-effort: every
public dispatch method returns a result dict and never raises.
"""

from __future__ import annotations

import logging
import time
from typing import Any

import requests

from show_tracker.export import (
    EXPORT_COLUMNS,
    build_csv_row,
    build_message_payload,
    build_table_row,
    row_values,
)
from show_tracker.normalize import clean_text, ms_to_iso, yes_no_to_bool
from show_tracker.shared import Clock, now_ms

log = logging.getLogger(__name__)

DEFAULT_WEBHOOK_CONFIG: dict[str, Any] = {
    "enabled": False,
    "url": "",
    "method": "POST",
    "secret": "",
    "headers": [],
    "timeoutMs": 8000,
}

SCHEMA_VERSION = 2
SECRET_HEADER = "X-Drone-Webhook-Secret"
HANDSHAKE_METHODS = ("HEAD", "OPTIONS", "GET")
MIN_TIMEOUT_MS = 1000
MAX_TIMEOUT_MS = 60000

# Statuses meaning "this method is not implemented here, try another"
_METHOD_UNSUPPORTED = (405, 501)
_AUTH_CHALLENGE = (401, 403)


# ---------------------------------------------------------------------------
# Config normalization
# ---------------------------------------------------------------------------

def normalize_header_list(headers: Any) -> list[dict[str, str]]:
    """Return headers as [{name, value}].

    Accepts a mapping, "Name: value" strings, or {name|key, value}
    mappings. Entries without a name are dropped.
    """
    if not headers:
        return []
    if isinstance(headers, dict):
        return [
            {"name": str(k).strip(), "value": "" if v is None else str(v)}
            for k, v in headers.items() if str(k).strip()
        ]
    if not isinstance(headers, list):
        return []
    result: list[dict[str, str]] = []
    for header in headers:
        if isinstance(header, str):
            name, sep, value = header.partition(":")
            if not sep or not name.strip():
                continue
            result.append({"name": name.strip(), "value": value.strip()})
        elif isinstance(header, dict):
            name = str(header.get("name") or header.get("key") or "").strip()
            if not name:
                continue
            value = header.get("value")
            result.append({"name": name, "value": "" if value is None else str(value)})
    return result


def _coerce_timeout(value: Any) -> int:
    try:
        timeout = int(float(value))
    except (TypeError, ValueError):
        return DEFAULT_WEBHOOK_CONFIG["timeoutMs"]
    return max(MIN_TIMEOUT_MS, min(MAX_TIMEOUT_MS, timeout))


def normalize_webhook_config(config: dict[str, Any] | None) -> dict[str, Any]:
    merged = {**DEFAULT_WEBHOOK_CONFIG, **(config or {})}
    return {
        "enabled": bool(merged.get("enabled")),
        "url": clean_text(merged.get("url")),
        "method": (clean_text(merged.get("method")) or "POST").upper(),
        "secret": clean_text(merged.get("secret")),
        "headers": normalize_header_list(merged.get("headers")),
        "timeoutMs": _coerce_timeout(merged.get("timeoutMs")),
    }


# ---------------------------------------------------------------------------
# Payload builders
# ---------------------------------------------------------------------------

def build_show_summary(show: dict[str, Any]) -> dict[str, Any]:
    crew = show.get("crew")
    return {
        "id": show.get("id") or "",
        "label": show.get("label") or "",
        "date": show.get("date") or "",
        "time": show.get("time") or "",
        "crew": crew if isinstance(crew, list) else [],
        "leadPilot": show.get("leadPilot") or "",
        "monkeyLead": show.get("monkeyLead") or "",
        "notes": show.get("notes") or "",
        "createdAt": show.get("createdAt"),
        "updatedAt": show.get("updatedAt"),
        "archivedAt": show.get("archivedAt"),
        "deletedAt": show.get("deletedAt"),
    }


def _entry_snapshot(entry: dict[str, Any]) -> dict[str, Any]:
    actions = entry.get("actions")
    return {**entry, "actions": actions if isinstance(actions, list) else []}


def show_entries(show: dict[str, Any] | None) -> list[dict[str, Any]]:
    entries = (show or {}).get("entries")
    if not isinstance(entries, list):
        return []
    return [_entry_snapshot(e) for e in entries if isinstance(e, dict)]


def build_archived_entry_payload(show: dict[str, Any], entry: dict[str, Any]) -> dict[str, Any]:
    """Flattened per-entry record sent for show.archived."""
    return {
        "showDate": show.get("date") or "",
        "showTime": show.get("time") or "",
        "showNumber": show.get("label") or "",
        "leadPilot": show.get("leadPilot") or "",
        "monkeyLead": show.get("monkeyLead") or "",
        "operator": entry.get("operator") or "",
        "monkeyId": entry.get("unitId") or "",
        "planned": yes_no_to_bool(entry.get("planned")),
        "launched": yes_no_to_bool(entry.get("launched")),
        "commandReceived": yes_no_to_bool(entry.get("commandRx")),
        "primaryIssue": entry.get("primaryIssue") or "",
        "subIssue": entry.get("subIssue") or "",
    }


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------

class WebhookDispatcher:
    """Holds one webhook target and delivers events to it."""

    def __init__(
        self,
        config: dict[str, Any] | None = None,
        session: requests.Session | None = None,
        clock: Clock = now_ms,
    ) -> None:
        self._session = session if session is not None else requests.Session()
        self._clock = clock
        self._config = normalize_webhook_config(None)
        self._last_skip_reason: str | None = None
        self._status: dict[str, Any] = {
            "state": "disabled",
            "lastStatus": None,
            "latencyMs": None,
            "error": None,
            "errorCode": None,
            "checkedAt": None,
            "lastEvent": None,
        }
        if config is not None:
            self.set_webhook_config(config)

    # -- configuration ------------------------------------------------------

    @property
    def config(self) -> dict[str, Any]:
        return dict(self._config)

    @property
    def enabled(self) -> bool:
        return bool(self._config["enabled"] and self._config["url"])

    def set_webhook_config(self, config: dict[str, Any] | None) -> dict[str, Any]:
        """Replace the active configuration and verify the endpoint."""
        self._config = normalize_webhook_config(config)
        self._last_skip_reason = None
        return self.handshake()

    def get_status(self) -> dict[str, Any]:
        return {
            **self._status,
            "enabled": self.enabled,
            "url": self._config["url"],
            "method": self._config["method"],
            "hasSecret": bool(self._config["secret"]),
            "headerCount": len(self._config["headers"]),
        }

    def build_request_headers(self, content_type: bool = True) -> dict[str, str]:
        headers: dict[str, str] = {}
        if content_type:
            headers["Content-Type"] = "application/json"
        secret = self._config["secret"]
        if secret:
            headers[SECRET_HEADER] = secret
        for header in self._config["headers"]:
            headers[header["name"]] = header["value"]
        has_auth = any(name.lower() == "authorization" for name in headers)
        if secret and not has_auth:
            headers["Authorization"] = f"Bearer {secret}"
        return headers

    # -- status -------------------------------------------------------------

    def _record(
        self,
        state: str,
        status: int | None = None,
        latency_ms: int | None = None,
        error: str | None = None,
        error_code: str | None = None,
        event: str | None = None,
    ) -> None:
        self._status.update(
            state=state,
            lastStatus=status,
            latencyMs=latency_ms,
            error=error,
            errorCode=error_code,
            checkedAt=self._clock(),
        )
        if event is not None:
            self._status["lastEvent"] = event

    def _skip_reason(self) -> str | None:
        if not self._config["enabled"]:
            return "webhook disabled"
        if not self._config["url"]:
            return "webhook URL not configured"
        return None

    def _skip(self, reason: str) -> dict[str, Any]:
        if reason != self._last_skip_reason:
            log.info("webhook dispatch skipped: %s", reason)
            self._last_skip_reason = reason
        return {"skipped": True, "reason": reason}

    # -- handshake ----------------------------------------------------------

    def handshake(self) -> dict[str, Any]:
        """Probe the endpoint with HEAD, OPTIONS then GET.

        Any status in [200, 400) or an auth challenge means reachable.
        405/501 and transport failures move on to the next method; any
        other status fails at once.
        """
        reason = self._skip_reason()
        if reason is not None:
            self._status.update(
                state="disabled", lastStatus=None, latencyMs=None,
                error=None, errorCode=None, checkedAt=self._clock(),
            )
            return self.get_status()

        url = self._config["url"]
        timeout = self._config["timeoutMs"] / 1000
        headers = self.build_request_headers(content_type=False)
        last: tuple[int | None, int | None, str, str] = (None, None, "handshake failed", "EHANDSHAKE")

        for method in HANDSHAKE_METHODS:
            started = time.monotonic()
            try:
                resp = self._session.request(
                    method, url, headers=headers, timeout=timeout, allow_redirects=False,
                )
            except requests.Timeout as exc:
                last = (None, _elapsed_ms(started), f"{method} timed out: {exc}", "ETIMEDOUT")
                log.debug("webhook handshake %s %s timed out", method, url)
                continue
            except requests.RequestException as exc:
                last = (None, _elapsed_ms(started), f"{method} failed: {exc}", type(exc).__name__)
                log.debug("webhook handshake %s %s failed: %s", method, url, exc)
                continue

            latency = _elapsed_ms(started)
            status = resp.status_code
            if 200 <= status < 400 or status in _AUTH_CHALLENGE:
                self._record("ok", status, latency)
                log.info("webhook handshake ok: %s %s -> %s (%d ms)", method, url, status, latency)
                return self.get_status()
            if status in _METHOD_UNSUPPORTED:
                last = (status, latency, f"{method} not supported (HTTP {status})", f"HTTP_{status}")
                continue
            self._record("error", status, latency, f"{method} returned HTTP {status}", f"HTTP_{status}")
            log.warning("webhook handshake failed: %s %s -> HTTP %s", method, url, status)
            return self.get_status()

        status, latency, error, code = last
        self._record("error", status, latency, error, code)
        log.warning("webhook handshake failed for %s: %s", url, error)
        return self.get_status()

    # -- delivery -----------------------------------------------------------

    def _send(self, event: str, payload: dict[str, Any]) -> dict[str, Any]:
        self._last_skip_reason = None
        url = self._config["url"]
        method = self._config["method"]
        started = time.monotonic()
        try:
            resp = self._session.request(
                method,
                url,
                json=payload,
                headers=self.build_request_headers(),
                timeout=self._config["timeoutMs"] / 1000,
                allow_redirects=False,
            )
        except requests.Timeout as exc:
            error = f"timed out after {self._config['timeoutMs']} ms: {exc}"
            self._record("error", None, _elapsed_ms(started), error, "ETIMEDOUT", event)
            log.warning("webhook %s to %s failed: %s", event, url, error)
            return {"success": False, "error": error, "errorCode": "ETIMEDOUT"}
        except requests.RequestException as exc:
            code = type(exc).__name__
            self._record("error", None, _elapsed_ms(started), str(exc), code, event)
            log.warning("webhook %s to %s failed: %s", event, url, exc)
            return {"success": False, "error": str(exc), "errorCode": code}

        latency = _elapsed_ms(started)
        status = resp.status_code
        if 200 <= status < 400:
            self._record("ok", status, latency, event=event)
            log.info("webhook %s delivered to %s: HTTP %s (%d ms)", event, url, status, latency)
            return {"success": True, "status": status}
        error = f"HTTP {status}"
        self._record("error", status, latency, error, f"HTTP_{status}", event)
        log.warning("webhook %s to %s rejected: HTTP %s", event, url, status)
        return {"success": False, "error": error, "status": status, "errorCode": f"HTTP_{status}"}

    def _envelope(self, event: str) -> dict[str, Any]:
        return {
            "event": event,
            "schemaVersion": SCHEMA_VERSION,
            "dispatchedAt": ms_to_iso(self._clock()),
            "target": {"url": self._config["url"], "method": self._config["method"]},
        }

    def dispatch_entry_event(
        self,
        event: str,
        show: dict[str, Any] | None,
        entry: dict[str, Any] | None,
    ) -> dict[str, Any]:
        reason = self._skip_reason()
        if reason is not None:
            return self._skip(reason)
        show = show or {}
        entry = entry or {}
        row = build_table_row(show, entry)
        crew = show.get("crew")
        payload = self._envelope(event)
        payload.update(
            table={"columns": list(EXPORT_COLUMNS), "row": row_values(row)},
            csv={"header": list(EXPORT_COLUMNS), "row": build_csv_row(row)},
            message=build_message_payload(row),
            show={
                "id": show.get("id") or "",
                "label": show.get("label") or "",
                "date": show.get("date") or "",
                "time": show.get("time") or "",
                "crew": crew if isinstance(crew, list) else [],
            },
            entry=_entry_snapshot(entry),
        )
        return self._send(event, payload)

    def dispatch_show_event(
        self,
        event: str,
        show: dict[str, Any] | None,
        meta: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Send a show-level event.

        show.archived fans out into one flattened payload per entry, sent
        in order; a show without entries sends nothing. Any other event is
        a single payload carrying every entry's export row.
        """
        reason = self._skip_reason()
        if reason is not None:
            return self._skip(reason)
        show = show or {}
        entries = show_entries(show)
        meta = dict(meta) if isinstance(meta, dict) and meta else None

        if event == "show.archived":
            return self._dispatch_archived(event, show, entries, meta)

        normalized = {**show, "entries": entries}
        rows = [build_table_row(normalized, e) for e in entries]
        summary = build_show_summary(normalized)
        payload = self._envelope(event)
        payload.update(
            table={"columns": list(EXPORT_COLUMNS), "rows": [row_values(r) for r in rows]},
            csv={"header": list(EXPORT_COLUMNS), "rows": [build_csv_row(r) for r in rows]},
            message={"show": summary, "entries": rows},
            show=summary,
            entries=entries,
        )
        if meta:
            payload["meta"] = meta
        return self._send(event, payload)

    def _dispatch_archived(
        self,
        event: str,
        show: dict[str, Any],
        entries: list[dict[str, Any]],
        meta: dict[str, Any] | None,
    ) -> dict[str, Any]:
        results: list[dict[str, Any]] = []
        for entry in entries:
            payload = build_archived_entry_payload(show, entry)
            if meta:
                payload["meta"] = meta
            results.append(self._send(event, payload))
        failed = [r for r in results if not r.get("success")]
        outcome: dict[str, Any] = {
            "success": not failed,
            "dispatched": len(results) - len(failed),
            "failed": len(failed),
            "results": results,
        }
        if failed:
            outcome["error"] = failed[0].get("error")
        return outcome


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
