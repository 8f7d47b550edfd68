"""show_tracker.shared

Shared utilities used by both storage engines, the registry and the CLI.
Includes the error types surfaced to callers, the clock helpers and
reconcile counters.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

Clock = Callable[[], int]


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ValidationError(Exception):
    """Raised for rejected show or entry input.

    The message is shown to end users verbatim; status mirrors HTTP 400.
    """

    status = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ProviderNotInitializedError(RuntimeError):
    """Raised when the registry is asked for a provider before init."""


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------

def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return time.time_ns() // 1_000_000


# ---------------------------------------------------------------------------
# ReconcileCounters
# ---------------------------------------------------------------------------

@dataclass
class ReconcileCounters:
    archived: int = 0
    purged: int = 0
    dispatched: int = 0
    dispatch_failures: int = 0
    warnings: list[str] = field(default_factory=list)

    @property
    def mutated(self) -> bool:
        return bool(self.archived or self.purged)

    def merge(self, other: ReconcileCounters) -> ReconcileCounters:
        """Return a new counter set summing self and other."""
        return ReconcileCounters(
            archived=self.archived + other.archived,
            purged=self.purged + other.purged,
            dispatched=self.dispatched + other.dispatched,
            dispatch_failures=self.dispatch_failures + other.dispatch_failures,
            warnings=self.warnings + other.warnings,
        )

    def to_dict(self) -> dict[str, Any]:
        d = {k: v for k, v in self.__dict__.items() if k != "warnings"}
        d["warnings"] = self.warnings[:50]
        return d


# ---------------------------------------------------------------------------
# Run report
# ---------------------------------------------------------------------------

def write_run_report(
    report_dir: Path,
    run_id: str,
    started_at: str,
    mode: str,
    storage: dict[str, Any],
    counters: ReconcileCounters,
) -> Path:
    report = {
        "run_id": run_id,
        "mode": mode,
        "started_at": started_at,
        "finished_at": datetime.now(timezone.utc).isoformat(),
        "storage": storage,
        "counters": counters.to_dict(),
    }
    report_path = report_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
