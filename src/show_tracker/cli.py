"""Operational CLI for the show tracker store.

Modes:
  init           open or create the configured store, seed staff, reconcile
  reconcile      run one archival/retention pass and report counters
  export_csv     write the entry export for active (or archived) shows
  webhook_check  run the webhook handshake and print the status snapshot
"""

from __future__ import annotations

import json
import logging
import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path

import click

from show_tracker.config import load_config
from show_tracker.export import write_csv_export
from show_tracker.registry import ProviderRegistry
from show_tracker.shared import ReconcileCounters, write_run_report
from show_tracker.webhook import WebhookDispatcher


@click.command()
@click.option(
    "--mode",
    default="reconcile",
    type=click.Choice(["init", "reconcile", "export_csv", "webhook_check"]),
    show_default=True,
    help="Operation to run",
)
@click.option("--config", "config_path", default=None, type=click.Path(), help="Path to YAML config file")
@click.option("--out", "out_path", default=None, type=click.Path(), help="[export_csv] Output CSV path")
@click.option(
    "--archived/--active",
    default=False,
    show_default=True,
    help="[export_csv] Export archived shows instead of active ones",
)
@click.option("--report-dir", default=None, type=click.Path(), help="[reconcile] Write a JSON run report here")
@click.option("--run-id", default=None, help="Run identifier used in output and reports")
@click.option(
    "--log-level",
    default="INFO",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    show_default=True,
)
def main(
    mode: str,
    config_path: str | None,
    out_path: str | None,
    archived: bool,
    report_dir: str | None,
    run_id: str | None,
    log_level: str,
) -> None:
    """Show tracker storage and webhook operations."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.now(timezone.utc).isoformat()
    config = load_config(config_path)

    dispatcher = WebhookDispatcher(config.get("webhook"))
    if mode == "webhook_check":
        status = dispatcher.get_status()
        click.echo(f"[{run_id}] webhook: {json.dumps(status, default=str)}")
        if status["state"] == "error":
            sys.exit(1)
        return

    if mode == "export_csv" and not out_path:
        click.echo(f"[{run_id}] FATAL: --out is required for export_csv", err=True)
        sys.exit(1)

    registry = ProviderRegistry(dispatcher=dispatcher)
    try:
        registry.init_provider(config)
    except Exception as exc:
        click.echo(f"[{run_id}] FATAL: storage init failed: {exc}", err=True)
        sys.exit(1)

    try:
        provider = registry.get_provider()
        storage = registry.storage_metadata()
        click.echo(f"[{run_id}] storage: {storage['label']} ({json.dumps(storage, default=str)})")

        if mode == "init":
            click.echo(f"[{run_id}] store ready; staff: {json.dumps(provider.get_staff())}")
            return

        if mode == "reconcile":
            # init already ran one pass; fold its counters into this one
            counters: ReconcileCounters = provider.last_reconcile.merge(provider.reconcile())
            click.echo(
                f"[{run_id}] reconcile: archived={counters.archived} purged={counters.purged} "
                f"dispatched={counters.dispatched} dispatch_failures={counters.dispatch_failures}"
            )
            if report_dir:
                path = write_run_report(
                    Path(report_dir), run_id, started_at, mode, storage, counters,
                )
                click.echo(f"[{run_id}] report written to {path}")
            return

        shows = provider.list_archived_shows() if archived else provider.list_shows()
        out = Path(out_path)
        out.parent.mkdir(parents=True, exist_ok=True)
        with open(out, "w", newline="", encoding="utf-8") as fh:
            rows = write_csv_export(shows, fh)
        click.echo(f"[{run_id}] exported {rows} row(s) from {len(shows)} show(s) to {out}")
    finally:
        registry.dispose()


if __name__ == "__main__":
    main()
