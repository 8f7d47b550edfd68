"""Application configuration.

A YAML document (JSON is valid YAML, so older JSON config files load as
well) merged section by section over defaults. Environment variables only
shape the defaults; values in the file always win.
"""

from __future__ import annotations

import copy
import logging
import os
from pathlib import Path
from typing import Any, Mapping

import yaml

from show_tracker.normalize import clean_text
from show_tracker.webhook import DEFAULT_WEBHOOK_CONFIG

log = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("config") / "show-tracker.yaml"
DEFAULT_DB_FILE = str(Path("data") / "show-tracker.sqlite")

_SECTIONS = ("sql", "postgres", "webhook")


def normalize_provider_name(value: Any) -> str:
    """Map a provider name onto "postgres" or "sqlite"."""
    name = clean_text(value).lower()
    if name in ("postgres", "postgresql"):
        return "postgres"
    return "sqlite"


def default_config(environ: Mapping[str, str] | None = None) -> dict[str, Any]:
    environ = os.environ if environ is None else environ
    provider = environ.get("STORAGE_PROVIDER") or environ.get("DB_PROVIDER") or "sqlite"
    database_url = (
        environ.get("DATABASE_URL") or environ.get("POSTGRES_URL") or environ.get("PGURL") or ""
    )
    return {
        "storageProvider": normalize_provider_name(provider),
        "sql": {
            "filename": environ.get("SHOW_TRACKER_DB_FILE") or DEFAULT_DB_FILE,
        },
        "postgres": {
            "connectionString": database_url,
            "schema": environ.get("DATABASE_SCHEMA") or "",
            "adminDatabase": "",
            "sslmode": "",
            "max": 10,
            "connectionTimeoutMillis": 5000,
        },
        "webhook": copy.deepcopy(DEFAULT_WEBHOOK_CONFIG),
    }


def _fold_legacy(raw: dict[str, Any]) -> dict[str, Any]:
    """Fold top-level "provider" and nested "storage" blocks into the flat shape."""
    cleaned = dict(raw)
    legacy_provider = cleaned.pop("provider", None)
    storage = cleaned.pop("storage", None)
    if isinstance(storage, dict):
        if not cleaned.get("storageProvider") and storage.get("provider"):
            cleaned["storageProvider"] = storage["provider"]
        for section in ("sql", "postgres"):
            if isinstance(storage.get(section), dict):
                cleaned[section] = {**storage[section], **(cleaned.get(section) or {})}
    if not cleaned.get("storageProvider") and legacy_provider:
        cleaned["storageProvider"] = legacy_provider
    return cleaned


def merge_config(raw: dict[str, Any] | None, environ: Mapping[str, str] | None = None) -> dict[str, Any]:
    """Return defaults with raw laid over them, one level deep per section."""
    merged = default_config(environ)
    cleaned = _fold_legacy(raw or {})
    for key, value in cleaned.items():
        if key in _SECTIONS:
            if isinstance(value, dict):
                merged[key].update(value)
        else:
            merged[key] = value
    merged["storageProvider"] = normalize_provider_name(
        cleaned.get("storageProvider") or merged["storageProvider"]
    )
    return merged


def load_config(
    path: str | Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Load the config file, creating it with defaults when missing.

    An unreadable or malformed file is logged and the defaults are used.
    """
    path = Path(path) if path else DEFAULT_CONFIG_PATH
    if not path.exists():
        config = merge_config(None, environ)
        save_config(config, path, environ)
        return config
    try:
        with open(path, encoding="utf-8") as fh:
            raw = yaml.safe_load(fh)
    except (OSError, yaml.YAMLError) as exc:
        log.error("failed to load config %s, falling back to defaults: %s", path, exc)
        return merge_config(None, environ)
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        log.error("config %s is not a mapping, falling back to defaults", path)
        return merge_config(None, environ)
    return merge_config(raw, environ)


def save_config(
    config: dict[str, Any],
    path: str | Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Merge config over defaults, write it as YAML and return it."""
    path = Path(path) if path else DEFAULT_CONFIG_PATH
    merged = merge_config(config, environ)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as fh:
        yaml.safe_dump(merged, fh, sort_keys=False, default_flow_style=False)
    return merged
