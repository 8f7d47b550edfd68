"""Provider registry.

Owns the one live StorageProvider. Callers receive the registry (or the
provider it hands out) as a parameter; there is no module-level instance.
Re-initializing disposes the old provider before the new one is built,
so in-flight callers holding the old instance see it closed.
"""

from __future__ import annotations

import logging
from typing import Any

from show_tracker.config import normalize_provider_name
from show_tracker.normalize import clean_text
from show_tracker.postgres_provider import PostgresProvider
from show_tracker.provider import StorageProvider
from show_tracker.shared import Clock, ProviderNotInitializedError, now_ms
from show_tracker.sql_provider import SqlProvider

log = logging.getLogger(__name__)

KNOWN_PROVIDER_NAMES = frozenset({"sqlite", "sqljs", "sql", "postgres", "postgresql"})


def resolve_provider_selection(config: dict[str, Any]) -> tuple[str, type, dict[str, Any]]:
    """Return (provider type, provider class, provider options) for config.

    Anything other than postgres/postgresql selects the file engine.
    """
    requested = clean_text(config.get("storageProvider")).lower()
    if requested and requested not in KNOWN_PROVIDER_NAMES:
        log.warning("unknown storage provider %r, using sqlite", requested)
    kind = normalize_provider_name(requested)
    if kind == "postgres":
        return kind, PostgresProvider, dict(config.get("postgres") or {})
    return kind, SqlProvider, dict(config.get("sql") or {})


class ProviderRegistry:
    def __init__(self, dispatcher: Any = None, clock: Clock = now_ms) -> None:
        self.dispatcher = dispatcher
        self._clock = clock
        self._provider: StorageProvider | None = None
        self._active_type: str | None = None

    @property
    def active_provider_type(self) -> str | None:
        return self._active_type

    def init_provider(self, config: dict[str, Any]) -> StorageProvider:
        """Dispose the current provider, then build and init the configured one."""
        kind, provider_cls, options = resolve_provider_selection(config)
        self.dispose()
        provider = provider_cls(
            options,
            dispatcher=self.dispatcher,
            clock=self._clock,
            staff_defaults=config.get("staff"),
        )
        provider.init()
        self._provider = provider
        self._active_type = kind
        log.info("storage provider active: %s", provider.get_storage_label())
        return provider

    def get_provider(self) -> StorageProvider:
        if self._provider is None:
            raise ProviderNotInitializedError("Storage provider has not been initialized")
        return self._provider

    def storage_metadata(self) -> dict[str, Any]:
        provider = self.get_provider()
        try:
            return provider.get_storage_metadata()
        except Exception as exc:
            log.warning("could not read storage metadata: %s", exc)
            return {"label": provider.get_storage_label()}

    def dispose(self) -> None:
        provider, self._provider = self._provider, None
        self._active_type = None
        if provider is not None:
            provider.dispose()
