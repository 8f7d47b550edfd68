"""The storage contract shared by the file and server engines.

The engines share no implementation, only this protocol. Callers hold a
StorageProvider obtained from a ProviderRegistry and never import an
engine class directly.
"""

from __future__ import annotations

from typing import Any, Protocol

from show_tracker.shared import ReconcileCounters

DEFAULT_STAFF: dict[str, list[str]] = {
    "crew": ["Alex", "Cameron", "Jordan", "Nazar"],
    "pilots": ["Alex", "Jordan", "Taylor"],
    "monkeyLeads": ["Cameron", "Nazar"],
}


class StorageProvider(Protocol):
    """CRUD plus archive operations over shows, entries and staff.

    Not-found is None. Validation failures raise ValidationError.
    Read and write entry points run reconcile() so archival and purge
    are never staler than the previous call. last_reconcile holds the
    counters from the pass init() ran.
    """

    last_reconcile: ReconcileCounters

    def init(self) -> None: ...

    def dispose(self) -> None: ...

    def get_storage_label(self) -> str: ...

    def get_storage_metadata(self) -> dict[str, Any]: ...

    def reconcile(self) -> ReconcileCounters: ...

    def run_archive_maintenance(self) -> ReconcileCounters: ...

    def list_shows(self) -> list[dict[str, Any]]: ...

    def get_show(self, show_id: str) -> dict[str, Any] | None: ...

    def create_show(self, payload: dict[str, Any]) -> dict[str, Any]: ...

    def update_show(self, show_id: str, updates: dict[str, Any]) -> dict[str, Any] | None: ...

    def delete_show(self, show_id: str) -> dict[str, Any] | None: ...

    def archive_show_now(self, show_id: str) -> dict[str, Any] | None: ...

    def replace_show(self, show: dict[str, Any]) -> dict[str, Any]: ...

    def add_entry(self, show_id: str, entry: dict[str, Any]) -> dict[str, Any] | None: ...

    def update_entry(
        self, show_id: str, entry_id: str, updates: dict[str, Any]
    ) -> dict[str, Any] | None: ...

    def delete_entry(self, show_id: str, entry_id: str) -> bool | None: ...

    def list_archived_shows(self) -> list[dict[str, Any]]: ...

    def get_archived_show(self, show_id: str) -> dict[str, Any] | None: ...

    def get_staff(self) -> dict[str, list[str]]: ...

    def replace_staff(self, lists: dict[str, Any]) -> dict[str, list[str]]: ...
