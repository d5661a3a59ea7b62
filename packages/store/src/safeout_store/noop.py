"""No-op manifest, used for staged runs where nothing is created."""

from __future__ import annotations

from typing import TYPE_CHECKING

from safeout_store.base import BaseManifest

if TYPE_CHECKING:
    from safeout_store.models import ManifestEntry


class NoOpManifest(BaseManifest):
    """Silently discards all entries.

    Using a NoOpManifest rather than None lets the CLI always call
    manifest.log_created_item() without conditional checks.
    """

    def log_created_item(self, entry: ManifestEntry) -> None:
        pass  # intentional no-op

    def list_entries(self, item_type: str | None = None) -> list[ManifestEntry]:
        return []
