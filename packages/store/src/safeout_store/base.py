"""Abstract manifest interface.

The CLI depends on BaseManifest, not on a concrete backend, so the staged
(no-op) and real (JSONL file) manifests are swappable without touching
dispatch code.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from safeout_store.models import ManifestEntry


class BaseManifest(ABC):
    """Append-only audit log of created entities.

    Entries are never edited or removed once written.
    """

    @abstractmethod
    def log_created_item(self, entry: ManifestEntry) -> None:
        """Append one entry. Raises ManifestError when it cannot be written."""

    @abstractmethod
    def list_entries(self, item_type: str | None = None) -> list[ManifestEntry]:
        """Return entries in write order, optionally filtered by type.

        Returns an empty list if nothing was written.
        """

    def close(self) -> None:
        """Release any resources held by the manifest.

        Default is a no-op so callers can always call close() safely.
        """
