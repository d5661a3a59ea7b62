"""JsonlManifest: the audit log as a JSON-lines file.

One compact JSON object per line, appended as soon as a create succeeds, so
a run that dies half-way still leaves a record of everything it created.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from safeout_core.errors import ManifestError
from safeout_store.base import BaseManifest
from safeout_store.models import ManifestEntry

logger = logging.getLogger(__name__)

DEFAULT_MANIFEST_PATH = "/tmp/safe-output-items.jsonl"


class JsonlManifest(BaseManifest):
    """Appends entries to a JSONL file.

    The file is created (never truncated) on construction so that a batch
    which creates nothing still leaves an empty manifest behind.
    """

    def __init__(self, path: str = DEFAULT_MANIFEST_PATH):
        self.path = Path(path)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.touch(exist_ok=True)
        except OSError as exc:
            raise ManifestError(f"Failed to create manifest file: {exc}") from exc

    def log_created_item(self, entry: ManifestEntry) -> None:
        if not entry.url:
            logger.debug("Skipping manifest entry for %s without a URL", entry.type)
            return
        line = json.dumps(entry.to_dict(), separators=(",", ":"))
        try:
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(line + "\n")
        except OSError as exc:
            raise ManifestError(f"Failed to write to manifest file: {exc}") from exc
        logger.debug("Logged %s %s to manifest", entry.type, entry.url)

    def list_entries(self, item_type: str | None = None) -> list[ManifestEntry]:
        if not self.path.exists():
            return []
        entries = []
        for line_number, line in enumerate(self.path.read_text(encoding="utf-8").splitlines(), start=1):
            if not line.strip():
                continue
            try:
                entry = ManifestEntry.from_dict(json.loads(line))
            except (ValueError, KeyError) as exc:
                logger.warning("Skipping malformed manifest line %d: %s", line_number, exc)
                continue
            if item_type is None or entry.type == item_type:
                entries.append(entry)
        return entries
