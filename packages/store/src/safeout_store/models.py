"""Audit manifest data models.

Decoupled from safeout_core's dispatcher so the store layer can be used
independently and the dispatcher has no knowledge of persistence concerns.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class ManifestEntry:
    """One entity created by a privileged call, as written to the manifest.

    Created by the CLI layer from the dispatcher's CreatedItem.
    """

    type: str
    url: str
    timestamp: str  # ISO-8601 UTC timestamp
    number: int | None = None
    repo: str | None = None
    temporary_id: str | None = None

    def to_dict(self) -> dict:
        data: dict = {"type": self.type, "url": self.url}
        if self.number is not None:
            data["number"] = self.number
        if self.repo:
            data["repo"] = self.repo
        if self.temporary_id:
            data["temporaryId"] = self.temporary_id
        data["timestamp"] = self.timestamp
        return data

    @classmethod
    def from_dict(cls, data: dict) -> ManifestEntry:
        return cls(
            type=data["type"],
            url=data["url"],
            timestamp=data.get("timestamp", ""),
            number=data.get("number"),
            repo=data.get("repo"),
            temporary_id=data.get("temporaryId"),
        )
