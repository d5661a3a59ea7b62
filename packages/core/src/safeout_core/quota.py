"""Per-type quota tracking for one batch."""

from __future__ import annotations

from safeout_core.errors import E_MAX_EXCEEDED, E_MIN_NOT_MET
from safeout_core.schema import TypeSchema


class QuotaTracker:
    """Counts accepted records per type against each type's ``max`` and ``min``.

    A fresh tracker is created for every batch; counts are never reset.
    """

    def __init__(self, schemas: dict[str, TypeSchema]):
        self._schemas = schemas
        self._counts: dict[str, int] = {}

    def max_for(self, type_name: str) -> int:
        schema = self._schemas.get(type_name)
        return schema.max if schema is not None else 1

    def count(self, type_name: str) -> int:
        return self._counts.get(type_name, 0)

    def counts(self) -> dict[str, int]:
        return dict(self._counts)

    def can_accept(self, type_name: str) -> bool:
        return self.count(type_name) < self.max_for(type_name)

    def exceeded_message(self, type_name: str) -> str:
        return f"{E_MAX_EXCEEDED}: Too many items of type '{type_name}'. Maximum allowed: {self.max_for(type_name)}."

    def record(self, type_name: str) -> None:
        self._counts[type_name] = self.count(type_name) + 1

    def check_minimums(self) -> list[str]:
        """Return one aggregate error per type whose final count is below its ``min``."""
        errors = []
        for type_name, schema in self._schemas.items():
            if schema.min > 0 and self.count(type_name) < schema.min:
                errors.append(
                    f"{E_MIN_NOT_MET}: Too few items of type '{type_name}'. "
                    f"Minimum required: {schema.min}, found: {self.count(type_name)}."
                )
        return errors
