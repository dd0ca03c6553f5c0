"""Batching of translation units under request size limits."""

from __future__ import annotations

from typing import List, Sequence

from .errors import UnitTooLarge
from .structures import Batch, TranslationUnit

# DeepL accepts at most 50 texts per request and a 128 KiB body.
DEFAULT_MAX_CHARS = 30000
DEFAULT_MAX_UNITS = 50


class BatchBuilder:
    """Aggregates units into batches within character and unit limits."""

    def __init__(
        self,
        max_chars: int = DEFAULT_MAX_CHARS,
        max_units: int = DEFAULT_MAX_UNITS,
    ) -> None:
        if max_chars < 1 or max_units < 1:
            raise ValueError("Batch limits must be positive.")
        self.max_chars = max_chars
        self.max_units = max_units

    def check(self, unit: TranslationUnit) -> None:
        """Raise UnitTooLarge when a unit can never fit in a request."""

        if unit.size > self.max_chars:
            raise UnitTooLarge(unit.unit_id, unit.size, self.max_chars)

    def build(self, units: Sequence[TranslationUnit]) -> List[Batch]:
        batches: List[Batch] = []
        batch_units: List[TranslationUnit] = []
        running_total = 0
        batch_id = 1

        for unit in units:
            self.check(unit)
            size = unit.size

            if batch_units and (
                running_total + size > self.max_chars
                or len(batch_units) >= self.max_units
            ):
                batches.append(Batch(batch_id=batch_id, units=batch_units))
                batch_id += 1
                batch_units = []
                running_total = 0

            batch_units.append(unit)
            running_total += size

        if batch_units:
            batches.append(Batch(batch_id=batch_id, units=batch_units))

        return batches
