"""Run counters."""

from __future__ import annotations

from .models import RunStats


class StatsAggregator:
    def __init__(self) -> None:
        self._documents = 0
        self._groups = 0
        self._corrected = 0
        self._errors = 0

    def add_scanned(self, documents: int, groups: int) -> None:
        self._documents += documents
        self._groups += groups

    def record_correction(self, count: int = 1) -> None:
        self._corrected += count

    def record_error(self, count: int = 1) -> None:
        self._errors += count

    def snapshot(self) -> RunStats:
        return RunStats(
            total_documents=self._documents,
            duplicate_groups=self._groups,
            corrected_documents=self._corrected,
            errors=self._errors,
        )
