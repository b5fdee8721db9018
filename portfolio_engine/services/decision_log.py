"""
Decision Log: append-only audit trail of governance decisions.

Entries are immutable once recorded. Ids are sequential per log instance
("decision-1", "decision-2", ...) and never reused, even after ``clear()``.
Timestamps are UTC and never go backwards within one log.
"""

import copy
import itertools
import logging
from datetime import datetime, timezone
from threading import Lock

from portfolio_engine.models.governance import (
    DecisionAction,
    DecisionLogEntry,
    DecisionOutcome,
)

logger = logging.getLogger(__name__)


class DecisionLog:
    """Thread-safe in-memory decision log."""

    def __init__(self):
        self._entries: list[DecisionLogEntry] = []
        self._lock = Lock()
        self._ids = itertools.count(1)
        self._last_timestamp: datetime | None = None

    def record(
        self,
        action: DecisionAction,
        request,
        projected_scenario,
        constraints_evaluated,
        result: DecisionOutcome,
        violations,
        warnings,
        duration_ms: float,
    ) -> DecisionLogEntry:
        """Append one entry and return it."""
        # Snapshot outside the lock; the caller may keep mutating its objects
        request_copy = copy.deepcopy(request)
        scenario_copy = copy.deepcopy(projected_scenario)

        with self._lock:
            now = datetime.now(timezone.utc)
            if self._last_timestamp is not None and now < self._last_timestamp:
                now = self._last_timestamp
            self._last_timestamp = now

            entry = DecisionLogEntry(
                id=f"decision-{next(self._ids)}",
                timestamp=now,
                action=action,
                request=request_copy,
                projected_scenario=scenario_copy,
                constraints_evaluated=tuple(constraints_evaluated),
                result=result,
                violations=tuple(violations),
                warnings=tuple(warnings),
                duration_ms=duration_ms,
            )
            self._entries.append(entry)

        logger.info(
            "Decision %s: %s -> %s (%d violations, %d warnings)",
            entry.id, action.value, result.value, len(entry.violations), len(entry.warnings),
            extra={
                "decision_id": entry.id,
                "action": action.value,
                "outcome": result.value,
                "duration_ms": duration_ms,
                "violation_count": len(entry.violations),
                "warning_count": len(entry.warnings),
            },
        )
        return entry

    def get_all(self) -> list[DecisionLogEntry]:
        with self._lock:
            return list(self._entries)

    def get_by_id(self, entry_id: str) -> DecisionLogEntry | None:
        with self._lock:
            return next((e for e in self._entries if e.id == entry_id), None)

    def get_by_action(self, action: DecisionAction) -> list[DecisionLogEntry]:
        with self._lock:
            return [e for e in self._entries if e.action == action]

    def clear(self) -> None:
        """Drop all entries (tests / reset). The id sequence keeps counting."""
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
