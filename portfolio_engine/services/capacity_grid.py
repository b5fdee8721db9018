"""
Capacity Grid

Team × period matrix of capacity slots used by the auto-scheduler and the
alternative-suggestion search. The grid is immutable: ``allocate``,
``deallocate`` and ``book_item`` return a new grid.

Usage:
    grid = CapacityGrid.from_scenario(scenario, exclude={"item-3"})
    start = grid.find_feasible_window(item, earliest_start=2)
    if start is not None:
        grid = grid.book_item(item, start)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable

from portfolio_engine.core.exceptions import NotFoundError, ValidationError
from portfolio_engine.models.constraint import compute_utilization
from portfolio_engine.models.scenario import Scenario, ScheduledItem, Team

logger = logging.getLogger(__name__)

_EPSILON = 1e-9


@dataclass(frozen=True)
class CapacitySlot:
    total: float
    allocated: float
    remaining: float
    utilization: float | None

    @classmethod
    def make(cls, total: float, allocated: float) -> CapacitySlot:
        return cls(total, allocated, total - allocated, compute_utilization(allocated, total))

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "allocated": self.allocated,
            "remaining": self.remaining,
            "utilization": self.utilization,
        }


@dataclass(frozen=True)
class ContentionEntry:
    team_id: str
    team_name: str
    utilization: float | None

    def to_dict(self) -> dict:
        return {"team_id": self.team_id, "team_name": self.team_name,
                "utilization": self.utilization}


def demand_profile(item: ScheduledItem) -> dict[tuple[str, int], float]:
    """Tokens per (team, offset from the item's start); negative tokens are ignored."""
    profile: dict[tuple[str, int], float] = {}
    for alloc in item.team_allocations:
        if alloc.tokens <= 0:
            continue
        key = (alloc.team_id, alloc.period_index - item.start_period)
        profile[key] = profile.get(key, 0.0) + alloc.tokens
    return profile


class CapacityGrid:
    """Immutable team × period capacity matrix."""

    def __init__(self, teams: Iterable[Team], horizon: int):
        self.horizon = horizon
        self._teams: dict[str, Team] = {}
        self._slots: dict[str, tuple[CapacitySlot, ...]] = {}
        for team in teams:
            self._teams[team.id] = team
            self._slots[team.id] = tuple(
                CapacitySlot.make(team.capacity_at(p), 0.0) for p in range(horizon)
            )

    @classmethod
    def from_scenario(cls, scenario: Scenario, exclude: Iterable[str] = ()) -> CapacityGrid:
        """Grid with every item's in-horizon allocations booked, except ``exclude``."""
        skip = set(exclude)
        grid = cls(scenario.teams, scenario.horizon)
        slots = {team_id: list(s) for team_id, s in grid._slots.items()}
        for item in scenario.items:
            if item.id in skip:
                continue
            for alloc in item.team_allocations:
                row = slots.get(alloc.team_id)
                if row is None or alloc.tokens <= 0 or not 0 <= alloc.period_index < grid.horizon:
                    continue
                old = row[alloc.period_index]
                row[alloc.period_index] = CapacitySlot.make(old.total, old.allocated + alloc.tokens)
        return grid._with(slots)

    def _with(self, slots: dict[str, list[CapacitySlot]]) -> CapacityGrid:
        clone = object.__new__(CapacityGrid)
        clone.horizon = self.horizon
        clone._teams = self._teams
        clone._slots = {team_id: tuple(row) for team_id, row in slots.items()}
        return clone

    def _mutable(self) -> dict[str, list[CapacitySlot]]:
        return {team_id: list(row) for team_id, row in self._slots.items()}

    # ── Mutations (return a new grid) ────────────────────────────────────────

    def allocate(self, team_id: str, period_index: int, tokens: float) -> CapacityGrid:
        self._assert_team(team_id)
        self._assert_period(period_index)
        slots = self._mutable()
        old = slots[team_id][period_index]
        slots[team_id][period_index] = CapacitySlot.make(old.total, old.allocated + tokens)
        return self._with(slots)

    def deallocate(self, team_id: str, period_index: int, tokens: float) -> CapacityGrid:
        """Release tokens; allocated never drops below zero."""
        self._assert_team(team_id)
        self._assert_period(period_index)
        slots = self._mutable()
        old = slots[team_id][period_index]
        slots[team_id][period_index] = CapacitySlot.make(old.total, max(0.0, old.allocated - tokens))
        return self._with(slots)

    def book_item(self, item: ScheduledItem, start_period: int | None = None) -> CapacityGrid:
        """Book the item's demand profile starting at ``start_period`` (default: its own start).

        Periods past the horizon are skipped.
        """
        start = item.start_period if start_period is None else start_period
        profile = demand_profile(item)
        for team_id, _ in profile:
            self._assert_team(team_id)
        slots = self._mutable()
        for (team_id, offset), tokens in profile.items():
            p = start + offset
            if not 0 <= p < self.horizon:
                continue
            old = slots[team_id][p]
            slots[team_id][p] = CapacitySlot.make(old.total, old.allocated + tokens)
        return self._with(slots)

    # ── Queries ──────────────────────────────────────────────────────────────

    @property
    def team_ids(self) -> list[str]:
        return list(self._slots)

    def get_slot(self, team_id: str, period_index: int) -> CapacitySlot:
        self._assert_team(team_id)
        self._assert_period(period_index)
        return self._slots[team_id][period_index]

    def get_utilization(self, team_id: str, period_index: int) -> float | None:
        return self.get_slot(team_id, period_index).utilization

    def can_fit(self, item: ScheduledItem, start_period: int) -> bool:
        """True when the item's whole demand profile fits at ``start_period``."""
        if start_period < 0 or start_period + max(item.duration, 1) > self.horizon:
            return False
        for (team_id, offset), tokens in demand_profile(item).items():
            row = self._slots.get(team_id)
            if row is None:
                return False
            p = start_period + offset
            if not 0 <= p < self.horizon:
                return False
            if row[p].remaining + _EPSILON < tokens:
                return False
        return True

    def find_feasible_window(self, item: ScheduledItem, earliest_start: int = 0) -> int | None:
        """Earliest start >= ``earliest_start`` where the item fits, or None."""
        last_start = self.horizon - max(item.duration, 1)
        for start in range(max(0, earliest_start), last_start + 1):
            if self.can_fit(item, start):
                return start
        return None

    def get_contention(self, period_index: int) -> list[ContentionEntry]:
        """Teams by utilization in ``period_index``, most loaded first."""
        self._assert_period(period_index)
        entries = [
            ContentionEntry(team_id, self._teams[team_id].name, row[period_index].utilization)
            for team_id, row in self._slots.items()
        ]
        return sorted(
            entries,
            key=lambda e: float("inf") if e.utilization is None else e.utilization,
            reverse=True,
        )

    def to_dict(self) -> dict:
        return {
            "horizon": self.horizon,
            "slots": {team_id: [s.to_dict() for s in row] for team_id, row in self._slots.items()},
        }

    # ── Internals ────────────────────────────────────────────────────────────

    def _assert_team(self, team_id: str) -> None:
        if team_id not in self._slots:
            raise NotFoundError(resource="Team", resource_id=team_id)

    def _assert_period(self, period_index: int) -> None:
        if not 0 <= period_index < self.horizon:
            raise ValidationError(
                f"Period {period_index} out of range [0, {self.horizon})",
                details={"period_index": period_index},
            )
