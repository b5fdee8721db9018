"""
Scenario data model: teams, allocations, scheduled items and the scenario
that ties them together over a planning horizon.

All types round-trip through ``to_dict()`` / ``from_dict()`` with snake_case
keys. ``from_dict()`` raises ``ValidationError`` for malformed payloads; range
checks (negative tokens, zero duration, ...) are left to the constraint
evaluators so validation always yields a result.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace

from portfolio_engine.core.exceptions import DataIntegrityError, ValidationError


# ── Payload helpers ──────────────────────────────────────────────────────────

def _require(data: dict, key: str, owner: str):
    if not isinstance(data, dict):
        raise ValidationError(f"{owner} must be an object", details={owner: "not an object"})
    if key not in data or data[key] is None:
        raise ValidationError(f"{owner}.{key} is required", details={key: "missing"})
    return data[key]


def _number(value, key: str, owner: str) -> float:
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"{owner}.{key} must be a number", details={key: "not a number"})
    return value


def _integer(value, key: str, owner: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{owner}.{key} must be an integer", details={key: "not an integer"})
    return value


def _list(value, key: str, owner: str) -> list:
    if not isinstance(value, (list, tuple)):
        raise ValidationError(f"{owner}.{key} must be a list", details={key: "not a list"})
    return list(value)


# ── Team ─────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Team:
    """A team with a token capacity per planning period."""
    id: str
    name: str
    capacity_by_period: tuple[float, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "capacity_by_period", tuple(self.capacity_by_period))

    def capacity_at(self, period_index: int) -> float:
        """Capacity for ``period_index``; 0 outside the declared periods."""
        if 0 <= period_index < len(self.capacity_by_period):
            return self.capacity_by_period[period_index]
        return 0.0

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "capacity_by_period": list(self.capacity_by_period),
        }

    @classmethod
    def from_dict(cls, data: dict) -> Team:
        team_id = str(_require(data, "id", "team"))
        capacity = _list(data.get("capacity_by_period", []), "capacity_by_period", "team")
        return cls(
            id=team_id,
            name=str(data.get("name") or team_id),
            capacity_by_period=tuple(_number(c, "capacity_by_period", "team") for c in capacity),
        )


# ── Allocation ───────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class TeamAllocation:
    """Tokens of a team's capacity claimed by an item in one period."""
    team_id: str
    period_index: int
    tokens: float

    def to_dict(self) -> dict:
        return {
            "team_id": self.team_id,
            "period_index": self.period_index,
            "tokens": self.tokens,
        }

    @classmethod
    def from_dict(cls, data: dict) -> TeamAllocation:
        return cls(
            team_id=str(_require(data, "team_id", "allocation")),
            period_index=_integer(_require(data, "period_index", "allocation"),
                                  "period_index", "allocation"),
            tokens=_number(_require(data, "tokens", "allocation"), "tokens", "allocation"),
        )


# ── Scheduled item ───────────────────────────────────────────────────────────

@dataclass
class ScheduledItem:
    """A unit of work placed on the plan with its team demand."""
    id: str
    name: str
    start_period: int
    duration: int
    team_allocations: list[TeamAllocation] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)
    priority: int = 0
    token_budget: float | None = None

    @property
    def end_period(self) -> int:
        """Exclusive end period."""
        return self.start_period + self.duration

    @property
    def total_tokens(self) -> float:
        return sum(a.tokens for a in self.team_allocations)

    def occupies(self, period_index: int) -> bool:
        return self.start_period <= period_index < self.end_period

    def shifted(self, new_start: int) -> ScheduledItem:
        """Copy moved to ``new_start``; allocations move by the same offset."""
        offset = new_start - self.start_period
        return replace(
            self,
            start_period=new_start,
            team_allocations=[
                replace(a, period_index=a.period_index + offset)
                for a in self.team_allocations
            ],
            dependencies=list(self.dependencies),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "start_period": self.start_period,
            "duration": self.duration,
            "team_allocations": [a.to_dict() for a in self.team_allocations],
            "dependencies": list(self.dependencies),
            "priority": self.priority,
            "token_budget": self.token_budget,
        }

    @classmethod
    def from_dict(cls, data: dict) -> ScheduledItem:
        item_id = str(_require(data, "id", "item"))
        budget = data.get("token_budget")
        return cls(
            id=item_id,
            name=str(data.get("name") or item_id),
            start_period=_integer(_require(data, "start_period", "item"), "start_period", "item"),
            duration=_integer(_require(data, "duration", "item"), "duration", "item"),
            team_allocations=[
                TeamAllocation.from_dict(a)
                for a in _list(data.get("team_allocations", []), "team_allocations", "item")
            ],
            dependencies=[str(d) for d in _list(data.get("dependencies", []), "dependencies", "item")],
            priority=_integer(data.get("priority", 0), "priority", "item"),
            token_budget=None if budget is None else _number(budget, "token_budget", "item"),
        )


# ── Scenario ─────────────────────────────────────────────────────────────────

@dataclass
class Scenario:
    """Teams and scheduled work over ``horizon`` periods (0 <= p < horizon)."""
    id: str
    name: str
    horizon: int
    teams: list[Team] = field(default_factory=list)
    items: list[ScheduledItem] = field(default_factory=list)
    token_budget: float | None = None

    def find_team(self, team_id: str) -> Team | None:
        return next((t for t in self.teams if t.id == team_id), None)

    def find_item(self, item_id: str) -> ScheduledItem | None:
        return next((i for i in self.items if i.id == item_id), None)

    def require_team(self, team_id: str, *, owner: str | None = None) -> Team:
        team = self.find_team(team_id)
        if team is None:
            raise DataIntegrityError("team", team_id, owner=owner)
        return team

    def require_item(self, item_id: str, *, owner: str | None = None) -> ScheduledItem:
        item = self.find_item(item_id)
        if item is None:
            raise DataIntegrityError("item", item_id, owner=owner)
        return item

    def in_horizon(self, period_index: int) -> bool:
        return 0 <= period_index < self.horizon

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "horizon": self.horizon,
            "teams": [t.to_dict() for t in self.teams],
            "items": [i.to_dict() for i in self.items],
            "token_budget": self.token_budget,
        }

    @classmethod
    def from_dict(cls, data: dict) -> Scenario:
        scenario_id = str(_require(data, "id", "scenario"))
        budget = data.get("token_budget")
        return cls(
            id=scenario_id,
            name=str(data.get("name") or scenario_id),
            horizon=_integer(_require(data, "horizon", "scenario"), "horizon", "scenario"),
            teams=[Team.from_dict(t) for t in _list(data.get("teams", []), "teams", "scenario")],
            items=[ScheduledItem.from_dict(i) for i in _list(data.get("items", []), "items", "scenario")],
            token_budget=None if budget is None else _number(budget, "token_budget", "scenario"),
        )
