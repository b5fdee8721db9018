"""
Governance data model: change requests, projections, decisions and the
report types returned by auto-schedule, what-if and portfolio health.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from portfolio_engine.core.exceptions import ValidationError
from portfolio_engine.models.constraint import (
    ConstraintViolation,
    ConstraintWarning,
    UtilizationCell,
)
from portfolio_engine.models.scenario import Scenario, ScheduledItem, TeamAllocation, _list


# ═════════════════════════════════════════════════════════════════════════════
# Enums
# ═════════════════════════════════════════════════════════════════════════════

class DecisionOutcome(str, Enum):
    APPROVED = "approved"
    APPROVED_WITH_WARNINGS = "approved_with_warnings"
    REJECTED = "rejected"


class DecisionState(str, Enum):
    PROPOSED = "proposed"
    EVALUATED = "evaluated"
    APPROVED = "approved"
    APPROVED_WITH_WARNINGS = "approved_with_warnings"
    REJECTED = "rejected"


class DecisionAction(str, Enum):
    REQUEST_CHANGE = "request_change"
    VALIDATE_PORTFOLIO = "validate_portfolio"
    AUTO_SCHEDULE = "auto_schedule"
    WHAT_IF = "what_if"


class ChangeKind(str, Enum):
    ADD_ITEM = "add_item"
    REMOVE_ITEM = "remove_item"
    MOVE_ITEM = "move_item"
    RESIZE_ITEM = "resize_item"
    REALLOCATE = "reallocate"
    SET_DEPENDENCIES = "set_dependencies"
    ADD_CAPACITY = "add_capacity"
    REMOVE_CAPACITY = "remove_capacity"


class SuggestionKind(str, Enum):
    SHIFT_START = "shift_start"
    REDUCE_ALLOCATION = "reduce_allocation"


# Decision lifecycle: state -> states it may move to
DECISION_TRANSITIONS: dict[DecisionState, set[DecisionState]] = {
    DecisionState.PROPOSED: {DecisionState.EVALUATED, DecisionState.REJECTED},
    DecisionState.EVALUATED: {
        DecisionState.APPROVED,
        DecisionState.APPROVED_WITH_WARNINGS,
        DecisionState.REJECTED,
    },
    DecisionState.APPROVED: set(),
    DecisionState.APPROVED_WITH_WARNINGS: set(),
    DecisionState.REJECTED: set(),
}

OUTCOME_STATE: dict[DecisionOutcome, DecisionState] = {
    DecisionOutcome.APPROVED: DecisionState.APPROVED,
    DecisionOutcome.APPROVED_WITH_WARNINGS: DecisionState.APPROVED_WITH_WARNINGS,
    DecisionOutcome.REJECTED: DecisionState.REJECTED,
}


def classify_outcome(violations: list, warnings: list) -> DecisionOutcome:
    """REJECTED on any violation, APPROVED_WITH_WARNINGS on any warning."""
    if violations:
        return DecisionOutcome.REJECTED
    if warnings:
        return DecisionOutcome.APPROVED_WITH_WARNINGS
    return DecisionOutcome.APPROVED


# ═════════════════════════════════════════════════════════════════════════════
# Change requests
# ═════════════════════════════════════════════════════════════════════════════

# Fields each change kind must carry
_REQUIRED_FIELDS: dict[ChangeKind, tuple[str, ...]] = {
    ChangeKind.ADD_ITEM: ("item",),
    ChangeKind.REMOVE_ITEM: ("item_id",),
    ChangeKind.MOVE_ITEM: ("item_id", "start_period"),
    ChangeKind.RESIZE_ITEM: ("item_id", "duration"),
    ChangeKind.REALLOCATE: ("item_id", "allocations"),
    ChangeKind.SET_DEPENDENCIES: ("item_id", "dependencies"),
    ChangeKind.ADD_CAPACITY: ("team_id", "tokens"),
    ChangeKind.REMOVE_CAPACITY: ("team_id", "tokens"),
}


def _parse_kind(raw) -> ChangeKind:
    if isinstance(raw, ChangeKind):
        return raw
    if isinstance(raw, str):
        for kind in ChangeKind:
            if raw.lower() == kind.value:
                return kind
    raise ValidationError(f"Unknown change kind: {raw!r}", details={"kind": "unknown"})


def _copy_list(value):
    return list(value) if isinstance(value, (list, tuple)) else value


@dataclass
class WhatIfChange:
    """One proposed modification of a scenario.

    Which fields are read depends on ``kind``; ``validate()`` checks that the
    required ones are present. Capacity changes apply to ``periods`` or, when
    omitted, to every period of the horizon.
    """
    kind: ChangeKind
    item_id: str | None = None
    item: ScheduledItem | None = None
    start_period: int | None = None
    duration: int | None = None
    allocations: list[TeamAllocation] | None = None
    dependencies: list[str] | None = None
    team_id: str | None = None
    tokens: float | None = None
    periods: list[int] | None = None

    def validate(self) -> None:
        if not isinstance(self.kind, ChangeKind):
            raise ValidationError(f"Unknown change kind: {self.kind!r}", details={"kind": "unknown"})
        missing = [f for f in _REQUIRED_FIELDS[self.kind] if getattr(self, f) is None]
        if missing:
            raise ValidationError(
                f"{self.kind.name} requires: {', '.join(missing)}",
                details={f: "missing" for f in missing},
            )
        for name in ("item_id", "team_id"):
            value = getattr(self, name)
            if value is not None and not isinstance(value, str):
                raise ValidationError(f"{name} must be a string", details={name: "not a string"})
        if self.dependencies is not None and (
            not isinstance(self.dependencies, (list, tuple))
            or not all(isinstance(d, str) for d in self.dependencies)
        ):
            raise ValidationError("dependencies must be a list of item ids",
                                  details={"dependencies": "not a list of strings"})
        if self.allocations is not None and (
            not isinstance(self.allocations, (list, tuple))
            or not all(isinstance(a, TeamAllocation) for a in self.allocations)
        ):
            raise ValidationError("allocations must be a list of team allocations",
                                  details={"allocations": "invalid"})
        if self.periods is not None and (
            not isinstance(self.periods, (list, tuple))
            or any(isinstance(p, bool) or not isinstance(p, int) for p in self.periods)
        ):
            raise ValidationError("periods must be a list of integers",
                                  details={"periods": "not a list of integers"})
        for name in ("start_period", "duration"):
            value = getattr(self, name)
            if value is not None and (isinstance(value, bool) or not isinstance(value, int)):
                raise ValidationError(f"{name} must be an integer", details={name: "not an integer"})
        if self.tokens is not None and (
            isinstance(self.tokens, bool) or not isinstance(self.tokens, (int, float))
        ):
            raise ValidationError("tokens must be a number", details={"tokens": "not a number"})
        if self.kind in (ChangeKind.ADD_CAPACITY, ChangeKind.REMOVE_CAPACITY) and self.tokens < 0:
            raise ValidationError("tokens must be non-negative", details={"tokens": "negative"})

    @property
    def target_id(self) -> str | None:
        if self.kind == ChangeKind.ADD_ITEM and self.item is not None:
            return self.item.id
        return self.item_id or self.team_id

    def to_dict(self) -> dict:
        d: dict = {"kind": self.kind.value}
        if self.item_id is not None:
            d["item_id"] = self.item_id
        if self.item is not None:
            d["item"] = self.item.to_dict()
        if self.start_period is not None:
            d["start_period"] = self.start_period
        if self.duration is not None:
            d["duration"] = self.duration
        if self.allocations is not None:
            d["allocations"] = [a.to_dict() for a in self.allocations]
        if self.dependencies is not None:
            d["dependencies"] = _copy_list(self.dependencies)
        if self.team_id is not None:
            d["team_id"] = self.team_id
        if self.tokens is not None:
            d["tokens"] = self.tokens
        if self.periods is not None:
            d["periods"] = _copy_list(self.periods)
        return d

    @classmethod
    def from_dict(cls, data: dict) -> WhatIfChange:
        if not isinstance(data, dict):
            raise ValidationError("change must be an object", details={"change": "not an object"})
        kind = _parse_kind(data.get("kind"))
        change = cls(
            kind=kind,
            item_id=data.get("item_id"),
            item=ScheduledItem.from_dict(data["item"]) if data.get("item") is not None else None,
            start_period=data.get("start_period"),
            duration=data.get("duration"),
            allocations=(
                [TeamAllocation.from_dict(a)
                 for a in _list(data["allocations"], "allocations", "change")]
                if data.get("allocations") is not None else None
            ),
            dependencies=data.get("dependencies"),
            team_id=data.get("team_id"),
            tokens=data.get("tokens"),
            periods=data.get("periods"),
        )
        change.validate()
        if change.dependencies is not None:
            change.dependencies = list(change.dependencies)
        if change.periods is not None:
            change.periods = list(change.periods)
        return change


# ═════════════════════════════════════════════════════════════════════════════
# Projection
# ═════════════════════════════════════════════════════════════════════════════

@dataclass
class CapacityPlan:
    """Per-team capacity, demand and headroom across the horizon."""
    horizon: int
    capacity_by_team: dict[str, list[float]] = field(default_factory=dict)
    allocated_by_team: dict[str, list[float]] = field(default_factory=dict)
    remaining_by_team: dict[str, list[float]] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "horizon": self.horizon,
            "capacity_by_team": {k: list(v) for k, v in self.capacity_by_team.items()},
            "allocated_by_team": {k: list(v) for k, v in self.allocated_by_team.items()},
            "remaining_by_team": {k: list(v) for k, v in self.remaining_by_team.items()},
        }


@dataclass
class ProjectedScenario:
    """A scenario plus the derived capacity picture it was evaluated with."""
    scenario: Scenario
    capacity_plan: CapacityPlan
    total_demand: float
    total_capacity: float
    utilization: list[UtilizationCell] = field(default_factory=list)
    base_version: int = 0

    @property
    def overall_utilization(self) -> float:
        if self.total_capacity <= 0:
            return 0.0
        return self.total_demand / self.total_capacity

    def to_dict(self) -> dict:
        return {
            "scenario": self.scenario.to_dict(),
            "capacity_plan": self.capacity_plan.to_dict(),
            "total_demand": self.total_demand,
            "total_capacity": self.total_capacity,
            "overall_utilization": round(self.overall_utilization, 4),
            "utilization": [c.to_dict() for c in self.utilization],
            "base_version": self.base_version,
        }


# ═════════════════════════════════════════════════════════════════════════════
# Decisions
# ═════════════════════════════════════════════════════════════════════════════

@dataclass
class AlternativeSuggestion:
    """A concrete change that would remove some of a rejection's violations."""
    kind: SuggestionKind
    item_id: str
    description: str
    change: WhatIfChange
    feasible: bool = False

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "item_id": self.item_id,
            "description": self.description,
            "change": self.change.to_dict(),
            "feasible": self.feasible,
        }


@dataclass
class GovernanceDecision:
    """Classified outcome of a change request with its evidence."""
    outcome: DecisionOutcome
    state_history: list[DecisionState] = field(default_factory=list)
    projected: ProjectedScenario | None = None
    violations: list[ConstraintViolation] = field(default_factory=list)
    warnings: list[ConstraintWarning] = field(default_factory=list)
    alternative_suggestions: list[AlternativeSuggestion] = field(default_factory=list)
    decision_id: str | None = None
    duration_ms: float = 0.0
    request: list[dict] = field(default_factory=list)

    @property
    def approved(self) -> bool:
        return self.outcome != DecisionOutcome.REJECTED

    @property
    def state(self) -> DecisionState:
        return self.state_history[-1] if self.state_history else DecisionState.PROPOSED

    def to_dict(self) -> dict:
        return {
            "decision_id": self.decision_id,
            "outcome": self.outcome.value,
            "approved": self.approved,
            "state_history": [s.value for s in self.state_history],
            "projected": self.projected.to_dict() if self.projected else None,
            "violations": [v.to_dict() for v in self.violations],
            "warnings": [w.to_dict() for w in self.warnings],
            "alternative_suggestions": [s.to_dict() for s in self.alternative_suggestions],
            "duration_ms": round(self.duration_ms, 3),
            "request": self.request,
        }


@dataclass(frozen=True)
class DecisionLogEntry:
    """Immutable audit record of one governance evaluation."""
    id: str
    timestamp: datetime
    action: DecisionAction
    request: object
    projected_scenario: Scenario | None
    constraints_evaluated: tuple[str, ...]
    result: DecisionOutcome
    violations: tuple[ConstraintViolation, ...]
    warnings: tuple[ConstraintWarning, ...]
    duration_ms: float

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "action": self.action.value,
            "request": self.request,
            "projected_scenario": (
                self.projected_scenario.to_dict() if self.projected_scenario else None
            ),
            "constraints_evaluated": list(self.constraints_evaluated),
            "result": self.result.value,
            "violations": [v.to_dict() for v in self.violations],
            "warnings": [w.to_dict() for w in self.warnings],
            "duration_ms": round(self.duration_ms, 3),
        }


# ═════════════════════════════════════════════════════════════════════════════
# Auto-schedule
# ═════════════════════════════════════════════════════════════════════════════

@dataclass
class ScheduleAssignment:
    item_id: str
    original_start: int
    start_period: int
    end_period: int
    placed: bool

    def to_dict(self) -> dict:
        return {
            "item_id": self.item_id,
            "original_start": self.original_start,
            "start_period": self.start_period,
            "end_period": self.end_period,
            "placed": self.placed,
        }


@dataclass
class AutoScheduleResult:
    feasible: bool
    outcome: DecisionOutcome
    projected: ProjectedScenario
    schedule: list[ScheduleAssignment] = field(default_factory=list)
    violations: list[ConstraintViolation] = field(default_factory=list)
    warnings: list[ConstraintWarning] = field(default_factory=list)
    decision_id: str | None = None

    @property
    def unplaced(self) -> list[str]:
        return [a.item_id for a in self.schedule if not a.placed]

    def to_dict(self) -> dict:
        return {
            "decision_id": self.decision_id,
            "feasible": self.feasible,
            "outcome": self.outcome.value,
            "projected": self.projected.to_dict(),
            "schedule": [a.to_dict() for a in self.schedule],
            "violations": [v.to_dict() for v in self.violations],
            "warnings": [w.to_dict() for w in self.warnings],
        }


# ═════════════════════════════════════════════════════════════════════════════
# What-if
# ═════════════════════════════════════════════════════════════════════════════

@dataclass
class WhatIfDelta:
    """Difference between the baseline and a projected scenario."""
    utilization_change: float
    new_violations: list[ConstraintViolation] = field(default_factory=list)
    resolved_violations: list[ConstraintViolation] = field(default_factory=list)
    # team id -> change in remaining tokens (capacity - allocated) across the horizon
    capacity_impact: dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "utilization_change": round(self.utilization_change, 4),
            "new_violations": [v.to_dict() for v in self.new_violations],
            "resolved_violations": [v.to_dict() for v in self.resolved_violations],
            "capacity_impact": dict(self.capacity_impact),
        }


@dataclass
class WhatIfResult:
    baseline: ProjectedScenario
    projected: ProjectedScenario
    delta: WhatIfDelta
    violations: list[ConstraintViolation] = field(default_factory=list)
    warnings: list[ConstraintWarning] = field(default_factory=list)
    feasible: bool = True
    outcome: DecisionOutcome = DecisionOutcome.APPROVED
    decision_id: str | None = None

    def to_dict(self) -> dict:
        return {
            "decision_id": self.decision_id,
            "feasible": self.feasible,
            "outcome": self.outcome.value,
            "baseline": self.baseline.to_dict(),
            "projected": self.projected.to_dict(),
            "delta": self.delta.to_dict(),
            "violations": [v.to_dict() for v in self.violations],
            "warnings": [w.to_dict() for w in self.warnings],
        }


# ═════════════════════════════════════════════════════════════════════════════
# Portfolio health
# ═════════════════════════════════════════════════════════════════════════════

@dataclass
class PortfolioSummary:
    total_items: int
    scheduled_items: int
    total_demand: float
    total_capacity: float
    overall_utilization: float
    constrained_teams: list[str] = field(default_factory=list)
    critical_violations: int = 0

    def to_dict(self) -> dict:
        return {
            "total_items": self.total_items,
            "scheduled_items": self.scheduled_items,
            "total_demand": self.total_demand,
            "total_capacity": self.total_capacity,
            "overall_utilization": round(self.overall_utilization, 4),
            "constrained_teams": list(self.constrained_teams),
            "critical_violations": self.critical_violations,
        }


@dataclass
class PortfolioHealthReport:
    healthy: bool
    score: int
    rag: str
    projected: ProjectedScenario
    summary: PortfolioSummary
    violations: list[ConstraintViolation] = field(default_factory=list)
    warnings: list[ConstraintWarning] = field(default_factory=list)
    decision_id: str | None = None

    def to_dict(self) -> dict:
        return {
            "decision_id": self.decision_id,
            "healthy": self.healthy,
            "score": self.score,
            "rag": self.rag,
            "summary": self.summary.to_dict(),
            "projected": self.projected.to_dict(),
            "violations": [v.to_dict() for v in self.violations],
            "warnings": [w.to_dict() for w in self.warnings],
        }
