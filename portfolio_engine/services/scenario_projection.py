"""
Scenario Projection

Applies proposed changes to a copy of a scenario and derives the capacity
picture (per-team capacity, demand and headroom) used by governance
decisions. Nothing here mutates its input.

Usage:
    projected = apply_changes(baseline, [WhatIfChange(ChangeKind.MOVE_ITEM,
                                                      item_id="a", start_period=3)])
    plan = derive_capacity_plan(projected)
"""

from __future__ import annotations

import copy
import logging
from dataclasses import replace

from portfolio_engine.core.exceptions import ConflictError, NotFoundError, ValidationError
from portfolio_engine.models.constraint import ValidationResult
from portfolio_engine.models.governance import (
    CapacityPlan,
    ChangeKind,
    ProjectedScenario,
    WhatIfChange,
)
from portfolio_engine.models.scenario import Scenario, ScheduledItem

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════════
# Change application
# ═════════════════════════════════════════════════════════════════════════════

def _item_index(scenario: Scenario, item_id: str) -> int:
    for idx, item in enumerate(scenario.items):
        if item.id == item_id:
            return idx
    raise NotFoundError(resource="ScheduledItem", resource_id=item_id, scenario_id=scenario.id)


def _team_index(scenario: Scenario, team_id: str) -> int:
    for idx, team in enumerate(scenario.teams):
        if team.id == team_id:
            return idx
    raise NotFoundError(resource="Team", resource_id=team_id, scenario_id=scenario.id)


def _resize(item: ScheduledItem, duration: int) -> ScheduledItem:
    new_end = item.start_period + duration
    return replace(
        item,
        duration=duration,
        team_allocations=[a for a in item.team_allocations if a.period_index < new_end],
    )


def _adjust_capacity(scenario: Scenario, change: WhatIfChange) -> None:
    idx = _team_index(scenario, change.team_id)
    team = scenario.teams[idx]
    periods = change.periods if change.periods is not None else list(range(scenario.horizon))
    bad = [p for p in periods if not scenario.in_horizon(p)]
    if bad:
        raise ValidationError(
            f"Capacity periods {bad} outside the planning horizon of {scenario.horizon}",
            details={"periods": bad},
        )

    length = max([len(team.capacity_by_period)] + [p + 1 for p in periods])
    capacity = list(team.capacity_by_period) + [0.0] * (length - len(team.capacity_by_period))
    sign = 1 if change.kind == ChangeKind.ADD_CAPACITY else -1
    for p in periods:
        capacity[p] = max(0.0, capacity[p] + sign * change.tokens)
    scenario.teams[idx] = replace(team, capacity_by_period=tuple(capacity))


def apply_change(scenario: Scenario, change: WhatIfChange) -> None:
    """Apply one change in place to ``scenario`` (callers pass a copy)."""
    change.validate()
    kind = change.kind

    if kind == ChangeKind.ADD_ITEM:
        if scenario.find_item(change.item.id) is not None:
            raise ConflictError(resource="ScheduledItem", field="id", value=change.item.id)
        scenario.items.append(copy.deepcopy(change.item))

    elif kind == ChangeKind.REMOVE_ITEM:
        # Dependents keep their reference; the dependency evaluator reports it
        del scenario.items[_item_index(scenario, change.item_id)]

    elif kind == ChangeKind.MOVE_ITEM:
        idx = _item_index(scenario, change.item_id)
        scenario.items[idx] = scenario.items[idx].shifted(change.start_period)

    elif kind == ChangeKind.RESIZE_ITEM:
        idx = _item_index(scenario, change.item_id)
        scenario.items[idx] = _resize(scenario.items[idx], change.duration)

    elif kind == ChangeKind.REALLOCATE:
        idx = _item_index(scenario, change.item_id)
        scenario.items[idx] = replace(scenario.items[idx],
                                      team_allocations=list(change.allocations))

    elif kind == ChangeKind.SET_DEPENDENCIES:
        idx = _item_index(scenario, change.item_id)
        scenario.items[idx] = replace(scenario.items[idx],
                                      dependencies=list(change.dependencies))

    elif kind in (ChangeKind.ADD_CAPACITY, ChangeKind.REMOVE_CAPACITY):
        _adjust_capacity(scenario, change)


def apply_changes(scenario: Scenario, changes: list[WhatIfChange]) -> Scenario:
    """Return a copy of ``scenario`` with ``changes`` applied in order."""
    projected = copy.deepcopy(scenario)
    for change in changes:
        apply_change(projected, change)
    logger.debug("Applied %d change(s) to scenario %s", len(changes), scenario.id,
                 extra={"scenario_id": scenario.id})
    return projected


# ═════════════════════════════════════════════════════════════════════════════
# Capacity picture
# ═════════════════════════════════════════════════════════════════════════════

def derive_capacity_plan(scenario: Scenario) -> CapacityPlan:
    """Capacity, allocated and remaining tokens per team for each horizon period.

    Allocations to unknown teams, outside the horizon or with negative tokens
    are left out; the evaluators report those separately.
    """
    capacity = {t.id: [t.capacity_at(p) for p in range(scenario.horizon)] for t in scenario.teams}
    allocated = {t.id: [0.0] * scenario.horizon for t in scenario.teams}

    for item in scenario.items:
        for alloc in item.team_allocations:
            row = allocated.get(alloc.team_id)
            if row is None or alloc.tokens <= 0 or not scenario.in_horizon(alloc.period_index):
                continue
            row[alloc.period_index] += alloc.tokens

    remaining = {
        team_id: [cap - used for cap, used in zip(capacity[team_id], allocated[team_id])]
        for team_id in capacity
    }
    return CapacityPlan(
        horizon=scenario.horizon,
        capacity_by_team=capacity,
        allocated_by_team=allocated,
        remaining_by_team=remaining,
    )


def build_projection(scenario: Scenario, validation: ValidationResult | None = None,
                     base_version: int = 0) -> ProjectedScenario:
    """Wrap ``scenario`` with its capacity plan and the validator's utilization map."""
    plan = derive_capacity_plan(scenario)
    return ProjectedScenario(
        scenario=scenario,
        capacity_plan=plan,
        total_demand=sum(sum(row) for row in plan.allocated_by_team.values()),
        total_capacity=sum(sum(row) for row in plan.capacity_by_team.values()),
        utilization=list(validation.utilization_map) if validation is not None else [],
        base_version=base_version,
    )


def allocated_by_team(plan: CapacityPlan) -> dict[str, float]:
    """Total allocated tokens per team across the horizon."""
    return {team_id: sum(row) for team_id, row in plan.allocated_by_team.items()}
