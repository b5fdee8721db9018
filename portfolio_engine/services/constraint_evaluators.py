"""
Constraint Evaluators

Each evaluator checks one family of rules against a scenario and returns its
violations (scenario infeasible) and warnings (feasible but close to a limit).
Evaluators are pure: they never mutate the scenario and keep no state between
calls, so the registry may run them in any order.

Built-in evaluators:
    capacity      team allocation vs capacity per period (+ utilization grid)
    dependency    unknown / out-of-order / cyclic dependencies, long chains
    temporal-fit  items and allocations inside the planning horizon
    budget        token ceilings per item, per team and per scenario

Usage:
    from portfolio_engine.services.constraint_evaluators import CapacityConstraint
    result = CapacityConstraint(warning_threshold=0.9).evaluate(scenario)
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections import defaultdict

from portfolio_engine.models.constraint import (
    CapacityEvaluatorResult,
    ConstraintViolation,
    ConstraintWarning,
    EvaluatorResult,
    UtilizationCell,
)
from portfolio_engine.models.scenario import Scenario, ScheduledItem

logger = logging.getLogger(__name__)

# Float tolerance when comparing summed tokens to a limit
_EPSILON = 1e-9

DEFAULT_CAPACITY_WARNING_THRESHOLD = 0.85
DEFAULT_CHAIN_WARNING_LENGTH = 3
DEFAULT_BUDGET_WARNING_RATIO = 0.9


# ═════════════════════════════════════════════════════════════════════════════
# Contract
# ═════════════════════════════════════════════════════════════════════════════

class ConstraintEvaluator(ABC):
    """Base class for all constraint evaluators.

    Subclasses set ``id`` and ``name`` and implement ``evaluate``. Set
    ``produces_utilization`` when ``evaluate`` returns a
    ``CapacityEvaluatorResult``; the validator only merges grids from
    results tagged that way.
    """

    id: str = ""
    name: str = ""
    produces_utilization: bool = False

    @abstractmethod
    def evaluate(self, scenario: Scenario) -> EvaluatorResult:
        """Evaluate ``scenario`` and return this constraint's findings."""

    def _result(self) -> EvaluatorResult:
        if self.produces_utilization:
            return CapacityEvaluatorResult(constraint_id=self.id)
        return EvaluatorResult(constraint_id=self.id)

    def _violation(self, code: str, message: str, **kwargs) -> ConstraintViolation:
        return ConstraintViolation(constraint_id=self.id, code=code, message=message, **kwargs)

    def _warning(self, code: str, message: str, **kwargs) -> ConstraintWarning:
        return ConstraintWarning(constraint_id=self.id, code=code, message=message, **kwargs)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} id={self.id!r}>"


# ═════════════════════════════════════════════════════════════════════════════
# Capacity
# ═════════════════════════════════════════════════════════════════════════════

class CapacityConstraint(ConstraintEvaluator):
    """Per team and period, allocated tokens must not exceed capacity."""

    id = "capacity"
    name = "Capacity Constraint"
    produces_utilization = True

    def __init__(self, warning_threshold: float = DEFAULT_CAPACITY_WARNING_THRESHOLD):
        self.warning_threshold = warning_threshold

    def evaluate(self, scenario: Scenario) -> CapacityEvaluatorResult:
        result = self._result()
        team_ids = {t.id for t in scenario.teams}

        allocated: dict[tuple[str, int], float] = defaultdict(float)
        contributors: dict[tuple[str, int], list[str]] = defaultdict(list)
        reported_unknown: set[tuple[str, str]] = set()

        for item in scenario.items:
            for alloc in item.team_allocations:
                if alloc.tokens < 0:
                    result.violations.append(self._violation(
                        "NEGATIVE_ALLOCATION",
                        f'Item "{item.name}" allocates {alloc.tokens} tokens of team '
                        f'"{alloc.team_id}" in period {alloc.period_index}',
                        affected_item_ids=[item.id],
                        affected_team_ids=[alloc.team_id],
                        affected_periods=[alloc.period_index],
                        details={"tokens": alloc.tokens},
                    ))
                    continue
                if alloc.team_id not in team_ids:
                    if (item.id, alloc.team_id) not in reported_unknown:
                        reported_unknown.add((item.id, alloc.team_id))
                        result.violations.append(self._violation(
                            "UNKNOWN_TEAM",
                            f'Item "{item.name}" allocates tokens to unknown team "{alloc.team_id}"',
                            affected_item_ids=[item.id],
                            affected_team_ids=[alloc.team_id],
                            details={"team_id": alloc.team_id},
                        ))
                    continue
                if not scenario.in_horizon(alloc.period_index):
                    continue
                key = (alloc.team_id, alloc.period_index)
                allocated[key] += alloc.tokens
                if alloc.tokens > 0 and item.id not in contributors[key]:
                    contributors[key].append(item.id)

        for team in scenario.teams:
            for p in range(scenario.horizon):
                key = (team.id, p)
                used = allocated.get(key, 0.0)
                available = team.capacity_at(p)
                cell = UtilizationCell.build(team.id, p, used, available)
                result.utilization_grid.append(cell)

                if (available <= 0 and used > 0) or used - available > _EPSILON:
                    over_by = used - available
                    if available <= 0:
                        code = "ZERO_CAPACITY"
                        message = (f'Team "{team.name}" has no capacity in period {p} '
                                   f"but {used} tokens are allocated")
                    else:
                        code = "CAPACITY_EXCEEDED"
                        message = (f'Team "{team.name}" is over-allocated in period {p}: '
                                   f"{used} tokens allocated but only {available} available")
                    result.violations.append(self._violation(
                        code,
                        message,
                        affected_item_ids=list(contributors.get(key, [])),
                        affected_team_ids=[team.id],
                        affected_periods=[p],
                        details={"allocated": used, "available": available, "over_by": over_by},
                    ))
                elif cell.utilization is not None and cell.utilization > self.warning_threshold:
                    result.warnings.append(self._warning(
                        "NEAR_CAPACITY",
                        f'Team "{team.name}" utilization in period {p} is '
                        f"{cell.utilization * 100:.1f}%",
                        metric="utilization",
                        threshold=self.warning_threshold,
                        actual=cell.utilization,
                        affected_item_ids=list(contributors.get(key, [])),
                    ))

        return result


# ═════════════════════════════════════════════════════════════════════════════
# Dependency
# ═════════════════════════════════════════════════════════════════════════════

def _canonical_cycle(path: list[str]) -> tuple[str, ...]:
    """Rotate a cycle so it starts at its smallest id (dedupe key)."""
    pivot = path.index(min(path))
    return tuple(path[pivot:] + path[:pivot])


def find_cycles(edges: dict[str, list[str]]) -> list[list[str]]:
    """Return each distinct cycle reachable by iterative DFS over ``edges``.

    ``edges`` maps an item id to the ids it depends on; iteration follows
    insertion order so the output is deterministic.
    """
    WHITE, GRAY, BLACK = 0, 1, 2
    color = {node: WHITE for node in edges}
    seen: set[tuple[str, ...]] = set()
    cycles: list[list[str]] = []

    for root in edges:
        if color[root] != WHITE:
            continue
        path = [root]
        stack = [(root, iter(edges[root]))]
        color[root] = GRAY
        while stack:
            node, neighbours = stack[-1]
            nxt = next(neighbours, None)
            if nxt is None:
                color[node] = BLACK
                stack.pop()
                path.pop()
                continue
            state = color.get(nxt, BLACK)
            if state == GRAY:
                cycle = path[path.index(nxt):]
                key = _canonical_cycle(cycle)
                if key not in seen:
                    seen.add(key)
                    cycles.append(list(key))
            elif state == WHITE:
                color[nxt] = GRAY
                path.append(nxt)
                stack.append((nxt, iter(edges[nxt])))
    return cycles


class DependencyConstraint(ConstraintEvaluator):
    """Items start only after every dependency has completed."""

    id = "dependency"
    name = "Dependency Constraint"

    def __init__(self, chain_warning_length: int = DEFAULT_CHAIN_WARNING_LENGTH):
        self.chain_warning_length = chain_warning_length

    def evaluate(self, scenario: Scenario) -> EvaluatorResult:
        result = self._result()
        items = {item.id: item for item in scenario.items}
        edges: dict[str, list[str]] = {}

        for item in scenario.items:
            resolved: list[str] = []
            seen: set[str] = set()
            for dep_id in item.dependencies:
                if dep_id in seen:
                    continue
                seen.add(dep_id)
                dep = items.get(dep_id)
                if dep is None:
                    result.violations.append(self._violation(
                        "UNKNOWN_DEPENDENCY",
                        f'Item "{item.name}" depends on unknown item "{dep_id}"',
                        affected_item_ids=[item.id],
                        details={"dependency_id": dep_id},
                    ))
                    continue
                resolved.append(dep_id)
                if dep_id == item.id:
                    continue  # reported as a cycle
                dep_completes = dep.start_period + dep.duration
                if item.start_period < dep_completes:
                    result.violations.append(self._violation(
                        "DEPENDENCY_ORDER",
                        f'Item "{item.name}" starts at period {item.start_period} but '
                        f'dependency "{dep.name}" does not complete until period {dep_completes}',
                        affected_item_ids=[item.id, dep.id],
                        affected_periods=[item.start_period],
                        details={
                            "item_start": item.start_period,
                            "dependency_id": dep.id,
                            "dependency_end": dep_completes,
                        },
                    ))
            edges.setdefault(item.id, resolved)

        cycles = find_cycles(edges)
        for cycle in cycles:
            loop = " -> ".join(cycle + [cycle[0]])
            result.violations.append(self._violation(
                "DEPENDENCY_CYCLE",
                f"Dependency cycle detected: {loop}",
                affected_item_ids=list(cycle),
                details={"cycle": list(cycle)},
            ))

        if not cycles:
            self._chain_warnings(scenario, edges, result)
        return result

    def _chain_warnings(self, scenario: Scenario, edges: dict[str, list[str]],
                        result: EvaluatorResult) -> None:
        """Warn on chain ends whose longest upstream chain is too long (acyclic graphs only)."""
        longest: dict[str, list[str]] = {}

        def chain_to(node: str) -> list[str]:
            # Iterative post-order so deep chains do not hit the recursion limit
            pending = [node]
            while pending:
                current = pending[-1]
                if current in longest:
                    pending.pop()
                    continue
                missing = [d for d in edges.get(current, []) if d not in longest]
                if missing:
                    pending.extend(missing)
                    continue
                best: list[str] = []
                for dep in edges.get(current, []):
                    if len(longest[dep]) > len(best):
                        best = longest[dep]
                longest[current] = best + [current]
                pending.pop()
            return longest[node]

        depended_on = {d for deps in edges.values() for d in deps}
        for item in scenario.items:
            if item.id in depended_on:
                continue
            chain = chain_to(item.id)
            if len(chain) >= self.chain_warning_length:
                result.warnings.append(self._warning(
                    "TIGHT_DEPENDENCY_CHAIN",
                    f'Item "{item.name}" ends a dependency chain of {len(chain)} items: '
                    + " -> ".join(chain),
                    metric="chain_length",
                    threshold=self.chain_warning_length,
                    actual=len(chain),
                    affected_item_ids=list(chain),
                ))


# ═════════════════════════════════════════════════════════════════════════════
# Temporal fit
# ═════════════════════════════════════════════════════════════════════════════

class TemporalFitConstraint(ConstraintEvaluator):
    """Items and their allocations must lie inside the planning horizon."""

    id = "temporal-fit"
    name = "Temporal Fit Constraint"

    def evaluate(self, scenario: Scenario) -> EvaluatorResult:
        result = self._result()
        for item in scenario.items:
            if item.duration < 1:
                result.violations.append(self._violation(
                    "INVALID_DURATION",
                    f'Item "{item.name}" has duration {item.duration}; at least 1 period is required',
                    affected_item_ids=[item.id],
                    details={"duration": item.duration},
                ))
            if item.start_period < 0 or (item.duration >= 1 and item.end_period > scenario.horizon):
                outside = [p for p in range(item.start_period, item.end_period)
                           if not scenario.in_horizon(p)]
                result.violations.append(self._violation(
                    "OUTSIDE_HORIZON",
                    self._horizon_message(item, scenario.horizon),
                    affected_item_ids=[item.id],
                    affected_periods=outside,
                    details={
                        "start_period": item.start_period,
                        "end_period": item.end_period,
                        "horizon": scenario.horizon,
                    },
                ))
            self._check_allocations(item, scenario, result)
        return result

    @staticmethod
    def _horizon_message(item: ScheduledItem, horizon: int) -> str:
        if item.start_period < 0:
            return f'Item "{item.name}" starts at period {item.start_period} before the planning horizon'
        return (f'Item "{item.name}" extends to period {item.end_period} which exceeds '
                f"the planning horizon of {horizon}")

    def _check_allocations(self, item: ScheduledItem, scenario: Scenario,
                           result: EvaluatorResult) -> None:
        outside_horizon = sorted({
            a.period_index for a in item.team_allocations
            if not scenario.in_horizon(a.period_index)
        })
        if outside_horizon:
            result.violations.append(self._violation(
                "ALLOCATION_OUTSIDE_HORIZON",
                f'Item "{item.name}" allocates tokens in periods {outside_horizon} '
                f"outside the planning horizon of {scenario.horizon}",
                affected_item_ids=[item.id],
                affected_team_ids=sorted({a.team_id for a in item.team_allocations
                                          if a.period_index in outside_horizon}),
                affected_periods=outside_horizon,
            ))

        if item.duration < 1:
            return
        outside_window = sorted({
            a.period_index for a in item.team_allocations
            if scenario.in_horizon(a.period_index) and not item.occupies(a.period_index)
            and a.tokens > 0
        })
        if outside_window:
            result.warnings.append(self._warning(
                "ALLOCATION_OUTSIDE_WINDOW",
                f'Item "{item.name}" allocates tokens in periods {outside_window} outside '
                f"its scheduled window [{item.start_period}, {item.end_period})",
                metric="periods_outside_window",
                threshold=0,
                actual=len(outside_window),
                affected_item_ids=[item.id],
            ))


# ═════════════════════════════════════════════════════════════════════════════
# Budget
# ═════════════════════════════════════════════════════════════════════════════

class BudgetConstraint(ConstraintEvaluator):
    """Total tokens per item, team and scenario must stay under their ceilings.

    Ceilings are read from the scenario (``Scenario.token_budget``,
    ``ScheduledItem.token_budget``); constructor values override them. With
    no ceiling anywhere the evaluator reports nothing.
    """

    id = "budget"
    name = "Budget Constraint"

    def __init__(
        self,
        item_budgets: dict[str, float] | None = None,
        team_budgets: dict[str, float] | None = None,
        scenario_budget: float | None = None,
        warning_ratio: float = DEFAULT_BUDGET_WARNING_RATIO,
    ):
        self.item_budgets = dict(item_budgets or {})
        self.team_budgets = dict(team_budgets or {})
        self.scenario_budget = scenario_budget
        self.warning_ratio = warning_ratio

    def evaluate(self, scenario: Scenario) -> EvaluatorResult:
        result = self._result()

        item_totals: dict[str, float] = {}
        team_totals: dict[str, float] = defaultdict(float)
        team_items: dict[str, list[str]] = defaultdict(list)
        for item in scenario.items:
            item_totals[item.id] = sum(max(a.tokens, 0) for a in item.team_allocations)
            for alloc in item.team_allocations:
                if alloc.tokens > 0:
                    team_totals[alloc.team_id] += alloc.tokens
                    if item.id not in team_items[alloc.team_id]:
                        team_items[alloc.team_id].append(item.id)

        item_ceilings = {i.id: i.token_budget for i in scenario.items if i.token_budget is not None}
        item_ceilings.update(self.item_budgets)
        for item in scenario.items:
            ceiling = item_ceilings.get(item.id)
            if ceiling is not None:
                self._check("item", item.id, item_totals[item.id], ceiling, [item.id], result)

        for team_id, ceiling in self.team_budgets.items():
            self._check("team", team_id, team_totals.get(team_id, 0.0), ceiling,
                        team_items.get(team_id, []), result)

        ceiling = self.scenario_budget if self.scenario_budget is not None else scenario.token_budget
        if ceiling is not None:
            self._check("scenario", scenario.id, sum(item_totals.values()), ceiling,
                        [i.id for i in scenario.items if item_totals[i.id] > 0], result)
        return result

    def _check(self, scope: str, scope_id: str, total: float, ceiling: float,
               item_ids: list[str], result: EvaluatorResult) -> None:
        if total - ceiling > _EPSILON:
            result.violations.append(self._violation(
                "BUDGET_EXCEEDED",
                f'{scope.capitalize()} "{scope_id}" uses {total} tokens, exceeding its budget of {ceiling}',
                affected_item_ids=list(item_ids),
                affected_team_ids=[scope_id] if scope == "team" else [],
                details={"scope": scope, "scope_id": scope_id, "total": total,
                         "budget": ceiling, "over_by": total - ceiling},
            ))
        elif ceiling > 0 and total >= self.warning_ratio * ceiling:
            ratio = total / ceiling
            result.warnings.append(self._warning(
                "BUDGET_NEAR_LIMIT",
                f'{scope.capitalize()} "{scope_id}" uses {ratio * 100:.1f}% of its budget',
                metric="budget_ratio",
                threshold=self.warning_ratio,
                actual=ratio,
                affected_item_ids=list(item_ids),
            ))
