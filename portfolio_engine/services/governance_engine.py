"""
Governance Engine

Turns proposed portfolio changes into auditable decisions. Every call
projects the change onto a copy of the baseline scenario, validates the
projection and classifies the outcome:

    PROPOSED → EVALUATED → APPROVED | APPROVED_WITH_WARNINGS | REJECTED

Malformed requests skip evaluation (PROPOSED → REJECTED) with a diagnostic
violation instead of raising. Each evaluation writes exactly one entry to
the decision log. The baseline only changes through ``commit`` or
``request_change``, both guarded by the engine lock and a version check.

Usage:
    engine = GovernanceEngine(scenario, settings=get_config("testing"))
    decision = engine.evaluate_change({"kind": "move_item", "item_id": "a",
                                       "start_period": 2})
    if decision.approved:
        engine.commit(decision)
"""

from __future__ import annotations

import copy
import logging
from dataclasses import replace
from threading import RLock

from portfolio_engine.config import Config
from portfolio_engine.core.exceptions import (
    ConflictError,
    NotFoundError,
    ValidationError,
)
from portfolio_engine.middleware.timing import timed_evaluation
from portfolio_engine.models.constraint import ConstraintViolation, ValidationResult
from portfolio_engine.models.governance import (
    DECISION_TRANSITIONS,
    OUTCOME_STATE,
    AlternativeSuggestion,
    AutoScheduleResult,
    ChangeKind,
    DecisionAction,
    DecisionLogEntry,
    DecisionOutcome,
    DecisionState,
    GovernanceDecision,
    PortfolioHealthReport,
    ScheduleAssignment,
    SuggestionKind,
    WhatIfChange,
    WhatIfDelta,
    WhatIfResult,
    classify_outcome,
)
from portfolio_engine.models.scenario import Scenario, ScheduledItem
from portfolio_engine.services.capacity_grid import CapacityGrid
from portfolio_engine.services.constraint_registry import ConstraintRegistry, ConstraintValidator
from portfolio_engine.services.decision_log import DecisionLog
from portfolio_engine.services.portfolio_metrics import build_health_report
from portfolio_engine.services.scenario_projection import (
    allocated_by_team,
    apply_changes,
    build_projection,
)
from portfolio_engine.utils.errors import E, error_payload, violation_code_for

logger = logging.getLogger(__name__)

GOVERNANCE_ID = "governance"

# Change kinds whose target is an item that can be shifted as an alternative
_ITEM_CHANGES = {
    ChangeKind.ADD_ITEM,
    ChangeKind.MOVE_ITEM,
    ChangeKind.RESIZE_ITEM,
    ChangeKind.REALLOCATE,
    ChangeKind.SET_DEPENDENCIES,
}


class TransitionError(Exception):
    """Raised when a decision is moved to a state its lifecycle does not allow."""

    def __init__(self, current: DecisionState, target: DecisionState):
        super().__init__(f"Cannot move decision from {current.value} to {target.value}")
        self.current = current
        self.target = target


def _advance(history: list[DecisionState], target: DecisionState) -> None:
    current = history[-1]
    if target not in DECISION_TRANSITIONS[current]:
        raise TransitionError(current, target)
    history.append(target)


def _diagnostic(code: str, exc: Exception) -> ConstraintViolation:
    """Violation describing why a request could not be evaluated."""
    message = str(exc)
    return ConstraintViolation(
        constraint_id=GOVERNANCE_ID,
        code=violation_code_for(code),
        message=message,
        details=error_payload(code, message, details=getattr(exc, "details", None)),
    )


def _position(scenario: Scenario, item_id: str) -> int | None:
    return next((idx for idx, item in enumerate(scenario.items) if item.id == item_id), None)


def _classify_error(exc: Exception) -> str:
    if isinstance(exc, NotFoundError):
        return E.NOT_FOUND
    if isinstance(exc, ConflictError):
        return E.CONFLICT_DUPLICATE
    if isinstance(exc, ValidationError):
        return E.VALIDATION_INVALID
    return E.INTERNAL


class GovernanceEngine:
    """Evaluates, records and applies changes to a baseline scenario."""

    def __init__(
        self,
        scenario: Scenario,
        validator: ConstraintValidator | None = None,
        decision_log: DecisionLog | None = None,
        settings=None,
    ):
        self.settings = settings if settings is not None else Config()
        self.validator = validator if validator is not None else ConstraintValidator(
            ConstraintRegistry(settings=self.settings)
        )
        self.decision_log = decision_log if decision_log is not None else DecisionLog()
        self.max_alternatives = getattr(self.settings, "MAX_ALTERNATIVE_SUGGESTIONS", 3)
        self._slow_ms = getattr(self.settings, "SLOW_EVALUATION_MS", None)
        self._baseline = copy.deepcopy(scenario)
        self._version = 0
        self._lock = RLock()

    # ── Baseline access ──────────────────────────────────────────────────────

    @property
    def baseline(self) -> Scenario:
        """A copy of the current baseline scenario."""
        with self._lock:
            return copy.deepcopy(self._baseline)

    @property
    def version(self) -> int:
        with self._lock:
            return self._version

    def _snapshot(self) -> tuple[Scenario, int]:
        with self._lock:
            return copy.deepcopy(self._baseline), self._version

    # ═════════════════════════════════════════════════════════════════════════
    # Change requests
    # ═════════════════════════════════════════════════════════════════════════

    @staticmethod
    def _parse_changes(changes) -> list[WhatIfChange]:
        if isinstance(changes, (WhatIfChange, dict)):
            changes = [changes]
        if not isinstance(changes, (list, tuple)) or not changes:
            raise ValidationError("At least one change is required",
                                  details={"changes": "missing"})
        parsed = []
        for raw in changes:
            if isinstance(raw, WhatIfChange):
                raw.validate()
                parsed.append(raw)
            elif isinstance(raw, dict):
                parsed.append(WhatIfChange.from_dict(raw))
            else:
                raise ValidationError(f"Unsupported change type: {type(raw).__name__}",
                                      details={"changes": "invalid"})
        return parsed

    @staticmethod
    def _request_payload(changes) -> object:
        if isinstance(changes, WhatIfChange):
            return [changes.to_dict()]
        if isinstance(changes, (list, tuple)):
            return [c.to_dict() if isinstance(c, WhatIfChange) else c for c in changes]
        return changes

    def evaluate_change(self, changes) -> GovernanceDecision:
        """Evaluate ``changes`` against the baseline without applying them."""
        baseline, version = self._snapshot()
        history = [DecisionState.PROPOSED]
        request = self._request_payload(changes)
        decision: GovernanceDecision

        with timed_evaluation(DecisionAction.REQUEST_CHANGE.value, baseline.id,
                              slow_threshold_ms=self._slow_ms) as timer:
            try:
                parsed = self._parse_changes(changes)
                request = [c.to_dict() for c in parsed]
                projected_scenario = apply_changes(baseline, parsed)
                validation = self.validator.validate(projected_scenario)
                decision = self._decide(history, request, projected_scenario, validation,
                                        parsed, version)
            except (ValidationError, NotFoundError, ConflictError) as exc:
                logger.info("Change request rejected before evaluation: %s", exc,
                            extra={"scenario_id": baseline.id})
                decision = self._reject_request(history, request, _classify_error(exc), exc)
            except Exception as exc:
                logger.exception("Change evaluation failed for scenario %s", baseline.id,
                                 extra={"scenario_id": baseline.id})
                decision = self._reject_request(history, request, E.INTERNAL, exc)

        decision.duration_ms = timer.elapsed_ms()
        entry = self._log(
            DecisionAction.REQUEST_CHANGE,
            request,
            decision.projected.scenario if decision.projected else None,
            self.validator.registry.ids() if decision.projected else [],
            decision.outcome,
            decision.violations,
            decision.warnings,
            decision.duration_ms,
        )
        decision.decision_id = entry.id
        return decision

    def _reject_request(self, history, request, code: str, exc: Exception) -> GovernanceDecision:
        # A failure after classification discards the provisional outcome
        while history[-1] not in (DecisionState.PROPOSED, DecisionState.EVALUATED):
            history.pop()
        _advance(history, DecisionState.REJECTED)
        return GovernanceDecision(
            outcome=DecisionOutcome.REJECTED,
            state_history=history,
            violations=[_diagnostic(code, exc)],
            request=request,
        )

    def _decide(self, history, request, projected_scenario: Scenario,
                validation: ValidationResult, changes: list[WhatIfChange],
                version: int) -> GovernanceDecision:
        _advance(history, DecisionState.EVALUATED)
        outcome = classify_outcome(validation.violations, validation.warnings)
        _advance(history, OUTCOME_STATE[outcome])

        suggestions: list[AlternativeSuggestion] = []
        if outcome == DecisionOutcome.REJECTED and self.max_alternatives > 0:
            try:
                suggestions = self._suggest_alternatives(projected_scenario, validation, changes)
            except (ValidationError, NotFoundError, ConflictError):
                logger.warning("Alternative search failed for scenario %s",
                               projected_scenario.id, exc_info=True)

        return GovernanceDecision(
            outcome=outcome,
            state_history=history,
            projected=build_projection(projected_scenario, validation, version),
            violations=list(validation.violations),
            warnings=list(validation.warnings),
            alternative_suggestions=suggestions,
            request=request,
        )

    # ── Alternatives ─────────────────────────────────────────────────────────

    def _candidate_items(self, scenario: Scenario, validation: ValidationResult,
                         changes: list[WhatIfChange]) -> list[ScheduledItem]:
        ids: list[str] = []
        for change in changes:
            if change.kind in _ITEM_CHANGES and change.target_id not in ids:
                ids.append(change.target_id)
        for v in validation.violations:
            for item_id in v.affected_item_ids:
                if item_id not in ids:
                    ids.append(item_id)
        return [item for item in (scenario.find_item(i) for i in ids) if item is not None]

    def _suggest_alternatives(self, scenario: Scenario, validation: ValidationResult,
                              changes: list[WhatIfChange]) -> list[AlternativeSuggestion]:
        """Changes that, applied on top of the request, would make it feasible.

        SHIFT_START tries later start periods for each involved item;
        REDUCE_ALLOCATION trims an item's tokens on an over-allocated cell.
        """
        suggestions: list[AlternativeSuggestion] = []
        candidates = self._candidate_items(scenario, validation, changes)

        for item in candidates:
            if len(suggestions) >= self.max_alternatives:
                return suggestions
            shift = self._shift_later(scenario, item)
            if shift is not None:
                suggestions.append(shift)

        for v in validation.violations:
            if len(suggestions) >= self.max_alternatives:
                break
            if v.code != "CAPACITY_EXCEEDED" or not v.affected_item_ids:
                continue
            reduction = self._reduce_allocation(scenario, v)
            if reduction is not None:
                suggestions.append(reduction)
        return suggestions

    def _shift_later(self, scenario: Scenario, item: ScheduledItem) -> AlternativeSuggestion | None:
        last_start = scenario.horizon - max(item.duration, 1)
        for start in range(item.start_period + 1, last_start + 1):
            change = WhatIfChange(ChangeKind.MOVE_ITEM, item_id=item.id, start_period=start)
            if self.validator.validate(apply_changes(scenario, [change])).feasible:
                return AlternativeSuggestion(
                    kind=SuggestionKind.SHIFT_START,
                    item_id=item.id,
                    description=(
                        f'Delay "{item.name}" from period {item.start_period} to period {start}; '
                        f"completion shifts to period {start + item.duration - 1}"
                    ),
                    change=change,
                    feasible=True,
                )
        return None

    def _reduce_allocation(self, scenario: Scenario,
                           violation: ConstraintViolation) -> AlternativeSuggestion | None:
        team_id = violation.affected_team_ids[0]
        period = violation.affected_periods[0]
        over_by = violation.details.get("over_by", 0.0)
        item = scenario.find_item(violation.affected_item_ids[-1])
        if item is None or over_by <= 0:
            return None

        remaining = over_by
        allocations = []
        for alloc in item.team_allocations:
            if alloc.team_id == team_id and alloc.period_index == period and remaining > 0:
                cut = min(alloc.tokens, remaining)
                remaining -= cut
                alloc = replace(alloc, tokens=alloc.tokens - cut)
            allocations.append(alloc)
        reduced = over_by - remaining
        if reduced <= 0:
            return None

        change = WhatIfChange(ChangeKind.REALLOCATE, item_id=item.id, allocations=allocations)
        feasible = self.validator.validate(apply_changes(scenario, [change])).feasible
        return AlternativeSuggestion(
            kind=SuggestionKind.REDUCE_ALLOCATION,
            item_id=item.id,
            description=(
                f'Reduce "{item.name}" allocation on team "{team_id}" in period {period} '
                f"by {reduced} tokens"
            ),
            change=change,
            feasible=feasible,
        )

    # ── Commit ───────────────────────────────────────────────────────────────

    def commit(self, result) -> int:
        """Make an approved result's projected scenario the new baseline.

        ``result`` is any decision or report carrying ``outcome`` and
        ``projected``. Returns the new baseline version.

        Raises:
            ValidationError: the result was REJECTED.
            ConflictError: the baseline changed since the result was evaluated.
        """
        with self._lock:
            if result.outcome == DecisionOutcome.REJECTED or result.projected is None:
                raise ValidationError("Rejected decisions cannot be committed",
                                      details={"outcome": result.outcome.value})
            if result.projected.base_version != self._version:
                raise ConflictError(resource="Scenario", field="version",
                                    value=result.projected.base_version)
            self._baseline = copy.deepcopy(result.projected.scenario)
            self._version += 1
            version = self._version

        logger.info("Committed scenario %s at version %d", self._baseline.id, version,
                    extra={"scenario_id": self._baseline.id,
                           "decision_id": getattr(result, "decision_id", None)})
        return version

    def request_change(self, changes) -> GovernanceDecision:
        """Evaluate ``changes`` and, when approved, commit them atomically."""
        with self._lock:
            decision = self.evaluate_change(changes)
            if decision.approved:
                self.commit(decision)
            return decision

    # ═════════════════════════════════════════════════════════════════════════
    # Auto-schedule
    # ═════════════════════════════════════════════════════════════════════════

    @staticmethod
    def _topological_order(targets: list[ScheduledItem]) -> list[ScheduledItem]:
        """Dependencies first; among ready items lower priority, then input order."""
        index = {item.id: pos for pos, item in enumerate(targets)}
        remaining = {
            item.id: {d for d in item.dependencies if d in index and d != item.id}
            for item in targets
        }
        order: list[ScheduledItem] = []
        while remaining:
            ready = [i for i, deps in remaining.items() if not deps]
            if not ready:
                # Cycle: fall back to priority order for what is left
                ready = list(remaining)
            ready.sort(key=lambda i: (targets[index[i]].priority, index[i]))
            chosen = ready[0]
            order.append(targets[index[chosen]])
            del remaining[chosen]
            for deps in remaining.values():
                deps.discard(chosen)
        return order

    def auto_schedule(self, items=None) -> AutoScheduleResult:
        """Greedy forward pass placing items at their earliest feasible start.

        ``items`` (ScheduledItem or dicts) are merged into a copy of the
        baseline; when omitted every baseline item is rescheduled. Items with
        no capacity window keep their earliest start and are not booked on
        the grid. The baseline is not modified; pass the result to
        ``commit`` to adopt it.
        Malformed items are logged as REJECTED and the error is re-raised.
        """
        baseline, version = self._snapshot()
        request: object = {"items": items}
        failure: Exception | None = None
        with timed_evaluation(DecisionAction.AUTO_SCHEDULE.value, baseline.id,
                              slow_threshold_ms=self._slow_ms) as timer:
            try:
                working, targets = self._merge_targets(baseline, items)
                request = {"item_ids": [t.id for t in targets]}
                schedule = self._place(working, targets)
                validation = self.validator.validate(working)
                outcome = classify_outcome(validation.violations, validation.warnings)
                result = AutoScheduleResult(
                    feasible=validation.feasible,
                    outcome=outcome,
                    projected=build_projection(working, validation, version),
                    schedule=schedule,
                    violations=list(validation.violations),
                    warnings=list(validation.warnings),
                )
            except (ValidationError, NotFoundError, ConflictError) as exc:
                failure = exc
            except Exception as exc:
                logger.exception("Auto-schedule failed for scenario %s", baseline.id,
                                 extra={"scenario_id": baseline.id})
                failure = exc

        if failure is not None:
            self._log_failure(DecisionAction.AUTO_SCHEDULE, request, failure, timer.elapsed_ms())
            raise failure

        entry = self._log(
            DecisionAction.AUTO_SCHEDULE,
            request,
            working,
            validation.constraints_evaluated,
            outcome,
            result.violations,
            result.warnings,
            timer.elapsed_ms(),
        )
        result.decision_id = entry.id
        return result

    @staticmethod
    def _merge_targets(working: Scenario, items) -> tuple[Scenario, list[ScheduledItem]]:
        if items is None:
            return working, list(working.items)
        if not isinstance(items, (list, tuple)):
            raise ValidationError("items must be a list", details={"items": "not a list"})
        targets = [i if isinstance(i, ScheduledItem) else ScheduledItem.from_dict(i)
                   for i in items]
        for item in targets:
            idx = _position(working, item.id)
            if idx is None:
                working.items.append(copy.deepcopy(item))
            else:
                working.items[idx] = copy.deepcopy(item)
        return working, targets

    def _place(self, working: Scenario, targets: list[ScheduledItem]) -> list[ScheduleAssignment]:
        """Move each target to its earliest feasible start, in dependency order."""
        target_ids = {t.id for t in targets}
        grid = CapacityGrid.from_scenario(working, exclude=target_ids)
        ends: dict[str, int] = {}
        schedule: list[ScheduleAssignment] = []

        for item in self._topological_order([working.find_item(t.id) for t in targets]):
            earliest = 0
            for dep_id in item.dependencies:
                if dep_id in ends:
                    earliest = max(earliest, ends[dep_id])
                elif dep_id not in target_ids:
                    dep = working.find_item(dep_id)
                    if dep is not None:
                        earliest = max(earliest, dep.end_period)

            start = grid.find_feasible_window(item, earliest)
            placed = start is not None
            if not placed:
                start = earliest
            moved = item.shifted(start)
            working.items[_position(working, item.id)] = moved
            if placed:
                grid = grid.book_item(moved)
            ends[item.id] = moved.end_period
            schedule.append(ScheduleAssignment(
                item_id=item.id,
                original_start=item.start_period,
                start_period=start,
                end_period=moved.end_period,
                placed=placed,
            ))
        return schedule

    # ═════════════════════════════════════════════════════════════════════════
    # What-if
    # ═════════════════════════════════════════════════════════════════════════

    def what_if(self, changes) -> WhatIfResult:
        """Compare the baseline with ``changes`` applied; never modifies the baseline.

        Malformed requests are logged as REJECTED and the error is re-raised.
        """
        baseline, version = self._snapshot()
        request = self._request_payload(changes)
        failure: Exception | None = None
        with timed_evaluation(DecisionAction.WHAT_IF.value, baseline.id,
                              slow_threshold_ms=self._slow_ms) as timer:
            try:
                parsed = self._parse_changes(changes)
                request = [c.to_dict() for c in parsed]
                modified = apply_changes(baseline, parsed)
                base_validation = self.validator.validate(baseline)
                validation = self.validator.validate(modified)
                base_projection = build_projection(baseline, base_validation, version)
                projection = build_projection(modified, validation, version)
            except (ValidationError, NotFoundError, ConflictError) as exc:
                failure = exc
            except Exception as exc:
                logger.exception("What-if analysis failed for scenario %s", baseline.id,
                                 extra={"scenario_id": baseline.id})
                failure = exc

        if failure is not None:
            self._log_failure(DecisionAction.WHAT_IF, request, failure, timer.elapsed_ms())
            raise failure

        base_ids = {v.identity for v in base_validation.violations}
        new_ids = {v.identity for v in validation.violations}
        delta = WhatIfDelta(
            utilization_change=projection.overall_utilization - base_projection.overall_utilization,
            new_violations=[v for v in validation.violations if v.identity not in base_ids],
            resolved_violations=[v for v in base_validation.violations if v.identity not in new_ids],
            capacity_impact=self._capacity_impact(base_projection, projection),
        )
        outcome = classify_outcome(validation.violations, validation.warnings)
        result = WhatIfResult(
            baseline=base_projection,
            projected=projection,
            delta=delta,
            violations=list(validation.violations),
            warnings=list(validation.warnings),
            feasible=validation.feasible,
            outcome=outcome,
        )
        entry = self._log(DecisionAction.WHAT_IF, request, modified,
                          validation.constraints_evaluated, outcome,
                          result.violations, result.warnings, timer.elapsed_ms())
        result.decision_id = entry.id
        return result

    @staticmethod
    def _capacity_impact(before, after) -> dict[str, float]:
        """Change in remaining tokens per team; teams with no change are omitted."""
        def headroom(projection) -> dict[str, float]:
            allocated = allocated_by_team(projection.capacity_plan)
            return {
                team_id: sum(row) - allocated.get(team_id, 0.0)
                for team_id, row in projection.capacity_plan.capacity_by_team.items()
            }

        old, new = headroom(before), headroom(after)
        impact = {}
        for team_id in list(old) + [t for t in new if t not in old]:
            diff = new.get(team_id, 0.0) - old.get(team_id, 0.0)
            if diff:
                impact[team_id] = diff
        return impact

    # ═════════════════════════════════════════════════════════════════════════
    # Portfolio health
    # ═════════════════════════════════════════════════════════════════════════

    def validate_portfolio(self) -> PortfolioHealthReport:
        """Validate the baseline as-is and score its health."""
        baseline, version = self._snapshot()
        with timed_evaluation(DecisionAction.VALIDATE_PORTFOLIO.value, baseline.id,
                              slow_threshold_ms=self._slow_ms) as timer:
            validation = self.validator.validate(baseline)
            report = build_health_report(build_projection(baseline, validation, version),
                                         validation, settings=self.settings)

        entry = self._log(
            DecisionAction.VALIDATE_PORTFOLIO,
            {"scenario_id": baseline.id, "item_count": len(baseline.items)},
            baseline,
            validation.constraints_evaluated,
            classify_outcome(validation.violations, validation.warnings),
            report.violations,
            report.warnings,
            timer.elapsed_ms(),
        )
        report.decision_id = entry.id
        return report

    # ── Logging ──────────────────────────────────────────────────────────────

    def _log(self, action: DecisionAction, request, projected_scenario,
             constraints_evaluated, outcome: DecisionOutcome, violations, warnings,
             duration_ms: float) -> DecisionLogEntry:
        return self.decision_log.record(
            action=action,
            request=request,
            projected_scenario=projected_scenario,
            constraints_evaluated=constraints_evaluated,
            result=outcome,
            violations=violations,
            warnings=warnings,
            duration_ms=duration_ms,
        )

    def _log_failure(self, action: DecisionAction, request, exc: Exception,
                     duration_ms: float) -> DecisionLogEntry:
        """Record a REJECTED entry for a request that could not be evaluated."""
        return self._log(action, request, None, [], DecisionOutcome.REJECTED,
                         [_diagnostic(_classify_error(exc), exc)], [], duration_ms)
