"""
Constraint Registry & Validator

The registry holds the ordered list of evaluators; the validator runs each
one against a scenario and folds the findings into a single
ValidationResult.

Usage:
    from portfolio_engine.services.constraint_registry import (
        ConstraintRegistry, ConstraintValidator,
    )
    validator = ConstraintValidator(ConstraintRegistry(settings=cfg))
    result = validator.validate(scenario)
    # -> result.feasible, result.violations, result.utilization_map
"""

from __future__ import annotations

import logging

from portfolio_engine.core.exceptions import DataIntegrityError
from portfolio_engine.models.constraint import (
    ConstraintViolation,
    ConstraintWarning,
    ResultKind,
    UtilizationCell,
    ValidationResult,
)
from portfolio_engine.models.scenario import Scenario
from portfolio_engine.services.constraint_evaluators import (
    DEFAULT_BUDGET_WARNING_RATIO,
    DEFAULT_CAPACITY_WARNING_THRESHOLD,
    DEFAULT_CHAIN_WARNING_LENGTH,
    BudgetConstraint,
    CapacityConstraint,
    ConstraintEvaluator,
    DependencyConstraint,
    TemporalFitConstraint,
)

logger = logging.getLogger(__name__)

VALIDATOR_ID = "validator"


# ═════════════════════════════════════════════════════════════════════════════
# Registry
# ═════════════════════════════════════════════════════════════════════════════

class ConstraintRegistry:
    """Ordered collection of constraint evaluators.

    With ``defaults=True`` the built-in evaluators are registered in the
    order capacity, dependency, temporal-fit, budget, using thresholds from
    ``settings`` when given.
    """

    def __init__(self, defaults: bool = True, settings=None):
        self._evaluators: list[ConstraintEvaluator] = []
        if defaults:
            capacity_threshold = getattr(settings, "CAPACITY_WARNING_THRESHOLD",
                                         DEFAULT_CAPACITY_WARNING_THRESHOLD)
            chain_length = getattr(settings, "DEPENDENCY_CHAIN_WARN_LENGTH",
                                   DEFAULT_CHAIN_WARNING_LENGTH)
            budget_ratio = getattr(settings, "BUDGET_WARNING_RATIO",
                                   DEFAULT_BUDGET_WARNING_RATIO)
            self._evaluators.extend([
                CapacityConstraint(warning_threshold=capacity_threshold),
                DependencyConstraint(chain_warning_length=chain_length),
                TemporalFitConstraint(),
                BudgetConstraint(warning_ratio=budget_ratio),
            ])

    def register(self, evaluator: ConstraintEvaluator) -> None:
        """Append an evaluator; it runs after those already registered."""
        if not isinstance(evaluator, ConstraintEvaluator):
            raise TypeError(
                f"Expected a ConstraintEvaluator, got {type(evaluator).__name__}"
            )
        self._evaluators.append(evaluator)
        logger.debug("Registered constraint evaluator %s", evaluator.id)

    def get_all(self) -> list[ConstraintEvaluator]:
        """Evaluators in registration order (a copy)."""
        return list(self._evaluators)

    def ids(self) -> list[str]:
        return [e.id for e in self._evaluators]

    def __len__(self) -> int:
        return len(self._evaluators)


# ═════════════════════════════════════════════════════════════════════════════
# Validator
# ═════════════════════════════════════════════════════════════════════════════

def _conservative_key(cell: UtilizationCell) -> tuple[float, float]:
    # None means demand on zero capacity: worse than any ratio
    utilization = float("inf") if cell.utilization is None else cell.utilization
    return (utilization, cell.allocated)


class ConstraintValidator:
    """Runs every registered evaluator and aggregates the results."""

    def __init__(self, registry: ConstraintRegistry | None = None):
        self.registry = registry if registry is not None else ConstraintRegistry()

    def validate(self, scenario: Scenario) -> ValidationResult:
        violations: list[ConstraintViolation] = []
        warnings: list[ConstraintWarning] = []
        cells: dict[tuple[str, int], UtilizationCell] = {}
        evaluated: list[str] = []

        for evaluator in self.registry.get_all():
            evaluated.append(evaluator.id)
            try:
                result = evaluator.evaluate(scenario)
            except DataIntegrityError as exc:
                logger.warning("Evaluator %s hit a data integrity error: %s",
                               evaluator.id, exc, extra={"constraint_id": evaluator.id,
                                                         "scenario_id": scenario.id})
                violations.append(ConstraintViolation(
                    constraint_id=evaluator.id,
                    code="DATA_INTEGRITY",
                    message=str(exc),
                    details=dict(exc.details),
                ))
                continue

            violations.extend(result.violations)
            warnings.extend(result.warnings)

            if result.kind == ResultKind.UTILIZATION:
                self._merge_grid(cells, result.utilization_grid, evaluator.id, warnings)

        validation = ValidationResult(
            violations=violations,
            warnings=warnings,
            utilization_map=list(cells.values()),
            constraints_evaluated=evaluated,
        )
        logger.debug(
            "Validated scenario %s: feasible=%s violations=%d warnings=%d",
            scenario.id, validation.feasible, len(violations), len(warnings),
            extra={"scenario_id": scenario.id, "violation_count": len(violations),
                   "warning_count": len(warnings)},
        )
        return validation

    @staticmethod
    def _merge_grid(cells: dict[tuple[str, int], UtilizationCell],
                    grid: list[UtilizationCell], source_id: str,
                    warnings: list[ConstraintWarning]) -> None:
        """Merge ``grid`` into ``cells``; identical cells collapse, conflicts keep the worst."""
        for cell in grid:
            existing = cells.get(cell.key)
            if existing is None:
                cells[cell.key] = cell
                continue
            if existing == cell:
                continue
            kept, dropped = (
                (cell, existing)
                if _conservative_key(cell) > _conservative_key(existing)
                else (existing, cell)
            )
            cells[cell.key] = kept
            warnings.append(ConstraintWarning(
                constraint_id=VALIDATOR_ID,
                code="UTILIZATION_CONFLICT",
                message=(
                    f'Evaluator "{source_id}" reported a different utilization for team '
                    f'"{cell.team_id}" in period {cell.period_index}; '
                    f"keeping the more conservative value"
                ),
                metric="allocated",
                threshold=dropped.allocated,
                actual=kept.allocated,
            ))
