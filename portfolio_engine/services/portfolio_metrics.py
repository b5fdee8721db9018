"""
Portfolio Metrics: health score, RAG status and summary for a scenario.

Health score:
    100
    − 25 per critical violation
    − 15 per other violation
    − 2 per warning
    − 10 when overall utilization > 95%
    clamped to [0, 100]

Usage:
    from portfolio_engine.services.portfolio_metrics import build_health_report
    report = build_health_report(projected, validation, settings=cfg)
"""

from __future__ import annotations

from portfolio_engine.models.constraint import (
    ConstraintViolation,
    ConstraintWarning,
    ValidationResult,
)
from portfolio_engine.models.governance import (
    PortfolioHealthReport,
    PortfolioSummary,
    ProjectedScenario,
)


# Violations that break the plan's structure regardless of magnitude
STRUCTURAL_CODES = frozenset({
    "DEPENDENCY_CYCLE",
    "ZERO_CAPACITY",
    "UNKNOWN_TEAM",
    "UNKNOWN_DEPENDENCY",
})

CRITICAL_OVERAGE_RATIO = 0.5
HIGH_UTILIZATION = 0.95

_PENALTY_CRITICAL = 25
_PENALTY_VIOLATION = 15
_PENALTY_WARNING = 2
_PENALTY_HIGH_UTILIZATION = 10


# ═════════════════════════════════════════════════════════════════════════════
# Helpers
# ═════════════════════════════════════════════════════════════════════════════

def _rag(value: float, *, green_min: float = 80, amber_min: float = 60) -> str:
    """Return RAG color based on a 0-100 score."""
    if value >= green_min:
        return "green"
    elif value >= amber_min:
        return "amber"
    return "red"


def _safe_ratio(numerator: float, denominator: float) -> float:
    """Zero-safe ratio."""
    return numerator / denominator if denominator else 0.0


def is_critical(violation: ConstraintViolation) -> bool:
    """Structural breaks, and capacity overages above half the available capacity."""
    if violation.code in STRUCTURAL_CODES:
        return True
    if violation.code == "CAPACITY_EXCEEDED":
        over_by = violation.details.get("over_by", 0.0)
        available = violation.details.get("available", 0.0)
        return _safe_ratio(over_by, available or 1) > CRITICAL_OVERAGE_RATIO
    return False


# ═════════════════════════════════════════════════════════════════════════════
# Core Metric Functions
# ═════════════════════════════════════════════════════════════════════════════

def compute_health_score(
    violations: list[ConstraintViolation],
    warnings: list[ConstraintWarning],
    overall_utilization: float,
) -> int:
    score = 100
    for v in violations:
        score -= _PENALTY_CRITICAL if is_critical(v) else _PENALTY_VIOLATION
    score -= _PENALTY_WARNING * len(warnings)
    if overall_utilization > HIGH_UTILIZATION:
        score -= _PENALTY_HIGH_UTILIZATION
    return max(0, min(100, score))


def build_summary(projected: ProjectedScenario,
                  violations: list[ConstraintViolation]) -> PortfolioSummary:
    scenario = projected.scenario

    constrained: list[str] = []
    for v in violations:
        if v.code in ("CAPACITY_EXCEEDED", "ZERO_CAPACITY"):
            for team_id in v.affected_team_ids:
                if team_id not in constrained:
                    constrained.append(team_id)

    return PortfolioSummary(
        total_items=len(scenario.items),
        scheduled_items=sum(1 for i in scenario.items if i.start_period >= 0),
        total_demand=projected.total_demand,
        total_capacity=projected.total_capacity,
        overall_utilization=_safe_ratio(projected.total_demand, projected.total_capacity),
        constrained_teams=constrained,
        critical_violations=sum(1 for v in violations if is_critical(v)),
    )


def build_health_report(projected: ProjectedScenario, validation: ValidationResult,
                        settings=None) -> PortfolioHealthReport:
    """Score ``projected`` against its validation result."""
    green_min = getattr(settings, "HEALTH_GREEN_MIN", 80)
    amber_min = getattr(settings, "HEALTH_AMBER_MIN", 60)

    summary = build_summary(projected, validation.violations)
    score = compute_health_score(validation.violations, validation.warnings,
                                 summary.overall_utilization)
    return PortfolioHealthReport(
        healthy=validation.feasible,
        score=score,
        rag=_rag(score, green_min=green_min, amber_min=amber_min),
        projected=projected,
        summary=summary,
        violations=list(validation.violations),
        warnings=list(validation.warnings),
    )
