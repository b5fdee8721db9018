"""
Constraint evaluation result types.

Violations make a scenario infeasible; warnings never do. Evaluators return
an ``EvaluatorResult`` (or the utilization-bearing ``CapacityEvaluatorResult``)
and the validator folds them into one ``ValidationResult``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"


class ResultKind(str, Enum):
    """Tag telling the validator whether a result carries a utilization grid."""
    PLAIN = "plain"
    UTILIZATION = "utilization"


def compute_utilization(allocated: float, available: float) -> float | None:
    """allocated / available; 0.0 for an empty cell, None for demand on zero capacity."""
    if available > 0:
        return allocated / available
    if allocated > 0:
        return None
    return 0.0


@dataclass(frozen=True)
class UtilizationCell:
    """Allocated vs available tokens for one team in one period."""
    team_id: str
    period_index: int
    allocated: float
    available: float
    utilization: float | None

    @classmethod
    def build(cls, team_id: str, period_index: int, allocated: float, available: float) -> UtilizationCell:
        return cls(team_id, period_index, allocated, available,
                   compute_utilization(allocated, available))

    @property
    def key(self) -> tuple[str, int]:
        return (self.team_id, self.period_index)

    def to_dict(self) -> dict:
        return {
            "team_id": self.team_id,
            "period_index": self.period_index,
            "allocated": self.allocated,
            "available": self.available,
            "utilization": self.utilization,
        }


@dataclass
class ConstraintViolation:
    """A hard constraint breach."""
    constraint_id: str
    code: str
    message: str
    affected_item_ids: list[str] = field(default_factory=list)
    affected_team_ids: list[str] = field(default_factory=list)
    affected_periods: list[int] = field(default_factory=list)
    details: dict = field(default_factory=dict)
    severity: Severity = Severity.ERROR

    @property
    def identity(self) -> tuple[str, str, str]:
        """Key used to compare violations across two validations."""
        return (self.constraint_id, self.code, self.message)

    def to_dict(self) -> dict:
        return {
            "constraint_id": self.constraint_id,
            "code": self.code,
            "severity": self.severity.value,
            "message": self.message,
            "affected_item_ids": list(self.affected_item_ids),
            "affected_team_ids": list(self.affected_team_ids),
            "affected_periods": list(self.affected_periods),
            "details": dict(self.details),
        }


@dataclass
class ConstraintWarning:
    """A soft signal: the scenario is feasible but something is close to a limit."""
    constraint_id: str
    code: str
    message: str
    metric: str
    threshold: float
    actual: float
    affected_item_ids: list[str] = field(default_factory=list)
    severity: Severity = Severity.WARNING

    def to_dict(self) -> dict:
        return {
            "constraint_id": self.constraint_id,
            "code": self.code,
            "severity": self.severity.value,
            "message": self.message,
            "metric": self.metric,
            "threshold": self.threshold,
            "actual": self.actual,
            "affected_item_ids": list(self.affected_item_ids),
        }


@dataclass
class EvaluatorResult:
    """Output of a single evaluator."""
    constraint_id: str
    violations: list[ConstraintViolation] = field(default_factory=list)
    warnings: list[ConstraintWarning] = field(default_factory=list)

    kind = ResultKind.PLAIN

    def to_dict(self) -> dict:
        return {
            "constraint_id": self.constraint_id,
            "kind": self.kind.value,
            "violations": [v.to_dict() for v in self.violations],
            "warnings": [w.to_dict() for w in self.warnings],
        }


@dataclass
class CapacityEvaluatorResult(EvaluatorResult):
    """Evaluator output that also carries one cell per (team, period)."""
    utilization_grid: list[UtilizationCell] = field(default_factory=list)

    kind = ResultKind.UTILIZATION

    def to_dict(self) -> dict:
        d = super().to_dict()
        d["utilization_grid"] = [c.to_dict() for c in self.utilization_grid]
        return d


@dataclass
class ValidationResult:
    """Aggregate of every evaluator in the registry."""
    violations: list[ConstraintViolation] = field(default_factory=list)
    warnings: list[ConstraintWarning] = field(default_factory=list)
    utilization_map: list[UtilizationCell] = field(default_factory=list)
    constraints_evaluated: list[str] = field(default_factory=list)

    @property
    def feasible(self) -> bool:
        return not self.violations

    def cell(self, team_id: str, period_index: int) -> UtilizationCell | None:
        return next(
            (c for c in self.utilization_map
             if c.team_id == team_id and c.period_index == period_index),
            None,
        )

    def violations_with_code(self, code: str) -> list[ConstraintViolation]:
        return [v for v in self.violations if v.code == code]

    def to_dict(self) -> dict:
        return {
            "feasible": self.feasible,
            "violations": [v.to_dict() for v in self.violations],
            "warnings": [w.to_dict() for w in self.warnings],
            "utilization_map": [c.to_dict() for c in self.utilization_map],
            "constraints_evaluated": list(self.constraints_evaluated),
        }
