"""
Portfolio Governance Engine
Data model: scenarios, constraint results and governance decisions.
"""

from portfolio_engine.models.constraint import (  # noqa: F401
    CapacityEvaluatorResult,
    ConstraintViolation,
    ConstraintWarning,
    EvaluatorResult,
    ResultKind,
    Severity,
    UtilizationCell,
    ValidationResult,
)
from portfolio_engine.models.governance import (  # noqa: F401
    AlternativeSuggestion,
    AutoScheduleResult,
    CapacityPlan,
    ChangeKind,
    DecisionAction,
    DecisionLogEntry,
    DecisionOutcome,
    DecisionState,
    GovernanceDecision,
    PortfolioHealthReport,
    PortfolioSummary,
    ProjectedScenario,
    ScheduleAssignment,
    SuggestionKind,
    WhatIfChange,
    WhatIfDelta,
    WhatIfResult,
)
from portfolio_engine.models.scenario import (  # noqa: F401
    Scenario,
    ScheduledItem,
    Team,
    TeamAllocation,
)
