"""
Shared pytest fixtures for the Portfolio Governance Engine test suite.

Provides:
    - settings: TestingConfig instance
    - scenario: Two teams, three chained items over a 6-period horizon
    - validator: ConstraintValidator with the default evaluators
    - engine: GovernanceEngine over ``scenario`` with a fresh decision log
    - _reset_timing: clears the evaluation metrics buffer (autouse)
"""

import pytest

from portfolio_engine.config import get_config
from portfolio_engine.middleware.timing import reset_metrics
from portfolio_engine.models.scenario import Scenario, ScheduledItem, Team, TeamAllocation
from portfolio_engine.services.constraint_registry import ConstraintRegistry, ConstraintValidator
from portfolio_engine.services.decision_log import DecisionLog
from portfolio_engine.services.governance_engine import GovernanceEngine


def make_item(item_id, start, duration, allocations=(), dependencies=(), **kw):
    """Build a ScheduledItem; ``allocations`` is a list of (team, period, tokens)."""
    return ScheduledItem(
        id=item_id,
        name=kw.pop("name", f"Item {item_id}"),
        start_period=start,
        duration=duration,
        team_allocations=[TeamAllocation(t, p, tok) for t, p, tok in allocations],
        dependencies=list(dependencies),
        **kw,
    )


def make_scenario(teams, items, horizon=6, **kw):
    """Build a Scenario; ``teams`` maps team id to its capacity list."""
    return Scenario(
        id=kw.pop("id", "scn-1"),
        name=kw.pop("name", "Test Scenario"),
        horizon=horizon,
        teams=[Team(tid, f"Team {tid}", cap) for tid, cap in teams.items()],
        items=list(items),
        **kw,
    )


# ── Config & timing ──────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def settings():
    return get_config("testing")


@pytest.fixture(autouse=True)
def _reset_timing():
    reset_metrics()
    yield
    reset_metrics()


# ── Scenario fixtures ────────────────────────────────────────────────────


@pytest.fixture
def scenario():
    """Feasible, warning-free baseline: B and C depend on A; C also uses T2."""
    return make_scenario(
        {"T1": [10] * 6, "T2": [8] * 6},
        [
            make_item("A", 0, 2, [("T1", 0, 5), ("T1", 1, 5)]),
            make_item("B", 2, 1, [("T1", 2, 4)], ["A"]),
            make_item("C", 3, 2, [("T1", 3, 3), ("T2", 4, 2)], ["A"], priority=1),
        ],
    )


@pytest.fixture
def validator(settings):
    return ConstraintValidator(ConstraintRegistry(settings=settings))


@pytest.fixture
def engine(scenario, settings, validator):
    return GovernanceEngine(scenario, validator=validator, decision_log=DecisionLog(),
                            settings=settings)
