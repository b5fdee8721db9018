"""
Portfolio Governance Engine
Engine factory.

Usage:
    from portfolio_engine import create_engine
    engine = create_engine(scenario)             # config from APP_ENV
    engine = create_engine(scenario, "testing")  # explicit config
"""

import logging

from portfolio_engine.config import get_config
from portfolio_engine.middleware.logging_config import configure_logging
from portfolio_engine.models.scenario import Scenario
from portfolio_engine.services.constraint_registry import ConstraintRegistry, ConstraintValidator
from portfolio_engine.services.decision_log import DecisionLog
from portfolio_engine.services.governance_engine import GovernanceEngine

logger = logging.getLogger(__name__)

__version__ = "1.0.0"


def create_constraint_validator(config_name=None, registry=None) -> ConstraintValidator:
    """Validator with the default evaluators configured from ``config_name``."""
    settings = get_config(config_name)
    if registry is None:
        registry = ConstraintRegistry(settings=settings)
    return ConstraintValidator(registry)


def create_engine(scenario, config_name=None, registry=None, decision_log=None,
                  setup_logging=True) -> GovernanceEngine:
    """
    Engine factory.

    Args:
        scenario: Baseline ``Scenario`` or its dict form.
        config_name: 'development', 'testing' or 'production'.
                     Defaults to APP_ENV env var or 'development'.
        registry: Evaluators to use instead of the configured defaults.
        decision_log: Shared decision log; a new one is created when omitted.
        setup_logging: Install the engine's log handler.
    """
    settings = get_config(config_name)
    if setup_logging:
        configure_logging(settings)

    if isinstance(scenario, dict):
        scenario = Scenario.from_dict(scenario)

    if registry is None:
        registry = ConstraintRegistry(settings=settings)

    engine = GovernanceEngine(
        scenario,
        validator=ConstraintValidator(registry),
        decision_log=decision_log if decision_log is not None else DecisionLog(),
        settings=settings,
    )
    logger.info("Governance engine ready for scenario %s (%d evaluators)",
                scenario.id, len(registry), extra={"scenario_id": scenario.id})
    return engine
