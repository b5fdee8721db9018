"""
Governance engine: change evaluation, alternatives, commits, auto-schedule,
what-if analysis and portfolio validation.

Covers:
  • evaluate_change: classification, state history, logging, no baseline mutation
  • diagnostic rejections: invalid request, not found, internal error
  • alternatives: SHIFT_START and REDUCE_ALLOCATION suggestions
  • commit / request_change: optimistic concurrency
  • auto_schedule, what_if, validate_portfolio
"""

import pytest

from conftest import make_item, make_scenario
from portfolio_engine.config import TestingConfig
from portfolio_engine.core.exceptions import ConflictError, ValidationError
from portfolio_engine.middleware.timing import get_recent_metrics
from portfolio_engine.models.governance import (
    ChangeKind,
    DecisionAction,
    DecisionOutcome,
    DecisionState,
    SuggestionKind,
    WhatIfChange,
)
from portfolio_engine.services.constraint_evaluators import ConstraintEvaluator
from portfolio_engine.services.constraint_registry import ConstraintRegistry, ConstraintValidator
from portfolio_engine.services.governance_engine import (
    GovernanceEngine,
    TransitionError,
    _advance,
)


def _move(item_id, start):
    return WhatIfChange(ChangeKind.MOVE_ITEM, item_id=item_id, start_period=start)


class _Exploding(ConstraintEvaluator):
    id = "exploding"
    name = "Exploding"

    def evaluate(self, scenario):
        raise RuntimeError("evaluator crashed")


class _OneAlternative(TestingConfig):
    MAX_ALTERNATIVE_SUGGESTIONS = 1


def _exploding_engine(scenario, settings):
    registry = ConstraintRegistry(defaults=False)
    registry.register(_Exploding())
    return GovernanceEngine(scenario, validator=ConstraintValidator(registry), settings=settings)


# ═══════════════════════════════════════════════════════════════════════════
# 1 · evaluate_change
# ═══════════════════════════════════════════════════════════════════════════

class TestEvaluateChange:

    def test_feasible_change_approved(self, engine):
        d = engine.evaluate_change(_move("C", 4))
        assert d.outcome == DecisionOutcome.APPROVED
        assert d.approved is True
        assert d.state_history == [DecisionState.PROPOSED, DecisionState.EVALUATED,
                                   DecisionState.APPROVED]
        assert d.violations == [] and d.warnings == []
        assert d.projected.scenario.find_item("C").start_period == 4
        assert d.projected.base_version == 0
        assert d.decision_id == "decision-1"

    def test_evaluate_does_not_commit(self, engine):
        engine.evaluate_change(_move("C", 4))
        assert engine.baseline.find_item("C").start_period == 3
        assert engine.version == 0

    def test_warning_only_change(self, engine):
        d = engine.evaluate_change(WhatIfChange(
            ChangeKind.ADD_ITEM, item=make_item("D", 0, 1, [("T1", 0, 4)]),
        ))
        assert d.outcome == DecisionOutcome.APPROVED_WITH_WARNINGS
        assert d.approved is True
        assert [w.code for w in d.warnings] == ["NEAR_CAPACITY"]

    def test_infeasible_change_rejected(self, engine):
        d = engine.evaluate_change(_move("B", 1))
        assert d.outcome == DecisionOutcome.REJECTED
        assert d.approved is False
        assert d.state == DecisionState.REJECTED
        assert "DEPENDENCY_ORDER" in [v.code for v in d.violations]
        assert engine.baseline.find_item("B").start_period == 2

    def test_dict_request(self, engine):
        d = engine.evaluate_change({"kind": "move_item", "item_id": "C", "start_period": 4})
        assert d.approved is True
        assert d.request == [{"kind": "move_item", "item_id": "C", "start_period": 4}]

    def test_add_item_from_dict(self, engine):
        d = engine.evaluate_change({"kind": "add_item", "item": {
            "id": "D", "name": "New", "start_period": 5, "duration": 1,
            "team_allocations": [{"team_id": "T2", "period_index": 5, "tokens": 1}],
        }})
        assert d.approved is True
        assert d.projected.scenario.find_item("D").name == "New"

    def test_each_evaluation_logged_once(self, engine):
        engine.evaluate_change(_move("C", 4))
        engine.evaluate_change(_move("B", 1))
        engine.evaluate_change({"kind": "bogus"})
        entries = engine.decision_log.get_all()
        assert len(entries) == 3
        assert [e.result for e in entries] == [
            DecisionOutcome.APPROVED, DecisionOutcome.REJECTED, DecisionOutcome.REJECTED,
        ]
        assert all(e.action == DecisionAction.REQUEST_CHANGE for e in entries)
        assert entries[0].constraints_evaluated == (
            "capacity", "dependency", "temporal-fit", "budget",
        )

    def test_duration_recorded(self, engine):
        d = engine.evaluate_change(_move("C", 4))
        assert d.duration_ms >= 0
        entry = engine.decision_log.get_by_id(d.decision_id)
        assert entry.duration_ms == d.duration_ms
        assert any(m["action"] == "request_change" for m in get_recent_metrics())


# ═══════════════════════════════════════════════════════════════════════════
# 2 · Diagnostic rejections
# ═══════════════════════════════════════════════════════════════════════════

class TestDiagnosticRejections:

    def test_unknown_change_kind(self, engine):
        d = engine.evaluate_change({"kind": "teleport"})
        assert d.outcome == DecisionOutcome.REJECTED
        assert d.state_history == [DecisionState.PROPOSED, DecisionState.REJECTED]
        assert [v.code for v in d.violations] == ["INVALID_REQUEST"]
        assert d.projected is None
        assert len(engine.decision_log.get_all()) == 1

    def test_empty_request(self, engine):
        d = engine.evaluate_change([])
        assert [v.code for v in d.violations] == ["INVALID_REQUEST"]

    def test_missing_field(self, engine):
        d = engine.evaluate_change({"kind": "move_item", "item_id": "C"})
        assert [v.code for v in d.violations] == ["INVALID_REQUEST"]
        assert d.violations[0].details["code"] == "ERR_VALIDATION_INVALID"

    def test_unknown_item(self, engine):
        d = engine.evaluate_change(_move("ghost", 1))
        assert [v.code for v in d.violations] == ["NOT_FOUND"]

    def test_duplicate_item(self, engine):
        d = engine.evaluate_change(WhatIfChange(ChangeKind.ADD_ITEM, item=make_item("A", 0, 1)))
        assert [v.code for v in d.violations] == ["INVALID_REQUEST"]

    def test_internal_error(self, scenario, settings):
        eng = _exploding_engine(scenario, settings)
        d = eng.evaluate_change(_move("C", 4))
        assert d.outcome == DecisionOutcome.REJECTED
        assert [v.code for v in d.violations] == ["INTERNAL_ERROR"]
        assert len(eng.decision_log.get_all()) == 1

    def test_string_dependencies_rejected(self, engine):
        d = engine.evaluate_change({"kind": "set_dependencies", "item_id": "C",
                                    "dependencies": "AB"})
        assert d.outcome == DecisionOutcome.REJECTED
        assert [v.code for v in d.violations] == ["INVALID_REQUEST"]

    def test_non_integer_periods_rejected(self, engine):
        d = engine.evaluate_change({"kind": "add_capacity", "team_id": "T1", "tokens": 1,
                                    "periods": ["x"]})
        assert [v.code for v in d.violations] == ["INVALID_REQUEST"]

    def test_illegal_transition(self):
        with pytest.raises(TransitionError):
            _advance([DecisionState.REJECTED], DecisionState.APPROVED)


# ═══════════════════════════════════════════════════════════════════════════
# 3 · Alternatives
# ═══════════════════════════════════════════════════════════════════════════

class TestAlternatives:

    def test_shift_start_suggested(self, engine):
        d = engine.evaluate_change(_move("B", 1))
        s = d.alternative_suggestions[0]
        assert s.kind == SuggestionKind.SHIFT_START
        assert s.item_id == "B"
        assert s.change.start_period == 2
        assert s.feasible is True

    def test_capacity_rejection_offers_shift_and_reduction(self, engine):
        d = engine.evaluate_change(WhatIfChange(
            ChangeKind.ADD_ITEM, item=make_item("D", 0, 1, [("T1", 0, 8)]),
        ))
        assert d.outcome == DecisionOutcome.REJECTED
        kinds = [s.kind for s in d.alternative_suggestions]
        assert kinds == [SuggestionKind.SHIFT_START, SuggestionKind.REDUCE_ALLOCATION]
        shift, reduce = d.alternative_suggestions
        assert shift.change.start_period == 4
        assert reduce.item_id == "D"
        assert reduce.change.allocations[0].tokens == pytest.approx(5)
        assert reduce.feasible is True

    def test_suggestion_cap(self, scenario):
        eng = GovernanceEngine(scenario, settings=_OneAlternative())
        d = eng.evaluate_change(WhatIfChange(
            ChangeKind.ADD_ITEM, item=make_item("D", 0, 1, [("T1", 0, 8)]),
        ))
        assert len(d.alternative_suggestions) == 1

    def test_approved_has_no_suggestions(self, engine):
        assert engine.evaluate_change(_move("C", 4)).alternative_suggestions == []


# ═══════════════════════════════════════════════════════════════════════════
# 4 · Commit
# ═══════════════════════════════════════════════════════════════════════════

class TestCommit:

    def test_commit_approved(self, engine):
        d = engine.evaluate_change(_move("C", 4))
        assert engine.commit(d) == 1
        assert engine.version == 1
        assert engine.baseline.find_item("C").start_period == 4

    def test_commit_rejected_raises(self, engine):
        d = engine.evaluate_change(_move("B", 1))
        with pytest.raises(ValidationError):
            engine.commit(d)
        assert engine.version == 0

    def test_stale_commit_conflicts(self, engine):
        first = engine.evaluate_change(_move("C", 4))
        second = engine.evaluate_change(_move("B", 3))
        engine.commit(first)
        with pytest.raises(ConflictError):
            engine.commit(second)
        assert engine.baseline.find_item("B").start_period == 2

    def test_request_change_commits_when_approved(self, engine):
        d = engine.request_change(_move("C", 4))
        assert d.approved is True
        assert engine.version == 1

    def test_request_change_rejected_is_noop(self, engine):
        before = engine.baseline.to_dict()
        d = engine.request_change(_move("B", 1))
        assert d.approved is False
        assert engine.version == 0
        assert engine.baseline.to_dict() == before

    def test_baseline_property_is_a_copy(self, engine):
        engine.baseline.items.clear()
        assert len(engine.baseline.items) == 3


# ═══════════════════════════════════════════════════════════════════════════
# 5 · Auto-schedule
# ═══════════════════════════════════════════════════════════════════════════

class TestAutoSchedule:

    def _engine(self, settings, *extra):
        scn = make_scenario({"T": [10] * 4}, [
            make_item("X", 0, 1, [("T", 0, 8)]),
            make_item("Y", 0, 1, [("T", 0, 8)], priority=1),
            make_item("Z", 0, 1, [("T", 0, 0.5)], ["X"]),
            *extra,
        ], horizon=4)
        return GovernanceEngine(scn, settings=settings)

    def test_greedy_forward_pass(self, settings):
        eng = self._engine(settings)
        r = eng.auto_schedule()
        assert [(a.item_id, a.start_period) for a in r.schedule] == [("X", 0), ("Z", 1), ("Y", 1)]
        assert all(a.placed for a in r.schedule)
        assert r.feasible is True
        assert r.outcome == DecisionOutcome.APPROVED
        assert r.projected.scenario.find_item("Y").team_allocations[0].period_index == 1

    def test_baseline_unchanged_until_commit(self, settings):
        eng = self._engine(settings)
        r = eng.auto_schedule()
        assert eng.baseline.find_item("Y").start_period == 0
        eng.commit(r)
        assert eng.baseline.find_item("Y").start_period == 1

    def test_unplaceable_item(self, settings):
        eng = self._engine(settings, make_item("W", 0, 1, [("T", 0, 20)]))
        r = eng.auto_schedule()
        w = next(a for a in r.schedule if a.item_id == "W")
        assert w.placed is False
        assert r.unplaced == ["W"]
        assert r.feasible is False

    def test_schedule_given_items_only(self, settings):
        eng = self._engine(settings)
        r = eng.auto_schedule([make_item("N", 0, 1, [("T", 0, 5)])])
        assert [a.item_id for a in r.schedule] == ["N"]
        assert r.schedule[0].start_period == 1

    def test_logged(self, settings):
        eng = self._engine(settings)
        r = eng.auto_schedule()
        entry = eng.decision_log.get_by_id(r.decision_id)
        assert entry.action == DecisionAction.AUTO_SCHEDULE
        assert entry.request == {"item_ids": ["X", "Y", "Z"]}

    def test_malformed_item_raises_and_logs(self, settings):
        eng = self._engine(settings)
        with pytest.raises(ValidationError):
            eng.auto_schedule([{"id": "Z"}])
        entries = eng.decision_log.get_by_action(DecisionAction.AUTO_SCHEDULE)
        assert len(entries) == 1
        assert entries[0].result == DecisionOutcome.REJECTED
        assert [v.code for v in entries[0].violations] == ["INVALID_REQUEST"]
        assert eng.baseline.find_item("Z").start_period == 0

    def test_evaluation_failure_raises_and_logs(self, scenario, settings):
        eng = _exploding_engine(scenario, settings)
        with pytest.raises(RuntimeError):
            eng.auto_schedule()
        entries = eng.decision_log.get_all()
        assert len(entries) == 1
        assert [v.code for v in entries[0].violations] == ["INTERNAL_ERROR"]


# ═══════════════════════════════════════════════════════════════════════════
# 6 · What-if
# ═══════════════════════════════════════════════════════════════════════════

class TestWhatIf:

    def test_new_violation_reported(self, engine):
        r = engine.what_if([_move("B", 1)])
        assert r.feasible is False
        assert "DEPENDENCY_ORDER" in [v.code for v in r.delta.new_violations]
        assert r.delta.resolved_violations == []
        assert engine.baseline.find_item("B").start_period == 2

    def test_added_capacity_impact(self, engine):
        r = engine.what_if(WhatIfChange(ChangeKind.ADD_CAPACITY, team_id="T1", tokens=5))
        assert r.feasible is True
        assert r.delta.capacity_impact == {"T1": 30}
        assert r.delta.utilization_change < 0

    def test_resolved_violation(self, settings):
        scn = make_scenario({"T": [5]}, [make_item("X", 0, 1, [("T", 0, 8)])], horizon=1)
        eng = GovernanceEngine(scn, settings=settings)
        r = eng.what_if(WhatIfChange(ChangeKind.ADD_CAPACITY, team_id="T", tokens=10))
        assert [v.code for v in r.delta.resolved_violations] == ["CAPACITY_EXCEEDED"]
        assert r.delta.new_violations == []

    def test_logged_as_what_if(self, engine):
        r = engine.what_if(_move("C", 4))
        assert engine.decision_log.get_by_id(r.decision_id).action == DecisionAction.WHAT_IF

    def test_invalid_request_raises_and_logs(self, engine):
        with pytest.raises(ValidationError):
            engine.what_if({"kind": "teleport"})
        entries = engine.decision_log.get_by_action(DecisionAction.WHAT_IF)
        assert len(entries) == 1
        assert entries[0].result == DecisionOutcome.REJECTED

    def test_malformed_periods_raise_and_log(self, engine):
        with pytest.raises(ValidationError):
            engine.what_if({"kind": "add_capacity", "team_id": "T1", "tokens": 1, "periods": 5})
        entries = engine.decision_log.get_all()
        assert len(entries) == 1
        assert [v.code for v in entries[0].violations] == ["INVALID_REQUEST"]

    def test_evaluation_failure_raises_and_logs(self, scenario, settings):
        eng = _exploding_engine(scenario, settings)
        with pytest.raises(RuntimeError):
            eng.what_if(_move("C", 4))
        entries = eng.decision_log.get_all()
        assert len(entries) == 1
        assert entries[0].action == DecisionAction.WHAT_IF
        assert entries[0].result == DecisionOutcome.REJECTED
        assert [v.code for v in entries[0].violations] == ["INTERNAL_ERROR"]


# ═══════════════════════════════════════════════════════════════════════════
# 7 · validate_portfolio
# ═══════════════════════════════════════════════════════════════════════════

class TestValidatePortfolio:

    def test_healthy_baseline(self, engine):
        report = engine.validate_portfolio()
        assert report.healthy is True
        assert report.score == 100
        assert report.rag == "green"
        assert report.summary.total_items == 3
        entry = engine.decision_log.get_by_id(report.decision_id)
        assert entry.action == DecisionAction.VALIDATE_PORTFOLIO
        assert entry.result == DecisionOutcome.APPROVED

    def test_to_dict_serializable(self, engine):
        d = engine.validate_portfolio().to_dict()
        assert d["summary"]["total_items"] == 3
        assert d["projected"]["scenario"]["id"] == "scn-1"
