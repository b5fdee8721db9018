"""
Decision log: sequential ids, monotonic timestamps, immutability and
thread-safe appends.
"""

import dataclasses
import threading

import pytest

from portfolio_engine.models.governance import DecisionAction, DecisionOutcome
from portfolio_engine.services.decision_log import DecisionLog


def _record(log, action=DecisionAction.REQUEST_CHANGE, request=None,
            result=DecisionOutcome.APPROVED):
    return log.record(
        action=action,
        request=request if request is not None else {"n": 1},
        projected_scenario=None,
        constraints_evaluated=["capacity"],
        result=result,
        violations=[],
        warnings=[],
        duration_ms=1.5,
    )


class TestDecisionLog:

    def test_ids_are_sequential(self):
        log = DecisionLog()
        ids = [_record(log).id for _ in range(3)]
        assert ids == ["decision-1", "decision-2", "decision-3"]

    def test_ids_scoped_to_instance(self):
        _record(DecisionLog())
        assert _record(DecisionLog()).id == "decision-1"

    def test_timestamps_non_decreasing_and_utc(self):
        log = DecisionLog()
        entries = [_record(log) for _ in range(20)]
        stamps = [e.timestamp for e in entries]
        assert stamps == sorted(stamps)
        assert all(s.utcoffset().total_seconds() == 0 for s in stamps)

    def test_get_by_id(self):
        log = DecisionLog()
        entry = _record(log)
        _record(log)
        assert log.get_by_id(entry.id) is entry
        assert log.get_by_id("decision-99") is None

    def test_get_by_action(self):
        log = DecisionLog()
        _record(log)
        what_if = _record(log, action=DecisionAction.WHAT_IF)
        assert log.get_by_action(DecisionAction.WHAT_IF) == [what_if]

    def test_get_all_returns_copy(self):
        log = DecisionLog()
        _record(log)
        log.get_all().clear()
        assert len(log.get_all()) == 1

    def test_clear_keeps_id_sequence(self):
        log = DecisionLog()
        _record(log)
        _record(log)
        log.clear()
        assert log.get_all() == []
        assert _record(log).id == "decision-3"

    def test_entry_is_frozen(self):
        entry = _record(DecisionLog())
        with pytest.raises(dataclasses.FrozenInstanceError):
            entry.result = DecisionOutcome.REJECTED

    def test_request_is_copied(self):
        request = {"changes": [{"kind": "move_item"}]}
        entry = _record(DecisionLog(), request=request)
        request["changes"].append({"kind": "remove_item"})
        assert entry.request == {"changes": [{"kind": "move_item"}]}

    def test_to_dict(self):
        d = _record(DecisionLog(), result=DecisionOutcome.REJECTED).to_dict()
        assert d["id"] == "decision-1"
        assert d["action"] == "request_change"
        assert d["result"] == "rejected"
        assert d["constraints_evaluated"] == ["capacity"]
        assert d["projected_scenario"] is None

    def test_concurrent_appends_lose_nothing(self):
        log = DecisionLog()
        per_thread, threads = 50, 8

        def worker():
            for _ in range(per_thread):
                _record(log)

        pool = [threading.Thread(target=worker) for _ in range(threads)]
        for t in pool:
            t.start()
        for t in pool:
            t.join()

        entries = log.get_all()
        assert len(entries) == per_thread * threads
        numbers = [int(e.id.split("-")[1]) for e in entries]
        assert numbers == list(range(1, per_thread * threads + 1))
        stamps = [e.timestamp for e in entries]
        assert stamps == sorted(stamps)
