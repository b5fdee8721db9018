"""
Data model: payload parsing, serialization and small derived helpers.
"""

import pytest

from conftest import make_item
from portfolio_engine.core.exceptions import DataIntegrityError, ValidationError
from portfolio_engine.models.constraint import UtilizationCell, compute_utilization
from portfolio_engine.models.governance import (
    ChangeKind,
    DecisionOutcome,
    WhatIfChange,
    classify_outcome,
)
from portfolio_engine.models.scenario import Scenario, ScheduledItem, Team


SCENARIO_PAYLOAD = {
    "id": "s-1",
    "name": "Q3 plan",
    "horizon": 4,
    "teams": [{"id": "T1", "name": "Core", "capacity_by_period": [10, 10, 8, 8]}],
    "items": [{
        "id": "I1",
        "name": "Billing",
        "start_period": 1,
        "duration": 2,
        "team_allocations": [
            {"team_id": "T1", "period_index": 1, "tokens": 4},
            {"team_id": "T1", "period_index": 2, "tokens": 2.5},
        ],
        "dependencies": [],
        "priority": 2,
        "token_budget": 10,
    }],
    "token_budget": None,
}


# ═══════════════════════════════════════════════════════════════════════════
# 1 · Scenario payloads
# ═══════════════════════════════════════════════════════════════════════════

class TestScenarioPayload:

    def test_from_dict(self):
        scn = Scenario.from_dict(SCENARIO_PAYLOAD)
        assert scn.horizon == 4
        assert scn.find_team("T1").capacity_at(2) == 8
        item = scn.find_item("I1")
        assert item.total_tokens == pytest.approx(6.5)
        assert item.priority == 2

    def test_to_dict_matches_payload(self):
        assert Scenario.from_dict(SCENARIO_PAYLOAD).to_dict() == SCENARIO_PAYLOAD

    def test_defaults_for_optional_fields(self):
        item = ScheduledItem.from_dict({"id": "x", "start_period": 0, "duration": 1})
        assert item.name == "x"
        assert item.team_allocations == []
        assert item.dependencies == []
        assert item.token_budget is None

    @pytest.mark.parametrize("payload, field", [
        ({"id": "x", "duration": 1}, "start_period"),
        ({"id": "x", "start_period": "1", "duration": 1}, "start_period"),
        ({"id": "x", "start_period": 0, "duration": True}, "duration"),
        ({"id": "x", "start_period": 0, "duration": 1, "dependencies": "a"}, "dependencies"),
        ({"start_period": 0, "duration": 1}, "id"),
    ])
    def test_malformed_item(self, payload, field):
        with pytest.raises(ValidationError) as exc_info:
            ScheduledItem.from_dict(payload)
        assert field in exc_info.value.details

    def test_malformed_allocation(self):
        with pytest.raises(ValidationError):
            ScheduledItem.from_dict({
                "id": "x", "start_period": 0, "duration": 1,
                "team_allocations": [{"team_id": "T", "period_index": 0, "tokens": "lots"}],
            })

    def test_non_object_team(self):
        with pytest.raises(ValidationError):
            Team.from_dict(["T1"])

    def test_negative_values_parse(self):
        item = ScheduledItem.from_dict({
            "id": "x", "start_period": -1, "duration": 0,
            "team_allocations": [{"team_id": "T", "period_index": 0, "tokens": -2}],
        })
        assert item.duration == 0
        assert item.team_allocations[0].tokens == -2


# ═══════════════════════════════════════════════════════════════════════════
# 2 · Scenario helpers
# ═══════════════════════════════════════════════════════════════════════════

class TestScenarioHelpers:

    def test_capacity_outside_declared_periods(self):
        assert Team("T", "T", [5]).capacity_at(3) == 0.0

    def test_team_capacity_stored_as_tuple(self):
        assert Team("T", "T", [5, 6]).capacity_by_period == (5, 6)

    def test_shifted_moves_allocations(self):
        item = make_item("X", 1, 2, [("T", 1, 3), ("T", 2, 4)], ["A"])
        moved = item.shifted(3)
        assert moved.start_period == 3
        assert moved.end_period == 5
        assert [a.period_index for a in moved.team_allocations] == [3, 4]
        assert item.start_period == 1
        moved.dependencies.append("B")
        assert item.dependencies == ["A"]

    def test_occupies(self):
        item = make_item("X", 1, 2)
        assert [p for p in range(4) if item.occupies(p)] == [1, 2]

    def test_require_item_raises_integrity_error(self, scenario):
        with pytest.raises(DataIntegrityError) as exc_info:
            scenario.require_item("ghost", owner="test")
        assert "ghost" in str(exc_info.value)
        assert isinstance(exc_info.value, ValidationError)

    def test_in_horizon(self, scenario):
        assert scenario.in_horizon(0) and scenario.in_horizon(5)
        assert not scenario.in_horizon(6)
        assert not scenario.in_horizon(-1)


# ═══════════════════════════════════════════════════════════════════════════
# 3 · Utilization
# ═══════════════════════════════════════════════════════════════════════════

class TestUtilization:

    def test_ratio(self):
        assert compute_utilization(3, 4) == pytest.approx(0.75)

    def test_empty_cell(self):
        assert compute_utilization(0, 0) == 0.0

    def test_demand_on_zero_capacity(self):
        assert compute_utilization(2, 0) is None

    def test_cell_key(self):
        cell = UtilizationCell.build("T", 2, 1, 2)
        assert cell.key == ("T", 2)
        assert cell.to_dict()["utilization"] == pytest.approx(0.5)


# ═══════════════════════════════════════════════════════════════════════════
# 4 · Change requests
# ═══════════════════════════════════════════════════════════════════════════

class TestWhatIfChange:

    def test_kind_parsed_case_insensitively(self):
        change = WhatIfChange.from_dict({"kind": "MOVE_ITEM", "item_id": "A", "start_period": 2})
        assert change.kind == ChangeKind.MOVE_ITEM
        assert change.target_id == "A"

    def test_unknown_kind(self):
        with pytest.raises(ValidationError) as exc_info:
            WhatIfChange.from_dict({"kind": "teleport"})
        assert exc_info.value.details == {"kind": "unknown"}

    def test_missing_fields_listed(self):
        with pytest.raises(ValidationError) as exc_info:
            WhatIfChange.from_dict({"kind": "resize_item"})
        assert set(exc_info.value.details) == {"item_id", "duration"}

    def test_start_period_must_be_integer(self):
        with pytest.raises(ValidationError):
            WhatIfChange.from_dict({"kind": "move_item", "item_id": "A", "start_period": 1.5})

    def test_negative_capacity_change_rejected(self):
        with pytest.raises(ValidationError):
            WhatIfChange(ChangeKind.ADD_CAPACITY, team_id="T", tokens=-1).validate()

    def test_add_item_target_is_new_item(self):
        change = WhatIfChange(ChangeKind.ADD_ITEM, item=make_item("N", 0, 1))
        assert change.target_id == "N"

    def test_to_dict_omits_unset_fields(self):
        change = WhatIfChange(ChangeKind.ADD_CAPACITY, team_id="T", tokens=2, periods=[1])
        assert change.to_dict() == {"kind": "add_capacity", "team_id": "T",
                                    "tokens": 2, "periods": [1]}

    @pytest.mark.parametrize("payload, field", [
        ({"kind": "set_dependencies", "item_id": "C", "dependencies": "AB"}, "dependencies"),
        ({"kind": "set_dependencies", "item_id": "C", "dependencies": [1]}, "dependencies"),
        ({"kind": "add_capacity", "team_id": "T", "tokens": 1, "periods": 5}, "periods"),
        ({"kind": "add_capacity", "team_id": "T", "tokens": 1, "periods": ["x"]}, "periods"),
        ({"kind": "remove_item", "item_id": 7}, "item_id"),
        ({"kind": "add_capacity", "team_id": ["T"], "tokens": 1}, "team_id"),
    ])
    def test_malformed_field_shapes(self, payload, field):
        with pytest.raises(ValidationError) as exc_info:
            WhatIfChange.from_dict(payload)
        assert field in exc_info.value.details

    def test_malformed_allocations_list(self):
        with pytest.raises(ValidationError):
            WhatIfChange.from_dict({"kind": "reallocate", "item_id": "A", "allocations": 3})

    def test_reallocate_from_dict(self):
        change = WhatIfChange.from_dict({
            "kind": "reallocate", "item_id": "A",
            "allocations": [{"team_id": "T2", "period_index": 0, "tokens": 1}],
        })
        assert change.allocations[0].team_id == "T2"


class TestClassifyOutcome:

    def test_violation_rejects(self):
        assert classify_outcome(["v"], ["w"]) == DecisionOutcome.REJECTED

    def test_warning_only(self):
        assert classify_outcome([], ["w"]) == DecisionOutcome.APPROVED_WITH_WARNINGS

    def test_clean(self):
        assert classify_outcome([], []) == DecisionOutcome.APPROVED
