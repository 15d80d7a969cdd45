"""Adversarial tests — saved plans that no longer match the state.

These tests verify that a saved plan is refused when:
1. Its recorded serial or lineage was edited
2. The state moved on after the plan was written
3. The file itself is corrupt
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from strataform.errors import StateConflictError
from strataform.models.plan import Plan
from strataform.models.state import StateRecord

DOC = {"resource": {"test_thing": {"a": {"label": "one"}, "b": {"ref": "${test_thing.a.id}"}}}}


@pytest.fixture
def saved_plan(make_engine, tmp_path: Path) -> Path:
    path = tmp_path / "saved.plan.json"
    make_engine(DOC).plan().save(path)
    return path


def _edit(path: Path, mutate) -> None:
    data = json.loads(path.read_text(encoding="utf-8"))
    mutate(data)
    path.write_text(json.dumps(data), encoding="utf-8")


class TestSavedPlanTampering:
    def test_edited_serial_refused(self, make_engine, saved_plan, cloud):
        _edit(saved_plan, lambda d: d["metadata"].update(state_serial=41))
        with pytest.raises(StateConflictError, match="stale"):
            make_engine().apply(Plan.load(saved_plan))
        assert cloud.calls == []

    def test_edited_lineage_refused(self, make_engine, saved_plan, cloud):
        _edit(saved_plan, lambda d: d["metadata"].update(state_lineage="0" * 32))
        with pytest.raises(StateConflictError, match="lineage"):
            make_engine().apply(Plan.load(saved_plan))
        assert cloud.calls == []

    def test_out_of_band_state_write_makes_plan_stale(self, make_engine, saved_plan, provider):
        engine = make_engine()
        rid, attrs = provider.create("test_thing", {"label": "manual"})
        plan = Plan.load(saved_plan)
        engine.store.put(
            "test_thing.z",
            StateRecord(
                address="test_thing.z",
                resource_type="test_thing",
                provider="test",
                resource_id=rid,
                arguments={"label": "manual"},
                attributes=attrs,
            ),
        )
        with pytest.raises(StateConflictError, match="stale"):
            engine.apply(plan)

    def test_plan_applied_twice(self, make_engine, saved_plan):
        engine = make_engine()
        assert engine.apply(Plan.load(saved_plan)).ok
        with pytest.raises(StateConflictError, match="stale"):
            engine.apply(Plan.load(saved_plan))

    def test_corrupt_file(self, saved_plan):
        saved_plan.write_text("{not json", encoding="utf-8")
        with pytest.raises(ValueError):
            Plan.load(saved_plan)

    def test_wrong_shape(self, saved_plan):
        _edit(saved_plan, lambda d: d.update(steps="everything"))
        with pytest.raises(ValueError):
            Plan.load(saved_plan)

    def test_unknown_values_written_as_markers(self, saved_plan):
        data = json.loads(saved_plan.read_text(encoding="utf-8"))
        change = next(c for c in data["changes"] if c["address"] == "test_thing.b")
        assert change["after"] == {"ref": {"__unknown__": True}}
