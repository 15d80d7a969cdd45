"""Tests for the Diff/Plan Engine — actions, unknown values, step ordering."""

from __future__ import annotations

from pathlib import Path

import pytest

from strataform.core.planner import Planner, changed_arguments, classify, refresh_record
from strataform.errors import StateConflictError, ValidationError
from strataform.models.plan import ActionKind, Plan, StepOperation
from strataform.models.state import StateRecord
from strataform.models.values import UNKNOWN
from strataform.providers.base import ResourceSchema
from strataform.providers.simulated import SimulatedProvider, SimulatedType


def _doc(**blocks) -> dict:
    return {"resource": {"test_thing": blocks}}


A_THEN_B = _doc(a={}, b={"ref": "${test_thing.a.id}"})


# A type whose optional "name" is generated and exported when left unset.
NAMED_SCHEMA = ResourceSchema(
    type_name="test_named", optional=["name", "size"], force_new=["name"], exported=["name"]
)
NAMED = {"resource": {"test_named": {"a": {"size": 1}}}}


def _named_factories(cloud) -> dict:
    named = SimulatedType(
        schema_=NAMED_SCHEMA,
        id_prefix="named",
        attributes=lambda rid, args, config: {"name": args.get("name", f"auto-{rid}")},
    )
    return {"test": lambda arguments, settings: SimulatedProvider("test", [named], cloud=cloud, config=arguments)}


def _actions(plan: Plan) -> dict[str, ActionKind]:
    return {c.address: c.action for c in plan.changes}


class TestClassify:
    SCHEMA = ResourceSchema(type_name="t", optional=["m", "f"], force_new=["f"])

    def test_no_record_is_create(self):
        assert classify(self.SCHEMA, None, {"m": 1})[0] == ActionKind.CREATE

    def test_equal_is_noop(self):
        assert classify(self.SCHEMA, {"m": 1}, {"m": 1}) == (ActionKind.NOOP, [], [])

    def test_mutable_change_is_update(self):
        assert classify(self.SCHEMA, {"m": 1}, {"m": 2}) == (ActionKind.UPDATE, ["m"], [])

    def test_force_new_change_is_replace(self):
        action, changed, replace = classify(self.SCHEMA, {"m": 1, "f": "x"}, {"m": 2, "f": "y"})
        assert action == ActionKind.REPLACE
        assert changed == ["f", "m"]
        assert replace == ["f"]

    def test_unknown_always_differs(self):
        assert changed_arguments({"m": 1}, {"m": UNKNOWN}) == ["m"]

    def test_ignore_changes(self):
        assert classify(self.SCHEMA, {"m": 1}, {"m": 2}, ["m"])[0] == ActionKind.NOOP
        assert changed_arguments({"m": 1, "f": 1}, {"m": 2, "f": 2}, ["all"]) == []


class TestWorkedExamples:
    def test_create_a_then_b(self, make_engine):
        engine = make_engine(A_THEN_B)
        plan = engine.plan()

        assert [(c.address, c.action) for c in plan.changes] == [
            ("test_thing.a", ActionKind.CREATE),
            ("test_thing.b", ActionKind.CREATE),
        ]
        assert plan.step_keys == ["create:test_thing.a", "create:test_thing.b"]
        assert plan.step("create:test_thing.b").depends_on == ["create:test_thing.a"]
        b = plan.change_for("test_thing.b")
        assert b.after == {"ref": UNKNOWN}
        assert b.deferred is True

        summary = engine.apply(plan)
        assert summary.ok
        a_record = engine.store.get("test_thing.a")
        b_record = engine.store.get("test_thing.b")
        assert b_record.arguments["ref"] == a_record.resource_id
        assert b_record.dependencies == ["test_thing.a"]

    def test_create_before_destroy_replacement(self, make_engine, cloud):
        first = make_engine(_doc(
            a={"value": "x", "lifecycle": {"create_before_destroy": True}},
            b={"ref": "${test_thing.a.id}"},
        ))
        assert first.apply().ok
        old_id = first.store.get("test_thing.a").resource_id

        engine = make_engine(_doc(
            a={"value": "y", "lifecycle": {"create_before_destroy": True}},
            b={"ref": "${test_thing.a.id}"},
        ))
        plan = engine.plan()

        assert _actions(plan) == {
            "test_thing.a": ActionKind.REPLACE,
            "test_thing.b": ActionKind.UPDATE,
        }
        assert plan.change_for("test_thing.a").replace_paths == ["value"]
        assert plan.change_for("test_thing.b").after == {"ref": UNKNOWN}
        assert plan.step_keys == [
            "create:test_thing.a",
            "update:test_thing.b",
            "delete:test_thing.a#deposed",
        ]
        delete = plan.step("delete:test_thing.a#deposed")
        assert delete.deferred_destroy is True
        assert set(delete.depends_on) == {"create:test_thing.a", "update:test_thing.b"}

        summary = engine.apply(plan)
        assert summary.ok
        new_id = engine.store.get("test_thing.a").resource_id
        assert new_id != old_id
        assert engine.store.get("test_thing.b").arguments["ref"] == new_id
        assert engine.store.get("test_thing.a#deposed") is None
        assert old_id not in cloud.objects()


class TestPlanProperties:
    def test_second_plan_is_all_noop(self, make_engine):
        assert make_engine(A_THEN_B).apply().ok
        engine = make_engine(A_THEN_B)
        first, second = engine.plan(), engine.plan()
        assert not first.has_changes
        assert first.steps == []
        assert set(_actions(first).values()) == {ActionKind.NOOP}
        assert [c.model_dump() for c in first.changes] == [c.model_dump() for c in second.changes]

    def test_mutable_change_is_single_update(self, make_engine):
        assert make_engine(_doc(a={"label": "one"})).apply().ok
        plan = make_engine(_doc(a={"label": "two"})).plan()
        assert _actions(plan) == {"test_thing.a": ActionKind.UPDATE}
        assert plan.step_keys == ["update:test_thing.a"]
        assert plan.change_for("test_thing.a").changed == ["label"]

    def test_destroy_then_create_replacement(self, make_engine):
        assert make_engine(_doc(a={"value": "x"}, b={"ref": "${test_thing.a.id}"})).apply().ok
        plan = make_engine(_doc(a={"value": "y"}, b={"ref": "${test_thing.a.id}"})).plan()
        assert plan.step_keys == ["delete:test_thing.a", "create:test_thing.a", "update:test_thing.b"]
        assert plan.step("create:test_thing.a").depends_on == ["delete:test_thing.a"]

    def test_replacement_chain_deletes_consumer_first(self, make_engine):
        assert make_engine(_doc(a={"value": "x"}, b={"value": "${test_thing.a.id}"})).apply().ok
        engine = make_engine(_doc(a={"value": "y"}, b={"value": "${test_thing.a.id}"}))
        plan = engine.plan()
        assert _actions(plan) == {
            "test_thing.a": ActionKind.REPLACE,
            "test_thing.b": ActionKind.REPLACE,
        }
        assert plan.step_keys == [
            "delete:test_thing.b",
            "delete:test_thing.a",
            "create:test_thing.a",
            "create:test_thing.b",
        ]
        assert engine.apply(plan).ok
        a = engine.store.get("test_thing.a")
        assert engine.store.get("test_thing.b").arguments == {"value": a.resource_id}

    def test_removed_resource_destroyed_after_dependents_repoint(self, make_engine):
        assert make_engine(A_THEN_B).apply().ok
        plan = make_engine(_doc(b={"label": "solo"})).plan()
        assert _actions(plan) == {
            "test_thing.b": ActionKind.UPDATE,
            "test_thing.a": ActionKind.DESTROY,
        }
        assert plan.change_for("test_thing.a").reason == "not in configuration"
        assert plan.step_keys == ["update:test_thing.b", "delete:test_thing.a"]
        assert plan.step("delete:test_thing.a").depends_on == ["update:test_thing.b"]

    def test_removed_resources_destroyed_in_reverse_order(self, make_engine):
        assert make_engine(A_THEN_B).apply().ok
        plan = make_engine({}).plan()
        assert plan.step_keys == ["delete:test_thing.b", "delete:test_thing.a"]
        assert plan.step("delete:test_thing.a").depends_on == ["delete:test_thing.b"]

    def test_destroy_plan(self, make_engine):
        assert make_engine(A_THEN_B).apply().ok
        plan = make_engine(A_THEN_B).plan(destroy=True)
        assert plan.metadata.destroy is True
        assert set(_actions(plan).values()) == {ActionKind.DESTROY}
        assert plan.step_keys == ["delete:test_thing.b", "delete:test_thing.a"]
        assert plan.outputs == {}

    def test_planning_mutates_nothing(self, make_engine, cloud):
        engine = make_engine(A_THEN_B)
        engine.plan()
        assert engine.store.serial == 0
        assert cloud.objects() == {}


class TestDataSources:
    DOC = {
        "data": {"test_lookup": {"img": {"name": "web"}}},
        "resource": {"test_thing": {"a": {"label": "${data.test_lookup.img.value}"}}},
    }

    def test_known_arguments_queried_at_plan_time(self, make_engine):
        plan = make_engine(self.DOC).plan()
        assert _actions(plan) == {
            "data.test_lookup.img": ActionKind.READ,
            "test_thing.a": ActionKind.CREATE,
        }
        a = plan.change_for("test_thing.a")
        assert a.after == {"label": "WEB"}
        assert a.deferred is False
        assert plan.step("create:test_thing.a").depends_on == ["read:data.test_lookup.img"]

    def test_unchanged_query_is_noop(self, make_engine):
        assert make_engine(self.DOC).apply().ok
        plan = make_engine(self.DOC).plan()
        assert _actions(plan)["data.test_lookup.img"] == ActionKind.NOOP
        assert not plan.has_changes

    def test_unknown_arguments_defer_the_read(self, make_engine):
        plan = make_engine({
            "resource": {"test_thing": {"a": {}}},
            "data": {"test_lookup": {"img": {"name": "${test_thing.a.id}"}}},
        }).plan()
        read = plan.change_for("data.test_lookup.img")
        assert read.action == ActionKind.READ
        assert read.deferred is True
        assert plan.step_keys == ["create:test_thing.a", "read:data.test_lookup.img"]


class TestRefreshAndDrift:
    def test_drift_reported_and_reverted(self, make_engine, cloud):
        engine = make_engine(_doc(a={"label": "one"}))
        assert engine.apply().ok
        cloud.drift(engine.store.get("test_thing.a").resource_id, label="two")

        plan = make_engine(_doc(a={"label": "one"})).plan()
        change = plan.change_for("test_thing.a")
        assert change.action == ActionKind.UPDATE
        assert change.drift == ["label"]
        assert change.before == {"label": "two"}
        assert change.after == {"label": "one"}

    def test_no_refresh_ignores_drift(self, make_engine, cloud):
        engine = make_engine(_doc(a={"label": "one"}))
        assert engine.apply().ok
        cloud.drift(engine.store.get("test_thing.a").resource_id, label="two")
        plan = make_engine(_doc(a={"label": "one"})).plan(refresh=False)
        assert not plan.has_changes

    def test_vanished_object_is_recreated(self, make_engine, cloud):
        engine = make_engine(_doc(a={"label": "one"}))
        assert engine.apply().ok
        old_id = engine.store.get("test_thing.a").resource_id
        cloud.remove(old_id)

        engine = make_engine(_doc(a={"label": "one"}))
        plan = engine.plan()
        change = plan.change_for("test_thing.a")
        assert change.action == ActionKind.CREATE
        assert change.resource_id is None
        assert "no longer exists" in change.reason

        summary = engine.apply(plan)
        assert summary.ok
        assert summary.outcome("create:test_thing.a").note == "re-created"
        assert engine.store.get("test_thing.a").resource_id != old_id

    def test_generated_name_is_not_drift(self, make_engine, cloud):
        engine = make_engine(NAMED, factories=_named_factories(cloud))
        assert engine.apply().ok
        record = engine.store.get("test_named.a")
        assert record.arguments == {"size": 1}
        assert record.attributes["name"].startswith("auto-")

        plan = make_engine(NAMED, factories=_named_factories(cloud)).plan()
        assert not plan.has_changes
        assert plan.change_for("test_named.a").drift == []

    def test_exported_argument_drifts_when_set(self):
        record = StateRecord(
            address="test_named.a",
            resource_type="test_named",
            provider="test",
            resource_id="named-1",
            arguments={"name": "web", "size": 1},
        )
        live = {"id": "named-1", "name": "web-2", "size": 1}
        refreshed, drift = refresh_record(record, live, NAMED_SCHEMA)
        assert drift == ["name"]
        assert refreshed.arguments == {"name": "web-2", "size": 1}

        unset = record.model_copy(update={"arguments": {"size": 1}})
        refreshed, drift = refresh_record(unset, live, NAMED_SCHEMA)
        assert drift == []
        assert refreshed.arguments == {"size": 1}
        assert refreshed.attributes == {"name": "web-2"}


class TestLifecycle:
    def test_ignore_changes(self, make_engine):
        lifecycle = {"ignore_changes": ["label"]}
        assert make_engine(_doc(a={"label": "one", "lifecycle": lifecycle})).apply().ok
        plan = make_engine(_doc(a={"label": "two", "lifecycle": lifecycle})).plan()
        assert not plan.has_changes

    def test_prevent_destroy_blocks_replacement(self, make_engine):
        lifecycle = {"prevent_destroy": True}
        assert make_engine(_doc(a={"value": "x", "lifecycle": lifecycle})).apply().ok
        with pytest.raises(ValidationError, match="prevent_destroy") as excinfo:
            make_engine(_doc(a={"value": "y", "lifecycle": lifecycle})).plan()
        assert excinfo.value.address == "test_thing.a"

    def test_prevent_destroy_blocks_destroy_plan(self, make_engine):
        doc = _doc(a={"lifecycle": {"prevent_destroy": True}})
        assert make_engine(doc).apply().ok
        with pytest.raises(ValidationError, match="prevent_destroy"):
            make_engine(doc).plan(destroy=True)

    def test_leftover_deposed_object_is_destroyed(self, make_engine, provider):
        engine = make_engine(_doc(a={"label": "one"}))
        assert engine.apply().ok
        rid, attrs = provider.create("test_thing", {"label": "old"})
        engine.store.put(
            "test_thing.a#deposed",
            StateRecord(
                address="test_thing.a#deposed",
                resource_type="test_thing",
                provider="test",
                resource_id=rid,
                arguments={"label": "old"},
                attributes=attrs,
            ),
        )
        plan = make_engine(_doc(a={"label": "one"})).plan()
        change = plan.change_for("test_thing.a#deposed")
        assert change.action == ActionKind.DESTROY
        assert plan.step_keys == ["delete:test_thing.a#deposed"]

    def test_cbd_replacement_refused_while_deposed_pending(self, make_engine):
        lifecycle = {"create_before_destroy": True}
        engine = make_engine(_doc(a={"value": "x", "lifecycle": lifecycle}))
        assert engine.apply().ok
        engine.store.put(
            "test_thing.a#deposed",
            engine.store.get("test_thing.a").model_copy(update={"address": "test_thing.a#deposed"}),
        )
        with pytest.raises(StateConflictError, match="deposed"):
            make_engine(_doc(a={"value": "y", "lifecycle": lifecycle})).plan(refresh=False)


class TestValidation:
    def test_provider_validation_before_mutation(self, make_engine):
        engine = make_engine(_doc(a={"label": "bad"}))
        with pytest.raises(ValidationError, match="must not be 'bad'") as excinfo:
            engine.plan()
        assert excinfo.value.address == "test_thing.a"
        assert engine.store.serial == 0

    def test_unsupported_argument(self, make_engine):
        with pytest.raises(ValidationError, match="unsupported argument 'colour'"):
            make_engine(_doc(a={"colour": "red"})).plan()

    def test_unsupported_attribute_reference(self, make_engine):
        with pytest.raises(ValidationError, match="unsupported attribute"):
            make_engine(_doc(a={}, b={"ref": "${test_thing.a.nope}"})).plan()

    def test_unknown_resource_type(self, make_engine):
        with pytest.raises(ValidationError, match="unknown resource type"):
            make_engine({"resource": {"test_gadget": {"a": {}}}}).plan()

    def test_deferred_change_validated_at_plan(self, make_engine, cloud):
        engine = make_engine(_doc(a={}, b={"ref": "${test_thing.a.id}", "label": "bad"}))
        with pytest.raises(ValidationError, match="must not be 'bad'") as excinfo:
            engine.plan()
        assert excinfo.value.address == "test_thing.b"
        assert cloud.calls == []


class TestPlanFile:
    def test_save_and_load_keep_unknowns(self, make_engine, tmp_path: Path):
        plan = make_engine(A_THEN_B).plan()
        path = tmp_path / "plans" / "tf.plan.json"
        plan.save(path)
        loaded = Plan.load(path)
        assert loaded.step_keys == plan.step_keys
        assert loaded.change_for("test_thing.b").after == {"ref": UNKNOWN}
        assert loaded.metadata.state_lineage == plan.metadata.state_lineage
        assert loaded.step("create:test_thing.a").operation == StepOperation.CREATE


class TestPlannerDirect:
    def test_metadata_records_state_position(self, make_document, registry, store):
        planner = Planner(make_document(A_THEN_B), registry, store, engine_version="9.9")
        plan = planner.plan()
        assert plan.metadata.state_serial == 0
        assert plan.metadata.state_lineage == store.lineage
        assert plan.metadata.engine_version == "9.9"
        assert len(plan.metadata.config_digest) == 64

    def test_config_digest_tracks_variables(self, make_document, registry, store):
        doc = {
            "variable": {"label": {"default": "one"}},
            "resource": {"test_thing": {"a": {"label": "${var.label}"}}},
        }
        first = Planner(make_document(doc), registry, store, variables={"label": "one"}).plan()
        again = Planner(make_document(doc), registry, store, variables={"label": "one"}).plan()
        other = Planner(make_document(doc), registry, store, variables={"label": "two"}).plan()
        assert first.metadata.config_digest == again.metadata.config_digest
        assert first.metadata.config_digest != other.metadata.config_digest
