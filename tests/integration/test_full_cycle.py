"""End-to-end integration tests — plan, apply, modify and destroy the example
configurations against the built-in simulated providers.

These tests exercise the parser, variable resolution, dependency graph,
planner, executor and State Store working together.
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from strataform.config import StrataSettings
from strataform.core.engine import Engine
from strataform.errors import ValidationError
from strataform.models.apply import StepStatus
from strataform.models.plan import ActionKind
from strataform.models.values import UNKNOWN

EXAMPLES = Path(__file__).resolve().parents[2] / "examples"
WEB_CLUSTER = EXAMPLES / "web_cluster"

LC = "aws_launch_configuration.example"
ASG = "aws_autoscaling_group.example"


@pytest.fixture
def settings(tmp_path: Path) -> StrataSettings:
    return StrataSettings(
        state_path=tmp_path / "state.db",
        cloud_path=tmp_path / "cloud.json",
        parallelism=4,
        provider_timeout_seconds=10.0,
    )


def _cloud_objects(settings: StrataSettings) -> dict:
    if not settings.cloud_path.exists():
        return {}
    return json.loads(settings.cloud_path.read_text(encoding="utf-8"))["objects"]


class TestWebCluster:
    """The load-balanced cluster: data sources, nested blocks, a CBD replacement."""

    def _engine(self, settings: StrataSettings, **variables) -> Engine:
        return Engine(
            WEB_CLUSTER,
            variables=variables,
            var_files=[WEB_CLUSTER / "stage.tfvars"],
            settings=settings,
            environ={},
        )

    def test_validate(self, settings):
        graph = self._engine(settings).validate()
        assert len(graph) == 11
        assert ASG in graph.dependents(LC)

    def test_initial_plan(self, settings):
        plan = self._engine(settings).plan()
        summary = plan.summary()
        assert summary["read"] == 3
        assert summary["create"] == 8

        lc = plan.change_for(LC)
        assert lc.after["image_id"] == "ami-0fb653ca2d3203ac1"
        assert lc.after["security_groups"] == [UNKNOWN]
        assert lc.deferred is True

        sg = plan.change_for("aws_security_group.instance")
        assert sg.after["name"] == "webservers-stage-instance"
        assert sg.after["ingress"][0]["from_port"] == 8080

        asg = plan.change_for(ASG)
        assert asg.after["vpc_zone_identifier"] == ["subnet-0a11", "subnet-0b22", "subnet-0c33"]
        assert asg.after["min_size"] == 2

        position = {key: i for i, key in enumerate(plan.step_keys)}
        for step in plan.steps:
            for dep in step.depends_on:
                assert position[dep] < position[step.key]
        assert plan.metadata.state_serial == 0
        assert _cloud_objects(settings) == {}

    def test_full_lifecycle(self, settings):
        # Create.
        engine = self._engine(settings)
        summary = engine.apply()
        assert summary.ok, [o.error for o in summary.failed]
        assert len(engine.state_records()) == 11
        assert len(_cloud_objects(settings)) == 8
        assert summary.outputs["alb_dns_name"].endswith(".us-east-2.elb.amazonaws.com")
        asg_record = engine.store.get(ASG)
        assert summary.outputs["asg_name"] == asg_record.resource_id
        lc_record = engine.store.get(LC)
        assert asg_record.arguments["launch_configuration"] == lc_record.attributes["name"]

        # Nothing left to do.
        plan = self._engine(settings).plan()
        assert not plan.has_changes
        assert {c.action for c in plan.changes} == {ActionKind.NOOP}

        # Change a force-new argument of the launch configuration.
        engine = self._engine(settings, instance_type="t3.micro")
        plan = engine.plan()
        assert plan.change_for(LC).action == ActionKind.REPLACE
        assert plan.change_for(LC).create_before_destroy is True
        assert plan.change_for(ASG).action == ActionKind.UPDATE
        assert plan.step_keys == [f"create:{LC}", f"update:{ASG}", f"delete:{LC}#deposed"]

        summary = engine.apply(plan)
        assert summary.ok
        new_lc = engine.store.get(LC)
        assert new_lc.resource_id != lc_record.resource_id
        assert engine.store.get(f"{LC}#deposed") is None
        assert engine.store.get(ASG).arguments["launch_configuration"] == new_lc.attributes["name"]
        assert lc_record.resource_id not in _cloud_objects(settings)
        assert not self._engine(settings, instance_type="t3.micro").plan().has_changes

        # Destroy everything.
        summary = self._engine(settings, instance_type="t3.micro").destroy()
        assert summary.ok
        assert engine.state_records() == []
        assert _cloud_objects(settings) == {}
        assert engine.outputs() == {}

    def test_invalid_sizes_rejected_before_any_call(self, settings):
        engine = self._engine(settings, min_size=5, max_size=1)
        with pytest.raises(ValidationError, match="invalid size range"):
            engine.plan()
        assert engine.store.serial == 0


class TestHelloExample:
    """A null-provider configuration with a deferred data source read."""

    def test_apply_and_outputs(self, settings):
        engine = Engine(EXAMPLES / "hello.tf.json", settings=settings, environ={})
        plan = engine.plan()
        read = plan.change_for("data.null_data_source.summary")
        assert read.action == ActionKind.READ
        assert read.deferred is True

        summary = engine.apply(plan)
        assert summary.ok
        first = engine.store.get("null_resource.first")
        assert summary.outputs["summary"] == {"first": first.resource_id, "greeting": "hello"}
        assert summary.outcome("read:data.null_data_source.summary").status == StepStatus.SUCCEEDED

    def test_variable_change_replaces_chain(self, settings):
        path = EXAMPLES / "hello.tf.json"
        assert Engine(path, settings=settings, environ={}).apply().ok
        engine = Engine(path, variables={"greeting": "bonjour"}, settings=settings, environ={})
        plan = engine.plan()
        assert plan.change_for("null_resource.first").action == ActionKind.REPLACE
        assert plan.change_for("null_resource.second").action == ActionKind.REPLACE
        summary = engine.apply(plan)
        assert summary.ok
        assert summary.outputs["summary"]["greeting"] == "bonjour"
