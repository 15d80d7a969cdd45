"""Plan models — per-resource changes and the ordered steps that apply them."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

from strataform.models.document import ResourceMode
from strataform.models.values import decode_unknowns, encode_unknowns


class ActionKind(str, Enum):
    """What the plan proposes for one resource."""

    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"  # destroy-and-recreate
    NOOP = "no-op"
    DESTROY = "destroy"
    READ = "read"  # data source query result is new or changed


class StepOperation(str, Enum):
    """A single provider-facing operation within a plan."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    READ = "read"


class ResourceChange(BaseModel):
    """The diff for one resource and the action that reconciles it."""

    model_config = ConfigDict(frozen=True)

    address: str
    mode: ResourceMode = ResourceMode.MANAGED
    resource_type: str
    provider: str
    action: ActionKind
    before: dict[str, Any] | None = None  # stored arguments
    after: dict[str, Any] | None = None  # desired arguments, may hold UNKNOWN
    config: dict[str, Any] | None = None  # raw argument tree, re-resolved at apply
    changed: list[str] = []
    replace_paths: list[str] = []  # force-new arguments that triggered replacement
    drift: list[str] = []  # arguments changed outside Strataform
    dependencies: list[str] = []
    ignore_changes: list[str] = []
    create_before_destroy: bool = False
    deferred: bool = False  # has unknown inputs; re-diffed during apply
    resource_id: str | None = None  # existing provider id, if any
    prior_version: int | None = None  # state record version the diff was based on
    reason: str = ""

    @field_serializer("after", when_used="json")
    def _serialize_after(self, value: dict[str, Any] | None) -> Any:
        return encode_unknowns(value)

    @field_validator("after", mode="before")
    @classmethod
    def _validate_after(cls, value: Any) -> Any:
        return decode_unknowns(value)


class PlanStep(BaseModel):
    """One operation in the plan's total order.

    ``depends_on`` lists the keys of steps that must succeed first; steps
    with no path between them may run concurrently.
    """

    model_config = ConfigDict(frozen=True)

    key: str  # e.g. "create:aws_instance.web"
    address: str  # state identity acted on (may carry the deposed suffix)
    change_address: str  # ResourceChange this step belongs to
    operation: StepOperation
    depends_on: list[str] = []
    deferred_destroy: bool = False  # destroy of a create-before-destroy original


class PlanMetadata(BaseModel):
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    destroy: bool = False
    refresh: bool = True
    state_lineage: str = ""
    state_serial: int = 0
    config_digest: str = ""
    engine_version: str = ""


class Plan(BaseModel):
    """The ordered set of actions needed to reconcile desired vs. actual state."""

    metadata: PlanMetadata = PlanMetadata()
    changes: list[ResourceChange] = []
    steps: list[PlanStep] = []
    variables: dict[str, Any] = {}
    outputs: dict[str, Any] = {}  # raw output expressions
    sensitive_outputs: list[str] = []
    providers: dict[str, dict[str, Any]] = {}  # provider name -> configuration

    def summary(self) -> dict[str, int]:
        counts = {a.value: 0 for a in ActionKind}
        for change in self.changes:
            counts[change.action.value] += 1
        return counts

    @property
    def has_changes(self) -> bool:
        return any(c.action != ActionKind.NOOP for c in self.changes)

    def change_for(self, address: str) -> ResourceChange | None:
        for change in self.changes:
            if change.address == address:
                return change
        return None

    def step(self, key: str) -> PlanStep | None:
        for step in self.steps:
            if step.key == key:
                return step
        return None

    @property
    def step_keys(self) -> list[str]:
        return [s.key for s in self.steps]

    def save(self, path: Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        data = self.model_dump(mode="json")
        path.write_text(json.dumps(data, indent=2, sort_keys=True) + "\n", encoding="utf-8")

    @classmethod
    def load(cls, path: Path) -> Plan:
        path = Path(path)
        return cls.model_validate_json(path.read_text(encoding="utf-8"))
