"""Apply outcome models — one outcome per plan step plus a run summary."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from strataform.models.plan import StepOperation


class StepStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    BLOCKED = "blocked"  # a step it depends on failed
    CANCELLED = "cancelled"  # never dispatched because the run was cancelled
    SKIPPED = "skipped"  # re-diff at apply time found nothing to do


class StepOutcome(BaseModel):
    """Result of executing (or not executing) one plan step."""

    model_config = ConfigDict(frozen=True)

    key: str
    address: str
    operation: StepOperation
    status: StepStatus
    resource_id: str | None = None
    error: str | None = None
    error_type: str | None = None
    blocked_by: str | None = None
    note: str = ""
    duration_seconds: float = 0.0


class ApplySummary(BaseModel):
    """Every step outcome of one apply, in plan order."""

    model_config = ConfigDict(frozen=True)

    outcomes: list[StepOutcome] = []
    outputs: dict[str, Any] = {}
    cancelled: bool = False
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime | None = None

    @property
    def ok(self) -> bool:
        return all(
            o.status in (StepStatus.SUCCEEDED, StepStatus.SKIPPED) for o in self.outcomes
        )

    @property
    def failed(self) -> list[StepOutcome]:
        return [o for o in self.outcomes if o.status == StepStatus.FAILED]

    @property
    def blocked(self) -> list[StepOutcome]:
        return [o for o in self.outcomes if o.status == StepStatus.BLOCKED]

    def outcome(self, key: str) -> StepOutcome | None:
        for o in self.outcomes:
            if o.key == key:
                return o
        return None

    def counts(self) -> dict[str, int]:
        counts = {s.value: 0 for s in StepStatus}
        for o in self.outcomes:
            counts[o.status.value] += 1
        return counts
