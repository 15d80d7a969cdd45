"""Strataform data models — all Pydantic v2."""

from strataform.models.apply import ApplySummary, StepOutcome, StepStatus
from strataform.models.config import RunOptions
from strataform.models.document import (
    Document,
    Lifecycle,
    Output,
    ProviderBlock,
    ResourceBlock,
    ResourceMode,
    Variable,
    base_address,
    deposed_address,
    resource_address,
)
from strataform.models.plan import (
    ActionKind,
    Plan,
    PlanMetadata,
    PlanStep,
    ResourceChange,
    StepOperation,
)
from strataform.models.state import LockInfo, StateDocument, StateRecord
from strataform.models.values import UNKNOWN, Unknown, contains_unknown

__all__ = [
    # document
    "Document",
    "Lifecycle",
    "Output",
    "ProviderBlock",
    "ResourceBlock",
    "ResourceMode",
    "Variable",
    "base_address",
    "deposed_address",
    "resource_address",
    # values
    "UNKNOWN",
    "Unknown",
    "contains_unknown",
    # state
    "LockInfo",
    "StateDocument",
    "StateRecord",
    # plan
    "ActionKind",
    "Plan",
    "PlanMetadata",
    "PlanStep",
    "ResourceChange",
    "StepOperation",
    # apply
    "ApplySummary",
    "StepOutcome",
    "StepStatus",
    # config
    "RunOptions",
]
