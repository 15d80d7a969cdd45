"""State records — the last-applied view of every managed object.

The State Store is the source of truth for drift detection. A record is
created on the first successful apply of a resource, replaced after every
apply, and removed when the resource is destroyed.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from strataform.models.document import ResourceMode, is_deposed

STATE_FORMAT_VERSION = 1


class StateRecord(BaseModel):
    """Persisted identity -> provider id + last-applied attributes."""

    model_config = ConfigDict(frozen=True)

    address: str
    mode: ResourceMode = ResourceMode.MANAGED
    resource_type: str
    provider: str
    resource_id: str
    arguments: dict[str, Any] = {}  # last-applied, fully resolved
    attributes: dict[str, Any] = {}  # exported by the provider
    dependencies: list[str] = []  # addresses referenced when applied
    create_before_destroy: bool = False
    schema_version: int = 0
    version: int = 0  # compare-and-swap token, bumped on every write
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    @property
    def deposed(self) -> bool:
        return is_deposed(self.address)

    def values(self) -> dict[str, Any]:
        """Every referenceable value: arguments, exported attributes, id."""
        merged = dict(self.arguments)
        merged.update(self.attributes)
        merged["id"] = self.resource_id
        return merged


class StateDocument(BaseModel):
    """The versioned, portable form of a whole state."""

    model_config = ConfigDict(frozen=True)

    format_version: int = STATE_FORMAT_VERSION
    lineage: str
    serial: int = 0
    resources: dict[str, StateRecord] = {}
    outputs: dict[str, Any] = {}


class LockInfo(BaseModel):
    """Holder of the coarse state lock."""

    model_config = ConfigDict(frozen=True)

    lock_id: str
    owner: str
    acquired_at: datetime
