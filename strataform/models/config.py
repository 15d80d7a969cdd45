"""Per-run options."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from strataform.config import StrataSettings


class RunOptions(BaseModel):
    """Options for a single plan/apply run, defaulted from settings."""

    model_config = ConfigDict(frozen=True)

    parallelism: int = Field(default=10, ge=1)
    timeout_seconds: float = Field(default=300.0, gt=0)
    refresh: bool = True
    lock_owner: str = "strataform"

    @classmethod
    def from_settings(cls, settings: StrataSettings, **overrides: object) -> RunOptions:
        values: dict[str, object] = {
            "parallelism": settings.parallelism,
            "timeout_seconds": settings.provider_timeout_seconds,
            "refresh": settings.refresh,
            "lock_owner": settings.lock_owner,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)
