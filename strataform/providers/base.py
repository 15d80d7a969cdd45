"""Provider capability set — the contract every provider backend satisfies.

Defines ``ResourceSchema`` (what a resource type accepts and exports) and
the ``Provider`` Protocol through which the engine reaches a backend. The
engine never inspects a provider's class; a resource type is dispatched as
a tagged ``ResourceKind`` through the ``ProviderRegistry``.
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict

from strataform.models.document import ResourceMode


class ResourceSchema(BaseModel):
    """Argument and attribute shape of one resource or data source type.

    Parameters
    ----------
    type_name:
        Resource type, e.g. ``aws_instance``.
    required, optional:
        Accepted argument names.
    force_new:
        Arguments that cannot change in place; a change replaces the object.
    exported:
        Attributes computed by the provider (``id`` is implicit).
    update_computed:
        Exported attributes that may change on an in-place update and are
        therefore unknown until that update completes.
    """

    model_config = ConfigDict(frozen=True)

    type_name: str
    mode: ResourceMode = ResourceMode.MANAGED
    required: list[str] = []
    optional: list[str] = []
    force_new: list[str] = []
    exported: list[str] = []
    update_computed: list[str] = []
    version: int = 0
    description: str = ""

    @property
    def arguments(self) -> list[str]:
        return list(self.required) + list(self.optional)

    def is_force_new(self, argument: str) -> bool:
        """Whether a change at *argument* (a dotted path) forces replacement."""
        return argument.split(".", 1)[0].split("[", 1)[0] in self.force_new

    def check_arguments(self, arguments: dict[str, Any]) -> list[str]:
        """Structural problems: missing required or unrecognised arguments."""
        problems = [f"missing required argument {name!r}" for name in self.required if name not in arguments]
        accepted = set(self.arguments)
        problems.extend(
            f"unsupported argument {name!r}" for name in arguments if name not in accepted
        )
        return problems


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class Provider(Protocol):
    """Protocol for provider backends.

    Every method may raise ``ProviderError``; ``delete`` and ``update``
    raise ``ResourceNotFoundError`` when the object is gone. Calls are made
    from worker threads, so implementations must be thread-safe.
    """

    name: str

    def schemas(self) -> dict[str, ResourceSchema]:
        """Every resource and data source type this provider serves."""
        ...

    def validate(self, resource_type: str, arguments: dict[str, Any]) -> list[str]:
        """Return human-readable problems with *arguments*.

        Values not yet known at plan time are ``UNKNOWN``; checks that need
        them must pass and are repeated with the resolved arguments at apply.
        """
        ...

    def create(self, resource_type: str, arguments: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        """Create an object and return ``(resource_id, exported_attributes)``."""
        ...

    def read(self, resource_type: str, resource_id: str) -> dict[str, Any] | None:
        """Return the live arguments and attributes, or ``None`` if gone."""
        ...

    def update(self, resource_type: str, resource_id: str, arguments: dict[str, Any]) -> dict[str, Any]:
        """Apply mutable argument changes in place; return exported attributes."""
        ...

    def delete(self, resource_type: str, resource_id: str) -> None:
        ...

    def query(self, resource_type: str, arguments: dict[str, Any]) -> dict[str, Any]:
        """Run a data source query and return its attributes (including ``id``)."""
        ...
