"""Configuration document models — resources, data sources, variables, outputs.

A ``Document`` is the typed form of one or more parsed configuration files.
It is pure data: references inside argument values are still raw ``${...}``
expressions, resolved later by the planner.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict

DEPOSED_SUFFIX = "#deposed"


class ResourceMode(str, Enum):
    """Whether a block manages an object or only queries one."""

    MANAGED = "managed"
    DATA = "data"


def resource_address(mode: ResourceMode | str, resource_type: str, name: str) -> str:
    """Return the stable identity of a resource or data source."""
    if ResourceMode(mode) == ResourceMode.DATA:
        return f"data.{resource_type}.{name}"
    return f"{resource_type}.{name}"


def deposed_address(address: str) -> str:
    """Identity under which a replaced original is kept until destroyed."""
    return f"{address}{DEPOSED_SUFFIX}"


def base_address(address: str) -> str:
    """Strip the deposed suffix, if any."""
    if address.endswith(DEPOSED_SUFFIX):
        return address[: -len(DEPOSED_SUFFIX)]
    return address


def is_deposed(address: str) -> bool:
    return address.endswith(DEPOSED_SUFFIX)


class Lifecycle(BaseModel):
    """Per-resource lifecycle directives."""

    model_config = ConfigDict(frozen=True)

    create_before_destroy: bool = False
    prevent_destroy: bool = False
    ignore_changes: list[str] = []


class ResourceBlock(BaseModel):
    """A declared resource or data source.

    ``arguments`` holds the raw value tree; any string may contain
    ``${...}`` reference expressions.
    """

    model_config = ConfigDict(frozen=True)

    mode: ResourceMode = ResourceMode.MANAGED
    type: str
    name: str
    arguments: dict[str, Any] = {}
    lifecycle: Lifecycle = Lifecycle()
    depends_on: list[str] = []
    provider: str = ""  # explicit provider meta-argument, if any
    index: int = 0  # declaration order across the whole document
    source: str = ""  # file the block was declared in

    @property
    def address(self) -> str:
        return resource_address(self.mode, self.type, self.name)

    @property
    def provider_name(self) -> str:
        """Provider serving this block: explicit, else the type prefix."""
        if self.provider:
            return self.provider
        return self.type.split("_", 1)[0]


class Variable(BaseModel):
    """A named, typed input resolved once per run."""

    model_config = ConfigDict(frozen=True)

    name: str
    type: str = "any"
    default: Any = None
    has_default: bool = False
    description: str = ""
    sensitive: bool = False


class Output(BaseModel):
    """A named value exported after apply."""

    model_config = ConfigDict(frozen=True)

    name: str
    value: Any = None
    description: str = ""
    sensitive: bool = False


class ProviderBlock(BaseModel):
    """Provider configuration (e.g. region)."""

    model_config = ConfigDict(frozen=True)

    name: str
    arguments: dict[str, Any] = {}


class Document(BaseModel):
    """The typed configuration: every block of every loaded file."""

    model_config = ConfigDict(frozen=True)

    resources: list[ResourceBlock] = []
    variables: dict[str, Variable] = {}
    outputs: dict[str, Output] = {}
    providers: dict[str, ProviderBlock] = {}
    sources: list[str] = []

    @property
    def addresses(self) -> list[str]:
        """Resource and data source addresses in declaration order."""
        return [block.address for block in self.resources]

    def get(self, address: str) -> ResourceBlock | None:
        for block in self.resources:
            if block.address == address:
                return block
        return None

    @property
    def provider_names(self) -> list[str]:
        """Every provider needed by the document, in first-use order."""
        names: list[str] = []
        for name in list(self.providers) + [b.provider_name for b in self.resources]:
            if name not in names:
                names.append(name)
        return names
