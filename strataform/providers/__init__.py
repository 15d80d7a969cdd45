"""Provider capability set, registry and the built-in simulated providers."""

from strataform.providers.base import Provider, ResourceSchema
from strataform.providers.registry import (
    ENTRY_POINT_GROUP,
    ProviderRegistry,
    ResourceKind,
    build_registry,
    discover_factories,
)
from strataform.providers.simulated import SimulatedCloud, SimulatedProvider, SimulatedType

__all__ = [
    "ENTRY_POINT_GROUP",
    "Provider",
    "ProviderRegistry",
    "ResourceKind",
    "ResourceSchema",
    "SimulatedCloud",
    "SimulatedProvider",
    "SimulatedType",
    "build_registry",
    "discover_factories",
]
