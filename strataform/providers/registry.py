"""Provider registry — resource types as tagged variants.

Every resource or data source type is a ``ResourceKind``: its tag (mode and
type name), its schema, and the provider that serves it. The engine looks a
kind up by tag and calls the provider's capability set; it never branches
on provider classes.

Providers come from built-in factories or from third-party packages that
declare an entry point in the ``strataform.providers`` group::

    [project.entry-points."strataform.providers"]
    gcp = "strataform_gcp:create_provider"

A factory is called as ``factory(arguments, settings)`` with the matching
provider block's arguments.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from importlib.metadata import entry_points
from typing import Any

from pydantic import BaseModel, ConfigDict

from strataform.config import StrataSettings
from strataform.errors import ValidationError
from strataform.models.document import ResourceMode, resource_address
from strataform.providers.base import Provider, ResourceSchema

logger = logging.getLogger(__name__)

ENTRY_POINT_GROUP = "strataform.providers"

ProviderFactory = Callable[[dict[str, Any], StrataSettings], Provider]


class ResourceKind(BaseModel):
    """Tagged variant for one resource type."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    mode: ResourceMode
    type_name: str
    schema_: ResourceSchema
    provider: Any  # a ``Provider``

    @property
    def tag(self) -> str:
        return resource_address(self.mode, self.type_name, "*")[:-2]


class ProviderRegistry:
    """Lookup of providers by name and resource kinds by tag."""

    def __init__(self) -> None:
        self._providers: dict[str, Provider] = {}
        self._kinds: dict[tuple[ResourceMode, str], ResourceKind] = {}

    def register(self, provider: Provider) -> None:
        """Add a provider and every type it serves.

        Raises
        ------
        ValueError
            If the object does not satisfy the ``Provider`` Protocol, or a
            type is already served by a different provider.
        """
        if not isinstance(provider, Provider):
            raise ValueError(f"{provider!r} does not implement the provider capability set")
        for type_name, schema in provider.schemas().items():
            key = (schema.mode, type_name)
            existing = self._kinds.get(key)
            if existing is not None and existing.provider.name != provider.name:
                raise ValueError(
                    f"type {type_name!r} is already served by provider {existing.provider.name!r}"
                )
            self._kinds[key] = ResourceKind(
                mode=schema.mode, type_name=type_name, schema_=schema, provider=provider
            )
        self._providers[provider.name] = provider
        logger.debug("Registered provider %s (%d types)", provider.name, len(provider.schemas()))

    def provider(self, name: str) -> Provider:
        try:
            return self._providers[name]
        except KeyError:
            raise ValidationError(f"no provider named {name!r} is configured") from None

    def kind(self, mode: ResourceMode, type_name: str, *, address: str | None = None) -> ResourceKind:
        """Return the kind for a tag or raise ``ValidationError``."""
        found = self._kinds.get((ResourceMode(mode), type_name))
        if found is None:
            what = "data source" if ResourceMode(mode) == ResourceMode.DATA else "resource"
            raise ValidationError(f"unknown {what} type {type_name!r}", address=address)
        return found

    @property
    def providers(self) -> list[Provider]:
        return list(self._providers.values())

    def kinds(self) -> list[ResourceKind]:
        return sorted(self._kinds.values(), key=lambda k: (k.provider.name, k.mode.value, k.type_name))


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


def discover_factories() -> dict[str, ProviderFactory]:
    """Built-in factories overlaid with those declared as entry points."""
    from strataform.providers.catalog import BUILTIN_FACTORIES

    factories: dict[str, ProviderFactory] = dict(BUILTIN_FACTORIES)
    for ep in entry_points(group=ENTRY_POINT_GROUP):
        try:
            factories[ep.name] = ep.load()
        except Exception as exc:
            logger.warning("Failed to load provider entry point %s: %s", ep.name, exc)
            continue
        logger.debug("Discovered provider %s from %s", ep.name, ep.value)
    return factories


def build_registry(
    names: Iterable[str],
    configs: Mapping[str, dict[str, Any]],
    settings: StrataSettings,
    *,
    factories: Mapping[str, ProviderFactory] | None = None,
) -> ProviderRegistry:
    """Instantiate and register every named provider.

    Raises ``ValidationError`` for a provider name no factory serves.
    """
    available = discover_factories() if factories is None else dict(factories)
    registry = ProviderRegistry()
    for name in dict.fromkeys(names):
        factory = available.get(name)
        if factory is None:
            raise ValidationError(
                f"no provider named {name!r}; available: {', '.join(sorted(available)) or 'none'}"
            )
        registry.register(factory(dict(configs.get(name, {})), settings))
    return registry
