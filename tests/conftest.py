"""Shared test fixtures for Strataform."""

from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from strataform.config import StrataSettings
from strataform.core.engine import Engine
from strataform.core.parser import loads_json
from strataform.core.state_store import StateStore
from strataform.models.document import Document, ResourceMode
from strataform.providers.base import ResourceSchema
from strataform.providers.registry import ProviderRegistry
from strataform.providers.simulated import SimulatedCloud, SimulatedProvider, SimulatedType


# ---------------------------------------------------------------------------
# A small provider with predictable behaviour
# ---------------------------------------------------------------------------


def _thing_attrs(rid: str, args: dict[str, Any], config: dict[str, Any]) -> dict[str, Any]:
    return {"arn": f"arn:test:{config.get('region', 'local')}:{rid}"}


def _thing_validator(args: dict[str, Any]) -> list[str]:
    if args.get("label") == "bad":
        return ["label must not be 'bad'"]
    return []


def _lookup_query(args: dict[str, Any], cloud: SimulatedCloud, config: dict[str, Any]) -> dict[str, Any]:
    name = str(args.get("name", ""))
    return {"id": f"lookup-{name}", "value": name.upper()}


TEST_TYPES: list[SimulatedType] = [
    SimulatedType(
        schema_=ResourceSchema(
            type_name="test_thing",
            optional=["value", "ref", "label"],
            force_new=["value"],
            exported=["arn"],
        ),
        id_prefix="thing",
        attributes=_thing_attrs,
        validator=_thing_validator,
    ),
    SimulatedType(
        schema_=ResourceSchema(
            type_name="test_lookup",
            mode=ResourceMode.DATA,
            optional=["name"],
            exported=["value"],
        ),
        query=_lookup_query,
    ),
]


@pytest.fixture
def cloud() -> SimulatedCloud:
    """Provide a fresh in-memory simulated cloud."""
    return SimulatedCloud()


@pytest.fixture
def provider(cloud: SimulatedCloud) -> SimulatedProvider:
    """Provide the ``test`` provider backed by the test cloud."""
    return SimulatedProvider("test", TEST_TYPES, cloud=cloud)


@pytest.fixture
def registry(provider: SimulatedProvider) -> ProviderRegistry:
    """Provide a registry serving the ``test`` types."""
    reg = ProviderRegistry()
    reg.register(provider)
    return reg


@pytest.fixture
def factories(cloud: SimulatedCloud) -> dict[str, Callable[..., SimulatedProvider]]:
    """Provider factories for ``Engine``; every instance shares the test cloud."""

    def _factory(arguments: dict[str, Any], settings: StrataSettings) -> SimulatedProvider:
        return SimulatedProvider("test", TEST_TYPES, cloud=cloud, config=arguments)

    return {"test": _factory}


@pytest.fixture
def store(tmp_path: Path) -> StateStore:
    """Provide a fresh StateStore backed by a temp SQLite database."""
    return StateStore(tmp_path / "state.db")


@pytest.fixture
def tmp_settings(tmp_path: Path) -> StrataSettings:
    """Settings pointing every path into the temp directory."""
    return StrataSettings(
        state_path=tmp_path / "state.db",
        cloud_path=tmp_path / "cloud.json",
        parallelism=4,
        provider_timeout_seconds=5.0,
    )


# ---------------------------------------------------------------------------
# Document and engine factories
# ---------------------------------------------------------------------------


@pytest.fixture
def make_document() -> Callable[[dict[str, Any]], Document]:
    """Factory fixture: build a Document from a JSON-syntax dict."""

    def _factory(raw: dict[str, Any]) -> Document:
        return loads_json(json.dumps(raw), source="test.tf.json")

    return _factory


@pytest.fixture
def make_engine(
    tmp_path: Path,
    factories: dict[str, Callable[..., SimulatedProvider]],
    tmp_settings: StrataSettings,
    make_document: Callable[[dict[str, Any]], Document],
) -> Callable[..., Engine]:
    """Factory fixture: an Engine over the shared temp state and test cloud."""

    def _factory(raw: dict[str, Any] | None = None, **overrides: Any) -> Engine:
        kwargs: dict[str, Any] = {
            "state_path": tmp_path / "state.db",
            "settings": tmp_settings,
            "factories": factories,
            "environ": {},
        }
        kwargs.update(overrides)
        document = make_document(raw) if raw is not None else None
        return Engine(document=document, **kwargs)

    return _factory

