"""Simulated provider — an in-process stand-in for a cloud API.

``SimulatedCloud`` holds objects keyed by provider id and can persist them
to a JSON file so separate CLI invocations see the same "cloud".
``SimulatedProvider`` implements the ``Provider`` Protocol on top of it,
driven by per-type ``SimulatedType`` entries from the catalog.

The cloud supports fault injection (``fail_next``), artificial latency
(``set_latency``) and out-of-band edits (``drift``) for tests and demos.
"""

from __future__ import annotations

import copy
import json
import logging
import os
import threading
import time
import uuid
from collections.abc import Callable
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict

from strataform.errors import ProviderError, ResourceNotFoundError, ValidationError
from strataform.models.values import contains_unknown
from strataform.providers.base import ResourceSchema

logger = logging.getLogger(__name__)

# (resource_id, arguments, provider_config) -> exported attributes
AttributeFactory = Callable[..., dict[str, Any]]
# (arguments, cloud, provider_config) -> attributes including "id"
DataQuery = Callable[..., dict[str, Any]]
# arguments -> problems
Validator = Callable[..., list[str]]


class SimulatedType(BaseModel):
    """Behaviour of one simulated resource or data source type."""

    model_config = ConfigDict(frozen=True)

    schema_: ResourceSchema
    id_prefix: str = "res"
    attributes: AttributeFactory | None = None
    query: DataQuery | None = None
    validator: Validator | None = None


# ---------------------------------------------------------------------------
# Cloud
# ---------------------------------------------------------------------------


class SimulatedCloud:
    """Thread-safe object store standing in for a remote API.

    Parameters
    ----------
    path:
        Optional JSON file; loaded on construction and rewritten after
        every mutation.
    """

    def __init__(self, path: Path | None = None) -> None:
        self._path = Path(path) if path is not None else None
        self._lock = threading.Lock()
        self._objects: dict[str, dict[str, Any]] = {}
        self._failures: dict[tuple[str, str], list[str]] = {}
        self._latency: dict[str, float] = {}
        self.calls: list[tuple[str, str, str]] = []  # (operation, type, id)
        if self._path is not None and self._path.exists():
            data = json.loads(self._path.read_text(encoding="utf-8"))
            self._objects = data.get("objects", {})

    # -- Test hooks -----------------------------------------------------------

    def fail_next(
        self,
        resource_type: str,
        operation: str,
        message: str = "simulated API failure",
        *,
        count: int = 1,
    ) -> None:
        """Make the next *count* calls of *operation* on *resource_type* fail."""
        with self._lock:
            self._failures.setdefault((resource_type, operation), []).extend([message] * count)

    def set_latency(self, seconds: float, resource_type: str = "*") -> None:
        """Delay every call on *resource_type* (``"*"`` for all) by *seconds*."""
        with self._lock:
            self._latency[resource_type] = seconds

    def drift(self, resource_id: str, **arguments: Any) -> None:
        """Change an object's arguments behind the engine's back."""
        with self._lock:
            obj = self._objects.get(resource_id)
            if obj is None:
                raise KeyError(resource_id)
            obj["arguments"].update(arguments)
            self._save()

    def remove(self, resource_id: str) -> bool:
        """Delete an object behind the engine's back."""
        with self._lock:
            removed = self._objects.pop(resource_id, None) is not None
            self._save()
        return removed

    # -- API surface ----------------------------------------------------------

    def before_call(self, resource_type: str, operation: str, resource_id: str = "") -> None:
        """Record the call, apply latency, and raise any injected failure."""
        with self._lock:
            self.calls.append((operation, resource_type, resource_id))
            delay = self._latency.get(resource_type, self._latency.get("*", 0.0))
            pending = self._failures.get((resource_type, operation))
            message = pending.pop(0) if pending else None
        if delay:
            time.sleep(delay)
        if message is not None:
            raise ProviderError(f"{operation} {resource_type}: {message}")

    def insert(self, resource_type: str, resource_id: str, arguments: dict[str, Any], attributes: dict[str, Any]) -> None:
        with self._lock:
            self._objects[resource_id] = {
                "type": resource_type,
                "arguments": copy.deepcopy(arguments),
                "attributes": copy.deepcopy(attributes),
            }
            self._save()

    def get(self, resource_id: str) -> dict[str, Any] | None:
        with self._lock:
            obj = self._objects.get(resource_id)
            return copy.deepcopy(obj) if obj is not None else None

    def replace_arguments(
        self, resource_id: str, arguments: dict[str, Any], attributes: dict[str, Any]
    ) -> None:
        with self._lock:
            obj = self._objects.get(resource_id)
            if obj is None:
                raise ResourceNotFoundError(f"object {resource_id} does not exist")
            obj["arguments"] = copy.deepcopy(arguments)
            obj["attributes"] = copy.deepcopy(attributes)
            self._save()

    def delete(self, resource_id: str) -> None:
        with self._lock:
            if resource_id not in self._objects:
                raise ResourceNotFoundError(f"object {resource_id} does not exist")
            del self._objects[resource_id]
            self._save()

    def objects(self, resource_type: str | None = None) -> dict[str, dict[str, Any]]:
        with self._lock:
            return {
                oid: copy.deepcopy(obj)
                for oid, obj in self._objects.items()
                if resource_type is None or obj["type"] == resource_type
            }

    def _save(self) -> None:
        if self._path is None:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp.write_text(
            json.dumps({"objects": self._objects}, indent=2, sort_keys=True), encoding="utf-8"
        )
        os.replace(tmp, self._path)


# ---------------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------------


class SimulatedProvider:
    """``Provider`` implementation backed by a ``SimulatedCloud``.

    Parameters
    ----------
    name:
        Provider name resource types are registered under.
    types:
        The simulated types this provider serves.
    cloud:
        Backing object store; a fresh in-memory cloud by default.
    config:
        Provider block arguments (e.g. ``region``).
    """

    def __init__(
        self,
        name: str,
        types: list[SimulatedType],
        *,
        cloud: SimulatedCloud | None = None,
        config: dict[str, Any] | None = None,
    ) -> None:
        self.name = name
        self.cloud = cloud if cloud is not None else SimulatedCloud()
        self.config = dict(config or {})
        self._types = {t.schema_.type_name: t for t in types}

    def _type(self, resource_type: str) -> SimulatedType:
        try:
            return self._types[resource_type]
        except KeyError:
            raise ValidationError(
                f"provider {self.name!r} does not serve type {resource_type!r}"
            ) from None

    def schemas(self) -> dict[str, ResourceSchema]:
        return {name: t.schema_ for name, t in self._types.items()}

    def validate(self, resource_type: str, arguments: dict[str, Any]) -> list[str]:
        sim = self._type(resource_type)
        problems = sim.schema_.check_arguments(arguments)
        if sim.validator is not None and not problems:
            known = {k: v for k, v in arguments.items() if not contains_unknown(v)}
            problems.extend(sim.validator(known))
        return problems

    def create(self, resource_type: str, arguments: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        sim = self._type(resource_type)
        self.cloud.before_call(resource_type, "create")
        resource_id = f"{sim.id_prefix}-{uuid.uuid4().hex[:12]}"
        attributes = self._attributes(sim, resource_id, arguments)
        self.cloud.insert(resource_type, resource_id, arguments, attributes)
        logger.debug("Simulated create %s %s", resource_type, resource_id)
        return resource_id, attributes

    def read(self, resource_type: str, resource_id: str) -> dict[str, Any] | None:
        self._type(resource_type)
        self.cloud.before_call(resource_type, "read", resource_id)
        obj = self.cloud.get(resource_id)
        if obj is None or obj["type"] != resource_type:
            return None
        live = dict(obj["arguments"])
        live.update(obj["attributes"])
        live["id"] = resource_id
        return live

    def update(self, resource_type: str, resource_id: str, arguments: dict[str, Any]) -> dict[str, Any]:
        sim = self._type(resource_type)
        self.cloud.before_call(resource_type, "update", resource_id)
        obj = self.cloud.get(resource_id)
        if obj is None:
            raise ResourceNotFoundError(f"object {resource_id} does not exist")
        attributes = dict(obj["attributes"])
        if sim.schema_.update_computed:
            fresh = self._attributes(sim, resource_id, arguments)
            for name in sim.schema_.update_computed:
                if name in fresh:
                    attributes[name] = fresh[name]
        self.cloud.replace_arguments(resource_id, arguments, attributes)
        logger.debug("Simulated update %s %s", resource_type, resource_id)
        return attributes

    def delete(self, resource_type: str, resource_id: str) -> None:
        self._type(resource_type)
        self.cloud.before_call(resource_type, "delete", resource_id)
        self.cloud.delete(resource_id)
        logger.debug("Simulated delete %s %s", resource_type, resource_id)

    def query(self, resource_type: str, arguments: dict[str, Any]) -> dict[str, Any]:
        sim = self._type(resource_type)
        if sim.query is None:
            raise ProviderError(f"{resource_type} is not a data source")
        self.cloud.before_call(resource_type, "query")
        return sim.query(arguments, self.cloud, self.config)

    def _attributes(self, sim: SimulatedType, resource_id: str, arguments: dict[str, Any]) -> dict[str, Any]:
        if sim.attributes is None:
            return {}
        return sim.attributes(resource_id, arguments, self.config)
