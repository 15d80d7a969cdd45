"""Diff/Plan Engine — desired configuration vs. stored state.

For each node in dependency order the planner resolves the desired
arguments, compares them with the (optionally refreshed) state record and
picks an action. Values that cannot be known before apply (ids of objects
still to be created, attributes recomputed by an update) resolve to
``UNKNOWN``; a change with unknown inputs is marked ``deferred`` and is
re-diffed by the executor once its dependencies have completed.

Steps are then derived from the changes and ordered with the dependency
resolver:

- a producer's create/update/read precedes its consumers';
- a consumer's delete precedes its producer's delete (stored dependencies);
- a producer kept alive by create-before-destroy, or removed from the
  configuration, is deleted only after every consumer has been re-pointed;
- the delete of a create-before-destroy original is deferred to the end.

Planning never mutates the State Store or the provider.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, Sequence
from typing import Any

from strataform.core.expressions import Reference, resolve, traverse
from strataform.core.graph import ResourceGraph
from strataform.core.hasher import compute_config_digest
from strataform.core.resolver import DependencyResolver, topological_order
from strataform.core.state_store import StateStore
from strataform.errors import StateConflictError, ValidationError
from strataform.models.document import (
    Document,
    ResourceBlock,
    ResourceMode,
    base_address,
    deposed_address,
)
from strataform.models.plan import (
    ActionKind,
    Plan,
    PlanMetadata,
    PlanStep,
    ResourceChange,
    StepOperation,
)
from strataform.models.state import StateRecord
from strataform.models.values import UNKNOWN, contains_unknown
from strataform.providers.base import ResourceSchema
from strataform.providers.registry import ProviderRegistry

logger = logging.getLogger(__name__)

IGNORE_ALL = "all"


# ---------------------------------------------------------------------------
# Diff helpers (shared with the executor)
# ---------------------------------------------------------------------------


def changed_arguments(
    before: Mapping[str, Any], after: Mapping[str, Any], ignore: Sequence[str] = ()
) -> list[str]:
    """Top-level argument names whose values differ; unknown always differs."""
    if IGNORE_ALL in ignore:
        return []
    names = sorted(set(before) | set(after))
    return [
        name
        for name in names
        if name not in ignore
        and (contains_unknown(after.get(name)) or before.get(name) != after.get(name))
    ]


def apply_ignore_changes(
    desired: dict[str, Any], before: Mapping[str, Any] | None, ignore: Sequence[str]
) -> dict[str, Any]:
    """Keep stored values for ignored arguments."""
    if before is None or not ignore:
        return desired
    if IGNORE_ALL in ignore:
        return dict(before)
    result = dict(desired)
    for name in ignore:
        if name in before:
            result[name] = before[name]
        else:
            result.pop(name, None)
    return result


def classify(
    schema: ResourceSchema,
    before: Mapping[str, Any] | None,
    desired: dict[str, Any],
    ignore: Sequence[str] = (),
) -> tuple[ActionKind, list[str], list[str]]:
    """Return ``(action, changed, replace_paths)`` for a managed resource."""
    if before is None:
        return ActionKind.CREATE, sorted(desired), []
    changed = changed_arguments(before, desired, ignore)
    if not changed:
        return ActionKind.NOOP, [], []
    replace_paths = [name for name in changed if schema.is_force_new(name)]
    if replace_paths:
        return ActionKind.REPLACE, changed, replace_paths
    return ActionKind.UPDATE, changed, []


def refresh_record(
    record: StateRecord, live: Mapping[str, Any], schema: ResourceSchema
) -> tuple[StateRecord, list[str]]:
    """Fold a provider read-back into *record*; return it with drifted names.

    A read-back merges arguments with exported attributes, so an exported
    name only counts as an argument when the record already holds it.
    """
    arguments = {
        name: live[name]
        for name in schema.arguments
        if name in live and (name in record.arguments or name not in schema.exported)
    }
    attributes = {name: live[name] for name in schema.exported if name in live}
    drift = changed_arguments(record.arguments, arguments)
    refreshed = record.model_copy(update={"arguments": arguments, "attributes": attributes})
    return refreshed, drift


def _destroys_first(change: ResourceChange) -> bool:
    return change.action == ActionKind.REPLACE and not change.create_before_destroy


def known_attribute(schema: ResourceSchema, name: Any) -> bool:
    return name == "id" or name in schema.arguments or name in schema.exported


def select(
    values: Any, ref: Reference, schema: ResourceSchema | None, consumer: str
) -> Any:
    """Walk a reference's attribute path into a node's values.

    A declared but unset attribute resolves to ``None``; anything else
    missing is a ``ValidationError``.
    """
    try:
        return traverse(values, ref.path)
    except KeyError:
        if schema is not None and len(ref.path) == 1 and known_attribute(schema, ref.path[0]):
            return None
        raise ValidationError(
            f"unsupported attribute in ${{{ref.expression}}}", address=consumer
        ) from None


def variable_value(variables: Mapping[str, Any], ref: Reference, consumer: str) -> Any:
    name = ref.target.split(".", 1)[1]
    try:
        return traverse(variables[name], ref.path)
    except KeyError:
        raise ValidationError(
            f"invalid variable path in ${{{ref.expression}}}", address=consumer
        ) from None


def resolve_provider_configs(document: Document, variables: Mapping[str, Any]) -> dict[str, dict[str, Any]]:
    """Resolve provider block arguments; only variable references are allowed."""

    def _lookup_for(name: str) -> Callable[[Reference], Any]:
        def _lookup(ref: Reference) -> Any:
            if ref.kind != "var":
                raise ValidationError(
                    f"provider configuration may only reference variables, got ${{{ref.expression}}}",
                    address=f"provider.{name}",
                )
            return variable_value(variables, ref, f"provider.{name}")

        return _lookup

    return {
        name: resolve(block.arguments, _lookup_for(name))
        for name, block in document.providers.items()
    }


def config_digest(document: Document, variables: Mapping[str, Any]) -> str:
    return compute_config_digest(document.model_dump(mode="json", exclude={"sources"}), variables)


# ---------------------------------------------------------------------------
# Planner
# ---------------------------------------------------------------------------


class Planner:
    """Computes a ``Plan`` for a document against a State Store.

    Parameters
    ----------
    document:
        The parsed configuration.
    registry:
        Providers for every type in the document and in state.
    store:
        The State Store (read only).
    variables:
        Resolved variable values for this run.
    refresh:
        Read every managed object back through its provider before diffing.
    engine_version:
        Recorded in the plan metadata.
    """

    def __init__(
        self,
        document: Document,
        registry: ProviderRegistry,
        store: StateStore,
        *,
        variables: Mapping[str, Any] | None = None,
        refresh: bool = True,
        engine_version: str = "",
    ) -> None:
        self.document = document
        self._registry = registry
        self._store = store
        self._variables = dict(variables or {})
        self._refresh = refresh
        self._engine_version = engine_version
        self.graph = ResourceGraph(document)
        self._values: dict[str, Any] = {}
        self._schemas: dict[str, ResourceSchema] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def plan(self, *, destroy: bool = False) -> Plan:
        """Compute the plan.

        Raises
        ------
        CycleError, ResourceReferenceError, ValidationError, ProviderError
            Before anything is mutated.
        """
        order = DependencyResolver(self.graph).order()
        lineage, serial = self._store.lineage, self._store.serial
        records = {r.address: r for r in self._store.list_records()}
        missing: set[str] = set()
        drift: dict[str, list[str]] = {}
        if self._refresh:
            records, drift, missing = self.refresh(records)

        if destroy:
            changes = self._destroy_changes(records)
        else:
            changes = self._changes(order, records, drift, missing)

        steps = self._steps(changes, records, destroy=destroy)
        plan = Plan(
            metadata=PlanMetadata(
                destroy=destroy,
                refresh=self._refresh,
                state_lineage=lineage,
                state_serial=serial,
                config_digest=config_digest(self.document, self._variables),
                engine_version=self._engine_version,
            ),
            changes=changes,
            steps=steps,
            variables=self._variables,
            outputs={} if destroy else {n: o.value for n, o in self.document.outputs.items()},
            sensitive_outputs=sorted(n for n, o in self.document.outputs.items() if o.sensitive),
            providers=resolve_provider_configs(self.document, self._variables),
        )
        logger.info(
            "Plan: %s",
            ", ".join(f"{count} to {action}" for action, count in plan.summary().items() if count),
        )
        return plan

    def refresh(
        self, records: dict[str, StateRecord]
    ) -> tuple[dict[str, StateRecord], dict[str, list[str]], set[str]]:
        """Read managed objects back; return refreshed records, drift, missing."""
        refreshed: dict[str, StateRecord] = {}
        drift: dict[str, list[str]] = {}
        missing: set[str] = set()
        for address, record in records.items():
            if record.mode == ResourceMode.DATA:
                refreshed[address] = record
                continue
            kind = self._registry.kind(record.mode, record.resource_type, address=address)
            live = kind.provider.read(record.resource_type, record.resource_id)
            if live is None:
                logger.warning("%s (%s) no longer exists", address, record.resource_id)
                missing.add(address)
                refreshed[address] = record
                continue
            refreshed[address], changed = refresh_record(record, live, kind.schema_)
            if changed:
                logger.warning("%s drifted: %s", address, ", ".join(changed))
                drift[address] = changed
        return refreshed, drift, missing

    # ------------------------------------------------------------------
    # Changes
    # ------------------------------------------------------------------

    def _changes(
        self,
        order: list[str],
        records: dict[str, StateRecord],
        drift: dict[str, list[str]],
        missing: set[str],
    ) -> list[ResourceChange]:
        changes: list[ResourceChange] = []
        for address in order:
            block = self.graph.node(address)
            record = records.get(address)
            if block.mode == ResourceMode.DATA:
                changes.append(self._data_change(block, record))
            else:
                change = self._managed_change(
                    block, record, drift.get(address, []), gone=address in missing
                )
                if (
                    change.action == ActionKind.REPLACE
                    and change.create_before_destroy
                    and deposed_address(address) in records
                ):
                    raise StateConflictError(
                        "a deposed object from an earlier replacement is still pending "
                        "destruction; apply without force-new changes first",
                        address=address,
                    )
                changes.append(change)

        removed = [
            addr for addr in self._record_order(records, reverse=True)
            if addr not in self.graph and not records[addr].deposed
        ]
        for address in removed:
            changes.append(self._destroy_change(records[address], "not in configuration"))
        for address in sorted(a for a in records if records[a].deposed):
            changes.append(
                self._destroy_change(records[address], "deposed object from an earlier replacement")
            )
        return changes

    def _managed_change(
        self,
        block: ResourceBlock,
        record: StateRecord | None,
        drifted: list[str],
        *,
        gone: bool,
    ) -> ResourceChange:
        address = block.address
        kind = self._registry.kind(block.mode, block.type, address=address)
        schema = kind.schema_
        self._schemas[address] = schema
        ignore = list(block.lifecycle.ignore_changes)

        desired = resolve(block.arguments, self._lookup(address))
        before = None if record is None or gone else record.arguments
        desired = apply_ignore_changes(desired, before, ignore)
        action, changed, replace_paths = classify(schema, before, desired, ignore)
        deferred = contains_unknown(desired)

        if action == ActionKind.REPLACE and block.lifecycle.prevent_destroy:
            raise ValidationError(
                f"lifecycle.prevent_destroy forbids replacing this resource "
                f"(force-new change to {', '.join(replace_paths)})",
                address=address,
            )
        if action in (ActionKind.CREATE, ActionKind.UPDATE, ActionKind.REPLACE):
            problems = kind.provider.validate(block.type, desired)
            if problems:
                raise ValidationError("; ".join(problems), address=address)

        reason = ""
        if gone:
            reason = "object no longer exists; it will be re-created"
        elif replace_paths:
            reason = f"force-new change to {', '.join(replace_paths)}"

        values: dict[str, Any]
        if action in (ActionKind.CREATE, ActionKind.REPLACE):
            values = dict(desired)
            for name in [*schema.exported, "id"]:
                values[name] = UNKNOWN
        elif action == ActionKind.UPDATE:
            values = record.values()
            values.update(desired)
            for name in schema.update_computed:
                values[name] = UNKNOWN
        else:
            values = record.values()
        self._values[address] = values

        return ResourceChange(
            address=address,
            mode=block.mode,
            resource_type=block.type,
            provider=kind.provider.name,
            action=action,
            before=dict(record.arguments) if record is not None and not gone else None,
            after=desired,
            config=dict(block.arguments),
            changed=changed,
            replace_paths=replace_paths,
            drift=drifted,
            dependencies=self.graph.dependencies(address),
            ignore_changes=ignore,
            create_before_destroy=block.lifecycle.create_before_destroy,
            deferred=deferred and action != ActionKind.NOOP,
            resource_id=record.resource_id if record is not None and not gone else None,
            prior_version=record.version if record is not None else None,
            reason=reason,
        )

    def _data_change(self, block: ResourceBlock, record: StateRecord | None) -> ResourceChange:
        address = block.address
        kind = self._registry.kind(block.mode, block.type, address=address)
        self._schemas[address] = kind.schema_
        desired = resolve(block.arguments, self._lookup(address))

        common = {
            "address": address,
            "mode": ResourceMode.DATA,
            "resource_type": block.type,
            "provider": kind.provider.name,
            "before": dict(record.arguments) if record is not None else None,
            "after": desired,
            "config": dict(block.arguments),
            "dependencies": self.graph.dependencies(address),
            "resource_id": record.resource_id if record is not None else None,
            "prior_version": record.version if record is not None else None,
        }

        problems = kind.provider.validate(block.type, desired)
        if problems:
            raise ValidationError("; ".join(problems), address=address)
        if contains_unknown(desired):
            values = dict(desired)
            for name in [*kind.schema_.exported, "id"]:
                values[name] = UNKNOWN
            self._values[address] = values
            return ResourceChange(
                action=ActionKind.READ,
                deferred=True,
                reason="arguments known only after apply",
                **common,
            )

        result = kind.provider.query(block.type, desired)
        values = dict(desired)
        values.update(result)
        self._values[address] = values

        attributes = {k: v for k, v in result.items() if k != "id"}
        unchanged = (
            record is not None
            and record.arguments == desired
            and record.attributes == attributes
            and record.resource_id == str(result.get("id", ""))
        )
        return ResourceChange(
            action=ActionKind.NOOP if unchanged else ActionKind.READ,
            changed=[] if unchanged else changed_arguments(record.attributes if record else {}, attributes),
            **common,
        )

    def _destroy_change(self, record: StateRecord, reason: str) -> ResourceChange:
        block = self.document.get(base_address(record.address))
        if (
            block is not None
            and not record.deposed
            and block.lifecycle.prevent_destroy
            and record.mode == ResourceMode.MANAGED
        ):
            raise ValidationError(
                "lifecycle.prevent_destroy forbids destroying this resource",
                address=record.address,
            )
        return ResourceChange(
            address=record.address,
            mode=record.mode,
            resource_type=record.resource_type,
            provider=record.provider,
            action=ActionKind.DESTROY,
            before=dict(record.arguments),
            after=None,
            dependencies=list(record.dependencies),
            resource_id=record.resource_id,
            prior_version=record.version,
            reason=reason,
        )

    def _destroy_changes(self, records: dict[str, StateRecord]) -> list[ResourceChange]:
        return [
            self._destroy_change(records[address], "destroy requested")
            for address in self._record_order(records, reverse=True)
        ]

    @staticmethod
    def _record_order(records: dict[str, StateRecord], *, reverse: bool) -> list[str]:
        """Records ordered by their stored dependencies."""
        nodes = sorted(records)
        prereqs = {
            addr: [d for d in records[addr].dependencies if d in records]
            for addr in nodes
        }
        order = topological_order(nodes, prereqs)
        return list(reversed(order)) if reverse else order

    def _lookup(self, consumer: str) -> Callable[[Reference], Any]:
        def _resolve(ref: Reference) -> Any:
            if ref.kind == "var":
                return variable_value(self._variables, ref, consumer)
            return select(self._values[ref.target], ref, self._schemas.get(ref.target), consumer)

        return _resolve

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _steps(
        self,
        changes: list[ResourceChange],
        records: dict[str, StateRecord],
        *,
        destroy: bool,
    ) -> list[PlanStep]:
        keys: list[str] = []
        meta: dict[str, tuple[str, str, StepOperation, bool]] = {}
        apply_step: dict[str, str] = {}  # address -> create/update/read step key
        delete_step: dict[str, str] = {}  # state identity -> delete step key
        prereqs: dict[str, list[str]] = {}
        late: list[str] = []

        def add(key: str, address: str, change: str, op: StepOperation, deferred_destroy: bool = False) -> str:
            keys.append(key)
            meta[key] = (address, change, op, deferred_destroy)
            prereqs[key] = []
            return key

        by_address = {c.address: c for c in changes}
        for change in changes:
            addr = change.address
            if change.action == ActionKind.CREATE:
                apply_step[addr] = add(f"create:{addr}", addr, addr, StepOperation.CREATE)
            elif change.action == ActionKind.UPDATE:
                apply_step[addr] = add(f"update:{addr}", addr, addr, StepOperation.UPDATE)
            elif change.action == ActionKind.READ:
                apply_step[addr] = add(f"read:{addr}", addr, addr, StepOperation.READ)
            elif change.action == ActionKind.DESTROY:
                delete_step[addr] = add(f"delete:{addr}", addr, addr, StepOperation.DELETE)
            elif change.action == ActionKind.REPLACE and change.create_before_destroy:
                create = add(f"create:{addr}", addr, addr, StepOperation.CREATE)
                deposed = deposed_address(addr)
                delete = add(f"delete:{deposed}", deposed, addr, StepOperation.DELETE, True)
                prereqs[delete].append(create)
                apply_step[addr] = create
                delete_step[deposed] = delete
                late.append(delete)
            elif change.action == ActionKind.REPLACE:
                delete = add(f"delete:{addr}", addr, addr, StepOperation.DELETE)
                create = add(f"create:{addr}", addr, addr, StepOperation.CREATE)
                prereqs[create].append(delete)
                apply_step[addr] = create
                delete_step[addr] = delete

        # Producers before consumers.
        for change in changes:
            step = apply_step.get(change.address)
            if step is None or change.action == ActionKind.DESTROY:
                continue
            for producer in self.graph.dependencies(change.address):
                if producer in apply_step:
                    prereqs[step].append(apply_step[producer])
                    # A deferred destroy-then-create re-diffs before deleting,
                    # unless the producer must itself be deleted first.
                    if (
                        change.action == ActionKind.REPLACE
                        and change.deferred
                        and not change.create_before_destroy
                        and not _destroys_first(by_address[producer])
                    ):
                        prereqs[delete_step[change.address]].append(apply_step[producer])

        # Consumers' deletes before producers' deletes.
        stored_deps = {}
        for identity in delete_step:
            record = records.get(identity) or records.get(base_address(identity))
            if record is not None:
                stored_deps[identity] = record.dependencies
        for identity, step in delete_step.items():
            producer = base_address(identity)
            for other, deps in stored_deps.items():
                if other != identity and producer in deps and base_address(other) != producer:
                    prereqs[step].append(delete_step[other])

        # Re-point consumers before a kept-alive or removed producer goes away.
        if not destroy:
            for identity, step in delete_step.items():
                producer = base_address(identity)
                producer_change = by_address.get(producer)
                if producer_change is None:
                    continue
                cbd = identity != producer
                removed = producer_change.action == ActionKind.DESTROY
                if not (cbd or removed):
                    continue
                consumers = set(self.graph.dependents(producer)) if producer in self.graph else set()
                consumers.update(
                    addr for addr, record in records.items()
                    if producer in record.dependencies and not record.deposed
                )
                for consumer in consumers:
                    if consumer in apply_step:
                        prereqs[step].append(apply_step[consumer])

        order = topological_order(keys, prereqs, deferred=late)
        position = {key: i for i, key in enumerate(order)}
        steps = []
        for key in order:
            address, change_address, op, deferred_destroy = meta[key]
            steps.append(
                PlanStep(
                    key=key,
                    address=address,
                    change_address=change_address,
                    operation=op,
                    depends_on=sorted(set(prereqs[key]), key=position.__getitem__),
                    deferred_destroy=deferred_destroy,
                )
            )
        return steps
