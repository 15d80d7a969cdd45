"""Apply Executor — runs plan steps against providers and records the results.

Steps whose prerequisites have all succeeded are dispatched to a bounded
thread pool in plan order. Each step resolves its arguments against the
current state, calls the provider, and only then writes the State Store.

Failure handling mirrors a prerequisite graph's cascade block: a failed
step's dependents are reported ``blocked`` and never dispatched, while
independent branches keep going. Nothing is retried.

Every provider call is bounded by ``RunOptions.timeout_seconds``, counted
from dispatch; a dispatched step always starts on a free thread. A step
that overruns is reported failed with ``ProviderTimeoutError`` and gives up
its ``parallelism`` slot. Its thread keeps running and, if the call
succeeds, records the object in state so the next plan reconciles against
it.

After the last step, timed-out calls get one more timeout to finish. The
pool is then shut down without waiting, so a call still running past that
drain writes state after the apply has returned and released the state
lock. Such writes are compare-and-swap writes of its own record only.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable, Mapping
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from datetime import datetime, timezone
from typing import Any

from strataform.core.expressions import Reference, resolve
from strataform.core.planner import (
    apply_ignore_changes,
    classify,
    refresh_record,
    select,
    variable_value,
)
from strataform.core.state_store import StateStore
from strataform.errors import (
    ProviderTimeoutError,
    ResourceNotFoundError,
    StateConflictError,
    StrataformError,
    ValidationError,
)
from strataform.models.apply import ApplySummary, StepOutcome, StepStatus
from strataform.models.config import RunOptions
from strataform.models.document import ResourceMode
from strataform.models.plan import ActionKind, Plan, PlanStep, ResourceChange, StepOperation
from strataform.models.state import StateRecord
from strataform.models.values import contains_unknown
from strataform.providers.registry import ProviderRegistry, ResourceKind

logger = logging.getLogger(__name__)

_DONE = (StepStatus.SUCCEEDED, StepStatus.SKIPPED)


def state_lookup(
    store: StateStore,
    registry: ProviderRegistry,
    variables: Mapping[str, Any],
    consumer: str,
) -> Callable[[Reference], Any]:
    """Resolve references against the State Store as it is right now."""

    def _resolve(ref: Reference) -> Any:
        if ref.kind == "var":
            return variable_value(variables, ref, consumer)
        record = store.get(ref.target)
        if record is None:
            raise StateConflictError(
                f"{ref.target} has no state; cannot resolve ${{{ref.expression}}}",
                address=consumer,
            )
        schema = registry.kind(record.mode, record.resource_type).schema_
        return select(record.values(), ref, schema, consumer)

    return _resolve


def evaluate_outputs(
    outputs: Mapping[str, Any],
    store: StateStore,
    registry: ProviderRegistry,
    variables: Mapping[str, Any],
) -> dict[str, Any]:
    """Evaluate output expressions against state; unresolvable ones are left out."""
    values: dict[str, Any] = {}
    for name, expression in outputs.items():
        try:
            values[name] = resolve(
                expression, state_lookup(store, registry, variables, f"output.{name}")
            )
        except StateConflictError as exc:
            logger.warning("Output %s not available: %s", name, exc.message)
    return values


def refresh_state(store: StateStore, registry: ProviderRegistry) -> dict[str, str]:
    """Read every managed object back and persist what the provider reports.

    Objects that no longer exist are removed from state. Returns
    ``address -> "drifted" | "missing" | "unchanged"``.
    """
    report: dict[str, str] = {}
    for record in store.list_records():
        if record.mode == ResourceMode.DATA:
            continue
        kind = registry.kind(record.mode, record.resource_type, address=record.address)
        live = kind.provider.read(record.resource_type, record.resource_id)
        if live is None:
            store.delete(record.address, expected_version=record.version)
            report[record.address] = "missing"
            logger.warning("%s no longer exists; removed from state", record.address)
            continue
        refreshed, drift = refresh_record(record, live, kind.schema_)
        if drift or refreshed.attributes != record.attributes:
            store.put(record.address, refreshed, expected_version=record.version)
        report[record.address] = "drifted" if drift else "unchanged"
    return report


class ApplyExecutor:
    """Executes a ``Plan``.

    Parameters
    ----------
    plan:
        The plan to apply.
    registry:
        Providers for every change in the plan.
    store:
        The State Store; written after each confirmed provider call.
    options:
        Parallelism and per-call timeout.
    cancel_event:
        When set, no further steps are dispatched.
    on_outcome:
        Called with each ``StepOutcome`` as soon as it is known.
    """

    def __init__(
        self,
        plan: Plan,
        registry: ProviderRegistry,
        store: StateStore,
        *,
        options: RunOptions | None = None,
        cancel_event: threading.Event | None = None,
        on_outcome: Callable[[StepOutcome], None] | None = None,
    ) -> None:
        self.plan = plan
        self._registry = registry
        self._store = store
        self._options = options or RunOptions()
        self._cancel = cancel_event or threading.Event()
        self._on_outcome = on_outcome
        self._changes = {c.address: c for c in plan.changes}
        self._apply_keys = {
            s.address: s.key for s in plan.steps if s.operation != StepOperation.DELETE
        }

    def cancel(self) -> None:
        """Stop dispatching new steps; running calls finish and are recorded."""
        self._cancel.set()

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def apply(self) -> ApplySummary:
        started_at = datetime.now(timezone.utc)
        steps = {s.key: s for s in self.plan.steps}
        outcomes: dict[str, StepOutcome] = {}
        pending = list(self.plan.step_keys)
        running: dict[Future[StepOutcome], tuple[str, float]] = {}
        late: dict[Future[StepOutcome], str] = {}
        timeout = self._options.timeout_seconds
        cancelled = False

        # A timed-out call keeps its thread but gives up its slot, so the pool
        # may need one thread per step while only parallelism calls are awaited.
        pool = ThreadPoolExecutor(max_workers=max(1, len(pending)), thread_name_prefix="strataform-apply")
        try:
            while pending or running:
                if self._cancel.is_set() and pending:
                    cancelled = True
                    for key in pending:
                        self._record(outcomes, self._skeleton(steps[key], StepStatus.CANCELLED, note="run cancelled"))
                    pending = []

                self._settle(late, outcomes, [f for f in late if f.done()])
                progressed = True
                while progressed:
                    progressed = False
                    for key in list(pending):
                        step = steps[key]
                        if any(dep not in outcomes for dep in step.depends_on):
                            continue
                        upstream = next(
                            (outcomes[d] for d in step.depends_on if outcomes[d].status not in _DONE),
                            None,
                        )
                        if upstream is not None:
                            pending.remove(key)
                            progressed = True
                            self._record(outcomes, self._unreachable(step, upstream))
                            continue
                        if len(running) >= self._options.parallelism:
                            break
                        pending.remove(key)
                        logger.info("Starting %s", key)
                        future = pool.submit(self._run_step, step)
                        running[future] = (key, time.monotonic() + timeout)

                if not running:
                    if pending:
                        # Unreachable with a well-formed plan.
                        for key in pending:
                            self._record(outcomes, self._skeleton(steps[key], StepStatus.BLOCKED, note="prerequisites never ran"))
                        pending = []
                    break

                next_deadline = min(deadline for _, deadline in running.values())
                done, _ = wait(
                    [*running, *late],
                    timeout=max(0.0, next_deadline - time.monotonic()),
                    return_when=FIRST_COMPLETED,
                )
                for future in done:
                    if future in running:
                        key, _ = running.pop(future)
                        self._record(outcomes, future.result())

                now = time.monotonic()
                for future, (key, deadline) in list(running.items()):
                    if now >= deadline and not future.done():
                        running.pop(future)
                        late[future] = key
                        step = steps[key]
                        logger.error("%s timed out after %.1fs", key, timeout)
                        self._record(
                            outcomes,
                            self._skeleton(
                                step,
                                StepStatus.FAILED,
                                error=str(ProviderTimeoutError(
                                    f"provider call exceeded {timeout:g}s", address=step.address
                                )),
                                error_type=ProviderTimeoutError.__name__,
                                duration_seconds=timeout,
                            ),
                        )

            if late:
                self._drain(late, outcomes, timeout)
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

        outputs: dict[str, Any] = {}
        if not self.plan.metadata.destroy:
            outputs = evaluate_outputs(self.plan.outputs, self._store, self._registry, self.plan.variables)
        self._store.set_outputs(outputs)

        summary = ApplySummary(
            outcomes=[outcomes[key] for key in self.plan.step_keys],
            outputs=outputs,
            cancelled=cancelled or self._cancel.is_set(),
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
        )
        logger.info(
            "Apply finished: %s",
            ", ".join(f"{n} {status}" for status, n in summary.counts().items() if n),
        )
        return summary

    def _drain(self, late: dict[Future[StepOutcome], str], outcomes: dict[str, StepOutcome], timeout: float) -> None:
        """Give timed-out calls one more timeout to finish and be recorded."""
        done, not_done = wait(list(late), timeout=timeout)
        self._settle(late, outcomes, done)
        for future in not_done:
            logger.error(
                "%s still running after the drain; it may write state after the lock is released",
                late[future],
            )

    @staticmethod
    def _settle(
        late: dict[Future[StepOutcome], str], outcomes: dict[str, StepOutcome], finished: Iterable[Future[StepOutcome]]
    ) -> None:
        """Fold the results of finished timed-out calls into their outcomes."""
        for future in finished:
            key = late.pop(future)
            result = future.result()
            if result.status == StepStatus.SUCCEEDED:
                logger.warning("%s completed after its timeout; result recorded in state", key)
                outcomes[key] = outcomes[key].model_copy(
                    update={
                        "resource_id": result.resource_id,
                        "note": "completed after the timeout; result recorded in state",
                    }
                )

    def _record(self, outcomes: dict[str, StepOutcome], outcome: StepOutcome) -> None:
        outcomes[outcome.key] = outcome
        if outcome.status == StepStatus.FAILED:
            logger.error("%s failed: %s", outcome.key, outcome.error)
        elif outcome.status == StepStatus.BLOCKED:
            logger.warning("%s blocked by %s", outcome.key, outcome.blocked_by)
        if self._on_outcome is not None:
            self._on_outcome(outcome)

    @staticmethod
    def _skeleton(step: PlanStep, status: StepStatus, **fields: Any) -> StepOutcome:
        return StepOutcome(
            key=step.key, address=step.address, operation=step.operation, status=status, **fields
        )

    def _unreachable(self, step: PlanStep, upstream: StepOutcome) -> StepOutcome:
        if upstream.status == StepStatus.CANCELLED:
            return self._skeleton(step, StepStatus.CANCELLED, note=f"{upstream.key} was cancelled")
        root = upstream.blocked_by if upstream.status == StepStatus.BLOCKED else upstream.key
        return self._skeleton(step, StepStatus.BLOCKED, blocked_by=root)

    # ------------------------------------------------------------------
    # Step execution (worker threads)
    # ------------------------------------------------------------------

    def _run_step(self, step: PlanStep) -> StepOutcome:
        start = time.monotonic()
        try:
            status, resource_id, note = self._execute(step)
        except StrataformError as exc:
            return self._skeleton(
                step,
                StepStatus.FAILED,
                error=str(exc) if exc.address else f"{step.address}: {exc}",
                error_type=type(exc).__name__,
                duration_seconds=time.monotonic() - start,
            )
        except Exception as exc:
            logger.exception("Unexpected error in %s", step.key)
            return self._skeleton(
                step,
                StepStatus.FAILED,
                error=f"{step.address}: {exc}",
                error_type=type(exc).__name__,
                duration_seconds=time.monotonic() - start,
            )
        logger.info("%s %s", step.key, status.value)
        return self._skeleton(
            step,
            status,
            resource_id=resource_id,
            note=note,
            duration_seconds=time.monotonic() - start,
        )

    def _execute(self, step: PlanStep) -> tuple[StepStatus, str | None, str]:
        change = self._changes[step.change_address]
        kind = self._registry.kind(change.mode, change.resource_type, address=change.address)
        if step.operation == StepOperation.DELETE:
            return self._delete(step, change, kind)
        if step.operation == StepOperation.READ:
            return self._read(step, change, kind)
        if step.operation == StepOperation.UPDATE:
            return self._update(step, change, kind)
        return self._create(step, change, kind)

    def _desired(self, change: ResourceChange, kind: ResourceKind, current: StateRecord | None) -> dict[str, Any]:
        """Arguments for this step, re-resolved against state when deferred."""
        if change.deferred:
            arguments = resolve(
                change.config or {},
                state_lookup(self._store, self._registry, self.plan.variables, change.address),
            )
            arguments = apply_ignore_changes(
                arguments, current.arguments if current else None, change.ignore_changes
            )
        else:
            arguments = dict(change.after or {})
        if contains_unknown(arguments):
            raise ValidationError("arguments are still unknown at apply time", address=change.address)
        if change.deferred:
            problems = kind.provider.validate(change.resource_type, arguments)
            if problems:
                raise ValidationError("; ".join(problems), address=change.address)
        return arguments

    def _new_record(
        self,
        change: ResourceChange,
        kind: ResourceKind,
        resource_id: str,
        arguments: dict[str, Any],
        attributes: dict[str, Any],
    ) -> StateRecord:
        return StateRecord(
            address=change.address,
            mode=change.mode,
            resource_type=change.resource_type,
            provider=kind.provider.name,
            resource_id=resource_id,
            arguments=arguments,
            attributes=attributes,
            dependencies=list(change.dependencies),
            create_before_destroy=change.create_before_destroy,
            schema_version=kind.schema_.version,
        )

    def _create(self, step: PlanStep, change: ResourceChange, kind: ResourceKind) -> tuple[StepStatus, str | None, str]:
        provider, rtype = kind.provider, change.resource_type
        current = self._store.get(step.address)
        arguments = self._desired(change, kind, current)

        if current is None:
            rid, attributes = provider.create(rtype, arguments)
            self._store.put(
                step.address, self._new_record(change, kind, rid, arguments, attributes), expected_version=0
            )
            return StepStatus.SUCCEEDED, rid, ""

        planned_basis = current.version == change.prior_version
        if planned_basis and change.resource_id is None:
            # The object vanished outside Strataform; re-create it.
            rid, attributes = provider.create(rtype, arguments)
            self._store.put(
                step.address,
                self._new_record(change, kind, rid, arguments, attributes),
                expected_version=current.version,
            )
            return StepStatus.SUCCEEDED, rid, "re-created"

        action, changed, _ = classify(kind.schema_, current.arguments, arguments, change.ignore_changes)
        if (
            planned_basis
            and change.action == ActionKind.REPLACE
            and change.create_before_destroy
            and action == ActionKind.REPLACE
        ):
            rid, attributes = provider.create(rtype, arguments)
            self._store.put_replacing(
                step.address,
                self._new_record(change, kind, rid, arguments, attributes),
                deposed_identity=f"{step.address}#deposed",
                expected_version=current.version,
            )
            return StepStatus.SUCCEEDED, rid, f"replaces {current.resource_id}"

        # A live record exists that the plan did not expect: reconcile.
        if action == ActionKind.NOOP:
            return StepStatus.SKIPPED, current.resource_id, "already up to date"
        if action == ActionKind.UPDATE:
            attributes = provider.update(rtype, current.resource_id, arguments)
            self._store.put(
                step.address,
                current.model_copy(
                    update={
                        "arguments": arguments,
                        "attributes": attributes,
                        "dependencies": list(change.dependencies),
                    }
                ),
                expected_version=current.version,
            )
            return StepStatus.SUCCEEDED, current.resource_id, f"updated existing object ({', '.join(changed)})"
        raise StateConflictError(
            f"an object with conflicting force-new arguments already exists ({current.resource_id})",
            address=step.address,
        )

    def _update(self, step: PlanStep, change: ResourceChange, kind: ResourceKind) -> tuple[StepStatus, str | None, str]:
        current = self._store.get(step.address)
        if current is None:
            raise StateConflictError("state record disappeared before update", address=step.address)
        arguments = self._desired(change, kind, current)
        if change.deferred:
            action, _, replace_paths = classify(
                kind.schema_, current.arguments, arguments, change.ignore_changes
            )
            if action == ActionKind.NOOP:
                return StepStatus.SKIPPED, current.resource_id, "no change once dependencies were applied"
            if action == ActionKind.REPLACE:
                raise StateConflictError(
                    f"force-new change to {', '.join(replace_paths)} appeared after planning; re-plan",
                    address=step.address,
                )
        attributes = kind.provider.update(change.resource_type, current.resource_id, arguments)
        self._store.put(
            step.address,
            current.model_copy(
                update={
                    "arguments": arguments,
                    "attributes": attributes,
                    "dependencies": list(change.dependencies),
                    "schema_version": kind.schema_.version,
                }
            ),
            expected_version=change.prior_version,
        )
        return StepStatus.SUCCEEDED, current.resource_id, ""

    def _producers_precede(self, step: PlanStep, change: ResourceChange) -> bool:
        """Whether every producer applied in this plan runs before *step*."""
        waiting = set(step.depends_on)
        return all(
            self._apply_keys[address] in waiting
            for address in change.dependencies
            if address in self._apply_keys
        )

    def _delete(self, step: PlanStep, change: ResourceChange, kind: ResourceKind) -> tuple[StepStatus, str | None, str]:
        current = self._store.get(step.address)
        if current is None:
            return StepStatus.SKIPPED, None, "no longer in state"

        if (
            change.action == ActionKind.REPLACE
            and not step.deferred_destroy
            and change.deferred
            and self._producers_precede(step, change)
        ):
            arguments = self._desired(change, kind, current)
            action, _, _ = classify(kind.schema_, current.arguments, arguments, change.ignore_changes)
            if action != ActionKind.REPLACE:
                return StepStatus.SKIPPED, current.resource_id, "replacement no longer needed"

        expected = current.version if step.deferred_destroy else change.prior_version
        if current.mode == ResourceMode.DATA:
            self._store.delete(step.address, expected_version=expected)
            return StepStatus.SUCCEEDED, current.resource_id, "removed from state"

        note = ""
        try:
            kind.provider.delete(current.resource_type, current.resource_id)
        except ResourceNotFoundError:
            note = "object was already gone"
            logger.info("%s (%s) was already gone", step.address, current.resource_id)
        self._store.delete(step.address, expected_version=expected)
        return StepStatus.SUCCEEDED, current.resource_id, note

    def _read(self, step: PlanStep, change: ResourceChange, kind: ResourceKind) -> tuple[StepStatus, str | None, str]:
        current = self._store.get(step.address)
        arguments = self._desired(change, kind, current)
        result = kind.provider.query(change.resource_type, arguments)
        rid = str(result.get("id", ""))
        attributes = {k: v for k, v in result.items() if k != "id"}
        self._store.put(
            step.address,
            self._new_record(change, kind, rid, arguments, attributes),
            expected_version=current.version if current is not None else 0,
        )
        return StepStatus.SUCCEEDED, rid, ""

