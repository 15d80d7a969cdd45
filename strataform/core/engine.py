"""Engine — wires the parser, graph, planner, executor and State Store together.

The ``Engine`` is what the CLI (and library users) talk to. It owns one
``StateStore`` and builds the ``ProviderRegistry`` on demand from the
configuration's provider blocks and the providers named in state.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Mapping, Sequence
from pathlib import Path
from typing import Any

from strataform import __version__
from strataform.config import StrataSettings
from strataform.config import settings as default_settings
from strataform.core.executor import ApplyExecutor, evaluate_outputs, refresh_state
from strataform.core.graph import ResourceGraph
from strataform.core.parser import load_path
from strataform.core.planner import Planner, resolve_provider_configs
from strataform.core.resolver import DependencyResolver
from strataform.core.state_store import StateStore
from strataform.core.variables import resolve_variables
from strataform.errors import StateConflictError, StrataformError
from strataform.models.apply import ApplySummary, StepOutcome
from strataform.models.config import RunOptions
from strataform.models.document import Document
from strataform.models.plan import Plan
from strataform.models.state import StateDocument, StateRecord
from strataform.providers.registry import ProviderFactory, ProviderRegistry, build_registry

logger = logging.getLogger(__name__)


class Engine:
    """Reconciliation engine for one configuration and one state.

    Parameters
    ----------
    config_path:
        Configuration file or directory. May be omitted when only state
        operations or saved plans are used.
    document:
        An already parsed document; takes precedence over *config_path*.
    variables:
        Explicit variable assignments (highest precedence).
    var_files:
        Variable files, later files overriding earlier ones.
    state_path:
        SQLite state file; defaults to ``settings.state_path``.
    settings:
        Process settings; defaults to the module singleton.
    factories:
        Provider factories; defaults to built-ins plus entry points.
    environ:
        Environment used for ``STRATAFORM_VAR_*`` lookups.
    """

    def __init__(
        self,
        config_path: Path | None = None,
        *,
        document: Document | None = None,
        variables: Mapping[str, Any] | None = None,
        var_files: Sequence[Path] = (),
        state_path: Path | None = None,
        settings: StrataSettings | None = None,
        factories: Mapping[str, ProviderFactory] | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self.settings = settings or default_settings
        self._config_path = Path(config_path) if config_path is not None else None
        self._document = document
        self._provided = dict(variables or {})
        self._var_files = list(var_files)
        self._factories = factories
        self._environ = environ
        self._variables: dict[str, Any] | None = None
        self.store = StateStore(state_path or self.settings.state_path)

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    @property
    def document(self) -> Document:
        if self._document is None:
            if self._config_path is None:
                raise StrataformError("no configuration given")
            self._document = load_path(self._config_path)
        return self._document

    @property
    def variables(self) -> dict[str, Any]:
        if self._variables is None:
            self._variables = resolve_variables(
                self.document, self._provided, var_files=self._var_files, environ=self._environ
            )
        return self._variables

    def registry(self, *, configs: Mapping[str, dict[str, Any]] | None = None, names: Sequence[str] = ()) -> ProviderRegistry:
        """Build providers for the document (if any), state and *names*."""
        wanted = list(names)
        if configs is None:
            configs = {}
            if self._document is not None or self._config_path is not None:
                configs = resolve_provider_configs(self.document, self.variables)
                wanted.extend(self.document.provider_names)
        wanted.extend(configs)
        wanted.extend(r.provider for r in self.store.list_records())
        return build_registry(wanted, configs, self.settings, factories=self._factories)

    def validate(self) -> ResourceGraph:
        """Parse, resolve variables, check references, cycles and types.

        Raises the first problem found; nothing is mutated.
        """
        graph = ResourceGraph(self.document)
        DependencyResolver(graph).order()
        registry = self.registry()
        for block in self.document.resources:
            registry.kind(block.mode, block.type, address=block.address)
        logger.info("Configuration valid: %d node(s)", len(graph))
        return graph

    # ------------------------------------------------------------------
    # Plan / apply
    # ------------------------------------------------------------------

    def plan(
        self,
        *,
        destroy: bool = False,
        refresh: bool | None = None,
        registry: ProviderRegistry | None = None,
    ) -> Plan:
        refresh = self.settings.refresh if refresh is None else refresh
        planner = Planner(
            self.document,
            registry or self.registry(),
            self.store,
            variables=self.variables,
            refresh=refresh,
            engine_version=__version__,
        )
        return planner.plan(destroy=destroy)

    def check_plan(self, plan: Plan) -> None:
        """Refuse a saved plan computed against a different state."""
        meta = plan.metadata
        if meta.state_lineage != self.store.lineage:
            raise StateConflictError(
                f"plan was created for state lineage {meta.state_lineage}, "
                f"but the state has lineage {self.store.lineage}"
            )
        if meta.state_serial != self.store.serial:
            raise StateConflictError(
                f"plan is stale: state serial is now {self.store.serial}, "
                f"plan was created at serial {meta.state_serial}"
            )

    def apply(
        self,
        plan: Plan | None = None,
        *,
        options: RunOptions | None = None,
        cancel_event: threading.Event | None = None,
        on_outcome: Callable[[StepOutcome], None] | None = None,
    ) -> ApplySummary:
        """Apply *plan* (or a fresh plan) while holding the state lock."""
        options = options or RunOptions.from_settings(self.settings)
        with self.store.locked(options.lock_owner):
            if plan is None:
                registry = self.registry()
                plan = self.plan(refresh=options.refresh, registry=registry)
            else:
                self.check_plan(plan)
                registry = self.registry(
                    configs=plan.providers, names=[c.provider for c in plan.changes]
                )
            executor = ApplyExecutor(
                plan,
                registry,
                self.store,
                options=options,
                cancel_event=cancel_event,
                on_outcome=on_outcome,
            )
            return executor.apply()

    def destroy(
        self,
        *,
        options: RunOptions | None = None,
        cancel_event: threading.Event | None = None,
        on_outcome: Callable[[StepOutcome], None] | None = None,
    ) -> ApplySummary:
        options = options or RunOptions.from_settings(self.settings)
        plan = self.plan(destroy=True, refresh=options.refresh)
        return self.apply(plan, options=options, cancel_event=cancel_event, on_outcome=on_outcome)

    def refresh(self, *, owner: str | None = None) -> dict[str, str]:
        """Persist a provider read-back of every managed object."""
        with self.store.locked(owner or self.settings.lock_owner):
            registry = self.registry()
            report = refresh_state(self.store, registry)
            if self._document is not None or self._config_path is not None:
                self.store.set_outputs(
                    evaluate_outputs(
                        {n: o.value for n, o in self.document.outputs.items()},
                        self.store,
                        registry,
                        self.variables,
                    )
                )
        return report

    # ------------------------------------------------------------------
    # State access
    # ------------------------------------------------------------------

    def outputs(self) -> dict[str, Any]:
        return self.store.get_outputs()

    def state_records(self) -> list[StateRecord]:
        return self.store.list_records()

    def state_document(self) -> StateDocument:
        return self.store.export_document()

    def state_rm(self, address: str) -> bool:
        """Forget a record without touching the real object."""
        with self.store.locked(self.settings.lock_owner):
            removed = self.store.delete(address)
        if removed:
            logger.warning("Removed %s from state; the object itself was not destroyed", address)
        return removed

    def state_push(self, document: StateDocument) -> int:
        """Overwrite the state with *document*, as written by ``state pull``."""
        with self.store.locked(self.settings.lock_owner):
            return self.store.import_document(document)
