"""Resource graph — nodes from declared blocks, edges from references.

Every resource and data source becomes a node; every reference expression
(and every explicit ``depends_on`` entry) becomes an edge from the consuming
node to the producing node. Dangling references fail with
``ResourceReferenceError``. Building the graph is a pure transformation.
"""

from __future__ import annotations

from collections import deque

from strataform.core.expressions import Reference, find_references, parse_reference
from strataform.errors import ParseError, ResourceReferenceError
from strataform.models.document import Document, ResourceBlock


class ResourceGraph:
    """Reference graph over the blocks of a ``Document``.

    Nodes are kept in declaration order, which the resolver uses as its
    stable tie-break.
    """

    def __init__(self, document: Document) -> None:
        self.document = document
        self._nodes: dict[str, ResourceBlock] = {
            block.address: block for block in document.resources
        }
        # Forward edges: address -> producers it references
        self._dependencies: dict[str, list[str]] = {addr: [] for addr in self._nodes}
        # Reverse edges: address -> consumers that reference it
        self._dependents: dict[str, list[str]] = {addr: [] for addr in self._nodes}
        self._references: dict[str, list[Reference]] = {}
        self._output_references: dict[str, list[Reference]] = {}

        for address, block in self._nodes.items():
            refs = self._collect(address, block)
            self._references[address] = refs
            for ref in refs:
                if ref.kind == "var":
                    continue
                if ref.target not in self._dependencies[address]:
                    self._dependencies[address].append(ref.target)
                    self._dependents[ref.target].append(address)

        for name, output in document.outputs.items():
            refs = find_references(output.value)
            for ref in refs:
                self._check_target(ref, f"output.{name}")
            self._output_references[name] = refs

    def _collect(self, address: str, block: ResourceBlock) -> list[Reference]:
        try:
            refs = find_references(block.arguments)
        except ParseError as exc:
            raise ParseError(exc.message, address=address) from exc
        for ref in refs:
            self._check_target(ref, address)

        for entry in block.depends_on:
            try:
                ref = parse_reference(entry)
            except ParseError as exc:
                raise ParseError(exc.message, address=address) from exc
            if ref.kind == "var" or ref.path:
                raise ParseError(
                    f"depends_on entries must name a resource, got {entry!r}",
                    address=address,
                )
            self._check_target(ref, address)
            refs.append(ref)
        return refs

    def _check_target(self, ref: Reference, consumer: str) -> None:
        if ref.kind == "var":
            name = ref.target.split(".", 1)[1]
            if name not in self.document.variables:
                raise ResourceReferenceError(ref.expression, address=consumer)
        elif ref.target not in self._nodes:
            raise ResourceReferenceError(ref.expression, address=consumer)

    # ------------------------------------------------------------------
    # Query methods
    # ------------------------------------------------------------------

    @property
    def addresses(self) -> list[str]:
        """All node addresses in declaration order."""
        return list(self._nodes)

    def __contains__(self, address: object) -> bool:
        return address in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def node(self, address: str) -> ResourceBlock:
        return self._nodes[address]

    def index(self, address: str) -> int:
        """Declaration position of a node."""
        return self._nodes[address].index

    def references(self, address: str) -> list[Reference]:
        """Every reference made by a node, including ``var`` references."""
        return list(self._references.get(address, []))

    def output_references(self, name: str) -> list[Reference]:
        return list(self._output_references.get(name, []))

    def dependencies(self, address: str) -> list[str]:
        """Direct producers referenced by a node."""
        return list(self._dependencies.get(address, []))

    def dependents(self, address: str) -> list[str]:
        """Direct consumers of a node."""
        return list(self._dependents.get(address, []))

    def transitive_dependents(self, address: str) -> list[str]:
        """All transitive consumers of a node (BFS)."""
        return self._walk(address, self._dependents)

    def ancestors(self, address: str) -> list[str]:
        """All transitive producers of a node (BFS)."""
        return self._walk(address, self._dependencies)

    @staticmethod
    def _walk(start: str, edges: dict[str, list[str]]) -> list[str]:
        result = []
        queue = deque(edges.get(start, []))
        visited: set[str] = set()
        while queue:
            node = queue.popleft()
            if node in visited:
                continue
            visited.add(node)
            result.append(node)
            queue.extend(edges.get(node, []))
        return result

    def edges(self) -> list[tuple[str, str]]:
        """All (consumer, producer) pairs."""
        return [
            (consumer, producer)
            for consumer, producers in self._dependencies.items()
            for producer in producers
        ]

    def prerequisites(self) -> dict[str, list[str]]:
        """Mapping usable by ``topological_order``."""
        return {addr: list(deps) for addr, deps in self._dependencies.items()}
