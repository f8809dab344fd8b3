"""Resource graph for declarative reconciliation.

Builds a validated dependency graph from a Configuration: one node per
resource, one edge per producer -> consumer relationship implied by
attribute references or declared with depends_on. The graph is kept as an
explicit adjacency structure and provides deterministic orderings for
create (producers first) and delete (consumers first).
"""

import heapq
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional

from manifest import Configuration, parse_configuration
from providers.registry import ProviderRegistry
from reconciler.errors import GraphError, ReferenceError
from values import Expression, references

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResourceNode:
    """A resource in the graph.

    Attributes:
        id: '<type>.<name>', unique within the graph
        type: Provider kind
        name: Resource name
        attributes: Attribute name -> expression
        depends_on: Explicit dependencies from configuration
    """
    id: str
    type: str
    name: str
    attributes: dict = field(default_factory=dict, hash=False, compare=False)
    depends_on: tuple = ()

    def __repr__(self) -> str:
        return f"ResourceNode({self.id})"


def topological_sort(ids: Iterable[str], dependencies: dict[str, set[str]]) -> list[str]:
    """Kahn's algorithm with lexical tie-break.

    Args:
        ids: Node identifiers
        dependencies: id -> producer ids (producers outside ids are ignored)

    Raises:
        GraphError: If the dependencies contain a cycle
    """
    id_set = set(ids)
    indegree = {i: 0 for i in id_set}
    consumers: dict[str, list[str]] = {i: [] for i in id_set}
    for node_id in id_set:
        for producer in dependencies.get(node_id, ()):
            if producer in id_set:
                indegree[node_id] += 1
                consumers[producer].append(node_id)

    ready = [i for i, deg in indegree.items() if deg == 0]
    heapq.heapify(ready)
    ordered: list[str] = []
    while ready:
        node_id = heapq.heappop(ready)
        ordered.append(node_id)
        for consumer in consumers[node_id]:
            indegree[consumer] -= 1
            if indegree[consumer] == 0:
                heapq.heappush(ready, consumer)

    if len(ordered) != len(id_set):
        remaining = {i for i in id_set if indegree[i] > 0}
        raise GraphError(find_cycle(remaining, dependencies) or sorted(remaining))
    return ordered


def find_cycle(ids: Iterable[str], dependencies: dict[str, set[str]]) -> Optional[list[str]]:
    """Depth-first search for a cycle. Returns its members in order, or None."""
    id_set = set(ids)
    visited: set[str] = set()
    stack: list[str] = []
    on_stack: set[str] = set()

    def _visit(node_id: str) -> Optional[list[str]]:
        visited.add(node_id)
        stack.append(node_id)
        on_stack.add(node_id)
        for producer in sorted(dependencies.get(node_id, ())):
            if producer not in id_set:
                continue
            if producer in on_stack:
                cycle = stack[stack.index(producer):]
                return list(reversed(cycle))
            if producer not in visited:
                found = _visit(producer)
                if found:
                    return found
        stack.pop()
        on_stack.discard(node_id)
        return None

    for node_id in sorted(id_set):
        if node_id not in visited:
            found = _visit(node_id)
            if found:
                return found
    return None


class ResourceGraph:
    """Validated dependency graph built from a Configuration.

    Provides ordered traversal for lifecycle operations:
    - topological_order(): producers before consumers
    - reverse_topological_order(): consumers before producers
    """

    def __init__(self, configuration: Configuration, registry: ProviderRegistry):
        """Build and validate the graph.

        Raises:
            ReferenceError: Unknown resource type, node or attribute
            ParseError: Attributes that violate a provider schema
            GraphError: If references form a cycle
        """
        self.configuration = configuration
        self.registry = registry
        self._nodes: dict[str, ResourceNode] = {}
        self._dependencies: dict[str, set[str]] = {}
        self._dependents: dict[str, set[str]] = {}
        self.outputs: dict[str, Expression] = dict(configuration.outputs)
        self._build(configuration)
        self._order = topological_sort(self._nodes, self._dependencies)
        logger.debug(f"Built graph with {len(self._nodes)} node(s): {', '.join(self._order)}")

    def _build(self, configuration: Configuration) -> None:
        for spec in configuration.resources:
            provider = self.registry.get(spec.type, spec.id)
            provider.schema.validate(spec.id, spec.attributes)
            self._nodes[spec.id] = ResourceNode(
                id=spec.id,
                type=spec.type,
                name=spec.name,
                attributes=dict(spec.attributes),
                depends_on=tuple(spec.depends_on),
            )
            self._dependencies[spec.id] = set()
            self._dependents[spec.id] = set()

        for node in self._nodes.values():
            for ref in references(node.attributes):
                self._check_reference(ref.target, ref.attribute, node.id)
                self._add_edge(ref.target, node.id)
            for target in node.depends_on:
                self._check_reference(target, None, node.id)
                self._add_edge(target, node.id)

        for out_name, expr in self.outputs.items():
            for ref in references(expr):
                self._check_reference(ref.target, ref.attribute, f'output.{out_name}')

    def _check_reference(self, target: str, attribute: Optional[str], source: str) -> None:
        node = self._nodes.get(target)
        if node is None:
            raise ReferenceError(f"Reference to undeclared resource '{target}'", source)
        if attribute is None:
            return
        schema = self.registry.get(node.type, node.id).schema
        if not schema.has_attribute(attribute):
            raise ReferenceError(
                f"Resource '{target}' ({node.type}) has no attribute '{attribute}'", source)

    def _add_edge(self, producer: str, consumer: str) -> None:
        if producer == consumer:
            raise GraphError([consumer])
        self._dependencies[consumer].add(producer)
        self._dependents[producer].add(consumer)

    @property
    def nodes(self) -> dict[str, ResourceNode]:
        return dict(self._nodes)

    def __contains__(self, node_id: str) -> bool:
        return node_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def get_node(self, node_id: str) -> ResourceNode:
        """Get a node by id.

        Raises:
            KeyError: If node id not found
        """
        return self._nodes[node_id]

    def dependencies(self, node_id: str) -> set[str]:
        """Producers the node reads from."""
        return set(self._dependencies[node_id])

    def dependents(self, node_id: str) -> set[str]:
        """Consumers that read from the node."""
        return set(self._dependents[node_id])

    def edges(self) -> list[tuple[str, str]]:
        """All (producer, consumer) edges, sorted."""
        return sorted((p, c) for c, producers in self._dependencies.items() for p in producers)

    def topological_order(self) -> list[str]:
        """Node ids with producers before consumers; ties broken lexically."""
        return list(self._order)

    def reverse_topological_order(self) -> list[str]:
        """Exact reverse of topological_order()."""
        return list(reversed(self._order))


def build_graph(text: str, registry: ProviderRegistry,
                source_path: Optional[Path] = None) -> ResourceGraph:
    """Parse configuration text and build a validated graph.

    Raises:
        ParseError, ReferenceError, GraphError
    """
    return ResourceGraph(parse_configuration(text, source_path=source_path), registry)
