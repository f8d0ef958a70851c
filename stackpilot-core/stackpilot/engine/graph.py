from __future__ import annotations

import heapq
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Optional

from stackpilot.engine.errors import CyclicDependency, DanglingReference, ValidationError
from stackpilot.engine.expressions import Expression, attribute_refs, parameter_refs
from stackpilot.engine.parameters import Parameter

LOG = logging.getLogger(__name__)


@dataclass
class ResourceDefinition:
    """A resource as declared in the template, before the graph is built."""

    logical_id: str
    type: str
    properties: dict[str, Expression] = field(default_factory=dict)
    depends_on: list[str] = field(default_factory=list)


@dataclass
class Output:
    name: str
    value: Expression
    description: Optional[str] = None


@dataclass
class ResourceNode:
    logical_id: str
    type: str
    properties: dict[str, Expression]
    depends_on: list[str] = field(default_factory=list)
    # logical ids of all resources this resource references or explicitly depends on
    dependencies: set[str] = field(default_factory=set)
    # assigned by the provider once the resource has been applied
    physical_id: Optional[str] = None

    def __hash__(self):
        return hash(self.logical_id)


@dataclass
class Graph:
    nodes: dict[str, ResourceNode]
    parameters: dict[str, Parameter] = field(default_factory=dict)
    mappings: dict[str, dict[str, dict[str, Any]]] = field(default_factory=dict)
    outputs: list[Output] = field(default_factory=list)
    # stable topological order, dependencies always come before their dependents
    order: list[str] = field(default_factory=list)

    def __contains__(self, logical_id: str) -> bool:
        return logical_id in self.nodes

    def __len__(self) -> int:
        return len(self.nodes)

    def get(self, logical_id: str) -> Optional[ResourceNode]:
        return self.nodes.get(logical_id)

    def ordered_nodes(self) -> list[ResourceNode]:
        return [self.nodes[logical_id] for logical_id in self.order]


def build_graph(
    raw_nodes: Iterable[ResourceDefinition],
    raw_parameters: dict[str, Parameter] = None,
    mappings: dict[str, dict[str, dict[str, Any]]] = None,
    outputs: list[Output] = None,
) -> Graph:
    """
    Builds the dependency graph of the given resources.

    Every attribute reference (``Ref``/``Fn::GetAtt``) to another resource and every explicit ``DependsOn``
    entry becomes an edge from the referencing to the referenced resource.

    :param raw_nodes: the resource definitions, in declaration order
    :param raw_parameters: the declared parameters, by name
    :param mappings: the mapping tables of the template
    :param outputs: the declared outputs
    :return: the graph including its stable topological order
    :raises DanglingReference: if a reference target is neither a declared resource nor a parameter
    :raises CyclicDependency: if the references form a cycle
    """
    raw_parameters = raw_parameters or {}
    nodes: dict[str, ResourceNode] = {}
    for definition in raw_nodes:
        if definition.logical_id in nodes:
            raise ValidationError(f"Duplicate resource id {definition.logical_id}")
        nodes[definition.logical_id] = ResourceNode(
            logical_id=definition.logical_id,
            type=definition.type,
            properties=dict(definition.properties),
            depends_on=list(definition.depends_on),
        )

    for node in nodes.values():
        for expression in node.properties.values():
            for reference in attribute_refs(expression):
                if reference.resource_id not in nodes:
                    raise DanglingReference(reference.resource_id, node.logical_id)
                node.dependencies.add(reference.resource_id)
            for reference in parameter_refs(expression):
                if reference.name not in raw_parameters:
                    raise DanglingReference(reference.name, node.logical_id)
        for target in node.depends_on:
            if target not in nodes:
                raise DanglingReference(target, node.logical_id)
            node.dependencies.add(target)

    for output in outputs or []:
        for reference in attribute_refs(output.value):
            if reference.resource_id not in nodes:
                raise DanglingReference(reference.resource_id, f"Outputs.{output.name}")
        for reference in parameter_refs(output.value):
            if reference.name not in raw_parameters:
                raise DanglingReference(reference.name, f"Outputs.{output.name}")

    check_for_cycles(nodes)
    order = topological_order({logical_id: node.dependencies for logical_id, node in nodes.items()})
    LOG.debug("Resource order: %s", order)

    return Graph(
        nodes=nodes,
        parameters=dict(raw_parameters),
        mappings=mappings or {},
        outputs=list(outputs or []),
        order=order,
    )


class _Color(Enum):
    UNVISITED = 0
    IN_PROGRESS = 1
    DONE = 2


def check_for_cycles(nodes: dict[str, ResourceNode]) -> None:
    """
    Depth-first search with explicit node coloring, driven by an explicit stack so that large graphs do not
    hit the recursion limit. Raises ``CyclicDependency`` naming the nodes of the first cycle found.
    """
    color = {logical_id: _Color.UNVISITED for logical_id in nodes}
    position = {logical_id: i for i, logical_id in enumerate(nodes)}

    def sorted_dependencies(logical_id: str):
        return iter(sorted(nodes[logical_id].dependencies, key=position.__getitem__))

    for start in nodes:
        if color[start] is not _Color.UNVISITED:
            continue
        # each stack entry is a node and an iterator over its remaining dependencies
        path: list[str] = [start]
        stack = [(start, sorted_dependencies(start))]
        color[start] = _Color.IN_PROGRESS
        while stack:
            current, dependencies = stack[-1]
            for dependency in dependencies:
                if color[dependency] is _Color.IN_PROGRESS:
                    cycle = path[path.index(dependency) :] + [dependency]
                    raise CyclicDependency(cycle)
                if color[dependency] is _Color.UNVISITED:
                    color[dependency] = _Color.IN_PROGRESS
                    path.append(dependency)
                    stack.append((dependency, sorted_dependencies(dependency)))
                    break
            else:
                color[current] = _Color.DONE
                path.pop()
                stack.pop()


def topological_order(dependencies: dict[str, Iterable[str]]) -> list[str]:
    """
    Kahn's algorithm, picking the earliest declared resource among all ready ones. Dependencies on ids that
    are not part of the given mapping are ignored.
    """
    index = {logical_id: i for i, logical_id in enumerate(dependencies)}
    edges = {
        logical_id: {target for target in targets if target in index}
        for logical_id, targets in dependencies.items()
    }
    remaining = {logical_id: len(targets) for logical_id, targets in edges.items()}
    dependents: dict[str, list[str]] = {logical_id: [] for logical_id in edges}
    for logical_id, targets in edges.items():
        for target in targets:
            dependents[target].append(logical_id)

    ready = [(index[logical_id], logical_id) for logical_id, count in remaining.items() if not count]
    heapq.heapify(ready)
    order = []
    while ready:
        _, logical_id = heapq.heappop(ready)
        order.append(logical_id)
        for dependent in dependents[logical_id]:
            remaining[dependent] -= 1
            if not remaining[dependent]:
                heapq.heappush(ready, (index[dependent], dependent))

    if len(order) != len(edges):
        # only reachable if check_for_cycles was skipped
        done = set(order)
        unresolved = [logical_id for logical_id in edges if logical_id not in done]
        raise CyclicDependency(unresolved)
    return order
