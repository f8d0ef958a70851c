"""
The planner diffs the desired graph against the last applied state and produces a change set: one entry per
resource, with the action needed to converge it (Create, Update, Replace, Delete or NoOp).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from stackpilot.constants import CREATE_BEFORE_DELETE, DELETE_BEFORE_CREATE
from stackpilot.engine.graph import Graph, topological_order
from stackpilot.engine.policy import (
    ChangeAction,
    classify_change,
    may_delete_before_create,
    replacement_strategy,
)
from stackpilot.engine.resolver import ResolutionContext, resolve_properties
from stackpilot.engine.state import StateRecord, StateStore

LOG = logging.getLogger(__name__)

__all__ = [
    "ChangeAction",
    "ChangeSet",
    "ChangeSetEntry",
    "PlannedStep",
    "cleanup_order",
    "plan",
]


@dataclass
class ChangeSetEntry:
    resource_id: str
    resource_type: str
    action: ChangeAction
    # last applied state, None for creates
    before: Optional[StateRecord]
    # desired resolved properties, may contain UNKNOWN values. Empty for deletes
    after: dict[str, Any]
    rank: int
    dependencies: set[str] = field(default_factory=set)
    changed_properties: list[str] = field(default_factory=list)
    replacement_properties: list[str] = field(default_factory=list)
    replacement_strategy: Optional[str] = None

    @property
    def is_change(self) -> bool:
        return self.action is not ChangeAction.NO_OP


@dataclass(frozen=True)
class PlannedStep:
    """A single provider operation, replacements are expanded into a create and a delete step."""

    resource_id: str
    action: ChangeAction
    replacement: bool = False

    def __str__(self):
        suffix = " (replacement)" if self.replacement else ""
        return f"{self.action.value} {self.resource_id}{suffix}"


@dataclass
class ChangeSet:
    entries: list[ChangeSetEntry]
    graph: Graph
    # the context the plan was resolved against, copied for every apply pass
    context: ResolutionContext
    # ids of the resources to delete, and of replaced resources whose old version is deleted last, in the
    # order they are removed (dependents first)
    cleanup: list[str] = field(default_factory=list)
    # ids of removed resources depending on a resource that may be replaced by deleting it first. They are
    # deleted before any replacement, dependents first
    early_deletes: list[str] = field(default_factory=list)

    @property
    def changes(self) -> list[ChangeSetEntry]:
        return [entry for entry in self.entries if entry.is_change]

    @property
    def has_changes(self) -> bool:
        return any(entry.is_change for entry in self.entries)

    def get(self, resource_id: str) -> Optional[ChangeSetEntry]:
        for entry in self.entries:
            if entry.resource_id == resource_id:
                return entry
        return None

    def steps(self) -> list[PlannedStep]:
        """
        Returns the provider operations in the order they are performed by a sequential apply. Removed
        resources depending on a resource replaced with delete-before-create are deleted first. Creates and
        updates follow in dependency order, then the deletes of the other removed resources and of the old
        versions of resources replaced with create-before-delete.
        """
        result = [
            PlannedStep(resource_id, ChangeAction.DELETE) for resource_id in self.early_deletes
        ]
        for entry in sorted(self.entries, key=lambda e: e.rank):
            match entry.action:
                case ChangeAction.CREATE | ChangeAction.UPDATE:
                    result.append(PlannedStep(entry.resource_id, entry.action))
                case ChangeAction.REPLACE if entry.replacement_strategy == DELETE_BEFORE_CREATE:
                    result.append(PlannedStep(entry.resource_id, ChangeAction.DELETE, True))
                    result.append(PlannedStep(entry.resource_id, ChangeAction.CREATE, True))
                case ChangeAction.REPLACE:
                    result.append(PlannedStep(entry.resource_id, ChangeAction.CREATE, True))
        for resource_id in self.cleanup:
            entry = self.get(resource_id)
            result.append(
                PlannedStep(resource_id, ChangeAction.DELETE, entry.action is ChangeAction.REPLACE)
            )
        return result

    def summary(self) -> str:
        lines = []
        counts = {action: 0 for action in ChangeAction}
        for entry in sorted(self.entries, key=lambda e: e.rank):
            counts[entry.action] += 1
            line = f"{entry.action.value:<8} {entry.resource_id} ({entry.resource_type})"
            if entry.action is ChangeAction.REPLACE:
                line += f" [{', '.join(entry.replacement_properties)}] {entry.replacement_strategy}"
            elif entry.action is ChangeAction.UPDATE:
                line += f" [{', '.join(entry.changed_properties)}]"
            lines.append(line)
        lines.append(
            ", ".join(f"{count} {action.value.lower()}" for action, count in counts.items() if count)
            or "no resources"
        )
        return "\n".join(lines)


def plan(graph: Graph, state: StateStore, context: ResolutionContext) -> ChangeSet:
    """
    Computes the change set that converges the applied state to the desired graph.

    Nodes are resolved in topological order. Upstream resources without changes contribute their recorded
    physical ids and attributes, upstream resources that are created or replaced contribute ``UNKNOWN``
    placeholders, which mark every property depending on them as changed.

    :param graph: the desired graph
    :param state: the store holding the last applied state
    :param context: parameters, mappings and pseudo parameters to resolve against
    :return: the change set, with one entry per resource of the graph or the state
    :raises ValidationError: if a property cannot be resolved, before any provider call is made
    """
    records = state.list()
    planning_context = context.copy()
    entries: list[ChangeSetEntry] = []

    for rank, node in enumerate(graph.ordered_nodes()):
        after = resolve_properties(node.properties, planning_context, node.logical_id)
        record = records.get(node.logical_id)
        entry = ChangeSetEntry(
            resource_id=node.logical_id,
            resource_type=node.type,
            action=ChangeAction.CREATE,
            before=record,
            after=after,
            rank=rank,
            dependencies=set(node.dependencies),
        )
        if record is None:
            planning_context.set_unknown(node.logical_id)
        else:
            diff = classify_change(node.type, record.properties, after, before_type=record.type)
            entry.action = diff.action
            entry.changed_properties = diff.changed_properties
            entry.replacement_properties = diff.replacement_properties
            if diff.action is ChangeAction.REPLACE:
                entry.replacement_strategy = replacement_strategy(node.type, record.properties, after)
                planning_context.set_unknown(node.logical_id)
            else:
                planning_context.set_resource(node.logical_id, record.physical_id, record.attributes)
        entries.append(entry)

    removed = [resource_id for resource_id in records if resource_id not in graph]
    early_deletes = _early_deletes(entries, removed, records)
    superseded = [
        entry.resource_id
        for entry in entries
        if entry.action is ChangeAction.REPLACE
        and entry.replacement_strategy == CREATE_BEFORE_DELETE
    ]
    cleanup = cleanup_order(
        [resource_id for resource_id in removed if resource_id not in early_deletes] + superseded,
        records,
    )

    entries = (
        [_delete_entry(records[resource_id]) for resource_id in early_deletes]
        + entries
        + [_delete_entry(records[resource_id]) for resource_id in cleanup if resource_id in removed]
    )
    for rank, entry in enumerate(entries):
        entry.rank = rank

    change_set = ChangeSet(
        entries=entries,
        graph=graph,
        context=context,
        cleanup=cleanup,
        early_deletes=early_deletes,
    )
    LOG.debug("Planned changes:\n%s", change_set.summary())
    return change_set


def _delete_entry(record: StateRecord) -> ChangeSetEntry:
    return ChangeSetEntry(
        resource_id=record.resource_id,
        resource_type=record.type,
        action=ChangeAction.DELETE,
        before=record,
        after={},
        rank=0,
        dependencies=set(record.dependencies),
    )


def _early_deletes(
    entries: list[ChangeSetEntry], removed: list[str], records: dict[str, StateRecord]
) -> list[str]:
    """
    Returns the removed resources that depend, directly or through other removed resources, on a resource
    whose replacement may delete it first. These have to be gone before that delete, dependents first.
    """
    targets = {
        entry.resource_id
        for entry in entries
        if entry.action is ChangeAction.REPLACE
        and may_delete_before_create(entry.resource_type, entry.before.properties, entry.after)
    }
    if not targets:
        return []

    early: set[str] = set()
    while True:
        found = {
            resource_id
            for resource_id in removed
            if resource_id not in early
            and not targets.isdisjoint(records[resource_id].dependencies)
        }
        if not found:
            break
        early.update(found)
        targets.update(found)
    return cleanup_order(list(early), records)


def cleanup_order(resource_ids: list[str], records: dict[str, StateRecord]) -> list[str]:
    """
    Orders the given resources for deletion, dependents before their dependencies, based on the dependencies
    recorded when the resources were applied.
    """
    ordered = topological_order(
        {resource_id: records[resource_id].dependencies for resource_id in sorted(resource_ids)}
    )
    return list(reversed(ordered))
