"""
The executor applies a change set: independent resources are applied concurrently on a bounded worker pool,
each resource as soon as all of its dependencies have succeeded. Transient provider errors are retried with
exponential backoff. On the first unrecoverable failure (or when the apply is aborted) no new work is
scheduled, the in-flight calls are awaited, and every change made in this pass is compensated in reverse
order.
"""

from __future__ import annotations

import heapq
import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from stackpilot import config
from stackpilot.constants import DELETE_BEFORE_CREATE
from stackpilot.engine.errors import ProviderError
from stackpilot.engine.graph import Graph
from stackpilot.engine.planner import ChangeSet, ChangeSetEntry, cleanup_order
from stackpilot.engine.policy import ChangeAction, classify_change, replacement_strategy
from stackpilot.engine.provider import ResourceProvider, invoke_provider, is_transient
from stackpilot.engine.resolver import ResolutionContext, resolve_properties
from stackpilot.engine.state import StateRecord, StateStore
from stackpilot.utils.backoff import ExponentialBackoff, retry_with_backoff

LOG = logging.getLogger(__name__)

# receives one record per provider call, with the resource context as extra attributes
TRACE_LOG = logging.getLogger("stackpilot.engine.trace")


class ResourceStatus(Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


class ApplyStatus(Enum):
    APPLYING = "APPLYING"
    COMPLETED = "COMPLETED"
    # the apply failed and rollback is disabled
    FAILED = "FAILED"
    ROLLING_BACK = "ROLLING_BACK"
    ROLLED_BACK = "ROLLED_BACK"
    ROLLBACK_FAILED = "ROLLBACK_FAILED"


@dataclass
class AppliedChange:
    """
    A single successful provider mutation. ``previous`` and ``current`` are the state records of the resource
    before and after the mutation (None if the resource had no record).
    """

    resource_id: str
    action: ChangeAction
    previous: Optional[StateRecord]
    current: Optional[StateRecord]
    # the old version of a replaced resource, deleted after the apply succeeded
    superseded: bool = False


@dataclass
class ApplyFailure:
    resource_id: str
    # the action attempted on the resource
    action: ChangeAction
    error: Exception


@dataclass
class RollbackFailure:
    resource_id: str
    # the compensating action that failed
    action: str
    error: Exception


@dataclass
class ApplyResult:
    status: ApplyStatus
    succeeded: set[str] = field(default_factory=set)
    failed: Optional[ApplyFailure] = None
    rolled_back: set[str] = field(default_factory=set)
    rollback_failures: list[RollbackFailure] = field(default_factory=list)
    statuses: dict[str, ResourceStatus] = field(default_factory=dict)
    # the action actually performed per resource, after re-classification with the real upstream values
    actions: dict[str, ChangeAction] = field(default_factory=dict)
    aborted: bool = False

    @property
    def ok(self) -> bool:
        return self.status is ApplyStatus.COMPLETED


class _Stop(Exception):
    """Raised by the scheduler once a phase was stopped because of a failure or an abort."""


class Executor:
    """
    Applies change sets against a provider, committing the state of every resource to the given store as
    soon as the resource succeeded.
    """

    def __init__(
        self,
        state_store: StateStore,
        max_workers: int = None,
        sleep: Callable[[float], None] = time.sleep,
        disable_rollback: bool = None,
    ):
        self.state_store = state_store
        self.max_workers = max_workers or config.APPLY_MAX_WORKERS
        self.sleep = sleep
        self.disable_rollback = (
            config.DISABLE_ROLLBACK if disable_rollback is None else disable_rollback
        )
        self._stop_event = threading.Event()
        self._mutex = threading.RLock()
        self._applied: list[AppliedChange] = []
        self._graph: Optional[Graph] = None

    def abort(self) -> None:
        """Stops scheduling new work. In-flight calls finish, then the changes of this pass are reverted."""
        LOG.info("Abort requested, no further resources will be scheduled")
        self._stop_event.set()

    @property
    def aborted(self) -> bool:
        return self._stop_event.is_set()

    def apply(self, change_set: ChangeSet, provider: ResourceProvider) -> ApplyResult:
        """
        Applies the given change set. An executor can be reused, an earlier ``abort()`` does not carry over
        into the next apply.

        :param change_set: the planned changes
        :param provider: the provider performing the changes
        :return: the result, including the rollback outcome if the apply failed
        """
        self._stop_event.clear()
        self._applied = []
        self._graph = change_set.graph
        context = change_set.context.copy()
        result = ApplyResult(
            status=ApplyStatus.APPLYING,
            statuses={entry.resource_id: ResourceStatus.PENDING for entry in change_set.entries},
        )
        # removed resources depending on a resource that may be deleted first by its replacement
        early = {
            resource_id: change_set.get(resource_id).before
            for resource_id in change_set.early_deletes
        }
        entries = [
            entry
            for entry in change_set.entries
            if entry.action is not ChangeAction.DELETE or entry.resource_id in early
        ]
        # old versions of resources replaced with create-before-delete, by resource id
        superseded: dict[str, StateRecord] = {}

        def apply_entry(entry: ChangeSetEntry):
            if entry.action is ChangeAction.DELETE:
                self._cleanup_resource(change_set, entry.resource_id, provider, result, superseded)
            else:
                self._apply_entry(change_set, entry, context, provider, result, superseded)

        def attempted_action(resource_id: str) -> ChangeAction:
            return result.actions.get(resource_id) or change_set.get(resource_id).action

        try:
            self._run_phase(
                items={entry.resource_id: entry for entry in entries},
                waits_for=_dependents_first(
                    early,
                    waits_for={
                        entry.resource_id: set(entry.dependencies)
                        for entry in entries
                        if entry.resource_id not in early
                    },
                ),
                rank={entry.resource_id: entry.rank for entry in entries},
                task=apply_entry,
                result=result,
                action_of=attempted_action,
            )
            # removed resources, and old versions of replaced resources (the actions may differ from the
            # plan, once the upstream values are known)
            records = {
                entry.resource_id: entry.before
                for entry in change_set.entries
                if entry.action is ChangeAction.DELETE and entry.resource_id not in early
            }
            records.update(superseded)
            cleanup = cleanup_order(list(records), records)
            self._run_phase(
                items={resource_id: resource_id for resource_id in cleanup},
                waits_for=_dependents_first(records),
                rank={resource_id: i for i, resource_id in enumerate(cleanup)},
                task=lambda resource_id: self._cleanup_resource(
                    change_set, resource_id, provider, result, superseded
                ),
                result=result,
                action_of=attempted_action,
            )
        except _Stop:
            result.aborted = self.aborted and result.failed is None
            if self.disable_rollback:
                LOG.warning("Rollback is disabled, keeping the partially applied resources")
                result.status = ApplyStatus.FAILED
                return result
            self._rollback(provider, result)
            return result

        result.status = ApplyStatus.COMPLETED
        LOG.info("Applied %s resource(s)", len(result.succeeded))
        return result

    # scheduling

    def _run_phase(
        self,
        items: dict[str, Any],
        waits_for: dict[str, set[str]],
        rank: dict[str, int],
        task: Callable[[Any], None],
        result: ApplyResult,
        action_of: Callable[[str], ChangeAction],
    ):
        """
        Runs ``task`` for every item, at most ``max_workers`` at a time. An item becomes ready as soon as all
        items it waits for have finished, ready items are started in the order of their rank.
        """
        if not items:
            return
        remaining = {key: {dep for dep in waits_for[key] if dep in items} for key in items}
        waiting_on_me: dict[str, set[str]] = {key: set() for key in items}
        for key, dependencies in remaining.items():
            for dependency in dependencies:
                waiting_on_me[dependency].add(key)

        ready = [(rank[key], key) for key, dependencies in remaining.items() if not dependencies]
        heapq.heapify(ready)
        in_flight: dict[Future, str] = {}
        stopped = False

        with ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="sp-apply"
        ) as pool:
            while ready or in_flight:
                if self._stop_event.is_set() or result.failed:
                    stopped = True
                while ready and len(in_flight) < self.max_workers and not stopped:
                    _, key = heapq.heappop(ready)
                    result.statuses[key] = ResourceStatus.IN_PROGRESS
                    in_flight[pool.submit(task, items[key])] = key
                if not in_flight:
                    break

                done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
                for future in done:
                    key = in_flight.pop(future)
                    try:
                        future.result()
                    except Exception as e:
                        result.statuses[key] = ResourceStatus.FAILED
                        if result.failed is None:
                            result.failed = ApplyFailure(key, action_of(key), e)
                            LOG.error(
                                "%s of resource %s failed: %s", result.failed.action.value, key, e
                            )
                        else:
                            LOG.error("Resource %s failed while stopping: %s", key, e)
                        stopped = True
                        continue
                    result.statuses[key] = ResourceStatus.SUCCEEDED
                    result.succeeded.add(key)
                    for dependent in waiting_on_me[key]:
                        remaining[dependent].discard(key)
                        if not remaining[dependent]:
                            heapq.heappush(ready, (rank[dependent], dependent))

        if stopped or self._stop_event.is_set():
            raise _Stop()

    # applying a single resource

    def _apply_entry(
        self,
        change_set: ChangeSet,
        entry: ChangeSetEntry,
        context: ResolutionContext,
        provider: ResourceProvider,
        result: ApplyResult,
        superseded: dict[str, StateRecord],
    ):
        node = change_set.graph.get(entry.resource_id)
        resource_id = entry.resource_id
        # re-resolve now that the upstream resources have their real outputs
        after = resolve_properties(node.properties, context, resource_id)
        before = entry.before
        dependencies = sorted(node.dependencies)

        if before is None:
            action = ChangeAction.CREATE
        else:
            action = classify_change(node.type, before.properties, after, before_type=before.type).action
        result.actions[resource_id] = action
        if action is not entry.action:
            LOG.debug("Resource %s planned as %s, applying as %s", resource_id, entry.action.value, action.value)

        match action:
            case ChangeAction.NO_OP:
                if before.dependencies != dependencies:
                    self.state_store.put(before.copy(dependencies=dependencies))
                context.set_resource(resource_id, before.physical_id, before.attributes)
                node.physical_id = before.physical_id
                return

            case ChangeAction.CREATE:
                record = self._create(provider, resource_id, node.type, after, dependencies)
                self._log_applied(AppliedChange(resource_id, ChangeAction.CREATE, None, record))

            case ChangeAction.UPDATE:
                physical_id, attributes = self._call(
                    provider.update,
                    "Update",
                    resource_id,
                    node.type,
                    before.physical_id,
                    after,
                    before.properties,
                )
                record = StateRecord(
                    resource_id, node.type, after, physical_id, attributes, dependencies
                )
                self.state_store.put(record)
                self._log_applied(AppliedChange(resource_id, ChangeAction.UPDATE, before, record))

            case ChangeAction.REPLACE:
                strategy = replacement_strategy(node.type, before.properties, after)
                if strategy == DELETE_BEFORE_CREATE:
                    self._call(provider.delete, "Delete", resource_id, before.type, before.physical_id)
                    self.state_store.remove(resource_id)
                    self._log_applied(AppliedChange(resource_id, ChangeAction.DELETE, before, None))
                    record = self._create(provider, resource_id, node.type, after, dependencies)
                    self._log_applied(AppliedChange(resource_id, ChangeAction.CREATE, None, record))
                else:
                    record = self._create(provider, resource_id, node.type, after, dependencies)
                    self._log_applied(AppliedChange(resource_id, ChangeAction.CREATE, before, record))
                    with self._mutex:
                        superseded[resource_id] = before

            case _:
                raise ValueError(f"Unexpected action {action} for resource {resource_id}")

        context.set_resource(resource_id, record.physical_id, record.attributes)
        node.physical_id = record.physical_id

    def _create(
        self,
        provider: ResourceProvider,
        resource_id: str,
        resource_type: str,
        properties: dict[str, Any],
        dependencies: list[str],
    ) -> StateRecord:
        physical_id, attributes = self._call(
            provider.create, "Create", resource_id, resource_type, properties
        )
        record = StateRecord(
            resource_id, resource_type, properties, physical_id, attributes, dependencies
        )
        self.state_store.put(record)
        return record

    def _cleanup_resource(
        self,
        change_set: ChangeSet,
        resource_id: str,
        provider: ResourceProvider,
        result: ApplyResult,
        superseded: dict[str, StateRecord],
    ):
        if resource_id in superseded:
            # the old version of a replaced resource, the state already holds the new one
            old = superseded[resource_id]
            self._delete(provider, resource_id, old)
            self._log_applied(
                AppliedChange(
                    resource_id,
                    ChangeAction.DELETE,
                    old,
                    self.state_store.get(resource_id),
                    superseded=True,
                )
            )
            return

        record = change_set.get(resource_id).before
        result.actions[resource_id] = ChangeAction.DELETE
        self._delete(provider, resource_id, record)
        self.state_store.remove(resource_id)
        self._log_applied(AppliedChange(resource_id, ChangeAction.DELETE, record, None))

    def _delete(self, provider: ResourceProvider, resource_id: str, record: StateRecord):
        try:
            self._call(provider.delete, "Delete", resource_id, record.type, record.physical_id)
        except ProviderError as e:
            if not e.is_not_found:
                raise
            LOG.warning(
                "Resource %s (%s) no longer exists, removing it from the state",
                resource_id,
                record.physical_id,
            )

    def _log_applied(self, change: AppliedChange):
        with self._mutex:
            self._applied.append(change)

    def _call(self, function: Callable, action: str, resource_id: str, resource_type: str, *args):
        """
        Invokes a provider operation, retrying transient errors with exponential backoff.
        """
        backoff = ExponentialBackoff(
            initial_interval=config.PROVIDER_RETRY_INITIAL_INTERVAL,
            max_interval=config.PROVIDER_RETRY_MAX_INTERVAL,
            max_retries=config.PROVIDER_MAX_RETRIES,
        )
        extra = {"resource_id": resource_id, "action": action, "resource_type": resource_type}

        def _on_retry(error: Exception, attempt: int, delay: float):
            TRACE_LOG.info(
                "Transient error on attempt %s, retrying in %.2fs: %s", attempt, delay, error, extra=extra
            )

        TRACE_LOG.debug("Calling provider", extra=extra)
        try:
            value = retry_with_backoff(
                lambda: invoke_provider(function, resource_type, *args),
                backoff,
                is_retryable=is_transient,
                sleep=self.sleep,
                on_retry=_on_retry,
            )
        except ProviderError as e:
            TRACE_LOG.warning("Provider call failed: %s", e, extra=extra)
            raise
        TRACE_LOG.debug("Provider call succeeded", extra=extra)
        return value

    # rollback

    def _rollback(self, provider: ResourceProvider, result: ApplyResult):
        result.status = ApplyStatus.ROLLING_BACK
        with self._mutex:
            applied = list(self._applied)
        LOG.info("Rolling back %s change(s)", len(applied))

        # records of deleted resources that were recreated during the rollback, by resource id
        recreated: dict[str, StateRecord] = {}
        failed: set[str] = set()
        touched: set[str] = set()

        for change in reversed(applied):
            touched.add(change.resource_id)
            action = _compensation_name(change.action)
            try:
                self._attempt_compensation(provider, change, recreated)
            except Exception as e:
                LOG.error(
                    "Rollback of resource %s failed (%s): %s", change.resource_id, action, e
                )
                failed.add(change.resource_id)
                result.rollback_failures.append(RollbackFailure(change.resource_id, action, e))

        result.rolled_back = touched - failed
        for resource_id in touched:
            node = self._graph.get(resource_id)
            if node is not None:
                record = self.state_store.get(resource_id)
                node.physical_id = record.physical_id if record else None
        result.status = (
            ApplyStatus.ROLLBACK_FAILED if result.rollback_failures else ApplyStatus.ROLLED_BACK
        )
        LOG.info("Rollback finished with status %s", result.status.name)

    def _attempt_compensation(
        self,
        provider: ResourceProvider,
        change: AppliedChange,
        recreated: dict[str, StateRecord],
    ):
        attempts = max(config.ROLLBACK_MAX_ATTEMPTS, 1)
        for attempt in range(1, attempts + 1):
            try:
                self._compensate(provider, change, recreated)
                return
            except ProviderError as e:
                if attempt >= attempts:
                    raise
                LOG.debug("Compensation of %s failed, retrying: %s", change.resource_id, e)

    def _compensate(
        self,
        provider: ResourceProvider,
        change: AppliedChange,
        recreated: dict[str, StateRecord],
    ):
        resource_id = change.resource_id
        extra = {
            "resource_id": resource_id,
            "action": _compensation_name(change.action),
            "resource_type": (change.current or change.previous).type,
        }
        TRACE_LOG.debug("Compensating", extra=extra)

        match change.action:
            case ChangeAction.CREATE:
                current = change.current
                try:
                    invoke_provider(provider.delete, current.type, current.physical_id)
                except ProviderError as e:
                    if not e.is_not_found:
                        raise
                restored = recreated.get(resource_id, change.previous)
                if restored is None:
                    self.state_store.remove(resource_id)
                else:
                    self.state_store.put(restored)

            case ChangeAction.UPDATE:
                previous, current = change.previous, change.current
                physical_id, attributes = invoke_provider(
                    provider.update,
                    current.type,
                    current.physical_id,
                    previous.properties,
                    current.properties,
                )
                self.state_store.put(previous.copy(physical_id=physical_id, attributes=attributes))

            case ChangeAction.DELETE:
                previous = change.previous
                physical_id, attributes = invoke_provider(
                    provider.create, previous.type, previous.properties
                )
                record = previous.copy(physical_id=physical_id, attributes=attributes)
                recreated[resource_id] = record
                if change.current is None:
                    self.state_store.put(record)

        TRACE_LOG.debug("Compensated", extra=extra)


def _compensation_name(action: ChangeAction) -> str:
    return {
        ChangeAction.CREATE: "Delete",
        ChangeAction.UPDATE: "Revert",
        ChangeAction.DELETE: "Recreate",
    }.get(action, action.value)


def _dependents_first(
    records: dict[str, StateRecord], waits_for: dict[str, set[str]] = None
) -> dict[str, set[str]]:
    """
    Each resource being deleted waits for the deletion of the resources that depended on it. So does every
    other item in ``waits_for`` that one of the deleted resources depends on.
    """
    waits_for = dict(waits_for or {})
    for resource_id in records:
        waits_for[resource_id] = set()
    for resource_id, record in records.items():
        for target in record.dependencies:
            if target in waits_for:
                waits_for[target].add(resource_id)
    return waits_for
