"""
High-level entry point tying the engine together: loads a template, plans it against the state of the
stack, applies the change set, and resolves the outputs.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union

from stackpilot import config
from stackpilot.constants import DEFAULT_STACK_NAME
from stackpilot.engine.errors import ApplyFailed, PartialRollbackFailure, ProviderError
from stackpilot.engine.executor import ApplyResult, ApplyStatus, Executor
from stackpilot.engine.graph import Graph, build_graph
from stackpilot.engine.parameters import bind_parameters, parameter_values
from stackpilot.engine.planner import ChangeSet, plan
from stackpilot.engine.provider import ResourceProvider
from stackpilot.engine.resolver import ResolutionContext, resolve
from stackpilot.engine.state import StateStore
from stackpilot.engine.template import Template, load_template

LOG = logging.getLogger(__name__)


@dataclass
class DeployResult:
    change_set: ChangeSet
    # None if the change set had no changes
    apply_result: Optional[ApplyResult]
    outputs: dict[str, Any] = field(default_factory=dict)


class DriftStatus(Enum):
    IN_SYNC = "IN_SYNC"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"


@dataclass
class ResourceDrift:
    resource_id: str
    status: DriftStatus
    # attribute name -> (recorded value, actual value)
    differences: dict[str, tuple[Any, Any]] = field(default_factory=dict)


class StackDeployer:
    """
    Deploys one stack: the template, the provider managing its resources, and the store holding its state.
    """

    def __init__(
        self,
        provider: ResourceProvider,
        state_store: StateStore,
        stack_name: str = None,
        region: str = None,
        account_id: str = None,
        max_workers: int = None,
        executor_factory=Executor,
    ):
        self.provider = provider
        self.state_store = state_store
        self.stack_name = stack_name or DEFAULT_STACK_NAME
        self.region = region or config.REGION
        self.account_id = account_id or config.ACCOUNT_ID
        self.max_workers = max_workers
        self.executor_factory = executor_factory

    def load(
        self, template: Union[str, bytes, dict, Template], parameters: dict[str, Any] = None
    ) -> tuple[Graph, ResolutionContext]:
        """Parses the template, binds the parameters and builds the dependency graph."""
        if not isinstance(template, Template):
            template = load_template(template)
        bound = bind_parameters(template.parameters, parameters)
        graph = build_graph(template.resources, bound, template.mappings, template.outputs)
        context = ResolutionContext(
            parameters=parameter_values(bound),
            mappings=template.mappings,
            region=self.region,
            account_id=self.account_id,
            stack_name=self.stack_name,
        )
        return graph, context

    def plan(
        self, template: Union[str, bytes, dict, Template], parameters: dict[str, Any] = None
    ) -> ChangeSet:
        graph, context = self.load(template, parameters)
        with self.state_store:
            return plan(graph, self.state_store, context)

    def deploy(
        self, template: Union[str, bytes, dict, Template], parameters: dict[str, Any] = None
    ) -> DeployResult:
        """
        Plans and applies the template.

        :raises ValidationError: if the template cannot be planned, before any resource is touched
        :raises ApplyFailed: if the apply failed and all changes were rolled back
        :raises PartialRollbackFailure: if the apply failed and some changes could not be rolled back
        """
        graph, context = self.load(template, parameters)
        with self.state_store:
            change_set = plan(graph, self.state_store, context)
            LOG.info("Deploying stack %s:\n%s", self.stack_name, change_set.summary())
            apply_result = None
            if change_set.has_changes:
                apply_result = self._apply(change_set)
            outputs = self.resolve_outputs(graph, context)
        return DeployResult(change_set=change_set, apply_result=apply_result, outputs=outputs)

    def destroy(self) -> Optional[ApplyResult]:
        """Deletes all resources of the stack, dependents first."""
        context = ResolutionContext(
            region=self.region, account_id=self.account_id, stack_name=self.stack_name
        )
        with self.state_store:
            change_set = plan(Graph(nodes={}), self.state_store, context)
            if not change_set.has_changes:
                LOG.info("Stack %s has no resources", self.stack_name)
                return None
            LOG.info("Destroying stack %s:\n%s", self.stack_name, change_set.summary())
            return self._apply(change_set)

    def _apply(self, change_set: ChangeSet) -> ApplyResult:
        executor = self.executor_factory(self.state_store, max_workers=self.max_workers)
        result = executor.apply(change_set, self.provider)
        if result.status is ApplyStatus.ROLLBACK_FAILED:
            raise PartialRollbackFailure(result.rollback_failures, result)
        if result.status is not ApplyStatus.COMPLETED:
            raise ApplyFailed(result)
        return result

    def resolve_outputs(self, graph: Graph, context: ResolutionContext) -> dict[str, Any]:
        """Resolves the declared outputs against the applied state of the stack."""
        output_context = context.copy()
        for resource_id, record in self.state_store.list().items():
            output_context.set_resource(resource_id, record.physical_id, record.attributes)
        return {
            output.name: resolve(output.value, output_context, f"Outputs.{output.name}")
            for output in graph.outputs
        }

    def detect_drift(self) -> dict[str, ResourceDrift]:
        """
        Compares the recorded attributes of every resource with the attributes the provider currently
        reports.
        """
        result = {}
        with self.state_store:
            records = self.state_store.list()
        for resource_id, record in records.items():
            try:
                actual = self.provider.describe(record.type, record.physical_id)
            except ProviderError as e:
                if not e.is_not_found:
                    raise
                result[resource_id] = ResourceDrift(resource_id, DriftStatus.DELETED)
                continue
            differences = {
                key: (record.attributes.get(key), actual.get(key))
                for key in sorted(set(record.attributes) | set(actual))
                if record.attributes.get(key) != actual.get(key)
            }
            status = DriftStatus.MODIFIED if differences else DriftStatus.IN_SYNC
            result[resource_id] = ResourceDrift(resource_id, status, differences)
            if differences:
                LOG.info("Resource %s has drifted: %s", resource_id, ", ".join(differences))
        return result
