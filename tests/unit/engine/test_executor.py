import logging

import pytest

from stackpilot import config
from stackpilot.constants import CREATE_BEFORE_DELETE
from stackpilot.engine.errors import ProviderError
from stackpilot.engine.executor import ApplyStatus, Executor, ResourceStatus
from stackpilot.engine.graph import build_graph
from stackpilot.engine.planner import ChangeAction, plan
from stackpilot.engine.resolver import ResolutionContext
from stackpilot.engine.template import load_template
from stackpilot.providers.memory import MemoryProvider


def graph_of(resources: dict):
    return build_graph(load_template({"Resources": resources}).resources)


def network(vpc_cidr="10.1.0.0/16", dns_hostnames=True, **subnets):
    resources = {
        "N": {
            "Type": "network",
            "Properties": {"CidrBlock": vpc_cidr, "EnableDnsHostnames": dns_hostnames},
        }
    }
    for logical_id, cidr in subnets.items():
        resources[logical_id] = {
            "Type": "subnet",
            "Properties": {"VpcId": {"Ref": "N"}, "CidrBlock": cidr, "AvailabilityZone": "us-east-1a"},
        }
    return resources


def vpcs(*cidrs):
    return {
        f"V{i}": {"Type": "network", "Properties": {"CidrBlock": cidr}} for i, cidr in enumerate(cidrs)
    }


def run(resources, state_store, provider, **kwargs):
    change_set = plan(graph_of(resources), state_store, ResolutionContext())
    return change_set, Executor(state_store, **kwargs).apply(change_set, provider)


def operations(provider, since=0):
    return [(call.operation, call.resource_type) for call in provider.calls[since:]]


class TestApply:
    def test_creates_in_dependency_order(self, state_store, provider):
        applied, result = run(network(S="10.1.1.0/24"), state_store, provider)

        assert result.ok
        assert result.succeeded == {"N", "S"}
        assert operations(provider) == [("create", "network"), ("create", "subnet")]
        vpc = state_store.get("N")
        assert vpc.physical_id.startswith("vpc-")
        subnet = state_store.get("S")
        assert subnet.properties["VpcId"] == vpc.physical_id
        assert subnet.dependencies == ["N"]
        assert applied.graph.get("N").physical_id == vpc.physical_id
        assert applied.graph.get("S").physical_id == subnet.physical_id

        change_set = plan(graph_of(network(S="10.1.1.0/24")), state_store, ResolutionContext())
        assert not change_set.has_changes

    def test_noop_resources_provide_their_outputs(self, state_store, provider):
        run(network(S="10.1.1.0/24"), state_store, provider)
        change_set, result = run(network(S="10.1.1.0/24", T="10.1.2.0/24"), state_store, provider)

        assert change_set.get("N").action is ChangeAction.NO_OP
        assert result.ok
        assert state_store.get("T").properties["VpcId"] == state_store.get("N").physical_id

    def test_update(self, state_store, provider):
        run(network(S="10.1.1.0/24"), state_store, provider)
        physical_id = state_store.get("N").physical_id

        _, result = run(network(dns_hostnames=False, S="10.1.1.0/24"), state_store, provider)

        assert result.actions == {"N": ChangeAction.UPDATE, "S": ChangeAction.NO_OP}
        assert state_store.get("N").physical_id == physical_id
        assert state_store.get("N").properties["EnableDnsHostnames"] is False
        assert provider.get("network", physical_id).properties["EnableDnsHostnames"] is False

    def test_replace_creates_before_delete(self, state_store, provider):
        run(network(S="10.1.1.0/24"), state_store, provider)
        old_id = state_store.get("S").physical_id
        since = len(provider.calls)

        _, result = run(network(S="10.1.2.0/24"), state_store, provider)

        assert result.ok
        assert operations(provider, since) == [("create", "subnet"), ("delete", "subnet")]
        assert state_store.get("S").physical_id != old_id
        assert [subnet.properties["CidrBlock"] for subnet in provider.find("subnet")] == ["10.1.2.0/24"]

    def test_replace_named_resource_deletes_first(self, state_store, provider):
        group = {"GroupName": "web", "GroupDescription": "web servers"}
        run({"G": {"Type": "security-group", "Properties": group}}, state_store, provider)
        since = len(provider.calls)

        changed = {**group, "GroupDescription": "web and ssh"}
        _, result = run({"G": {"Type": "security-group", "Properties": changed}}, state_store, provider)

        assert result.ok
        assert operations(provider, since) == [
            ("delete", "security-group"),
            ("create", "security-group"),
        ]
        assert len(provider.find("security-group")) == 1

    def test_removed_dependents_are_deleted_before_a_named_replacement(self, state_store, provider):
        group = {"GroupName": "web", "GroupDescription": "web servers"}
        run(
            {
                "G": {"Type": "security-group", "Properties": group},
                "I": {
                    "Type": "compute-instance",
                    "Properties": {"ImageId": "ami-1", "SecurityGroupIds": [{"Ref": "G"}]},
                },
            },
            state_store,
            provider,
        )
        since = len(provider.calls)

        changed = {**group, "GroupDescription": "web and ssh"}
        _, result = run({"G": {"Type": "security-group", "Properties": changed}}, state_store, provider)

        assert result.ok
        assert result.actions == {"I": ChangeAction.DELETE, "G": ChangeAction.REPLACE}
        assert operations(provider, since) == [
            ("delete", "compute-instance"),
            ("delete", "security-group"),
            ("create", "security-group"),
        ]
        assert "I" not in state_store
        assert provider.find("compute-instance") == []

    def test_forced_create_before_delete_collides_on_names(self, state_store, provider, monkeypatch):
        group = {"GroupName": "web", "GroupDescription": "web servers"}
        run({"G": {"Type": "security-group", "Properties": group}}, state_store, provider)
        old_id = state_store.get("G").physical_id

        monkeypatch.setattr(config, "REPLACEMENT_STRATEGY", CREATE_BEFORE_DELETE)
        changed = {**group, "GroupDescription": "web and ssh"}
        _, result = run({"G": {"Type": "security-group", "Properties": changed}}, state_store, provider)

        assert result.status is ApplyStatus.ROLLED_BACK
        assert result.failed.resource_id == "G"
        assert result.failed.action is ChangeAction.REPLACE
        assert result.failed.error.code == "AlreadyExists"
        assert state_store.get("G").physical_id == old_id

    def test_removed_resources_are_deleted(self, state_store, provider):
        run(network(S="10.1.1.0/24"), state_store, provider)
        _, result = run(network(), state_store, provider)

        assert result.ok
        assert result.actions["S"] is ChangeAction.DELETE
        assert "S" not in state_store
        assert provider.find("subnet") == []

    def test_deleting_a_vanished_resource(self, state_store, provider):
        run(network(S="10.1.1.0/24"), state_store, provider)
        provider.remove("subnet", state_store.get("S").physical_id)

        _, result = run(network(), state_store, provider)

        assert result.ok
        assert "S" not in state_store

    def test_actions_are_reclassified_with_real_values(self, state_store, provider):
        def resources(subnet_cidr):
            result = network(S=subnet_cidr)
            result["I"] = {
                "Type": "compute-instance",
                "Properties": {
                    "ImageId": "ami-0c55b159cbfafe1f0",
                    "Tags": [{"Key": "Zone", "Value": {"Fn::GetAtt": ["S", "AvailabilityZone"]}}],
                },
            }
            return result

        run(resources("10.1.1.0/24"), state_store, provider)
        change_set, result = run(resources("10.1.2.0/24"), state_store, provider)

        # the new subnet lives in the same zone, so the tag does not change
        assert change_set.get("I").action is ChangeAction.UPDATE
        assert result.actions["I"] is ChangeAction.NO_OP
        assert provider.calls_of("update") == []

    def test_provider_calls_are_traced(self, state_store, provider, caplog):
        with caplog.at_level(logging.DEBUG, logger="stackpilot.engine.trace"):
            run(network(), state_store, provider)
        traced = [r for r in caplog.records if r.name == "stackpilot.engine.trace"]
        assert traced
        assert all(r.resource_id == "N" and r.action == "Create" for r in traced)
        assert all(r.resource_type == "network" for r in traced)


class TestRetries:
    def test_transient_errors_are_retried(self, state_store, provider):
        provider.inject_fault("create", ProviderError.throttling(), times=2)
        sleeps = []
        _, result = run(vpcs("10.1.0.0/16"), state_store, provider, sleep=sleeps.append)

        assert result.ok
        assert len(provider.calls_of("create")) == 3
        assert len(sleeps) == 2
        assert all(0 < delay <= 0.05 * 1.5 for delay in sleeps)

    def test_retries_are_bounded(self, state_store, provider):
        provider.inject_fault("create", ProviderError.timeout(), times=-1)
        sleeps = []
        _, result = run(vpcs("10.1.0.0/16"), state_store, provider, sleep=sleeps.append)

        assert result.status is ApplyStatus.ROLLED_BACK
        assert result.failed.error.code == "RequestTimeout"
        # the first attempt plus PROVIDER_MAX_RETRIES
        assert len(provider.calls_of("create")) == 5
        assert len(sleeps) == 4

    def test_permanent_errors_are_not_retried(self, state_store, provider):
        provider.inject_fault("create")
        sleeps = []
        _, result = run(vpcs("10.1.0.0/16"), state_store, provider, sleep=sleeps.append)

        assert result.status is ApplyStatus.ROLLED_BACK
        assert len(provider.calls_of("create")) == 1
        assert sleeps == []

    def test_unexpected_errors_are_permanent(self, state_store):
        class BrokenProvider(MemoryProvider):
            def create(self, resource_type, properties):
                raise KeyError("CidrBlock")

        _, result = run(vpcs("10.1.0.0/16"), state_store, BrokenProvider())

        error = result.failed.error
        assert isinstance(error, ProviderError)
        assert not error.transient
        assert isinstance(error.__cause__, KeyError)


class TestRollback:
    def test_failure_stops_scheduling_and_reverts(self, state_store, provider):
        provider.inject_fault("create", when={"CidrBlock": "10.2.0.0/16"})
        _, result = run(
            vpcs("10.1.0.0/16", "10.2.0.0/16", "10.3.0.0/16"), state_store, provider, max_workers=1
        )

        assert result.status is ApplyStatus.ROLLED_BACK
        assert not result.ok
        assert result.failed.resource_id == "V1"
        assert result.statuses == {
            "V0": ResourceStatus.SUCCEEDED,
            "V1": ResourceStatus.FAILED,
            "V2": ResourceStatus.PENDING,
        }
        assert result.rolled_back == {"V0"}
        # the third resource was never attempted
        assert len(provider.calls_of("create")) == 2
        assert provider.find("network") == []
        assert len(state_store) == 0

    def test_update_is_reverted(self, state_store, provider):
        run(network(S="10.1.1.0/24"), state_store, provider)
        resources = network(dns_hostnames=False, S="10.1.1.0/24")
        resources["R"] = {"Type": "route-table", "Properties": {"VpcId": {"Ref": "N"}}}
        provider.inject_fault("create", resource_type="route-table")

        _, result = run(resources, state_store, provider, max_workers=1)

        assert result.status is ApplyStatus.ROLLED_BACK
        assert result.rolled_back == {"N"}
        record = state_store.get("N")
        assert record.properties["EnableDnsHostnames"] is True
        assert provider.get("network", record.physical_id).properties["EnableDnsHostnames"] is True
        assert "R" not in state_store

    def test_deleted_resource_is_recreated(self, state_store, provider):
        run(network(S1="10.1.1.0/24", S2="10.1.2.0/24"), state_store, provider)
        old_id = state_store.get("S2").physical_id
        provider.inject_fault("delete", when={"CidrBlock": "10.1.1.0/24"})

        _, result = run(network(), state_store, provider, max_workers=1)

        assert result.status is ApplyStatus.ROLLED_BACK
        assert result.failed.resource_id == "S1"
        assert result.rolled_back == {"S2"}
        recreated = state_store.get("S2")
        assert recreated.physical_id != old_id
        assert recreated.properties["CidrBlock"] == "10.1.2.0/24"
        assert sorted(s.properties["CidrBlock"] for s in provider.find("subnet")) == [
            "10.1.1.0/24",
            "10.1.2.0/24",
        ]

    def test_replacement_is_reverted(self, state_store, provider):
        run(network(S="10.1.1.0/24"), state_store, provider)
        old_id = state_store.get("S").physical_id
        resources = network(S="10.1.2.0/24")
        resources["R"] = {"Type": "route-table", "Properties": {"VpcId": {"Ref": "N"}}}
        provider.inject_fault("create", resource_type="route-table")

        change_set, result = run(resources, state_store, provider, max_workers=1)

        assert result.status is ApplyStatus.ROLLED_BACK
        assert state_store.get("S").physical_id == old_id
        assert change_set.graph.get("S").physical_id == old_id
        assert change_set.graph.get("R").physical_id is None
        assert [s.physical_id for s in provider.find("subnet")] == [old_id]

    def test_partial_rollback_failure(self, state_store, provider):
        provider.inject_fault("create", when={"CidrBlock": "10.2.0.0/16"})
        provider.inject_fault("delete", resource_type="network", times=-1)

        _, result = run(vpcs("10.1.0.0/16", "10.2.0.0/16"), state_store, provider, max_workers=1)

        assert result.status is ApplyStatus.ROLLBACK_FAILED
        assert [(f.resource_id, f.action) for f in result.rollback_failures] == [("V0", "Delete")]
        assert result.rolled_back == set()
        # the compensation was attempted ROLLBACK_MAX_ATTEMPTS times
        assert len(provider.calls_of("delete")) == 2
        assert "V0" in state_store

    def test_disabled_rollback_keeps_resources(self, state_store, provider):
        provider.inject_fault("create", when={"CidrBlock": "10.2.0.0/16"})

        _, result = run(
            vpcs("10.1.0.0/16", "10.2.0.0/16"),
            state_store,
            provider,
            max_workers=1,
            disable_rollback=True,
        )

        assert result.status is ApplyStatus.FAILED
        assert "V0" in state_store
        assert len(provider.find("network")) == 1

    def test_abort(self, state_store):
        class AbortingProvider(MemoryProvider):
            executor: Executor = None

            def create(self, resource_type, properties):
                result = super().create(resource_type, properties)
                self.executor.abort()
                return result

        provider = AbortingProvider()
        executor = Executor(state_store, max_workers=1)
        provider.executor = executor
        change_set = plan(
            graph_of(vpcs("10.1.0.0/16", "10.2.0.0/16", "10.3.0.0/16")),
            state_store,
            ResolutionContext(),
        )

        result = executor.apply(change_set, provider)

        assert executor.aborted
        assert result.aborted
        assert result.failed is None
        assert result.status is ApplyStatus.ROLLED_BACK
        assert result.statuses["V1"] is ResourceStatus.PENDING
        assert len(provider.calls_of("create")) == 1
        assert len(state_store) == 0

    def test_executor_can_be_reused_after_abort(self, state_store, provider):
        executor = Executor(state_store, max_workers=1)
        executor.abort()

        result = executor.apply(
            plan(graph_of(vpcs("10.1.0.0/16")), state_store, ResolutionContext()), provider
        )

        assert result.ok
        assert not executor.aborted
        assert "V0" in state_store

    def test_failure_names_the_attempted_action(self, state_store, provider):
        run(network(S="10.1.1.0/24"), state_store, provider)
        provider.inject_fault("update", resource_type="network")

        change_set, result = run(network(dns_hostnames=False, S="10.1.1.0/24"), state_store, provider)

        assert result.failed.resource_id == "N"
        assert result.failed.action is ChangeAction.UPDATE
        assert result.status is ApplyStatus.ROLLED_BACK
        assert change_set.get("S").action is ChangeAction.NO_OP


@pytest.mark.parametrize("max_workers", [1, 4])
def test_concurrent_apply_respects_dependencies(state_store, provider, max_workers):
    resources = network(S1="10.1.1.0/24", S2="10.1.2.0/24", S3="10.1.3.0/24")
    resources.update(vpcs("10.2.0.0/16", "10.3.0.0/16"))
    _, result = run(resources, state_store, provider, max_workers=max_workers)

    assert result.ok
    assert len(state_store) == 6
    creates = [call.properties["CidrBlock"] for call in provider.calls_of("create")]
    for subnet_cidr in ("10.1.1.0/24", "10.1.2.0/24", "10.1.3.0/24"):
        assert creates.index("10.1.0.0/16") < creates.index(subnet_cidr)
