"""
Static per-resource-type replacement policies: which property changes can be applied in place, and which
require the resource to be replaced (created anew and the old one deleted).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from stackpilot import config
from stackpilot.constants import CREATE_BEFORE_DELETE, DELETE_BEFORE_CREATE
from stackpilot.engine.expressions import UNKNOWN, contains_unknown

LOG = logging.getLogger(__name__)


class ChangeAction(Enum):
    CREATE = "Create"
    UPDATE = "Update"
    REPLACE = "Replace"
    DELETE = "Delete"
    NO_OP = "NoOp"


@dataclass(frozen=True)
class ReplacementPolicy:
    resource_type: str
    # properties whose modification requires a replacement
    immutable_properties: frozenset[str] = frozenset()
    # properties identifying the resource by name, two resources with the same values would collide
    name_properties: frozenset[str] = frozenset()
    # forced replacement strategy, derived from the name properties if not set
    strategy: Optional[str] = None
    # every property change requires a replacement (used for unknown resource types)
    all_immutable: bool = False

    def is_immutable(self, property_name: str) -> bool:
        return self.all_immutable or property_name in self.immutable_properties


def _policy(resource_type: str, immutable=(), names=(), strategy=None) -> ReplacementPolicy:
    return ReplacementPolicy(
        resource_type=resource_type,
        immutable_properties=frozenset(immutable),
        name_properties=frozenset(names),
        strategy=strategy,
    )


POLICIES: dict[str, ReplacementPolicy] = {
    policy.resource_type: policy
    for policy in [
        _policy("AWS::EC2::VPC", immutable=["CidrBlock", "InstanceTenancy", "Ipv4IpamPoolId"]),
        _policy("AWS::EC2::InternetGateway"),
        _policy(
            "AWS::EC2::VPCGatewayAttachment",
            immutable=["VpcId", "InternetGatewayId", "VpnGatewayId"],
            names=["VpcId"],
        ),
        _policy(
            "AWS::EC2::Subnet",
            immutable=["AvailabilityZone", "AvailabilityZoneId", "CidrBlock", "VpcId", "OutpostArn"],
        ),
        _policy("AWS::EC2::RouteTable", immutable=["VpcId"]),
        _policy(
            "AWS::EC2::Route",
            immutable=["RouteTableId", "DestinationCidrBlock", "DestinationIpv6CidrBlock"],
            names=["RouteTableId", "DestinationCidrBlock", "DestinationIpv6CidrBlock"],
        ),
        _policy(
            "AWS::EC2::SubnetRouteTableAssociation",
            immutable=["SubnetId", "RouteTableId"],
            names=["SubnetId"],
        ),
        _policy(
            "AWS::EC2::SecurityGroup",
            immutable=["GroupDescription", "GroupName", "VpcId"],
            names=["GroupName"],
        ),
        _policy(
            "AWS::EC2::Instance",
            immutable=[
                "AvailabilityZone",
                "ImageId",
                "KeyName",
                "NetworkInterfaces",
                "PrivateIpAddress",
                "SecurityGroups",
                "SubnetId",
            ],
        ),
        _policy(
            "AWS::EC2::VPCEndpoint",
            immutable=["ServiceName", "VpcEndpointType", "VpcId"],
        ),
        _policy(
            "AWS::Route53::HostedZone",
            immutable=["Name"],
            names=["Name"],
        ),
        _policy(
            "AWS::Route53::RecordSet",
            immutable=["HostedZoneId", "HostedZoneName", "Name"],
            names=["HostedZoneId", "HostedZoneName", "Name", "Type"],
        ),
    ]
}

# short type tags that can be used in place of the full resource type names
RESOURCE_TYPE_ALIASES = {
    "network": "AWS::EC2::VPC",
    "internet-gateway": "AWS::EC2::InternetGateway",
    "gateway-attachment": "AWS::EC2::VPCGatewayAttachment",
    "subnet": "AWS::EC2::Subnet",
    "route-table": "AWS::EC2::RouteTable",
    "route": "AWS::EC2::Route",
    "route-table-association": "AWS::EC2::SubnetRouteTableAssociation",
    "security-group": "AWS::EC2::SecurityGroup",
    "compute-instance": "AWS::EC2::Instance",
    "endpoint": "AWS::EC2::VPCEndpoint",
    "dns-zone": "AWS::Route53::HostedZone",
    "dns-record": "AWS::Route53::RecordSet",
}


def canonical_type(resource_type: str) -> str:
    return RESOURCE_TYPE_ALIASES.get(resource_type, resource_type)


def get_policy(resource_type: str) -> ReplacementPolicy:
    """Returns the replacement policy of the given type. Unknown types are replaced on any change."""
    policy = POLICIES.get(canonical_type(resource_type))
    if policy is None:
        LOG.debug("No replacement policy for type %s, treating all properties as immutable", resource_type)
        return ReplacementPolicy(resource_type=resource_type, all_immutable=True)
    return policy


@dataclass
class PropertyDiff:
    action: ChangeAction
    changed_properties: list[str] = field(default_factory=list)
    replacement_properties: list[str] = field(default_factory=list)


def diff_properties(before: dict[str, Any], after: dict[str, Any]) -> list[str]:
    """Returns the names of the properties that differ (values containing ``UNKNOWN`` always differ)."""
    changed = []
    for key in sorted(set(before) | set(after)):
        if key not in before or key not in after:
            changed.append(key)
        elif contains_unknown(after[key]) or before[key] != after[key]:
            changed.append(key)
    return changed


def classify_change(
    resource_type: str,
    before: dict[str, Any],
    after: dict[str, Any],
    before_type: str = None,
) -> PropertyDiff:
    """
    Classifies the change from the last applied to the desired properties of a resource.

    :param resource_type: the desired resource type
    :param before: the last applied (resolved) properties
    :param after: the desired (resolved) properties, may contain ``UNKNOWN`` values
    :param before_type: the last applied resource type, a type change always requires a replacement
    :return: the action (NoOp, Update or Replace) and the properties causing it
    """
    changed = diff_properties(before, after)
    if before_type and canonical_type(before_type) != canonical_type(resource_type):
        return PropertyDiff(ChangeAction.REPLACE, changed, changed)
    if not changed:
        return PropertyDiff(ChangeAction.NO_OP)

    policy = get_policy(resource_type)
    replacement_properties = [name for name in changed if policy.is_immutable(name)]
    action = ChangeAction.REPLACE if replacement_properties else ChangeAction.UPDATE
    return PropertyDiff(action, changed, replacement_properties)


def replacement_strategy(
    resource_type: str, before: dict[str, Any], after: dict[str, Any]
) -> str:
    """
    Decides the ordering of the two steps of a replacement. The new resource is created before the old one
    is deleted, unless the new resource keeps the name of the old one (all name properties unchanged), in
    which case the old resource has to be deleted first. ``config.REPLACEMENT_STRATEGY`` and the per-type
    ``strategy`` force an ordering.
    """
    if config.REPLACEMENT_STRATEGY:
        return config.REPLACEMENT_STRATEGY
    policy = get_policy(resource_type)
    if policy.strategy:
        return policy.strategy
    if not policy.name_properties:
        return CREATE_BEFORE_DELETE

    declared = [name for name in policy.name_properties if name in before or name in after]
    if not declared:
        return CREATE_BEFORE_DELETE
    for name in declared:
        new_value = after.get(name)
        if new_value is UNKNOWN or contains_unknown(new_value) or before.get(name) != new_value:
            return CREATE_BEFORE_DELETE
    return DELETE_BEFORE_CREATE


def may_delete_before_create(
    resource_type: str, before: dict[str, Any], after: dict[str, Any]
) -> bool:
    """
    Whether a replacement may delete the old resource first once it is applied. Name properties that are
    still unknown when planning can turn out unchanged, which makes the replacement delete the old resource
    first.
    """
    settled = dict(after)
    for name in get_policy(resource_type).name_properties:
        if name in after and contains_unknown(after[name]):
            settled[name] = before.get(name)
    return replacement_strategy(resource_type, before, settled) == DELETE_BEFORE_CREATE
