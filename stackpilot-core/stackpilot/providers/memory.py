"""
An in-memory emulation of the network, compute and DNS resources used by private-link style stacks. It mints
physical ids and attributes in the format of the real services, enforces name uniqueness for name-keyed
resource types, and can be told to fail specific calls, which makes it the provider of choice for tests and
dry runs.
"""

import copy
import datetime
import logging
import random
import string
import threading
from dataclasses import dataclass, field
from typing import Any, Optional

from stackpilot import config
from stackpilot.engine.errors import ProviderError
from stackpilot.engine.policy import ChangeAction, canonical_type, classify_change, get_policy
from stackpilot.engine.provider import Attributes, Properties, ProviderPlugin, ResourceProvider
from stackpilot.utils.strings import get_random_hex, get_random_id

LOG = logging.getLogger(__name__)

# prefixes of the generated physical ids, followed by 17 hex digits
ID_PREFIXES = {
    "AWS::EC2::VPC": "vpc",
    "AWS::EC2::InternetGateway": "igw",
    "AWS::EC2::Subnet": "subnet",
    "AWS::EC2::RouteTable": "rtb",
    "AWS::EC2::SubnetRouteTableAssociation": "rtbassoc",
    "AWS::EC2::SecurityGroup": "sg",
    "AWS::EC2::Instance": "i",
    "AWS::EC2::VPCEndpoint": "vpce",
}


@dataclass
class MemoryResource:
    resource_type: str
    physical_id: str
    properties: Properties
    attributes: Attributes = field(default_factory=dict)


@dataclass
class ProviderCall:
    operation: str
    resource_type: str
    physical_id: Optional[str] = None
    properties: Optional[Properties] = None


@dataclass
class Fault:
    """
    An injected failure. It matches calls of the given operation, optionally restricted to a resource type
    and to properties containing the items of ``when``, and fires ``times`` times (-1 for every call).
    """

    operation: str
    error: ProviderError
    resource_type: Optional[str] = None
    when: Optional[dict[str, Any]] = None
    times: int = 1

    def matches(self, operation: str, resource_type: str, properties: Optional[Properties]) -> bool:
        if self.times == 0 or operation != self.operation:
            return False
        if self.resource_type and canonical_type(self.resource_type) != canonical_type(resource_type):
            return False
        if self.when:
            properties = properties or {}
            return all(properties.get(key) == value for key, value in self.when.items())
        return True


class MemoryProvider(ResourceProvider):
    def __init__(self, region: str = None, account_id: str = None):
        self.region = region or config.REGION
        self.account_id = account_id or config.ACCOUNT_ID
        self.resources: dict[tuple[str, str], MemoryResource] = {}
        self.calls: list[ProviderCall] = []
        self.faults: list[Fault] = []
        self._mutex = threading.RLock()

    # fault injection and inspection

    def inject_fault(
        self,
        operation: str,
        error: ProviderError = None,
        resource_type: str = None,
        when: dict[str, Any] = None,
        times: int = 1,
    ) -> Fault:
        fault = Fault(
            operation=operation,
            error=error or ProviderError.invalid_request(f"Injected failure of {operation}"),
            resource_type=resource_type,
            when=when,
            times=times,
        )
        with self._mutex:
            self.faults.append(fault)
        return fault

    def calls_of(self, operation: str) -> list[ProviderCall]:
        with self._mutex:
            return [call for call in self.calls if call.operation == operation]

    def get(self, resource_type: str, physical_id: str) -> Optional[MemoryResource]:
        with self._mutex:
            return self.resources.get((canonical_type(resource_type), physical_id))

    def find(self, resource_type: str) -> list[MemoryResource]:
        resource_type = canonical_type(resource_type)
        with self._mutex:
            return [r for (t, _), r in self.resources.items() if t == resource_type]

    def set_attribute(self, resource_type: str, physical_id: str, name: str, value: Any) -> None:
        """Changes an attribute out of band, to emulate drift."""
        with self._mutex:
            self._require(resource_type, physical_id).attributes[name] = value

    def remove(self, resource_type: str, physical_id: str) -> None:
        """Deletes a resource out of band, to emulate drift."""
        with self._mutex:
            self.resources.pop((canonical_type(resource_type), physical_id), None)

    # provider operations

    def create(self, resource_type: str, properties: Properties) -> tuple[str, Attributes]:
        with self._mutex:
            self._record_call("create", resource_type, None, properties)
            self._check_name_collision(resource_type, properties)
            physical_id = self._generate_physical_id(resource_type, properties)
            attributes = self._build_attributes(resource_type, physical_id, properties, {})
            self.resources[(canonical_type(resource_type), physical_id)] = MemoryResource(
                resource_type=canonical_type(resource_type),
                physical_id=physical_id,
                properties=copy.deepcopy(properties),
                attributes=attributes,
            )
            LOG.debug("Created %s %s", resource_type, physical_id)
            return physical_id, copy.deepcopy(attributes)

    def update(
        self,
        resource_type: str,
        physical_id: str,
        properties: Properties,
        previous_properties: Properties,
    ) -> tuple[str, Attributes]:
        with self._mutex:
            self._record_call("update", resource_type, physical_id, properties)
            resource = self._require(resource_type, physical_id)
            diff = classify_change(resource_type, resource.properties, properties)
            if diff.action is ChangeAction.REPLACE:
                raise ProviderError.invalid_request(
                    f"Properties {', '.join(diff.replacement_properties)} of {resource_type} "
                    f"{physical_id} cannot be updated"
                )
            self._check_name_collision(resource_type, properties, physical_id)
            resource.properties = copy.deepcopy(properties)
            resource.attributes = self._build_attributes(
                resource_type, physical_id, properties, resource.attributes
            )
            LOG.debug("Updated %s %s", resource_type, physical_id)
            return physical_id, copy.deepcopy(resource.attributes)

    def delete(self, resource_type: str, physical_id: str) -> None:
        with self._mutex:
            self._record_call("delete", resource_type, physical_id, None)
            self._require(resource_type, physical_id)
            self.resources.pop((canonical_type(resource_type), physical_id))
            LOG.debug("Deleted %s %s", resource_type, physical_id)

    def describe(self, resource_type: str, physical_id: str) -> Attributes:
        with self._mutex:
            self._record_call("describe", resource_type, physical_id, None)
            return copy.deepcopy(self._require(resource_type, physical_id).attributes)

    # helpers

    def _record_call(
        self,
        operation: str,
        resource_type: str,
        physical_id: Optional[str],
        properties: Optional[Properties],
    ):
        self.calls.append(
            ProviderCall(operation, resource_type, physical_id, copy.deepcopy(properties))
        )
        if properties is None and physical_id:
            existing = self.resources.get((canonical_type(resource_type), physical_id))
            properties = existing.properties if existing else None
        for fault in self.faults:
            if fault.matches(operation, resource_type, properties):
                if fault.times > 0:
                    fault.times -= 1
                LOG.debug("Injecting failure into %s of %s: %s", operation, resource_type, fault.error)
                raise fault.error

    def _require(self, resource_type: str, physical_id: str) -> MemoryResource:
        resource = self.resources.get((canonical_type(resource_type), physical_id))
        if resource is None:
            raise ProviderError.not_found(f"{resource_type} {physical_id} does not exist")
        return resource

    def _check_name_collision(
        self, resource_type: str, properties: Properties, physical_id: str = None
    ):
        name_properties = sorted(get_policy(resource_type).name_properties)
        if not name_properties or all(properties.get(name) is None for name in name_properties):
            return
        key = [properties.get(name) for name in name_properties]
        for existing in self.find(resource_type):
            if existing.physical_id == physical_id:
                continue
            if [existing.properties.get(name) for name in name_properties] == key:
                raise ProviderError.conflict(
                    f"{resource_type} with {', '.join(name_properties)} = {key} already exists "
                    f"({existing.physical_id})"
                )

    def _generate_physical_id(self, resource_type: str, properties: Properties) -> str:
        resource_type = canonical_type(resource_type)
        if prefix := ID_PREFIXES.get(resource_type):
            return f"{prefix}-{get_random_hex(17)}"
        match resource_type:
            case "AWS::EC2::VPCGatewayAttachment":
                gateway = properties.get("InternetGatewayId") or properties.get("VpnGatewayId")
                return f"{gateway}|{properties.get('VpcId')}"
            case "AWS::EC2::Route":
                destination = properties.get("DestinationCidrBlock") or properties.get(
                    "DestinationIpv6CidrBlock"
                )
                return f"{properties.get('RouteTableId')}|{destination}"
            case "AWS::Route53::HostedZone":
                return f"Z{get_random_id(13)}"
            case "AWS::Route53::RecordSet":
                return f"{str(properties.get('Name', '')).rstrip('.')}-{get_random_hex(8)}"
        short_name = resource_type.split("::")[-1].lower()
        return f"{short_name}-{get_random_hex(17)}"

    def _build_attributes(
        self,
        resource_type: str,
        physical_id: str,
        properties: Properties,
        previous: Attributes,
    ) -> Attributes:
        """Computes the output attributes, keeping generated values of an existing resource stable."""
        match canonical_type(resource_type):
            case "AWS::EC2::VPC":
                return {
                    "VpcId": physical_id,
                    "CidrBlock": properties.get("CidrBlock"),
                    "CidrBlockAssociations": previous.get("CidrBlockAssociations")
                    or [f"vpc-cidr-assoc-{get_random_hex(17)}"],
                    "DefaultNetworkAcl": previous.get("DefaultNetworkAcl")
                    or f"acl-{get_random_hex(17)}",
                    "DefaultSecurityGroup": previous.get("DefaultSecurityGroup")
                    or f"sg-{get_random_hex(17)}",
                    "Ipv6CidrBlocks": [],
                }
            case "AWS::EC2::InternetGateway":
                return {"InternetGatewayId": physical_id}
            case "AWS::EC2::Subnet":
                return {
                    "SubnetId": physical_id,
                    "VpcId": properties.get("VpcId"),
                    "CidrBlock": properties.get("CidrBlock"),
                    "AvailabilityZone": properties.get("AvailabilityZone") or f"{self.region}a",
                    "NetworkAclAssociationId": previous.get("NetworkAclAssociationId")
                    or f"aclassoc-{get_random_hex(17)}",
                }
            case "AWS::EC2::RouteTable":
                return {"RouteTableId": physical_id}
            case "AWS::EC2::SubnetRouteTableAssociation":
                return {"Id": physical_id}
            case "AWS::EC2::SecurityGroup":
                return {
                    "GroupId": physical_id,
                    "VpcId": properties.get("VpcId"),
                }
            case "AWS::EC2::Instance":
                private_ip = previous.get("PrivateIp") or _random_private_ip()
                return {
                    "InstanceId": physical_id,
                    "PrivateIp": private_ip,
                    "PrivateDnsName": self._private_dns_name(private_ip),
                    "AvailabilityZone": properties.get("AvailabilityZone") or f"{self.region}a",
                }
            case "AWS::EC2::VPCEndpoint":
                return {
                    "Id": physical_id,
                    "CreationTimestamp": previous.get("CreationTimestamp")
                    or datetime.datetime.now(tz=datetime.timezone.utc).isoformat(),
                    "DnsEntries": previous.get("DnsEntries")
                    or self._endpoint_dns_entries(physical_id, properties),
                    "NetworkInterfaceIds": [
                        f"eni-{get_random_hex(17)}" for _ in properties.get("SubnetIds") or []
                    ],
                }
            case "AWS::Route53::HostedZone":
                private = bool(properties.get("VPCs"))
                return {
                    "Id": physical_id,
                    "NameServers": [] if private else _name_servers(),
                }
        return {}

    def _private_dns_name(self, private_ip: str) -> str:
        host = "ip-" + private_ip.replace(".", "-")
        if self.region == "us-east-1":
            return f"{host}.ec2.internal"
        return f"{host}.{self.region}.compute.internal"

    def _endpoint_dns_entries(self, physical_id: str, properties: Properties) -> list[str]:
        if properties.get("VpcEndpointType", "Gateway") != "Interface":
            return []
        service = str(properties.get("ServiceName", "")).split(".")[-1]
        suffix = get_random_id(8, string.ascii_lowercase + string.digits)
        zone_id = f"Z{get_random_id(13)}"
        dns_name = f"{physical_id}-{suffix}.{service}.{self.region}.vpce.amazonaws.com"
        # regional entry first, then one entry per availability zone
        entries = [f"{zone_id}:{dns_name}"]
        for zone in ("a", "b"):
            entries.append(
                f"{zone_id}:{physical_id}-{suffix}-{self.region}{zone}."
                f"{service}.{self.region}.vpce.amazonaws.com"
            )
        return entries


def _random_private_ip() -> str:
    return f"10.0.{random.randint(0, 255)}.{random.randint(4, 254)}"


def _name_servers() -> list[str]:
    return [
        f"ns-{random.randint(1, 2047)}.awsdns-{random.randint(0, 63):02d}.{tld}"
        for tld in ("org", "co.uk", "com", "net")
    ]


class MemoryProviderPlugin(ProviderPlugin):
    name = "memory"

    def load(self, *args, **kwargs):
        self.factory = MemoryProvider
