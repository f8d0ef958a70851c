from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from stackpilot import config
from stackpilot.constants import DEFAULT_STACK_NAME
from stackpilot.engine.errors import (
    IndexOutOfRange,
    TypeMismatch,
    UnresolvedReference,
)
from stackpilot.engine.expressions import (
    UNKNOWN,
    AttributeRef,
    Expression,
    GetAZs,
    Join,
    ListOf,
    Literal,
    MapLookup,
    MapOf,
    ParameterRef,
    PseudoRef,
    Select,
    Split,
)

LOG = logging.getLogger(__name__)


def default_availability_zones(region: str) -> list[str]:
    return [f"{region}{suffix}" for suffix in ("a", "b", "c")]


@dataclass
class ResolvedResource:
    """The provider-assigned identity of an applied resource, as seen by dependent resources."""

    physical_id: str
    attributes: dict[str, Any] = field(default_factory=dict)


class ResolutionContext:
    """
    Everything an expression can be resolved against during one plan or apply pass: bound parameters,
    mappings, pseudo parameters, and the outputs of resources resolved so far.

    Attribute lookups are memoized, so a given ``(resource_id, attribute)`` resolves to one stable value for
    the lifetime of the context. Resources registered as ``unknown`` (planned to be created or replaced)
    resolve to the ``UNKNOWN`` placeholder.
    """

    def __init__(
        self,
        parameters: dict[str, Any] = None,
        mappings: dict[str, dict[str, dict[str, Any]]] = None,
        region: str = None,
        account_id: str = None,
        stack_name: str = None,
        partition: str = None,
        availability_zones: Callable[[str], list[str]] = None,
    ):
        self.parameters = dict(parameters or {})
        self.mappings = mappings or {}
        self.region = region or config.REGION
        self.account_id = account_id or config.ACCOUNT_ID
        self.stack_name = stack_name or DEFAULT_STACK_NAME
        self.partition = partition or config.PARTITION
        self.availability_zones = availability_zones or default_availability_zones
        self._resources: dict[str, ResolvedResource] = {}
        self._unknown: set[str] = set()
        self._memo: dict[tuple[str, Optional[str]], Any] = {}
        self._lock = threading.RLock()

    def copy(self) -> ResolutionContext:
        """Returns a fresh context (with an empty memo and no resources) for a new pass."""
        return ResolutionContext(
            parameters=self.parameters,
            mappings=self.mappings,
            region=self.region,
            account_id=self.account_id,
            stack_name=self.stack_name,
            partition=self.partition,
            availability_zones=self.availability_zones,
        )

    def set_resource(self, resource_id: str, physical_id: str, attributes: dict[str, Any] = None):
        with self._lock:
            if resource_id in self._resources:
                LOG.debug("Replacing the resolved outputs of resource %s", resource_id)
                for key in [key for key in self._memo if key[0] == resource_id]:
                    self._memo.pop(key)
            self._unknown.discard(resource_id)
            self._resources[resource_id] = ResolvedResource(physical_id, dict(attributes or {}))

    def set_unknown(self, resource_id: str):
        with self._lock:
            self._resources.pop(resource_id, None)
            self._unknown.add(resource_id)

    def is_resolved(self, resource_id: str) -> bool:
        return resource_id in self._resources

    def lookup_attribute(self, resource_id: str, attribute: Optional[str]) -> Any:
        key = (resource_id, attribute)
        with self._lock:
            if key in self._memo:
                return self._memo[key]
            if resource_id in self._unknown:
                return UNKNOWN
            resource = self._resources.get(resource_id)
            if resource is None:
                raise UnresolvedReference(
                    resource_id, f"Resource {resource_id} has not been resolved yet"
                )
            if attribute is None:
                value = resource.physical_id
            else:
                value = _extract_attribute(resource.attributes, attribute)
                if value is None:
                    raise UnresolvedReference(
                        f"{resource_id}.{attribute}",
                        f"Resource {resource_id} has no attribute {attribute}",
                    )
            self._memo[key] = value
            return value


def _extract_attribute(attributes: dict[str, Any], attribute: str) -> Any:
    if attribute in attributes:
        return attributes[attribute]
    # nested attributes, e.g. "Endpoint.Address"
    value = attributes
    for part in attribute.split("."):
        if not isinstance(value, dict) or part not in value:
            return None
        value = value[part]
    return value


def resolve(expr: Expression, context: ResolutionContext, resource_id: str = None) -> Any:
    """
    Evaluates an expression against the given context.

    :param expr: the expression to resolve
    :param context: parameters, mappings, pseudo parameters, and resolved resources
    :param resource_id: the resource owning the expression, only used in error messages
    :return: the resolved value, or ``UNKNOWN`` if it depends on a resource that is not applied yet
    :raises UnresolvedReference: if a parameter, resource, mapping entry or attribute does not exist
    :raises TypeMismatch: if a function receives an operand of the wrong type
    :raises IndexOutOfRange: if a Select index lies outside of the list
    """
    match expr:
        case Literal(value=value):
            return value

        case ParameterRef(name=name):
            if name not in context.parameters:
                raise UnresolvedReference(
                    name, f"Parameter {name} is not declared", resource_id=resource_id
                )
            return context.parameters[name]

        case AttributeRef(resource_id=target, attribute=attribute):
            try:
                return context.lookup_attribute(target, attribute)
            except UnresolvedReference as e:
                raise UnresolvedReference(e.reference, str(e), resource_id=resource_id) from e

        case PseudoRef(kind=kind):
            match kind:
                case "region":
                    return context.region
                case "accountId":
                    return context.account_id
                case "stackName":
                    return context.stack_name
                case "partition":
                    return context.partition
            raise UnresolvedReference(kind, f"Unknown pseudo parameter {kind}", resource_id)

        case Join(separator=separator, items=items):
            values = resolve(items, context, resource_id)
            if values is UNKNOWN:
                return UNKNOWN
            if not isinstance(values, list):
                raise TypeMismatch(
                    f"Fn::Join expects a list of values, got {type(values).__name__}", resource_id
                )
            parts = []
            for value in values:
                if value is UNKNOWN:
                    return UNKNOWN
                parts.append(_join_part(value, resource_id))
            return separator.join(parts)

        case Select(index=index, source=source):
            position = _to_index(resolve(index, context, resource_id), resource_id)
            values = resolve(source, context, resource_id)
            if position is UNKNOWN or values is UNKNOWN:
                return UNKNOWN
            if not isinstance(values, list):
                raise TypeMismatch(
                    f"Fn::Select expects a list, got {type(values).__name__}", resource_id
                )
            if position < 0 or position >= len(values):
                raise IndexOutOfRange(position, len(values), resource_id=resource_id)
            return values[position]

        case Split(delimiter=delimiter, source=source):
            value = resolve(source, context, resource_id)
            if value is UNKNOWN:
                return UNKNOWN
            if not isinstance(value, str):
                raise TypeMismatch(
                    f"Fn::Split expects a string, got {type(value).__name__}", resource_id
                )
            return value.split(delimiter)

        case MapLookup(map_name=map_name, key=key, attribute=attribute):
            name = resolve(map_name, context, resource_id)
            top_level_key = resolve(key, context, resource_id)
            second_level_key = resolve(attribute, context, resource_id)
            if UNKNOWN in (name, top_level_key, second_level_key):
                return UNKNOWN
            mapping = context.mappings.get(name)
            if mapping is None:
                raise UnresolvedReference(name, f"Mapping {name} is not declared", resource_id)
            row = mapping.get(top_level_key)
            if row is None:
                raise UnresolvedReference(
                    f"{name}.{top_level_key}",
                    f"Mapping {name} has no key {top_level_key}",
                    resource_id,
                )
            if second_level_key not in row:
                raise UnresolvedReference(
                    f"{name}.{top_level_key}.{second_level_key}",
                    f"Mapping {name} has no attribute {second_level_key} for key {top_level_key}",
                    resource_id,
                )
            return row[second_level_key]

        case GetAZs(region=region):
            region_name = resolve(region, context, resource_id)
            if region_name is UNKNOWN:
                return UNKNOWN
            if not isinstance(region_name, str):
                raise TypeMismatch("Fn::GetAZs expects a region name", resource_id)
            return list(context.availability_zones(region_name or context.region))

        case ListOf(items=items):
            return [resolve(item, context, resource_id) for item in items]

        case MapOf(entries=entries):
            return {key: resolve(value, context, resource_id) for key, value in entries}

    raise TypeMismatch(f"Unsupported expression {expr!r}", resource_id)


def resolve_properties(
    properties: dict[str, Expression], context: ResolutionContext, resource_id: str = None
) -> dict[str, Any]:
    return {key: resolve(value, context, resource_id) for key, value in properties.items()}


def _join_part(value: Any, resource_id: Optional[str]) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    raise TypeMismatch(
        f"Fn::Join can only join strings, got {type(value).__name__}", resource_id
    )


def _to_index(value: Any, resource_id: Optional[str]):
    if value is UNKNOWN:
        return UNKNOWN
    if isinstance(value, bool):
        raise TypeMismatch("Fn::Select index must be an integer", resource_id)
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    raise TypeMismatch(f"Fn::Select index must be an integer, got {value!r}", resource_id)
