"""
Model of the intrinsic expressions that can appear in resource properties and outputs.

The set of expressions is closed: every consumer (the resolver, the graph builder, ...) dispatches over the
variants below with a ``match`` statement, and ``Fn::Sub`` strings are desugared into ``Join`` expressions by
the template front-end instead of having their own variant.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterator, Literal as TypingLiteral, Optional, Union

PseudoKind = TypingLiteral["region", "accountId", "stackName", "partition"]

# maps the names of the supported pseudo parameters to their kind
PSEUDO_PARAMETERS: dict[str, PseudoKind] = {
    "AWS::Region": "region",
    "AWS::AccountId": "accountId",
    "AWS::StackName": "stackName",
    "AWS::Partition": "partition",
}


class _Unknown:
    """Placeholder for values that are only known after an upstream resource has been applied."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self):
        return "<unknown>"

    def __reduce__(self):
        return (_Unknown, ())


UNKNOWN = _Unknown()


@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class ParameterRef:
    name: str


@dataclass(frozen=True)
class AttributeRef:
    """Reference to an output attribute of a resource, or to its physical id if ``attribute`` is None."""

    resource_id: str
    attribute: Optional[str] = None


@dataclass(frozen=True)
class PseudoRef:
    kind: PseudoKind


@dataclass(frozen=True)
class Join:
    separator: str
    items: Expression


@dataclass(frozen=True)
class Select:
    index: Expression
    source: Expression


@dataclass(frozen=True)
class Split:
    delimiter: str
    source: Expression


@dataclass(frozen=True)
class MapLookup:
    map_name: Expression
    key: Expression
    attribute: Expression


@dataclass(frozen=True)
class GetAZs:
    region: Expression = field(default_factory=lambda: Literal(""))


@dataclass(frozen=True)
class ListOf:
    items: tuple[Expression, ...]


@dataclass(frozen=True)
class MapOf:
    entries: tuple[tuple[str, Expression], ...]

    def get(self, key: str) -> Optional[Expression]:
        for entry_key, value in self.entries:
            if entry_key == key:
                return value
        return None


Expression = Union[
    Literal,
    ParameterRef,
    AttributeRef,
    PseudoRef,
    Join,
    Select,
    Split,
    MapLookup,
    GetAZs,
    ListOf,
    MapOf,
]


def children(expr: Expression) -> tuple[Expression, ...]:
    """Returns the direct sub-expressions of the given expression."""
    match expr:
        case Literal() | ParameterRef() | AttributeRef() | PseudoRef():
            return ()
        case Join(items=items):
            return (items,)
        case Select(index=index, source=source):
            return index, source
        case Split(source=source):
            return (source,)
        case MapLookup(map_name=map_name, key=key, attribute=attribute):
            return map_name, key, attribute
        case GetAZs(region=region):
            return (region,)
        case ListOf(items=items):
            return items
        case MapOf(entries=entries):
            return tuple(value for _, value in entries)
        case _:
            raise TypeError(f"Not an expression: {expr!r}")


def walk(expr: Expression) -> Iterator[Expression]:
    """Iterates over the expression and all its (transitive) sub-expressions, without recursion."""
    stack = [expr]
    while stack:
        current = stack.pop()
        yield current
        stack.extend(reversed(children(current)))


def attribute_refs(expr: Expression) -> Iterator[AttributeRef]:
    for sub_expression in walk(expr):
        if isinstance(sub_expression, AttributeRef):
            yield sub_expression


def parameter_refs(expr: Expression) -> Iterator[ParameterRef]:
    for sub_expression in walk(expr):
        if isinstance(sub_expression, ParameterRef):
            yield sub_expression


def contains_unknown(value: Any) -> bool:
    """Whether a resolved value contains the ``UNKNOWN`` placeholder at any depth."""
    if value is UNKNOWN:
        return True
    if isinstance(value, dict):
        return any(contains_unknown(v) for v in value.values())
    if isinstance(value, (list, tuple)):
        return any(contains_unknown(v) for v in value)
    return False
