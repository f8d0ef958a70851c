from stackpilot.engine.expressions import (
    UNKNOWN,
    AttributeRef,
    Join,
    ListOf,
    Literal,
    MapLookup,
    MapOf,
    ParameterRef,
    PseudoRef,
    Select,
    Split,
    attribute_refs,
    contains_unknown,
    parameter_refs,
    walk,
)


def test_walk_visits_all_sub_expressions():
    expression = Select(
        Literal("1"),
        Split(":", Select(Literal("0"), AttributeRef("InterfaceEndpoint", "DnsEntries"))),
    )
    visited = list(walk(expression))
    assert visited[0] is expression
    assert AttributeRef("InterfaceEndpoint", "DnsEntries") in visited
    assert len(visited) == 6


def test_references():
    expression = MapOf(
        (
            ("VpcId", AttributeRef("Vpc")),
            (
                "Tags",
                ListOf(
                    (
                        MapOf(
                            (
                                ("Key", Literal("Name")),
                                ("Value", Join("", ListOf((ParameterRef("ProjectName"), Literal("-SG"))))),
                            )
                        ),
                    )
                ),
            ),
            ("ImageId", MapLookup(Literal("RegionMap"), PseudoRef("region"), Literal("AMI"))),
        )
    )
    assert list(attribute_refs(expression)) == [AttributeRef("Vpc")]
    assert list(parameter_refs(expression)) == [ParameterRef("ProjectName")]


def test_expressions_are_hashable_values():
    assert Join(",", ListOf((Literal("a"),))) == Join(",", ListOf((Literal("a"),)))
    assert len({AttributeRef("Vpc"), AttributeRef("Vpc"), AttributeRef("Vpc", "CidrBlock")}) == 2


def test_map_of_get():
    expression = MapOf((("Key", Literal("Name")), ("Value", Literal("web"))))
    assert expression.get("Value") == Literal("web")
    assert expression.get("Other") is None


def test_contains_unknown():
    assert contains_unknown(UNKNOWN)
    assert contains_unknown({"AliasTarget": {"DNSName": UNKNOWN}})
    assert contains_unknown(["sg-1", UNKNOWN])
    assert not contains_unknown({"SecurityGroupIds": ["sg-1"]})
    assert not contains_unknown(None)
