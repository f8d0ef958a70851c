"""
Template front-end: parses JSON or YAML CloudFormation-style templates (including the short-form intrinsic
function tags like ``!Ref`` or ``!GetAtt``) into resource definitions with typed expressions.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Optional, Union

import yaml

from stackpilot.engine.errors import TemplateError
from stackpilot.engine.expressions import (
    PSEUDO_PARAMETERS,
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
from stackpilot.engine.graph import Output, ResourceDefinition
from stackpilot.engine.parameters import Parameter, parse_parameters

LOG = logging.getLogger(__name__)

# regex matching the ${...} placeholders in Fn::Sub strings
SUB_PLACEHOLDER_REGEX = re.compile(r"\$\{([^}]*)\}")


class TemplateLoader(yaml.SafeLoader):
    """Safe YAML loader that parses date strings as string (not date objects), and understands the
    CloudFormation short-form tags."""


TemplateLoader.yaml_implicit_resolvers = {
    k: [r for r in v if r[0] != "tag:yaml.org,2002:timestamp"]
    for k, v in yaml.SafeLoader.yaml_implicit_resolvers.items()
}


def _construct_intrinsic(loader: yaml.Loader, tag_suffix: str, node: yaml.Node) -> dict:
    if isinstance(node, yaml.ScalarNode):
        value = loader.construct_scalar(node)
    elif isinstance(node, yaml.SequenceNode):
        value = loader.construct_sequence(node, deep=True)
    else:
        value = loader.construct_mapping(node, deep=True)

    if tag_suffix == "Ref":
        return {"Ref": value}
    if tag_suffix == "GetAtt" and isinstance(value, str):
        value = value.split(".", 1)
    if tag_suffix == "Condition":
        return {"Condition": value}
    return {f"Fn::{tag_suffix}": value}


TemplateLoader.add_multi_constructor("!", _construct_intrinsic)


@dataclass
class Template:
    resources: list[ResourceDefinition]
    parameters: dict[str, Parameter] = field(default_factory=dict)
    mappings: dict[str, dict[str, dict[str, Any]]] = field(default_factory=dict)
    outputs: list[Output] = field(default_factory=list)
    description: Optional[str] = None


def parse_template(body: Union[str, bytes, dict]) -> dict:
    """Parses the template body (JSON or YAML) into a plain dict, with intrinsic functions in long form."""
    if isinstance(body, dict):
        return body
    if isinstance(body, bytes):
        body = body.decode("utf-8")
    try:
        parsed = json.loads(body)
    except ValueError:
        try:
            parsed = yaml.load(body, Loader=TemplateLoader)
        except yaml.YAMLError as e:
            raise TemplateError(f"Unable to parse template: {e}") from e
    if not isinstance(parsed, dict):
        raise TemplateError("Template must be a JSON or YAML object")
    return parsed


def load_template(body: Union[str, bytes, dict]) -> Template:
    """
    Parses a template into its parameter declarations, mappings, resource definitions and outputs.

    :param body: the template as JSON/YAML string, or as an already parsed dict
    :return: the parsed template
    :raises TemplateError: if the template is malformed or uses an unsupported intrinsic function
    """
    raw = parse_template(body)

    resources = raw.get("Resources")
    if not resources or not isinstance(resources, dict):
        raise TemplateError("Template contains no Resources section")

    parameters = parse_parameters(raw.get("Parameters") or {})
    parser = ExpressionParser(parameter_names=set(parameters))

    definitions = []
    for logical_id, resource in resources.items():
        if not isinstance(resource, dict) or not resource.get("Type"):
            raise TemplateError(f"Resource {logical_id} has no Type")
        properties = resource.get("Properties") or {}
        if not isinstance(properties, dict):
            raise TemplateError(f"Properties of resource {logical_id} must be an object")
        depends_on = resource.get("DependsOn") or []
        if isinstance(depends_on, str):
            depends_on = [depends_on]
        definitions.append(
            ResourceDefinition(
                logical_id=logical_id,
                type=resource["Type"],
                properties={
                    key: parser.parse(value, location=f"{logical_id}.{key}")
                    for key, value in properties.items()
                },
                depends_on=list(depends_on),
            )
        )

    outputs = []
    for name, output in (raw.get("Outputs") or {}).items():
        if not isinstance(output, dict) or "Value" not in output:
            raise TemplateError(f"Output {name} has no Value")
        outputs.append(
            Output(
                name=name,
                value=parser.parse(output["Value"], location=f"Outputs.{name}"),
                description=output.get("Description"),
            )
        )

    return Template(
        resources=definitions,
        parameters=parameters,
        mappings=raw.get("Mappings") or {},
        outputs=outputs,
        description=raw.get("Description"),
    )


class ExpressionParser:
    """Turns the intrinsic functions of a parsed template into ``Expression`` trees."""

    def __init__(self, parameter_names: set[str]):
        self.parameter_names = parameter_names

    def parse(self, value: Any, location: str = "") -> Expression:
        if isinstance(value, dict):
            if len(value) == 1:
                key = next(iter(value))
                if key == "Ref" or key.startswith("Fn::"):
                    return self._parse_intrinsic(key, value[key], location)
                if key == "Condition":
                    raise TemplateError(f"Conditions are not supported ({location})")
            return MapOf(
                tuple((key, self.parse(item, f"{location}.{key}")) for key, item in value.items())
            )
        if isinstance(value, list):
            return ListOf(tuple(self.parse(item, f"{location}[{i}]") for i, item in enumerate(value)))
        return Literal(value)

    def ref(self, name: str) -> Expression:
        if name in PSEUDO_PARAMETERS:
            return PseudoRef(PSEUDO_PARAMETERS[name])
        if name in self.parameter_names:
            return ParameterRef(name)
        return AttributeRef(name)

    def _parse_intrinsic(self, function: str, args: Any, location: str) -> Expression:
        match function:
            case "Ref":
                if not isinstance(args, str):
                    raise TemplateError(f"Ref expects a name ({location})")
                return self.ref(args)

            case "Fn::GetAtt":
                if isinstance(args, str):
                    args = args.split(".", 1)
                if not isinstance(args, list) or len(args) != 2:
                    raise TemplateError(f"Fn::GetAtt expects [resource, attribute] ({location})")
                return AttributeRef(args[0], args[1])

            case "Fn::Join":
                self._check_args(function, args, 2, location)
                separator, items = args
                return Join(str(separator), self.parse(items, location))

            case "Fn::Select":
                self._check_args(function, args, 2, location)
                return Select(self.parse(args[0], location), self.parse(args[1], location))

            case "Fn::Split":
                self._check_args(function, args, 2, location)
                return Split(str(args[0]), self.parse(args[1], location))

            case "Fn::FindInMap":
                self._check_args(function, args, 3, location)
                return MapLookup(*(self.parse(arg, location) for arg in args))

            case "Fn::GetAZs":
                return GetAZs(self.parse(args if args is not None else "", location))

            case "Fn::Sub":
                if isinstance(args, str):
                    return self._parse_sub(args, {}, location)
                self._check_args(function, args, 2, location)
                template, variables = args
                if not isinstance(template, str) or not isinstance(variables, dict):
                    raise TemplateError(f"Fn::Sub expects [string, variables] ({location})")
                return self._parse_sub(template, variables, location)

        raise TemplateError(f"Unsupported intrinsic function {function} ({location})")

    def _parse_sub(self, template: str, variables: dict, location: str) -> Expression:
        parts: list[Expression] = []
        position = 0
        for match in SUB_PLACEHOLDER_REGEX.finditer(template):
            if match.start() > position:
                parts.append(Literal(template[position : match.start()]))
            position = match.end()
            name = match.group(1).strip()
            if name.startswith("!"):
                # ${!Literal} renders as ${Literal}
                parts.append(Literal("${%s}" % name[1:]))
            elif name in variables:
                parts.append(self.parse(variables[name], location))
            elif name in PSEUDO_PARAMETERS or name in self.parameter_names:
                parts.append(self.ref(name))
            elif "." in name:
                resource_id, attribute = name.split(".", 1)
                parts.append(AttributeRef(resource_id, attribute))
            elif name:
                parts.append(AttributeRef(name))
            else:
                raise TemplateError(f"Empty placeholder in Fn::Sub ({location})")
        if position < len(template):
            parts.append(Literal(template[position:]))

        if not parts:
            return Literal("")
        if len(parts) == 1 and isinstance(parts[0], Literal):
            return parts[0]
        return Join("", ListOf(tuple(parts)))

    @staticmethod
    def _check_args(function: str, args: Any, count: int, location: str):
        if not isinstance(args, list) or len(args) != count:
            raise TemplateError(f"{function} expects a list of {count} arguments ({location})")
