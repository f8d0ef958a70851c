from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from stackpilot.engine.errors import InvalidParameterValue

LOG = logging.getLogger(__name__)

# placeholder shown in logs instead of the value of NoEcho parameters
MASKED_VALUE = "****"

LIST_TYPES = ("CommaDelimitedList", "List<Number>", "List<String>")


@dataclass
class Parameter:
    name: str
    type: str = "String"
    default: Optional[Any] = None
    allowed_values: Optional[list[Any]] = None
    description: Optional[str] = None
    no_echo: bool = False
    constraint_description: Optional[str] = None

    value: Optional[Any] = field(default=None, compare=False)

    @property
    def is_list(self) -> bool:
        return self.type in LIST_TYPES or (
            self.type.startswith("List<") and self.type.endswith(">")
        )

    @property
    def display_value(self) -> Any:
        return MASKED_VALUE if self.no_echo else self.value


def parse_parameters(raw_parameters: dict[str, dict]) -> dict[str, Parameter]:
    """Creates the parameter declarations from the ``Parameters`` section of a template."""
    result = {}
    for name, definition in (raw_parameters or {}).items():
        definition = definition or {}
        no_echo = definition.get("NoEcho", False)
        result[name] = Parameter(
            name=name,
            type=str(definition.get("Type", "String")),
            default=definition.get("Default"),
            allowed_values=definition.get("AllowedValues"),
            description=definition.get("Description"),
            no_echo=str(no_echo).lower() == "true",
            constraint_description=definition.get("ConstraintDescription"),
        )
    return result


def bind_parameters(
    declared: dict[str, Parameter], values: dict[str, Any] = None
) -> dict[str, Parameter]:
    """
    Binds the given values (falling back to the defaults) to the declared parameters, and validates them.

    :param declared: the declared parameters, by name
    :param values: the values passed by the caller, by parameter name
    :return: the declared parameters with their ``value`` set
    :raises InvalidParameterValue: if a value is missing, of the wrong type, or not allowed
    """
    values = dict(values or {})
    for name in values:
        if name not in declared:
            raise InvalidParameterValue(name, "parameter is not declared in the template")

    result = {}
    for name, parameter in declared.items():
        if name in values:
            value = values[name]
        elif parameter.default is not None:
            value = parameter.default
        else:
            raise InvalidParameterValue(name, "no value given and no default declared")

        value = _convert_value(parameter, value)
        _validate_allowed_values(parameter, value)

        bound = Parameter(
            name=parameter.name,
            type=parameter.type,
            default=parameter.default,
            allowed_values=parameter.allowed_values,
            description=parameter.description,
            no_echo=parameter.no_echo,
            constraint_description=parameter.constraint_description,
            value=value,
        )
        LOG.debug("Bound parameter %s=%s", name, bound.display_value)
        result[name] = bound
    return result


def parameter_values(parameters: dict[str, Parameter]) -> dict[str, Any]:
    return {name: parameter.value for name, parameter in parameters.items()}


def _convert_value(parameter: Parameter, value: Any) -> Any:
    if parameter.is_list:
        if isinstance(value, str):
            items = [item.strip() for item in value.split(",")] if value else []
        elif isinstance(value, list):
            items = list(value)
        else:
            raise InvalidParameterValue(parameter.name, f"expected a list, got {value!r}")
        if parameter.type == "List<Number>":
            for item in items:
                _check_number(parameter, item)
        return [str(item) for item in items]

    if isinstance(value, (dict, list)):
        raise InvalidParameterValue(parameter.name, f"expected a scalar value, got {value!r}")
    if isinstance(value, bool):
        value = "true" if value else "false"
    if parameter.type == "Number":
        _check_number(parameter, value)
    # like CloudFormation, parameter values are always passed on as strings
    return str(value)


def _check_number(parameter: Parameter, value: Any):
    try:
        float(value)
    except (TypeError, ValueError):
        raise InvalidParameterValue(parameter.name, f"{value!r} is not a number")


def _validate_allowed_values(parameter: Parameter, value: Any):
    if not parameter.allowed_values:
        return
    allowed = [str(item) for item in parameter.allowed_values]
    candidates = value if isinstance(value, list) else [value]
    for candidate in candidates:
        if candidate not in allowed:
            message = parameter.constraint_description or (
                f"value {candidate!r} is not one of the allowed values {allowed}"
            )
            raise InvalidParameterValue(parameter.name, message)
