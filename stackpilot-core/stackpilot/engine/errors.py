from __future__ import annotations

from typing import TYPE_CHECKING, Optional, Sequence

if TYPE_CHECKING:
    from stackpilot.engine.executor import ApplyResult, RollbackFailure


class StackpilotError(Exception):
    """Base class for all errors raised by the engine."""


class TemplateError(StackpilotError):
    """The template document is malformed or uses an unsupported construct."""


class ValidationError(StackpilotError):
    """
    Base class of the errors detected while validating or planning a template. These are raised before any
    provider call is made and are never retried.
    """

    resource_id: Optional[str]

    def __init__(self, message: str, resource_id: Optional[str] = None):
        if resource_id:
            message = f"{message} (in resource {resource_id})"
        super().__init__(message)
        self.resource_id = resource_id


class UnresolvedReference(ValidationError):
    """A parameter, resource attribute, mapping key or mapping attribute cannot be found."""

    def __init__(self, reference: str, message: str = None, resource_id: Optional[str] = None):
        super().__init__(message or f"Unresolved reference: {reference}", resource_id=resource_id)
        self.reference = reference


class TypeMismatch(ValidationError):
    """An intrinsic function received an operand of the wrong type."""


class IndexOutOfRange(ValidationError):
    """A Select index lies outside of the selected sequence."""

    def __init__(self, index: int, length: int, resource_id: Optional[str] = None):
        super().__init__(
            f"Index {index} is out of range for a list of length {length}", resource_id=resource_id
        )
        self.index = index
        self.length = length


class CyclicDependency(ValidationError):
    """The resources reference each other in a cycle."""

    def __init__(self, cycle: Sequence[str]):
        super().__init__("Circular dependency between resources: %s" % " -> ".join(cycle))
        self.cycle = list(cycle)


class DanglingReference(ValidationError):
    """A resource references (or depends on) a resource or parameter that is not declared."""

    def __init__(self, target: str, resource_id: str):
        super().__init__(
            f"Reference to undeclared resource or parameter {target}", resource_id=resource_id
        )
        self.target = target


class InvalidParameterValue(ValidationError):
    """A parameter value is missing, of the wrong type, or not part of the allowed values."""

    def __init__(self, parameter: str, message: str):
        super().__init__(f"Parameter {parameter}: {message}")
        self.parameter = parameter


class ProviderError(StackpilotError):
    """
    Error raised by a resource provider. Transient errors (throttling, timeouts) are retried with backoff,
    permanent errors (validation, conflicts, ...) fail the resource immediately.
    """

    def __init__(self, message: str, transient: bool = False, code: Optional[str] = None):
        super().__init__(message)
        self.transient = transient
        self.code = code

    @classmethod
    def throttling(cls, message: str = "Rate exceeded") -> ProviderError:
        return cls(message, transient=True, code="Throttling")

    @classmethod
    def timeout(cls, message: str = "Request timed out") -> ProviderError:
        return cls(message, transient=True, code="RequestTimeout")

    @classmethod
    def conflict(cls, message: str) -> ProviderError:
        return cls(message, transient=False, code="AlreadyExists")

    @classmethod
    def not_found(cls, message: str) -> ProviderError:
        return cls(message, transient=False, code="NotFound")

    @classmethod
    def invalid_request(cls, message: str) -> ProviderError:
        return cls(message, transient=False, code="ValidationError")

    @property
    def is_not_found(self) -> bool:
        return self.code == "NotFound"


_ROLLBACK_OUTCOMES = {
    "ROLLED_BACK": "all applied changes were rolled back",
    "ROLLBACK_FAILED": "the rollback failed",
    "FAILED": "rollback is disabled, the applied changes were kept",
}


def _describe_failure(result: ApplyResult) -> str:
    if result.failed:
        failure = result.failed
        return f"{failure.action.value} of resource {failure.resource_id} failed: {failure.error}"
    if result.aborted:
        return "Apply was aborted"
    return f"Apply ended with status {result.status.name}"


class ApplyFailed(StackpilotError):
    """
    An apply failed and the applied changes were rolled back (or rollback was disabled). The message names
    the failed resource, the attempted action and the outcome of the rollback.
    """

    def __init__(self, result: ApplyResult):
        outcome = _ROLLBACK_OUTCOMES.get(result.status.name, result.status.name)
        super().__init__(f"{_describe_failure(result)}, {outcome}")
        self.result = result
        self.resource_id = result.failed.resource_id if result.failed else None
        self.action = result.failed.action if result.failed else None


class PartialRollbackFailure(StackpilotError):
    """
    The rollback after a failed apply could not revert every resource. The listed resources need a manual
    reconciliation.
    """

    def __init__(self, failures: Sequence[RollbackFailure], result: ApplyResult = None):
        details = "; ".join(
            f"{failure.resource_id} ({failure.action}): {failure.error}" for failure in failures
        )
        message = f"{len(failures)} resource(s) could not be rolled back: {details}"
        if result is not None:
            message = f"{_describe_failure(result)}, {message}"
        super().__init__(message)
        self.failures = list(failures)
        self.result = result


class IncompatibleStateVersion(StackpilotError):
    """A persisted state record was written by a newer, incompatible version."""

    def __init__(self, resource_id: str, version: int, supported: int):
        super().__init__(
            f"State record of {resource_id} has version {version}, "
            f"only versions up to {supported} are supported"
        )
        self.resource_id = resource_id
        self.version = version
