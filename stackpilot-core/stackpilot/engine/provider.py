"""
The capability interface the engine uses to manage real resources, and the plugin mechanism providers are
discovered with.
"""

from __future__ import annotations

import abc
import logging
from typing import Any, Callable, TypeVar

from plux import Plugin, PluginManager

from stackpilot.engine.errors import ProviderError, StackpilotError

LOG = logging.getLogger(__name__)

T = TypeVar("T")

Properties = dict[str, Any]
Attributes = dict[str, Any]


class ResourceProvider(abc.ABC):
    """
    Creates, updates, deletes and describes resources of any type by their resolved properties. Failures are
    raised as ``ProviderError``, flagged as transient if the call may succeed when retried.
    """

    @abc.abstractmethod
    def create(self, resource_type: str, properties: Properties) -> tuple[str, Attributes]:
        """
        Creates a resource.

        :return: the physical id assigned to the resource, and its output attributes
        """

    @abc.abstractmethod
    def update(
        self,
        resource_type: str,
        physical_id: str,
        properties: Properties,
        previous_properties: Properties,
    ) -> tuple[str, Attributes]:
        """
        Updates the mutable properties of an existing resource in place.

        :return: the physical id of the resource (usually unchanged), and its output attributes
        """

    @abc.abstractmethod
    def delete(self, resource_type: str, physical_id: str) -> None:
        """Deletes a resource, raises a not-found ``ProviderError`` if it does not exist."""

    @abc.abstractmethod
    def describe(self, resource_type: str, physical_id: str) -> Attributes:
        """Returns the current output attributes of a resource."""


class NoResourceProvider(StackpilotError):
    """No provider plugin is registered under the requested name."""


class ProviderPlugin(Plugin):
    """
    Base class for provider plugins. Subclasses set ``factory`` to the provider class when loaded.
    """

    namespace = "stackpilot.providers"

    factory: Callable[..., ResourceProvider]


plugin_manager = PluginManager(ProviderPlugin.namespace)


def load_provider(name: str, **kwargs) -> ResourceProvider:
    """
    Loads the provider plugin with the given name and instantiates its provider.

    :param name: the name of the plugin in the ``stackpilot.providers`` namespace
    :param kwargs: passed to the provider factory
    :raises NoResourceProvider: if no such plugin exists
    """
    if not plugin_manager.exists(name):
        raise NoResourceProvider(f"No resource provider named {name}")
    plugin = plugin_manager.load(name)
    return plugin.factory(**kwargs)


def invoke_provider(function: Callable[..., T], *args) -> T:
    """Calls a provider operation, raising any error that is not a ``ProviderError`` as a permanent one."""
    try:
        return function(*args)
    except ProviderError:
        raise
    except Exception as e:
        LOG.debug("Unexpected error in provider call %s", getattr(function, "__name__", function), exc_info=True)
        raise ProviderError(f"Unexpected provider error: {e}", transient=False) from e


def is_transient(error: Exception) -> bool:
    return isinstance(error, ProviderError) and error.transient
