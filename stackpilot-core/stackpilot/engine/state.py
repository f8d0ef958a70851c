"""
Persistence of the last applied state of every resource: its type, resolved properties, provider-assigned
physical id and attributes, and the resources it depended on when it was applied.

Each resource is stored as its own record. Records are written by exactly one apply task each, and every
write is an atomic single-record commit, so a crash between two commits leaves both records readable.
"""

from __future__ import annotations

import abc
import copy
import logging
import os
import threading
from dataclasses import dataclass, field
from typing import Any, Optional
from urllib.parse import quote, unquote

from stackpilot import config
from stackpilot.constants import STATE_FORMAT_VERSION
from stackpilot.engine.errors import IncompatibleStateVersion
from stackpilot.utils.json import FileMappedDocument

LOG = logging.getLogger(__name__)

_KNOWN_FIELDS = {"version", "resource_id", "type", "properties", "physical_id", "attributes", "dependencies"}


@dataclass
class StateRecord:
    resource_id: str
    type: str
    properties: dict[str, Any]
    physical_id: str
    attributes: dict[str, Any] = field(default_factory=dict)
    dependencies: list[str] = field(default_factory=list)
    # fields written by newer versions of the format, passed through unchanged
    extra: dict[str, Any] = field(default_factory=dict, compare=False)

    def to_dict(self) -> dict[str, Any]:
        result = dict(copy.deepcopy(self.extra))
        result.update(
            {
                "version": STATE_FORMAT_VERSION,
                "resource_id": self.resource_id,
                "type": self.type,
                "properties": copy.deepcopy(self.properties),
                "physical_id": self.physical_id,
                "attributes": copy.deepcopy(self.attributes),
                "dependencies": sorted(self.dependencies),
            }
        )
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any], resource_id: str = None) -> StateRecord:
        data = migrate_record(data, resource_id)
        return cls(
            resource_id=data["resource_id"],
            type=data["type"],
            properties=copy.deepcopy(data.get("properties") or {}),
            physical_id=data["physical_id"],
            attributes=copy.deepcopy(data.get("attributes") or {}),
            dependencies=list(data.get("dependencies") or []),
            extra={k: copy.deepcopy(v) for k, v in data.items() if k not in _KNOWN_FIELDS},
        )

    def copy(self, **changes) -> StateRecord:
        record = copy.deepcopy(self)
        for key, value in changes.items():
            setattr(record, key, value)
        return record


def migrate_record(data: dict[str, Any], resource_id: str = None) -> dict[str, Any]:
    """
    Upgrades a persisted record to the current format version.

    Version 0 records (written before the format was versioned) carry no ``version`` field, store the
    physical id under ``PhysicalResourceId`` and have neither attributes nor dependencies.

    :raises IncompatibleStateVersion: if the record was written by a newer format version
    """
    data = dict(data)
    version = int(data.get("version", 0))
    resource_id = data.get("resource_id") or resource_id
    if version > STATE_FORMAT_VERSION:
        raise IncompatibleStateVersion(resource_id, version, STATE_FORMAT_VERSION)

    if version < 1:
        LOG.debug("Migrating state record of %s from version %s", resource_id, version)
        if "physical_id" not in data and "PhysicalResourceId" in data:
            data["physical_id"] = data.pop("PhysicalResourceId")
        data.setdefault("attributes", {})
        data.setdefault("dependencies", [])

    data["resource_id"] = resource_id
    data["version"] = STATE_FORMAT_VERSION
    return data


class StateStore(abc.ABC):
    """
    Handle to the persisted state of one stack. The store is opened before planning, every successfully
    applied resource is committed individually, and the store is closed at the end of the apply. It can be
    used as a context manager.
    """

    def open(self) -> None:
        pass

    def close(self) -> None:
        pass

    def __enter__(self) -> StateStore:
        self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    @abc.abstractmethod
    def get(self, resource_id: str) -> Optional[StateRecord]:
        """Returns the record of the given resource, or None if it has no applied state."""

    @abc.abstractmethod
    def put(self, record: StateRecord) -> None:
        """Atomically writes (creates or replaces) the record of a single resource."""

    @abc.abstractmethod
    def remove(self, resource_id: str) -> None:
        """Removes the record of a single resource, if it exists."""

    @abc.abstractmethod
    def list(self) -> dict[str, StateRecord]:
        """Returns all records, by resource id."""

    def __contains__(self, resource_id: str) -> bool:
        return self.get(resource_id) is not None

    def __len__(self) -> int:
        return len(self.list())


class InMemoryStateStore(StateStore):
    """State store keeping serialized records in memory, mostly used for tests and dry runs."""

    def __init__(self):
        self._records: dict[str, dict[str, Any]] = {}
        self._mutex = threading.RLock()

    def get(self, resource_id: str) -> Optional[StateRecord]:
        with self._mutex:
            data = self._records.get(resource_id)
        return StateRecord.from_dict(data, resource_id) if data is not None else None

    def put(self, record: StateRecord) -> None:
        with self._mutex:
            self._records[record.resource_id] = record.to_dict()

    def remove(self, resource_id: str) -> None:
        with self._mutex:
            self._records.pop(resource_id, None)

    def list(self) -> dict[str, StateRecord]:
        with self._mutex:
            items = list(self._records.items())
        return {resource_id: StateRecord.from_dict(data, resource_id) for resource_id, data in items}


class FileStateStore(StateStore):
    """
    State store writing one JSON document per resource to ``<state_dir>/resources/``. Every document is
    written to a temporary file first and then renamed over the previous version.
    """

    def __init__(self, state_dir: str = None):
        self.state_dir = state_dir or config.STATE_DIR
        self.resources_dir = os.path.join(self.state_dir, "resources")

    def open(self) -> None:
        os.makedirs(self.resources_dir, exist_ok=True)
        LOG.debug("Opened state store in %s", self.state_dir)

    def close(self) -> None:
        LOG.debug("Closed state store in %s", self.state_dir)

    def _path(self, resource_id: str) -> str:
        return os.path.join(self.resources_dir, f"{quote(resource_id, safe='')}.json")

    def get(self, resource_id: str) -> Optional[StateRecord]:
        path = self._path(resource_id)
        if not os.path.exists(path):
            return None
        return StateRecord.from_dict(FileMappedDocument(path), resource_id)

    def put(self, record: StateRecord) -> None:
        document = FileMappedDocument(self._path(record.resource_id))
        document.clear()
        document.update(record.to_dict())
        document.save()

    def remove(self, resource_id: str) -> None:
        FileMappedDocument(self._path(resource_id)).delete()

    def list(self) -> dict[str, StateRecord]:
        if not os.path.isdir(self.resources_dir):
            return {}
        result = {}
        for file_name in sorted(os.listdir(self.resources_dir)):
            # skip leftovers of interrupted writes
            if file_name.startswith(".") or not file_name.endswith(".json"):
                continue
            resource_id = unquote(file_name[: -len(".json")])
            document = FileMappedDocument(os.path.join(self.resources_dir, file_name))
            result[resource_id] = StateRecord.from_dict(document, resource_id)
        return result
