"""
Resource state model - the data structures readers depend on.

A ResourceState is the snapshot of one resource type:
items keyed by derived key, named collections of keys,
the current selection and the pending new item.

Snapshots are never mutated after they are published.
Every change produces a new snapshot via copy().
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional


class ResourceError(Exception):
    """Base class for chora-resources errors."""
    pass


class ConfigurationError(ResourceError):
    """Raised when a resource configuration is invalid."""
    pass


class ActionNotEnabled(ConfigurationError):
    """Raised when a command is issued for an action the resource does not enable."""
    pass


class NetworkError(ResourceError):
    """
    Raised by transports when a request fails.

    Never escapes to the engine: transports convert it into
    a single on_error(http_code, detail) call.
    """

    def __init__(self, message: str, http_code: Optional[int] = None, detail: Any = None):
        super().__init__(message)
        self.http_code = http_code
        self.detail = detail if detail is not None else {"message": message}


class InvalidEvent(ResourceError, ValueError):
    """Raised when an Event is constructed with inconsistent fields."""
    pass


class ConsistencyWarning(UserWarning):
    """
    Diagnostic category for recoverable consistency conditions.

    Logged, never raised: a referenced key is missing, or a new item
    was requested while another one is still pending.
    """
    pass


class StatusType(Enum):
    """Lifecycle statuses of an item or collection."""
    UNINITIALIZED = "UNINITIALIZED"
    NEW = "NEW"
    EDITING = "EDITING"
    FETCHING = "FETCHING"
    CREATING = "CREATING"
    UPDATING = "UPDATING"
    DESTROYING = "DESTROYING"
    DESTROY_ERROR = "DESTROY_ERROR"
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"
    PROGRESS = "PROGRESS"


# Statuses with a network request outstanding
IN_FLIGHT_STATUSES = frozenset({
    StatusType.FETCHING,
    StatusType.CREATING,
    StatusType.UPDATING,
    StatusType.DESTROYING,
    StatusType.PROGRESS,
})


@dataclass(frozen=True)
class ResourceStatus:
    """
    Status of an item or collection.

    Exactly one type is active. SUCCESS carries synced_at;
    ERROR and DESTROY_ERROR carry error.
    """
    type: StatusType = StatusType.UNINITIALIZED
    http_code: Optional[int] = None
    error: Any = None
    synced_at: Optional[datetime] = None
    percent: Optional[float] = None

    @classmethod
    def success(cls, synced_at: datetime) -> "ResourceStatus":
        return cls(type=StatusType.SUCCESS, synced_at=synced_at)

    @classmethod
    def failure(
        cls,
        error: Any,
        http_code: Optional[int] = None,
        type: StatusType = StatusType.ERROR,
    ) -> "ResourceStatus":
        return cls(type=type, http_code=http_code, error=error)

    def merge(self, other: "ResourceStatus") -> "ResourceStatus":
        """Overlay the fields set on other, keeping the rest (e.g. synced_at)."""
        changes = {
            name: getattr(other, name)
            for name in ("http_code", "error", "synced_at", "percent")
            if getattr(other, name) is not None
        }
        return replace(self, type=other.type, **changes)

    @property
    def in_flight(self) -> bool:
        return self.type in IN_FLIGHT_STATUSES


@dataclass(frozen=True)
class Item:
    """
    A single resource entity.

    Attributes:
        key: Derived address of the item in its store
        values: Domain attributes (shallow-merged on every change)
        status: Lifecycle status
    """
    key: str
    values: Dict[str, Any] = field(default_factory=dict)
    status: ResourceStatus = field(default_factory=ResourceStatus)

    def copy(self, **changes) -> "Item":
        """Create a copy with optional field changes."""
        return replace(self, **changes)

    def merge_values(self, values: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        """Shallow merge: later fields overwrite earlier ones."""
        return {**self.values, **(values or {})}


@dataclass(frozen=True)
class Collection:
    """
    An ordered, duplicate-free view over item keys.

    A collection never owns item data, only references it.
    """
    key: str
    positions: List[str] = field(default_factory=list)
    status: ResourceStatus = field(default_factory=ResourceStatus)

    def copy(self, **changes) -> "Collection":
        """Create a copy with optional field changes."""
        return replace(self, **changes)


@dataclass(frozen=True)
class ResourceState:
    """
    Snapshot of one resource type.

    The shape (items, collections, selection_map, new_item_key) is
    stable across every event application.
    """
    items: Dict[str, Item] = field(default_factory=dict)
    collections: Dict[str, Collection] = field(default_factory=dict)
    selection_map: FrozenSet[str] = frozenset()
    new_item_key: Optional[str] = None

    def copy(self, **changes) -> "ResourceState":
        """Create a copy with optional field changes."""
        return replace(self, **changes)

    def with_item(self, item: Item) -> "ResourceState":
        return self.copy(items={**self.items, item.key: item})

    def with_collection(self, collection: Collection) -> "ResourceState":
        return self.copy(collections={**self.collections, collection.key: collection})

    def to_dict(self) -> dict:
        """Convert to a plain dictionary (statuses as their string values)."""
        return {
            "items": {
                key: {
                    "values": dict(item.values),
                    "status": _status_to_dict(item.status),
                }
                for key, item in self.items.items()
            },
            "collections": {
                key: {
                    "positions": list(collection.positions),
                    "status": _status_to_dict(collection.status),
                }
                for key, collection in self.collections.items()
            },
            "selectionMap": sorted(self.selection_map),
            "newItemKey": self.new_item_key,
        }


EMPTY_STATE = ResourceState()


def _status_to_dict(status: ResourceStatus) -> dict:
    d = {"type": status.type.value}
    if status.http_code is not None:
        d["httpCode"] = status.http_code
    if status.error is not None:
        d["error"] = status.error
    if status.synced_at is not None:
        d["syncedAt"] = status.synced_at.isoformat()
    if status.percent is not None:
        d["percent"] = status.percent
    return d
