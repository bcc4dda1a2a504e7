"""
Operation-result events.

Every change to a resource state is expressed as an Event: an
optimistic event when a command is issued, and one settlement event
when the request it started succeeds or fails. Events are immutable
and carry everything the reducer needs, including their timestamp,
so applying them is a pure function.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from .models import InvalidEvent, StatusType


class Verb(Enum):
    """The closed set of operations a resource state understands."""
    # RESTful actions
    INDEX = "index"
    SHOW = "show"
    NEW = "new"
    CLEAR_NEW = "clear_new"
    EDIT_NEW = "edit_new"
    CREATE = "create"
    EDIT = "edit"
    UPDATE = "update"
    DESTROY = "destroy"
    # Selection actions
    SELECT = "select"
    SELECT_ANOTHER = "select_another"
    DESELECT = "deselect"
    CLEAR_SELECTED = "clear_selected"
    CLEAR = "clear"
    # Foreign key rewrite emitted by association propagation
    ASSOCIATE = "associate"


# Verbs that must be enabled on a resource before they can be issued
RESTFUL_VERBS = frozenset({
    Verb.INDEX,
    Verb.SHOW,
    Verb.NEW,
    Verb.CREATE,
    Verb.EDIT,
    Verb.UPDATE,
    Verb.DESTROY,
})

# Verbs that make requests to the remote API
REMOTE_ONLY_VERBS = frozenset({Verb.INDEX, Verb.SHOW})

_ERROR_STATUSES = (StatusType.ERROR, StatusType.DESTROY_ERROR)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Event:
    """
    An operation result for one resource type.

    Attributes:
        resource: Name of the resource type the event targets
        verb: Operation the event belongs to
        status: Phase of the operation (e.g. CREATING, SUCCESS, ERROR, PROGRESS)
        key: Key of the target item
        temp_key: Temporary key being replaced (create settlements)
        values: Attribute values carried by the event
        previous_values: Item values before the operation was issued
        collection_key: Key of the target collection (index)
        items: (key, values) pairs returned by an index request
        collection_keys: Collections a new item should be placed in
        http_code: HTTP status code of a failed request
        error: Error detail of a failed request
        loaded: Bytes transferred so far (progress)
        total: Total bytes expected (progress)
        timestamp: When the event was produced
    """
    resource: str
    verb: Verb
    status: Optional[StatusType] = None
    key: Optional[str] = None
    temp_key: Optional[str] = None
    values: Optional[Dict[str, Any]] = None
    previous_values: Optional[Dict[str, Any]] = None
    collection_key: Optional[str] = None
    items: Tuple[Tuple[str, Dict[str, Any]], ...] = ()
    collection_keys: Tuple[str, ...] = ()
    http_code: Optional[int] = None
    error: Any = None
    loaded: Optional[int] = None
    total: Optional[int] = None
    timestamp: datetime = field(default_factory=_now)

    def __post_init__(self):
        """Validate basic invariants."""
        if not self.resource:
            raise InvalidEvent("Event resource is required")
        if self.status in _ERROR_STATUSES and self.error is None:
            raise InvalidEvent(
                f"{self.verb.value} event with status {self.status.value} must carry an error"
            )
        if self.status == StatusType.PROGRESS and self.loaded is None:
            raise InvalidEvent(f"{self.verb.value} progress event must carry 'loaded'")
        if self.verb == Verb.INDEX and self.collection_key is None:
            raise InvalidEvent("index event must carry a collection_key")

    @property
    def settled(self) -> bool:
        """True for events that end a request (success or failure)."""
        return self.status in (StatusType.SUCCESS, StatusType.ERROR, StatusType.DESTROY_ERROR)

    def describe(self) -> str:
        status = self.status.value if self.status else "-"
        target = self.collection_key if self.verb == Verb.INDEX else self.key
        return f"{self.resource}.{self.verb.value}[{status}] {target!r}"
