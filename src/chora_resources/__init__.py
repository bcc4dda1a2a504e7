"""
chora-resources: local cache of remote RESTful resources.

Readers see a consistent snapshot per resource type. Writers issue
optimistic commands that are reconciled against server responses:
temporary keys are remapped once the server assigns an identity, and
associated resources have their reference fields rewritten in step.
"""

from .models import (
    StatusType,
    ResourceStatus,
    Item,
    Collection,
    ResourceState,
    EMPTY_STATE,
    ResourceError,
    ConfigurationError,
    ActionNotEnabled,
    NetworkError,
    InvalidEvent,
    ConsistencyWarning,
)
from .keys import serialize_key, get_item_key, generate_temp_key
from .events import Event, Verb
from .associations import AssociationKind, AssociationLink, propagate
from .progress import track_progress
from .config import ActionOptions, ResourceConfig, load_config
from .reducer import ResourceReducer, build_reducer, apply, compose
from .transport import Request, Transport, HttpTransport, HttpConfig
from .observer import StateObserver, StateChange
from .selectors import CollectionWithItems, get_item, get_collection
from .engine import ResourceEngine

__version__ = "0.1.0"
__all__ = [
    # State
    "StatusType",
    "ResourceStatus",
    "Item",
    "Collection",
    "ResourceState",
    "EMPTY_STATE",
    # Errors
    "ResourceError",
    "ConfigurationError",
    "ActionNotEnabled",
    "NetworkError",
    "InvalidEvent",
    "ConsistencyWarning",
    # Keys
    "serialize_key",
    "get_item_key",
    "generate_temp_key",
    # Events and reducers
    "Event",
    "Verb",
    "ResourceReducer",
    "build_reducer",
    "apply",
    "compose",
    "track_progress",
    # Associations
    "AssociationKind",
    "AssociationLink",
    "propagate",
    # Configuration
    "ActionOptions",
    "ResourceConfig",
    "load_config",
    # Transport
    "Request",
    "Transport",
    "HttpTransport",
    "HttpConfig",
    # Engine
    "ResourceEngine",
    "StateObserver",
    "StateChange",
    "CollectionWithItems",
    "get_item",
    "get_collection",
]
