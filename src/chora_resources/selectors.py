"""
Read helpers over a resource state snapshot.
"""

from dataclasses import dataclass, field
from typing import Any, Iterable, List

from .keys import get_item_key, serialize_key
from .models import Collection, Item, ResourceState, ResourceStatus


@dataclass(frozen=True)
class CollectionWithItems:
    """A collection with its items resolved, in position order."""
    key: str
    positions: List[str] = field(default_factory=list)
    status: ResourceStatus = field(default_factory=ResourceStatus)
    items: List[Item] = field(default_factory=list)


def get_item(
    state: ResourceState,
    params: Any,
    key_by: str = "id",
    url_only_params: Iterable[str] = (),
) -> Item:
    """
    Get an item by key or parameters.

    Returns an empty UNINITIALIZED item when the key is unknown.
    """
    key = get_item_key(params, key_by, url_only_params)
    return state.items.get(key) or Item(key=key)


def get_collection(
    state: ResourceState,
    params: Any = None,
    url_only_params: Iterable[str] = (),
) -> CollectionWithItems:
    """
    Get a collection with its items.

    Positions with no matching item (transient during races) are
    skipped in items but kept in positions.
    """
    key = serialize_key(params, url_only_params)
    collection = state.collections.get(key) or Collection(key=key)
    return CollectionWithItems(
        key=key,
        positions=list(collection.positions),
        status=collection.status,
        items=[state.items[k] for k in collection.positions if k in state.items],
    )
