"""
Byte-level progress for in-flight requests.

track_progress runs as a before-transform in front of the primary
reducer of progress-enabled actions. It only reacts to PROGRESS
events, which the primary reducers ignore.
"""

from typing import Optional

from .events import Event, Verb
from .models import Collection, Item, ResourceState, ResourceStatus, StatusType

# Actions whose requests can report progress
PROGRESS_COMPATIBLE_VERBS = frozenset({Verb.INDEX, Verb.SHOW, Verb.CREATE, Verb.UPDATE})


def compute_percent(loaded: int, total: Optional[int]) -> Optional[float]:
    """Fraction of the transfer completed, or None when the total is unknown."""
    if not total:
        return None
    return min(max(loaded / total, 0.0), 1.0)


def track_progress(state: ResourceState, event: Event) -> ResourceState:
    """
    Mark the target item or collection as PROGRESS with a percent.

    Values are left untouched. Index events target the collection,
    every other verb targets the item.
    """
    if event.status != StatusType.PROGRESS:
        return state

    status = ResourceStatus(
        type=StatusType.PROGRESS,
        percent=compute_percent(event.loaded, event.total),
    )

    if event.verb == Verb.INDEX:
        collection = state.collections.get(event.collection_key) or Collection(key=event.collection_key)
        return state.with_collection(collection.copy(status=status))

    item = state.items.get(event.key) or Item(key=event.key)
    return state.with_item(item.copy(status=status))
