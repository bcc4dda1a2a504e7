"""
Lifecycle reducer - the resource state machine.

Each verb has one transition function (state, event) -> state that
handles every phase of that verb (optimistic, success, error).
Transitions never raise and never mutate the state they receive:
they build and return a new snapshot. A phase a transition does not
handle (e.g. PROGRESS) leaves the state unchanged.

References to keys that are missing from the store are tolerated:
a placeholder item is synthesized and a ConsistencyWarning is logged.
"""

import logging
from dataclasses import replace
from typing import Callable, Dict, FrozenSet, Iterable, Optional

from .config import Reducer, ResourceConfig
from .events import Event, Verb
from .models import (
    EMPTY_STATE,
    Collection,
    ConsistencyWarning,
    Item,
    ResourceState,
    ResourceStatus,
    StatusType,
)
from .progress import PROGRESS_COMPATIBLE_VERBS, track_progress

logger = logging.getLogger(__name__)


def _warn(message: str) -> None:
    logger.warning("%s: %s", ConsistencyWarning.__name__, message)


# Helpers

def _unique(keys: Iterable[str]) -> list:
    seen = set()
    result = []
    for key in keys:
        if key not in seen:
            seen.add(key)
            result.append(key)
    return result


def _existing_item(state: ResourceState, event: Event, status: StatusType) -> Item:
    """The event's target item, or a placeholder when it is missing."""
    item = state.items.get(event.key)
    if item is None:
        _warn(
            f"{event.resource}.{event.verb.value}'s key '{event.key}' does not match any "
            f"items in the store. (A placeholder item was created.)"
        )
        item = Item(key=event.key, status=ResourceStatus(type=status))
    return item


def _add_to_collections(
    collections: Dict[str, Collection],
    collection_keys: Iterable[str],
    key: str,
) -> Dict[str, Collection]:
    collection_keys = list(collection_keys)
    if not collection_keys:
        return collections

    collections = dict(collections)
    for collection_key in collection_keys:
        collection = collections.get(collection_key) or Collection(key=collection_key)
        if key not in collection.positions:
            collection = collection.copy(positions=[*collection.positions, key])
        collections[collection_key] = collection
    return collections


def _remove_key(state: ResourceState, key: str) -> ResourceState:
    """Remove an item and every reference to it."""
    items = {k: v for k, v in state.items.items() if k != key}
    collections = {
        ckey: collection.copy(positions=[k for k in collection.positions if k != key])
        if key in collection.positions else collection
        for ckey, collection in state.collections.items()
    }
    return state.copy(
        items=items,
        collections=collections,
        selection_map=state.selection_map - {key},
        new_item_key=None if state.new_item_key == key else state.new_item_key,
    )


def _replace_key(state: ResourceState, old: str, new: str) -> ResourceState:
    """Rewrite every reference to old as new (items excepted)."""
    collections = {
        ckey: collection.copy(
            positions=_unique(new if k == old else k for k in collection.positions)
        )
        if old in collection.positions else collection
        for ckey, collection in state.collections.items()
    }
    selection_map: FrozenSet[str] = state.selection_map
    if old in selection_map:
        selection_map = (selection_map - {old}) | {new}

    return state.copy(
        collections=collections,
        selection_map=selection_map,
        new_item_key=None if state.new_item_key in (old, new) else state.new_item_key,
    )


def _success(event: Event) -> ResourceStatus:
    return ResourceStatus.success(event.timestamp)


def _failure(event: Event, type: StatusType = StatusType.ERROR) -> ResourceStatus:
    return ResourceStatus.failure(event.error, http_code=event.http_code, type=type)


# RESTful transitions

def reduce_index(state: ResourceState, event: Event) -> ResourceState:
    """Fetch a collection: FETCHING -> SUCCESS (items upserted, positions replaced) | ERROR."""
    collection = state.collections.get(event.collection_key) or Collection(key=event.collection_key)

    if event.status == StatusType.FETCHING:
        return state.with_collection(
            collection.copy(status=ResourceStatus(type=StatusType.FETCHING))
        )

    if event.status == StatusType.SUCCESS:
        items = dict(state.items)
        for key, values in event.items:
            existing = items.get(key)
            merged = existing.merge_values(values) if existing else dict(values)
            items[key] = Item(key=key, values=merged, status=_success(event))

        collection = collection.copy(
            positions=_unique(key for key, _ in event.items),
            status=_success(event),
        )
        return state.copy(items=items).with_collection(collection)

    if event.status == StatusType.ERROR:
        return state.with_collection(collection.copy(status=_failure(event)))

    return state


def reduce_show(state: ResourceState, event: Event) -> ResourceState:
    """Fetch one item: FETCHING -> SUCCESS | ERROR."""
    if event.status == StatusType.FETCHING:
        item = state.items.get(event.key) or Item(key=event.key)
        return state.with_item(item.copy(status=ResourceStatus(type=StatusType.FETCHING)))

    if event.status == StatusType.SUCCESS:
        item = state.items.get(event.key) or Item(key=event.key)
        return state.with_item(
            item.copy(values=item.merge_values(event.values), status=_success(event))
        )

    if event.status == StatusType.ERROR:
        item = _existing_item(state, event, StatusType.ERROR)
        return state.with_item(item.copy(status=_failure(event)))

    return state


def reduce_new(state: ResourceState, event: Event) -> ResourceState:
    """Start a new, unsaved item under a temporary key."""
    previous_key = state.new_item_key
    if previous_key is not None and previous_key != event.key:
        previous = state.items.get(previous_key)
        # Items already sent to the server are left to settle
        if previous is not None and previous.status.type == StatusType.NEW:
            _warn(
                f"{event.resource}.new was called while item '{previous_key}' is still pending. "
                f"(The previous new item was discarded.)"
            )
            state = _remove_key(state, previous_key)

    item = Item(
        key=event.key,
        values=dict(event.values or {}),
        status=ResourceStatus(type=StatusType.NEW),
    )
    return state.copy(
        items={**state.items, item.key: item},
        collections=_add_to_collections(state.collections, event.collection_keys, item.key),
        new_item_key=item.key,
    )


def reduce_clear_new(state: ResourceState, event: Event) -> ResourceState:
    """Discard the pending new item."""
    if state.new_item_key is None:
        return state
    return _remove_key(state, state.new_item_key)


def reduce_edit_new(state: ResourceState, event: Event) -> ResourceState:
    """Edit the pending new item locally."""
    key = state.new_item_key
    if key is None or key not in state.items:
        _warn(f"{event.resource}.edit_new was called with no pending new item. Use new() first.")
        return state

    item = state.items[key]
    return state.with_item(item.copy(values=item.merge_values(event.values)))


def reduce_edit(state: ResourceState, event: Event) -> ResourceState:
    """Edit an item locally; values are merged and the status is kept."""
    item = _existing_item(state, event, StatusType.EDITING)
    return state.with_item(item.copy(values=item.merge_values(event.values)))


def reduce_create(state: ResourceState, event: Event) -> ResourceState:
    """
    Create an item: CREATING -> SUCCESS (temporary key remapped) | ERROR.

    On success, event.temp_key is rewritten to event.key in the
    item map, every collection, the selection and new_item_key.
    """
    if event.status == StatusType.CREATING:
        item = state.items.get(event.key) or Item(key=event.key)
        item = item.copy(
            values=item.merge_values(event.values),
            status=ResourceStatus(type=StatusType.CREATING),
        )
        return state.copy(
            items={**state.items, item.key: item},
            collections=_add_to_collections(state.collections, event.collection_keys, item.key),
        )

    if event.status == StatusType.SUCCESS:
        temp_key = event.temp_key if event.temp_key is not None else event.key
        current = state.items.get(temp_key)
        if current is None:
            current = state.items.get(event.key)
        if current is None and temp_key != event.key:
            _warn(
                f"{event.resource}.create's temporary key '{temp_key}' does not match any "
                f"items in the store. (The created item was added anyway.)"
            )

        values = current.merge_values(event.values) if current else dict(event.values or {})
        item = Item(key=event.key, values=values, status=_success(event))

        items = {k: v for k, v in state.items.items() if k != temp_key}
        items[item.key] = item
        state = _replace_key(state.copy(items=items), temp_key, event.key)
        return state.copy(
            collections=_add_to_collections(state.collections, event.collection_keys, item.key),
        )

    if event.status == StatusType.ERROR:
        item = _existing_item(state, event, StatusType.ERROR)
        return state.with_item(item.copy(status=_failure(event)))

    return state


def reduce_update(state: ResourceState, event: Event) -> ResourceState:
    """
    Update an item: UPDATING -> SUCCESS | ERROR.

    Values are merged optimistically. On error they revert to
    event.previous_values when the event carries them.
    """
    if event.status == StatusType.UPDATING:
        item = _existing_item(state, event, StatusType.UPDATING)
        if item.status.type == StatusType.NEW:
            _warn(
                f"{event.resource}.update's key '{event.key}' matched a new item. Use edit_new() "
                f"to modify an item that has not been saved yet. (Update still applied.)"
            )
        return state.with_item(
            item.copy(
                values=item.merge_values(event.values),
                status=ResourceStatus(type=StatusType.UPDATING),
            )
        )

    if event.status == StatusType.SUCCESS:
        item = _existing_item(state, event, StatusType.SUCCESS)
        status = replace(item.status.merge(_success(event)), error=None, http_code=None, percent=None)
        return state.with_item(
            item.copy(values=item.merge_values(event.values), status=status)
        )

    if event.status == StatusType.ERROR:
        item = _existing_item(state, event, StatusType.ERROR)
        values = dict(event.previous_values) if event.previous_values is not None else item.values
        return state.with_item(item.copy(values=values, status=_failure(event)))

    return state


def reduce_destroy(state: ResourceState, event: Event) -> ResourceState:
    """Destroy an item: DESTROYING -> removed | DESTROY_ERROR (item retained)."""
    if event.status == StatusType.DESTROYING:
        item = _existing_item(state, event, StatusType.DESTROYING)
        return state.with_item(item.copy(status=ResourceStatus(type=StatusType.DESTROYING)))

    if event.status == StatusType.SUCCESS:
        if event.key not in state.items:
            _warn(
                f"{event.resource}.destroy's key '{event.key}' does not match any items in the store."
            )
        return _remove_key(state, event.key)

    if event.status in (StatusType.DESTROY_ERROR, StatusType.ERROR):
        item = _existing_item(state, event, StatusType.DESTROY_ERROR)
        return state.with_item(
            item.copy(status=_failure(event, type=StatusType.DESTROY_ERROR))
        )

    return state


# Selection transitions

def _warn_unknown_selection(state: ResourceState, event: Event) -> None:
    if event.key not in state.items:
        _warn(
            f"{event.resource}.{event.verb.value}'s key '{event.key}' does not match any "
            f"items in the store. (Selected anyway.)"
        )


def reduce_select(state: ResourceState, event: Event) -> ResourceState:
    _warn_unknown_selection(state, event)
    return state.copy(selection_map=frozenset({event.key}))


def reduce_select_another(state: ResourceState, event: Event) -> ResourceState:
    _warn_unknown_selection(state, event)
    return state.copy(selection_map=state.selection_map | {event.key})


def reduce_deselect(state: ResourceState, event: Event) -> ResourceState:
    return state.copy(selection_map=state.selection_map - {event.key})


def reduce_clear_selected(state: ResourceState, event: Event) -> ResourceState:
    return state.copy(selection_map=frozenset())


def reduce_clear(state: ResourceState, event: Event) -> ResourceState:
    return EMPTY_STATE


def reduce_associate(state: ResourceState, event: Event) -> ResourceState:
    """Merge rewritten reference fields into an owner item; status is kept."""
    item = state.items.get(event.key)
    if item is None:
        return state
    return state.with_item(item.copy(values=item.merge_values(event.values)))


STANDARD_REDUCERS: Dict[Verb, Reducer] = {
    Verb.INDEX: reduce_index,
    Verb.SHOW: reduce_show,
    Verb.NEW: reduce_new,
    Verb.CLEAR_NEW: reduce_clear_new,
    Verb.EDIT_NEW: reduce_edit_new,
    Verb.CREATE: reduce_create,
    Verb.EDIT: reduce_edit,
    Verb.UPDATE: reduce_update,
    Verb.DESTROY: reduce_destroy,
    Verb.SELECT: reduce_select,
    Verb.SELECT_ANOTHER: reduce_select_another,
    Verb.DESELECT: reduce_deselect,
    Verb.CLEAR_SELECTED: reduce_clear_selected,
    Verb.CLEAR: reduce_clear,
    Verb.ASSOCIATE: reduce_associate,
}

_missing = set(Verb) - set(STANDARD_REDUCERS)
if _missing:
    raise RuntimeError(f"No standard reducer for: {sorted(v.value for v in _missing)}")


def apply(state: ResourceState, event: Event) -> ResourceState:
    """Apply an event with the standard reducers and no hooks."""
    reducer = STANDARD_REDUCERS.get(event.verb)
    if reducer is None:
        return state
    return reducer(state, event)


def compose(
    before: Iterable[Reducer],
    primary: Reducer,
    after: Iterable[Reducer] = (),
) -> Reducer:
    """
    Thread the state through before-transforms, the primary reducer
    and after-transforms, in order.
    """
    steps = (*before, primary, *after)
    if len(steps) == 1:
        return primary

    def pipeline(state: ResourceState, event: Event) -> ResourceState:
        for step in steps:
            state = step(state, event)
        return state

    return pipeline


class ResourceReducer:
    """
    The reducer of one resource type.

    Pipelines are composed once, at construction: one per enabled
    verb. Events for other resources, or for verbs the resource does
    not enable, return the state unchanged (the same object).

    Usage:
        reducer = ResourceReducer(ResourceConfig(name="users"))
        state = reducer(state, event)
    """

    def __init__(self, config: ResourceConfig):
        self.name = config.name
        self._pipelines: Dict[Verb, Reducer] = {}

        for verb, primary in STANDARD_REDUCERS.items():
            if not config.is_enabled(verb):
                continue

            options = config.options_for(verb)
            before = list(options.before_reducers)
            if options.progress and verb in PROGRESS_COMPATIBLE_VERBS:
                before.append(track_progress)

            self._pipelines[verb] = compose(
                before,
                options.reducer or primary,
                options.after_reducers,
            )

    def handles(self, event: Event) -> bool:
        return event.resource == self.name and event.verb in self._pipelines

    def __call__(self, state: Optional[ResourceState], event: Event) -> ResourceState:
        if state is None:
            state = EMPTY_STATE
        if not self.handles(event):
            return state
        return self._pipelines[event.verb](state, event)


def build_reducer(config: ResourceConfig) -> Callable[[Optional[ResourceState], Event], ResourceState]:
    """Build the reducer of a resource type."""
    return ResourceReducer(config)
