"""
ResourceEngine - keeps local resource state in sync with a remote API.

This is the command surface. Each command:
1. Checks the action is enabled for the resource
2. Applies an optimistic event immediately
3. Hands a request to the transport (unless the resource is local-only)
4. Applies exactly one settlement event when the request settles

Events are applied one at a time, in arrival order. An event raised
while another is being applied (from an observer callback, or a
transport settling synchronously) is queued, never applied re-entrantly.
Association updates caused by an event are applied before readers are
notified of it.
"""

import json
import logging
import threading
from collections import deque
from pathlib import Path
from typing import Any, Deque, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from .associations import AssociationLink, propagate
from .config import ResolvedOptions, ResourceConfig, load_config
from .events import Event, Verb
from .keys import find_item_key, generate_temp_key, get_item_key, serialize_key
from .models import (
    EMPTY_STATE,
    ActionNotEnabled,
    ConfigurationError,
    ConsistencyWarning,
    Item,
    ResourceState,
    StatusType,
)
from .observer import StateObserver
from .reducer import ResourceReducer
from .selectors import CollectionWithItems, get_collection, get_item
from .transport import Request, Transport, collection_url, item_url

logger = logging.getLogger(__name__)


class ResourceEngine:
    """
    Local cache of remote resources, reconciled against server responses.

    Usage:
        engine = ResourceEngine(
            [ResourceConfig(name="users", url="https://api.example.com/users")],
            transport=HttpTransport(),
        )
        key = engine.new_item("users", values={"name": "Ada"})
        engine.create_item("users", key)
        engine.state("users").items
    """

    def __init__(
        self,
        configs: Iterable[ResourceConfig],
        transport: Optional[Transport] = None,
        observer: Optional[StateObserver] = None,
    ):
        """
        Initialize engine with resource configurations.

        Args:
            configs: One ResourceConfig per resource type
            transport: Transport for remote requests (required unless every
                resource is local-only)
            observer: StateObserver to notify (creates one if None)

        Raises:
            ConfigurationError: On duplicate names or unknown associated resources
        """
        self.configs: Dict[str, ResourceConfig] = {}
        for config in configs:
            if config.name in self.configs:
                raise ConfigurationError(f"Resource '{config.name}' is configured twice")
            self.configs[config.name] = config

        self.transport = transport
        self.observer = observer or StateObserver()

        self._reducers = {name: ResourceReducer(config) for name, config in self.configs.items()}
        self._states: Dict[str, ResourceState] = {name: EMPTY_STATE for name in self.configs}

        # Links indexed by the related resource, whose events trigger them
        self._links: Dict[str, List[AssociationLink]] = {}
        for config in self.configs.values():
            for link in config.associations:
                if link.related not in self.configs:
                    raise ConfigurationError(
                        f"Resource '{config.name}' is associated with unknown resource '{link.related}'"
                    )
                self._links.setdefault(link.related, []).append(link)

        self._queue: Deque[Event] = deque()
        self._lock = threading.RLock()
        self._draining = False

    @classmethod
    def from_file(
        cls,
        path: Union[str, Path],
        transport: Optional[Transport] = None,
        observer: Optional[StateObserver] = None,
    ) -> "ResourceEngine":
        """Create an engine from a YAML resource configuration."""
        return cls(load_config(path), transport=transport, observer=observer)

    # Reading

    def state(self, resource: str) -> ResourceState:
        """Current snapshot of a resource."""
        self._config(resource)
        return self._states[resource]

    def get_item(self, resource: str, params: Any) -> Item:
        """Get an item by key or parameters (empty item if unknown)."""
        config = self._config(resource)
        return get_item(self.state(resource), params, config.key_by, config.url_only_params)

    def get_collection(self, resource: str, params: Any = None) -> CollectionWithItems:
        """Get a collection with its items, in position order."""
        config = self._config(resource)
        return get_collection(self.state(resource), params, config.url_only_params)

    # Event loop

    def dispatch(self, event: Event) -> None:
        """
        Apply an event, and any events queued while applying it.

        Events for unknown resources are ignored.
        """
        with self._lock:
            self._queue.append(event)
            if self._draining:
                return

            self._draining = True
            try:
                while self._queue:
                    self._apply(self._queue.popleft())
            finally:
                self._draining = False

    def _apply(self, event: Event) -> None:
        reducer = self._reducers.get(event.resource)
        if reducer is None:
            logger.debug("Ignoring event for unknown resource: %s", event.describe())
            return

        applied = [self._reduce(reducer, event)]

        # Propagate to owners before anyone observes the change
        key_by = self.configs[event.resource].key_by
        for link in self._links.get(event.resource, []):
            for derived in propagate(link, self._states[link.owner], event, key_by=key_by):
                applied.append(self._reduce(self._reducers[link.owner], derived))

        for applied_event, previous, state in applied:
            self.observer.emit(applied_event, state, previous)

    def _reduce(
        self,
        reducer: ResourceReducer,
        event: Event,
    ) -> Tuple[Event, ResourceState, ResourceState]:
        previous = self._states[event.resource]
        state = reducer(previous, event)
        self._states[event.resource] = state
        logger.debug("Applied %s", event.describe())
        return event, previous, state

    # RESTful commands

    def fetch_collection(self, resource: str, params: Any = None) -> str:
        """
        Fetch a collection from the remote API (index).

        Args:
            resource: Resource name
            params: Filter parameters (mapping, scalar or None)

        Returns:
            The collection key
        """
        options = self._require(resource, Verb.INDEX)
        collection_key = serialize_key(params, options.url_only_params)
        url = collection_url(self._endpoint(resource, options), params)

        self.dispatch(Event(
            resource=resource,
            verb=Verb.INDEX,
            status=StatusType.FETCHING,
            collection_key=collection_key,
        ))

        def on_success(payload: Any) -> None:
            payload = self._adapt(options, payload)
            if not isinstance(payload, list):
                logger.warning(
                    "%s: %s.index expected a list response, got %s",
                    ConsistencyWarning.__name__, resource, type(payload).__name__,
                )
                payload = []
            items = tuple(
                (get_item_key(values, options.key_by), dict(values))
                for values in payload
                if isinstance(values, Mapping)
            )
            self.dispatch(Event(
                resource=resource,
                verb=Verb.INDEX,
                status=StatusType.SUCCESS,
                collection_key=collection_key,
                items=items,
            ))

        def on_error(http_code: Optional[int], error: Any) -> None:
            self.dispatch(Event(
                resource=resource,
                verb=Verb.INDEX,
                status=StatusType.ERROR,
                collection_key=collection_key,
                http_code=http_code,
                error=_error_detail(error),
            ))

        def on_progress(loaded: int, total: Optional[int]) -> None:
            if not options.progress:
                return
            self.dispatch(Event(
                resource=resource,
                verb=Verb.INDEX,
                status=StatusType.PROGRESS,
                collection_key=collection_key,
                loaded=loaded,
                total=total,
            ))

        self._send(options, Request(
            url=url,
            method="GET",
            body=None,
            on_success=on_success,
            on_error=on_error,
            on_progress=on_progress,
        ))
        return collection_key

    def fetch_item(self, resource: str, params: Any) -> str:
        """
        Fetch a single item from the remote API (show).

        Returns:
            The item key
        """
        options = self._require(resource, Verb.SHOW)
        key = get_item_key(params, options.key_by, options.url_only_params)
        url = item_url(self._endpoint(resource, options), key)

        self.dispatch(Event(resource=resource, verb=Verb.SHOW, status=StatusType.FETCHING, key=key))

        def on_success(payload: Any) -> None:
            values = self._adapt(options, payload)
            self.dispatch(Event(
                resource=resource,
                verb=Verb.SHOW,
                status=StatusType.SUCCESS,
                key=key,
                values=dict(values) if isinstance(values, Mapping) else {},
            ))

        self._send(options, Request(
            url=url,
            method="GET",
            body=None,
            on_success=on_success,
            on_error=self._error_handler(resource, Verb.SHOW, key),
            on_progress=self._progress_handler(resource, Verb.SHOW, key, options),
        ))
        return key

    def new_item(
        self,
        resource: str,
        temp_key: Optional[str] = None,
        values: Optional[Dict[str, Any]] = None,
        collection_keys: Iterable[str] = (),
    ) -> str:
        """
        Start a new item locally, under a temporary key.

        Args:
            resource: Resource name
            temp_key: Temporary key (generated if None)
            values: Initial attribute values
            collection_keys: Collections to place the new item in

        Returns:
            The temporary key
        """
        self._require(resource, Verb.NEW)
        key = temp_key or generate_temp_key()
        self.dispatch(Event(
            resource=resource,
            verb=Verb.NEW,
            status=StatusType.NEW,
            key=key,
            values=dict(values or {}),
            collection_keys=tuple(collection_keys),
        ))
        return key

    def edit_new_item(self, resource: str, values: Dict[str, Any]) -> None:
        """Merge values into the pending new item."""
        self._config(resource)
        self.dispatch(Event(
            resource=resource,
            verb=Verb.EDIT_NEW,
            status=StatusType.EDITING,
            key=self._states[resource].new_item_key,
            values=dict(values),
        ))

    def clear_new_item(self, resource: str) -> None:
        """Discard the pending new item."""
        self._config(resource)
        self.dispatch(Event(resource=resource, verb=Verb.CLEAR_NEW))

    def edit_item(self, resource: str, params: Any, values: Dict[str, Any]) -> str:
        """
        Merge values into an item locally, without a request.

        Returns:
            The item key
        """
        options = self._require(resource, Verb.EDIT)
        key = get_item_key(params, options.key_by, options.url_only_params)
        self.dispatch(Event(
            resource=resource,
            verb=Verb.EDIT,
            status=StatusType.EDITING,
            key=key,
            values=dict(values),
        ))
        return key

    def create_item(
        self,
        resource: str,
        temp_key: Optional[str] = None,
        values: Optional[Dict[str, Any]] = None,
        collection_keys: Iterable[str] = (),
    ) -> str:
        """
        Create an item on the remote API.

        The item is shown as CREATING under its temporary key until the
        server assigns its permanent key.

        Args:
            resource: Resource name
            temp_key: Temporary key (defaults to the pending new item's key)
            values: Attribute values, merged over the pending item's values
            collection_keys: Collections to place the item in

        Returns:
            The item's key after the call: the permanent key for local-only
            resources, the temporary key otherwise
        """
        options = self._require(resource, Verb.CREATE)
        state = self._states[resource]
        temp_key = temp_key or state.new_item_key or generate_temp_key()

        existing = state.items.get(temp_key)
        values = {**(existing.values if existing else {}), **(values or {})}
        collection_keys = tuple(collection_keys)

        if options.local_only:
            key = find_item_key([values], options.key_by) or temp_key
            self.dispatch(Event(
                resource=resource,
                verb=Verb.CREATE,
                status=StatusType.SUCCESS,
                key=key,
                temp_key=temp_key,
                values=values,
                collection_keys=collection_keys,
            ))
            return key

        url = self._endpoint(resource, options)
        self.dispatch(Event(
            resource=resource,
            verb=Verb.CREATE,
            status=StatusType.CREATING,
            key=temp_key,
            values=values,
            collection_keys=collection_keys,
        ))

        def on_success(payload: Any) -> None:
            response = self._adapt(options, payload)
            response = dict(response) if isinstance(response, Mapping) else {}
            key = find_item_key([response, values], options.key_by) or temp_key
            self.dispatch(Event(
                resource=resource,
                verb=Verb.CREATE,
                status=StatusType.SUCCESS,
                key=key,
                temp_key=temp_key,
                values=response or values,
            ))

        self._send(options, Request(
            url=url,
            method="POST",
            body=json.dumps(self._body(options, values)),
            on_success=on_success,
            on_error=self._error_handler(resource, Verb.CREATE, temp_key),
            on_progress=self._progress_handler(resource, Verb.CREATE, temp_key, options),
        ))
        return temp_key

    def update_item(self, resource: str, params: Any, values: Dict[str, Any]) -> str:
        """
        Update an item on the remote API.

        Values are applied optimistically. If the request fails they are
        reverted to what they were when the update was issued.

        Returns:
            The item key
        """
        options = self._require(resource, Verb.UPDATE)
        key = get_item_key(params, options.key_by, options.url_only_params)
        previous_values = self._values_of(resource, key)
        values = dict(values)

        if options.local_only:
            self.dispatch(Event(
                resource=resource,
                verb=Verb.UPDATE,
                status=StatusType.SUCCESS,
                key=key,
                values=values,
                previous_values=previous_values,
            ))
            return key

        url = item_url(self._endpoint(resource, options), key)
        self.dispatch(Event(
            resource=resource,
            verb=Verb.UPDATE,
            status=StatusType.UPDATING,
            key=key,
            values=values,
            previous_values=previous_values,
        ))

        def on_success(payload: Any) -> None:
            response = self._adapt(options, payload)
            self.dispatch(Event(
                resource=resource,
                verb=Verb.UPDATE,
                status=StatusType.SUCCESS,
                key=key,
                values=dict(response) if isinstance(response, Mapping) else values,
                previous_values=previous_values,
            ))

        self._send(options, Request(
            url=url,
            method="PUT",
            body=json.dumps(self._body(options, values)),
            on_success=on_success,
            on_error=self._error_handler(resource, Verb.UPDATE, key, previous_values),
            on_progress=self._progress_handler(resource, Verb.UPDATE, key, options),
        ))
        return key

    def destroy_item(self, resource: str, params: Any) -> str:
        """
        Destroy an item on the remote API.

        The item is only removed once the server confirms; on failure
        it is kept with a DESTROY_ERROR status.

        Returns:
            The item key
        """
        options = self._require(resource, Verb.DESTROY)
        key = get_item_key(params, options.key_by, options.url_only_params)
        previous_values = self._values_of(resource, key)

        def on_success(payload: Any) -> None:
            self.dispatch(Event(
                resource=resource,
                verb=Verb.DESTROY,
                status=StatusType.SUCCESS,
                key=key,
                previous_values=previous_values,
            ))

        if options.local_only:
            on_success(None)
            return key

        url = item_url(self._endpoint(resource, options), key)
        self.dispatch(Event(
            resource=resource,
            verb=Verb.DESTROY,
            status=StatusType.DESTROYING,
            key=key,
        ))

        self._send(options, Request(
            url=url,
            method="DELETE",
            body=None,
            on_success=on_success,
            on_error=self._error_handler(
                resource, Verb.DESTROY, key, status=StatusType.DESTROY_ERROR
            ),
        ))
        return key

    # Selection commands

    def select(self, resource: str, params: Any) -> None:
        """Make an item the only selected one."""
        self._dispatch_selection(resource, Verb.SELECT, params)

    def select_another(self, resource: str, params: Any) -> None:
        """Add an item to the selection."""
        self._dispatch_selection(resource, Verb.SELECT_ANOTHER, params)

    def deselect(self, resource: str, params: Any) -> None:
        """Remove an item from the selection."""
        self._dispatch_selection(resource, Verb.DESELECT, params)

    def clear_selected(self, resource: str) -> None:
        """Empty the selection."""
        self._config(resource)
        self.dispatch(Event(resource=resource, verb=Verb.CLEAR_SELECTED))

    def clear(self, resource: str) -> None:
        """Reset a resource to the empty state."""
        self._config(resource)
        self.dispatch(Event(resource=resource, verb=Verb.CLEAR))

    # Helpers

    def _config(self, resource: str) -> ResourceConfig:
        config = self.configs.get(resource)
        if config is None:
            raise ConfigurationError(
                f"Unknown resource '{resource}'. Configured resources: {sorted(self.configs)}"
            )
        return config

    def _require(self, resource: str, verb: Verb) -> ResolvedOptions:
        """Resolve an action's options, or raise if it is not enabled."""
        config = self._config(resource)
        if not config.is_enabled(verb):
            raise ActionNotEnabled(
                f"Action '{verb.value}' is not enabled for resource '{resource}'. "
                f"Enabled actions: {sorted(v.value for v in config.actions)}"
            )
        return config.options_for(verb)

    def _endpoint(self, resource: str, options: ResolvedOptions) -> str:
        """Base URL of a remote action; checked before any optimistic event."""
        if self.transport is None:
            raise ConfigurationError(
                f"Action '{options.verb.value}' needs a transport; none was given to the engine"
            )
        if not options.url:
            raise ConfigurationError(
                f"No url configured for action '{options.verb.value}' of resource '{resource}'"
            )
        return options.url

    def _send(self, options: ResolvedOptions, request: Request) -> None:
        logger.debug("%s %s", request.method, request.url)
        self.transport.send(request)

    def _adapt(self, options: ResolvedOptions, payload: Any) -> Any:
        if options.response_adaptor is not None:
            return options.response_adaptor(payload)
        return payload

    def _body(self, options: ResolvedOptions, values: Dict[str, Any]) -> Any:
        if options.request_adaptor is not None:
            return options.request_adaptor(dict(values))
        return values

    def _values_of(self, resource: str, key: str) -> Optional[Dict[str, Any]]:
        item = self._states[resource].items.get(key)
        return dict(item.values) if item is not None else None

    def _error_handler(
        self,
        resource: str,
        verb: Verb,
        key: str,
        previous_values: Optional[Dict[str, Any]] = None,
        status: StatusType = StatusType.ERROR,
    ):
        def on_error(http_code: Optional[int], error: Any) -> None:
            self.dispatch(Event(
                resource=resource,
                verb=verb,
                status=status,
                key=key,
                http_code=http_code,
                error=_error_detail(error),
                previous_values=previous_values,
            ))
        return on_error

    def _progress_handler(self, resource: str, verb: Verb, key: str, options: ResolvedOptions):
        def on_progress(loaded: int, total: Optional[int]) -> None:
            if not options.progress:
                return
            self.dispatch(Event(
                resource=resource,
                verb=verb,
                status=StatusType.PROGRESS,
                key=key,
                loaded=loaded,
                total=total,
            ))
        return on_progress

    def _dispatch_selection(self, resource: str, verb: Verb, params: Any) -> None:
        config = self._config(resource)
        self.dispatch(Event(
            resource=resource,
            verb=verb,
            key=get_item_key(params, config.key_by, config.url_only_params),
        ))


def _error_detail(error: Any) -> Any:
    return error if error is not None else {"message": "Request failed"}
