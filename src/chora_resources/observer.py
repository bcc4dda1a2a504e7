"""
StateObserver - notifies readers when a resource state changes.

The engine emits one StateChange per applied event, after the event
and every association update it caused have been applied, so readers
never see a half-propagated snapshot.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from .events import Event, Verb
from .models import ResourceState, StatusType

logger = logging.getLogger(__name__)


@dataclass
class StateChange:
    """
    A published change of one resource's state.

    state is the new snapshot; previous_state the one it replaced.
    """
    resource: str
    verb: Verb
    status: Optional[StatusType]
    key: Optional[str]
    timestamp: datetime
    state: ResourceState
    previous_state: ResourceState
    event: Event

    @property
    def changed(self) -> bool:
        return self.state is not self.previous_state


# Type for change callbacks
ChangeCallback = Callable[[StateChange], None]


class StateObserver:
    """
    Observation of resource state changes.

    Usage:
        observer = StateObserver()

        # Register callback
        observer.on_change(lambda change: print(change.resource, change.verb))

        # Emit changes (called by the engine)
        observer.emit(event, new_state, previous_state)
    """

    def __init__(self, max_log_size: int = 1000):
        """Initialize observer with empty callback list."""
        self._callbacks: List[ChangeCallback] = []
        self._change_log: List[StateChange] = []
        self._max_log_size = max_log_size

    def on_change(self, callback: ChangeCallback) -> None:
        """
        Register callback for state changes.

        Args:
            callback: Function to call when a state changes
        """
        self._callbacks.append(callback)

    def off_change(self, callback: ChangeCallback) -> None:
        """
        Unregister callback.

        Args:
            callback: Function to remove
        """
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def emit(
        self,
        event: Event,
        state: ResourceState,
        previous_state: ResourceState,
    ) -> StateChange:
        """
        Emit a change for an applied event.

        Args:
            event: The event that was applied
            state: Snapshot after the event
            previous_state: Snapshot before the event

        Returns:
            The emitted change
        """
        change = StateChange(
            resource=event.resource,
            verb=event.verb,
            status=event.status,
            key=event.collection_key if event.verb == Verb.INDEX else event.key,
            timestamp=event.timestamp,
            state=state,
            previous_state=previous_state,
            event=event,
        )

        self._change_log.append(change)
        if len(self._change_log) > self._max_log_size:
            self._change_log = self._change_log[-self._max_log_size:]

        # Callback errors must not stop other callbacks
        for callback in list(self._callbacks):
            try:
                callback(change)
            except Exception as e:
                logger.warning("State change callback error: %s", e)

        return change

    def get_recent_changes(
        self,
        resource: Optional[str] = None,
        verb: Optional[Verb] = None,
        limit: int = 50,
    ) -> List[StateChange]:
        """
        Get recent changes from the log.

        Args:
            resource: Filter by resource name
            verb: Filter by verb
            limit: Maximum changes to return

        Returns:
            List of matching changes, most recent first
        """
        changes = self._change_log

        if resource:
            changes = [c for c in changes if c.resource == resource]

        if verb:
            changes = [c for c in changes if c.verb == verb]

        return list(reversed(changes))[:limit]

    def clear_log(self) -> None:
        """Clear the change log."""
        self._change_log = []
