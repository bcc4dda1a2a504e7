"""
Association propagation between resource types.

When an item of a related resource (e.g. a post) is created, updated
or destroyed, owners that reference it (e.g. the post's author) must
have their reference fields rewritten. Propagation never touches the
owner's state directly: it returns ASSOCIATE events that the engine
applies to the owner's store straight after the triggering event.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from .events import Event, Verb
from .keys import same_key, serialize_key
from .models import ConfigurationError, ResourceState, StatusType

logger = logging.getLogger(__name__)


class AssociationKind(Enum):
    """How an owner references items of a related resource."""
    ONE_TO_MANY = "belongs_to"                   # owner holds a single key
    MANY_TO_MANY = "has_and_belongs_to_many"     # owner holds an ordered list of keys


def singularize(name: str) -> str:
    """Naive English singular of a resource name (users -> user)."""
    if name.endswith("ies"):
        return name[:-3] + "y"
    if name.endswith(("sses", "xes", "ches", "shes")):
        return name[:-2]
    if name.endswith("s"):
        return name[:-1]
    return name


@dataclass(frozen=True)
class AssociationLink:
    """
    Static link between an owner resource and a related resource.

    Attributes:
        owner: Resource whose items hold the reference field (e.g. "users")
        related: Resource whose events are observed (e.g. "posts")
        kind: ONE_TO_MANY or MANY_TO_MANY
        foreign_key: Field on related values naming the owner (e.g. "authorId")
        key: Field on owner values holding related keys (e.g. "postIds")
    """
    owner: str
    related: str
    kind: AssociationKind
    foreign_key: str
    key: str

    @classmethod
    def belongs_to(
        cls,
        owner: str,
        related: str,
        foreign_key: Optional[str] = None,
        key: Optional[str] = None,
        as_: Optional[str] = None,
    ) -> "AssociationLink":
        """Owner holds one key of the related resource (users.addressId)."""
        return cls(
            owner=owner,
            related=related,
            kind=AssociationKind.ONE_TO_MANY,
            foreign_key=foreign_key or f"{as_ or singularize(owner)}Id",
            key=key or f"{singularize(related)}Id",
        )

    @classmethod
    def has_and_belongs_to_many(
        cls,
        owner: str,
        related: str,
        foreign_key: Optional[str] = None,
        key: Optional[str] = None,
        as_: Optional[str] = None,
    ) -> "AssociationLink":
        """Owner holds a list of keys of the related resource (users.postIds)."""
        return cls(
            owner=owner,
            related=related,
            kind=AssociationKind.MANY_TO_MANY,
            foreign_key=foreign_key or f"{as_ or singularize(owner)}Id",
            key=key or f"{singularize(related)}Ids",
        )

    @classmethod
    def from_dict(cls, owner: str, kind: str, related: str, d: Optional[dict]) -> "AssociationLink":
        """Create from a configuration mapping ({foreign_key, key, as})."""
        d = d or {}
        try:
            association_kind = AssociationKind(kind)
        except ValueError:
            raise ConfigurationError(
                f"Unknown association kind '{kind}'. "
                f"Valid kinds: {[k.value for k in AssociationKind]}"
            )
        factory = (
            cls.belongs_to
            if association_kind == AssociationKind.ONE_TO_MANY
            else cls.has_and_belongs_to_many
        )
        return factory(
            owner,
            related,
            foreign_key=d.get("foreign_key"),
            key=d.get("key"),
            as_=d.get("as"),
        )


def _referenced_owners(link: AssociationLink, values: Optional[Dict[str, Any]]) -> List[str]:
    """Owner keys a related item's values point at."""
    if not values or values.get(link.foreign_key) is None:
        return []
    reference = values[link.foreign_key]
    if isinstance(reference, (list, tuple)):
        return [serialize_key(r) for r in reference]
    return [serialize_key(reference)]


def _references(link: AssociationLink, current: Any, ref: Any) -> bool:
    if link.kind == AssociationKind.ONE_TO_MANY:
        return current is not None and same_key(current, ref)
    return any(same_key(c, ref) for c in (current or []))


def _add(link: AssociationLink, current: Any, ref: Any) -> Any:
    if link.kind == AssociationKind.ONE_TO_MANY:
        return ref
    if _references(link, current, ref):
        return current
    return [*(current or []), ref]


def _remove(link: AssociationLink, current: Any, ref: Any) -> Any:
    if link.kind == AssociationKind.ONE_TO_MANY:
        return None if _references(link, current, ref) else current
    return [c for c in (current or []) if not same_key(c, ref)]


def _replace(link: AssociationLink, current: Any, old: Any, new: Any) -> Any:
    if link.kind == AssociationKind.ONE_TO_MANY:
        return new if _references(link, current, old) else current
    replaced = []
    for c in current or []:
        c = new if same_key(c, old) else c
        if not any(same_key(c, r) for r in replaced):
            replaced.append(c)
    return replaced


def propagate(
    link: AssociationLink,
    owner_state: ResourceState,
    event: Event,
    key_by: str = "id",
) -> List[Event]:
    """
    Derive ASSOCIATE events for the owner resource of a link.

    Must be called with the owner's state as it is after any earlier
    propagation, and after the event has been applied to the related
    resource.

    Args:
        link: Association between owner and related resource
        owner_state: Current state of the owner resource
        event: Event just applied to the related resource
        key_by: Key attribute of the related resource

    Returns:
        One ASSOCIATE event per owner item whose reference field changed
    """
    if event.resource != link.related:
        return []
    if event.verb not in (Verb.CREATE, Verb.UPDATE, Verb.DESTROY):
        return []

    values = event.values or {}
    # Owners hold the raw server id, not the derived key
    reference = values.get(key_by, event.key)
    if reference is None or not same_key(reference, event.key):
        reference = event.key

    pending: Dict[str, Any] = {}

    def current(owner_key: str) -> Any:
        if owner_key in pending:
            return pending[owner_key]
        return owner_state.items[owner_key].values.get(link.key)

    def loaded(owner_key: str) -> bool:
        if owner_key in owner_state.items:
            return True
        logger.debug(
            "Owner %s[%s] not loaded; skipping %s reference", link.owner, owner_key, link.key
        )
        return False

    def change(owner_key: str, new_value: Any) -> None:
        if new_value != current(owner_key):
            pending[owner_key] = new_value

    if event.verb == Verb.CREATE and event.status == StatusType.CREATING:
        for owner_key in _referenced_owners(link, values):
            if loaded(owner_key):
                change(owner_key, _add(link, current(owner_key), event.key))

    elif event.verb == Verb.CREATE and event.status == StatusType.SUCCESS:
        temp_key = event.temp_key
        if temp_key is not None and temp_key != event.key:
            for owner_key, owner in owner_state.items.items():
                if _references(link, owner.values.get(link.key), temp_key):
                    change(owner_key, _replace(link, current(owner_key), temp_key, reference))
        for owner_key in _referenced_owners(link, values):
            if loaded(owner_key):
                change(owner_key, _add(link, current(owner_key), reference))

    elif event.verb == Verb.UPDATE and event.status == StatusType.SUCCESS:
        if link.foreign_key in values:
            previous = set(_referenced_owners(link, event.previous_values))
            updated = set(_referenced_owners(link, values))
            for owner_key in sorted(previous - updated):
                if loaded(owner_key):
                    change(owner_key, _remove(link, current(owner_key), reference))
            for owner_key in sorted(updated - previous):
                if loaded(owner_key):
                    change(owner_key, _add(link, current(owner_key), reference))

    elif event.verb == Verb.DESTROY and event.status == StatusType.SUCCESS:
        for owner_key, owner in owner_state.items.items():
            if _references(link, owner.values.get(link.key), event.key):
                change(owner_key, _remove(link, current(owner_key), event.key))

    return [
        Event(
            resource=link.owner,
            verb=Verb.ASSOCIATE,
            key=owner_key,
            values={link.key: new_value},
            timestamp=event.timestamp,
        )
        for owner_key, new_value in pending.items()
    ]
