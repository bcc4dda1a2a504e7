"""
Resource configuration.

A ResourceConfig is an immutable value handed to the engine at
construction. Options set on an individual action override the
options of the resource; before/after reducers accumulate in
registration order (resource first, then action).

Configurations can be loaded from YAML:

    defaults:
      key_by: id
    resources:
      users:
        url: https://api.example.com/users
        actions: [index, show, new, create, update, destroy]
        has_and_belongs_to_many:
          posts: {as: author}
      posts:
        url: https://api.example.com/posts
        actions:
          index: {progress: true}
          create: true
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional, Tuple, Union

import yaml

from .associations import AssociationKind, AssociationLink
from .events import RESTFUL_VERBS, REMOTE_ONLY_VERBS, Event, Verb
from .models import ConfigurationError, ResourceState

logger = logging.getLogger(__name__)

# A transform step: (state, event) -> new state
Reducer = Callable[[ResourceState, Event], ResourceState]

ResponseAdaptor = Callable[[Any], Any]

RequestAdaptor = Callable[[Dict[str, Any]], Any]


@dataclass(frozen=True)
class ActionOptions:
    """
    Per-action overrides. None means "use the resource's option".

    Attributes:
        key_by: Attribute used to key items
        local_only: Apply changes locally without requests
        url: Base URL for this action's requests
        url_only_params: Parameters used for URLs but not for keys
        progress: Track byte-level progress for this action
        response_adaptor: Transform applied to success payloads
        request_adaptor: Transform applied to request bodies before sending
        reducer: Replacement for the standard reducer
        before_reducers: Transforms run before the primary reducer
        after_reducers: Transforms run after the primary reducer
    """
    key_by: Optional[str] = None
    local_only: Optional[bool] = None
    url: Optional[str] = None
    url_only_params: Optional[Tuple[str, ...]] = None
    progress: Optional[bool] = None
    response_adaptor: Optional[ResponseAdaptor] = None
    request_adaptor: Optional[RequestAdaptor] = None
    reducer: Optional[Reducer] = None
    before_reducers: Tuple[Reducer, ...] = ()
    after_reducers: Tuple[Reducer, ...] = ()

    @classmethod
    def from_dict(cls, d: Optional[Mapping[str, Any]]) -> "ActionOptions":
        d = dict(d or {})
        unknown = set(d) - {"key_by", "local_only", "url", "url_only_params", "progress"}
        if unknown:
            raise ConfigurationError(f"Unknown action options: {sorted(unknown)}")
        if "url_only_params" in d:
            d["url_only_params"] = tuple(d["url_only_params"] or ())
        return cls(**d)


@dataclass(frozen=True)
class ResolvedOptions:
    """Effective options of one action, resolved once at construction."""
    verb: Verb
    key_by: str
    local_only: bool
    url: Optional[str]
    url_only_params: Tuple[str, ...]
    progress: bool
    response_adaptor: Optional[ResponseAdaptor]
    request_adaptor: Optional[RequestAdaptor]
    reducer: Optional[Reducer]
    before_reducers: Tuple[Reducer, ...]
    after_reducers: Tuple[Reducer, ...]


def _default_actions(local_only: bool) -> Dict[Verb, ActionOptions]:
    verbs = RESTFUL_VERBS - REMOTE_ONLY_VERBS if local_only else RESTFUL_VERBS
    return {verb: ActionOptions() for verb in verbs}


ActionsSpec = Union[Mapping[Union[str, Verb], Any], Tuple, list]


def _parse_verb(name: Union[str, Verb]) -> Verb:
    if isinstance(name, Verb):
        return name
    try:
        return Verb(name)
    except ValueError:
        raise ConfigurationError(
            f"Unknown action '{name}'. Valid actions: {sorted(v.value for v in RESTFUL_VERBS)}"
        )


def _normalize_actions(actions: ActionsSpec) -> Dict[Verb, ActionOptions]:
    if isinstance(actions, Mapping):
        items = actions.items()
    else:
        items = ((name, True) for name in actions)

    normalized = {}
    for name, options in items:
        verb = _parse_verb(name)
        if options is False or options is None:
            continue
        if options is True:
            options = ActionOptions()
        elif not isinstance(options, ActionOptions):
            options = ActionOptions.from_dict(options)
        normalized[verb] = options
    return normalized


@dataclass(frozen=True)
class ResourceConfig:
    """
    Configuration of one resource type.

    Attributes:
        name: Pluralized resource name (e.g. "users")
        url: Base URL of the resource's endpoint
        key_by: Attribute used to key items (default "id")
        local_only: Apply create/update/destroy locally, without requests
        url_only_params: Parameters excluded from key derivation
        progress: Track byte-level progress for compatible actions
        response_adaptor: Transform applied to success payloads
        request_adaptor: Transform applied to create and update bodies
        before_reducers: Transforms run before every primary reducer
        after_reducers: Transforms run after every primary reducer
        actions: Enabled RESTful actions and their overrides
        associations: Links to related resources this resource owns
    """
    name: str
    url: Optional[str] = None
    key_by: str = "id"
    local_only: bool = False
    url_only_params: Tuple[str, ...] = ()
    progress: bool = False
    response_adaptor: Optional[ResponseAdaptor] = None
    request_adaptor: Optional[RequestAdaptor] = None
    before_reducers: Tuple[Reducer, ...] = ()
    after_reducers: Tuple[Reducer, ...] = ()
    actions: Optional[ActionsSpec] = None
    associations: Tuple[AssociationLink, ...] = ()

    def __post_init__(self):
        """Validate and normalize."""
        if not self.name:
            raise ConfigurationError("Resource name is required")

        object.__setattr__(self, "url_only_params", tuple(self.url_only_params))
        object.__setattr__(self, "before_reducers", tuple(self.before_reducers))
        object.__setattr__(self, "after_reducers", tuple(self.after_reducers))
        object.__setattr__(self, "associations", tuple(self.associations))

        if self.actions is None:
            actions = _default_actions(self.local_only)
        else:
            actions = _normalize_actions(self.actions)
        for verb in list(actions):
            if verb not in RESTFUL_VERBS:
                raise ConfigurationError(
                    f"Action '{verb.value}' is always available and cannot be configured"
                )
            local_only = actions[verb].local_only
            if verb in REMOTE_ONLY_VERBS and (self.local_only if local_only is None else local_only):
                logger.warning(
                    "Action '%s' is not compatible with the local_only option (disabled for %s)",
                    verb.value,
                    self.name,
                )
                del actions[verb]
        object.__setattr__(self, "actions", actions)

        for link in self.associations:
            if link.owner != self.name:
                raise ConfigurationError(
                    f"Association {link.owner} -> {link.related} declared on '{self.name}'"
                )

    def is_enabled(self, verb: Verb) -> bool:
        """RESTful actions must be enabled; local state actions always are."""
        return verb not in RESTFUL_VERBS or verb in self.actions

    def options_for(self, verb: Verb) -> ResolvedOptions:
        """Resolve the effective options of an action."""
        action = self.actions.get(verb) or ActionOptions()

        def pick(name: str) -> Any:
            value = getattr(action, name)
            return getattr(self, name) if value is None else value

        return ResolvedOptions(
            verb=verb,
            key_by=pick("key_by"),
            local_only=pick("local_only"),
            url=pick("url"),
            url_only_params=tuple(pick("url_only_params")),
            progress=pick("progress"),
            response_adaptor=pick("response_adaptor"),
            request_adaptor=pick("request_adaptor"),
            reducer=action.reducer,
            before_reducers=self.before_reducers + tuple(action.before_reducers),
            after_reducers=self.after_reducers + tuple(action.after_reducers),
        )

    @classmethod
    def from_dict(cls, name: str, d: Optional[Mapping[str, Any]]) -> "ResourceConfig":
        """Create from a configuration mapping (as found in YAML)."""
        d = dict(d or {})
        associations = []
        for kind in AssociationKind:
            for related, options in (d.pop(kind.value, None) or {}).items():
                associations.append(AssociationLink.from_dict(name, kind.value, related, options))

        known = {"url", "key_by", "local_only", "url_only_params", "progress", "actions"}
        unknown = set(d) - known
        if unknown:
            raise ConfigurationError(f"Unknown options for resource '{name}': {sorted(unknown)}")

        if "url_only_params" in d:
            d["url_only_params"] = tuple(d["url_only_params"] or ())
        if d.get("actions") is None:
            d.pop("actions", None)

        return cls(name=name, associations=tuple(associations), **d)


def load_config(path: Union[str, Path]) -> Tuple[ResourceConfig, ...]:
    """
    Load resource configurations from a YAML file.

    Args:
        path: Path to the YAML document

    Returns:
        One ResourceConfig per entry of 'resources'

    Raises:
        ConfigurationError: If the file is missing or malformed
    """
    path = Path(path)
    if not path.exists():
        raise ConfigurationError(f"Resource configuration not found: {path}")

    with open(path, "r", encoding="utf-8") as f:
        document = yaml.safe_load(f) or {}

    if not isinstance(document, dict) or not isinstance(document.get("resources"), dict):
        raise ConfigurationError(f"{path}: expected a 'resources' mapping")

    defaults = document.get("defaults") or {}
    if not isinstance(defaults, dict):
        raise ConfigurationError(f"{path}: 'defaults' must be a mapping")

    return tuple(
        ResourceConfig.from_dict(name, {**defaults, **(options or {})})
        for name, options in document["resources"].items()
    )
