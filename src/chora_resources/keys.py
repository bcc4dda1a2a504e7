"""
Key derivation for items and collections.

Keys are deterministic: structurally-equal parameters always
serialize to the same string, whatever their insertion order.
This lets two independently built fetches with the same filters
share one collection.
"""

import uuid
from typing import Any, Iterable, Mapping, Optional


def serialize_key(target: Any, url_only_params: Iterable[str] = ()) -> str:
    """
    Serialize parameters into a key.

    Mappings become "k1=v1.k2=v2" over their sorted field names,
    after dropping fields listed in url_only_params. Scalars become
    their string form; None becomes the empty string.

    Args:
        target: Parameter mapping, scalar or None
        url_only_params: Fields used only to build request URLs

    Returns:
        The serialized key
    """
    if isinstance(target, Mapping):
        excluded = set(url_only_params)
        sorted_keys = sorted((k for k in target.keys() if k not in excluded), key=str)
        return ".".join(f"{k}={target[k]}" for k in sorted_keys)

    if target is None:
        return ""

    return str(target)


def get_item_key(
    params: Any,
    key_by: str = "id",
    url_only_params: Iterable[str] = (),
) -> str:
    """
    Derive the key of a single item.

    If params is a mapping holding the key_by attribute, that value
    is the key. Other mappings are serialized as a whole; scalars are
    used directly.
    """
    if isinstance(params, Mapping) and key_by in params:
        return serialize_key(params[key_by])

    return serialize_key(params, url_only_params)


def find_item_key(candidates: Iterable[Any], key_by: str = "id") -> Optional[str]:
    """Return the key_by value of the first mapping that has one."""
    for candidate in candidates:
        if isinstance(candidate, Mapping) and candidate.get(key_by) is not None:
            return serialize_key(candidate[key_by])
    return None


def same_key(left: Any, right: Any) -> bool:
    """Compare two key references (raw ids or derived keys)."""
    return serialize_key(left) == serialize_key(right)


def generate_temp_key() -> str:
    """Generate a placeholder key for an item with no server identity yet."""
    return f"temp-{uuid.uuid4().hex[:12]}"
