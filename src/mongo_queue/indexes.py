"""
Index derivation and idempotent index creation for the queue collection.

Compound keys follow the usual rule: equality fields, then sort fields, then
range fields. ``running`` always leads since every queue query filters on it.
"""

import hashlib
import json
import logging
import numbers
import time
from collections.abc import Mapping
from typing import Any, List, Optional, Sequence, Tuple, Union

from pymongo.errors import OperationFailure

from .errors import IndexCreationError, InvalidArgumentError
from .message import PAYLOAD_PREFIX

logger = logging.getLogger(__name__)

IndexKeys = List[Tuple[str, int]]
FieldSpec = Union[Mapping, Sequence[Tuple[str, int]]]

INDEX_ATTEMPTS = 5
INDEX_RETRY_BACKOFF = 0.1  # seconds, doubled after each failed attempt
INDEX_NAME_PREFIX = "mq_"


def _field_items(fields: Optional[FieldSpec], argument: str) -> List[Tuple[str, Any]]:
    if fields is None:
        raise InvalidArgumentError(f"{argument} is required")
    if isinstance(fields, Mapping):
        return list(fields.items())
    if isinstance(fields, (str, bytes)):
        raise InvalidArgumentError(f"{argument} must be a mapping or a sequence of (field, direction) pairs")

    items = []
    for item in fields:
        if not isinstance(item, (tuple, list)) or len(item) != 2:
            raise InvalidArgumentError(
                f"{argument} must be a mapping or a sequence of (field, direction) pairs")
        items.append((item[0], item[1]))
    return items


def qualify_index_fields(fields: Optional[FieldSpec], argument: str = "fields") -> IndexKeys:
    """
    Validate index directions and prefix each field with ``payload.``.

    Args:
        fields: Ordered field specification, a mapping or (field, direction) pairs
        argument: Argument name used in error messages

    Returns:
        List of (qualified field, direction) pairs in the given order

    Raises:
        InvalidArgumentError: If a direction is anything other than 1 or -1
    """
    keys = []
    for name, direction in _field_items(fields, argument):
        if not isinstance(name, str) or not name:
            raise InvalidArgumentError(f"index field names must be non-empty strings, got {name!r}")
        # bool is an int subclass and 1.0 == 1, both are rejected
        if type(direction) is not int or direction not in (1, -1):
            raise InvalidArgumentError("field values must be either 1 or -1")
        keys.append((PAYLOAD_PREFIX + name, direction))
    return keys


def get_index_keys(before_sort: Optional[FieldSpec] = None,
                   after_sort: Optional[FieldSpec] = None) -> IndexKeys:
    """Key pattern serving the claim query issued by get()."""
    keys = [("running", 1)]
    keys.extend(qualify_index_fields(before_sort if before_sort is not None else {}, "before_sort"))
    keys.extend([("priority", 1), ("created", 1)])
    keys.extend(qualify_index_fields(after_sort if after_sort is not None else {}, "after_sort"))
    keys.append(("earliestGet", 1))
    return keys


def sweep_index_keys() -> IndexKeys:
    """Key pattern serving the stuck message sweep issued by get()."""
    return [("running", 1), ("resetTimestamp", 1)]


def count_index_keys(fields: FieldSpec, include_running: bool) -> IndexKeys:
    """Key pattern serving count() with the given fields."""
    keys = [("running", 1)] if include_running else []
    keys.extend(qualify_index_fields(fields, "fields"))
    return keys


def index_name(keys: IndexKeys) -> str:
    """Deterministic index name derived from the key pattern."""
    digest = hashlib.sha1(json.dumps(keys).encode("utf-8")).hexdigest()
    return INDEX_NAME_PREFIX + digest[:24]


def _normalize_direction(value: Any) -> Any:
    if isinstance(value, numbers.Real) and not isinstance(value, bool):
        return int(value)
    return value


def find_index(collection, keys: IndexKeys) -> Optional[str]:
    """
    Find a live index whose key pattern is exactly ``keys``.

    Field order matters. The name of the index is irrelevant: the store treats
    "same name, different keys" and "different name, same keys" as no-ops, so
    only the key pattern proves the index exists.

    Returns:
        Name of the matching index, or None
    """
    for existing in collection.list_indexes():
        existing_keys = [(name, _normalize_direction(direction))
                         for name, direction in existing["key"].items()]
        if existing_keys == list(keys):
            return existing["name"]
    return None


def ensure_index(collection, keys: IndexKeys, attempts: int = INDEX_ATTEMPTS,
                 backoff: float = INDEX_RETRY_BACKOFF) -> str:
    """
    Make sure an index with the given key pattern exists.

    Safe to call concurrently from several processes and idempotent.

    Args:
        collection: pymongo collection
        keys: Ordered key pattern
        attempts: Maximum number of create/verify attempts
        backoff: Initial delay between attempts in seconds

    Returns:
        Name of the live index holding the key pattern

    Raises:
        InvalidArgumentError: If the key pattern is empty
        IndexCreationError: If the index could not be verified after all attempts
    """
    if not keys:
        raise InvalidArgumentError("index must contain at least one field")

    name = index_name(keys)
    last_error = None

    for attempt in range(attempts):
        existing = find_index(collection, keys)
        if existing:
            logger.debug(f"Index {existing} already covers {keys}")
            return existing

        try:
            collection.create_index(keys, name=name, background=True)
        except OperationFailure as e:
            last_error = e
            logger.warning(f"Attempt {attempt + 1}/{attempts} to create index {name} failed: {str(e)}")

        existing = find_index(collection, keys)
        if existing:
            logger.info(f"Ensured index {existing} on {collection.name}: {keys}")
            return existing

        if attempt + 1 < attempts:
            time.sleep(backoff * 2 ** attempt)

    logger.error(f"Could not create index {keys} after {attempts} attempts")
    raise IndexCreationError(
        f"couldn't create index after {attempts} attempts", keys, attempts, last_error)
