"""
Message record model and query helpers.

A message is stored as one document:

    {
        "payload": {...},           # caller data
        "running": False,           # True while claimed by a consumer
        "resetTimestamp": <date>,   # when a claim is considered stuck
        "earliestGet": <date>,      # invisible to get() before this instant
        "priority": 0.0,            # lower value is served first
        "created": <date>           # tie-breaker after priority
    }

All instants are naive UTC datetimes truncated to milliseconds, which is what
BSON dates hold and what pymongo hands back.
"""

import math
import numbers
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from bson import ObjectId

from .errors import InvalidArgumentError

PAYLOAD_PREFIX = "payload."
HANDLE_ID_FIELD = "id"

# Largest BSON date a datetime round-trips without loss
MAX_TIMESTAMP = datetime(9999, 12, 31, 23, 59, 59, 999000)

DEFAULT_PRIORITY = 0.0


def utcnow() -> datetime:
    """Current UTC time as a naive datetime with millisecond precision."""
    now = datetime.now(timezone.utc).replace(tzinfo=None)
    return now.replace(microsecond=now.microsecond // 1000 * 1000)


def add_seconds(instant: datetime, seconds: float) -> datetime:
    """
    Add a number of seconds to an instant, saturating at MAX_TIMESTAMP.

    Args:
        instant: Base instant
        seconds: Offset in seconds; may be huge or infinite

    Returns:
        The shifted instant, never later than MAX_TIMESTAMP
    """
    try:
        result = instant + timedelta(seconds=seconds)
    except OverflowError:
        return MAX_TIMESTAMP if seconds > 0 else datetime.min
    return min(result, MAX_TIMESTAMP)


def qualify_fields(fields: Optional[Mapping], prefix: str = PAYLOAD_PREFIX) -> Dict[str, Any]:
    """
    Prefix every top-level key of a caller query with ``payload.``.

    Operators below the top level are kept as they are, so
    ``{"a": {"$gt": 1}, "b.c": 3}`` is valid while ``{"$and": [...]}`` is not.

    Args:
        fields: Caller query over payload fields
        prefix: Prefix to apply to each key

    Returns:
        New ordered dictionary with qualified keys
    """
    if fields is None:
        raise InvalidArgumentError("query is required")
    if not isinstance(fields, Mapping):
        raise InvalidArgumentError(f"query must be a mapping, got {type(fields).__name__}")

    qualified = {}
    for key, value in fields.items():
        if not isinstance(key, str):
            raise InvalidArgumentError(f"query keys must be strings, got {key!r}")
        if key.startswith("$"):
            raise InvalidArgumentError(f"top level operators are not supported in queries: {key}")
        qualified[prefix + key] = value
    return qualified


def validate_priority(priority: Any) -> float:
    """Return priority as a float, rejecting NaN and non-numbers."""
    if isinstance(priority, bool) or not isinstance(priority, numbers.Real):
        raise InvalidArgumentError(f"priority must be a number, got {priority!r}")
    priority = float(priority)
    if math.isnan(priority):
        raise InvalidArgumentError("priority was NaN")
    return priority


def handle_id(handle: Any) -> ObjectId:
    """
    Extract the message id from a handle returned by get().

    Raises:
        InvalidArgumentError: If the handle is missing or its id is not an ObjectId
    """
    if handle is None:
        raise InvalidArgumentError("message is required")
    if not isinstance(handle, Mapping):
        raise InvalidArgumentError(f"message must be a mapping, got {type(handle).__name__}")

    message_id = handle.get(HANDLE_ID_FIELD)
    if not isinstance(message_id, ObjectId):
        raise InvalidArgumentError("id must be an ObjectId")
    return message_id


def payload_from_handle(handle: Mapping) -> Dict[str, Any]:
    """Copy of a handle with the injected id removed."""
    return {key: value for key, value in handle.items() if key != HANDLE_ID_FIELD}


def make_handle(document: Mapping) -> Dict[str, Any]:
    """Build the handle returned to callers from a claimed document."""
    handle = dict(document.get("payload") or {})
    handle[HANDLE_ID_FIELD] = document["_id"]
    return handle


@dataclass
class MessageRecord:
    """
    A message ready to be written to the collection.

    Construction validates every field, so any record that exists is safe to
    write. Defaults: earliest_get is now, priority is 0.0.
    """
    payload: Mapping
    earliest_get: Optional[datetime] = None
    priority: float = DEFAULT_PRIORITY
    created: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        if self.payload is None:
            raise InvalidArgumentError("payload is required")
        if not isinstance(self.payload, Mapping):
            raise InvalidArgumentError(f"payload must be a mapping, got {type(self.payload).__name__}")

        if self.earliest_get is None:
            self.earliest_get = self.created
        elif not isinstance(self.earliest_get, datetime):
            raise InvalidArgumentError(
                f"earliest_get must be a datetime, got {type(self.earliest_get).__name__}")

        self.priority = validate_priority(self.priority)

    def to_document(self) -> Dict[str, Any]:
        """Convert to the document stored in the collection."""
        return {
            "payload": dict(self.payload),
            "running": False,
            "resetTimestamp": MAX_TIMESTAMP,
            "earliestGet": self.earliest_get,
            "priority": self.priority,
            "created": self.created,
        }
