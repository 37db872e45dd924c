"""
Priority message queue on top of a MongoDB collection.
"""

import logging
import math
import numbers
import threading
import time
from collections.abc import Mapping
from datetime import datetime
from typing import Any, Dict, Optional

from bson import ObjectId
from pymongo import ASCENDING, ReturnDocument

from .errors import GetCancelledError, InvalidArgumentError
from .indexes import (
    FieldSpec, count_index_keys, ensure_index, get_index_keys, sweep_index_keys
)
from .message import (
    DEFAULT_PRIORITY, MessageRecord, add_seconds, handle_id, make_handle,
    payload_from_handle, qualify_fields, utcnow
)

logger = logging.getLogger(__name__)

DEFAULT_WAIT_DURATION = 3.0  # seconds
DEFAULT_POLL_DURATION = 0.2  # seconds

CLAIM_SORT = [("priority", ASCENDING), ("created", ASCENDING)]


def _validate_duration(value: Any, name: str) -> None:
    if isinstance(value, bool) or not isinstance(value, numbers.Real) or math.isnan(value):
        raise InvalidArgumentError(f"{name} must be a number, got {value!r}")


class Queue:
    """
    Message queue with atomic claiming, priorities and stuck message recovery.

    The queue keeps no state of its own. Every guarantee comes from atomic
    operations on the collection, so any number of Queue instances, in any
    number of threads or processes, may share one collection.
    """

    def __init__(self, collection):
        """
        Initialize the queue.

        Args:
            collection: pymongo Collection holding the messages
        """
        if collection is None:
            raise InvalidArgumentError("collection is required")
        self.collection = collection

    # ========================================
    # INDEXES
    # ========================================

    def ensure_get_index(self, before_sort: Optional[FieldSpec] = None,
                         after_sort: Optional[FieldSpec] = None) -> None:
        """
        Ensure the indexes used by get().

        Args:
            before_sort: Query fields that should precede the sort fields in the
                index, as {field: 1 or -1} or (field, direction) pairs
            after_sort: Query fields that should follow the sort fields
        """
        keys = get_index_keys(before_sort, after_sort)
        ensure_index(self.collection, keys)
        ensure_index(self.collection, sweep_index_keys())

    def ensure_count_index(self, fields: FieldSpec, include_running: bool) -> None:
        """
        Ensure the index used by count().

        Args:
            fields: Query fields passed to count(), as {field: 1 or -1}
            include_running: Whether running is passed to count()
        """
        ensure_index(self.collection, count_index_keys(fields, include_running))

    # ========================================
    # CLAIMING
    # ========================================

    def get(self, query: Mapping, reset_duration: float,
            wait_duration: float = DEFAULT_WAIT_DURATION,
            poll_duration: float = DEFAULT_POLL_DURATION,
            cancel_event: Optional[threading.Event] = None) -> Optional[Dict[str, Any]]:
        """
        Claim the next available message.

        Messages are handed out by ascending priority, then by creation time.
        Claimed messages whose reset timestamp has passed are made available
        again first.

        Args:
            query: Query over payload fields. Top level keys must not be
                operators, lower levels may be: {"a": {"$gt": 1}, "b.c": 3} is
                valid, {"$and": [...]} is not.
            reset_duration: Seconds before a claimed message is considered
                abandoned and handed out again. May be infinite.
            wait_duration: Seconds to keep polling before giving up. At least
                one claim attempt is always made.
            poll_duration: Seconds between claim attempts
            cancel_event: Optional event; setting it aborts the wait

        Returns:
            The message payload with an added "id" field, or None

        Raises:
            GetCancelledError: If cancel_event is set while waiting
        """
        built_query = qualify_fields(query)
        _validate_duration(reset_duration, "reset_duration")
        _validate_duration(wait_duration, "wait_duration")
        if isinstance(poll_duration, bool) or not isinstance(poll_duration, numbers.Real):
            raise InvalidArgumentError(f"poll_duration must be a number, got {poll_duration!r}")
        if not poll_duration > 0:
            poll_duration = 0

        deadline = time.monotonic() + wait_duration

        self._reset_stuck()

        while True:
            now = utcnow()
            claim_query = {"running": False}
            claim_query.update(built_query)
            claim_query["earliestGet"] = {"$lte": now}

            update = {"$set": {"running": True,
                               "resetTimestamp": add_seconds(now, reset_duration)}}

            message = self.collection.find_one_and_update(
                claim_query,
                update,
                projection={"payload": 1},
                sort=CLAIM_SORT,
                return_document=ReturnDocument.AFTER
            )
            if message is not None:
                logger.debug(f"Claimed message {message['_id']}")
                return make_handle(message)

            if time.monotonic() >= deadline:
                return None

            if cancel_event is None:
                time.sleep(poll_duration)
            elif cancel_event.wait(poll_duration):
                raise GetCancelledError("get() cancelled while waiting for a message")

    def _reset_stuck(self) -> None:
        """Make claimed messages whose reset timestamp has passed available again."""
        result = self.collection.update_many(
            {"running": True, "resetTimestamp": {"$lte": utcnow()}},
            {"$set": {"running": False}}
        )
        if result.modified_count:
            logger.info(f"Reset {result.modified_count} stuck messages")

    # ========================================
    # COUNTING
    # ========================================

    def count(self, query: Mapping, running: Optional[bool] = None) -> int:
        """
        Count messages in the queue.

        Args:
            query: Query over payload fields, same rules as get()
            running: Count only running (True) or waiting (False) messages;
                None counts both

        Returns:
            Number of matching messages
        """
        complete_query = {}
        if running is not None:
            complete_query["running"] = bool(running)
        complete_query.update(qualify_fields(query))

        return self.collection.count_documents(complete_query)

    # ========================================
    # ACK / SEND
    # ========================================

    def ack(self, message: Mapping) -> None:
        """
        Acknowledge a message was processed and remove it from the queue.

        Acking a message that is already gone is not an error.

        Args:
            message: Message returned by get()
        """
        message_id = handle_id(message)
        self.collection.delete_one({"_id": message_id})
        logger.debug(f"Acked message {message_id}")

    def ack_send(self, message: Mapping, payload: Mapping,
                 earliest_get: Optional[datetime] = None,
                 priority: float = DEFAULT_PRIORITY) -> None:
        """
        Acknowledge a message and send a new payload, atomically.

        The record keeps its id. If it was removed in the meantime the new
        payload is inserted anyway.

        Args:
            message: Message returned by get()
            payload: Payload to send
            earliest_get: Earliest instant get() may return the message; now if None
            priority: Lower is served first. Must not be NaN.
        """
        message_id = handle_id(message)
        record = MessageRecord(payload, earliest_get=earliest_get, priority=priority)

        # upsert: a missing record was removed by someone else, just send
        self.collection.replace_one({"_id": message_id}, record.to_document(), upsert=True)
        logger.debug(f"Acked and sent message {message_id}")

    def requeue(self, message: Mapping, earliest_get: Optional[datetime] = None,
                priority: float = DEFAULT_PRIORITY) -> None:
        """
        Put a message back in the queue with new scheduling parameters.

        Same as ack_send() with the message's own payload.

        Args:
            message: Message returned by get()
            earliest_get: Earliest instant get() may return the message; now if None
            priority: Lower is served first. Must not be NaN.
        """
        handle_id(message)
        self.ack_send(message, payload_from_handle(message),
                      earliest_get=earliest_get, priority=priority)

    def send(self, payload: Mapping, earliest_get: Optional[datetime] = None,
             priority: float = DEFAULT_PRIORITY) -> ObjectId:
        """
        Send a message to the queue.

        Args:
            payload: Message payload
            earliest_get: Earliest instant get() may return the message; now if None
            priority: Lower is served first. Must not be NaN.

        Returns:
            Id of the new message
        """
        record = MessageRecord(payload, earliest_get=earliest_get, priority=priority)

        result = self.collection.insert_one(record.to_document())
        logger.debug(f"Sent message {result.inserted_id} with priority {record.priority}")
        return result.inserted_id
