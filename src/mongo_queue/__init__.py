"""
Priority message queue backed by a MongoDB collection.

Messages move between three states using only atomic collection operations:

- waiting: ``running`` is false; handed out by get() once ``earliestGet`` has passed
- running: claimed by get() until acked, replaced or its ``resetTimestamp`` passes
- removed: acked, or replaced in place by ack_send()/requeue()

Key Features:
- Ordered claiming by priority (lower first), then creation time
- Automatic recovery of messages whose consumer died
- Atomic ack-and-send for chaining work
- Index derivation for get() and count() query shapes
- Any number of producers and consumers sharing one collection
"""

from .errors import (
    ConfigurationError, GetCancelledError, IndexCreationError, InvalidArgumentError, QueueError
)
from .message import MAX_TIMESTAMP, MessageRecord
from .queue import Queue
from .worker import QueueWorker

__version__ = "1.0.0"

__all__ = [
    'Queue',
    'QueueWorker',
    'MessageRecord',
    'MAX_TIMESTAMP',
    'QueueError',
    'InvalidArgumentError',
    'ConfigurationError',
    'GetCancelledError',
    'IndexCreationError',
]
