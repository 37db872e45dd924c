"""
Exceptions raised by the message queue.
"""

from typing import Any, List, Optional, Tuple


class QueueError(Exception):
    """Base class for all queue errors."""
    pass


class InvalidArgumentError(QueueError, ValueError):
    """Raised when a caller passes an argument the queue cannot accept."""
    pass


class ConfigurationError(QueueError):
    """Raised when queue configuration is missing or malformed."""
    pass


class GetCancelledError(QueueError):
    """Raised when a get() call is cancelled while waiting for a message."""
    pass


class IndexCreationError(QueueError):
    """Raised when an index could not be created and verified."""
    def __init__(self, message: str, keys: List[Tuple[str, Any]], attempts: int,
                 last_error: Optional[Exception] = None):
        super().__init__(message)
        self.keys = keys
        self.attempts = attempts
        self.last_error = last_error
