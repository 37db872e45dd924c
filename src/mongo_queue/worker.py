"""
Polling worker that consumes messages from a queue.
"""

import logging
import signal
import threading
import time
import uuid
from collections.abc import Mapping
from typing import Any, Callable, Dict, Optional

from .errors import GetCancelledError
from .message import add_seconds, payload_from_handle, utcnow
from .queue import DEFAULT_POLL_DURATION, DEFAULT_WAIT_DURATION, Queue

logger = logging.getLogger(__name__)

# Handler receives the payload; returning a mapping sends it as a follow-up
# message in place of the processed one.
Handler = Callable[[Dict[str, Any]], Optional[Mapping]]


class QueueWorker:
    """
    Claims messages one at a time and hands them to a handler.

    A message is replaced by the returned payload when the handler returns a
    mapping and acked when it returns anything else. It is requeued after
    retry_delay seconds when the handler raises.
    """

    def __init__(self, queue: Queue, handler: Handler, query: Optional[Mapping] = None,
                 reset_duration: float = 300.0,
                 wait_duration: float = DEFAULT_WAIT_DURATION,
                 poll_duration: float = DEFAULT_POLL_DURATION,
                 retry_delay: float = 60.0,
                 max_messages: Optional[int] = None,
                 stop_when_empty: bool = False,
                 worker_id: Optional[str] = None):
        """
        Initialize the worker.

        Args:
            queue: Queue to consume
            handler: Called with each message payload (without the id)
            query: Query over payload fields passed to get()
            reset_duration: Seconds a claim lasts before the message is recovered
            wait_duration: Seconds each get() call waits for a message
            poll_duration: Seconds between claim attempts
            retry_delay: Seconds before a failed message becomes available again
            max_messages: Stop after this many messages (default: unlimited)
            stop_when_empty: Stop the first time get() returns nothing
            worker_id: Worker ID used in logs (generated if not provided)
        """
        self.queue = queue
        self.handler = handler
        self.query = dict(query or {})
        self.reset_duration = reset_duration
        self.wait_duration = wait_duration
        self.poll_duration = poll_duration
        self.retry_delay = retry_delay
        self.max_messages = max_messages
        self.stop_when_empty = stop_when_empty
        self.worker_id = worker_id or f"worker_{uuid.uuid4().hex[:8]}"

        self.running = False
        self._stop_event = threading.Event()

        self.stats = {
            "messages_processed": 0,
            "messages_failed": 0,
            "messages_forwarded": 0,
            "start_time": None,
            "end_time": None
        }

    def run(self) -> Dict[str, Any]:
        """
        Process messages until stopped, empty or max_messages is reached.

        Returns:
            Processing statistics
        """
        logger.info(f"Starting worker {self.worker_id}")
        self.stats["start_time"] = time.time()
        self.running = True

        try:
            while not self._stop_event.is_set():
                if self.max_messages is not None and self._handled() >= self.max_messages:
                    logger.info(f"Worker {self.worker_id} reached max messages ({self.max_messages})")
                    break

                try:
                    message = self.queue.get(
                        self.query,
                        self.reset_duration,
                        wait_duration=self.wait_duration,
                        poll_duration=self.poll_duration,
                        cancel_event=self._stop_event
                    )
                except GetCancelledError:
                    logger.info(f"Worker {self.worker_id} cancelled while waiting")
                    break

                if message is None:
                    if self.stop_when_empty:
                        logger.info(f"Worker {self.worker_id} found no more messages")
                        break
                    continue

                self._process(message)
        finally:
            self.running = False
            self.stats["end_time"] = time.time()

        logger.info(
            f"Worker {self.worker_id} stopped. Processed {self.stats['messages_processed']} messages "
            f"with {self.stats['messages_failed']} failures"
        )
        return self.stats

    def stop(self) -> None:
        """Request shutdown; a get() blocked in its poll wait aborts at once."""
        logger.info(f"Shutdown requested for worker {self.worker_id}")
        self._stop_event.set()

    def install_signal_handlers(self) -> None:
        """Stop gracefully on SIGINT and SIGTERM. Main thread only."""
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

    def _signal_handler(self, signum, frame):
        signal_name = signal.Signals(signum).name
        logger.info(f"Worker {self.worker_id} received {signal_name} signal")
        self.stop()

    def _handled(self) -> int:
        return self.stats["messages_processed"] + self.stats["messages_failed"]

    def _process(self, message: Dict[str, Any]) -> None:
        message_id = message["id"]
        try:
            follow_up = self.handler(payload_from_handle(message))
        except Exception as e:
            logger.warning(f"Worker {self.worker_id} failed on message {message_id}: {str(e)}")
            self.stats["messages_failed"] += 1
            self.queue.requeue(message, earliest_get=add_seconds(utcnow(), self.retry_delay))
            return

        if isinstance(follow_up, Mapping):
            self.queue.ack_send(message, follow_up)
            self.stats["messages_forwarded"] += 1
        else:
            if follow_up is not None:
                logger.warning(f"Worker {self.worker_id} ignoring non-mapping result "
                               f"{type(follow_up).__name__} for message {message_id}")
            self.queue.ack(message)

        self.stats["messages_processed"] += 1
        logger.debug(f"Worker {self.worker_id} processed message {message_id}")
