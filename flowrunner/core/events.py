"""In-process event bus for execution progress streaming."""

import threading
import uuid
from datetime import datetime
from queue import Queue
from typing import Any, Dict, List, Optional

from ..models.core import ExecutionEvent
from .logging import get_logger

logger = get_logger(__name__)

# Event types
EXECUTION_STARTED = "execution_started"
NODE_STARTED = "node_started"
NODE_COMPLETED = "node_completed"
NODE_FAILED = "node_failed"
NODE_SKIPPED = "node_skipped"
EXECUTION_FINISHED = "execution_finished"

TERMINAL_EVENTS = frozenset({EXECUTION_FINISHED})


class EventSubscription:
    """Queue of events for one execution, drained by a single consumer."""

    def __init__(self, execution_id: str):
        self.subscription_id = str(uuid.uuid4())
        self.execution_id = execution_id
        self.queue: Queue = Queue()
        self.closed = False


class ExecutionEventBus:
    """
    Fan-out of execution events to per-execution subscribers.

    Publishers are engine worker threads; subscribers read from their own
    queue, so a slow consumer never blocks an execution.
    """

    def __init__(self):
        self._subscriptions: Dict[str, List[EventSubscription]] = {}
        self._lock = threading.Lock()

    def subscribe(self, execution_id: str) -> EventSubscription:
        subscription = EventSubscription(execution_id)
        with self._lock:
            self._subscriptions.setdefault(execution_id, []).append(subscription)
        return subscription

    def unsubscribe(self, subscription: EventSubscription) -> None:
        subscription.closed = True
        with self._lock:
            subscribers = self._subscriptions.get(subscription.execution_id, [])
            if subscription in subscribers:
                subscribers.remove(subscription)
            if not subscribers:
                self._subscriptions.pop(subscription.execution_id, None)

    def publish(self, execution_id: str, event_type: str, data: Optional[Dict[str, Any]] = None) -> ExecutionEvent:
        """Deliver an event to every current subscriber of the execution."""
        event = ExecutionEvent(
            event_type=event_type,
            execution_id=execution_id,
            timestamp=datetime.utcnow(),
            data=data or {}
        )
        with self._lock:
            subscribers = list(self._subscriptions.get(execution_id, []))
        for subscription in subscribers:
            if not subscription.closed:
                subscription.queue.put(event)
        if subscribers:
            logger.debug(f"Published {event_type} for {execution_id} to {len(subscribers)} subscriber(s)")
        return event

    def subscriber_count(self, execution_id: str) -> int:
        with self._lock:
            return len(self._subscriptions.get(execution_id, []))
