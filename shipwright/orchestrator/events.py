"""Fan-out of workflow progress events to independent subscribers.

Each subscriber owns an unbounded queue, so publishing never blocks on a slow
consumer. A subscription ends after it has delivered a final event.
"""

import queue
import threading
from collections import defaultdict
from typing import Dict, Iterator, List, Optional

from ..core.workflow_state import WorkflowEvent


class EventSubscription:
    """One consumer's view of a workflow's event stream."""

    def __init__(self, broadcaster: "EventBroadcaster", workflow_id: str):
        self.workflow_id = workflow_id
        self._broadcaster = broadcaster
        self._queue: "queue.Queue[WorkflowEvent]" = queue.Queue()
        self._finished = False

    def put(self, event: WorkflowEvent) -> None:
        self._queue.put(event)

    @property
    def finished(self) -> bool:
        return self._finished

    def next_event(self, timeout: Optional[float] = None) -> Optional[WorkflowEvent]:
        """Wait for the next event.

        Args:
            timeout: Seconds to wait; None blocks until an event arrives

        Returns:
            The event, or None on timeout or once the stream has finished
        """
        if self._finished:
            return None
        try:
            event = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        if event.is_final():
            self._finished = True
            self.close()
        return event

    def __iter__(self) -> Iterator[WorkflowEvent]:
        while not self._finished:
            event = self.next_event()
            if event is not None:
                yield event

    def close(self) -> None:
        self._broadcaster.unsubscribe(self)


class EventBroadcaster:
    """Per-workflow publish/subscribe hub."""

    def __init__(self) -> None:
        self._subscribers: Dict[str, List[EventSubscription]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(
        self, workflow_id: str, initial_event: Optional[WorkflowEvent] = None
    ) -> EventSubscription:
        """Register a subscriber, optionally seeding it with a first event."""
        subscription = EventSubscription(self, workflow_id)
        if initial_event is not None:
            subscription.put(initial_event)
        with self._lock:
            self._subscribers[workflow_id].append(subscription)
        return subscription

    def unsubscribe(self, subscription: EventSubscription) -> None:
        with self._lock:
            subscribers = self._subscribers.get(subscription.workflow_id)
            if subscribers and subscription in subscribers:
                subscribers.remove(subscription)
            if not subscribers:
                self._subscribers.pop(subscription.workflow_id, None)

    def publish(self, workflow_id: str, event: WorkflowEvent) -> int:
        """Deliver ``event`` to every current subscriber of ``workflow_id``.

        Returns:
            Number of subscribers the event was queued for
        """
        with self._lock:
            subscribers = list(self._subscribers.get(workflow_id, ()))
        for subscription in subscribers:
            subscription.put(event)
        return len(subscribers)

    def subscriber_count(self, workflow_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(workflow_id, ()))
