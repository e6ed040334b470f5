"""
Lifecycle notification channel.

Agents and the coordinator publish lifecycle events here for observers
(logging, dashboards, tests). Events are notifications only: the pipeline
never reads them back to decide what to do next.
"""

import logging
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Set


class LifecycleEvent(Enum):
    """Events emitted by agents and the coordinator."""
    TASK_RECEIVED = "task_received"
    PLAN_CREATED = "plan_created"
    TASK_STARTED = "task_started"
    STEP_COMPLETED = "step_completed"
    REVIEW_STARTED = "review_started"
    AGENT_REGISTERED = "agent_registered"
    AGENT_REMOVED = "agent_removed"
    MESSAGE_SENT = "message_sent"
    MESSAGE_RECEIVED = "message_received"


@dataclass
class Event:
    """A single published notification."""
    event: LifecycleEvent
    source: str
    payload: Dict[str, Any]
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event": self.event.value,
            "source": self.source,
            "payload": self.payload,
            "timestamp": self.timestamp.isoformat(),
        }


Subscriber = Callable[[Event], None]


class EventChannel:
    """Typed publish/subscribe channel.

    Subscribers register for one event or for every event. A subscriber
    that raises is logged and skipped; the publisher never sees the error.
    """

    def __init__(self, source: str, history_size: int = 500):
        self.source = source
        self.logger = logging.getLogger("events")
        self._subscribers: Dict[LifecycleEvent, List[Subscriber]] = defaultdict(list)
        self._wildcard: List[Subscriber] = []
        self._history: Deque[Event] = deque(maxlen=history_size)

    def subscribe(self, event: Optional[LifecycleEvent], callback: Subscriber) -> None:
        """Subscribe to one event, or to all events when ``event`` is None."""
        if event is None:
            self._wildcard.append(callback)
        else:
            self._subscribers[event].append(callback)

    def unsubscribe(self, event: Optional[LifecycleEvent], callback: Subscriber) -> None:
        targets = self._wildcard if event is None else self._subscribers.get(event, [])
        if callback in targets:
            targets.remove(callback)

    def emit(self, event: LifecycleEvent, payload: Dict[str, Any]) -> Event:
        """Publish an event to its subscribers and to wildcard subscribers."""
        record = Event(event=event, source=self.source, payload=payload)
        self._history.append(record)
        for callback in list(self._subscribers.get(event, [])) + list(self._wildcard):
            try:
                callback(record)
            except Exception as e:
                self.logger.error(f"Subscriber error on {event.value} from {self.source}: {e}")
        return record

    def history(self, event: Optional[LifecycleEvent] = None) -> List[Event]:
        """Recently published events, oldest first."""
        if event is None:
            return list(self._history)
        return [e for e in self._history if e.event == event]

    @property
    def subscribed_events(self) -> Set[LifecycleEvent]:
        return {e for e, subs in self._subscribers.items() if subs}
