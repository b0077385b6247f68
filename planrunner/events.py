# planrunner/events.py
"""
Execution events and the bus that delivers them.

Consumers subscribe per event type (or to everything) and get back a
Subscription handle; calling it removes the callback again. Delivery
is synchronous and fire-and-forget: a failing subscriber is logged
and never interrupts execution.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Kinds of execution events."""
    PROGRESS = "plan.progress"
    STEP_COMPLETE = "step.complete"
    STEP_FAILED = "step.failed"
    PLAN_COMPLETE = "plan.complete"
    PLAN_PAUSED = "plan.paused"
    PLAN_RESUMED = "plan.resumed"
    PLAN_CANCELLED = "plan.cancelled"


@dataclass
class PlanProgress:
    """
    Progress snapshot of an executing plan.

    Times are in seconds. estimated_time_remaining is None until at
    least one step has completed.
    """
    plan_id: str
    total_steps: int
    completed_steps: int
    percent_complete: int
    elapsed_time: float
    current_step: Optional[Any] = None  # Step currently in progress
    estimated_time_remaining: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "plan_id": self.plan_id,
            "total_steps": self.total_steps,
            "completed_steps": self.completed_steps,
            "percent_complete": self.percent_complete,
            "elapsed_time": self.elapsed_time,
            "current_step": self.current_step.to_dict() if self.current_step else None,
            "estimated_time_remaining": self.estimated_time_remaining,
        }


@dataclass
class PlanEvent:
    """Serializable envelope for an execution event."""
    event_type: EventType
    plan_id: str
    payload: Any = None
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        payload = self.payload
        if hasattr(payload, "to_dict"):
            payload = payload.to_dict()
        elif isinstance(payload, dict):
            payload = {
                k: v.to_dict() if hasattr(v, "to_dict") else v
                for k, v in payload.items()
            }
        return {
            "event_type": self.event_type.value,
            "plan_id": self.plan_id,
            "payload": payload,
            "timestamp": self.timestamp,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


EventCallback = Callable[[PlanEvent], None]


class Subscription:
    """Handle returned by EventBus.subscribe; call it to unsubscribe."""

    def __init__(self, bus: "EventBus", key: Optional[EventType], callback: EventCallback):
        self._bus = bus
        self._key = key
        self._callback = callback
        self.active = True

    def unsubscribe(self) -> None:
        if self.active:
            self._bus._remove(self._key, self._callback)
            self.active = False

    def __call__(self) -> None:
        self.unsubscribe()


class EventBus:
    """In-process publish/subscribe for execution events."""

    def __init__(self):
        # None key holds subscribers to every event type
        self._subscribers: Dict[Optional[EventType], List[EventCallback]] = {}

    def subscribe(self, event_type: EventType, callback: EventCallback) -> Subscription:
        """Call callback for every event of the given type."""
        self._subscribers.setdefault(EventType(event_type), []).append(callback)
        return Subscription(self, EventType(event_type), callback)

    def subscribe_all(self, callback: EventCallback) -> Subscription:
        """Call callback for every event."""
        self._subscribers.setdefault(None, []).append(callback)
        return Subscription(self, None, callback)

    def _remove(self, key: Optional[EventType], callback: EventCallback) -> None:
        callbacks = self._subscribers.get(key, [])
        if callback in callbacks:
            callbacks.remove(callback)

    def publish(self, event: PlanEvent) -> None:
        """Deliver an event to its subscribers."""
        callbacks = list(self._subscribers.get(event.event_type, []))
        callbacks += self._subscribers.get(None, [])
        for callback in callbacks:
            try:
                callback(event)
            except Exception as e:
                logger.warning(f"Event subscriber error on {event.event_type.value}: {e}")

    def subscriber_count(self, event_type: Optional[EventType] = None) -> int:
        if event_type is None:
            return sum(len(c) for c in self._subscribers.values())
        return len(self._subscribers.get(EventType(event_type), []))

    def clear(self) -> None:
        """Remove all subscribers."""
        self._subscribers.clear()


class EventRecorder:
    """
    Collects published events in order.

    Usage:
        recorder = EventRecorder(bus)
        ...
        assert recorder.types() == [EventType.PROGRESS, ...]
        recorder.close()
    """

    def __init__(self, bus: EventBus):
        self.events: List[PlanEvent] = []
        self._subscription = bus.subscribe_all(self.events.append)

    def of_type(self, event_type: EventType) -> List[PlanEvent]:
        return [e for e in self.events if e.event_type == event_type]

    def types(self) -> List[EventType]:
        return [e.event_type for e in self.events]

    def close(self) -> None:
        self._subscription.unsubscribe()
