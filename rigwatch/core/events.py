"""
Poller events and their delivery to subscribers
"""
import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Union

from rigwatch.adapters.base import DeviceSnapshot

logger = logging.getLogger(__name__)


@dataclass
class SnapshotEvent:
    """A device was polled successfully"""
    device_id: int
    snapshot: DeviceSnapshot
    name = "snapshot"

    def to_dict(self) -> Dict[str, Any]:
        return {"device_id": self.device_id, "snapshot": self.snapshot.to_dict()}


@dataclass
class StatusChangeEvent:
    """A device went online or offline; auth_required marks a device that rejected its credentials"""
    device_id: int
    online: bool
    snapshot: DeviceSnapshot = field(default_factory=DeviceSnapshot)
    auth_required: bool = False
    name = "status"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "device_id": self.device_id,
            "online": self.online,
            "auth_required": self.auth_required,
            "snapshot": self.snapshot.to_dict()
        }


@dataclass
class NewRecordEvent:
    """A device beat its best-ever difficulty"""
    device_id: int
    difficulty: float
    device_name: str = ""
    name = "record"

    def to_dict(self) -> Dict[str, Any]:
        return {"device_id": self.device_id, "difficulty": self.difficulty, "device_name": self.device_name}


Event = Union[SnapshotEvent, StatusChangeEvent, NewRecordEvent]
Subscriber = Callable[[Event], Any]


class EventBus:
    """
    Fan-out of poller events to any number of subscribers.

    Subscribers are plain callables (sync or async) or queues obtained
    from subscribe_queue(). A failing subscriber is logged and skipped;
    it never affects the poll that produced the event.
    """

    def __init__(self):
        self._subscribers: List[Subscriber] = []

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a callback; returns a function that unsubscribes it"""
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def subscribe_queue(self, maxsize: int = 0) -> "asyncio.Queue[Event]":
        """Receive events through a queue the caller drains"""
        queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.subscribe(queue.put)
        return queue

    async def publish(self, event: Event) -> None:
        """Deliver event to every subscriber"""
        for callback in list(self._subscribers):
            try:
                result = callback(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(f"⚠️ Event subscriber failed on {event.name} for device {event.device_id}")
