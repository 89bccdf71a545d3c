"""Event emitters for the deployment lifecycle."""

import logging
import threading
from abc import ABC, abstractmethod
from typing import Callable, Dict, Iterable, List

from deploy_engine.core.events_model import DeploymentEvent

logger = logging.getLogger(__name__)


ALLOWED_EVENTS = {
    "deployment.created",
    "deployment.status_changed",
    "deployment.log",
    "deployment.deleted",
}


def _check_event(event: DeploymentEvent) -> None:
    if event.event_type not in ALLOWED_EVENTS:
        raise ValueError(f"Invalid event type: {event.event_type}")
    if not event.deployment_id:
        raise ValueError("Event must have deployment_id")


class EventEmitter(ABC):
    """Abstract event emitter."""

    @abstractmethod
    def emit(self, events: Iterable[DeploymentEvent]) -> None:
        """Emit one or more events."""
        pass


class RecordingEventEmitter(EventEmitter):
    """Keeps every event in memory. Used by tests and debugging."""

    def __init__(self):
        self.events: List[DeploymentEvent] = []
        self._lock = threading.Lock()

    def emit(self, events: Iterable[DeploymentEvent]) -> None:
        for event in events:
            _check_event(event)
            with self._lock:
                self.events.append(event)
            logger.debug(f"[event] {event.event_type} | deployment={event.deployment_id}")

    def of_type(self, event_type: str) -> List[DeploymentEvent]:
        with self._lock:
            return [e for e in self.events if e.event_type == event_type]


class MultiEventEmitter(EventEmitter):
    """Fan-out to multiple emitters."""

    def __init__(self, emitters: Iterable[EventEmitter]):
        self._emitters = list(emitters)

    def emit(self, events: Iterable[DeploymentEvent]) -> None:
        """Emit to all emitters."""
        events = list(events)
        for emitter in self._emitters:
            emitter.emit(events)


# -------------------------
# PER-DEPLOYMENT CHANNELS
# -------------------------

Subscriber = Callable[[DeploymentEvent], None]


class Subscription:
    """Handle returned by `subscribe`. Closing it unregisters the callback."""

    def __init__(self, channel: "_Channel", callback: Subscriber):
        self._channel = channel
        self._callback = callback
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        if not self._closed:
            self._channel.remove(self._callback)
            self._closed = True

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


class _Channel:
    def __init__(self):
        self._lock = threading.Lock()
        self._subscribers: List[Subscriber] = []

    def add(self, callback: Subscriber) -> None:
        with self._lock:
            self._subscribers.append(callback)

    def remove(self, callback: Subscriber) -> None:
        with self._lock:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

    def deliver(self, event: DeploymentEvent) -> None:
        # Deliver under the channel lock so subscribers see events in order
        with self._lock:
            for callback in list(self._subscribers):
                try:
                    callback(event)
                except Exception as e:
                    logger.error(f"[events] subscriber failed for {event.deployment_id}: {e}")


class DeploymentEventHub(EventEmitter):
    """
    Broadcasts events on one channel per deployment.

    Each channel has its own lock, so delivery for one stack never waits
    on another. The registry lock only guards channel lookup.
    """

    def __init__(self):
        self._channels: Dict[str, _Channel] = {}
        self._registry_lock = threading.Lock()

    def subscribe(self, deployment_id: str, callback: Subscriber) -> Subscription:
        channel = self._channel(deployment_id)
        channel.add(callback)
        return Subscription(channel, callback)

    def emit(self, events: Iterable[DeploymentEvent]) -> None:
        for event in events:
            _check_event(event)
            with self._registry_lock:
                channel = self._channels.get(event.deployment_id)
            if channel is not None:
                channel.deliver(event)

    def drop(self, deployment_id: str) -> None:
        """Forget a deployment's channel (after deletion)."""
        with self._registry_lock:
            self._channels.pop(deployment_id, None)

    def _channel(self, deployment_id: str) -> _Channel:
        with self._registry_lock:
            channel = self._channels.get(deployment_id)
            if channel is None:
                channel = _Channel()
                self._channels[deployment_id] = channel
            return channel
