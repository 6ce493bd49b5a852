"""
Process-local publish/subscribe channel for reconciler events, plus a
ZeroMQ bridge that mirrors selected events to and from other processes.
"""

import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

from src.common.ipc import MessagePublisher, MessageSubscriber
from src.common.logger import setup_logger

logger = setup_logger(__name__)


# Event names
SCREEN_NEEDS_REFRESH = 'screen-needs-refresh'
HOUSE_CREATED = 'house-created'
ACCOUNT_FLAGS_CLEANED = 'account-flags-cleaned'
RECONCILE_ERROR = 'reconcile-error'


@dataclass
class Event:
    """A named event with an optional payload."""

    name: str
    payload: Dict[str, Any] = field(default_factory=dict)


Handler = Callable[[Event], None]


class EventBus:
    """
    Synchronous in-process event bus.

    Handlers run on the publishing thread. A failing handler is logged and
    does not stop delivery to the others.
    """

    def __init__(self):
        self._handlers: Dict[str, List[Handler]] = {}
        self._lock = threading.Lock()

    def subscribe(self, name: str, handler: Handler) -> Callable[[], None]:
        """
        Register a handler for an event name.

        Returns:
            A callable that removes the handler again
        """
        with self._lock:
            self._handlers.setdefault(name, []).append(handler)
        return lambda: self.unsubscribe(name, handler)

    def unsubscribe(self, name: str, handler: Handler) -> None:
        with self._lock:
            handlers = self._handlers.get(name, [])
            if handler in handlers:
                handlers.remove(handler)

    def publish(self, name: str, payload: Optional[Dict[str, Any]] = None) -> None:
        """Deliver an event to every current subscriber."""
        event = Event(name, dict(payload or {}))

        with self._lock:
            handlers = list(self._handlers.get(name, []))

        logger.debug("Publishing %s to %d handler(s)", name, len(handlers))

        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                logger.error("Error in %s handler %r: %s", name, handler, e)

    def handler_count(self, name: str) -> int:
        with self._lock:
            return len(self._handlers.get(name, []))


class ZmqEventBridge:
    """
    Mirrors events between the local EventBus and ZeroMQ sockets.

    Outbound events are re-published on the PUB socket as they happen;
    inbound messages are read on a background thread and published on the
    local bus.
    """

    RECEIVE_TIMEOUT_MS = 500

    def __init__(
        self,
        bus: EventBus,
        publisher: Optional[MessagePublisher] = None,
        subscriber: Optional[MessageSubscriber] = None,
        outbound: Iterable[str] = (SCREEN_NEEDS_REFRESH, ACCOUNT_FLAGS_CLEANED, RECONCILE_ERROR),
        inbound: Iterable[str] = (HOUSE_CREATED,)
    ):
        self._bus = bus
        self._publisher = publisher
        self._subscriber = subscriber
        self._outbound = tuple(outbound)
        self._inbound = tuple(inbound)

        self._unsubscribers: List[Callable[[], None]] = []
        self._thread: Optional[threading.Thread] = None
        self._running = False
        self._stop_event = threading.Event()

    @property
    def is_running(self) -> bool:
        return self._running

    def _forward(self, event: Event) -> None:
        if self._publisher is not None:
            self._publisher.publish(event.name, event.payload)

    def start(self) -> None:
        """Start forwarding in both directions."""
        if self._running:
            logger.warning("Event bridge already running")
            return

        self._running = True
        self._stop_event.clear()

        if self._publisher is not None:
            for name in self._outbound:
                self._unsubscribers.append(self._bus.subscribe(name, self._forward))

        if self._subscriber is not None:
            for name in self._inbound:
                self._subscriber.subscribe_to(name)
            self._thread = threading.Thread(
                target=self._receive_loop,
                name="EventBridge",
                daemon=True
            )
            self._thread.start()

        logger.info("Event bridge started (out: %s, in: %s)",
                    ", ".join(self._outbound), ", ".join(self._inbound))

    def _receive_loop(self) -> None:
        while not self._stop_event.is_set():
            message = self._subscriber.receive(timeout_ms=self.RECEIVE_TIMEOUT_MS)
            if message is None:
                continue
            if message.topic not in self._inbound:
                logger.debug("Ignoring bridged event %s", message.topic)
                continue
            self._bus.publish(message.topic, message.data)

    def stop(self) -> None:
        """Stop forwarding and close the sockets."""
        if not self._running:
            return

        self._running = False
        self._stop_event.set()

        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=5)
        self._thread = None

        if self._publisher is not None:
            self._publisher.close()
        if self._subscriber is not None:
            self._subscriber.close()

        logger.info("Event bridge stopped")
