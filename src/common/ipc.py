"""
IPC (Inter-Process Communication) using ZeroMQ.
Carries reconciler events between the reconciler and UI processes.
"""

import json
import time
from typing import Any, Dict, Optional

import zmq

from src.common.logger import setup_logger

logger = setup_logger(__name__)


class Message:
    """Standard message format for IPC."""

    def __init__(
        self,
        topic: str,
        data: Dict[str, Any],
        sender: str,
        timestamp: Optional[float] = None
    ):
        """
        Create a message.

        Args:
            topic: Event name (e.g. 'screen-needs-refresh')
            data: Message payload
            sender: Service name that sent the message
            timestamp: Unix timestamp (auto-generated if None)
        """
        self.topic = topic
        self.data = data
        self.sender = sender
        self.timestamp = timestamp or time.time()

    def to_json(self) -> str:
        """Serialize message to JSON string."""
        return json.dumps({
            "topic": self.topic,
            "data": self.data,
            "sender": self.sender,
            "timestamp": self.timestamp
        })

    @classmethod
    def from_json(cls, json_str: str) -> "Message":
        """Deserialize message from JSON string."""
        obj = json.loads(json_str)
        return cls(
            topic=obj["topic"],
            data=obj.get("data") or {},
            sender=obj.get("sender", ""),
            timestamp=obj.get("timestamp")
        )

    def __repr__(self) -> str:
        """String representation."""
        return f"Message(topic={self.topic}, sender={self.sender}, data={self.data})"


class MessagePublisher:
    """Publishes messages to subscribers (PUB socket)."""

    def __init__(self, port: int, service_name: str, context: Optional[zmq.Context] = None):
        """
        Initialize publisher.

        Args:
            port: Port to publish on
            service_name: Name of this service
            context: ZeroMQ context (a new one is created if None)
        """
        self.port = port
        self.service_name = service_name
        self._owns_context = context is None
        self.context = context or zmq.Context()
        self.socket = self.context.socket(zmq.PUB)
        self.socket.bind(f"tcp://*:{port}")

        logger.info("Publisher started: %s on port %d", service_name, port)

    def publish(self, topic: str, data: Dict[str, Any]) -> None:
        """
        Publish a message.

        Args:
            topic: Event name, also used as the ZeroMQ topic prefix
            data: Message payload
        """
        message = Message(topic, data, self.service_name)

        # Topic first so subscribers can filter, then the JSON body
        self.socket.send_string(f"{topic} {message.to_json()}")
        logger.debug("Published: %s", message)

    def close(self) -> None:
        """Close the publisher."""
        self.socket.close()
        if self._owns_context:
            self.context.term()
        logger.info("Publisher closed: %s", self.service_name)


class MessageSubscriber:
    """Subscribes to messages from publishers (SUB socket)."""

    def __init__(
        self,
        host: str,
        port: int,
        service_name: str,
        context: Optional[zmq.Context] = None
    ):
        """
        Initialize subscriber.

        Args:
            host: Host to connect to (usually 'localhost')
            port: Port to connect to
            service_name: Name of this service
            context: ZeroMQ context (a new one is created if None)
        """
        self.host = host
        self.port = port
        self.service_name = service_name
        self._owns_context = context is None
        self.context = context or zmq.Context()
        self.socket = self.context.socket(zmq.SUB)
        self.socket.connect(f"tcp://{host}:{port}")

        logger.info("Subscriber started: %s connected to %s:%d", service_name, host, port)

    def subscribe_to(self, topic: str) -> None:
        """
        Subscribe to a specific event name.

        Args:
            topic: Event name to subscribe to
        """
        self.socket.setsockopt_string(zmq.SUBSCRIBE, f"{topic} ")
        logger.debug("Subscribed to: %s", topic)

    def receive(self, timeout_ms: int = 1000) -> Optional[Message]:
        """
        Receive a message (blocking with timeout).

        Args:
            timeout_ms: Timeout in milliseconds

        Returns:
            Message or None if timeout or malformed
        """
        self.socket.setsockopt(zmq.RCVTIMEO, timeout_ms)

        try:
            raw_message = self.socket.recv_string()
        except zmq.Again:
            return None

        parts = raw_message.split(' ', 1)
        if len(parts) != 2:
            logger.warning("Dropping malformed message: %r", raw_message[:80])
            return None

        try:
            message = Message.from_json(parts[1])
        except (ValueError, KeyError) as e:
            logger.error("Error decoding message: %s", e)
            return None

        logger.debug("Received: %s", message)
        return message

    def close(self) -> None:
        """Close the subscriber."""
        self.socket.close()
        if self._owns_context:
            self.context.term()
        logger.info("Subscriber closed: %s", self.service_name)
