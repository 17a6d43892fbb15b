"""Message passing between the background cache manager and foreground sessions.

Messages are fire-and-forget. A message may carry a ``reply_to`` queue,
in which case the receiver answers on that queue (used by GET_VERSION and
by SKIP_WAITING when the sender wants to wait for the promotion).
"""

import itertools
import logging
import queue
import threading
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)


class MessageType(str, Enum):
    # background -> foreground
    UPDATE_AVAILABLE = "UPDATE_AVAILABLE"
    SW_READY = "SW_READY"
    VERSION = "VERSION"
    # foreground -> background
    SKIP_WAITING = "SKIP_WAITING"
    GET_VERSION = "GET_VERSION"
    CHECK_UPDATE = "CHECK_UPDATE"


@dataclass(frozen=True)
class Message:
    """A single message on the channel."""

    type: MessageType
    payload: dict = field(default_factory=dict)
    reply_to: "queue.Queue[Message] | None" = field(default=None, compare=False, repr=False)

    def to_dict(self) -> dict:
        data: dict = {"type": self.type.value}
        if self.payload:
            data["payload"] = dict(self.payload)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Message":
        """Parse the wire form ``{"type": ..., "payload": {...}}``.

        Raises:
            ValueError: If the type is unknown or the payload is not an object.
        """
        payload = data.get("payload") or {}
        if not isinstance(payload, dict):
            raise ValueError("Message payload must be an object")
        return cls(type=MessageType(data.get("type")), payload=payload)

    def reply(self, message: "Message") -> bool:
        """Answer on the reply channel, if there is one."""
        if self.reply_to is None:
            return False
        self.reply_to.put(message)
        return True


class MessageChannel:
    """Routes messages between one background context and many sessions."""

    def __init__(self) -> None:
        self.inbox: queue.Queue[Message] = queue.Queue()
        self._clients: dict[int, queue.Queue[Message]] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def register_client(self) -> tuple[int, "queue.Queue[Message]"]:
        """Register a foreground session and return its id and queue."""
        client_queue: queue.Queue[Message] = queue.Queue()
        with self._lock:
            client_id = next(self._ids)
            self._clients[client_id] = client_queue
        logger.debug("Client %d registered", client_id)
        return client_id, client_queue

    def unregister_client(self, client_id: int) -> None:
        with self._lock:
            self._clients.pop(client_id, None)
        logger.debug("Client %d unregistered", client_id)

    @property
    def client_count(self) -> int:
        with self._lock:
            return len(self._clients)

    def post(self, message: Message) -> None:
        """Send a message to the background context."""
        self.inbox.put(message)

    def broadcast(self, message: Message) -> int:
        """Send a message to every registered session.

        Returns:
            Number of sessions the message was delivered to.
        """
        with self._lock:
            targets = list(self._clients.values())
        for client_queue in targets:
            client_queue.put(message)
        return len(targets)

    def request(self, message_type: MessageType, timeout: float, payload: dict | None = None) -> Message | None:
        """Post a message to the background and wait for its reply.

        Returns:
            The reply, or None if none arrived within ``timeout`` seconds.
        """
        reply_queue: queue.Queue[Message] = queue.Queue(maxsize=1)
        self.post(Message(message_type, payload or {}, reply_to=reply_queue))
        try:
            return reply_queue.get(timeout=timeout)
        except queue.Empty:
            logger.warning("No reply to %s within %.1fs", message_type.value, timeout)
            return None
