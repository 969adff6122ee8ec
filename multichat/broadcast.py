# multichat/broadcast.py
import logging
import queue
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from multichat.entities import utcnow

logger = logging.getLogger("multichat_backend")

# durable (outbox) events
MESSAGE_RECEIVED = "message_received"
MESSAGE_DELETED = "message_deleted"
MEMBER_INVITED = "member_invited"
MEMBER_JOINED = "member_joined"
MEMBER_LEFT = "member_left"
MEMBER_UPDATED = "member_updated"
ROLE_CHANGED = "role_changed"
CONVERSATION_UPDATED = "conversation_updated"
MEMORY_COMPRESSION_STARTED = "memory_compression_started"
MEMORY_COMPRESSION_COMPLETE = "memory_compression_complete"
MEMORY_COMPRESSION_FAILED = "memory_compression_failed"
RESPONSE_STARTED = "response_started"
RESPONSE_FAILED = "response_failed"

# ephemeral (process-local) events
PRESENCE_CHANGED = "presence_changed"
TYPING_CHANGED = "typing_changed"


@dataclass
class BroadcastEvent:
    type: str
    conversation_id: str
    payload: Dict[str, Any] = field(default_factory=dict)
    # per-conversation event number; None for presence events
    sequence: Optional[int] = None
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "conversation_id": self.conversation_id,
            "sequence": self.sequence,
            "payload": self.payload,
            "created_at": self.created_at.isoformat(),
        }


class ConnectionChannel:
    """
    Outbound FIFO of one client connection. Filled by BroadcastHub, drained by
    the transport. Events that do not fit are dropped (at-most-once).
    """

    def __init__(self, connection_id: str, max_pending: int = 1000):
        self.connection_id = connection_id
        self._queue: "queue.Queue[BroadcastEvent]" = queue.Queue(maxsize=max_pending)
        self.dropped = 0
        self.closed = False

    def deliver(self, event: BroadcastEvent) -> bool:
        if self.closed:
            return False
        try:
            self._queue.put_nowait(event)
            return True
        except queue.Full:
            self.dropped += 1
            logger.warning(
                "Connection %s outbound queue full; dropped %s for conversation %s",
                self.connection_id, event.type, event.conversation_id,
            )
            return False

    def get(self, timeout: float | None = None) -> BroadcastEvent | None:
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> List[BroadcastEvent]:
        out: List[BroadcastEvent] = []
        while True:
            try:
                out.append(self._queue.get_nowait())
            except queue.Empty:
                return out


class BroadcastHub:
    """
    In-process fan-out of conversation events to subscribed connections.

    - publish() for one conversation is serialized under the hub lock, so every
      subscriber sees that conversation's events in publish order.
    - Nothing is retained for connections that are not subscribed.
    """

    def __init__(self, max_pending_per_connection: int = 1000):
        self._lock = threading.Lock()
        self._max_pending = max_pending_per_connection
        self._channels: Dict[str, ConnectionChannel] = {}
        self._by_conversation: Dict[str, set[str]] = {}
        self._by_connection: Dict[str, set[str]] = {}
        # connection -> user it was opened for
        self._users: Dict[str, str] = {}

    def subscribe(self, connection_id: str, conversation_id: str, user_id: str | None = None) -> ConnectionChannel:
        cid = str(connection_id)
        conv = str(conversation_id)
        with self._lock:
            if user_id is not None:
                self._users[cid] = str(user_id)
            channel = self._channels.get(cid)
            if channel is None:
                channel = ConnectionChannel(cid, self._max_pending)
                self._channels[cid] = channel
            self._by_conversation.setdefault(conv, set()).add(cid)
            self._by_connection.setdefault(cid, set()).add(conv)
            return channel

    def unsubscribe(self, connection_id: str, conversation_id: str | None = None) -> None:
        """Drop one subscription, or the whole connection when conversation_id is None."""
        with self._lock:
            self._unsubscribe_unlocked(str(connection_id), conversation_id)

    def unsubscribe_user(self, conversation_id: str, user_id: str) -> List[str]:
        """
        Cut every connection of a user who left or was kicked from a conversation.
        Works from the hub's own bookkeeping, whatever presence still remembers.
        Returns the connection ids that were unsubscribed.
        """
        conv, uid = str(conversation_id), str(user_id)
        with self._lock:
            targets = sorted(c for c in self._by_conversation.get(conv, ()) if self._users.get(c) == uid)
            for cid in targets:
                self._unsubscribe_unlocked(cid, conv)
        if targets:
            logger.info("unsubscribed user %s from conversation %s: %s", uid, conv, targets)
        return targets

    def _unsubscribe_unlocked(self, cid: str, conversation_id: str | None) -> None:
        convs = self._by_connection.get(cid, set())
        targets = list(convs) if conversation_id is None else [str(conversation_id)]
        for conv in targets:
            subs = self._by_conversation.get(conv)
            if subs is not None:
                subs.discard(cid)
                if not subs:
                    del self._by_conversation[conv]
            convs.discard(conv)
        if not convs:
            self._by_connection.pop(cid, None)
            self._users.pop(cid, None)
            channel = self._channels.pop(cid, None)
            if channel is not None:
                channel.closed = True

    def publish(self, conversation_id: str, event: BroadcastEvent) -> int:
        conv = str(conversation_id)
        with self._lock:
            delivered = 0
            for cid in sorted(self._by_conversation.get(conv, ())):
                channel = self._channels.get(cid)
                if channel is not None and channel.deliver(event):
                    delivered += 1
        logger.debug("broadcast %s conv=%s seq=%s -> %d connection(s)", event.type, conv, event.sequence, delivered)
        return delivered

    def subscribers(self, conversation_id: str) -> List[str]:
        with self._lock:
            return sorted(self._by_conversation.get(str(conversation_id), ()))

    def channel(self, connection_id: str) -> ConnectionChannel | None:
        with self._lock:
            return self._channels.get(str(connection_id))
