# multichat/event_outbox.py
import logging
import threading
from datetime import timedelta
from typing import Any, Callable, Dict, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session

from multichat.broadcast import BroadcastEvent, BroadcastHub
from multichat.entities import Conversation, QueueMessage, utcnow
from multichat.errors import ConversationNotFound

logger = logging.getLogger("multichat_backend")


def conversation_receiver(conversation_id: str) -> str:
    return f"conversation::{conversation_id}"


class EventOutbox:
    """
    Transactional outbox for durable conversation events.

    record() adds the event to the caller's session, so the event commits or
    rolls back together with the mutation it describes. Bumping
    conversation.last_event_sequence takes the conversation row lock, which
    keeps outbox ids of one conversation in commit order.
    """

    def __init__(self, sender_id: str = "server"):
        self.sender_id = sender_id

    def record(
        self,
        session: Session,
        conversation_id: str,
        event_type: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> int:
        # pending rows (a conversation created in this transaction) must exist first
        session.flush()
        result = session.execute(
            update(Conversation)
            .where(Conversation.id == str(conversation_id))
            .values(last_event_sequence=Conversation.last_event_sequence + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConversationNotFound(f"Conversation not found: {conversation_id}")
        event_sequence = session.execute(
            select(Conversation.last_event_sequence).where(Conversation.id == str(conversation_id))
        ).scalar_one()

        session.add(
            QueueMessage(
                sender_id=self.sender_id,
                receiver_id=conversation_receiver(conversation_id),
                conversation_id=str(conversation_id),
                event_sequence=event_sequence,
                type=event_type,
                payload=dict(payload or {}),
            )
        )
        return event_sequence

    def publish(
        self,
        session_factory: Callable[[], Session],
        conversation_id: str,
        event_type: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> int:
        """Standalone event (no accompanying mutation) in its own transaction."""
        session = session_factory()
        try:
            seq = self.record(session, conversation_id, event_type, payload)
            session.commit()
            return seq
        finally:
            session.close()


class OutboxRelay:
    """
    Moves committed outbox rows into the in-process BroadcastHub.

    Rows are deleted before fan-out (at-most-once). One relay per deployment;
    pump() is serialized so delivery follows outbox id order.
    """

    def __init__(self, session_factory: Callable[[], Session], hub: BroadcastHub, batch_size: int = 200):
        self.SessionFactory = session_factory
        self.hub = hub
        self.batch_size = batch_size
        self._lock = threading.Lock()

    def pump(self) -> int:
        relayed = 0
        with self._lock:
            while True:
                session = self.SessionFactory()
                try:
                    rows = session.execute(
                        select(QueueMessage)
                        .order_by(QueueMessage.id.asc())
                        .limit(self.batch_size)
                        .with_for_update(skip_locked=True)
                    ).scalars().all()
                    events = [
                        BroadcastEvent(
                            type=r.type,
                            conversation_id=r.conversation_id,
                            payload=dict(r.payload or {}),
                            sequence=r.event_sequence,
                            created_at=r.created_at,
                        )
                        for r in rows
                    ]
                    if rows:
                        session.execute(
                            delete(QueueMessage).where(QueueMessage.id.in_([r.id for r in rows]))
                        )
                    session.commit()
                finally:
                    session.close()

                for event in events:
                    self.hub.publish(event.conversation_id, event)
                relayed += len(events)
                if len(events) < self.batch_size:
                    return relayed

    def purge_stale(self, older_than_seconds: float) -> int:
        return purge_stale_events(self.SessionFactory, older_than_seconds)


def purge_stale_events(session_factory: Callable[[], Session], older_than_seconds: float) -> int:
    """Drop rows nobody relayed (no server attached) after the retention window."""
    cutoff = utcnow() - timedelta(seconds=older_than_seconds)
    session = session_factory()
    try:
        result = session.execute(delete(QueueMessage).where(QueueMessage.created_at < cutoff))
        session.commit()
        if result.rowcount:
            logger.info("Outbox purge: removed %d stale event(s)", result.rowcount)
        return result.rowcount or 0
    finally:
        session.close()
