# multichat/message_log.py
import logging
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from multichat.broadcast import MESSAGE_DELETED, MESSAGE_RECEIVED
from multichat.entities import Conversation, Message, utcnow
from multichat.errors import ConversationNotFound, DecryptionFailed, MessageNotFound
from multichat.event_outbox import EventOutbox
from multichat.message_cipher import MessageCipher

logger = logging.getLogger("multichat_backend")

DECRYPTION_FAILED_PLACEHOLDER = "[Decryption failed]"


class MessageLog:
    """
    Ordered, encrypted message history of a conversation.

    Positions come from conversation.last_sequence, advanced by compare-and-swap:
    a writer that loses the race re-reads and tries again, so concurrent appends
    receive distinct, gap-free positions in commit order. The unique
    (conversation_id, sequence) constraint backs this up.

    All methods work inside the caller's session; the caller commits.
    """

    def __init__(self, cipher: MessageCipher, outbox: EventOutbox, max_cas_attempts: int = 100):
        self.cipher = cipher
        self.outbox = outbox
        self.max_cas_attempts = max_cas_attempts

    def _next_sequence(self, session: Session, conversation_id: str) -> int:
        for _ in range(self.max_cas_attempts):
            current = session.execute(
                select(Conversation.last_sequence).where(Conversation.id == str(conversation_id))
            ).scalar_one_or_none()
            if current is None:
                raise ConversationNotFound(f"Conversation not found: {conversation_id}")

            result = session.execute(
                update(Conversation)
                .where(
                    Conversation.id == str(conversation_id),
                    Conversation.last_sequence == current,
                )
                .values(last_sequence=current + 1)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                return current + 1
            logger.debug("sequence CAS lost for conversation %s at %s; retrying", conversation_id, current)
        raise RuntimeError(f"Could not assign a message position in {conversation_id} after {self.max_cas_attempts} attempts")

    def append(
        self,
        session: Session,
        conversation_id: str,
        sender_id: str,
        sender_type: str,
        content: str,
        *,
        requesting_user_id: Optional[str] = None,
        job_id: Optional[str] = None,
        credit_cost: Optional[Decimal] = None,
    ) -> Message:
        session.flush()
        sequence = self._next_sequence(session, conversation_id)
        now = utcnow()
        msg = Message(
            conversation_id=str(conversation_id),
            sequence=sequence,
            sender_id=str(sender_id),
            sender_type=sender_type,
            content_encrypted=self.cipher.encrypt(content, conversation_id=str(conversation_id)),
            requesting_user_id=requesting_user_id,
            job_id=job_id,
            credit_cost=credit_cost,
            created_at=now,
            updated_at=now,
        )
        session.add(msg)
        session.flush()

        self.outbox.record(session, conversation_id, MESSAGE_RECEIVED, self._event_payload(msg, content, edited=False))
        return msg

    def update_content(
        self,
        session: Session,
        msg: Message,
        content: str,
        *,
        requesting_user_id: Optional[str] = None,
        job_id: Optional[str] = None,
        credit_cost: Optional[Decimal] = None,
    ) -> Message:
        """Regenerated reply: same position, new content."""
        msg.content_encrypted = self.cipher.encrypt(content, conversation_id=msg.conversation_id)
        msg.regenerated_count = (msg.regenerated_count or 0) + 1
        msg.updated_at = utcnow()
        if requesting_user_id is not None:
            msg.requesting_user_id = requesting_user_id
        if job_id is not None:
            msg.job_id = job_id
        if credit_cost is not None:
            msg.credit_cost = credit_cost
        session.flush()

        self.outbox.record(session, msg.conversation_id, MESSAGE_RECEIVED, self._event_payload(msg, content, edited=True))
        return msg

    def delete(self, session: Session, msg: Message, actor_id: str) -> Message:
        msg.deleted_at = utcnow()
        msg.deleted_by = str(actor_id)
        session.flush()
        self.outbox.record(
            session,
            msg.conversation_id,
            MESSAGE_DELETED,
            {"message_id": msg.id, "sequence": msg.sequence, "deleted_by": str(actor_id)},
        )
        return msg

    def get(self, session: Session, conversation_id: str, message_id: str, *, include_deleted: bool = False) -> Message:
        msg = session.get(Message, str(message_id))
        if msg is None or msg.conversation_id != str(conversation_id):
            raise MessageNotFound(f"Message not found: {message_id}")
        if msg.deleted_at is not None and not include_deleted:
            raise MessageNotFound(f"Message was deleted: {message_id}")
        return msg

    def last_sequence(self, session: Session, conversation_id: str) -> int:
        value = session.execute(
            select(Conversation.last_sequence).where(Conversation.id == str(conversation_id))
        ).scalar_one_or_none()
        if value is None:
            raise ConversationNotFound(f"Conversation not found: {conversation_id}")
        return value

    def list_messages(
        self,
        session: Session,
        conversation_id: str,
        *,
        after_sequence: Optional[int] = None,
        up_to_sequence: Optional[int] = None,
        limit: Optional[int] = None,
        newest_first: bool = False,
        include_deleted: bool = False,
    ) -> List[Message]:
        stmt = select(Message).where(Message.conversation_id == str(conversation_id))
        if after_sequence is not None:
            stmt = stmt.where(Message.sequence > after_sequence)
        if up_to_sequence is not None:
            stmt = stmt.where(Message.sequence <= up_to_sequence)
        if not include_deleted:
            stmt = stmt.where(Message.deleted_at.is_(None))
        stmt = stmt.order_by(Message.sequence.desc() if newest_first else Message.sequence.asc())
        if limit is not None:
            stmt = stmt.limit(limit)
        return list(session.execute(stmt).scalars().all())

    def read_content(self, msg: Message) -> str:
        """Plaintext of a stored message. Raises DecryptionFailed."""
        return self.cipher.decrypt(msg.content_encrypted, conversation_id=msg.conversation_id)

    def to_dict(self, msg: Message) -> dict:
        try:
            content = self.read_content(msg)
            decrypt_failed = False
        except DecryptionFailed:
            logger.error("Decryption failed: conversation=%s message=%s", msg.conversation_id, msg.id)
            content = DECRYPTION_FAILED_PLACEHOLDER
            decrypt_failed = True
        return {
            "id": msg.id,
            "conversation_id": msg.conversation_id,
            "sequence": msg.sequence,
            "sender_id": msg.sender_id,
            "sender_type": msg.sender_type,
            "content": content,
            "decrypt_failed": decrypt_failed,
            "requesting_user_id": msg.requesting_user_id,
            "credit_cost": str(msg.credit_cost) if msg.credit_cost is not None else None,
            "regenerated_count": msg.regenerated_count or 0,
            "created_at": msg.created_at.isoformat() if msg.created_at else None,
            "deleted": msg.deleted_at is not None,
        }

    def _event_payload(self, msg: Message, content: str, *, edited: bool) -> dict:
        return {
            "message_id": msg.id,
            "sequence": msg.sequence,
            "sender_id": msg.sender_id,
            "sender_type": msg.sender_type,
            "content": content,
            "requesting_user_id": msg.requesting_user_id,
            "edited": edited,
            "created_at": msg.created_at.isoformat() if msg.created_at else None,
        }
