# multichat/chat_service.py
import json
import logging
import traceback
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from multichat.base_utils import BaseUtils
from multichat.broadcast import BroadcastHub, ConnectionChannel
from multichat.config import Settings
from multichat.context_builder import ContextBuilder
from multichat.credit_ledger import SqlCreditLedger
from multichat.db_connection import DbConnection
from multichat.entities import Character, Conversation, ConversationCharacter, User
from multichat.errors import ChatError, ConversationNotFound, InvalidRequest, NotAMember
from multichat.event_outbox import EventOutbox, OutboxRelay, purge_stale_events
from multichat.idempotency_cache import IDEMPOTENCY_CACHE, IdempotencyCache
from multichat.job_queue import JobQueue
from multichat.llm_client import ChatLlmClient, LlmClient, build_chat_llm, build_summary_llm
from multichat.membership import MembershipStore
from multichat.memory_compressor import MemoryCompressor
from multichat.message_cipher import MessageCipher
from multichat.message_log import MessageLog
from multichat.model_props import load_pricing_config, set_pricing_config
from multichat.presence import PresenceTracker
from multichat.response_orchestrator import ResponseJobHandler, ResponseOrchestrator

logger = logging.getLogger("multichat_backend")


class ChatService(BaseUtils):
    """
    Wires every component around one session factory and exposes one method
    per transport operation. `user_id` arguments are the verified identity
    of the caller; authorization happens inside the stores.

    relay_events=False (the worker) leaves outbox rows for the server's relay.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        session_factory: Optional[Callable[[], Session]] = None,
        *,
        cipher: Optional[MessageCipher] = None,
        hub: Optional[BroadcastHub] = None,
        ledger: Optional[SqlCreditLedger] = None,
        chat_llm_factory: Optional[Callable[[str, bool], ChatLlmClient]] = None,
        summary_llm_factory: Optional[Callable[[], LlmClient]] = None,
        idempotency_cache: IdempotencyCache = IDEMPOTENCY_CACHE,
        relay_events: bool = True,
    ):
        self.settings = settings or Settings.from_env()
        if self.settings.pricing_path:
            set_pricing_config(load_pricing_config(self.settings.pricing_path))

        if session_factory is None:
            db = DbConnection(self.settings.database_url or None)
            session_factory = db.build_db_session_factory()
        self.SessionFactory = session_factory

        self.cipher = cipher or MessageCipher.from_b64(self.settings.message_encryption_key)
        self.hub = hub or BroadcastHub()
        self.outbox = EventOutbox()
        self.relay = OutboxRelay(self.SessionFactory, self.hub) if relay_events else None
        self.idempotency_cache = idempotency_cache

        self.membership = MembershipStore(self.SessionFactory, self.outbox, self.settings.default_max_users)
        self.message_log = MessageLog(self.cipher, self.outbox)
        self.job_queue = JobQueue(self.SessionFactory, self.settings.response_backoff_seconds)
        self.ledger = ledger or SqlCreditLedger(self.SessionFactory)
        self.context_builder = ContextBuilder(self.message_log, self.settings.max_context_tokens)
        self.compressor = MemoryCompressor(
            self.SessionFactory,
            self.context_builder,
            self.outbox,
            summary_llm_factory or (lambda: build_summary_llm(self.settings)),
            threshold=self.settings.compression_threshold,
            retry_gap=self.settings.compression_retry_gap,
        )
        self.orchestrator = ResponseOrchestrator(
            self.SessionFactory,
            self.settings,
            self.membership,
            self.message_log,
            self.job_queue,
            relay=self.relay,
        )
        self.response_handler = ResponseJobHandler(
            self.orchestrator,
            self.context_builder,
            self.compressor,
            self.ledger,
            self.outbox,
            chat_llm_factory or (lambda model, is_nsfw: build_chat_llm(self.settings, model, is_nsfw=is_nsfw)),
            idempotency_cache=idempotency_cache,
        )
        self.presence = PresenceTracker(
            self.hub,
            self.membership.is_member,
            presence_ttl=self.settings.presence_ttl_seconds,
            typing_ttl=self.settings.typing_ttl_seconds,
        )

    # -----------------------
    # Events
    # -----------------------

    def pump_events(self) -> int:
        return self.relay.pump() if self.relay is not None else 0

    def purge_stale_events(self) -> int:
        return purge_stale_events(self.SessionFactory, self.settings.outbox_retention_seconds)

    # -----------------------
    # Users / characters (provisioning; identity itself is external)
    # -----------------------

    def create_user(self, username: str, display_name: Optional[str] = None, credits: Decimal = Decimal("0")) -> dict:
        session = self.SessionFactory()
        try:
            user = User(username=username, display_name=display_name)
            session.add(user)
            session.commit()
            user_id = user.id
        finally:
            session.close()
        if Decimal(credits) > 0:
            self.ledger.grant(user_id, Decimal(credits), reason="initial grant")
        return {"id": user_id, "username": username, "display_name": display_name}

    def create_character(self, name: str, persona: Optional[str] = None, model_name: Optional[str] = None) -> dict:
        session = self.SessionFactory()
        try:
            ch = Character(name=name, persona=persona, model_name=model_name)
            session.add(ch)
            session.commit()
            return {"id": ch.id, "name": ch.name, "persona": ch.persona, "model_name": ch.model_name}
        finally:
            session.close()

    def grant_credits(self, user_id: str, amount: Decimal, reason: str = "grant") -> dict:
        return self.ledger.grant(user_id, Decimal(amount), reason=reason)

    def get_balance(self, user_id: str) -> Decimal:
        return self.ledger.get_balance(user_id)

    # -----------------------
    # Conversations / membership
    # -----------------------

    def create_conversation(self, user_id: str, **kwargs) -> dict:
        conv = self.membership.create_conversation(user_id, **kwargs)
        self.pump_events()
        return conv

    def get_conversation(self, conversation_id: str, user_id: str) -> dict:
        session = self.SessionFactory()
        try:
            conv = session.get(Conversation, str(conversation_id))
            if conv is None:
                raise ConversationNotFound(f"Conversation not found: {conversation_id}")
            self.membership.require_member(session, conversation_id, user_id)
            characters = session.execute(
                select(Character.id, Character.name, ConversationCharacter.position)
                .join(ConversationCharacter, ConversationCharacter.character_id == Character.id)
                .where(ConversationCharacter.conversation_id == str(conversation_id))
                .order_by(ConversationCharacter.position.asc())
            ).all()
            out = self.membership._conversation_to_dict(conv)
            out["characters"] = [{"id": c[0], "name": c[1], "position": c[2]} for c in characters]
            out["last_sequence"] = conv.last_sequence
            return out
        finally:
            session.close()

    def set_multi_user(self, conversation_id: str, user_id: str, enabled: bool, max_users: Optional[int] = None) -> dict:
        out = self.membership.set_multi_user(conversation_id, user_id, enabled, max_users)
        self.pump_events()
        return out

    def invite(self, conversation_id: str, user_id: str, invitee_id: str, role: str = "MEMBER") -> dict:
        out = self.membership.invite(conversation_id, user_id, invitee_id, role)
        self.pump_events()
        return out

    def join(self, conversation_id: str, user_id: str) -> dict:
        out = self.membership.join(conversation_id, user_id)
        self.pump_events()
        return out

    def leave(self, conversation_id: str, user_id: str) -> dict:
        out = self.membership.leave(conversation_id, user_id)
        self.pump_events()
        self.presence.drop_user(conversation_id, user_id)
        # membership decides; presence may already have reclaimed the connection
        self.hub.unsubscribe_user(conversation_id, user_id)
        return out

    def kick(self, conversation_id: str, user_id: str, target_id: str) -> dict:
        out = self.membership.kick(conversation_id, user_id, target_id)
        self.pump_events()
        self.presence.drop_user(conversation_id, target_id)
        self.hub.unsubscribe_user(conversation_id, target_id)
        return out

    def update_role(self, conversation_id: str, user_id: str, target_id: str, role: str) -> dict:
        out = self.membership.update_role(conversation_id, user_id, target_id, role)
        self.pump_events()
        return out

    def transfer_ownership(self, conversation_id: str, user_id: str, new_owner_id: str) -> dict:
        out = self.membership.transfer_ownership(conversation_id, user_id, new_owner_id)
        self.pump_events()
        return out

    def update_permissions(self, conversation_id: str, user_id: str, target_id: str, **flags) -> dict:
        out = self.membership.update_permissions(conversation_id, user_id, target_id, **flags)
        self.pump_events()
        return out

    def list_members(self, conversation_id: str, user_id: str) -> List[dict]:
        if not self.membership.is_member(conversation_id, user_id):
            self._raise_not_member(conversation_id, user_id)
        return self.membership.list_members(conversation_id)

    # -----------------------
    # Messages
    # -----------------------

    def send_message(self, conversation_id: str, user_id: str, content: str) -> dict:
        return self.orchestrator.on_human_message(conversation_id, user_id, content)

    def reprocess(self, conversation_id: str, message_id: str, user_id: str) -> dict:
        return self.orchestrator.reprocess(conversation_id, message_id, user_id)

    def delete_message(self, conversation_id: str, message_id: str, user_id: str) -> dict:
        return self.orchestrator.delete_message(conversation_id, message_id, user_id)

    def list_messages(
        self,
        conversation_id: str,
        user_id: str,
        *,
        after_sequence: Optional[int] = None,
        limit: int = 100,
    ) -> List[dict]:
        session = self.SessionFactory()
        try:
            self.membership.require_member(session, conversation_id, user_id)
            rows = self.message_log.list_messages(
                session,
                conversation_id,
                after_sequence=after_sequence,
                limit=max(1, min(int(limit), 500)),
            )
            return [self.message_log.to_dict(m) for m in rows]
        finally:
            session.close()

    def get_job(self, job_id: str) -> Optional[dict]:
        return self.job_queue.get_job(job_id)

    def latest_memory(self, conversation_id: str, user_id: str) -> Optional[dict]:
        if not self.membership.is_member(conversation_id, user_id):
            self._raise_not_member(conversation_id, user_id)
        return self.compressor.latest_memory(conversation_id)

    # -----------------------
    # Presence / subscriptions
    # -----------------------

    def subscribe(self, conversation_id: str, user_id: str, connection_id: str) -> ConnectionChannel:
        # membership is checked by mark_online
        self.presence.mark_online(conversation_id, user_id, connection_id)
        return self.hub.subscribe(connection_id, conversation_id, user_id)

    def unsubscribe(self, conversation_id: str, user_id: str, connection_id: str) -> None:
        self.hub.unsubscribe(connection_id, conversation_id)
        self.presence.mark_offline(conversation_id, user_id, connection_id)

    def disconnect(self, connection_id: str) -> None:
        self.hub.unsubscribe(connection_id)
        self.presence.drop_connection(connection_id)

    def heartbeat(self, connection_id: str) -> int:
        return self.presence.heartbeat(connection_id)

    def set_typing(self, conversation_id: str, user_id: str, is_typing: bool) -> bool:
        return self.presence.set_typing(conversation_id, user_id, is_typing)

    def list_online(self, conversation_id: str, user_id: str) -> dict:
        if not self.membership.is_member(conversation_id, user_id):
            self._raise_not_member(conversation_id, user_id)
        return {
            "online_user_ids": self.presence.list_online(conversation_id),
            "typing_user_ids": self.presence.list_typing(conversation_id),
        }

    def _raise_not_member(self, conversation_id: str, user_id: str) -> None:
        raise NotAMember(f"User {user_id} is not a member of conversation {conversation_id}", user_id=str(user_id))

    # -----------------------
    # WebSocket frames
    # -----------------------

    def _process_request_data(self, request_data: dict, user_id: str, connection_id: str) -> dict:
        """
        Core frame handling logic.
        Takes a parsed JSON frame and returns the reply frame.
        ChatErrors become {"type": "error", ...}; anything else propagates.
        """
        request_type = (request_data or {}).get("type")
        conversation_id = (request_data or {}).get("conversation_id")
        request_id = (request_data or {}).get("request_id")

        try:
            preview = json.dumps(request_data)
        except (TypeError, ValueError):
            preview = str(request_data)
        logger.debug(f"ws frame from {user_id}/{connection_id}: {preview}")

        response_data: Dict[str, Any] = {"type": f"{request_type}_ok", "request_id": request_id}
        try:
            if request_type == "heartbeat":
                response_data["touched"] = self.heartbeat(connection_id)

            elif not conversation_id:
                raise InvalidRequest(f"'{request_type}' needs a conversation_id")

            elif request_type == "subscribe":
                self.subscribe(conversation_id, user_id, connection_id)
                response_data["conversation_id"] = conversation_id
                response_data["online_user_ids"] = self.presence.list_online(conversation_id)

            elif request_type == "unsubscribe":
                self.unsubscribe(conversation_id, user_id, connection_id)
                response_data["conversation_id"] = conversation_id

            elif request_type == "typing":
                response_data["accepted"] = self.set_typing(
                    conversation_id, user_id, bool(request_data.get("is_typing", True))
                )

            elif request_type == "send_message":
                response_data["data"] = self.send_message(conversation_id, user_id, request_data.get("content") or "")

            else:
                raise InvalidRequest(f"Unknown request type: {request_type}")

        except ChatError as e:
            logger.info(f"ws frame {request_type} rejected for {user_id}: {e.code} {e.message}")
            return {"type": "error", "request_id": request_id, **e.to_dict()}
        except Exception as e:
            logger.info(f"Error while processing request data: {e}")
            traceback.print_exc()
            raise

        return response_data
