# multichat/response_orchestrator.py
import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session

from multichat.base_utils import BaseUtils
from multichat.broadcast import RESPONSE_FAILED, RESPONSE_STARTED
from multichat.config import Settings
from multichat.context_builder import ContextBuilder
from multichat.credit_ledger import SqlCreditLedger
from multichat.entities import (
    JOB_KIND_RESPONSE,
    ROLE_MODERATOR,
    ROLE_OWNER,
    SENDER_CHARACTER,
    SENDER_USER,
    Character,
    Conversation,
    ConversationCharacter,
    User,
)
from multichat.errors import (
    ChatError,
    ConversationNotFound,
    DecryptionFailed,
    GenerationFailed,
    InsufficientBalance,
    InvalidRequest,
    PermissionDenied,
)
from multichat.event_outbox import EventOutbox, OutboxRelay
from multichat.idempotency_cache import IDEMPOTENCY_CACHE, IdempotencyCache
from multichat.job_queue import JobQueue
from multichat.llm_client import ChatLlmClient
from multichat.membership import MembershipStore
from multichat.memory_compressor import MemoryCompressor
from multichat.message_log import MessageLog
from multichat.model_props import estimate_precheck_cost
from multichat.pending_charge_recorder import record_pending_charge, response_charge_key, settle_pending_charge
from multichat.responder_policy import CharacterRef, RecentLine, select_responders

logger = logging.getLogger("multichat_backend")

MODE_REPLY = "reply"
MODE_REPROCESS = "reprocess"

# history the responder policy looks at
POLICY_WINDOW = 20


class ResponseOrchestrator(BaseUtils):
    """
    Entry point for human messages: persist, broadcast, pick responders and
    enqueue one ResponseJob per responder, billed to the sender.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        settings: Settings,
        membership: MembershipStore,
        message_log: MessageLog,
        job_queue: JobQueue,
        relay: Optional[OutboxRelay] = None,
    ):
        self.SessionFactory = session_factory
        self.settings = settings
        self.membership = membership
        self.message_log = message_log
        self.job_queue = job_queue
        self.relay = relay

    # -----------------------
    # helpers shared with the job handler
    # -----------------------

    def _conversation(self, session: Session, conversation_id: str) -> Conversation:
        conv = session.get(Conversation, str(conversation_id))
        if conv is None:
            raise ConversationNotFound(f"Conversation not found: {conversation_id}")
        return conv

    def _characters(self, session: Session, conversation_id: str) -> List[Tuple[CharacterRef, Character]]:
        rows = session.execute(
            select(Character, ConversationCharacter.position)
            .join(ConversationCharacter, ConversationCharacter.character_id == Character.id)
            .where(ConversationCharacter.conversation_id == str(conversation_id))
            .order_by(ConversationCharacter.position.asc(), Character.id.asc())
        ).all()
        return [(CharacterRef(id=ch.id, name=ch.name, position=pos), ch) for ch, pos in rows]

    def _model_for(self, character: Character) -> str:
        return character.model_name or self.settings.chat_model

    def estimate_cost(self, conv: Conversation, character: Character) -> Decimal:
        return estimate_precheck_cost(
            self._model_for(character),
            self.settings.precheck_tokens_per_response,
            is_nsfw=bool(conv.is_nsfw),
        )

    def _balance(self, session: Session, user_id: str) -> Decimal:
        balance = session.execute(select(User.credit_balance).where(User.id == str(user_id))).scalar_one_or_none()
        return Decimal(balance or 0)

    def _recent_lines(self, session: Session, conversation_id: str, before_sequence: int) -> List[RecentLine]:
        out = []
        for msg in self.message_log.list_messages(
            session,
            conversation_id,
            up_to_sequence=before_sequence - 1,
            limit=POLICY_WINDOW,
            newest_first=True,
        ):
            try:
                content = self.message_log.read_content(msg)
            except DecryptionFailed:
                content = ""
            out.append(RecentLine(sender_id=msg.sender_id, sender_type=msg.sender_type, content=content))
        return out

    def _responder_mode(self, conv: Conversation) -> str:
        return (conv.permission_policy or {}).get("responder_mode") or self.settings.default_responder_mode

    def _flush_events(self) -> None:
        if self.relay is not None:
            self.relay.pump()

    # -----------------------
    # public API
    # -----------------------

    def on_human_message(self, conversation_id: str, sender_id: str, content: str) -> Dict[str, Any]:
        """
        Returns {"status", "message", "responders", "job_ids"} where status is
        "queued", "no_responder" or "insufficient_balance". Policy failures
        (NotAMember, PermissionDenied) raise before anything is stored.
        """
        text = (content or "").strip()
        if not text:
            raise InvalidRequest("Message content is empty")

        session = self.SessionFactory()
        try:
            conv = self._conversation(session, conversation_id)
            self.membership.require_writer(session, conversation_id, sender_id)

            msg = self.message_log.append(session, conversation_id, sender_id, SENDER_USER, text)

            characters = self._characters(session, conversation_id)
            refs = [ref for ref, _ in characters]
            responders = select_responders(
                text,
                refs,
                self._recent_lines(session, conversation_id, msg.sequence),
                mode=self._responder_mode(conv),
            )

            status = "queued" if responders else "no_responder"
            job_ids: List[str] = []
            if responders:
                by_id = {ref.id: ch for ref, ch in characters}
                needed = sum((self.estimate_cost(conv, by_id[r.id]) for r in responders), Decimal("0"))
                balance = self._balance(session, sender_id)
                if balance < needed:
                    status = "insufficient_balance"
                    logger.info(
                        "Sender %s cannot cover %s (balance %s) in %s; no response queued",
                        sender_id, needed, balance, conversation_id,
                    )
                else:
                    for r in responders:
                        job = self.job_queue.enqueue(
                            session,
                            JOB_KIND_RESPONSE,
                            conversation_id,
                            requesting_user_id=str(sender_id),
                            payload={
                                "mode": MODE_REPLY,
                                "character_id": r.id,
                                "trigger_message_id": msg.id,
                                "trigger_sequence": msg.sequence,
                            },
                            max_attempts=self.settings.response_max_attempts,
                        )
                        job_ids.append(job.job_id)

            session.commit()
            result = {
                "status": status,
                "message": {
                    "id": msg.id,
                    "conversation_id": msg.conversation_id,
                    "sequence": msg.sequence,
                    "sender_id": msg.sender_id,
                    "sender_type": msg.sender_type,
                    "content": text,
                    "created_at": msg.created_at.isoformat(),
                },
                "responders": [r.id for r in responders],
                "job_ids": job_ids,
            }
        finally:
            session.close()

        self._flush_events()
        return result

    def reprocess(self, conversation_id: str, message_id: str, requesting_user_id: str) -> Dict[str, Any]:
        """
        Regenerate an existing character reply in place. The cost goes to
        requesting_user_id, whoever triggered the original reply.
        """
        session = self.SessionFactory()
        try:
            conv = self._conversation(session, conversation_id)
            self.membership.require_writer(session, conversation_id, requesting_user_id)
            msg = self.message_log.get(session, conversation_id, message_id)
            if msg.sender_type != SENDER_CHARACTER:
                raise InvalidRequest("Only character replies can be regenerated")
            character = session.get(Character, msg.sender_id)
            if character is None:
                raise InvalidRequest(f"Character no longer exists: {msg.sender_id}")

            needed = self.estimate_cost(conv, character)
            balance = self._balance(session, requesting_user_id)
            if balance < needed:
                raise InsufficientBalance(
                    f"Insufficient balance to regenerate (needs ~{needed}, has {balance})",
                    user_id=str(requesting_user_id),
                    required=str(needed),
                )

            job = self.job_queue.enqueue(
                session,
                JOB_KIND_RESPONSE,
                conversation_id,
                requesting_user_id=str(requesting_user_id),
                payload={
                    "mode": MODE_REPROCESS,
                    "character_id": character.id,
                    "target_message_id": msg.id,
                    "trigger_sequence": msg.sequence,
                },
                max_attempts=self.settings.response_max_attempts,
            )
            session.commit()
            return {"status": "queued", "job_id": job.job_id, "message_id": msg.id}
        finally:
            session.close()

    def delete_message(self, conversation_id: str, message_id: str, actor_id: str) -> Dict[str, Any]:
        session = self.SessionFactory()
        try:
            self._conversation(session, conversation_id)
            actor = self.membership.require_member(session, conversation_id, actor_id)
            msg = self.message_log.get(session, conversation_id, message_id)

            own_message = msg.sender_type == SENDER_USER and msg.sender_id == str(actor_id)
            if not own_message and actor.role not in (ROLE_OWNER, ROLE_MODERATOR):
                raise PermissionDenied("You can only delete your own messages")

            self.message_log.delete(session, msg, actor_id)
            session.commit()
            result = {"status": "deleted", "message_id": msg.id, "sequence": msg.sequence}
        finally:
            session.close()

        self._flush_events()
        return result


class ResponseJobHandler(BaseUtils):
    """
    Executes one claimed ResponseJob. Raises on failure; the worker decides
    between retry and terminal failure (see is_retryable).
    """

    def __init__(
        self,
        orchestrator: ResponseOrchestrator,
        context_builder: ContextBuilder,
        compressor: MemoryCompressor,
        ledger: SqlCreditLedger,
        outbox: EventOutbox,
        llm_factory: Callable[[str, bool], ChatLlmClient],
        idempotency_cache: IdempotencyCache = IDEMPOTENCY_CACHE,
    ):
        self.orchestrator = orchestrator
        self.SessionFactory = orchestrator.SessionFactory
        self.settings = orchestrator.settings
        self.membership = orchestrator.membership
        self.message_log = orchestrator.message_log
        self.job_queue = orchestrator.job_queue
        self.context_builder = context_builder
        self.compressor = compressor
        self.ledger = ledger
        self.outbox = outbox
        self.llm_factory = llm_factory
        self.idempotency_cache = idempotency_cache

    def _generate(self, llm: ChatLlmClient, messages) -> str:
        timeout = self.settings.response_timeout_seconds
        executor = ThreadPoolExecutor(max_workers=1)
        # one provider call per attempt; retries belong to the job queue
        future = executor.submit(llm.invoke, messages, retries=1)
        try:
            text = future.result(timeout=timeout)
        except FutureTimeout as e:
            raise GenerationFailed(f"generation timed out after {timeout}s") from e
        except Exception as e:
            raise GenerationFailed(f"generation failed: {e}") from e
        finally:
            # a late result is discarded, and never billed
            executor.shutdown(wait=False, cancel_futures=True)

        text = (text or "").strip()
        if not text:
            raise GenerationFailed("generation returned empty text")
        return text

    def handle(self, job: Dict[str, Any]) -> Dict[str, Any]:
        payload = job.get("payload") or {}
        cid = str(job["conversation_id"])
        job_id = str(job["job_id"])
        requester = job.get("requesting_user_id")
        mode = payload.get("mode", MODE_REPLY)
        trigger_sequence = int(payload.get("trigger_sequence") or 0)
        if not requester:
            raise InvalidRequest(f"Job {job_id} has no requesting user")

        # --- before generation: authorization, balance, context ---
        session = self.SessionFactory()
        try:
            conv = self.orchestrator._conversation(session, cid)
            self.membership.require_member(session, cid, requester)
            character = session.get(Character, str(payload.get("character_id")))
            if character is None:
                raise InvalidRequest(f"Character not found: {payload.get('character_id')}")

            up_to = None
            if mode == MODE_REPROCESS:
                target = self.message_log.get(session, cid, payload.get("target_message_id"))
                up_to = target.sequence - 1

            needed = self.orchestrator.estimate_cost(conv, character)
            is_multi_user = bool(conv.is_multi_user)
            is_nsfw = bool(conv.is_nsfw)
            model_name = self.orchestrator._model_for(character)
            character_name, persona = character.name, character.persona
        finally:
            session.close()

        balance = self.ledger.get_balance(requester)
        if balance < needed:
            raise InsufficientBalance(
                f"Insufficient balance for user {requester} (needs ~{needed}, has {balance})",
                user_id=str(requester),
                required=str(needed),
            )

        if trigger_sequence > 1 and self.compressor.should_compress(cid):
            self.compressor.request_compression(self.job_queue, cid, up_to_sequence=trigger_sequence - 1)

        self.outbox.publish(
            self.SessionFactory,
            cid,
            RESPONSE_STARTED,
            {
                "job_id": job_id,
                "character_id": character.id,
                "character_name": character_name,
                "requesting_user_id": requester,
                "attempt": job.get("attempts"),
            },
        )

        session = self.SessionFactory()
        try:
            ctx = self.context_builder.build(session, cid, is_multi_user=is_multi_user, up_to_sequence=up_to)
        finally:
            session.close()
        messages = self.context_builder.to_llm_messages(
            ctx,
            character_id=character.id,
            character_name=character_name,
            persona=persona,
            is_nsfw=is_nsfw,
        )

        # --- generation: no session, no lock ---
        llm = self.llm_factory(model_name, is_nsfw)
        text = self._generate(llm, messages)
        cost = llm.get_accrued_cost()

        # --- after generation: persist reply, close job, record the charge ---
        key = response_charge_key(job_id)
        session = self.SessionFactory()
        try:
            self.membership.require_member(session, cid, requester)
            if not self.job_queue.mark_succeeded(session, job_id):
                session.rollback()
                logger.warning("Job %s no longer owned by this runner; reply discarded", job_id)
                return {"status": "discarded", "job_id": job_id}

            if mode == MODE_REPROCESS:
                msg = self.message_log.get(session, cid, payload.get("target_message_id"))
                self.message_log.update_content(
                    session, msg, text, requesting_user_id=requester, job_id=job_id, credit_cost=cost,
                )
            else:
                msg = self.message_log.append(
                    session,
                    cid,
                    character.id,
                    SENDER_CHARACTER,
                    text,
                    requesting_user_id=requester,
                    job_id=job_id,
                    credit_cost=cost,
                )
            record_pending_charge(
                session,
                idempotency_key=key,
                user_id=requester,
                amount=cost,
                currency=self.settings.currency,
                conversation_id=cid,
                job_id=job_id,
                message_id=msg.id,
                reason=f"{mode} by {character_name}",
            )
            session.commit()
            message_id, sequence = msg.id, msg.sequence
        finally:
            session.close()

        self._charge(requester, cost, key, cid, job_id)
        self.orchestrator._flush_events()
        return {
            "status": "done",
            "job_id": job_id,
            "message_id": message_id,
            "sequence": sequence,
            "cost": str(cost),
            "requesting_user_id": requester,
        }

    def _charge(self, user_id: str, amount: Decimal, key: str, conversation_id: str, job_id: str) -> None:
        try:
            entry = self.ledger.charge(user_id, amount, f"response job {job_id}", idempotency_key=key)
        except Exception as e:
            # the reply stays; the debt is settled later
            settle_pending_charge(self.SessionFactory, key, status="FAILED", error_message=str(e))
            self.idempotency_cache.add(key)
            self.color_print(
                f"RECONCILIATION: charge failed user={user_id} amount={amount} key={key} "
                f"conversation={conversation_id} job={job_id}: {e}",
                color="red",
            )
            return
        settle_pending_charge(self.SessionFactory, key, status="CHARGED", ledger_entry_id=entry.get("ledger_entry_id"))

    def on_exhausted(self, job: Dict[str, Any], error: BaseException) -> None:
        """Called once, when the job fails terminally. Nothing was charged."""
        payload = job.get("payload") or {}
        code = error.code if isinstance(error, ChatError) else "internal_error"
        self.outbox.publish(
            self.SessionFactory,
            job["conversation_id"],
            RESPONSE_FAILED,
            {
                "job_id": job["job_id"],
                "character_id": payload.get("character_id"),
                "requesting_user_id": job.get("requesting_user_id"),
                "target_message_id": payload.get("target_message_id") or payload.get("trigger_message_id"),
                "code": code,
                "message": str(error),
                "attempts": job.get("attempts"),
            },
        )
        self.orchestrator._flush_events()
        logger.error(
            "Response job %s failed terminally (conversation %s, requester %s): %s",
            job["job_id"], job["conversation_id"], job.get("requesting_user_id"), error,
        )
