# multichat/memory_compressor.py
import logging
import threading
from typing import Any, Callable, Dict, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from multichat.base_utils import BaseUtils
from multichat.broadcast import (
    MEMORY_COMPRESSION_COMPLETE,
    MEMORY_COMPRESSION_FAILED,
    MEMORY_COMPRESSION_STARTED,
)
from multichat.chat_prompts import MEMORY_SUMMARY_PROMPT, PREVIOUS_SUMMARY_BLOCK
from multichat.context_builder import ContextBuilder
from multichat.entities import JOB_KIND_COMPRESSION, Conversation, ConversationMemory
from multichat.errors import CompressionConflict, ConversationNotFound
from multichat.event_outbox import EventOutbox
from multichat.job_queue import JobQueue
from multichat.llm_client import LlmClient

logger = logging.getLogger("multichat_backend")

STATE_IDLE = "IDLE"
STATE_COMPRESSING = "COMPRESSING"
STATE_FAILED = "FAILED"


class MalformedSummary(Exception):
    pass


class MemoryCompressor(BaseUtils):
    """
    Rolls old messages of a conversation into ConversationMemory rows.

    Memories of one conversation never overlap: a new one always starts after
    the latest one's end, and the (conversation_id, start_sequence) unique
    constraint turns a lost race into a no-op.

    The IDLE/COMPRESSING/FAILED state is per process. After a failure,
    should_compress() stays false until retry_gap more positions exist.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        context_builder: ContextBuilder,
        outbox: EventOutbox,
        summary_llm_factory: Callable[[], LlmClient],
        threshold: int = 50,
        retry_gap: int = 10,
    ):
        self.SessionFactory = session_factory
        self.context_builder = context_builder
        self.outbox = outbox
        self.summary_llm_factory = summary_llm_factory
        self.threshold = threshold
        self.retry_gap = retry_gap
        self._lock = threading.Lock()
        # conversation_id -> {"state": str, "failed_at": int}
        self._states: Dict[str, Dict[str, Any]] = {}

    # -----------------------
    # state
    # -----------------------

    def get_state(self, conversation_id: str) -> str:
        with self._lock:
            return self._states.get(str(conversation_id), {}).get("state", STATE_IDLE)

    def _set_state(self, conversation_id: str, state: str, failed_at: Optional[int] = None) -> None:
        with self._lock:
            if state == STATE_IDLE:
                self._states.pop(str(conversation_id), None)
            else:
                self._states[str(conversation_id)] = {"state": state, "failed_at": failed_at}

    def _latest_end(self, session: Session, conversation_id: str) -> int:
        end = session.execute(
            select(ConversationMemory.end_sequence)
            .where(ConversationMemory.conversation_id == str(conversation_id))
            .order_by(ConversationMemory.end_sequence.desc())
            .limit(1)
        ).scalar_one_or_none()
        return end or 0

    def _last_sequence(self, session: Session, conversation_id: str) -> int:
        last = session.execute(
            select(Conversation.last_sequence).where(Conversation.id == str(conversation_id))
        ).scalar_one_or_none()
        if last is None:
            raise ConversationNotFound(f"Conversation not found: {conversation_id}")
        return last

    # -----------------------
    # public API
    # -----------------------

    def should_compress(self, conversation_id: str, session: Optional[Session] = None) -> bool:
        own = session is None
        session = session or self.SessionFactory()
        try:
            last = self._last_sequence(session, conversation_id)
            with self._lock:
                st = self._states.get(str(conversation_id))
            if st is not None:
                if st["state"] == STATE_COMPRESSING:
                    return False
                if st["state"] == STATE_FAILED and last < (st["failed_at"] or 0) + self.retry_gap:
                    return False
            return last - self._latest_end(session, conversation_id) >= self.threshold
        finally:
            if own:
                session.close()

    def request_compression(self, job_queue: JobQueue, conversation_id: str, up_to_sequence: Optional[int] = None) -> Optional[str]:
        """
        Fire-and-forget: enqueue a compression job unless one is already open
        for this conversation. Returns the new job id, or None.
        """
        session = self.SessionFactory()
        try:
            if job_queue.has_pending(conversation_id, JOB_KIND_COMPRESSION, session=session):
                return None
            job = job_queue.enqueue(
                session,
                JOB_KIND_COMPRESSION,
                conversation_id,
                payload={"up_to_sequence": up_to_sequence},
                max_attempts=1,
            )
            session.commit()
            logger.info("Compression requested for %s (up to %s), job %s", conversation_id, up_to_sequence, job.job_id)
            return job.job_id
        finally:
            session.close()

    def latest_memory(self, conversation_id: str) -> Optional[dict]:
        session = self.SessionFactory()
        try:
            memory = self.context_builder.latest_memory(session, conversation_id)
            return self._memory_to_dict(memory) if memory is not None else None
        finally:
            session.close()

    def compress(self, conversation_id: str, up_to_sequence: Optional[int] = None) -> dict:
        """
        Summarize everything after the latest memory, through up_to_sequence
        (default: the last position). Never raises for summarizer failures;
        the outcome is in the returned status and the broadcast events.
        """
        cid = str(conversation_id)
        self._set_state(cid, STATE_COMPRESSING)
        start_sequence = end_sequence = None
        last_seen = 0
        try:
            session = self.SessionFactory()
            try:
                conv = session.get(Conversation, cid)
                if conv is None:
                    raise ConversationNotFound(f"Conversation not found: {cid}")
                last_seen = conv.last_sequence
                covered = self._latest_end(session, cid)
                target = last_seen if up_to_sequence is None else min(int(up_to_sequence), last_seen)
                if target <= covered:
                    raise CompressionConflict(f"Range up to {target} is already covered (memory ends at {covered})")

                lines = self.context_builder.load_lines(session, cid, after_sequence=covered, up_to_sequence=target)
                previous = self.context_builder.latest_memory(session, cid)
                previous_summary = previous.summary if previous is not None else None
            finally:
                session.close()

            if not lines:
                # every position in range was deleted; nothing to summarize
                self._set_state(cid, STATE_IDLE)
                return {"status": "empty", "conversation_id": cid}

            start_sequence, end_sequence = lines[0].sequence, lines[-1].sequence
            self.outbox.publish(
                self.SessionFactory,
                cid,
                MEMORY_COMPRESSION_STARTED,
                {"start_sequence": start_sequence, "end_sequence": end_sequence},
            )

            parsed = self._summarize(lines, previous_summary, start_sequence, end_sequence)
            return self._store(cid, lines, parsed)

        except CompressionConflict as e:
            logger.info("Compression no-op for %s: %s", cid, e)
            self._set_state(cid, STATE_IDLE)
            if start_sequence is not None:
                # started was already announced; close it out
                self.outbox.publish(
                    self.SessionFactory,
                    cid,
                    MEMORY_COMPRESSION_COMPLETE,
                    {"status": "already_covered", "start_sequence": start_sequence, "end_sequence": end_sequence},
                )
            return {"status": "already_covered", "conversation_id": cid}
        except ConversationNotFound:
            self._set_state(cid, STATE_IDLE)
            raise
        except Exception as e:
            logger.error("Compression failed for conversation %s (%s-%s): %s", cid, start_sequence, end_sequence, e)
            self._set_state(cid, STATE_FAILED, failed_at=last_seen)
            self.outbox.publish(
                self.SessionFactory,
                cid,
                MEMORY_COMPRESSION_FAILED,
                {"start_sequence": start_sequence, "end_sequence": end_sequence, "error": str(e)},
            )
            return {"status": "failed", "conversation_id": cid, "error": str(e)}

    # -----------------------
    # internals
    # -----------------------

    def _summarize(self, lines, previous_summary: Optional[str], start_sequence: int, end_sequence: int) -> dict:
        transcript = "\n".join(line.attributed() for line in lines)
        previous_block = (
            self.unsafe_string_format(PREVIOUS_SUMMARY_BLOCK, previous_summary=previous_summary)
            if previous_summary
            else ""
        )
        prompt = self.unsafe_string_format(
            MEMORY_SUMMARY_PROMPT,
            previous_summary_block=previous_block,
            start_sequence=start_sequence,
            end_sequence=end_sequence,
            transcript=transcript,
        )

        llm = self.summary_llm_factory()
        raw = llm.invoke(prompt)
        logger.debug("Summary usage: %s", llm.get_accrued_usage())

        data = self.load_fault_tolerant_json(raw)
        if not isinstance(data, dict):
            raise MalformedSummary("summarizer did not return a JSON object")
        summary = self._coerce_field_to_str(data.get("summary"))
        if not summary:
            raise MalformedSummary("summarizer output has no summary")

        key_events = data.get("keyEvents") or []
        character_states = data.get("characterStates") or {}
        narrative_flags = data.get("narrativeFlags") or []
        return {
            "summary": summary,
            "key_events": key_events if isinstance(key_events, list) else [key_events],
            "character_states": character_states if isinstance(character_states, dict) else {},
            "narrative_flags": narrative_flags if isinstance(narrative_flags, list) else [narrative_flags],
        }

    def _store(self, cid: str, lines, parsed: dict) -> dict:
        first, last = lines[0], lines[-1]
        session = self.SessionFactory()
        try:
            if self._latest_end(session, cid) >= first.sequence:
                raise CompressionConflict("a concurrent compression already covers this range")

            memory = ConversationMemory(
                conversation_id=cid,
                summary=parsed["summary"],
                key_events=parsed["key_events"],
                character_states=parsed["character_states"],
                narrative_flags=parsed["narrative_flags"],
                start_message_id=first.message_id,
                end_message_id=last.message_id,
                start_sequence=first.sequence,
                end_sequence=last.sequence,
                message_count=len(lines),
            )
            session.add(memory)
            try:
                session.flush()
            except IntegrityError as e:
                session.rollback()
                raise CompressionConflict("a concurrent compression already covers this range") from e

            result = self._memory_to_dict(memory)
            self.outbox.record(
                session,
                cid,
                MEMORY_COMPRESSION_COMPLETE,
                {
                    "status": "complete",
                    "memory_id": memory.id,
                    "start_sequence": memory.start_sequence,
                    "end_sequence": memory.end_sequence,
                    "message_count": memory.message_count,
                },
            )
            session.commit()
        finally:
            session.close()

        self._set_state(cid, STATE_IDLE)
        self.color_print(
            f"Memory for {cid}: positions {result['start_sequence']}-{result['end_sequence']} ({result['message_count']} messages)",
            color="green",
        )
        return {"status": "complete", "conversation_id": cid, "memory": result}

    def _memory_to_dict(self, memory: ConversationMemory) -> dict:
        return {
            "id": memory.id,
            "conversation_id": memory.conversation_id,
            "summary": memory.summary,
            "key_events": list(memory.key_events or []),
            "character_states": dict(memory.character_states or {}),
            "narrative_flags": list(memory.narrative_flags or []),
            "start_message_id": memory.start_message_id,
            "end_message_id": memory.end_message_id,
            "start_sequence": memory.start_sequence,
            "end_sequence": memory.end_sequence,
            "message_count": memory.message_count,
        }
