# multichat/context_builder.py
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from sqlalchemy import select
from sqlalchemy.orm import Session

from multichat.base_utils import BaseUtils
from multichat.chat_prompts import CHARACTER_INSTRUCTIONS, MEMORY_BLOCK, NSFW_RULE, RECENT_BLOCK, SFW_RULE
from multichat.entities import (
    SENDER_CHARACTER,
    Character,
    ConversationCharacter,
    ConversationMemory,
    Membership,
    User,
)
from multichat.errors import DecryptionFailed
from multichat.message_log import DECRYPTION_FAILED_PLACEHOLDER, MessageLog

logger = logging.getLogger("multichat_backend")

UNKNOWN_SENDER = "Unknown participant"
CONTINUE_PROMPT = "[Continue the conversation as {character_name}.]"


@dataclass
class HistoryLine:
    message_id: str
    sequence: int
    sender_id: str
    sender_type: str
    display_name: str
    content: str
    decrypt_failed: bool = False

    def attributed(self) -> str:
        return f"{self.display_name}: {self.content}"


@dataclass
class BuiltContext:
    conversation_id: str
    is_multi_user: bool
    memory: Optional[ConversationMemory]
    lines: List[HistoryLine] = field(default_factory=list)
    # oldest lines cut to fit the token budget
    pruned: int = 0


class ContextBuilder(BaseUtils):
    """
    Assembles the generation context of a conversation: the latest memory
    summary plus every message after it, decrypted and attributed to a name.
    """

    def __init__(self, message_log: MessageLog, max_context_tokens: int = 8000):
        self.message_log = message_log
        self.max_context_tokens = max_context_tokens

    def resolve_display_names(self, session: Session, conversation_id: str) -> Dict[str, str]:
        """
        sender_id -> name for every user that was ever a member (left and
        kicked included) and every attached character.
        """
        names: Dict[str, str] = {}
        rows = session.execute(
            select(User.id, User.display_name, User.username)
            .join(Membership, Membership.user_id == User.id)
            .where(Membership.conversation_id == str(conversation_id))
        ).all()
        for uid, display_name, username in rows:
            names[uid] = display_name or username

        rows = session.execute(
            select(Character.id, Character.name)
            .join(ConversationCharacter, ConversationCharacter.character_id == Character.id)
            .where(ConversationCharacter.conversation_id == str(conversation_id))
        ).all()
        for cid, name in rows:
            names[cid] = name
        return names

    def _name_for(self, session: Session, names: Dict[str, str], sender_id: str, sender_type: str) -> str:
        if sender_id in names:
            return names[sender_id]
        # detached character or a user without a membership row
        if sender_type == SENDER_CHARACTER:
            found = session.get(Character, sender_id)
            name = found.name if found is not None else None
        else:
            found = session.get(User, sender_id)
            name = (found.display_name or found.username) if found is not None else None
        names[sender_id] = name or UNKNOWN_SENDER
        return names[sender_id]

    def load_lines(
        self,
        session: Session,
        conversation_id: str,
        *,
        after_sequence: Optional[int] = None,
        up_to_sequence: Optional[int] = None,
        names: Optional[Dict[str, str]] = None,
    ) -> List[HistoryLine]:
        if names is None:
            names = self.resolve_display_names(session, conversation_id)

        lines: List[HistoryLine] = []
        for msg in self.message_log.list_messages(
            session,
            conversation_id,
            after_sequence=after_sequence,
            up_to_sequence=up_to_sequence,
        ):
            try:
                content = self.message_log.read_content(msg)
                failed = False
            except DecryptionFailed as e:
                logger.error(
                    "Decryption failed: conversation=%s message=%s sequence=%s: %s",
                    conversation_id, msg.id, msg.sequence, e,
                )
                content = DECRYPTION_FAILED_PLACEHOLDER
                failed = True
            lines.append(
                HistoryLine(
                    message_id=msg.id,
                    sequence=msg.sequence,
                    sender_id=msg.sender_id,
                    sender_type=msg.sender_type,
                    display_name=self._name_for(session, names, msg.sender_id, msg.sender_type),
                    content=content,
                    decrypt_failed=failed,
                )
            )
        return lines

    def latest_memory(
        self,
        session: Session,
        conversation_id: str,
        *,
        up_to_sequence: Optional[int] = None,
    ) -> Optional[ConversationMemory]:
        stmt = select(ConversationMemory).where(ConversationMemory.conversation_id == str(conversation_id))
        if up_to_sequence is not None:
            stmt = stmt.where(ConversationMemory.end_sequence <= up_to_sequence)
        stmt = stmt.order_by(ConversationMemory.end_sequence.desc()).limit(1)
        return session.execute(stmt).scalar_one_or_none()

    def build(
        self,
        session: Session,
        conversation_id: str,
        *,
        is_multi_user: bool,
        up_to_sequence: Optional[int] = None,
    ) -> BuiltContext:
        memory = self.latest_memory(session, conversation_id, up_to_sequence=up_to_sequence)
        lines = self.load_lines(
            session,
            conversation_id,
            after_sequence=memory.end_sequence if memory is not None else None,
            up_to_sequence=up_to_sequence,
        )
        ctx = BuiltContext(conversation_id=str(conversation_id), is_multi_user=is_multi_user, memory=memory, lines=lines)
        self._prune_to_token_cap(ctx)
        return ctx

    def _prune_to_token_cap(self, ctx: BuiltContext) -> None:
        budget = self.max_context_tokens - self._approx_tokens(self._render_memory(ctx.memory))
        tokens = [self._approx_tokens(line.attributed()) for line in ctx.lines]
        total = sum(tokens)
        if total <= budget:
            return

        # drop from front until under cap; the newest line always stays
        i = 0
        while i < len(ctx.lines) - 1 and total > budget:
            total -= tokens[i]
            i += 1
        ctx.pruned = i
        ctx.lines = ctx.lines[i:]

    def _render_memory(self, memory: Optional[ConversationMemory]) -> str:
        if memory is None:
            return ""
        events = []
        for ev in memory.key_events or []:
            if isinstance(ev, dict):
                who = ", ".join(str(p) for p in ev.get("participants") or [])
                desc = self._coerce_field_to_str(ev.get("description"))
                events.append(f"- {desc}" + (f" ({who})" if who else ""))
            else:
                events.append(f"- {self._coerce_field_to_str(ev)}")
        key_events = ("Key Events:\n" + "\n".join(events)) if events else ""
        return self.unsafe_string_format(MEMORY_BLOCK, summary=memory.summary, key_events=key_events)

    def to_llm_messages(
        self,
        ctx: BuiltContext,
        *,
        character_id: str,
        character_name: str,
        persona: Optional[str],
        is_nsfw: bool = False,
    ) -> List[BaseMessage]:
        system = self.unsafe_string_format(
            CHARACTER_INSTRUCTIONS,
            character_name=character_name,
            persona=persona or "(no persona given)",
            content_rating_rule=NSFW_RULE if is_nsfw else SFW_RULE,
        )
        system += self._render_memory(ctx.memory)
        # the lines themselves follow as turns
        system += self.unsafe_string_format(RECENT_BLOCK, recent_lines=f"({len(ctx.lines)} messages follow)")

        out: List[BaseMessage] = [SystemMessage(content=system.strip())]
        for line in ctx.lines:
            if line.sender_type == SENDER_CHARACTER and line.sender_id == str(character_id):
                out.append(AIMessage(content=line.content))
            elif line.sender_type == SENDER_CHARACTER or ctx.is_multi_user:
                out.append(HumanMessage(content=line.attributed()))
            else:
                out.append(HumanMessage(content=line.content))

        if len(out) == 1 or isinstance(out[-1], AIMessage):
            out.append(HumanMessage(content=CONTINUE_PROMPT.format(character_name=character_name)))
        return out
