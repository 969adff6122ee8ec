# multichat/membership.py
import logging
from typing import Callable, Iterable, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from multichat.base_utils import BaseUtils
from multichat.broadcast import (
    CONVERSATION_UPDATED,
    MEMBER_INVITED,
    MEMBER_JOINED,
    MEMBER_LEFT,
    MEMBER_UPDATED,
    ROLE_CHANGED,
)
from multichat.entities import (
    MEMBERSHIP_ACTIVE,
    MEMBERSHIP_INVITED,
    MEMBERSHIP_KICKED,
    MEMBERSHIP_LEFT,
    ROLE_MEMBER,
    ROLE_MODERATOR,
    ROLE_OWNER,
    ROLE_VIEWER,
    ROLES,
    Conversation,
    ConversationCharacter,
    Membership,
    User,
    utcnow,
)
from multichat.errors import (
    CapacityExceeded,
    ConversationNotFound,
    InvalidRequest,
    NotAMember,
    OwnershipTransferRequired,
    PermissionDenied,
)
from multichat.event_outbox import EventOutbox

logger = logging.getLogger("multichat_backend")

ROLE_RANK = {role: rank for rank, role in enumerate(ROLES)}

# (can_write, can_invite) granted by each role
ROLE_DEFAULT_FLAGS = {
    ROLE_OWNER: (True, True),
    ROLE_MODERATOR: (True, True),
    ROLE_MEMBER: (True, False),
    ROLE_VIEWER: (False, False),
}

MANAGEABLE_BY_MODERATOR = (ROLE_MEMBER, ROLE_VIEWER)


def _iso(value):
    return value.isoformat() if value is not None else None


class MembershipStore(BaseUtils):
    """
    Durable membership of users in conversations.

    Every mutation runs in one transaction together with its domain event
    (see EventOutbox), and every policy failure raises synchronously.
    """

    def __init__(self, session_factory: Callable[[], Session], outbox: EventOutbox, default_max_users: int = 4):
        self.SessionFactory = session_factory
        self.outbox = outbox
        self.default_max_users = default_max_users

    # -----------------------
    # Conversation lifecycle
    # -----------------------

    def create_conversation(
        self,
        owner_id: str,
        *,
        title: Optional[str] = None,
        is_multi_user: bool = False,
        max_users: Optional[int] = None,
        is_nsfw: bool = False,
        character_ids: Iterable[str] = (),
        policy: Optional[dict] = None,
    ) -> dict:
        session = self.SessionFactory()
        try:
            if session.get(User, str(owner_id)) is None:
                raise InvalidRequest(f"Unknown user: {owner_id}")

            conv = Conversation(
                owner_user_id=str(owner_id),
                title=title,
                is_multi_user=bool(is_multi_user),
                max_users=int(max_users or self.default_max_users),
                is_nsfw=bool(is_nsfw),
                permission_policy=dict(policy or {}),
            )
            session.add(conv)
            session.flush()

            can_write, can_invite = ROLE_DEFAULT_FLAGS[ROLE_OWNER]
            session.add(
                Membership(
                    conversation_id=conv.id,
                    user_id=str(owner_id),
                    role=ROLE_OWNER,
                    status=MEMBERSHIP_ACTIVE,
                    can_write=can_write,
                    can_invite=can_invite,
                    joined_at=utcnow(),
                )
            )
            for position, character_id in enumerate(character_ids):
                session.add(
                    ConversationCharacter(
                        conversation_id=conv.id,
                        character_id=str(character_id),
                        position=position,
                    )
                )
            self.outbox.record(session, conv.id, MEMBER_JOINED, {"user_id": str(owner_id), "role": ROLE_OWNER})
            session.commit()
            return self._conversation_to_dict(conv)
        finally:
            session.close()

    def set_multi_user(self, conversation_id: str, actor_id: str, enabled: bool, max_users: Optional[int] = None) -> dict:
        """
        Upgrade to (or, with a single member left, downgrade from) multi-user.
        Owner only.
        """
        session = self.SessionFactory()
        try:
            conv = self._load_conversation(session, conversation_id, for_update=True)
            actor = self.require_member(session, conversation_id, actor_id)
            if actor.role != ROLE_OWNER:
                raise PermissionDenied("Only the owner can change multi-user settings")

            active = self._count_active(session, conversation_id)
            if not enabled and active > 1:
                raise CapacityExceeded(
                    "Cannot switch to single-user while other members remain",
                    active_members=active,
                )
            if max_users is not None:
                if int(max_users) < active:
                    raise CapacityExceeded(
                        f"max_users={max_users} is below the current member count ({active})",
                        active_members=active,
                    )
                conv.max_users = int(max_users)
            conv.is_multi_user = bool(enabled)

            self.outbox.record(
                session,
                conversation_id,
                CONVERSATION_UPDATED,
                {"is_multi_user": conv.is_multi_user, "max_users": conv.max_users},
            )
            session.commit()
            return self._conversation_to_dict(conv)
        finally:
            session.close()

    # -----------------------
    # Membership mutations
    # -----------------------

    def invite(self, conversation_id: str, inviter_id: str, invitee_id: str, role: str = ROLE_MEMBER) -> dict:
        session = self.SessionFactory()
        try:
            conv = self._load_conversation(session, conversation_id, for_update=True)
            if not conv.is_multi_user:
                raise PermissionDenied("Conversation is not multi-user")
            if role not in (ROLE_MODERATOR, ROLE_MEMBER, ROLE_VIEWER):
                raise InvalidRequest(f"Cannot invite with role {role}")

            inviter = self.require_member(session, conversation_id, inviter_id)
            if not self._can_invite(inviter):
                raise PermissionDenied("You don't have permission to invite users")
            if role == ROLE_MODERATOR and inviter.role != ROLE_OWNER:
                raise PermissionDenied("Only the owner can invite moderators")

            if session.get(User, str(invitee_id)) is None:
                raise InvalidRequest(f"Unknown user: {invitee_id}")

            existing = session.get(Membership, (str(conversation_id), str(invitee_id)))
            if existing is not None and existing.status == MEMBERSHIP_ACTIVE:
                raise InvalidRequest("User is already a member")

            active = self._count_active(session, conversation_id)
            if active >= conv.max_users:
                raise CapacityExceeded(
                    f"Conversation has reached maximum capacity ({conv.max_users} users)",
                    max_users=conv.max_users,
                )

            can_write, can_invite = ROLE_DEFAULT_FLAGS[role]
            now = utcnow()
            if existing is None:
                existing = Membership(conversation_id=str(conversation_id), user_id=str(invitee_id))
                session.add(existing)
            # re-invite reactivates a LEFT/KICKED row
            existing.role = role
            existing.status = MEMBERSHIP_INVITED
            existing.can_write = can_write
            existing.can_invite = can_invite
            existing.invited_by = str(inviter_id)
            existing.invited_at = now
            existing.left_at = None

            self.outbox.record(
                session,
                conversation_id,
                MEMBER_INVITED,
                {"user_id": str(invitee_id), "role": role, "invited_by": str(inviter_id)},
            )
            session.commit()
            return self._membership_to_dict(existing)
        finally:
            session.close()

    def join(self, conversation_id: str, user_id: str) -> dict:
        session = self.SessionFactory()
        try:
            conv = self._load_conversation(session, conversation_id, for_update=True)
            membership = session.get(Membership, (str(conversation_id), str(user_id)))

            if membership is not None and membership.status == MEMBERSHIP_ACTIVE:
                return self._membership_to_dict(membership)

            if membership is not None and membership.status == MEMBERSHIP_INVITED:
                pass
            elif self._allows_open_join(conv) and (membership is None or membership.status == MEMBERSHIP_LEFT):
                if session.get(User, str(user_id)) is None:
                    raise InvalidRequest(f"Unknown user: {user_id}")
                if membership is None:
                    membership = Membership(conversation_id=str(conversation_id), user_id=str(user_id))
                    session.add(membership)
                membership.role = ROLE_MEMBER
                membership.can_write, membership.can_invite = ROLE_DEFAULT_FLAGS[ROLE_MEMBER]
            else:
                raise PermissionDenied("No pending invitation for this conversation")

            active = self._count_active(session, conversation_id)
            if active + 1 > conv.max_users:
                raise CapacityExceeded(
                    f"Conversation has reached maximum capacity ({conv.max_users} users)",
                    max_users=conv.max_users,
                )

            membership.status = MEMBERSHIP_ACTIVE
            membership.joined_at = utcnow()
            membership.left_at = None

            self.outbox.record(
                session,
                conversation_id,
                MEMBER_JOINED,
                {"user_id": str(user_id), "role": membership.role},
            )
            session.commit()
            return self._membership_to_dict(membership)
        finally:
            session.close()

    def leave(self, conversation_id: str, user_id: str) -> dict:
        session = self.SessionFactory()
        try:
            self._load_conversation(session, conversation_id, for_update=True)
            membership = self.require_member(session, conversation_id, user_id)

            if membership.role == ROLE_OWNER:
                others = self._count_active(session, conversation_id) - 1
                if others > 0:
                    raise OwnershipTransferRequired(
                        "Transfer ownership before leaving the conversation",
                        remaining_members=others,
                    )
                raise OwnershipTransferRequired(
                    "The owner cannot leave; delete the conversation instead",
                    remaining_members=0,
                )

            membership.status = MEMBERSHIP_LEFT
            membership.left_at = utcnow()

            self.outbox.record(session, conversation_id, MEMBER_LEFT, {"user_id": str(user_id), "reason": "left"})
            session.commit()
            return self._membership_to_dict(membership)
        finally:
            session.close()

    def kick(self, conversation_id: str, actor_id: str, target_id: str) -> dict:
        session = self.SessionFactory()
        try:
            self._load_conversation(session, conversation_id, for_update=True)
            if str(actor_id) == str(target_id):
                raise InvalidRequest("Use leave() to remove yourself")
            actor = self.require_member(session, conversation_id, actor_id)
            target = self.require_member(session, conversation_id, target_id)

            if target.role == ROLE_OWNER:
                raise PermissionDenied("Cannot remove the conversation owner")
            self._check_can_manage(actor, target, action="remove")

            target.status = MEMBERSHIP_KICKED
            target.left_at = utcnow()

            self.outbox.record(
                session,
                conversation_id,
                MEMBER_LEFT,
                {"user_id": str(target_id), "reason": "kicked", "by": str(actor_id)},
            )
            session.commit()
            return self._membership_to_dict(target)
        finally:
            session.close()

    def update_role(self, conversation_id: str, actor_id: str, target_id: str, new_role: str) -> dict:
        if new_role not in ROLES:
            raise InvalidRequest(f"Unknown role: {new_role}")
        if new_role == ROLE_OWNER:
            raise OwnershipTransferRequired("Use transfer_ownership to assign a new owner")

        session = self.SessionFactory()
        try:
            self._load_conversation(session, conversation_id, for_update=True)
            actor = self.require_member(session, conversation_id, actor_id)
            target = self.require_member(session, conversation_id, target_id)

            if target.role == ROLE_OWNER:
                raise OwnershipTransferRequired("The owner's role changes only through an ownership transfer")
            self._check_can_manage(actor, target, action="change the role of")
            if actor.role == ROLE_MODERATOR and new_role not in MANAGEABLE_BY_MODERATOR:
                raise PermissionDenied("Moderators can only assign MEMBER or VIEWER")

            old_role = target.role
            if old_role == new_role:
                return self._membership_to_dict(target)

            target.role = new_role
            target.can_write, target.can_invite = ROLE_DEFAULT_FLAGS[new_role]

            self.outbox.record(
                session,
                conversation_id,
                ROLE_CHANGED,
                {"user_id": str(target_id), "old_role": old_role, "new_role": new_role, "by": str(actor_id)},
            )
            session.commit()
            return self._membership_to_dict(target)
        finally:
            session.close()

    def transfer_ownership(self, conversation_id: str, owner_id: str, new_owner_id: str) -> dict:
        """
        Promote an active member to OWNER; the former owner becomes MODERATOR.
        Both changes land in one transaction.
        """
        if str(owner_id) == str(new_owner_id):
            raise InvalidRequest("New owner must be a different member")

        session = self.SessionFactory()
        try:
            conv = self._load_conversation(session, conversation_id, for_update=True)
            owner = self.require_member(session, conversation_id, owner_id)
            if owner.role != ROLE_OWNER:
                raise PermissionDenied("Only the owner can transfer ownership")
            new_owner = self.require_member(session, conversation_id, new_owner_id)
            previous_role = new_owner.role

            # demote first: the single-owner index must never see two owners
            owner.role = ROLE_MODERATOR
            owner.can_write, owner.can_invite = ROLE_DEFAULT_FLAGS[ROLE_MODERATOR]
            session.flush()

            new_owner.role = ROLE_OWNER
            new_owner.can_write, new_owner.can_invite = ROLE_DEFAULT_FLAGS[ROLE_OWNER]
            conv.owner_user_id = str(new_owner_id)
            session.flush()

            self.outbox.record(
                session,
                conversation_id,
                ROLE_CHANGED,
                {"user_id": str(owner_id), "old_role": ROLE_OWNER, "new_role": ROLE_MODERATOR, "by": str(owner_id)},
            )
            self.outbox.record(
                session,
                conversation_id,
                ROLE_CHANGED,
                {"user_id": str(new_owner_id), "old_role": previous_role, "new_role": ROLE_OWNER, "by": str(owner_id)},
            )
            self.outbox.record(session, conversation_id, CONVERSATION_UPDATED, {"owner_user_id": str(new_owner_id)})
            session.commit()
            self.color_print(f"Ownership of {conversation_id} transferred {owner_id} -> {new_owner_id}", color="cyan")
            return self._membership_to_dict(new_owner)
        finally:
            session.close()

    def update_permissions(
        self,
        conversation_id: str,
        actor_id: str,
        target_id: str,
        *,
        can_write: Optional[bool] = None,
        can_invite: Optional[bool] = None,
    ) -> dict:
        session = self.SessionFactory()
        try:
            self._load_conversation(session, conversation_id)
            actor = self.require_member(session, conversation_id, actor_id)
            if actor.role != ROLE_OWNER:
                raise PermissionDenied("Only the owner can change member permissions")
            target = self.require_member(session, conversation_id, target_id)
            if target.role == ROLE_OWNER:
                raise PermissionDenied("The owner's permissions cannot be changed")
            if can_write and target.role == ROLE_VIEWER:
                raise PermissionDenied("Viewers are read-only; change the role first")

            if can_write is not None:
                target.can_write = bool(can_write)
            if can_invite is not None:
                target.can_invite = bool(can_invite)

            self.outbox.record(
                session,
                conversation_id,
                MEMBER_UPDATED,
                {"user_id": str(target_id), "can_write": target.can_write, "can_invite": target.can_invite},
            )
            session.commit()
            return self._membership_to_dict(target)
        finally:
            session.close()

    # -----------------------
    # Queries
    # -----------------------

    def list_members(self, conversation_id: str, include_pending: bool = False) -> list[dict]:
        """Active members ordered OWNER, MODERATOR, MEMBER, VIEWER, then by join time."""
        session = self.SessionFactory()
        try:
            self._load_conversation(session, conversation_id)
            statuses = [MEMBERSHIP_ACTIVE] + ([MEMBERSHIP_INVITED] if include_pending else [])
            rows = session.execute(
                select(Membership, User)
                .join(User, User.id == Membership.user_id)
                .where(
                    Membership.conversation_id == str(conversation_id),
                    Membership.status.in_(statuses),
                )
            ).all()
            rows.sort(
                key=lambda r: (
                    r[0].status != MEMBERSHIP_ACTIVE,
                    ROLE_RANK.get(r[0].role, len(ROLES)),
                    r[0].joined_at or r[0].invited_at or utcnow(),
                    r[0].user_id,
                )
            )
            return [self._membership_to_dict(m, user) for m, user in rows]
        finally:
            session.close()

    def get_membership(self, conversation_id: str, user_id: str) -> Optional[dict]:
        session = self.SessionFactory()
        try:
            m = session.get(Membership, (str(conversation_id), str(user_id)))
            return self._membership_to_dict(m) if m is not None else None
        finally:
            session.close()

    def is_member(self, conversation_id: str, user_id: str) -> bool:
        m = self.get_membership(conversation_id, user_id)
        return bool(m and m["status"] == MEMBERSHIP_ACTIVE)

    def can_write(self, conversation_id: str, user_id: str) -> bool:
        m = self.get_membership(conversation_id, user_id)
        return bool(m and m["status"] == MEMBERSHIP_ACTIVE and m["can_write"])

    def count_active_members(self, conversation_id: str) -> int:
        session = self.SessionFactory()
        try:
            return self._count_active(session, conversation_id)
        finally:
            session.close()

    # -----------------------
    # In-session helpers (used by other components inside their own transaction)
    # -----------------------

    def require_member(self, session: Session, conversation_id: str, user_id: str) -> Membership:
        m = session.get(Membership, (str(conversation_id), str(user_id)))
        if m is None or m.status != MEMBERSHIP_ACTIVE:
            raise NotAMember(
                f"User {user_id} is not a member of conversation {conversation_id}",
                user_id=str(user_id),
            )
        return m

    def require_writer(self, session: Session, conversation_id: str, user_id: str) -> Membership:
        m = self.require_member(session, conversation_id, user_id)
        if not m.can_write:
            raise PermissionDenied("You don't have permission to send messages in this conversation")
        return m

    def _load_conversation(self, session: Session, conversation_id: str, for_update: bool = False) -> Conversation:
        stmt = select(Conversation).where(Conversation.id == str(conversation_id))
        if for_update:
            stmt = stmt.with_for_update()
        conv = session.execute(stmt).scalar_one_or_none()
        if conv is None:
            raise ConversationNotFound(f"Conversation not found: {conversation_id}")
        return conv

    def _count_active(self, session: Session, conversation_id: str) -> int:
        return session.execute(
            select(func.count())
            .select_from(Membership)
            .where(
                Membership.conversation_id == str(conversation_id),
                Membership.status == MEMBERSHIP_ACTIVE,
            )
        ).scalar_one()

    def _can_invite(self, m: Membership) -> bool:
        # can_invite restricts, it never lifts a MEMBER/VIEWER
        return m.role in (ROLE_OWNER, ROLE_MODERATOR) and bool(m.can_invite)

    def _check_can_manage(self, actor: Membership, target: Membership, action: str) -> None:
        if actor.role == ROLE_OWNER:
            return
        if actor.role == ROLE_MODERATOR and target.role in MANAGEABLE_BY_MODERATOR:
            return
        raise PermissionDenied(f"You don't have permission to {action} this member")

    def _allows_open_join(self, conv: Conversation) -> bool:
        return bool(conv.is_multi_user and (conv.permission_policy or {}).get("allow_open_join"))

    def _membership_to_dict(self, m: Membership, user: Optional[User] = None) -> dict:
        out = {
            "conversation_id": m.conversation_id,
            "user_id": m.user_id,
            "role": m.role,
            "status": m.status,
            "can_write": bool(m.can_write),
            "can_invite": bool(m.can_invite),
            "can_moderate": m.role in (ROLE_OWNER, ROLE_MODERATOR),
            "invited_by": m.invited_by,
            "invited_at": _iso(m.invited_at),
            "joined_at": _iso(m.joined_at),
            "left_at": _iso(m.left_at),
        }
        if user is not None:
            out["display_name"] = user.display_name or user.username
        return out

    def _conversation_to_dict(self, conv: Conversation) -> dict:
        return {
            "id": conv.id,
            "owner_user_id": conv.owner_user_id,
            "title": conv.title,
            "is_multi_user": bool(conv.is_multi_user),
            "max_users": conv.max_users,
            "is_nsfw": bool(conv.is_nsfw),
            "permission_policy": dict(conv.permission_policy or {}),
        }
