# multichat/presence.py
import logging
import threading
import time
from typing import Callable, Dict, List, Optional

from multichat.broadcast import PRESENCE_CHANGED, TYPING_CHANGED, BroadcastEvent, BroadcastHub
from multichat.errors import NotAMember

logger = logging.getLogger("multichat_backend")


class PresenceTracker:
    """
    In-memory, per-conversation presence with:
    - one entry per live connection (a user is online while any of theirs is)
    - liveness TTL refreshed by heartbeat(); sweep_expired() reclaims the rest
    - typing flags that expire on their own after typing_ttl
    - thread-safe operations (transport threads + sweep loop)

    Nothing here survives a restart; clear() is the state a fresh process starts in.
    """

    def __init__(
        self,
        hub: BroadcastHub,
        is_member: Callable[[str, str], bool],
        presence_ttl: float = 45.0,
        typing_ttl: float = 5.0,
        clock: Callable[[], float] = time.time,
    ):
        self.hub = hub
        self._is_member = is_member
        self.presence_ttl = presence_ttl
        self.typing_ttl = typing_ttl
        self._clock = clock
        self._lock = threading.Lock()
        # conversation_id -> {"connections": {connection_id: {"user_id", "last_seen"}}, "typing": {user_id: expires_at}}
        self._convs: Dict[str, Dict[str, dict]] = {}
        # connection_id -> conversation ids it is present in
        self._by_connection: Dict[str, set[str]] = {}

    # -----------------------
    # unlocked helpers
    # -----------------------

    def _conv_unlocked(self, conversation_id: str) -> Dict[str, dict]:
        item = self._convs.get(conversation_id)
        if item is None:
            item = {"connections": {}, "typing": {}}
            self._convs[conversation_id] = item
        return item

    def _online_users_unlocked(self, conversation_id: str) -> List[str]:
        item = self._convs.get(conversation_id)
        if item is None:
            return []
        cutoff = self._clock() - self.presence_ttl
        return sorted({c["user_id"] for c in item["connections"].values() if c["last_seen"] > cutoff})

    def _typing_users_unlocked(self, conversation_id: str) -> List[str]:
        item = self._convs.get(conversation_id)
        if item is None:
            return []
        now = self._clock()
        return sorted(u for u, expires_at in item["typing"].items() if expires_at > now)

    def _user_connected_unlocked(self, conversation_id: str, user_id: str) -> bool:
        item = self._convs.get(conversation_id)
        if item is None:
            return False
        return any(c["user_id"] == user_id for c in item["connections"].values())

    def _remove_connection_unlocked(self, conversation_id: str, connection_id: str) -> Optional[str]:
        item = self._convs.get(conversation_id)
        if item is None:
            return None
        entry = item["connections"].pop(connection_id, None)
        convs = self._by_connection.get(connection_id)
        if convs is not None:
            convs.discard(conversation_id)
            if not convs:
                del self._by_connection[connection_id]
        return entry["user_id"] if entry else None

    def _gc_conv_unlocked(self, conversation_id: str) -> None:
        item = self._convs.get(conversation_id)
        if item is not None and not item["connections"] and not item["typing"]:
            del self._convs[conversation_id]

    def _publish_presence_unlocked(self, conversation_id: str, user_id: str, status: str) -> None:
        self.hub.publish(
            conversation_id,
            BroadcastEvent(
                type=PRESENCE_CHANGED,
                conversation_id=conversation_id,
                payload={
                    "user_id": user_id,
                    "status": status,
                    "online_user_ids": self._online_users_unlocked(conversation_id),
                },
            ),
        )

    def _publish_typing_unlocked(self, conversation_id: str, user_id: str, is_typing: bool) -> None:
        self.hub.publish(
            conversation_id,
            BroadcastEvent(
                type=TYPING_CHANGED,
                conversation_id=conversation_id,
                payload={
                    "user_id": user_id,
                    "is_typing": is_typing,
                    "typing_user_ids": self._typing_users_unlocked(conversation_id),
                },
            ),
        )

    def _went_offline_unlocked(self, conversation_id: str, user_id: str) -> None:
        item = self._convs.get(conversation_id)
        was_typing = item is not None and item["typing"].pop(user_id, None) is not None
        self._publish_presence_unlocked(conversation_id, user_id, "offline")
        if was_typing:
            self._publish_typing_unlocked(conversation_id, user_id, False)
        self._gc_conv_unlocked(conversation_id)

    # -----------------------
    # public API
    # -----------------------

    def mark_online(self, conversation_id: str, user_id: str, connection_id: str) -> List[str]:
        conv, uid, cid = str(conversation_id), str(user_id), str(connection_id)
        if not self._is_member(conv, uid):
            raise NotAMember(f"User {uid} is not a member of conversation {conv}", user_id=uid)

        with self._lock:
            item = self._conv_unlocked(conv)
            was_online = uid in self._online_users_unlocked(conv)
            item["connections"][cid] = {"user_id": uid, "last_seen": self._clock()}
            self._by_connection.setdefault(cid, set()).add(conv)
            if not was_online:
                self._publish_presence_unlocked(conv, uid, "online")
            return self._online_users_unlocked(conv)

    def mark_offline(self, conversation_id: str, user_id: str, connection_id: Optional[str] = None) -> List[str]:
        """Drop one connection (or every connection of the user when connection_id is None)."""
        conv, uid = str(conversation_id), str(user_id)
        with self._lock:
            item = self._convs.get(conv)
            if item is None:
                return []
            if connection_id is None:
                targets = [c for c, e in item["connections"].items() if e["user_id"] == uid]
            else:
                targets = [str(connection_id)] if item["connections"].get(str(connection_id), {}).get("user_id") == uid else []
            if not targets:
                return self._online_users_unlocked(conv)
            for cid in targets:
                self._remove_connection_unlocked(conv, cid)
            if not self._user_connected_unlocked(conv, uid):
                self._went_offline_unlocked(conv, uid)
            return self._online_users_unlocked(conv)

    def drop_connection(self, connection_id: str) -> List[str]:
        """Clean disconnect: leave every conversation the connection was present in."""
        cid = str(connection_id)
        with self._lock:
            convs = sorted(self._by_connection.get(cid, ()))
            for conv in convs:
                uid = self._remove_connection_unlocked(conv, cid)
                if uid is not None and not self._user_connected_unlocked(conv, uid):
                    self._went_offline_unlocked(conv, uid)
            return convs

    def heartbeat(self, connection_id: str) -> int:
        cid = str(connection_id)
        with self._lock:
            now = self._clock()
            touched = 0
            for conv in self._by_connection.get(cid, ()):
                entry = self._convs.get(conv, {}).get("connections", {}).get(cid)
                if entry is not None:
                    entry["last_seen"] = now
                    touched += 1
            return touched

    def set_typing(self, conversation_id: str, user_id: str, is_typing: bool) -> bool:
        """Returns False (and publishes nothing) for users without a live connection."""
        conv, uid = str(conversation_id), str(user_id)
        with self._lock:
            if not self._user_connected_unlocked(conv, uid):
                return False
            item = self._conv_unlocked(conv)
            currently = uid in self._typing_users_unlocked(conv)
            if is_typing:
                item["typing"][uid] = self._clock() + self.typing_ttl
                if not currently:
                    self._publish_typing_unlocked(conv, uid, True)
            else:
                item["typing"].pop(uid, None)
                if currently:
                    self._publish_typing_unlocked(conv, uid, False)
            return True

    def list_online(self, conversation_id: str) -> List[str]:
        with self._lock:
            return self._online_users_unlocked(str(conversation_id))

    def list_typing(self, conversation_id: str) -> List[str]:
        with self._lock:
            return self._typing_users_unlocked(str(conversation_id))

    def drop_user(self, conversation_id: str, user_id: str) -> int:
        """
        Remove a user who left or was kicked: presence, typing and their
        connections' subscriptions to this conversation.
        """
        conv, uid = str(conversation_id), str(user_id)
        with self._lock:
            item = self._convs.get(conv)
            if item is None:
                return 0
            targets = [c for c, e in item["connections"].items() if e["user_id"] == uid]
            for cid in targets:
                self._remove_connection_unlocked(conv, cid)
                self.hub.unsubscribe(cid, conv)
            if targets:
                self._went_offline_unlocked(conv, uid)
            elif item["typing"].pop(uid, None) is not None:
                self._publish_typing_unlocked(conv, uid, False)
            return len(targets)

    def sweep_expired(self) -> int:
        """
        Reclaim connections past the presence TTL and expired typing flags.
        Safe to call every loop tick. Returns how many connections were removed.
        """
        removed = 0
        with self._lock:
            now = self._clock()
            cutoff = now - self.presence_ttl
            for conv in list(self._convs.keys()):
                item = self._convs[conv]
                stale = [(c, e["user_id"]) for c, e in item["connections"].items() if e["last_seen"] <= cutoff]
                for cid, _ in stale:
                    self._remove_connection_unlocked(conv, cid)
                removed += len(stale)
                for uid in sorted({u for _, u in stale}):
                    if not self._user_connected_unlocked(conv, uid):
                        self._went_offline_unlocked(conv, uid)

                item = self._convs.get(conv)
                if item is None:
                    continue
                expired_typing = sorted(u for u, exp in item["typing"].items() if exp <= now)
                for uid in expired_typing:
                    del item["typing"][uid]
                    self._publish_typing_unlocked(conv, uid, False)
                self._gc_conv_unlocked(conv)
        if removed:
            logger.info("Presence sweep: reclaimed %d stale connection(s)", removed)
        return removed

    def get_stats(self) -> dict:
        with self._lock:
            users = set()
            for item in self._convs.values():
                users.update(e["user_id"] for e in item["connections"].values())
            return {
                "conversations": len(self._convs),
                "connections": len(self._by_connection),
                "users": len(users),
            }

    def clear(self) -> None:
        with self._lock:
            self._convs.clear()
            self._by_connection.clear()
