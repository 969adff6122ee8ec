# multichat/idempotency_cache.py

import logging
import threading
from typing import Callable, Iterable, List, Set

from sqlalchemy.orm import Session, sessionmaker

from multichat.entities import PendingCharge
from multichat.pending_charge_recorder import settle_pending_charge

logger = logging.getLogger("multichat_backend")


class IdempotencyCache:
    """
    Process-local cache of idempotency keys whose charge still has to land.

    - No TTL.
    - Keys are removed when the corresponding PendingCharge row is CHARGED.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._keys: Set[str] = set()

    def add(self, key: str) -> None:
        if not key:
            return
        with self._lock:
            self._keys.add(str(key))

    def remove(self, key: str) -> None:
        if not key:
            return
        with self._lock:
            self._keys.discard(str(key))

    def snapshot(self) -> List[str]:
        """
        Return a copy of all keys currently tracked.
        """
        with self._lock:
            return list(self._keys)

    def load_outstanding(self, session_factory: sessionmaker) -> int:
        """
        Pick up PENDING/FAILED charges left by a previous process.
        Returns how many keys were added.
        """
        session: Session = session_factory()
        try:
            keys = [
                k
                for (k,) in session.query(PendingCharge.idempotency_key)
                .filter(PendingCharge.status.in_(("PENDING", "FAILED")))
                .all()
            ]
        finally:
            session.close()

        added = 0
        with self._lock:
            for k in keys:
                if k not in self._keys:
                    self._keys.add(k)
                    added += 1
        return added

    def sweep_charged(self, session_factory: sessionmaker) -> int:
        """
        Look up cached keys in the DB and remove those whose
        PendingCharge.status == 'CHARGED'.

        Returns how many keys were removed.
        """
        with self._lock:
            keys = list(self._keys)

        if not keys:
            return 0

        session: Session = session_factory()
        try:
            rows: Iterable[tuple[str, str]] = (
                session.query(
                    PendingCharge.idempotency_key,
                    PendingCharge.status,
                )
                .filter(PendingCharge.idempotency_key.in_(keys))
                .all()
            )
        finally:
            session.close()

        to_remove = [k for (k, status) in rows if status == "CHARGED"]
        if not to_remove:
            return 0

        removed = 0
        with self._lock:
            for k in to_remove:
                if k in self._keys:
                    self._keys.remove(k)
                    removed += 1

        return removed

    def settle_outstanding(self, session_factory: sessionmaker, charge: Callable[..., dict]) -> int:
        """
        Retry the ledger charge for every tracked key still PENDING or FAILED.
        `charge` is the ledger's charge(user_id, amount, reason, idempotency_key).
        Returns how many charges landed.
        """
        keys = self.snapshot()
        if not keys:
            return 0

        session: Session = session_factory()
        try:
            rows = (
                session.query(PendingCharge)
                .filter(
                    PendingCharge.idempotency_key.in_(keys),
                    PendingCharge.status.in_(("PENDING", "FAILED")),
                )
                .all()
            )
            work = [(r.idempotency_key, r.user_id, r.amount, r.reason) for r in rows]
        finally:
            session.close()

        settled = 0
        for key, user_id, amount, reason in work:
            try:
                entry = charge(user_id, amount, reason or "reconciliation", idempotency_key=key)
            except Exception as e:
                logger.warning("Reconciliation still failing: key=%s user=%s amount=%s: %s", key, user_id, amount, e)
                settle_pending_charge(session_factory, key, status="FAILED", error_message=str(e))
                continue
            settle_pending_charge(
                session_factory,
                key,
                status="CHARGED",
                ledger_entry_id=entry.get("ledger_entry_id"),
            )
            self.remove(key)
            settled += 1
        return settled


# Global, process-local singleton
IDEMPOTENCY_CACHE = IdempotencyCache()
