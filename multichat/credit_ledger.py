# multichat/credit_ledger.py
import logging
from decimal import Decimal
from typing import Callable, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from multichat.entities import CreditTransaction, User
from multichat.errors import InsufficientBalance, InvalidRequest

logger = logging.getLogger("multichat_backend")


class SqlCreditLedger:
    """
    Per-user credit balance kept on user.credit_balance, with one
    CreditTransaction row per movement.

    charge() never takes a balance below zero: the debit is a single
    conditional UPDATE, so two concurrent charges cannot both spend the
    same credits. A repeated idempotency key returns the original entry.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self.SessionFactory = session_factory

    def get_balance(self, user_id: str) -> Decimal:
        session = self.SessionFactory()
        try:
            balance = session.execute(
                select(User.credit_balance).where(User.id == str(user_id))
            ).scalar_one_or_none()
            if balance is None:
                raise InvalidRequest(f"Unknown user: {user_id}")
            return Decimal(balance)
        finally:
            session.close()

    def grant(self, user_id: str, amount: Decimal, reason: str = "grant", idempotency_key: Optional[str] = None) -> dict:
        amount = Decimal(amount)
        if amount <= 0:
            raise InvalidRequest("Grant amount must be positive")
        return self._apply(user_id, amount, reason, idempotency_key)

    def charge(self, user_id: str, amount: Decimal, reason: str, idempotency_key: Optional[str] = None) -> dict:
        """Raises InsufficientBalance when the balance does not cover `amount`."""
        amount = Decimal(amount)
        if amount < 0:
            raise InvalidRequest("Charge amount cannot be negative")
        return self._apply(user_id, -amount, reason, idempotency_key)

    def _existing(self, session: Session, idempotency_key: Optional[str]) -> Optional[CreditTransaction]:
        if not idempotency_key:
            return None
        return session.execute(
            select(CreditTransaction).where(CreditTransaction.idempotency_key == idempotency_key)
        ).scalar_one_or_none()

    def _apply(self, user_id: str, delta: Decimal, reason: str, idempotency_key: Optional[str]) -> dict:
        session = self.SessionFactory()
        try:
            prior = self._existing(session, idempotency_key)
            if prior is not None:
                return self._entry_to_dict(prior, duplicate=True)

            stmt = (
                update(User)
                .where(User.id == str(user_id))
                .values(credit_balance=User.credit_balance + delta)
                .execution_options(synchronize_session=False)
            )
            if delta < 0:
                stmt = stmt.where(User.credit_balance >= -delta)
            result = session.execute(stmt)

            if result.rowcount != 1:
                session.rollback()
                if session.get(User, str(user_id)) is None:
                    raise InvalidRequest(f"Unknown user: {user_id}")
                raise InsufficientBalance(
                    f"Insufficient balance for user {user_id}",
                    user_id=str(user_id),
                    required=str(-delta),
                )

            balance_after = session.execute(
                select(User.credit_balance).where(User.id == str(user_id))
            ).scalar_one()
            entry = CreditTransaction(
                user_id=str(user_id),
                amount=delta,
                balance_after=balance_after,
                reason=reason,
                idempotency_key=idempotency_key,
            )
            session.add(entry)
            try:
                session.commit()
            except IntegrityError:
                # same key committed concurrently; ours rolls back with the debit
                session.rollback()
                prior = self._existing(session, idempotency_key)
                if prior is None:
                    raise
                return self._entry_to_dict(prior, duplicate=True)

            logger.info("Ledger %s user=%s amount=%s balance=%s key=%s", reason, user_id, delta, balance_after, idempotency_key)
            return self._entry_to_dict(entry, duplicate=False)
        finally:
            session.close()

    def _entry_to_dict(self, entry: CreditTransaction, *, duplicate: bool) -> dict:
        return {
            "ledger_entry_id": entry.id,
            "user_id": entry.user_id,
            "amount": Decimal(entry.amount),
            "balance_after": Decimal(entry.balance_after),
            "reason": entry.reason,
            "idempotency_key": entry.idempotency_key,
            "duplicate": duplicate,
        }
