# multichat/pending_charge_recorder.py

from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session, sessionmaker

from multichat.entities import PendingCharge, utcnow


def response_charge_key(job_id: str) -> str:
    return f"response-job:{job_id}"


def record_pending_charge(
    session: Session,
    *,
    idempotency_key: str,
    user_id: str,
    amount: Decimal,
    currency: str,
    conversation_id: Optional[str] = None,
    job_id: Optional[str] = None,
    message_id: Optional[str] = None,
    reason: Optional[str] = None,
) -> PendingCharge:
    """
    Add a PendingCharge row in state PENDING to the caller's transaction,
    so it commits together with the generated reply it pays for.
    """
    pending = PendingCharge(
        idempotency_key=idempotency_key,
        user_id=str(user_id),
        conversation_id=conversation_id,
        job_id=job_id,
        message_id=message_id,
        reason=reason,
        amount=amount,
        currency=currency,
        status="PENDING",
    )
    session.add(pending)
    return pending


def settle_pending_charge(
    session_factory: sessionmaker,
    idempotency_key: str,
    *,
    status: str,
    ledger_entry_id: Optional[str] = None,
    error_message: Optional[str] = None,
) -> bool:
    """
    Move a PendingCharge to CHARGED or FAILED. Returns False if the key is unknown.
    """
    session: Session = session_factory()
    try:
        pending = (
            session.query(PendingCharge)
                .filter(PendingCharge.idempotency_key == str(idempotency_key))
                .one_or_none()
        )
        if pending is None:
            return False

        pending.status = status
        if ledger_entry_id is not None:
            pending.ledger_entry_id = ledger_entry_id
        pending.error_message = error_message
        if status == "CHARGED":
            pending.charged_at = utcnow()
        session.commit()
        return True
    finally:
        session.close()
