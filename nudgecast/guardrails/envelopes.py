"""
Bill Envelopes

Soft reservations that ring-fence cash for an upcoming bill. An envelope
is a logical hold only; no money moves between accounts.
"""

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from nudgecast.features.window_utils import utcnow
from nudgecast.ingest.schema import BillEnvelope
from nudgecast.money import ZERO, quantize, to_decimal, to_float

logger = logging.getLogger(__name__)

DEFAULT_LOCK_DAYS = 10


def _active_envelope(session: Session, user_id: str, bill_id: Optional[str], transaction_id: Optional[str]) -> Optional[BillEnvelope]:
    query = session.query(BillEnvelope).filter(
        BillEnvelope.user_id == user_id,
        BillEnvelope.status == "active",
    )
    if bill_id:
        query = query.filter(BillEnvelope.bill_id == bill_id)
    else:
        query = query.filter(BillEnvelope.transaction_id == transaction_id)
    return query.first()


def protect_bill_envelope(
    session: Session,
    user_id: str,
    amount,
    bill_id: Optional[str] = None,
    transaction_id: Optional[str] = None,
    due_date: Optional[datetime] = None,
    label: Optional[str] = None,
    lock_days: int = DEFAULT_LOCK_DAYS,
    now: datetime = None
) -> BillEnvelope:
    """
    Create or extend the active envelope for a bill or recurring expense.

    The hold lasts ``lock_days`` past the due date (or past now when no due
    date is known). An existing active envelope is topped up to the larger
    amount and its lock is extended, never shortened.

    Args:
        session: Database session
        user_id: Owner
        amount: Amount to protect
        bill_id: Bill being protected
        transaction_id: Recurring expense being protected when there is no Bill row
        due_date: When the bill is due
        label: Display label
        lock_days: Days the hold lasts after the due date
        now: Reference time

    Returns:
        The active BillEnvelope
    """
    if not bill_id and not transaction_id:
        raise ValueError("An envelope needs a bill_id or a transaction_id")
    if now is None:
        now = utcnow()

    amount = quantize(amount)
    locked_until = (due_date or now) + timedelta(days=lock_days)

    envelope = _active_envelope(session, user_id, bill_id, transaction_id)
    if envelope:
        envelope.protected_amount = max(to_decimal(envelope.protected_amount), amount)
        envelope.locked_until = max(envelope.locked_until, locked_until)
        envelope.updated_at = now
    else:
        envelope = BillEnvelope(
            user_id=user_id,
            bill_id=bill_id,
            transaction_id=transaction_id,
            label=label,
            protected_amount=amount,
            locked_until=locked_until,
            status="active",
            created_at=now,
            updated_at=now,
        )
        session.add(envelope)

    session.flush()
    logger.info("Protected %s for %s until %s", amount, label or bill_id or transaction_id, locked_until.date())
    return envelope


def release_bill_envelope(session: Session, user_id: str, envelope_id: str, now: datetime = None) -> bool:
    """Release an active envelope. Returns False if there was nothing to release."""
    if now is None:
        now = utcnow()
    released = session.query(BillEnvelope).filter(
        BillEnvelope.envelope_id == envelope_id,
        BillEnvelope.user_id == user_id,
        BillEnvelope.status == "active",
    ).update({BillEnvelope.status: "released", BillEnvelope.updated_at: now}, synchronize_session=False)
    session.flush()
    if released:
        logger.info("Released envelope %s for %s", envelope_id, user_id)
    return released == 1


def list_bill_envelopes(session: Session, user_id: str, active_only: bool = True) -> List[BillEnvelope]:
    query = session.query(BillEnvelope).filter(BillEnvelope.user_id == user_id)
    if active_only:
        query = query.filter(BillEnvelope.status == "active")
    return query.order_by(BillEnvelope.locked_until.asc()).all()


def protected_total(session: Session, user_id: str) -> Decimal:
    """Sum of cash currently held in active envelopes."""
    return sum((to_decimal(e.protected_amount) for e in list_bill_envelopes(session, user_id)), ZERO)


def serialize_envelope(envelope: BillEnvelope) -> Dict:
    return {
        'envelope_id': envelope.envelope_id,
        'bill_id': envelope.bill_id,
        'transaction_id': envelope.transaction_id,
        'label': envelope.label,
        'protected_amount': to_float(envelope.protected_amount),
        'locked_until': envelope.locked_until.isoformat(),
        'status': envelope.status,
    }
