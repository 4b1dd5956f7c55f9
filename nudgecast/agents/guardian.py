"""
Shortfall Guardian

Reacts to ``shortfall.forecasted`` with one guardian-alert nudge built
from the forecast, the 7-day EMI check and the next bill due. A pending
guardian nudge from the last six hours is refreshed in place instead of
adding another.
"""

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from nudgecast.features.forecast import check_emi_at_risk
from nudgecast.features.signals import load_total_balance, load_transactions
from nudgecast.features.window_utils import to_datetime, utcnow, window_bucket
from nudgecast.guardrails.safety import is_autopilot_locked
from nudgecast.guardrails.tone import sanitize_text
from nudgecast.ingest.schema import Bill, NudgeAction, User
from nudgecast.money import ZERO, format_amount, quantize, round_whole, to_decimal, to_float
from nudgecast.nudges import lifecycle
from nudgecast.nudges.registry import NudgeType

logger = logging.getLogger(__name__)

SEVERITY_PRIORITY = {'low': 4, 'medium': 6, 'high': 8, 'critical': 10}
DEFAULT_PRIORITY = 5
DEDUPE_WINDOW_HOURS = 6
BILL_WINDOW_DAYS = 7
FALLBACK_EXPIRY_DAYS = 3
HISTORY_LIMIT = 120
MIN_EMI_SHORTFALL = Decimal("100")


def _upcoming_bills(user_id: str, session: Session, now: datetime) -> List[Bill]:
    return session.query(Bill).filter(
        Bill.user_id == user_id,
        Bill.is_active.is_(True),
        Bill.is_paid.is_(False),
        Bill.next_due_date.isnot(None),
        Bill.next_due_date <= now + timedelta(days=BILL_WINDOW_DAYS),
    ).order_by(Bill.next_due_date.asc()).all()


def _compose(payload: Dict, emi_risk, next_bill: Optional[Bill]) -> Dict:
    """Message, reason and amount for the guardian nudge."""
    level = payload.get('risk_level', "low")
    predicted = to_decimal(payload.get('predicted_balance', 0))
    confidence = payload.get('confidence', 0)
    critical_dates = payload.get('critical_dates') or []

    emi_shortfall = max(ZERO, round_whole(emi_risk.shortfall)) if emi_risk.at_risk else ZERO
    bill_gap = max(ZERO, round_whole(to_decimal(next_bill.amount) - predicted)) if next_bill else ZERO
    amount = max(emi_shortfall, bill_gap)

    if emi_risk.at_risk:
        message = f"Rent/EMI at risk in under 7 days. Short by {format_amount(max(emi_shortfall, MIN_EMI_SHORTFALL))}."
    elif next_bill:
        message = f"{next_bill.name} of {format_amount(next_bill.amount)} is due soon. Buffer looks thin."
    else:
        message = f"Cash buffer trending {level}. Build protection today."

    parts = [
        sanitize_text(payload.get('summary') or "Balance trending down"),
        f"Skip action and balance trends toward {format_amount(predicted)} ({confidence}% confidence).",
    ]
    if critical_dates:
        first = critical_dates[0]
        parts.append(f"First danger window: Day {first.get('day')} ({first.get('reason') or 'balance dip'}).")
    actions = payload.get('recommended_actions') or []
    if actions:
        parts.append(" · ".join(sanitize_text(a) for a in actions[:2]))
    if emi_risk.at_risk:
        covered = emi_risk.total_emi - emi_risk.shortfall
        parts.append(
            f"Forecast sees {emi_risk.upcoming_emis} EMI(s) totaling {format_amount(emi_risk.total_emi)} "
            f"but buffer covers only {format_amount(covered)}."
        )
    elif next_bill:
        due = to_datetime(next_bill.next_due_date).strftime("%d %b")
        parts.append(f"{next_bill.name} hits on {due}. Paying early avoids scramble.")

    return {'message': message, 'reason': " ".join(parts), 'amount': amount}


def handle_shortfall(session: Session, payload: Dict, now: datetime = None) -> Dict:
    """
    Create or refresh the guardian-alert nudge for a forecasted shortfall.

    Args:
        session: Database session
        payload: ``shortfall.forecasted`` data (user_id, risk_level,
            predicted_balance, critical_dates, recommended_actions,
            summary, confidence, generated_at)
        now: Reference time

    Returns:
        Dict with 'created', 'updated' or 'skipped'
    """
    if now is None:
        now = utcnow()

    user_id = payload.get('user_id')
    if not user_id:
        return {'skipped': "missing-user-id"}
    level = payload.get('risk_level', "low")
    if level == "low" and not payload.get('critical_dates'):
        return {'skipped': "low-risk"}
    if session.query(User).filter(User.user_id == user_id).first() is None:
        return {'skipped': "user-not-found"}
    if is_autopilot_locked(user_id, session):
        return {'skipped': "autopilot-locked"}

    transactions = load_transactions(user_id, session, limit=HISTORY_LIMIT)
    balance = load_total_balance(user_id, session)
    emi_risk = check_emi_at_risk(transactions, balance, days=BILL_WINDOW_DAYS, now=now)
    bills = _upcoming_bills(user_id, session, now)
    next_bill = bills[0] if bills else None

    copy = _compose(payload, emi_risk, next_bill)
    due = to_datetime(next_bill.next_due_date) if next_bill else None
    expires_at = due if due and due > now else now + timedelta(days=FALLBACK_EXPIRY_DAYS)
    priority = SEVERITY_PRIORITY.get(level, DEFAULT_PRIORITY)
    metadata = {
        'forecast': payload,
        'emi_risk': emi_risk.to_dict(),
        'upcoming_bills': [
            {
                'bill_id': bill.bill_id,
                'name': bill.name,
                'amount': to_float(bill.amount),
                'due_date': to_datetime(bill.next_due_date).isoformat(),
            }
            for bill in bills
        ],
        'automation': {
            'trigger': "shortfall.forecasted",
            'mode': "auto",
            'generated_at': payload.get('generated_at') or now.isoformat(),
        },
    }

    recent = session.query(NudgeAction).filter(
        NudgeAction.user_id == user_id,
        NudgeAction.nudge_type == NudgeType.GUARDIAN_ALERT.value,
        NudgeAction.status == "pending",
        NudgeAction.created_at >= now - timedelta(hours=DEDUPE_WINDOW_HOURS),
    ).order_by(NudgeAction.created_at.desc()).first()

    if recent is not None:
        values = {
            NudgeAction.message: copy['message'],
            NudgeAction.reason: copy['reason'],
            NudgeAction.priority: priority,
            NudgeAction.expires_at: expires_at,
            NudgeAction.nudge_metadata: metadata,
        }
        if copy['amount'] > ZERO:
            values[NudgeAction.amount] = quantize(copy['amount'])
        updated = session.query(NudgeAction).filter(
            NudgeAction.nudge_id == recent.nudge_id,
            NudgeAction.status == "pending",
        ).update(values, synchronize_session=False)
        if updated:
            session.expire(recent)
            logger.info("Refreshed guardian nudge %s for %s", recent.nudge_id, user_id)
            return {'updated': recent.nudge_id}

    nudge = lifecycle.create_nudge(
        user_id,
        session,
        nudge_type=NudgeType.GUARDIAN_ALERT.value,
        message=copy['message'],
        reason=copy['reason'],
        expires_at=expires_at,
        priority=priority,
        amount=copy['amount'] if copy['amount'] > ZERO else None,
        metadata=metadata,
        idempotency_key=f"{NudgeType.GUARDIAN_ALERT.value}:{user_id}:{window_bucket(now, DEDUPE_WINDOW_HOURS)}",
        auto_accept=False,
        now=now,
    )
    if nudge is None:
        return {'skipped': "duplicate"}
    return {'created': nudge.nudge_id}
