"""
Housekeeping agents: the nightly expiry sweep, the weekly emergency
buffer builder and the budget alert.
"""

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from nudgecast.agents.base import AgentRun, run_per_user
from nudgecast.agents.notifications import LoggingNotifier, Notifier
from nudgecast.features.forecast import calculate_safe_to_save
from nudgecast.features.signals import get_active_budget, get_default_account, load_financial_state
from nudgecast.features.window_utils import start_of_month, to_datetime, utcnow
from nudgecast.ingest.schema import Account, Budget, NudgeAction, Transaction, User
from nudgecast.money import ZERO, clamp, format_amount, to_decimal, to_float
from nudgecast.nudges import lifecycle
from nudgecast.nudges.registry import NudgeType

logger = logging.getLogger(__name__)

BUFFER_MIN = Decimal("200")
BUFFER_MAX = Decimal("500")
BUDGET_ALERT_THRESHOLD = Decimal("80")


def run_expiry_sweep(session: Session, now: datetime = None) -> Dict:
    """Move every pending nudge past its expiry to ``expired``."""
    expired = lifecycle.expire_stale_nudges(session, now=now)
    session.commit()
    return {'agent': "expiry-sweep", 'expired': expired}


def week_start(now: datetime) -> datetime:
    """Midnight on the Monday of ``now``'s week."""
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    return midnight - timedelta(days=midnight.weekday())


def build_buffer(user_id: str, session: Session, now: datetime) -> Optional[Dict]:
    state = load_financial_state(user_id, session, now=now)
    if not state.accounts:
        return None
    safe_amount = calculate_safe_to_save(state.total_balance, state.budget_usage_percent)
    if safe_amount < BUFFER_MIN:
        return None
    amount = clamp(safe_amount, BUFFER_MIN, BUFFER_MAX)

    start = week_start(now)
    existing = session.query(NudgeAction).filter(
        NudgeAction.user_id == user_id,
        NudgeAction.nudge_type == NudgeType.EMERGENCY_BUFFER.value,
        NudgeAction.created_at >= start,
    ).first()
    if existing is not None:
        return None

    nudge = lifecycle.create_nudge(
        user_id,
        session,
        nudge_type=NudgeType.EMERGENCY_BUFFER.value,
        message=f"Build a {format_amount(amount)} safety buffer this week?",
        reason=f"Keeping {format_amount(BUFFER_MIN)}-{format_amount(BUFFER_MAX)} aside weekly prevents future shortfalls.",
        expires_at=now + timedelta(days=3),
        priority=7,
        amount=amount,
        metadata={'automation': {'trigger': "emergency-buffer-builder", 'mode': "manual"}, 'suggested_amount': to_float(amount)},
        idempotency_key=f"{NudgeType.EMERGENCY_BUFFER.value}:{user_id}:week-{start.date().isoformat()}",
        auto_accept=False,
        now=now,
    )
    return {'created': nudge.nudge_id, 'amount': to_float(amount)} if nudge is not None else None


def run_emergency_buffer_builder(session: Session, now: datetime = None) -> AgentRun:
    """Weekly: suggest a 200-500 buffer to every user who can afford it."""
    if now is None:
        now = utcnow()
    user_ids = [row[0] for row in session.query(Account.user_id).distinct().order_by(Account.user_id)]
    return run_per_user("emergency-buffer-builder", session, user_ids, lambda uid: build_buffer(uid, session, now))


def is_new_month(last_alert: datetime, now: datetime) -> bool:
    return (last_alert.year, last_alert.month) != (now.year, now.month)


def check_budget(user_id: str, session: Session, notifier: Notifier, now: datetime) -> Optional[Dict]:
    """
    Alert once per calendar month when the default account has used 80% of the budget.
    """
    budget: Optional[Budget] = get_active_budget(user_id, session)
    account = get_default_account(user_id, session)
    if budget is None or account is None or to_decimal(budget.amount) <= ZERO:
        return None

    spent = session.query(func.coalesce(func.sum(Transaction.amount), 0)).filter(
        Transaction.user_id == user_id,
        Transaction.account_id == account.account_id,
        Transaction.type == "EXPENSE",
        Transaction.date >= start_of_month(now),
        Transaction.date <= now,
    ).scalar()
    spent = to_decimal(spent)
    used_pct = spent / to_decimal(budget.amount) * 100
    if used_pct < BUDGET_ALERT_THRESHOLD:
        return None
    if budget.last_alert_sent is not None and not is_new_month(to_datetime(budget.last_alert_sent), now):
        return None

    user = session.query(User).filter(User.user_id == user_id).first()
    notifier.send(
        user.email,
        f"Budget Alert for {account.name}",
        "budget-alert",
        {
            'user_name': user.name,
            'percentage_used': round(float(used_pct), 1),
            'budget_amount': to_float(budget.amount),
            'total_expenses': to_float(spent),
            'account_name': account.name,
        },
    )
    budget.last_alert_sent = now
    session.flush()
    return {'alerted': True, 'percentage_used': round(float(used_pct), 1)}


def run_budget_alerts(session: Session, notifier: Optional[Notifier] = None, now: datetime = None) -> AgentRun:
    if now is None:
        now = utcnow()
    notifier = notifier or LoggingNotifier()
    user_ids = [row[0] for row in session.query(Budget.user_id).distinct().order_by(Budget.user_id)]
    return run_per_user("budget-alert", session, user_ids, lambda uid: check_budget(uid, session, notifier, now))
