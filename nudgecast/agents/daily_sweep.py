"""
Daily Sweep

Morning check on each user's default account:

- locks the budget when the balance drops under 1000
- pays recurring bills due within three days when the balance covers
  them with 2000 to spare
- sweeps 1000 into a SAVINGS account once a day when the balance is
  above 20000

Each step is its own savepoint, so a ledger entry and its balance change
land together or not at all.
"""

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from nudgecast.agents.base import AgentRun, run_per_user
from nudgecast.agents.notifications import LoggingNotifier, Notifier
from nudgecast.features.signals import get_active_budget
from nudgecast.features.window_utils import next_recurring_date, to_datetime, utcnow
from nudgecast.guardrails.safety import ensure_autopilot_unlocked
from nudgecast.ingest.schema import Account, Transaction, User
from nudgecast.money import format_amount, quantize, to_decimal
from nudgecast.nudges.executors import lock_default_account, post_expense

logger = logging.getLogger(__name__)

AGENT = "daily-sweep"
CRITICAL_BALANCE = Decimal("1000")
BILL_WINDOW_DAYS = 3
BILL_SAFETY_MARGIN = Decimal("2000")
SWEEP_THRESHOLD = Decimal("20000")
SWEEP_AMOUNT = Decimal("1000")
SWEEP_DESCRIPTION = "Agent Smart Sweep"


def _lock_budget_if_critical(user_id: str, session: Session, balance: Decimal) -> Optional[str]:
    budget = get_active_budget(user_id, session)
    if balance >= CRITICAL_BALANCE or budget is None or budget.is_locked:
        return None
    with session.begin_nested():
        budget.is_locked = True
        budget.locked_reason = f"Balance fell below {format_amount(CRITICAL_BALANCE)}"
        session.flush()
    return f"Critical balance, budget locked ({format_amount(balance)} left)."


def _pay_upcoming_bills(user_id: str, session: Session, now: datetime) -> List[str]:
    bills = session.query(Transaction).filter(
        Transaction.user_id == user_id,
        Transaction.type == "EXPENSE",
        Transaction.is_recurring.is_(True),
        Transaction.status == "COMPLETED",
        Transaction.next_recurring_date >= now,
        Transaction.next_recurring_date <= now + timedelta(days=BILL_WINDOW_DAYS),
    ).order_by(Transaction.next_recurring_date.asc()).all()

    log = []
    for bill in bills:
        label = bill.description or bill.category
        amount = to_decimal(bill.amount)
        with session.begin_nested():
            ensure_autopilot_unlocked(user_id, session)
            account = lock_default_account(user_id, session)
            if to_decimal(account.balance) <= amount + BILL_SAFETY_MARGIN:
                log.append(f"Skipped {label} (not enough safe balance)")
                continue
            post_expense(session, account, amount, bill.category, f"Auto-Paid: {label}", now)
            bill.next_recurring_date = next_recurring_date(to_datetime(bill.next_recurring_date), bill.recurring_interval)
            bill.last_processed = now
            session.flush()
        log.append(f"Auto-paid {label} ({format_amount(amount)})")
    return log


def _already_swept(savings: Account, session: Session, now: datetime) -> bool:
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    return session.query(Transaction).filter(
        Transaction.account_id == savings.account_id,
        Transaction.description == SWEEP_DESCRIPTION,
        Transaction.date >= midnight,
    ).first() is not None


def _sweep_to_savings(user_id: str, session: Session, now: datetime) -> Optional[str]:
    savings = session.query(Account).filter(
        Account.user_id == user_id,
        Account.type == "SAVINGS",
    ).order_by(Account.created_at.asc()).first()
    if savings is None or _already_swept(savings, session, now):
        return None

    with session.begin_nested():
        ensure_autopilot_unlocked(user_id, session)
        account = lock_default_account(user_id, session)
        if account.account_id == savings.account_id or to_decimal(account.balance) <= SWEEP_THRESHOLD:
            return None
        post_expense(session, account, SWEEP_AMOUNT, "Savings", SWEEP_DESCRIPTION, now)
        session.add(Transaction(
            user_id=user_id,
            account_id=savings.account_id,
            type="INCOME",
            amount=SWEEP_AMOUNT,
            category="Savings",
            description=SWEEP_DESCRIPTION,
            date=now,
            status="COMPLETED",
        ))
        savings.balance = quantize(to_decimal(savings.balance) + SWEEP_AMOUNT)
        session.flush()
    return f"Swept {format_amount(SWEEP_AMOUNT)} to {savings.name}"


def sweep_user(user_id: str, session: Session, notifier: Notifier, now: datetime) -> Optional[Dict]:
    account = session.query(Account).filter(Account.user_id == user_id, Account.is_default.is_(True)).first()
    if account is None:
        return None

    actions = []
    locked = _lock_budget_if_critical(user_id, session, to_decimal(account.balance))
    if locked:
        actions.append(locked)
    actions.extend(_pay_upcoming_bills(user_id, session, now))
    swept = _sweep_to_savings(user_id, session, now)
    if swept:
        actions.append(swept)

    if not actions:
        return None
    user = session.query(User).filter(User.user_id == user_id).first()
    notifier.send(
        user.email,
        "Daily Agent Report",
        "guardian-alert",
        {'user_name': user.name, 'action': "Agent Actions Executed", 'reason': "Daily System Check", 'message': "\n".join(actions)},
    )
    return {'actions': actions}


def run_daily_sweep(session: Session, notifier: Optional[Notifier] = None, now: datetime = None) -> AgentRun:
    if now is None:
        now = utcnow()
    notifier = notifier or LoggingNotifier()
    user_ids = [
        row[0] for row in session.query(Account.user_id).filter(Account.is_default.is_(True)).distinct().order_by(Account.user_id)
    ]
    return run_per_user(AGENT, session, user_ids, lambda uid: sweep_user(uid, session, notifier, now))
