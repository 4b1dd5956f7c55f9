"""
Nudge Executors

The financial action behind each executable nudge type. Executors only
flush: the lifecycle manager owns the surrounding database transaction,
so a ledger entry and its balance change commit or roll back together
with the nudge's status change.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Dict

from sqlalchemy.orm import Session

from nudgecast.errors import ExecutionError
from nudgecast.features.window_utils import next_due_from_day, next_recurring_date, to_datetime
from nudgecast.guardrails.envelopes import protect_bill_envelope
from nudgecast.ingest.schema import Account, Bill, Goal, NudgeAction, Transaction
from nudgecast.money import ZERO, quantize, to_decimal

logger = logging.getLogger(__name__)

SAVINGS_DESCRIPTIONS = {
    "auto-save": "Auto-Save (AI Suggested)",
    "micro-save": "Micro-Save (Auto Buffer)",
    "goal-backstop": "Goal Backstop Top-Up",
}


def lock_default_account(user_id: str, session: Session) -> Account:
    """
    Load the user's default account for update.

    Raises:
        ExecutionError: If the user has no default account
    """
    account = session.query(Account).filter(
        Account.user_id == user_id,
        Account.is_default.is_(True)
    ).with_for_update().first()
    if account is None:
        raise ExecutionError("No default account")
    return account


def post_expense(
    session: Session,
    account: Account,
    amount: Decimal,
    category: str,
    description: str,
    now: datetime
) -> Transaction:
    """Record an EXPENSE against ``account`` and debit its balance in the same unit of work."""
    txn = Transaction(
        user_id=account.user_id,
        account_id=account.account_id,
        type="EXPENSE",
        amount=quantize(amount),
        category=category,
        description=description,
        date=now,
        status="COMPLETED",
    )
    session.add(txn)
    account.balance = quantize(to_decimal(account.balance) - amount)
    session.flush()
    return txn


def _nudge_amount(nudge: NudgeAction) -> Decimal:
    amount = to_decimal(nudge.amount)
    if amount <= ZERO:
        raise ExecutionError(f"Nudge {nudge.nudge_id} has no amount to move")
    return amount


def execute_savings_transfer(nudge: NudgeAction, session: Session, now: datetime) -> Dict:
    """Move the nudge amount out of the default account into savings, crediting a goal if linked."""
    amount = _nudge_amount(nudge)
    account = lock_default_account(nudge.user_id, session)
    if to_decimal(account.balance) < amount:
        raise ExecutionError("Insufficient balance in default account")

    description = SAVINGS_DESCRIPTIONS.get(nudge.nudge_type, "Auto-Save (AI Suggested)")
    txn = post_expense(session, account, amount, "Savings", description, now)

    metadata = nudge.nudge_metadata or {}
    goal_id = metadata.get('goal_id')
    if goal_id:
        goal = session.query(Goal).filter(
            Goal.goal_id == goal_id,
            Goal.user_id == nudge.user_id
        ).first()
        if goal is None:
            logger.warning("Goal %s for nudge %s no longer exists", goal_id, nudge.nudge_id)
        else:
            goal.saved_amount = quantize(to_decimal(goal.saved_amount) + amount)
            if goal.saved_amount >= to_decimal(goal.target_amount):
                goal.status = "completed"
            session.flush()

    return {'transaction_id': txn.transaction_id, 'goal_id': goal_id}


def execute_bill_pay(nudge: NudgeAction, session: Session, now: datetime) -> Dict:
    """
    Pay a bill or an upcoming recurring expense early.

    Bills are marked paid and moved to their next due day. Recurring
    expenses have their schedule advanced one interval.
    """
    metadata = nudge.nudge_metadata or {}
    bill_id = metadata.get('bill_id')
    transaction_id = metadata.get('transaction_id')

    if bill_id:
        bill = session.query(Bill).filter(Bill.bill_id == bill_id, Bill.user_id == nudge.user_id).first()
        if bill is None:
            raise ExecutionError("Bill not found")
        account = lock_default_account(nudge.user_id, session)
        txn = post_expense(session, account, to_decimal(bill.amount), bill.category, f"{bill.name} (Auto-Paid)", now)
        bill.is_paid = True
        bill.last_paid_date = now
        bill.next_due_date = next_due_from_day(bill.due_day, now) if bill.due_day else None
        session.flush()
        return {'transaction_id': txn.transaction_id, 'bill_id': bill_id}

    if transaction_id:
        recurring = session.query(Transaction).filter(
            Transaction.transaction_id == transaction_id,
            Transaction.user_id == nudge.user_id,
            Transaction.is_recurring.is_(True),
        ).first()
        if recurring is None:
            raise ExecutionError("Recurring expense not found")
        account = lock_default_account(nudge.user_id, session)
        txn = post_expense(
            session, account, to_decimal(recurring.amount), recurring.category,
            f"{recurring.description or recurring.category} (Paid early)", now
        )
        due = to_datetime(recurring.next_recurring_date) if recurring.next_recurring_date else now
        recurring.next_recurring_date = next_recurring_date(due, recurring.recurring_interval)
        recurring.last_processed = now
        session.flush()
        return {'transaction_id': txn.transaction_id, 'recurring_transaction_id': transaction_id}

    raise ExecutionError("Bill ID not found")


def execute_bill_guard(nudge: NudgeAction, session: Session, now: datetime) -> Dict:
    """Ring-fence the bill amount until shortly after it is due."""
    metadata = nudge.nudge_metadata or {}
    bill_id = metadata.get('bill_id')
    transaction_id = metadata.get('transaction_id')
    if not bill_id and not transaction_id:
        raise ExecutionError("Bill ID not found")

    due_date = to_datetime(metadata['due_date']) if metadata.get('due_date') else None
    envelope = protect_bill_envelope(
        session,
        nudge.user_id,
        _nudge_amount(nudge),
        bill_id=bill_id,
        transaction_id=transaction_id,
        due_date=due_date,
        label=metadata.get('bill_name'),
        now=now,
    )
    return {'envelope_id': envelope.envelope_id, 'locked_until': envelope.locked_until.isoformat()}


def execute_noop(nudge: NudgeAction, session: Session, now: datetime) -> Dict:
    return {}
