"""
Financial State Loader

Gathers the per-user inputs the forecast, rhythm and nudge rules read:
accounts, recent transactions, the active budget, goals, bills and the
learned profile.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy.orm import Session

from nudgecast.errors import NotFoundError
from nudgecast.features.window_utils import start_of_month, to_datetime, utcnow
from nudgecast.ingest.schema import (
    User, Account, Transaction, Budget, Goal, Bill, FinancialProfile
)
from nudgecast.money import ZERO, quantize, to_decimal, to_float

NUDGE_HISTORY_LIMIT = 100


@dataclass
class FinancialState:
    """
    Everything the nudge rules need about one user at one moment.

    Transactions are most-recent-first and capped at the generator's
    history limit.
    """
    user_id: str
    calculated_at: datetime
    accounts: List[Account]
    transactions: List[Transaction]
    budget: Optional[Budget]
    goals: List[Goal]
    bills: List[Bill]
    profile: Optional[FinancialProfile]
    total_balance: Decimal = ZERO
    month_expenses: Decimal = ZERO
    budget_remaining: Decimal = ZERO
    budget_usage_percent: Optional[Decimal] = None
    default_account: Optional[Account] = field(default=None, repr=False)

    def to_dict(self) -> dict:
        return {
            'user_id': self.user_id,
            'calculated_at': self.calculated_at.isoformat(),
            'total_balance': to_float(self.total_balance),
            'month_expenses': to_float(self.month_expenses),
            'budget_remaining': to_float(self.budget_remaining),
            'budget_usage_percent': float(self.budget_usage_percent) if self.budget_usage_percent is not None else None,
            'account_count': len(self.accounts),
            'transaction_count': len(self.transactions),
            'active_goals': len(self.goals),
            'active_bills': len(self.bills),
        }


def load_transactions(user_id: str, session: Session, limit: Optional[int] = None) -> List[Transaction]:
    """User transactions, most recent first."""
    query = session.query(Transaction).filter(
        Transaction.user_id == user_id
    ).order_by(Transaction.date.desc())
    if limit:
        query = query.limit(limit)
    return query.all()


def load_total_balance(user_id: str, session: Session) -> Decimal:
    accounts = session.query(Account).filter(Account.user_id == user_id).all()
    return sum((to_decimal(a.balance) for a in accounts), ZERO)


def get_default_account(user_id: str, session: Session) -> Optional[Account]:
    """The user's default account, or None."""
    return session.query(Account).filter(
        Account.user_id == user_id,
        Account.is_default.is_(True)
    ).first()


def get_active_budget(user_id: str, session: Session) -> Optional[Budget]:
    return session.query(Budget).filter(
        Budget.user_id == user_id
    ).order_by(Budget.created_at.desc()).first()


def get_profile(user_id: str, session: Session) -> Optional[FinancialProfile]:
    return session.query(FinancialProfile).filter(FinancialProfile.user_id == user_id).first()


def get_or_create_profile(user_id: str, session: Session) -> FinancialProfile:
    """Profiles are created lazily the first time something needs to write one."""
    profile = get_profile(user_id, session)
    if profile is None:
        profile = FinancialProfile(user_id=user_id, preferred_nudge_types=[], disliked_nudge_types=[])
        session.add(profile)
        session.flush()
    return profile


def month_to_date_expenses(transactions: List[Transaction], now: datetime) -> Decimal:
    month_start = start_of_month(now)
    return sum(
        (to_decimal(t.amount) for t in transactions
         if t.type == "EXPENSE" and month_start <= to_datetime(t.date) <= now),
        ZERO,
    )


def load_financial_state(
    user_id: str,
    session: Session,
    now: datetime = None,
    transaction_limit: int = NUDGE_HISTORY_LIMIT
) -> FinancialState:
    """
    Load a user's current financial state.

    Args:
        user_id: User ID
        session: Database session
        now: Reference time (defaults to utcnow)
        transaction_limit: Most recent transactions to load

    Returns:
        FinancialState

    Raises:
        NotFoundError: If user not found
    """
    if now is None:
        now = utcnow()

    user = session.query(User).filter(User.user_id == user_id).first()
    if not user:
        raise NotFoundError(f"User {user_id} not found")

    accounts = session.query(Account).filter(Account.user_id == user_id).all()
    transactions = load_transactions(user_id, session, limit=transaction_limit)
    budget = get_active_budget(user_id, session)
    goals = session.query(Goal).filter(
        Goal.user_id == user_id,
        Goal.status == "active"
    ).order_by(Goal.created_at.asc()).all()
    bills = session.query(Bill).filter(
        Bill.user_id == user_id,
        Bill.is_active.is_(True)
    ).all()

    total_balance = sum((to_decimal(a.balance) for a in accounts), ZERO)
    month_expenses = month_to_date_expenses(transactions, now)

    if budget is not None:
        budget_amount = to_decimal(budget.amount)
        budget_remaining = budget_amount - month_expenses
        usage = (month_expenses / budget_amount * 100) if budget_amount > ZERO else None
    else:
        budget_remaining = ZERO
        usage = None

    default_account = next((a for a in accounts if a.is_default), None)

    return FinancialState(
        user_id=user_id,
        calculated_at=now,
        accounts=accounts,
        transactions=transactions,
        budget=budget,
        goals=goals,
        bills=bills,
        profile=get_profile(user_id, session),
        total_balance=quantize(total_balance),
        month_expenses=quantize(month_expenses),
        budget_remaining=quantize(budget_remaining),
        budget_usage_percent=usage,
        default_account=default_account,
    )
