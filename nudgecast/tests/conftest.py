"""
Shared fixtures: an in-memory database per test and small factories for
users, ledger rows and nudges.
"""

import uuid
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from nudgecast.ingest.database import get_engine, get_session, init_database
from nudgecast.ingest.schema import (
    Account, Bill, Budget, FinancialProfile, Goal, NudgeAction, Transaction, User
)

# A Wednesday
NOW = datetime(2026, 3, 11, 12, 0, 0)


@pytest.fixture
def engine():
    """Fresh in-memory database."""
    engine = init_database(engine=get_engine("sqlite://"))
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    """Get database session."""
    sess = get_session(engine)
    yield sess
    sess.close()


@pytest.fixture
def make_user(session):
    """Create a user with a default CURRENT account and, optionally, savings, profile and budget."""
    def _make(
        balance="10000",
        savings_balance=None,
        profile=True,
        auto_nudge=False,
        frequency="NORMAL",
        budget=None
    ) -> User:
        user_id = f"test_user_{uuid.uuid4().hex[:8]}"
        user = User(
            user_id=user_id,
            name="Test User",
            email=f"{user_id}@example.com",
            created_at=NOW - timedelta(days=120)
        )
        session.add(user)
        session.flush()

        session.add(Account(
            user_id=user_id, name="Main", type="CURRENT", balance=Decimal(balance), is_default=True,
            created_at=NOW - timedelta(days=120)
        ))
        if savings_balance is not None:
            session.add(Account(
                user_id=user_id, name="Savings", type="SAVINGS", balance=Decimal(savings_balance), is_default=False,
                created_at=NOW - timedelta(days=100)
            ))
        if profile:
            session.add(FinancialProfile(
                user_id=user_id,
                preferred_nudge_types=[],
                disliked_nudge_types=[],
                nudge_frequency_preference=frequency,
                auto_nudge_enabled=auto_nudge,
            ))
        if budget is not None:
            session.add(Budget(user_id=user_id, amount=Decimal(budget), created_at=NOW - timedelta(days=60)))
        session.commit()
        return user
    return _make


def default_account(session, user) -> Account:
    return session.query(Account).filter(Account.user_id == user.user_id, Account.is_default.is_(True)).one()


@pytest.fixture
def add_transaction(session):
    def _add(user, txn_type, amount, when, category="Groceries", **extra) -> Transaction:
        txn = Transaction(
            user_id=user.user_id,
            account_id=extra.pop('account_id', None) or default_account(session, user).account_id,
            type=txn_type,
            amount=Decimal(str(amount)),
            category=category,
            description=extra.pop('description', category),
            date=when,
            status="COMPLETED",
            **extra
        )
        session.add(txn)
        session.commit()
        return txn
    return _add


@pytest.fixture
def add_bill(session):
    def _add(user, amount, due, name="Electricity", **extra) -> Bill:
        bill = Bill(user_id=user.user_id, name=name, amount=Decimal(str(amount)), next_due_date=due, **extra)
        session.add(bill)
        session.commit()
        return bill
    return _add


@pytest.fixture
def add_goal(session):
    def _add(user, target, saved, target_date, created_at, name="Vacation") -> Goal:
        goal = Goal(
            user_id=user.user_id,
            name=name,
            target_amount=Decimal(str(target)),
            saved_amount=Decimal(str(saved)),
            target_date=target_date,
            created_at=created_at,
        )
        session.add(goal)
        session.commit()
        return goal
    return _add


@pytest.fixture
def add_nudge(session):
    """Insert a nudge row directly, bypassing the lifecycle manager."""
    def _add(
        user,
        nudge_type="auto-save",
        status="pending",
        amount="500",
        priority=5,
        created_at=None,
        expires_at=None,
        metadata=None,
        **extra
    ) -> NudgeAction:
        created_at = created_at or NOW
        nudge = NudgeAction(
            user_id=user.user_id,
            nudge_type=nudge_type,
            amount=Decimal(amount) if amount is not None else None,
            message=f"Test {nudge_type} nudge",
            reason="Created by a test",
            priority=priority,
            status=status,
            created_at=created_at,
            expires_at=expires_at or created_at + timedelta(days=1),
            nudge_metadata=metadata or {},
            **extra
        )
        session.add(nudge)
        session.commit()
        return nudge
    return _add
