"""
Database schema definitions for NudgeCast.

Ledger tables (users, accounts, transactions, budgets, goals, bills) are
read by the engine; nudge, profile, risk and safety tables are owned by it.
"""

import uuid
from datetime import datetime

from sqlalchemy import (
    Column, Integer, String, Float, Boolean, DateTime,
    ForeignKey, Text, Numeric, JSON
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()

MONEY = Numeric(12, 2)


def new_id(prefix: str) -> str:
    """Generate a prefixed primary key, e.g. ``nudge_1a2b3c4d5e6f``."""
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


class User(Base):
    """User table."""
    __tablename__ = 'users'

    user_id = Column(String, primary_key=True, default=lambda: new_id("user"))
    name = Column(String, nullable=False)
    email = Column(String, nullable=False, unique=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    # Relationships
    accounts = relationship("Account", back_populates="user", cascade="all, delete-orphan")
    nudges = relationship("NudgeAction", back_populates="user", cascade="all, delete-orphan")
    profile = relationship("FinancialProfile", back_populates="user", uselist=False, cascade="all, delete-orphan")


class Account(Base):
    """Account table - CURRENT and SAVINGS accounts."""
    __tablename__ = 'accounts'

    account_id = Column(String, primary_key=True, default=lambda: new_id("acct"))
    user_id = Column(String, ForeignKey('users.user_id'), nullable=False)
    name = Column(String, nullable=False, default="Main")
    type = Column(String, nullable=False, default="CURRENT")  # CURRENT, SAVINGS
    balance = Column(MONEY, nullable=False, default=0)
    is_default = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    # Relationships
    user = relationship("User", back_populates="accounts")
    transactions = relationship("Transaction", back_populates="account", cascade="all, delete-orphan")


class Transaction(Base):
    """Transaction table - immutable ledger entries, amount always positive."""
    __tablename__ = 'transactions'

    transaction_id = Column(String, primary_key=True, default=lambda: new_id("txn"))
    user_id = Column(String, ForeignKey('users.user_id'), nullable=False)
    account_id = Column(String, ForeignKey('accounts.account_id'), nullable=False)
    type = Column(String, nullable=False)  # INCOME, EXPENSE
    amount = Column(MONEY, nullable=False)
    category = Column(String, nullable=False, default="other")
    description = Column(String, nullable=True)
    date = Column(DateTime, nullable=False)
    is_recurring = Column(Boolean, default=False, nullable=False)
    recurring_interval = Column(String, nullable=True)  # DAILY, WEEKLY, MONTHLY, YEARLY
    next_recurring_date = Column(DateTime, nullable=True)
    last_processed = Column(DateTime, nullable=True)
    status = Column(String, default='COMPLETED', nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    # Relationships
    account = relationship("Account", back_populates="transactions")


class Budget(Base):
    """Budget table - one active monthly budget per user."""
    __tablename__ = 'budgets'

    budget_id = Column(String, primary_key=True, default=lambda: new_id("budget"))
    user_id = Column(String, ForeignKey('users.user_id'), nullable=False)
    amount = Column(MONEY, nullable=False)
    is_locked = Column(Boolean, default=False, nullable=False)
    locked_reason = Column(Text, nullable=True)
    last_alert_sent = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class FinancialProfile(Base):
    """Per-user learned preferences and rhythm cache."""
    __tablename__ = 'financial_profiles'

    profile_id = Column(String, primary_key=True, default=lambda: new_id("profile"))
    user_id = Column(String, ForeignKey('users.user_id'), nullable=False, unique=True)
    preferred_nudge_types = Column(JSON, nullable=False, default=list)
    disliked_nudge_types = Column(JSON, nullable=False, default=list)
    nudge_frequency_preference = Column(String, default='NORMAL', nullable=False)  # LOW, NORMAL, HIGH
    optimal_nudge_hour = Column(Integer, nullable=True)
    auto_nudge_enabled = Column(Boolean, default=False, nullable=False)
    income_rhythm = Column(JSON, nullable=True)
    spend_rhythm = Column(JSON, nullable=True)
    spending_style = Column(String, nullable=True)  # CAUTIOUS, BALANCED, IMPULSIVE
    risk_tolerance = Column(String, nullable=True)  # HIGH, MODERATE, LOW
    last_personalization_update = Column(DateTime, nullable=True)
    last_digest_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    # Relationships
    user = relationship("User", back_populates="profile")


class NudgeAction(Base):
    """Nudge table - suggested actions and their lifecycle."""
    __tablename__ = 'nudge_actions'

    nudge_id = Column(String, primary_key=True, default=lambda: new_id("nudge"))
    user_id = Column(String, ForeignKey('users.user_id'), nullable=False)
    nudge_type = Column(String, nullable=False)
    amount = Column(MONEY, nullable=True)
    message = Column(Text, nullable=False)
    reason = Column(Text, nullable=False)
    priority = Column(Integer, nullable=False, default=5)  # 0-10
    status = Column(String, default='pending', nullable=False)  # pending, executed, rejected, expired
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    responded_at = Column(DateTime, nullable=True)
    executed_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=False)
    impact = Column(MONEY, nullable=True)
    nudge_metadata = Column("metadata", JSON, nullable=False, default=dict)
    feedback_rating = Column(Integer, nullable=True)
    was_helpful = Column(Boolean, nullable=True)
    dismiss_reason = Column(Text, nullable=True)
    feedback_comment = Column(Text, nullable=True)
    feedback_at = Column(DateTime, nullable=True)
    # Set by scheduled agents: "<type>:<user>:<subject>:<window>"
    idempotency_key = Column(String, nullable=True, unique=True)

    # Relationships
    user = relationship("User", back_populates="nudges")


class RiskSnapshot(Base):
    """Append-only audit record of a risk computation."""
    __tablename__ = 'risk_snapshots'

    snapshot_id = Column(String, primary_key=True, default=lambda: new_id("risk"))
    user_id = Column(String, ForeignKey('users.user_id'), nullable=False)
    risk_level = Column(String, nullable=False)  # Safe, Caution, Danger
    risk_score = Column(Integer, nullable=False)
    drivers = Column(JSON, nullable=False, default=list)
    forecast = Column(JSON(none_as_null=True), nullable=True)  # Serialized forecast, read by the forecast cache
    horizon_days = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class AgentSafetyState(Base):
    """Watchdog flag that stops automated execution for a user."""
    __tablename__ = 'agent_safety_states'

    user_id = Column(String, ForeignKey('users.user_id'), primary_key=True)
    autopilot_locked = Column(Boolean, default=False, nullable=False)
    reason = Column(Text, nullable=True)
    locked_at = Column(DateTime, nullable=True)
    last_risk_score = Column(Float, nullable=True)
    anomalies = Column(JSON, nullable=False, default=list)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class Goal(Base):
    """Savings goal."""
    __tablename__ = 'goals'

    goal_id = Column(String, primary_key=True, default=lambda: new_id("goal"))
    user_id = Column(String, ForeignKey('users.user_id'), nullable=False)
    name = Column(String, nullable=False)
    target_amount = Column(MONEY, nullable=False)
    saved_amount = Column(MONEY, nullable=False, default=0)
    target_date = Column(DateTime, nullable=True)
    status = Column(String, default='active', nullable=False)  # active, completed, paused
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class Bill(Base):
    """Recurring bill with a monthly due day."""
    __tablename__ = 'bills'

    bill_id = Column(String, primary_key=True, default=lambda: new_id("bill"))
    user_id = Column(String, ForeignKey('users.user_id'), nullable=False)
    name = Column(String, nullable=False)
    amount = Column(MONEY, nullable=False)
    due_day = Column(Integer, nullable=True)  # 1-31
    next_due_date = Column(DateTime, nullable=True)
    is_paid = Column(Boolean, default=False, nullable=False)
    last_paid_date = Column(DateTime, nullable=True)
    auto_pay_enabled = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    category = Column(String, nullable=False, default="bills")
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    # Relationships
    envelopes = relationship("BillEnvelope", back_populates="bill", cascade="all, delete-orphan")


class BillEnvelope(Base):
    """Logical hold on cash for an upcoming bill or recurring expense."""
    __tablename__ = 'bill_envelopes'

    envelope_id = Column(String, primary_key=True, default=lambda: new_id("env"))
    user_id = Column(String, ForeignKey('users.user_id'), nullable=False)
    bill_id = Column(String, ForeignKey('bills.bill_id'), nullable=True)
    transaction_id = Column(String, ForeignKey('transactions.transaction_id'), nullable=True)
    label = Column(String, nullable=True)
    protected_amount = Column(MONEY, nullable=False)
    locked_until = Column(DateTime, nullable=False)
    status = Column(String, default='active', nullable=False)  # active, released
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    # Relationships
    bill = relationship("Bill", back_populates="envelopes")
