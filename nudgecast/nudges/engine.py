"""
Nudge Generation Engine

Rule engine that inspects a user's current financial state, 7-day
forecast and rhythm and proposes typed, prioritized nudges with an
expiry. Spending-guardrail and goal-backstop nudges come from the
scheduled agents instead.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from nudgecast.features.forecast import (
    calculate_safe_to_save, evaluate_emi_risk, get_7_day_forecast
)
from nudgecast.features.risk import assess_forecast
from nudgecast.features.signals import FinancialState, load_financial_state
from nudgecast.features.window_utils import WEEKDAYS, days_between, start_of_month, to_datetime, utcnow
from nudgecast.ingest.schema import Bill, Transaction
from nudgecast.money import ZERO, clamp, format_amount, quantize, round_whole, to_decimal, to_float
from nudgecast.nudges.behavior import get_personalized_nudge_settings
from nudgecast.nudges.registry import NudgeType

logger = logging.getLogger(__name__)

GOAL_SAVE_RATE = Decimal("0.05")
GOAL_SAVE_MIN = Decimal("500")
GOAL_SAVE_MAX = Decimal("2000")
GOAL_MIN_BUDGET_REMAINING = Decimal("500")

SURPLUS_BALANCE = Decimal("20000")
SURPLUS_BUDGET_REMAINING = Decimal("5000")
SURPLUS_SAVE_RATE = Decimal("0.2")
SURPLUS_SAVE_MAX = Decimal("2000")

MICRO_SAVE_MIN = Decimal("50")
MICRO_SAVE_MAX = Decimal("120")

BILL_LOOKAHEAD_DAYS = 7

CATEGORY_BUDGET_SHARE = Decimal("0.2")
DEFAULT_CATEGORY_BUDGET = Decimal("2000")
CATEGORY_ALERT_LOW = Decimal("0.8")
CATEGORY_ALERT_HIGH = Decimal("1.2")
NON_DISCRETIONARY_CATEGORIES = {"Savings"}

EMERGENCY_THRESHOLD = Decimal("1000")
INCOME_DIP_RATIO = Decimal("0.7")

SUMMARY_SIZE = 3
COPING_WAYS = ["Cut dining out", "Delay non-essentials", "Pick up a quick gig"]


@dataclass
class NudgeCandidate:
    """A proposed nudge before it is persisted."""
    type: str
    message: str
    reason: str
    priority: int
    expires_at: datetime
    amount: Optional[Decimal] = None
    metadata: Dict = field(default_factory=dict)

    def to_dict(self) -> Dict:
        return {
            'type': self.type,
            'amount': to_float(self.amount) if self.amount is not None else None,
            'message': self.message,
            'reason': self.reason,
            'priority': self.priority,
            'expires_at': self.expires_at.isoformat(),
            'metadata': self.metadata,
        }


@dataclass
class Obligation:
    """An upcoming bill or recurring expense."""
    name: str
    amount: Decimal
    due_date: datetime
    bill_id: Optional[str] = None
    transaction_id: Optional[str] = None

    def reference(self) -> Dict:
        ref = {'bill_name': self.name, 'due_date': self.due_date.isoformat()}
        if self.bill_id:
            ref['bill_id'] = self.bill_id
        if self.transaction_id:
            ref['transaction_id'] = self.transaction_id
        return ref


def days_until_weekday(weekday: Optional[str], now: datetime) -> Optional[int]:
    """Days until the next ``weekday``; today counts as a week away."""
    if not weekday or weekday not in WEEKDAYS:
        return None
    diff = (WEEKDAYS.index(weekday) - now.weekday()) % 7
    return 7 if diff == 0 else diff


def upcoming_obligations(user_id: str, session: Session, now: datetime, days: int = BILL_LOOKAHEAD_DAYS) -> List[Obligation]:
    """Recurring expenses and unpaid bills due within ``days``, earliest first. Overdue items are included."""
    horizon = now + timedelta(days=days)
    obligations = []

    recurring = session.query(Transaction).filter(
        Transaction.user_id == user_id,
        Transaction.is_recurring.is_(True),
        Transaction.type == "EXPENSE",
        Transaction.next_recurring_date.isnot(None),
        Transaction.next_recurring_date <= horizon,
    ).all()
    for txn in recurring:
        obligations.append(Obligation(
            name=txn.description or txn.category,
            amount=to_decimal(txn.amount),
            due_date=to_datetime(txn.next_recurring_date),
            transaction_id=txn.transaction_id,
        ))

    bills = session.query(Bill).filter(
        Bill.user_id == user_id,
        Bill.is_active.is_(True),
        Bill.is_paid.is_(False),
        Bill.next_due_date.isnot(None),
        Bill.next_due_date <= horizon,
    ).all()
    for bill in bills:
        obligations.append(Obligation(
            name=bill.name,
            amount=to_decimal(bill.amount),
            due_date=to_datetime(bill.next_due_date),
            bill_id=bill.bill_id,
        ))

    return sorted(obligations, key=lambda o: o.due_date)


def _goal_save(state: FinancialState, now: datetime) -> List[NudgeCandidate]:
    if not state.goals:
        return []
    goal = state.goals[0]
    remaining = to_decimal(goal.target_amount) - to_decimal(goal.saved_amount)
    if remaining <= ZERO or state.budget_remaining <= GOAL_MIN_BUDGET_REMAINING:
        return []
    amount = clamp(round_whole(remaining * GOAL_SAVE_RATE), GOAL_SAVE_MIN, GOAL_SAVE_MAX)
    target = goal.target_date.date().isoformat() if goal.target_date else "target date"
    return [NudgeCandidate(
        type=NudgeType.AUTO_SAVE.value,
        amount=amount,
        message=f"Goal: Save {format_amount(amount)} for {goal.name} now?",
        reason=f"Progress toward {goal.name}. Saving consistently will reach target by {target}",
        priority=4,
        expires_at=now + timedelta(hours=24),
        metadata={'goal_id': goal.goal_id, 'goal_name': goal.name},
    )]


def _surplus_save(state: FinancialState, now: datetime) -> List[NudgeCandidate]:
    if state.total_balance <= SURPLUS_BALANCE or state.budget_remaining <= SURPLUS_BUDGET_REMAINING:
        return []
    amount = quantize(min(SURPLUS_SAVE_MAX, state.budget_remaining * SURPLUS_SAVE_RATE))
    return [NudgeCandidate(
        type=NudgeType.AUTO_SAVE.value,
        amount=amount,
        message=f"You have {format_amount(state.budget_remaining)} left in your budget. Save {format_amount(amount)} now?",
        reason="You're ahead of your budget and have extra funds. Saving now helps build your emergency fund.",
        priority=3,
        expires_at=now + timedelta(hours=24),
    )]


def _micro_save(state: FinancialState, risk_level: str, forecast, payday_eta: Optional[int], now: datetime) -> List[NudgeCandidate]:
    if risk_level not in ("Caution", "Danger"):
        return []
    safe = calculate_safe_to_save(state.total_balance, state.budget_usage_percent)
    amount = clamp(safe, MICRO_SAVE_MIN, MICRO_SAVE_MAX)
    eta = f" (payday in {payday_eta} days)" if payday_eta else ""
    inflow = " Next inflow is expected soon, so this buffer keeps you safe." if payday_eta else ""
    income_rhythm = state.profile.income_rhythm if state.profile else None
    return [NudgeCandidate(
        type=NudgeType.MICRO_SAVE.value,
        amount=amount,
        message=f"Risk level: {risk_level}. Save {format_amount(amount)} to buffer today{eta}?",
        reason=f"Your 7-day forecast shows {risk_level.lower()} risk. Small saves build security.{inflow}",
        priority=6,
        expires_at=now + timedelta(hours=24),
        metadata={'risk_level': risk_level, 'forecast': forecast.to_dict(), 'income_rhythm': income_rhythm},
    )]


def _bill_nudges(obligations: List[Obligation], now: datetime) -> List[NudgeCandidate]:
    if not obligations:
        return []
    nxt = obligations[0]
    days_until = math.ceil(days_between(now, nxt.due_date))
    when = f"is due in {days_until} days" if days_until > 0 else "is due today"
    expires_at = nxt.due_date if nxt.due_date > now else now + timedelta(hours=24)
    return [
        NudgeCandidate(
            type=NudgeType.BILL_PAY.value,
            amount=nxt.amount,
            message=f"{nxt.name} ({format_amount(nxt.amount)}) {when}. Auto-pay now?",
            reason="Paying bills early avoids late fees and keeps your credit score healthy.",
            priority=5,
            expires_at=expires_at,
            metadata=nxt.reference(),
        ),
        NudgeCandidate(
            type=NudgeType.BILL_GUARD.value,
            amount=nxt.amount,
            message=f"Freeze {format_amount(nxt.amount)} for {nxt.name}?",
            reason="Bill guard will ring-fence this amount so it cannot be overspent before due date.",
            priority=6,
            expires_at=expires_at,
            metadata=nxt.reference(),
        ),
    ]


def _guardian(emi_risk, now: datetime) -> List[NudgeCandidate]:
    if not emi_risk.at_risk:
        return []
    return [NudgeCandidate(
        type=NudgeType.GUARDIAN_ALERT.value,
        amount=emi_risk.shortfall,
        message=(
            f"Upcoming EMIs ({format_amount(emi_risk.total_emi)}) in 7 days. "
            f"Short by {format_amount(emi_risk.shortfall)}. Act now?"
        ),
        reason=f"Your forecast shows shortfall for {emi_risk.upcoming_emis} EMIs. {' or '.join(COPING_WAYS)}.",
        priority=8,
        expires_at=now + timedelta(days=7),
        metadata={'emi_risk': emi_risk.to_dict(), 'ways': list(COPING_WAYS)},
    )]


def _spending_alerts(state: FinancialState, now: datetime) -> List[NudgeCandidate]:
    month_start = start_of_month(now)
    by_category: Dict[str, Decimal] = {}
    for txn in state.transactions:
        if txn.type != "EXPENSE" or txn.category in NON_DISCRETIONARY_CATEGORIES:
            continue
        if to_datetime(txn.date) < month_start:
            continue
        by_category[txn.category] = by_category.get(txn.category, ZERO) + to_decimal(txn.amount)

    category_budget = (
        to_decimal(state.budget.amount) * CATEGORY_BUDGET_SHARE if state.budget else DEFAULT_CATEGORY_BUDGET
    )
    if category_budget <= ZERO:
        return []

    alerts = []
    for category, spent in by_category.items():
        if category_budget * CATEGORY_ALERT_LOW <= spent <= category_budget * CATEGORY_ALERT_HIGH:
            share = round_whole(spent / category_budget * 100)
            alerts.append(NudgeCandidate(
                type=NudgeType.SPENDING_ALERT.value,
                amount=quantize(spent),
                message=f"You've spent {format_amount(spent)} on {category} ({share}% of typical budget)",
                reason=f"You're approaching your usual {category} spending limit. Consider reducing expenses in this category.",
                priority=2,
                expires_at=now + timedelta(hours=48),
                metadata={'category': category},
            ))
    return alerts


def _emergency(state: FinancialState, now: datetime) -> List[NudgeCandidate]:
    balance = state.total_balance
    if not (ZERO < balance < EMERGENCY_THRESHOLD):
        return []
    return [NudgeCandidate(
        type=NudgeType.EMERGENCY_BUFFER.value,
        amount=quantize(EMERGENCY_THRESHOLD - balance),
        message=f"Your balance is {format_amount(balance)}, below the emergency threshold. Reduce spending?",
        reason=f"Maintaining at least {format_amount(EMERGENCY_THRESHOLD)} helps you handle unexpected expenses.",
        priority=10,
        expires_at=now + timedelta(hours=12),
    )]


def _income_opportunity(state: FinancialState, now: datetime) -> List[NudgeCandidate]:
    incomes = [t for t in state.transactions if t.type == "INCOME"]
    month_incomes = [to_decimal(t.amount) for t in incomes if 0 <= days_between(t.date, now) <= 30]
    if not month_incomes:
        return []
    average = sum(month_incomes, ZERO) / len(month_incomes)
    this_week = sum(
        (to_decimal(t.amount) for t in incomes if 0 <= days_between(t.date, now) <= 7), ZERO
    )
    if average <= ZERO or this_week >= average * INCOME_DIP_RATIO:
        return []

    deficit = average - this_week
    rhythm = state.profile.income_rhythm if state.profile else None
    payday_label = None
    if rhythm and rhythm.get('payday'):
        payday_label = rhythm['payday'] + (f" {rhythm['hour_slot']}" if rhythm.get('hour_slot') else "")
    cadence = rhythm.get('cadence') if rhythm else None
    below = round_whole(deficit / average * 100)

    return [NudgeCandidate(
        type=NudgeType.INCOME_OPPORTUNITY.value,
        amount=quantize(deficit),
        message=(
            f"Your income this week ({format_amount(this_week)}) is {below}% below average"
            + (f". Payday usually hits {payday_label}" if payday_label else "") + "."
        ),
        reason=(
            "Consider picking up extra gigs or work to maintain your usual income level."
            + (f" Typical cadence: {cadence}." if cadence else "")
        ),
        priority=4,
        expires_at=now + timedelta(hours=72),
        metadata={'income_rhythm': rhythm},
    )]


def summarize(nudges: List[NudgeCandidate], now: datetime) -> List[NudgeCandidate]:
    """Collapse the first three nudges into one SUMMARY nudge carrying their highest priority."""
    if not nudges:
        return nudges
    head, tail = nudges[:SUMMARY_SIZE], nudges[SUMMARY_SIZE:]
    summary = NudgeCandidate(
        type=NudgeType.SUMMARY.value,
        message="Daily Summary: " + "; ".join(n.message for n in head),
        reason="Based on your preferences, here's a consolidated view.",
        priority=max(n.priority for n in head),
        expires_at=now + timedelta(hours=24),
        metadata={'original_nudges': [n.to_dict() for n in head]},
    )
    return [summary] + tail


def build_nudges(
    state: FinancialState,
    obligations: List[Obligation],
    settings: Dict,
    now: datetime
) -> List[NudgeCandidate]:
    """
    Evaluate every rule against a loaded state and apply the user's settings.

    Args:
        state: Loaded financial state
        obligations: Upcoming bills and recurring expenses, earliest first
        settings: max_nudges_per_day, prefer_summaries, priority_threshold
        now: Reference time

    Returns:
        Nudges sorted by priority, highest first
    """
    forecast = get_7_day_forecast(state.transactions, state.total_balance, now=now)
    assessment = assess_forecast(forecast, state.total_balance)
    total_emi = sum((o.amount for o in obligations), ZERO)
    emi_risk = evaluate_emi_risk(total_emi, forecast.min_predicted(), len(obligations))

    income_rhythm = state.profile.income_rhythm if state.profile else None
    payday_eta = days_until_weekday(income_rhythm.get('payday') if income_rhythm else None, now)

    nudges: List[NudgeCandidate] = []
    nudges += _goal_save(state, now)
    nudges += _surplus_save(state, now)
    nudges += _micro_save(state, assessment.level, forecast, payday_eta, now)
    nudges += _bill_nudges(obligations, now)
    nudges += _guardian(emi_risk, now)
    nudges += _spending_alerts(state, now)
    nudges += _emergency(state, now)
    nudges += _income_opportunity(state, now)

    if settings.get('prefer_summaries'):
        nudges = summarize(nudges, now)

    threshold = settings.get('priority_threshold', 0)
    survivors = [n for n in nudges if n.priority >= threshold]
    survivors.sort(key=lambda n: n.priority, reverse=True)
    survivors = survivors[:settings.get('max_nudges_per_day', len(survivors))]

    risk_context = {
        'risk_level': assessment.level,
        'risk_score': assessment.score,
        'trend': forecast.trend,
        'income_rhythm': income_rhythm,
    }
    for nudge in survivors:
        nudge.metadata = {**nudge.metadata, 'risk_context': risk_context}
    return survivors


def generate_nudges(
    user_id: str,
    session: Session,
    now: datetime = None,
    settings: Optional[Dict] = None
) -> List[NudgeCandidate]:
    """
    Generate candidate nudges for a user.

    Args:
        user_id: User ID
        session: Database session
        now: Reference time (defaults to utcnow)
        settings: Override for the behavior-derived generator settings

    Returns:
        Candidate nudges, highest priority first

    Raises:
        NotFoundError: If user not found
    """
    if now is None:
        now = utcnow()
    state = load_financial_state(user_id, session, now=now)
    if settings is None:
        settings = get_personalized_nudge_settings(user_id, session, now=now)
    obligations = upcoming_obligations(user_id, session, now)

    nudges = build_nudges(state, obligations, settings, now)
    logger.info("Generated %d nudges for %s", len(nudges), user_id)
    return nudges
