"""
Income and Spend Rhythm Analysis

Finds when money arrives and when it goes: payday weekday and cadence,
hour-of-day slots, weekend and late-night spend shares, heavy weekdays
and top categories. The result is a derived cache on FinancialProfile
and can be recomputed from transactions at any time.
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from sqlalchemy.orm import Session

from nudgecast.features.signals import get_or_create_profile, load_transactions
from nudgecast.features.window_utils import WEEKDAYS, days_between, to_datetime, utcnow
from nudgecast.money import ZERO, to_decimal

logger = logging.getLogger(__name__)

LOOKBACK_DAYS = 120
PROFILE_HISTORY_LIMIT = 400
HIGH_RISK_DAY_FACTOR = 1.2
TOP_CATEGORY_COUNT = 3
WEEKEND = {"Saturday", "Sunday"}

# (label, start hour inclusive, end hour exclusive)
HOUR_BUCKETS = [
    ("dawn", 0, 6),
    ("morning", 6, 12),
    ("afternoon", 12, 17),
    ("evening", 17, 21),
    ("late-night", 21, 24),
]

REPRESENTATIVE_HOURS = {
    "dawn": 6,
    "morning": 9,
    "afternoon": 14,
    "evening": 19,
    "late-night": 22,
}
DEFAULT_HOUR = 10


def bucket_hour(hour: int) -> str:
    for label, start, end in HOUR_BUCKETS:
        if start <= hour < end:
            return label
    return "unknown"


def representative_hour(slot: Optional[str]) -> int:
    """Hour used to schedule nudges for a slot."""
    return REPRESENTATIVE_HOURS.get(slot, DEFAULT_HOUR)


def detect_cadence(income_dates: Sequence[datetime]) -> str:
    """Classify average days between income events as weekly, bi-weekly, monthly or irregular."""
    if len(income_dates) < 2:
        return "irregular"
    ordered = sorted(income_dates)
    gaps = [days_between(ordered[i - 1], ordered[i]) for i in range(1, len(ordered))]
    average = sum(gaps) / len(gaps)
    if average <= 8:
        return "weekly"
    if average <= 16:
        return "bi-weekly"
    if average <= 40:
        return "monthly"
    return "irregular"


def percentage(part, total) -> float:
    """Share as a percentage rounded to one decimal, 0 when total is 0."""
    if not total:
        return 0.0
    return round(float(to_decimal(part) / to_decimal(total) * 100), 1)


def _top(totals: Dict[str, object]):
    """Key with the largest value; earliest inserted wins ties."""
    if not totals:
        return None
    return max(totals.items(), key=lambda item: item[1])[0]


def _add(totals: Dict, key: str, amount) -> None:
    totals[key] = totals.get(key, ZERO) + amount


def analyze_rhythm(transactions: Sequence, now: datetime = None) -> Optional[Dict]:
    """
    Derive income and spend rhythm from the last 120 days of transactions.

    Transactions are processed in date order so the result depends only on
    the set of transactions, not the order they are passed in.

    Args:
        transactions: Transaction history
        now: Reference time (defaults to utcnow)

    Returns:
        Dict with income_rhythm (or None), spend_rhythm and optimal_hour,
        or None if there is nothing in the lookback window
    """
    if now is None:
        now = utcnow()

    recent = [t for t in transactions if days_between(t.date, now) <= LOOKBACK_DAYS]
    if not recent:
        return None
    recent.sort(key=lambda t: (to_datetime(t.date), str(t.transaction_id or "")))

    incomes = [t for t in recent if t.type == "INCOME"]
    expenses = [t for t in recent if t.type == "EXPENSE"]

    income_by_weekday: Dict[str, object] = {}
    income_by_bucket: Dict[str, object] = {}
    income_dates = []
    for txn in incomes:
        moment = to_datetime(txn.date)
        amount = to_decimal(txn.amount)
        _add(income_by_weekday, WEEKDAYS[moment.weekday()], amount)
        _add(income_by_bucket, bucket_hour(moment.hour), amount)
        income_dates.append(moment)

    total_income = sum((to_decimal(t.amount) for t in incomes), ZERO)
    payday = _top(income_by_weekday)
    income_rhythm = None
    if payday:
        income_rhythm = {
            'payday': payday,
            'reliability': percentage(income_by_weekday[payday], total_income),
            'hour_slot': _top(income_by_bucket),
            'cadence': detect_cadence(income_dates),
            'lookback_days': LOOKBACK_DAYS,
        }

    spend_by_weekday: Dict[str, object] = {}
    spend_by_bucket: Dict[str, object] = {}
    spend_by_category: Dict[str, object] = {}
    weekend_spend = ZERO
    late_night_spend = ZERO
    for txn in expenses:
        moment = to_datetime(txn.date)
        amount = to_decimal(txn.amount)
        weekday = WEEKDAYS[moment.weekday()]
        bucket = bucket_hour(moment.hour)
        _add(spend_by_weekday, weekday, amount)
        _add(spend_by_bucket, bucket, amount)
        _add(spend_by_category, txn.category or "uncategorized", amount)
        if weekday in WEEKEND:
            weekend_spend += amount
        if bucket == "late-night":
            late_night_spend += amount

    total_spend = sum((to_decimal(t.amount) for t in expenses), ZERO)
    average_spend = total_spend / (len(spend_by_weekday) or 1)
    high_risk_days = [
        {'weekday': weekday, 'overspend': percentage(amount - average_spend, average_spend)}
        for weekday, amount in spend_by_weekday.items()
        if amount > average_spend * to_decimal(HIGH_RISK_DAY_FACTOR)
    ]
    top_categories = [
        {'category': category, 'share': percentage(amount, total_spend)}
        for category, amount in sorted(spend_by_category.items(), key=lambda item: item[1], reverse=True)[:TOP_CATEGORY_COUNT]
    ]

    spend_rhythm = {
        'weekend_share': percentage(weekend_spend, total_spend),
        'late_night_share': percentage(late_night_spend, total_spend),
        'high_risk_days': high_risk_days,
        'top_categories': top_categories,
        'peak_hour_slot': _top(spend_by_bucket),
    }

    optimal_hour = None
    if income_rhythm and income_rhythm['hour_slot']:
        optimal_hour = representative_hour(income_rhythm['hour_slot'])

    return {
        'income_rhythm': income_rhythm,
        'spend_rhythm': spend_rhythm,
        'optimal_hour': optimal_hour,
    }


def update_rhythm_profile(user_id: str, session: Session, now: datetime = None) -> Optional[Dict]:
    """
    Recompute rhythm from the latest 400 transactions and store it on the profile.

    Args:
        user_id: User ID
        session: Database session
        now: Reference time

    Returns:
        The rhythm dict, or None if there was no recent history
    """
    if now is None:
        now = utcnow()
    transactions = load_transactions(user_id, session, limit=PROFILE_HISTORY_LIMIT)
    rhythm = analyze_rhythm(transactions, now=now)
    if rhythm is None:
        return None

    profile = get_or_create_profile(user_id, session)
    profile.income_rhythm = rhythm['income_rhythm']
    profile.spend_rhythm = rhythm['spend_rhythm']
    if rhythm['optimal_hour'] is not None:
        profile.optimal_nudge_hour = rhythm['optimal_hour']
    profile.last_personalization_update = now
    session.flush()

    logger.debug("Rhythm profile updated for %s", user_id)
    return rhythm
