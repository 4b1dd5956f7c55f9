"""
Cash-Flow Forecast Model

Projects a user's balance forward one day at a time from transaction
history. Daily income and expense rates come from a 60-day trailing
window, a weekly trend is read from the last 30 days, and expenses are
scaled by a day-of-month seasonal factor near the start and end of a
month. The result is a heuristic whose scale the risk scorer and the
nudge rules compare against directly.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Optional, Sequence

from nudgecast.money import ZERO, floor_whole, quantize, to_decimal, to_float
from nudgecast.features.window_utils import days_between, to_datetime, utcnow

logger = logging.getLogger(__name__)

RATE_WINDOW_DAYS = 60
TREND_WINDOW_DAYS = 30
TREND_BUCKETS = 4
TREND_THRESHOLD = Decimal("50")
CONFIDENCE_SAMPLE_SIZE = 50
CONFIDENCE_FLOOR = 20
CONFIDENCE_CEILING = 95
VARIANCE_FACTOR = Decimal("0.3")
BAND_GROWTH = Decimal("0.1")

EMI_BUFFER = Decimal("1000")
SAFE_TO_SAVE_MIN_BALANCE = Decimal("1000")
SAFE_TO_SAVE_RESERVE = Decimal("2000")
SAFE_TO_SAVE_RATE = Decimal("0.05")
SAFE_TO_SAVE_CAP = Decimal("500")
SAFE_TO_SAVE_MAX_BUDGET_USAGE = Decimal("70")


@dataclass
class ForecastPoint:
    """One projected day."""
    date: datetime
    day_offset: int
    predicted: Decimal
    upper_bound: Decimal
    lower_bound: Decimal
    confidence: int

    def to_dict(self) -> Dict:
        return {
            'date': self.date.isoformat(),
            'day_offset': self.day_offset,
            'predicted': to_float(self.predicted),
            'upper_bound': to_float(self.upper_bound),
            'lower_bound': to_float(self.lower_bound),
            'confidence': self.confidence,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "ForecastPoint":
        return cls(
            date=to_datetime(data['date']),
            day_offset=data['day_offset'],
            predicted=quantize(data['predicted']),
            upper_bound=quantize(data['upper_bound']),
            lower_bound=quantize(data['lower_bound']),
            confidence=data['confidence'],
        )


@dataclass
class Forecast:
    """Balance projection with trend and confidence."""
    predictions: List[ForecastPoint]
    trend: str  # improving, declining, stable
    trend_rate: Decimal
    confidence: int
    daily_income: Decimal
    daily_expense: Decimal
    generated_at: datetime = field(default_factory=utcnow)

    @property
    def daily_net(self) -> Decimal:
        return self.daily_income - self.daily_expense

    @property
    def predicted_balances(self) -> List[Decimal]:
        return [point.predicted for point in self.predictions]

    def min_predicted(self, days: Optional[int] = None) -> Decimal:
        """Lowest projected balance, optionally within the first ``days`` offsets."""
        points = self.predictions if days is None else [p for p in self.predictions if p.day_offset <= days]
        return min(p.predicted for p in points)

    def ending_balance(self) -> Decimal:
        return self.predictions[-1].predicted

    def to_dict(self) -> Dict:
        return {
            'predictions': [p.to_dict() for p in self.predictions],
            'trend': self.trend,
            'trend_rate': to_float(self.trend_rate),
            'confidence': self.confidence,
            'metadata': {
                'daily_income': to_float(self.daily_income),
                'daily_expense': to_float(self.daily_expense),
                'daily_net': to_float(self.daily_net),
            },
            'generated_at': self.generated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "Forecast":
        metadata = data.get('metadata', {})
        return cls(
            predictions=[ForecastPoint.from_dict(p) for p in data['predictions']],
            trend=data['trend'],
            trend_rate=to_decimal(data['trend_rate']),
            confidence=data['confidence'],
            daily_income=to_decimal(metadata.get('daily_income', 0)),
            daily_expense=to_decimal(metadata.get('daily_expense', 0)),
            generated_at=to_datetime(data['generated_at']) if data.get('generated_at') else utcnow(),
        )


@dataclass
class EmiRisk:
    """Result of the 7-day EMI coverage check."""
    at_risk: bool
    total_emi: Decimal
    min_predicted: Decimal
    shortfall: Decimal
    upcoming_emis: int = 0

    def to_dict(self) -> Dict:
        return {
            'at_risk': self.at_risk,
            'total_emi': to_float(self.total_emi),
            'min_predicted': to_float(self.min_predicted),
            'shortfall': to_float(self.shortfall),
            'upcoming_emis': self.upcoming_emis,
        }


def _amount(txn) -> Decimal:
    return to_decimal(txn.amount)


def _signed_amount(txn) -> Decimal:
    return _amount(txn) if txn.type == "INCOME" else -_amount(txn)


def calculate_daily_rates(transactions: Sequence, now: datetime) -> tuple:
    """
    Average daily income and expense over the trailing 60 days.

    Missing days count as zero, so this is total / 60 rather than a
    per-active-day rate.
    """
    income = ZERO
    expense = ZERO
    for txn in transactions:
        age = days_between(txn.date, now)
        if age < 0 or age > RATE_WINDOW_DAYS:
            continue
        if txn.type == "INCOME":
            income += _amount(txn)
        elif txn.type == "EXPENSE":
            expense += _amount(txn)
    return income / RATE_WINDOW_DAYS, expense / RATE_WINDOW_DAYS


def detect_trend(transactions: Sequence, now: datetime) -> tuple:
    """
    Weekly trend from four 7-day buckets over the last 30 days.

    Each bucket's value is the mean signed amount of its transactions;
    bucket 0 is the most recent week. Returns (trend, rate per week).
    """
    buckets: List[List[Decimal]] = [[] for _ in range(TREND_BUCKETS)]
    for txn in transactions:
        age = days_between(txn.date, now)
        if age < 0 or age > TREND_WINDOW_DAYS:
            continue
        index = int(age // 7)
        if index < TREND_BUCKETS:
            buckets[index].append(_signed_amount(txn))

    means = [sum(bucket, ZERO) / len(bucket) if bucket else ZERO for bucket in buckets]
    rate = (means[0] - means[TREND_BUCKETS - 1]) / TREND_BUCKETS

    if rate > TREND_THRESHOLD:
        trend = "improving"
    elif rate < -TREND_THRESHOLD:
        trend = "declining"
    else:
        trend = "stable"
    return trend, rate


def detect_seasonality(transactions: Sequence) -> Dict[str, Optional[Decimal]]:
    """Average expense amount for the start (1-10), mid (11-20) and end (21+) of month."""
    totals = {'start': [], 'mid': [], 'end': []}
    for txn in transactions:
        if txn.type != "EXPENSE":
            continue
        day = to_datetime(txn.date).day
        if day <= 10:
            totals['start'].append(_amount(txn))
        elif day <= 20:
            totals['mid'].append(_amount(txn))
        else:
            totals['end'].append(_amount(txn))
    return {
        bucket: (sum(values, ZERO) / len(values) if values else None)
        for bucket, values in totals.items()
    }


def seasonal_multiplier(day_of_month: int, seasonal: Dict[str, Optional[Decimal]], daily_expense: Decimal) -> Decimal:
    """Expense multiplier for a calendar day; 1 mid-month or when there is no expense rate."""
    if daily_expense == ZERO:
        return Decimal(1)
    if day_of_month <= 10 and seasonal.get('start'):
        return seasonal['start'] / daily_expense
    if day_of_month > 20 and seasonal.get('end'):
        return seasonal['end'] / daily_expense
    return Decimal(1)


def calculate_confidence(transactions: Sequence, days: int, now: datetime) -> int:
    """Base confidence 0-100 from sample size, horizon and data age, clamped to [20, 95]."""
    data_points = len(transactions)
    confidence = min(data_points / CONFIDENCE_SAMPLE_SIZE, 1) * 100
    confidence *= max(0.0, 1 - days / RATE_WINDOW_DAYS)

    if transactions:
        oldest = min(to_datetime(txn.date) for txn in transactions)
        time_span = days_between(oldest, now)
        if time_span < 7:
            confidence *= 1.1
        elif time_span > 30:
            confidence *= 0.8

    return int(round(min(CONFIDENCE_CEILING, max(CONFIDENCE_FLOOR, confidence))))


def predict_cash_flow(
    transactions: Sequence,
    current_balance,
    days: int = 30,
    now: datetime = None
) -> Forecast:
    """
    Project the balance for ``days`` days ahead.

    Args:
        transactions: Transaction history, any order (most recent first is typical)
        current_balance: Total balance across the user's accounts
        days: Horizon; predictions cover offsets 0..days inclusive
        now: Reference time (defaults to utcnow)

    Returns:
        Forecast with one point per day offset
    """
    if now is None:
        now = utcnow()
    balance = to_decimal(current_balance)

    daily_income, daily_expense = calculate_daily_rates(transactions, now)
    trend, trend_rate = detect_trend(transactions, now)
    seasonal = detect_seasonality(transactions)
    confidence = calculate_confidence(transactions, days, now)

    trend_per_day = trend_rate / 7
    variance = abs(daily_income - daily_expense) * VARIANCE_FACTOR

    predictions = []
    running = balance
    for offset in range(days + 1):
        day = now + timedelta(days=offset)
        income = daily_income + trend_per_day * offset
        expense = daily_expense * seasonal_multiplier(day.day, seasonal, daily_expense)
        running += income - expense

        band = variance * offset * BAND_GROWTH
        step_confidence = confidence if days == 0 else int(round(confidence * (1 - offset / (days * 2))))

        predictions.append(ForecastPoint(
            date=day,
            day_offset=offset,
            predicted=quantize(running),
            upper_bound=quantize(running + band),
            lower_bound=quantize(running - band),
            confidence=step_confidence,
        ))

    return Forecast(
        predictions=predictions,
        trend=trend,
        trend_rate=quantize(trend_rate),
        confidence=confidence,
        daily_income=quantize(daily_income),
        daily_expense=quantize(daily_expense),
        generated_at=now,
    )


def get_7_day_forecast(transactions: Sequence, current_balance, now: datetime = None) -> Forecast:
    """Forecast trimmed to the first seven projected days."""
    forecast = predict_cash_flow(transactions, current_balance, days=7, now=now)
    forecast.predictions = forecast.predictions[:7]
    return forecast


def upcoming_recurring_expenses(transactions: Sequence, days: int, now: datetime) -> List:
    """Recurring EXPENSE transactions whose next run falls within ``days`` (overdue included)."""
    horizon = now + timedelta(days=days)
    upcoming = [
        txn for txn in transactions
        if txn.is_recurring and txn.type == "EXPENSE" and txn.next_recurring_date
        and to_datetime(txn.next_recurring_date) <= horizon
    ]
    return sorted(upcoming, key=lambda txn: to_datetime(txn.next_recurring_date))


def evaluate_emi_risk(total_emi, min_predicted, upcoming_emis: int = 0) -> EmiRisk:
    """At risk when the EMIs due exceed what the projected minimum leaves above the 1000 buffer."""
    total_emi = to_decimal(total_emi)
    min_predicted = to_decimal(min_predicted)
    headroom = min_predicted - EMI_BUFFER
    at_risk = total_emi > headroom
    return EmiRisk(
        at_risk=at_risk,
        total_emi=quantize(total_emi),
        min_predicted=quantize(min_predicted),
        shortfall=quantize(total_emi - headroom) if at_risk else ZERO,
        upcoming_emis=upcoming_emis,
    )


def check_emi_at_risk(transactions: Sequence, current_balance, days: int = 7, now: datetime = None) -> EmiRisk:
    """
    Check whether recurring expenses due soon fit inside the projected balance.

    Args:
        transactions: Transaction history
        current_balance: Total balance across accounts
        days: Look-ahead for both the forecast and the due dates
        now: Reference time

    Returns:
        EmiRisk with shortfall = max(0, EMIs - (min predicted - 1000))
    """
    if now is None:
        now = utcnow()
    forecast = predict_cash_flow(transactions, current_balance, days=days, now=now)
    upcoming = upcoming_recurring_expenses(transactions, days, now)
    total_emi = sum((_amount(txn) for txn in upcoming), ZERO)
    return evaluate_emi_risk(total_emi, forecast.min_predicted(days - 1), len(upcoming))


def calculate_safe_to_save(total_balance, budget_usage_percent=None) -> Decimal:
    """
    Whole-unit amount that can be moved to savings without strain.

    Zero below a 1000 balance or above 70% budget usage; otherwise 5% of
    the balance above a 2000 reserve, capped at 500.
    """
    balance = to_decimal(total_balance)
    if balance < SAFE_TO_SAVE_MIN_BALANCE:
        return ZERO
    if budget_usage_percent is not None and to_decimal(budget_usage_percent) > SAFE_TO_SAVE_MAX_BUDGET_USAGE:
        return ZERO
    excess = balance - SAFE_TO_SAVE_RESERVE
    if excess <= ZERO:
        return ZERO
    return floor_whole(min(excess * SAFE_TO_SAVE_RATE, SAFE_TO_SAVE_CAP))


def calculate_historical_balance(
    transactions: Sequence,
    current_balance,
    days: int = 30,
    now: datetime = None
) -> List[Dict]:
    """Reconstruct end-of-day balances for the past ``days`` days by unwinding transactions."""
    if now is None:
        now = utcnow()
    by_day: Dict[int, Decimal] = {}
    for txn in transactions:
        age = int(days_between(txn.date, now))
        if 0 <= age < days:
            by_day[age] = by_day.get(age, ZERO) + _signed_amount(txn)

    history = []
    balance = to_decimal(current_balance)
    for age in range(days):
        history.append({'date': (now - timedelta(days=age)).date().isoformat(), 'balance': to_float(balance)})
        balance -= by_day.get(age, ZERO)
    history.reverse()
    return history
