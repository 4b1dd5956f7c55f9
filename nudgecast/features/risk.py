"""
Risk Scorer

Turns a predicted-balance series into a 0-100 risk score and a
Safe/Caution/Danger meter, and records point-in-time risk snapshots.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Optional, Sequence

from sqlalchemy.orm import Session

from nudgecast.features.forecast import Forecast, check_emi_at_risk, get_7_day_forecast
from nudgecast.features.signals import load_total_balance, load_transactions
from nudgecast.features.window_utils import utcnow
from nudgecast.ingest.schema import Bill, RiskSnapshot
from nudgecast.money import ZERO, round_whole, to_decimal

logger = logging.getLogger(__name__)

LOW_BALANCE_TIERS = [
    (Decimal("500"), 40),
    (Decimal("1000"), 25),
    (Decimal("2000"), 10),
]
VOLATILITY_TIERS = [
    (Decimal("50"), 30),
    (Decimal("30"), 15),
]
MAX_DECLINE_POINTS = Decimal("30")

SAFE_MAX = 30
CAUTION_MAX = 70

THIN_BUFFER_SCORE = 70
LOW_BALANCE_DRIVER = Decimal("2000")


@dataclass
class RiskAssessment:
    """Risk score plus the meter label it maps to."""
    score: int
    level: str

    def to_dict(self) -> Dict:
        return {'risk_score': self.score, 'risk_level': self.level}


def calculate_risk_score(predicted_balances: Sequence, current_balance) -> int:
    """
    Score a predicted-balance series from 0 (safe) to 100 (risky).

    The score adds the first low-balance tier the minimum falls under
    (<500: 40, <1000: 25, <2000: 10), a volatility tier for the spread
    between the highest and lowest prediction as a percentage of the
    current balance (>50%: 30, >30%: 15), and the percentage decline
    from the current balance to the final prediction, capped at 30.

    Args:
        predicted_balances: Projected balances in day order
        current_balance: Balance the projection starts from

    Returns:
        Integer risk score clamped to [0, 100]
    """
    if not predicted_balances:
        return 0

    balances = [to_decimal(value) for value in predicted_balances]
    current = to_decimal(current_balance)
    min_predicted = min(balances)
    score = Decimal(0)

    for threshold, points in LOW_BALANCE_TIERS:
        if min_predicted < threshold:
            score += points
            break

    if current > ZERO:
        volatility = (max(balances) - min_predicted) / current * 100
        for threshold, points in VOLATILITY_TIERS:
            if volatility > threshold:
                score += points
                break

        decline = (current - balances[-1]) / current * 100
        if decline > ZERO:
            score += min(decline, MAX_DECLINE_POINTS)

    return int(round_whole(min(Decimal(100), max(Decimal(0), score))))


def map_risk_to_meter(score: int) -> str:
    """Map a risk score to Safe (<=30), Caution (<=70) or Danger."""
    if score <= SAFE_MAX:
        return "Safe"
    if score <= CAUTION_MAX:
        return "Caution"
    return "Danger"


def assess_forecast(forecast: Forecast, current_balance) -> RiskAssessment:
    score = calculate_risk_score(forecast.predicted_balances, current_balance)
    return RiskAssessment(score=score, level=map_risk_to_meter(score))


def _risk_drivers(forecast: Forecast, assessment: RiskAssessment, emi_risk, bills_due: int, balance: Decimal) -> List[str]:
    drivers = []
    if forecast.trend == "declining":
        drivers.append("Spending trend is declining this week")
    if assessment.score >= THIN_BUFFER_SCORE:
        drivers.append("Projected buffer is thin for the next 7 days")
    if emi_risk.at_risk:
        drivers.append(f"EMIs at risk with a shortfall of {emi_risk.shortfall}")
    if bills_due:
        drivers.append(f"{bills_due} bill(s) due within 7 days")
    if balance < LOW_BALANCE_DRIVER:
        drivers.append("Balance below 2000")
    return drivers


def generate_risk_snapshot(
    user_id: str,
    session: Session,
    transactions: Optional[Sequence] = None,
    current_balance=None,
    now: datetime = None
) -> RiskSnapshot:
    """
    Compute the 7-day risk for a user and append a RiskSnapshot.

    Args:
        user_id: User ID
        session: Database session
        transactions: Preloaded history (loaded from the session if None)
        current_balance: Preloaded total balance (loaded if None)
        now: Reference time

    Returns:
        The persisted RiskSnapshot (flushed, not committed)
    """
    if now is None:
        now = utcnow()
    if transactions is None:
        transactions = load_transactions(user_id, session)
    if current_balance is None:
        current_balance = load_total_balance(user_id, session)
    balance = to_decimal(current_balance)

    forecast = get_7_day_forecast(transactions, balance, now=now)
    assessment = assess_forecast(forecast, balance)
    emi_risk = check_emi_at_risk(transactions, balance, days=7, now=now)
    bills_due = session.query(Bill).filter(
        Bill.user_id == user_id,
        Bill.is_active.is_(True),
        Bill.is_paid.is_(False),
        Bill.next_due_date.isnot(None),
        Bill.next_due_date <= now + timedelta(days=7),
    ).count()

    snapshot = RiskSnapshot(
        user_id=user_id,
        risk_level=assessment.level,
        risk_score=assessment.score,
        drivers=_risk_drivers(forecast, assessment, emi_risk, bills_due, balance),
        forecast=forecast.to_dict(),
        horizon_days=7,
        created_at=now,
    )
    session.add(snapshot)
    session.flush()

    logger.info("Risk snapshot for %s: %s (%s)", user_id, assessment.level, assessment.score)
    return snapshot


def get_latest_risk_snapshot(user_id: str, session: Session) -> Optional[RiskSnapshot]:
    return session.query(RiskSnapshot).filter(
        RiskSnapshot.user_id == user_id
    ).order_by(RiskSnapshot.created_at.desc()).first()
