"""
Forecast cache keyed by user and horizon.

Entries live in the risk_snapshots table: each computed forecast is
stored next to its risk score, so every API worker and agent process
reads the same cached value. An entry is fresh while it is younger than
the configured TTL.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional, Tuple

from sqlalchemy.orm import Session

from nudgecast.config import get_settings
from nudgecast.features.forecast import Forecast, predict_cash_flow
from nudgecast.features.risk import RiskAssessment, assess_forecast
from nudgecast.features.signals import load_total_balance, load_transactions
from nudgecast.features.window_utils import utcnow
from nudgecast.ingest.schema import RiskSnapshot

logger = logging.getLogger(__name__)

FORECAST_HISTORY_LIMIT = 100


class ForecastCache:
    """Datastore-backed TTL cache for per-user forecasts."""

    def __init__(self, session: Session, ttl_hours: Optional[int] = None):
        self.session = session
        if ttl_hours is None:
            ttl_hours = get_settings().forecast_ttl_hours
        self.ttl = timedelta(hours=ttl_hours)

    def _fresh_entry(self, user_id: str, days: int, now: datetime) -> Optional[RiskSnapshot]:
        return self.session.query(RiskSnapshot).filter(
            RiskSnapshot.user_id == user_id,
            RiskSnapshot.horizon_days == days,
            RiskSnapshot.forecast.isnot(None),
            RiskSnapshot.created_at > now - self.ttl,
        ).order_by(RiskSnapshot.created_at.desc()).first()

    def get(self, user_id: str, days: int = 30, now: datetime = None) -> Optional[Tuple[Forecast, RiskAssessment]]:
        if now is None:
            now = utcnow()
        entry = self._fresh_entry(user_id, days, now)
        if entry is None:
            return None
        return Forecast.from_dict(entry.forecast), RiskAssessment(score=entry.risk_score, level=entry.risk_level)

    def put(self, user_id: str, days: int, forecast: Forecast, assessment: RiskAssessment, now: datetime = None) -> RiskSnapshot:
        entry = RiskSnapshot(
            user_id=user_id,
            risk_level=assessment.level,
            risk_score=assessment.score,
            drivers=[],
            forecast=forecast.to_dict(),
            horizon_days=days,
            created_at=now or utcnow(),
        )
        self.session.add(entry)
        self.session.flush()
        return entry

    def get_or_compute(self, user_id: str, days: int = 30, now: datetime = None) -> Tuple[Forecast, RiskAssessment]:
        """
        Return a fresh cached forecast or compute and store a new one.

        Args:
            user_id: User ID
            days: Forecast horizon
            now: Reference time

        Returns:
            Tuple of (forecast, risk assessment)
        """
        if now is None:
            now = utcnow()
        cached = self.get(user_id, days, now)
        if cached is not None:
            logger.debug("Forecast cache hit for %s (%sd)", user_id, days)
            return cached

        transactions = load_transactions(user_id, self.session, limit=FORECAST_HISTORY_LIMIT)
        balance = load_total_balance(user_id, self.session)
        forecast = predict_cash_flow(transactions, balance, days=days, now=now)
        assessment = assess_forecast(forecast, balance)
        self.put(user_id, days, forecast, assessment, now)
        return forecast, assessment

    def invalidate(self, user_id: str) -> int:
        """Drop cached forecasts for a user. The snapshot rows stay as audit records."""
        count = self.session.query(RiskSnapshot).filter(
            RiskSnapshot.user_id == user_id,
            RiskSnapshot.forecast.isnot(None),
        ).update({RiskSnapshot.forecast: None}, synchronize_session=False)
        self.session.flush()
        return count
