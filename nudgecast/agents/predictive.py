"""
Predictive Cash-Flow Agent

Daily job: forecasts 30 days ahead for every user with transactions,
publishes ``shortfall.forecasted`` when the outlook is critical, and
raises an emergency nudge plus an alert when the balance is projected
to go negative.
"""

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from nudgecast.agents.base import AgentRun, run_per_user
from nudgecast.agents.events import SHORTFALL_FORECASTED, EventBus, build_event_bus
from nudgecast.agents.notifications import LoggingNotifier, Notifier
from nudgecast.features.forecast import Forecast
from nudgecast.features.forecast_cache import ForecastCache
from nudgecast.features.risk import RiskAssessment
from nudgecast.features.window_utils import utcnow
from nudgecast.guardrails.tone import sanitize_text
from nudgecast.ingest.schema import Transaction, User
from nudgecast.money import ZERO, format_amount, round_whole, to_float
from nudgecast.nudges import lifecycle
from nudgecast.nudges.registry import NudgeType

logger = logging.getLogger(__name__)

AGENT = "predictive-cash-flow"
FORECAST_DAYS = 30
CRITICAL_BALANCE = Decimal("1000")
MAX_CRITICAL_DATES = 5
EMERGENCY_FLOOR = ZERO

RECOMMENDED_ACTIONS = {
    'critical': [
        "Pause non-essential spending until your next income",
        "Ring-fence money for bills due this month",
        "Look for a quick income top-up",
    ],
    'high': [
        "Cut discretionary spending this week",
        "Set aside money for upcoming bills",
    ],
    'medium': ["Keep an eye on discretionary spending"],
    'low': ["Cash flow looks steady, keep it up"],
}


def shortfall_risk_level(meter: str, min_predicted: Decimal) -> str:
    """Map the risk meter onto the four-level scale used in shortfall events."""
    if meter == "Danger":
        return "critical" if min_predicted < ZERO else "high"
    if meter == "Caution":
        return "medium"
    return "low"


def find_critical_dates(forecast: Forecast) -> List[Dict]:
    """Projected days below the critical balance, earliest first."""
    dates = []
    for point in forecast.predictions:
        if point.predicted >= CRITICAL_BALANCE:
            continue
        dates.append({
            'day': point.day_offset,
            'date': point.date.date().isoformat(),
            'predicted_balance': to_float(point.predicted),
            'reason': "overdraft" if point.predicted < ZERO else "balance below buffer",
        })
        if len(dates) == MAX_CRITICAL_DATES:
            break
    return dates


def summarize_forecast(forecast: Forecast, assessment: RiskAssessment) -> Dict:
    """
    Condense a forecast into the fields carried by ``shortfall.forecasted``.

    Args:
        forecast: 30-day forecast
        assessment: Risk score and meter level for the forecast

    Returns:
        Dict with risk_level, risk_score, predicted_balance, min_predicted,
        critical_dates, recommended_actions, summary and confidence
    """
    minimum = forecast.min_predicted()
    ending = forecast.ending_balance()
    level = shortfall_risk_level(assessment.level, minimum)
    critical_dates = find_critical_dates(forecast)

    summary = (
        f"Balance is projected at {format_amount(ending)} in {FORECAST_DAYS} days "
        f"with a {forecast.trend} trend."
    )
    if critical_dates:
        summary += f" It dips below {format_amount(CRITICAL_BALANCE)} from day {critical_dates[0]['day']}."

    return {
        'risk_level': level,
        'risk_score': assessment.score,
        'predicted_balance': to_float(ending),
        'min_predicted': to_float(minimum),
        'critical_dates': critical_dates,
        'recommended_actions': list(RECOMMENDED_ACTIONS[level]),
        'summary': summary,
        'confidence': forecast.confidence,
    }


def is_forecast_critical(summary: Dict) -> bool:
    return summary['risk_level'] in ("high", "critical") or bool(summary['critical_dates'])


def _create_emergency_nudge(user_id: str, session: Session, summary: Dict, minimum: Decimal, now: datetime):
    days = ", ".join(f"Day {d['day']}" for d in summary['critical_dates'])
    return lifecycle.create_nudge(
        user_id,
        session,
        nudge_type=NudgeType.EMERGENCY_BUFFER.value,
        message="Cash shortfall predicted. Pause non-essential spending?",
        reason=f"{summary['summary']} {' '.join(summary['recommended_actions'])} Critical dates: {days}.",
        expires_at=now + timedelta(hours=24),
        priority=10,
        amount=round_whole(CRITICAL_BALANCE - minimum),
        metadata={
            'automation': {'trigger': AGENT, 'mode': "auto"},
            'forecast': summary,
        },
        idempotency_key=f"predictive-emergency:{user_id}:{now.date().isoformat()}",
        auto_accept=False,
        now=now,
    )


def forecast_user(
    user_id: str,
    session: Session,
    bus: EventBus,
    notifier: Notifier,
    now: datetime
) -> Dict:
    """Forecast one user, publish the shortfall event and raise an emergency nudge when needed."""
    cache = ForecastCache(session)
    forecast, assessment = cache.get_or_compute(user_id, days=FORECAST_DAYS, now=now)
    summary = summarize_forecast(forecast, assessment)
    result = {'risk_level': summary['risk_level'], 'event_emitted': False, 'emergency_nudge': None}

    if is_forecast_critical(summary):
        payload = {'user_id': user_id, **summary, 'generated_at': now.isoformat()}
        result['handlers'] = bus.publish(SHORTFALL_FORECASTED, session, payload, now=now)
        result['event_emitted'] = True

    minimum = forecast.min_predicted()
    if minimum < EMERGENCY_FLOOR:
        nudge = _create_emergency_nudge(user_id, session, summary, minimum, now)
        if nudge is not None:
            result['emergency_nudge'] = nudge.nudge_id
            user = session.query(User).filter(User.user_id == user_id).first()
            notifier.send(
                user.email,
                "Financial Alert: Predicted Cash Flow Crisis",
                "predictive-alert",
                {
                    'user_name': user.name,
                    'risk_level': summary['risk_level'],
                    'summary': sanitize_text(summary['summary']),
                    'predicted_balance': summary['predicted_balance'],
                    'critical_dates': summary['critical_dates'][:3],
                    'recommended_actions': [sanitize_text(a) for a in summary['recommended_actions'][:3]],
                    'confidence': summary['confidence'],
                },
            )
        cache.invalidate(user_id)

    return result


def run_predictive_agent(
    session: Session,
    bus: Optional[EventBus] = None,
    notifier: Optional[Notifier] = None,
    now: datetime = None
) -> AgentRun:
    """
    Run the daily forecast for every user with at least one transaction.

    Args:
        session: Database session
        bus: Event bus for ``shortfall.forecasted`` (default subscribers if None)
        notifier: Alert sender (logs only if None)
        now: Reference time

    Returns:
        AgentRun summary
    """
    if now is None:
        now = utcnow()
    bus = bus or build_event_bus()
    notifier = notifier or LoggingNotifier()

    user_ids = [row[0] for row in session.query(Transaction.user_id).distinct().order_by(Transaction.user_id)]
    return run_per_user(AGENT, session, user_ids, lambda uid: forecast_user(uid, session, bus, notifier, now))
