"""
Behavior-Aware Nudge Settings

Learns from how a user responds to nudges (accepts, rejects, lets them
expire) and turns that into generator settings and profile traits.
"""

import logging
from datetime import datetime, timedelta
from typing import Dict

from sqlalchemy.orm import Session

from nudgecast.features.rhythm import update_rhythm_profile
from nudgecast.features.signals import get_or_create_profile
from nudgecast.features.window_utils import utcnow
from nudgecast.ingest.schema import NudgeAction

logger = logging.getLogger(__name__)

HIGH_ACCEPTANCE = 0.7
LOW_ACCEPTANCE = 0.3
IGNORE_THRESHOLD = 3
REJECT_THRESHOLD = 0.5
RECENT_WINDOW = 5

SETTINGS_BY_AGGRESSIVENESS = {
    'aggressive': {'max_nudges_per_day': 5, 'priority_threshold': 2, 'timing': 'immediate'},
    'conservative': {'max_nudges_per_day': 1, 'priority_threshold': 8, 'timing': 'evening'},
    'neutral': {'max_nudges_per_day': 3, 'priority_threshold': 5, 'timing': 'morning'},
}


def effective_status(nudge: NudgeAction, now: datetime) -> str:
    """Status with lazy expiry applied: a pending nudge past its expiry reads as expired."""
    if nudge.status == "pending" and nudge.expires_at is not None and nudge.expires_at <= now:
        return "expired"
    return nudge.status


def analyze_nudge_behavior(user_id: str, session: Session, days: int = 30, now: datetime = None) -> Dict:
    """
    Summarize the user's responses to nudges created in the last ``days`` days.

    Args:
        user_id: User ID
        session: Database session
        days: Lookback window
        now: Reference time

    Returns:
        Dict of counts, rates, recent ignores and an aggressiveness label
    """
    if now is None:
        now = utcnow()

    nudges = session.query(NudgeAction).filter(
        NudgeAction.user_id == user_id,
        NudgeAction.created_at >= now - timedelta(days=days)
    ).order_by(NudgeAction.created_at.desc()).all()

    if not nudges:
        return {
            'total': 0,
            'accepted': 0,
            'rejected': 0,
            'expired': 0,
            'pending': 0,
            'acceptance_rate': 0.0,
            'rejection_rate': 0.0,
            'ignore_rate': 0.0,
            'recent_ignores': 0,
            'aggressiveness': 'neutral',
            'recommendations': ["Not enough data yet"],
        }

    statuses = [effective_status(n, now) for n in nudges]
    total = len(statuses)
    accepted = statuses.count("executed")
    rejected = statuses.count("rejected")
    expired = statuses.count("expired")
    pending = statuses.count("pending")

    acceptance_rate = accepted / total
    rejection_rate = rejected / total
    recent_ignores = statuses[:RECENT_WINDOW].count("expired")

    aggressiveness = 'neutral'
    recommendations = []
    if acceptance_rate > HIGH_ACCEPTANCE:
        aggressiveness = 'aggressive'
        recommendations.append("Increase nudge frequency and priority")
    elif acceptance_rate < LOW_ACCEPTANCE:
        aggressiveness = 'conservative'
        recommendations.append("Reduce nudge frequency, prefer summaries")

    if recent_ignores > IGNORE_THRESHOLD:
        recommendations.append("Switch to nightly summary instead of real-time pushes")
    if rejection_rate > REJECT_THRESHOLD:
        recommendations.append("Adjust nudge types to match user preferences")

    return {
        'total': total,
        'accepted': accepted,
        'rejected': rejected,
        'expired': expired,
        'pending': pending,
        'acceptance_rate': acceptance_rate,
        'rejection_rate': rejection_rate,
        'ignore_rate': expired / total,
        'recent_ignores': recent_ignores,
        'aggressiveness': aggressiveness,
        'recommendations': recommendations,
    }


def get_personalized_nudge_settings(user_id: str, session: Session, now: datetime = None) -> Dict:
    """Generator settings derived from recent behavior."""
    behavior = analyze_nudge_behavior(user_id, session, now=now)
    settings = dict(SETTINGS_BY_AGGRESSIVENESS[behavior['aggressiveness']])
    settings['prefer_summaries'] = behavior['recent_ignores'] > IGNORE_THRESHOLD
    return settings


def adjust_profile_from_behavior(user_id: str, session: Session, now: datetime = None) -> Dict:
    """
    Update risk tolerance and spending style from behavior, then refresh rhythm.

    Args:
        user_id: User ID
        session: Database session
        now: Reference time

    Returns:
        Dict with the behavior summary and the profile updates applied
    """
    if now is None:
        now = utcnow()
    behavior = analyze_nudge_behavior(user_id, session, now=now)
    profile = get_or_create_profile(user_id, session)

    if behavior['acceptance_rate'] > HIGH_ACCEPTANCE:
        risk_tolerance = "HIGH"
    elif behavior['acceptance_rate'] < LOW_ACCEPTANCE:
        risk_tolerance = "LOW"
    else:
        risk_tolerance = "MODERATE"

    if behavior['rejection_rate'] > REJECT_THRESHOLD:
        spending_style = "CAUTIOUS"
    elif behavior['acceptance_rate'] > HIGH_ACCEPTANCE:
        spending_style = "BALANCED"
    else:
        spending_style = "IMPULSIVE"

    profile.risk_tolerance = risk_tolerance
    profile.spending_style = spending_style
    session.flush()

    update_rhythm_profile(user_id, session, now=now)

    updates = {'risk_tolerance': risk_tolerance, 'spending_style': spending_style}
    logger.debug("Profile adjusted for %s: %s", user_id, updates)
    return {'behavior': behavior, 'updates': updates}
