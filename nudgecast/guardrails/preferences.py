"""
Personalization / Preference Filter

Re-ranks and filters candidate nudges with the user's learned profile:
liked and disliked nudge types, frequency preference, optimal send hour
and spending style.
"""

import dataclasses
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from nudgecast.features.signals import get_profile
from nudgecast.features.window_utils import utcnow
from nudgecast.ingest.schema import FinancialProfile, NudgeAction
from nudgecast.nudges.engine import NudgeCandidate

PREDICTION_SAMPLE = 20
MEDIUM_CONFIDENCE_SAMPLES = 10
HIGH_CONFIDENCE_SAMPLES = 20
DEFAULT_NUDGE_HOUR = 9
LOW_FREQUENCY_MIN_PRIORITY = 5

DAILY_CAPS = {
    'LOW': 2,
    'NORMAL': 5,
    'HIGH': 10,
}

CAP_REASONS = {
    'LOW': "User prefers low frequency (max 2 per day)",
    'NORMAL': "User prefers normal frequency (max 5 per day)",
    'HIGH': "Even high frequency has limits (max 10 per day)",
}


def filter_nudges_by_preference(nudges: List[NudgeCandidate], profile: Optional[FinancialProfile]) -> List[NudgeCandidate]:
    """
    Drop disliked types, apply the frequency preference and rank preferred types first.

    Args:
        nudges: Candidate nudges
        profile: User's FinancialProfile (None leaves the list untouched)

    Returns:
        Filtered nudges, preferred types first, then by priority descending
    """
    if profile is None:
        return list(nudges)

    disliked = set(profile.disliked_nudge_types or [])
    preferred = set(profile.preferred_nudge_types or [])

    filtered = [n for n in nudges if n.type not in disliked]
    if profile.nudge_frequency_preference == "LOW":
        filtered = [n for n in filtered if n.priority >= LOW_FREQUENCY_MIN_PRIORITY]

    return sorted(filtered, key=lambda n: (n.type not in preferred, -n.priority))


def _reassuring(message: str) -> str:
    if "save" in message.lower():
        return message + " This is a safe amount that won't affect your daily needs."
    if "spend" in message.lower():
        return message + " You have enough buffer for emergencies."
    return message


def _urgent(message: str) -> str:
    if "save" in message.lower():
        return message + " Act now to secure your future!"
    if "budget" in message.lower():
        return message + " Take action before it's too late."
    return message


def personalize_nudge(nudge: NudgeCandidate, profile: Optional[FinancialProfile]) -> NudgeCandidate:
    """
    Adapt a nudge's copy to the user's spending style.

    Priority is left unchanged so it stays on the 0-10 scale; preferred
    types are instead marked in metadata.
    """
    if profile is None:
        return dataclasses.replace(nudge, metadata={**nudge.metadata, 'personalized': False})

    message = nudge.message
    if profile.spending_style == "CAUTIOUS":
        message = _reassuring(message)
    elif profile.spending_style == "IMPULSIVE":
        message = _urgent(message)

    metadata = {**nudge.metadata, 'personalized': True}
    if nudge.type in (profile.preferred_nudge_types or []):
        metadata['personalization_reason'] = "You respond well to this type of nudge"

    return dataclasses.replace(nudge, message=message, metadata=metadata)


def predict_nudge_success(user_id: str, nudge_type: str, session: Session) -> Dict:
    """Acceptance probability from the last 20 nudges of the same type."""
    history = session.query(NudgeAction).filter(
        NudgeAction.user_id == user_id,
        NudgeAction.nudge_type == nudge_type
    ).order_by(NudgeAction.created_at.desc()).limit(PREDICTION_SAMPLE).all()

    if not history:
        return {
            'probability': 0.5,
            'confidence': "low",
            'sample_size': 0,
            'reason': "No historical data for this nudge type",
        }

    accepted = sum(1 for n in history if n.status == "executed")
    confidence = "low"
    if len(history) >= MEDIUM_CONFIDENCE_SAMPLES:
        confidence = "medium"
    if len(history) >= HIGH_CONFIDENCE_SAMPLES:
        confidence = "high"

    return {
        'probability': accepted / len(history),
        'confidence': confidence,
        'sample_size': len(history),
        'reason': f"Based on {len(history)} previous {nudge_type} nudges",
    }


def should_send_nudge_now(user_id: str, session: Session, now: datetime = None) -> Tuple[bool, str]:
    """
    Enforce the rolling 24-hour cap for the user's frequency tier.

    Returns:
        Tuple of (should_send, reason)
    """
    if now is None:
        now = utcnow()
    profile = get_profile(user_id, session)
    if profile is None:
        return True, "No frequency preference set"

    count = session.query(NudgeAction).filter(
        NudgeAction.user_id == user_id,
        NudgeAction.created_at >= now - timedelta(hours=24)
    ).count()

    tier = profile.nudge_frequency_preference or "NORMAL"
    cap = DAILY_CAPS.get(tier, DAILY_CAPS['NORMAL'])
    if count >= cap:
        return False, CAP_REASONS.get(tier, CAP_REASONS['NORMAL'])
    return True, f"Within frequency limit ({count} nudges today)"


def get_optimal_nudge_time(user_id: str, session: Session) -> Dict:
    profile = get_profile(user_id, session)
    if profile is None or profile.optimal_nudge_hour is None:
        return {'hour': DEFAULT_NUDGE_HOUR, 'reason': "Default morning time (no personalization data yet)"}
    return {'hour': profile.optimal_nudge_hour, 'reason': "You typically respond well at this time"}


def get_personalization_summary(user_id: str, session: Session) -> Dict:
    profile = get_profile(user_id, session)
    timing = get_optimal_nudge_time(user_id, session)
    if profile is None:
        return {
            'is_personalized': False,
            'optimal_time': timing,
            'message': "Start providing feedback to personalize your experience!",
        }

    has_preferences = bool(
        profile.preferred_nudge_types
        or profile.disliked_nudge_types
        or profile.optimal_nudge_hour is not None
    )
    return {
        'is_personalized': has_preferences,
        'preferred_types': list(profile.preferred_nudge_types or []),
        'disliked_types': list(profile.disliked_nudge_types or []),
        'optimal_hour': profile.optimal_nudge_hour,
        'optimal_time': timing,
        'frequency_preference': profile.nudge_frequency_preference,
        'spending_style': profile.spending_style,
        'risk_tolerance': profile.risk_tolerance,
        'last_update': profile.last_personalization_update.isoformat() if profile.last_personalization_update else None,
        'message': (
            "Your nudges are personalized based on your behavior" if has_preferences
            else "Keep using the app to build your personalization profile"
        ),
    }
