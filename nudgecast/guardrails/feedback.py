"""
Feedback Collection Module

Stores user feedback on nudges, folds it into the personalization
profile and reports per-type effectiveness.
"""

import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from nudgecast.errors import NotFoundError
from nudgecast.features.signals import get_or_create_profile, get_profile
from nudgecast.features.window_utils import utcnow
from nudgecast.ingest.schema import FinancialProfile, NudgeAction
from nudgecast.nudges.behavior import effective_status

logger = logging.getLogger(__name__)

POSITIVE_RATING = 4
NEGATIVE_RATING = 2
LOW_ACCEPTANCE_PERCENT = 50


def calculate_optimal_nudge_hour(user_id: str, session: Session) -> Optional[int]:
    """
    Hour of day with the most positive responses.

    Responses are counted in creation order and the first hour to reach
    the highest count wins ties.
    """
    positive = session.query(NudgeAction).filter(
        NudgeAction.user_id == user_id,
        or_(
            NudgeAction.status == "executed",
            NudgeAction.was_helpful.is_(True),
            NudgeAction.feedback_rating >= POSITIVE_RATING,
        )
    ).order_by(NudgeAction.created_at.asc()).all()

    counts: Dict[int, int] = {}
    for nudge in positive:
        moment = nudge.responded_at or nudge.feedback_at
        if moment is not None:
            counts[moment.hour] = counts.get(moment.hour, 0) + 1

    best_hour = None
    best_count = 0
    for hour, count in counts.items():
        if count > best_count:
            best_hour, best_count = hour, count
    return best_hour


def update_personalization_from_feedback(user_id: str, nudge: NudgeAction, session: Session, now: datetime) -> FinancialProfile:
    profile = get_or_create_profile(user_id, session)

    positive = nudge.was_helpful is True or (nudge.feedback_rating is not None and nudge.feedback_rating >= POSITIVE_RATING)
    negative = nudge.was_helpful is False or (nudge.feedback_rating is not None and nudge.feedback_rating <= NEGATIVE_RATING)

    preferred = list(profile.preferred_nudge_types or [])
    disliked = list(profile.disliked_nudge_types or [])
    nudge_type = nudge.nudge_type

    if positive:
        if nudge_type not in preferred:
            preferred.append(nudge_type)
        disliked = [t for t in disliked if t != nudge_type]
    elif negative:
        if nudge_type not in disliked:
            disliked.append(nudge_type)
        preferred = [t for t in preferred if t != nudge_type]

    # JSON columns only persist on reassignment
    profile.preferred_nudge_types = preferred
    profile.disliked_nudge_types = disliked
    profile.optimal_nudge_hour = calculate_optimal_nudge_hour(user_id, session)
    profile.last_personalization_update = now
    session.flush()
    return profile


def collect_feedback(
    user_id: str,
    nudge_id: str,
    session: Session,
    rating: Optional[int] = None,
    was_helpful: Optional[bool] = None,
    comment: Optional[str] = None,
    dismiss_reason: Optional[str] = None,
    now: datetime = None
) -> NudgeAction:
    """
    Record feedback on a nudge and update the user's preferences.

    Args:
        user_id: Caller
        nudge_id: Nudge the feedback is about
        session: Database session
        rating: 1-5 rating
        was_helpful: Explicit helpful / not helpful
        comment: Free text
        dismiss_reason: Why the nudge was dismissed
        now: Reference time

    Returns:
        The updated NudgeAction (flushed, not committed)

    Raises:
        NotFoundError: If the nudge is missing or owned by someone else
    """
    if now is None:
        now = utcnow()

    nudge = session.query(NudgeAction).filter(
        NudgeAction.nudge_id == nudge_id,
        NudgeAction.user_id == user_id
    ).first()
    if nudge is None:
        raise NotFoundError(f"Nudge {nudge_id} not found")

    nudge.feedback_rating = rating
    nudge.was_helpful = was_helpful
    nudge.feedback_comment = comment
    nudge.dismiss_reason = dismiss_reason
    nudge.feedback_at = now
    session.flush()

    update_personalization_from_feedback(user_id, nudge, session, now)
    logger.info("Feedback recorded for nudge %s (rating=%s, helpful=%s)", nudge_id, rating, was_helpful)
    return nudge


def _empty_type_metrics() -> Dict:
    return {
        'total': 0,
        'accepted': 0,
        'rejected': 0,
        'expired': 0,
        'rating_total': 0,
        'rating_count': 0,
        'helpful_count': 0,
        'not_helpful_count': 0,
    }


def calculate_nudge_effectiveness(user_id: str, session: Session, days: int = 30, now: datetime = None) -> Dict:
    """
    Acceptance, ratings and helpfulness per nudge type over ``days``.

    Returns:
        Dict with 'overall', 'by_type' and 'period'
    """
    if now is None:
        now = utcnow()
    start = now - timedelta(days=days)

    nudges = session.query(NudgeAction).filter(
        NudgeAction.user_id == user_id,
        NudgeAction.created_at >= start
    ).order_by(NudgeAction.created_at.asc()).all()

    overall = _empty_type_metrics()
    by_type: Dict[str, Dict] = {}

    for nudge in nudges:
        metrics = by_type.setdefault(nudge.nudge_type, _empty_type_metrics())
        status = effective_status(nudge, now)
        for bucket in (metrics, overall):
            bucket['total'] += 1
            if status == "executed":
                bucket['accepted'] += 1
            elif status == "rejected":
                bucket['rejected'] += 1
            elif status == "expired":
                bucket['expired'] += 1
            if nudge.feedback_rating:
                bucket['rating_total'] += nudge.feedback_rating
                bucket['rating_count'] += 1
            if nudge.was_helpful is True:
                bucket['helpful_count'] += 1
            elif nudge.was_helpful is False:
                bucket['not_helpful_count'] += 1

    for metrics in list(by_type.values()) + [overall]:
        metrics['acceptance_rate'] = metrics['accepted'] / metrics['total'] * 100 if metrics['total'] else 0.0
        metrics['avg_rating'] = metrics['rating_total'] / metrics['rating_count'] if metrics['rating_count'] else 0.0

    return {
        'overall': overall,
        'by_type': by_type,
        'period': {'days': days, 'start': start.isoformat(), 'end': now.isoformat()},
    }


def get_effectiveness_trends(user_id: str, session: Session, weeks: int = 4, now: datetime = None) -> List[Dict]:
    """Weekly acceptance and rating, oldest week first."""
    if now is None:
        now = utcnow()

    trends = []
    for i in range(weeks - 1, -1, -1):
        end = now - timedelta(days=7 * i)
        start = end - timedelta(days=7)
        week = session.query(NudgeAction).filter(
            NudgeAction.user_id == user_id,
            NudgeAction.created_at >= start,
            NudgeAction.created_at < end
        ).all()

        accepted = sum(1 for n in week if n.status == "executed")
        ratings = [n.feedback_rating for n in week if n.feedback_rating]
        trends.append({
            'week': f"Week {weeks - i}",
            'start': start.date().isoformat(),
            'end': end.date().isoformat(),
            'total': len(week),
            'accepted': accepted,
            'acceptance_rate': round(accepted / len(week) * 100) if week else 0,
            'avg_rating': round(sum(ratings) / len(ratings), 1) if ratings else 0,
        })
    return trends


def _engagement_trend(trends: List[Dict]) -> str:
    active = [t for t in trends if t['total']]
    if len(active) < 2:
        return "insufficient_data"
    first, last = active[0]['acceptance_rate'], active[-1]['acceptance_rate']
    if last > first:
        return "improving"
    if last < first:
        return "declining"
    return "stable"


def _recommendations(profile: FinancialProfile, effectiveness: Dict) -> List[Dict]:
    recommendations = []
    if effectiveness['overall']['acceptance_rate'] < LOW_ACCEPTANCE_PERCENT:
        recommendations.append({
            'type': "low_acceptance",
            'message': "Your nudge acceptance rate is low. We're learning your preferences to show more relevant suggestions.",
            'action': "Keep providing feedback to help us improve!",
        })
    if profile.preferred_nudge_types:
        recommendations.append({
            'type': "preferences_learned",
            'message': f"You respond well to {', '.join(profile.preferred_nudge_types)} nudges.",
            'action': "We'll prioritize these types for you.",
        })
    if profile.optimal_nudge_hour is not None:
        hour = profile.optimal_nudge_hour
        time_of_day = "morning" if hour < 12 else "afternoon" if hour < 17 else "evening"
        recommendations.append({
            'type': "optimal_timing",
            'message': f"You're most responsive in the {time_of_day} (around {hour}:00).",
            'action': "We'll send important nudges during this time.",
        })
    return recommendations


def get_behavioral_insights(user_id: str, session: Session, now: datetime = None) -> Dict:
    """Profile, effectiveness and engagement trend rolled into one view."""
    if now is None:
        now = utcnow()
    profile = get_profile(user_id, session)
    if profile is None:
        return {'has_data': False, 'message': "Not enough data yet. Keep using the app to build your profile!"}

    effectiveness = calculate_nudge_effectiveness(user_id, session, now=now)
    by_type = effectiveness['by_type']
    ranked = sorted(by_type.items(), key=lambda item: item[1]['acceptance_rate'], reverse=True)

    return {
        'has_data': True,
        'preferred_nudge_types': list(profile.preferred_nudge_types or []),
        'disliked_nudge_types': list(profile.disliked_nudge_types or []),
        'optimal_nudge_hour': profile.optimal_nudge_hour,
        'nudge_frequency_preference': profile.nudge_frequency_preference,
        'acceptance_rate': effectiveness['overall']['acceptance_rate'],
        'avg_rating': effectiveness['overall']['avg_rating'],
        'total_nudges': effectiveness['overall']['total'],
        'most_effective_type': ranked[0][0] if ranked else None,
        'least_effective_type': ranked[-1][0] if ranked else None,
        'engagement_trend': _engagement_trend(get_effectiveness_trends(user_id, session, now=now)),
        'rhythm': {'income': profile.income_rhythm, 'spending': profile.spend_rhythm},
        'recommendations': _recommendations(profile, effectiveness),
    }
