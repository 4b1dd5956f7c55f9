"""
Goal Backstop Agent

Daily job that compares each active goal's savings with where a
straight-line schedule says it should be, and proposes a top-up for
goals more than 12% behind.
"""

import logging
import math
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, Optional

from sqlalchemy.orm import Session

from nudgecast.agents.base import AgentRun, run_per_user
from nudgecast.features.signals import get_profile
from nudgecast.features.window_utils import to_datetime, utcnow
from nudgecast.ingest.schema import Goal, NudgeAction
from nudgecast.money import ZERO, format_amount, round_whole, to_decimal, to_float
from nudgecast.nudges import lifecycle
from nudgecast.nudges.registry import NudgeType

logger = logging.getLogger(__name__)

AGENT = "goal-backstop"
LAG_TOLERANCE = Decimal("0.12")
MIN_DEFICIT = Decimal("500")
MAX_DEFICIT = Decimal("20000")
MIN_DAYS_LEFT = 7
DEFAULT_GOAL_AGE_DAYS = 30
SUPPRESSION_HOURS = 24
EXPIRY_DAYS = 2


def goal_lag(goal: Goal, now: datetime) -> Optional[Decimal]:
    """
    How far savings trail the schedule, as a fraction of the target.

    Returns None for goals that are funded, overdue or have no target date.
    """
    target = to_decimal(goal.target_amount)
    saved = to_decimal(goal.saved_amount)
    if target <= ZERO or saved >= target or goal.target_date is None:
        return None
    target_date = to_datetime(goal.target_date)
    if target_date <= now:
        return None

    created = to_datetime(goal.created_at) if goal.created_at else now - timedelta(days=DEFAULT_GOAL_AGE_DAYS)
    total = (target_date - created).total_seconds()
    if total <= 0:
        return None
    elapsed = (now - created).total_seconds()
    schedule_progress = min(Decimal(1), Decimal(str(elapsed / total)))
    return schedule_progress - saved / target


def backstop_plan(goal: Goal, lag: Decimal, now: datetime) -> Dict:
    """Top-up size and the weekly pace needed to finish on time."""
    target = to_decimal(goal.target_amount)
    saved = to_decimal(goal.saved_amount)
    remaining = target - saved
    days_left = max(MIN_DAYS_LEFT, math.ceil((to_datetime(goal.target_date) - now).total_seconds() / 86400))
    weeks_left = max(1, round(days_left / 7))
    deficit = min(MAX_DEFICIT, round_whole(max(MIN_DEFICIT, lag * target)))
    return {
        'remaining': remaining,
        'days_left': days_left,
        'weeks_left': weeks_left,
        'needed_weekly': round_whole(remaining / weeks_left),
        'top_up': min(remaining, deficit),
        'lag_percent': int(round_whole(lag * 100)),
    }


def covered_goals(user_id: str, session: Session, now: datetime) -> set:
    recent = session.query(NudgeAction).filter(
        NudgeAction.user_id == user_id,
        NudgeAction.nudge_type == NudgeType.GOAL_BACKSTOP.value,
        NudgeAction.created_at >= now - timedelta(hours=SUPPRESSION_HOURS),
    ).all()
    return {n.nudge_metadata.get('goal_id') for n in recent if (n.nudge_metadata or {}).get('goal_id')}


def check_user(user_id: str, session: Session, now: datetime) -> Optional[Dict]:
    goals = session.query(Goal).filter(Goal.user_id == user_id, Goal.status == "active").all()
    covered = covered_goals(user_id, session, now)
    profile = get_profile(user_id, session)
    mode = "auto" if profile is not None and profile.auto_nudge_enabled else "manual"

    created = []
    for goal in goals:
        if goal.goal_id in covered:
            continue
        lag = goal_lag(goal, now)
        if lag is None or lag <= LAG_TOLERANCE:
            continue

        plan = backstop_plan(goal, lag, now)
        saved = to_decimal(goal.saved_amount)
        target = to_decimal(goal.target_amount)
        nudge = lifecycle.create_nudge(
            user_id,
            session,
            nudge_type=NudgeType.GOAL_BACKSTOP.value,
            message=(
                f"{goal.name} is {plan['lag_percent']}% behind pace. "
                f"Top up {format_amount(plan['top_up'])} this week?"
            ),
            reason=(
                f"Saved {format_amount(saved)} of {format_amount(target)} with {plan['days_left']} days left. "
                f"Need about {format_amount(plan['needed_weekly'])}/week to finish on time."
            ),
            expires_at=now + timedelta(days=EXPIRY_DAYS),
            priority=7,
            amount=plan['top_up'],
            metadata={
                'goal_id': goal.goal_id,
                'goal_name': goal.name,
                'target_amount': to_float(target),
                'saved_amount': to_float(saved),
                'remaining': to_float(plan['remaining']),
                'lag_percent': plan['lag_percent'],
                'weeks_left': plan['weeks_left'],
                'needed_weekly': to_float(plan['needed_weekly']),
                'suggested_top_up': to_float(plan['top_up']),
                'automation': {'trigger': AGENT, 'mode': mode, 'plan': "schedule-sweep"},
            },
            idempotency_key=f"{NudgeType.GOAL_BACKSTOP.value}:{user_id}:{goal.goal_id}:{now.date().isoformat()}",
            auto_accept=False,
            now=now,
        )
        if nudge is not None:
            covered.add(goal.goal_id)
            created.append(nudge.nudge_id)

    return {'nudges_created': len(created), 'nudge_ids': created} if created else None


def run_goal_backstop_agent(session: Session, now: datetime = None) -> AgentRun:
    """Check every user with at least one active goal."""
    if now is None:
        now = utcnow()
    user_ids = [
        row[0] for row in session.query(Goal.user_id).filter(Goal.status == "active").distinct().order_by(Goal.user_id)
    ]
    return run_per_user(AGENT, session, user_ids, lambda uid: check_user(uid, session, now))
