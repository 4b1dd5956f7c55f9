"""
Spending Guardrail Agent

Runs every four hours. For each category, compares the last seven days
of spending with the weekly average of the four weeks before and
raises a spending-guardrail nudge when spending has sped up sharply.
"""

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, Optional

from sqlalchemy.orm import Session

from nudgecast.agents.base import AgentRun, run_per_user
from nudgecast.features.signals import get_active_budget, get_profile
from nudgecast.features.window_utils import to_datetime, utcnow, window_bucket
from nudgecast.ingest.schema import NudgeAction, Transaction
from nudgecast.money import ZERO, format_amount, quantize, round_whole, to_decimal, to_float
from nudgecast.nudges import lifecycle
from nudgecast.nudges.engine import NON_DISCRETIONARY_CATEGORIES
from nudgecast.nudges.registry import NudgeType

logger = logging.getLogger(__name__)

AGENT = "spending-guardrail"
LOOKBACK_DAYS = 35
WEEK_DAYS = 7
BASELINE_WEEKS = 4
HISTORY_LIMIT = 200
MIN_WEEKLY_SPEND = Decimal("1500")
ACCELERATION_THRESHOLD = Decimal("1.3")
SUPPRESSION_DAYS = 2
MAX_PER_USER = 2
MIN_CLAMP = Decimal("500")
CLAMP_SHARE = Decimal("0.6")
RECOMMENDED_CAP_FACTOR = Decimal("1.1")
EXPIRY_DAYS = 3

DISCRETIONARY_CATEGORIES = {
    "Dining", "Food", "Food & Dining", "Restaurants",
    "Entertainment", "Shopping", "Travel", "Lifestyle",
}


def category_spend(user_id: str, session: Session, now: datetime) -> Dict[str, Dict[str, Decimal]]:
    """Per-category spend split into the last week and the trailing four weeks."""
    transactions = session.query(Transaction).filter(
        Transaction.user_id == user_id,
        Transaction.type == "EXPENSE",
        Transaction.date >= now - timedelta(days=LOOKBACK_DAYS),
    ).order_by(Transaction.date.desc()).limit(HISTORY_LIMIT).all()

    week_start = now - timedelta(days=WEEK_DAYS)
    stats: Dict[str, Dict[str, Decimal]] = {}
    for txn in transactions:
        amount = to_decimal(txn.amount)
        category = txn.category or "Other"
        if amount <= ZERO or category in NON_DISCRETIONARY_CATEGORIES:
            continue
        bucket = stats.setdefault(category, {'week': ZERO, 'trailing': ZERO})
        if to_datetime(txn.date) >= week_start:
            bucket['week'] += amount
        else:
            bucket['trailing'] += amount
    return stats


def suppressed_categories(user_id: str, session: Session, now: datetime) -> set:
    recent = session.query(NudgeAction).filter(
        NudgeAction.user_id == user_id,
        NudgeAction.nudge_type == NudgeType.SPENDING_GUARDRAIL.value,
        NudgeAction.created_at >= now - timedelta(days=SUPPRESSION_DAYS),
    ).all()
    return {n.nudge_metadata.get('category') for n in recent if (n.nudge_metadata or {}).get('category')}


def check_user(user_id: str, session: Session, now: datetime) -> Optional[Dict]:
    """Raise guardrail nudges for up to two accelerating categories."""
    stats = category_spend(user_id, session, now)
    if not stats:
        return None

    suppressed = suppressed_categories(user_id, session, now)
    profile = get_profile(user_id, session)
    mode = "auto" if profile is not None and profile.auto_nudge_enabled else "manual"
    budget = get_active_budget(user_id, session)

    created = []
    for category, spend in stats.items():
        if len(created) >= MAX_PER_USER:
            break
        if category in suppressed:
            continue

        baseline = spend['trailing'] / BASELINE_WEEKS
        weekly = spend['week']
        if baseline <= ZERO or weekly < MIN_WEEKLY_SPEND:
            continue
        acceleration = weekly / baseline
        if acceleration < ACCELERATION_THRESHOLD:
            continue

        overshoot = weekly - baseline
        clamp_plan = max(MIN_CLAMP, round_whole(overshoot * CLAMP_SHARE))
        variance_pct = round_whole((acceleration - 1) * 100)

        lock_applied = (
            mode == "auto" and budget is not None and not budget.is_locked
            and category in DISCRETIONARY_CATEGORIES
        )

        nudge = lifecycle.create_nudge(
            user_id,
            session,
            nudge_type=NudgeType.SPENDING_GUARDRAIL.value,
            message=f"Guardrail: {category} spend up {variance_pct}% this week",
            reason=(
                f"{format_amount(weekly)} spent in 7 days vs {format_amount(baseline)} baseline. "
                f"Dial back {format_amount(clamp_plan)} over the next 72h to stay on plan."
            ),
            expires_at=now + timedelta(days=EXPIRY_DAYS),
            priority=6,
            amount=weekly,
            metadata={
                'category': category,
                'weekly_spend': to_float(weekly),
                'baseline_weekly': to_float(quantize(baseline)),
                'overshoot': to_float(quantize(overshoot)),
                'guardrail': {
                    'clamp_plan': to_float(clamp_plan),
                    'recommended_cap': to_float(round_whole(baseline * RECOMMENDED_CAP_FACTOR)),
                },
                'automation': {'trigger': AGENT, 'mode': mode, 'lock_applied': lock_applied},
            },
            idempotency_key=(
                f"{NudgeType.SPENDING_GUARDRAIL.value}:{user_id}:{category}:"
                f"{window_bucket(now, SUPPRESSION_DAYS * 24)}"
            ),
            auto_accept=False,
            now=now,
        )
        if nudge is None:
            continue
        if lock_applied:
            budget.is_locked = True
            budget.locked_reason = f"Spending guardrail: {category} up {variance_pct}% this week"
            session.flush()
        created.append(nudge.nudge_id)

    return {'nudges_created': len(created), 'nudge_ids': created} if created else None


def run_guardrail_agent(session: Session, now: datetime = None) -> AgentRun:
    """Check every user with expenses in the lookback window."""
    if now is None:
        now = utcnow()
    user_ids = [
        row[0] for row in session.query(Transaction.user_id).filter(
            Transaction.type == "EXPENSE",
            Transaction.date >= now - timedelta(days=LOOKBACK_DAYS),
        ).distinct().order_by(Transaction.user_id)
    ]
    return run_per_user(AGENT, session, user_ids, lambda uid: check_user(uid, session, now))
