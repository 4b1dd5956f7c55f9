"""
Micro-Save Autopilot

On ``shortfall.forecasted`` for a user who enabled auto-nudges, moves a
small amount into savings right away. The amount is what is safe to
save, bounded by daily and weekly caps that depend on the user's nudge
frequency preference and on micro-saves already executed.
"""

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict

from sqlalchemy.orm import Session

from nudgecast.features.forecast import calculate_safe_to_save
from nudgecast.features.signals import load_financial_state
from nudgecast.features.window_utils import utcnow
from nudgecast.guardrails.safety import is_autopilot_locked
from nudgecast.ingest.schema import NudgeAction, User
from nudgecast.money import ZERO, format_amount, round_whole, to_decimal, to_float
from nudgecast.nudges import lifecycle
from nudgecast.nudges.registry import NudgeType

logger = logging.getLogger(__name__)

AGENT = "micro-save-autopilot"

# (daily, weekly) caps by nudge frequency preference
MICRO_SAVE_CAPS = {
    'LOW': (Decimal("200"), Decimal("800")),
    'NORMAL': (Decimal("400"), Decimal("1500")),
    'HIGH': (Decimal("600"), Decimal("2500")),
}
MIN_MICRO_SAVE = Decimal("50")
EXPIRY_HOURS = 12


def used_allowance(user_id: str, session: Session, now: datetime) -> Dict[str, Decimal]:
    """Micro-save amounts executed in the last day and the last week."""
    executed = session.query(NudgeAction).filter(
        NudgeAction.user_id == user_id,
        NudgeAction.nudge_type == NudgeType.MICRO_SAVE.value,
        NudgeAction.status == "executed",
        NudgeAction.executed_at >= now - timedelta(days=7),
    ).all()
    day_start = now - timedelta(days=1)
    return {
        'week': sum((to_decimal(n.amount) for n in executed), ZERO),
        'day': sum((to_decimal(n.amount) for n in executed if n.executed_at >= day_start), ZERO),
    }


def handle_shortfall(session: Session, payload: Dict, now: datetime = None) -> Dict:
    """
    Create and execute a capped micro-save for a forecasted shortfall.

    Args:
        session: Database session
        payload: ``shortfall.forecasted`` data
        now: Reference time

    Returns:
        Dict with 'executed' and 'amount', or 'skipped' with the reason

    Raises:
        ExecutionError: If the transfer fails; nothing is left behind
    """
    if now is None:
        now = utcnow()

    user_id = payload.get('user_id')
    level = payload.get('risk_level', "low")
    if not user_id or level == "low":
        return {'skipped': "low-risk-or-missing-user"}
    if session.query(User).filter(User.user_id == user_id).first() is None:
        return {'skipped': "user-not-found"}
    if is_autopilot_locked(user_id, session):
        return {'skipped': "autopilot-locked"}

    state = load_financial_state(user_id, session, now=now)
    profile = state.profile
    if profile is None or not profile.auto_nudge_enabled:
        return {'skipped': "auto-nudge-disabled"}
    if state.default_account is None:
        return {'skipped': "no-account"}

    safe_amount = calculate_safe_to_save(state.total_balance, state.budget_usage_percent)
    if safe_amount < MIN_MICRO_SAVE:
        return {'skipped': "no-safe-amount"}

    daily_cap, weekly_cap = MICRO_SAVE_CAPS.get(profile.nudge_frequency_preference, MICRO_SAVE_CAPS['NORMAL'])
    used = used_allowance(user_id, session, now)
    allocatable = min(
        safe_amount,
        max(ZERO, daily_cap - used['day']),
        max(ZERO, weekly_cap - used['week']),
    )
    if allocatable < MIN_MICRO_SAVE:
        return {'skipped': "guardrail-cap-hit"}

    amount = round_whole(allocatable)
    generated_at = payload.get('generated_at') or now.isoformat()
    nudge = lifecycle.create_nudge(
        user_id,
        session,
        nudge_type=NudgeType.MICRO_SAVE.value,
        message=f"Auto-saved {format_amount(amount)} to your safety buffer",
        reason=f"Risk {level} triggered an automatic micro-save to keep essentials safe.",
        expires_at=now + timedelta(hours=EXPIRY_HOURS),
        priority=7,
        amount=amount,
        metadata={
            'automation': {'trigger': "shortfall.forecasted", 'mode': "auto"},
            'guardrails': {
                'daily_cap': to_float(daily_cap),
                'weekly_cap': to_float(weekly_cap),
                'used_today': to_float(used['day']),
                'used_week': to_float(used['week']),
            },
            'forecast': {
                'risk_level': level,
                'predicted_balance': payload.get('predicted_balance'),
            },
        },
        idempotency_key=f"{NudgeType.MICRO_SAVE.value}:{user_id}:{generated_at}",
        auto_accept=False,
        now=now,
    )
    if nudge is None:
        return {'skipped': "duplicate"}

    lifecycle.accept_nudge(user_id, nudge.nudge_id, session, initiated_by=AGENT, now=now)
    logger.info("Micro-saved %s for %s", amount, user_id)
    return {'executed': nudge.nudge_id, 'amount': to_float(amount)}
