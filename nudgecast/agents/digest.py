"""
Nightly Automation Digest

Summarizes the last 24 hours of micro-save and guardian activity into
one message per user. Sent only when the user has automation turned on,
prefers summaries, or something ran automatically for them.
"""

import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from nudgecast.agents.base import AgentRun, run_per_user
from nudgecast.agents.notifications import LoggingNotifier, Notifier
from nudgecast.features.signals import get_or_create_profile, get_profile
from nudgecast.features.window_utils import to_datetime, utcnow
from nudgecast.ingest.schema import NudgeAction, User
from nudgecast.money import format_amount
from nudgecast.nudges.behavior import get_personalized_nudge_settings
from nudgecast.nudges.registry import NudgeType

logger = logging.getLogger(__name__)

AGENT = "nightly-digest"
DIGEST_TYPES = {
    NudgeType.MICRO_SAVE.value: "Micro-save",
    NudgeType.GUARDIAN_ALERT.value: "Guardian",
}
MIN_HOURS_BETWEEN_DIGESTS = 20


def _automation_mode(nudge: NudgeAction) -> str:
    automation = (nudge.nudge_metadata or {}).get('automation') or {}
    return "auto" if automation.get('mode') == "auto" else "manual"


def digest_line(nudge: NudgeAction) -> str:
    amount = f" {format_amount(nudge.amount)}" if nudge.amount is not None else ""
    status = "done" if nudge.status == "executed" else nudge.status
    counterfactual = (nudge.nudge_metadata or {}).get('counterfactual')
    tail = f" | {counterfactual}" if counterfactual else ""
    return (
        f"{nudge.created_at.strftime('%H:%M')} · {DIGEST_TYPES[nudge.nudge_type]}{amount} "
        f"({_automation_mode(nudge)}, {status}){tail}"
    )


def build_digest(user_id: str, session: Session, now: datetime) -> Optional[Dict]:
    """
    Digest content for one user, or None when nothing should be sent.

    Returns:
        Dict with 'lines' and 'message'
    """
    recent: List[NudgeAction] = session.query(NudgeAction).filter(
        NudgeAction.user_id == user_id,
        NudgeAction.created_at >= now - timedelta(days=1),
        NudgeAction.nudge_type.in_(list(DIGEST_TYPES)),
    ).order_by(NudgeAction.created_at.asc()).all()
    if not recent:
        return None

    profile = get_profile(user_id, session)
    settings = get_personalized_nudge_settings(user_id, session, now=now)
    auto_actions = [n for n in recent if _automation_mode(n) == "auto"]
    wanted = (profile is not None and profile.auto_nudge_enabled) or settings['prefer_summaries'] or auto_actions
    if not wanted:
        return None

    lines = [digest_line(n) for n in recent]
    return {'lines': lines, 'message': "\n".join(f"• {line}" for line in lines)}


def send_digest(user_id: str, session: Session, notifier: Notifier, now: datetime) -> Optional[Dict]:
    profile = get_profile(user_id, session)
    if profile is not None and profile.last_digest_at is not None:
        if now - to_datetime(profile.last_digest_at) < timedelta(hours=MIN_HOURS_BETWEEN_DIGESTS):
            return None

    digest = build_digest(user_id, session, now)
    if digest is None:
        return None

    user = session.query(User).filter(User.user_id == user_id).first()
    notifier.send(
        user.email,
        "NudgeCast nightly digest",
        "digest",
        {
            'user_name': user.name,
            'action': "Daily Automation Summary",
            'reason': f"{len(digest['lines'])} proactive moves in the last 24h",
            'message': digest['message'],
        },
    )
    get_or_create_profile(user_id, session).last_digest_at = now
    session.flush()
    return {'sent': True, 'lines': len(digest['lines'])}


def run_digest_agent(session: Session, notifier: Optional[Notifier] = None, now: datetime = None) -> AgentRun:
    """Send the nightly digest to every user with an email address."""
    if now is None:
        now = utcnow()
    notifier = notifier or LoggingNotifier()
    user_ids = [row[0] for row in session.query(User.user_id).filter(User.email != "").order_by(User.user_id)]
    return run_per_user(AGENT, session, user_ids, lambda uid: send_digest(uid, session, notifier, now))
