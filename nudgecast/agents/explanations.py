"""
Explanation Precompute

Caches an explanation and counterfactual into the metadata of recent
pending nudges so clients can show them without a round trip. Generated
narrative passes through the autopilot watchdog before it is stored.
"""

import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from nudgecast.agents.base import AgentRun, run_per_user
from nudgecast.explain.narrative import NarrativeGenerator
from nudgecast.explain.service import explain_nudge
from nudgecast.features.window_utils import utcnow
from nudgecast.guardrails.safety import evaluate_agent_output
from nudgecast.ingest.schema import NudgeAction

logger = logging.getLogger(__name__)

AGENT = "explanation-precompute"
LOOKBACK_HOURS = 24
BATCH_SIZE = 25


def pending_unexplained(session: Session, now: datetime) -> List[NudgeAction]:
    nudges = session.query(NudgeAction).filter(
        NudgeAction.status == "pending",
        NudgeAction.created_at >= now - timedelta(hours=LOOKBACK_HOURS),
        NudgeAction.expires_at > now,
    ).order_by(NudgeAction.created_at.desc()).limit(BATCH_SIZE).all()
    return [n for n in nudges if not ((n.nudge_metadata or {}).get('explanation') or {}).get('ready')]


def cache_explanations(
    user_id: str,
    nudge_ids: List[str],
    session: Session,
    generator: Optional[NarrativeGenerator],
    now: datetime
) -> Optional[Dict]:
    cached = 0
    for nudge_id in nudge_ids:
        result = explain_nudge(user_id, nudge_id, session, generator=generator, now=now)
        explanation = result['explanation']

        if result['source'] == "narrative":
            verdict = evaluate_agent_output(
                user_id, session, summary=f"{explanation['summary']} {explanation.get('detailed', '')}", now=now
            )
            if verdict['locked']:
                logger.warning("Narrative for nudge %s tripped the watchdog, not caching", nudge_id)
                return {'cached': cached, 'locked': True}

        nudge = session.query(NudgeAction).filter(NudgeAction.nudge_id == nudge_id).first()
        nudge.nudge_metadata = {
            **(nudge.nudge_metadata or {}),
            'explanation': {**explanation, 'ready': True, 'source': result['source'], 'cached_at': now.isoformat()},
            'counterfactual': explanation['counterfactual'],
        }
        session.flush()
        cached += 1
    return {'cached': cached} if cached else None


def run_explanation_agent(
    session: Session,
    generator: Optional[NarrativeGenerator] = None,
    now: datetime = None
) -> AgentRun:
    """
    Precompute explanations for recent pending nudges.

    Args:
        session: Database session
        generator: Optional narrative generator; rule-based text when None
        now: Reference time

    Returns:
        AgentRun summary
    """
    if now is None:
        now = utcnow()
    by_user: Dict[str, List[str]] = {}
    for nudge in pending_unexplained(session, now):
        by_user.setdefault(nudge.user_id, []).append(nudge.nudge_id)
    return run_per_user(
        AGENT, session, list(by_user),
        lambda uid: cache_explanations(uid, by_user[uid], session, generator, now)
    )
