"""
Autopilot Safety

Per-user lock that stops every automated (non-user-initiated) action,
plus a watchdog that trips the lock when agent output looks anomalous.
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from nudgecast.errors import AutopilotLockedError
from nudgecast.features.window_utils import utcnow
from nudgecast.ingest.schema import AgentSafetyState

logger = logging.getLogger(__name__)

ANOMALY_THRESHOLD = 0.8
ANOMALY_WEIGHT = 0.4
COST_SCALE = 10
TOKEN_SPIKE = 2000
SUSPICIOUS_PHRASES = ["transfer all funds"]


def get_safety_state(user_id: str, session: Session) -> Optional[AgentSafetyState]:
    return session.query(AgentSafetyState).filter(AgentSafetyState.user_id == user_id).first()


def is_autopilot_locked(user_id: str, session: Session) -> bool:
    state = get_safety_state(user_id, session)
    return bool(state and state.autopilot_locked)


def ensure_autopilot_unlocked(user_id: str, session: Session) -> None:
    """
    Raise if automation is locked for the user.

    Called immediately before an automated path mutates balances. The
    check and the write are not covered by one lock, so a lock set
    between them is only seen by the next run.

    Raises:
        AutopilotLockedError: If the user's autopilot is locked
    """
    state = get_safety_state(user_id, session)
    if state and state.autopilot_locked:
        raise AutopilotLockedError(f"Automations are locked pending review ({state.reason or 'no reason'})")


def _upsert_state(user_id: str, session: Session, now: datetime) -> AgentSafetyState:
    state = get_safety_state(user_id, session)
    if state is None:
        state = AgentSafetyState(user_id=user_id, autopilot_locked=False, anomalies=[], updated_at=now)
        session.add(state)
    return state


def evaluate_agent_output(
    user_id: str,
    session: Session,
    summary: Optional[str] = None,
    tokens: Optional[int] = None,
    cost: Optional[float] = None,
    now: datetime = None
) -> Dict:
    """
    Score an agent run for anomalies and lock the user's autopilot when it looks unsafe.

    Args:
        user_id: User the agent acted for
        session: Database session
        summary: Text the agent produced
        tokens: Tokens consumed by the run
        cost: Cost of the run
        now: Reference time

    Returns:
        Dict with anomalies, risk_score and locked
    """
    if now is None:
        now = utcnow()

    anomalies: List[str] = []
    text = (summary or "").lower()
    if any(phrase in text for phrase in SUSPICIOUS_PHRASES):
        anomalies.append("suspicious-transfer-language")
    if tokens and tokens > TOKEN_SPIKE:
        anomalies.append("token-spike")

    risk_score = min(1.0, len(anomalies) * ANOMALY_WEIGHT + (cost or 0) / COST_SCALE)
    should_lock = risk_score >= ANOMALY_THRESHOLD

    if should_lock:
        state = _upsert_state(user_id, session, now)
        state.autopilot_locked = True
        state.locked_at = now
        state.reason = ",".join(anomalies) or "cost-spike"
        state.last_risk_score = risk_score
        state.anomalies = [{'anomalies': anomalies, 'summary': summary, 'cost': cost, 'tokens': tokens}]
        state.updated_at = now
        session.flush()
        logger.warning("Autopilot locked for %s: %s (risk %.2f)", user_id, state.reason, risk_score)

    return {'anomalies': anomalies, 'risk_score': risk_score, 'locked': should_lock}


def reset_autopilot(user_id: str, session: Session, context: Optional[Dict] = None, now: datetime = None) -> AgentSafetyState:
    """Clear the lock after review."""
    if now is None:
        now = utcnow()
    state = _upsert_state(user_id, session, now)
    state.autopilot_locked = False
    state.reason = None
    state.locked_at = None
    state.anomalies = [context] if context else []
    state.updated_at = now
    session.flush()
    logger.info("Autopilot reset for %s", user_id)
    return state


def lock_autopilot(user_id: str, session: Session, reason: str, now: datetime = None) -> AgentSafetyState:
    if now is None:
        now = utcnow()
    state = _upsert_state(user_id, session, now)
    state.autopilot_locked = True
    state.reason = reason
    state.locked_at = now
    state.updated_at = now
    session.flush()
    return state
