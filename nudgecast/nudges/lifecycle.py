"""
Nudge Lifecycle Manager

Owns the nudge state machine:

    pending --accept--> executed
    pending --reject--> rejected
    pending --(expires_at elapses)--> expired

Transitions are compare-and-set updates (``WHERE status = 'pending'``),
so concurrent accept/reject calls produce exactly one winner. Expiry is
applied two ways: every "active" read filters on ``expires_at`` and the
nightly sweep moves stale rows to ``expired``.

Functions here flush and use savepoints but never commit; the caller
owns the outer transaction.
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from nudgecast.errors import AlreadyProcessedError, NotFoundError, NudgeEngineError
from nudgecast.features.signals import get_profile
from nudgecast.features.window_utils import utcnow
from nudgecast.guardrails.safety import ensure_autopilot_unlocked
from nudgecast.guardrails.tone import check_nudge_tone
from nudgecast.ingest.schema import NudgeAction
from nudgecast.money import ZERO, quantize, to_decimal, to_float
from nudgecast.nudges.behavior import adjust_profile_from_behavior, effective_status
from nudgecast.nudges.engine import NudgeCandidate
from nudgecast.nudges.registry import calculate_nudge_impact, get_spec

logger = logging.getLogger(__name__)

USER = "user"
HISTORY_LIMIT = 50


def serialize_nudge(nudge: NudgeAction) -> Dict:
    """Plain-dict view of a nudge for API responses."""
    return {
        'nudge_id': nudge.nudge_id,
        'user_id': nudge.user_id,
        'nudge_type': nudge.nudge_type,
        'amount': to_float(nudge.amount) if nudge.amount is not None else None,
        'message': nudge.message,
        'reason': nudge.reason,
        'priority': nudge.priority,
        'status': nudge.status,
        'created_at': nudge.created_at.isoformat() if nudge.created_at else None,
        'responded_at': nudge.responded_at.isoformat() if nudge.responded_at else None,
        'executed_at': nudge.executed_at.isoformat() if nudge.executed_at else None,
        'expires_at': nudge.expires_at.isoformat() if nudge.expires_at else None,
        'impact': to_float(nudge.impact) if nudge.impact is not None else None,
        'metadata': nudge.nudge_metadata or {},
        'feedback_rating': nudge.feedback_rating,
        'was_helpful': nudge.was_helpful,
    }


def _load_owned(user_id: str, nudge_id: str, session: Session) -> NudgeAction:
    nudge = session.query(NudgeAction).filter(
        NudgeAction.nudge_id == nudge_id,
        NudgeAction.user_id == user_id
    ).first()
    if nudge is None:
        raise NotFoundError(f"Nudge {nudge_id} not found")
    return nudge


def _transition(nudge: NudgeAction, new_status: str, session: Session, now: datetime) -> None:
    """
    Move a pending, unexpired nudge to ``new_status``.

    Raises:
        AlreadyProcessedError: If another writer got there first or the nudge has expired
    """
    if nudge.status != "pending":
        raise AlreadyProcessedError(f"Nudge already {nudge.status}")
    if nudge.expires_at <= now:
        raise AlreadyProcessedError("Nudge has expired")

    values = {NudgeAction.status: new_status, NudgeAction.responded_at: now}
    if new_status == "executed":
        values[NudgeAction.executed_at] = now

    updated = session.query(NudgeAction).filter(
        NudgeAction.nudge_id == nudge.nudge_id,
        NudgeAction.status == "pending",
    ).update(values, synchronize_session=False)
    if updated == 0:
        raise AlreadyProcessedError("Nudge already processed")


def _after_response(user_id: str, session: Session, now: datetime) -> None:
    """Behavior-adjustment hook; a failure here never affects the response."""
    try:
        with session.begin_nested():
            adjust_profile_from_behavior(user_id, session, now=now)
    except Exception:
        logger.exception("Behavior adjustment failed for %s", user_id)


def accept_nudge(
    user_id: str,
    nudge_id: str,
    session: Session,
    initiated_by: str = USER,
    now: datetime = None
) -> NudgeAction:
    """
    Accept a nudge and run its financial action.

    The status change, the executor's writes and the impact stamp happen
    inside one savepoint: if the executor fails, all of them roll back
    and the nudge stays pending.

    Args:
        user_id: Caller; must own the nudge
        nudge_id: Nudge to accept
        session: Database session
        initiated_by: "user" for a person, anything else for automation
        now: Reference time

    Returns:
        The executed NudgeAction

    Raises:
        NotFoundError: If the nudge is missing or owned by someone else
        AlreadyProcessedError: If the nudge is no longer pending
        AutopilotLockedError: If automation is locked for the user
        ExecutionError: If the underlying action failed
    """
    if now is None:
        now = utcnow()

    nudge = _load_owned(user_id, nudge_id, session)
    spec = get_spec(nudge.nudge_type)

    with session.begin_nested():
        if initiated_by != USER:
            ensure_autopilot_unlocked(user_id, session)
        _transition(nudge, "executed", session, now)
        result = spec.executor(nudge, session, now) if spec else {}

        nudge.status = "executed"
        nudge.responded_at = now
        nudge.executed_at = now
        nudge.impact = calculate_nudge_impact(nudge.nudge_type, nudge.amount or ZERO)
        if result:
            nudge.nudge_metadata = {**(nudge.nudge_metadata or {}), 'execution': result}
        session.flush()

    logger.info("Nudge %s (%s) executed by %s, impact %s", nudge_id, nudge.nudge_type, initiated_by, nudge.impact)
    _after_response(user_id, session, now)
    return nudge


def reject_nudge(user_id: str, nudge_id: str, session: Session, now: datetime = None) -> NudgeAction:
    """
    Reject a pending nudge.

    Raises:
        NotFoundError: If the nudge is missing or owned by someone else
        AlreadyProcessedError: If the nudge is no longer pending
    """
    if now is None:
        now = utcnow()

    nudge = _load_owned(user_id, nudge_id, session)
    with session.begin_nested():
        _transition(nudge, "rejected", session, now)
        nudge.status = "rejected"
        nudge.responded_at = now
        session.flush()

    logger.info("Nudge %s rejected", nudge_id)
    _after_response(user_id, session, now)
    return nudge


def create_nudge(
    user_id: str,
    session: Session,
    nudge_type: str,
    message: str,
    reason: str,
    expires_at: datetime,
    priority: int = 0,
    amount=None,
    metadata: Optional[Dict] = None,
    idempotency_key: Optional[str] = None,
    auto_accept: bool = True,
    now: datetime = None
) -> Optional[NudgeAction]:
    """
    Persist a new pending nudge, auto-accepting it when the user has enabled that.

    Message and reason are checked by the tone validator; violations are
    kept in metadata for review rather than blocking creation.

    Args:
        user_id: Owner
        session: Database session
        nudge_type: Registered nudge type
        message: User-facing message
        reason: Why the nudge was produced
        expires_at: When the nudge lapses
        priority: 0-10
        amount: Optional amount
        metadata: Type-specific context
        idempotency_key: Unique key for at-most-once creation
        auto_accept: Whether the profile's auto-nudge setting applies
        now: Reference time

    Returns:
        The NudgeAction, or None when one with the same idempotency key already exists

    Raises:
        ValueError: If the nudge type is not registered
    """
    if get_spec(nudge_type) is None:
        raise ValueError(f"Unknown nudge type: {nudge_type}")
    if now is None:
        now = utcnow()

    metadata = dict(metadata or {})
    violations = check_nudge_tone(message, reason)
    if violations:
        metadata['tone_violations'] = violations
        logger.warning("Tone violations in %s nudge for %s: %s", nudge_type, user_id, violations)

    nudge = NudgeAction(
        user_id=user_id,
        nudge_type=nudge_type,
        amount=quantize(amount) if amount is not None else None,
        message=message,
        reason=reason,
        priority=int(priority or 0),
        status="pending",
        created_at=now,
        expires_at=expires_at,
        nudge_metadata=metadata,
        idempotency_key=idempotency_key,
    )

    try:
        with session.begin_nested():
            session.add(nudge)
            session.flush()
    except IntegrityError:
        if idempotency_key is None:
            raise
        logger.info("Nudge %s already exists, skipping", idempotency_key)
        return None

    profile = get_profile(user_id, session)
    if auto_accept and profile is not None and profile.auto_nudge_enabled:
        # A failed auto-accept leaves the nudge pending; creation still succeeds
        try:
            with session.begin_nested():
                accept_nudge(user_id, nudge.nudge_id, session, initiated_by="auto-accept", now=now)
                nudge.nudge_metadata = {**(nudge.nudge_metadata or {}), 'auto_accepted': True}
                session.flush()
        except NudgeEngineError as e:
            logger.warning("Auto-accept failed for nudge %s: %s", nudge.nudge_id, e)
        except Exception:
            logger.exception("Auto-accept crashed for nudge %s", nudge.nudge_id)

    return nudge


def create_from_candidate(
    user_id: str,
    candidate: NudgeCandidate,
    session: Session,
    idempotency_key: Optional[str] = None,
    auto_accept: bool = True,
    now: datetime = None
) -> Optional[NudgeAction]:
    return create_nudge(
        user_id,
        session,
        nudge_type=candidate.type,
        message=candidate.message,
        reason=candidate.reason,
        expires_at=candidate.expires_at,
        priority=candidate.priority,
        amount=candidate.amount,
        metadata=candidate.metadata,
        idempotency_key=idempotency_key,
        auto_accept=auto_accept,
        now=now,
    )


def get_nudge_history(user_id: str, session: Session, limit: int = HISTORY_LIMIT) -> List[NudgeAction]:
    return session.query(NudgeAction).filter(
        NudgeAction.user_id == user_id
    ).order_by(NudgeAction.created_at.desc()).limit(limit).all()


def get_active_nudges(user_id: str, session: Session, now: datetime = None) -> List[NudgeAction]:
    """Pending nudges that have not expired, highest priority first."""
    if now is None:
        now = utcnow()
    return session.query(NudgeAction).filter(
        NudgeAction.user_id == user_id,
        NudgeAction.status == "pending",
        NudgeAction.expires_at > now
    ).order_by(NudgeAction.priority.desc(), NudgeAction.created_at.desc()).all()


def get_nudge_metrics(user_id: str, session: Session, now: datetime = None) -> Dict:
    """
    Counts, acceptance rate and total impact over all of a user's nudges.

    Acceptance rate is executed / total x 100 (0 when there are none).
    Pending nudges past their expiry count as expired.
    """
    if now is None:
        now = utcnow()
    nudges = session.query(NudgeAction).filter(NudgeAction.user_id == user_id).all()

    statuses = [effective_status(n, now) for n in nudges]
    total = len(statuses)
    accepted = statuses.count("executed")
    total_impact = sum((to_decimal(n.impact) for n in nudges if n.impact is not None), ZERO)

    return {
        'total': total,
        'accepted': accepted,
        'rejected': statuses.count("rejected"),
        'pending': statuses.count("pending"),
        'expired': statuses.count("expired"),
        'acceptance_rate': round(accepted / total * 100, 1) if total else 0.0,
        'total_impact': to_float(total_impact),
    }


def expire_stale_nudges(session: Session, now: datetime = None, user_id: Optional[str] = None) -> int:
    """Move pending nudges past their expiry to ``expired``. Returns the number moved."""
    if now is None:
        now = utcnow()
    query = session.query(NudgeAction).filter(
        NudgeAction.status == "pending",
        NudgeAction.expires_at <= now
    )
    if user_id:
        query = query.filter(NudgeAction.user_id == user_id)
    expired = query.update({NudgeAction.status: "expired"}, synchronize_session=False)
    session.flush()
    if expired:
        logger.info("Expired %d stale nudges", expired)
    return expired

