"""
User-Facing Nudge Operations

Each operation resolves the caller, runs one unit of work and returns
``{"success": True, ...}`` or ``{"success": False, "error": ...,
"error_type": ...}``. This is the only layer that commits.
"""

import functools
import logging
from typing import Dict, List, Optional

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from nudgecast.errors import (
    AlreadyProcessedError, AutopilotLockedError, NotFoundError, NudgeEngineError, UnauthorizedError
)
from nudgecast.explain import service as explain_service
from nudgecast.explain import what_if as what_if_simulator
from nudgecast.explain.narrative import NarrativeGenerator
from nudgecast.features.forecast_cache import ForecastCache
from nudgecast.features.risk import generate_risk_snapshot
from nudgecast.features.signals import get_or_create_profile, get_profile
from nudgecast.features.window_utils import to_datetime, utcnow
from nudgecast.guardrails import envelopes
from nudgecast.guardrails import feedback as feedback_service
from nudgecast.guardrails.preferences import (
    filter_nudges_by_preference, get_optimal_nudge_time, get_personalization_summary, personalize_nudge,
    should_send_nudge_now
)
from nudgecast.guardrails.safety import is_autopilot_locked
from nudgecast.ingest.schema import BillEnvelope, User
from nudgecast.money import to_float
from nudgecast.nudges import lifecycle
from nudgecast.nudges.engine import generate_nudges

logger = logging.getLogger(__name__)


def require_user(user_id: Optional[str], session: Session) -> User:
    """
    Resolve the caller.

    Raises:
        UnauthorizedError: If no identity was supplied or it is unknown
    """
    if not user_id:
        raise UnauthorizedError("Unauthorized")
    user = session.query(User).filter(User.user_id == user_id).first()
    if user is None:
        raise UnauthorizedError("Unknown user")
    return user


def _failure(message: str, error_type: str) -> Dict:
    return {'success': False, 'error': message, 'error_type': error_type}


def user_operation(func):
    """Wrap an operation with caller resolution, commit/rollback and the result envelope."""
    @functools.wraps(func)
    def wrapper(user_id, session: Session, *args, **kwargs):
        try:
            require_user(user_id, session)
            result = func(user_id, session, *args, **kwargs)
            session.commit()
        except NudgeEngineError as e:
            session.rollback()
            logger.warning("%s failed for %s: %s", func.__name__, user_id, e)
            return _failure(str(e), e.error_type)
        except ValueError as e:
            session.rollback()
            return _failure(str(e), "invalid_request")
        except OperationalError:
            session.rollback()
            logger.exception("Datastore unavailable during %s", func.__name__)
            return _failure("Datastore unavailable", "upstream_unavailable")
        except Exception as e:
            session.rollback()
            logger.exception("%s crashed for %s", func.__name__, user_id)
            return _failure(str(e) or "Internal error", "internal")
        return {'success': True, **result}
    return wrapper


@user_operation
def create_nudge(user_id: str, session: Session, data: Dict) -> Dict:
    """
    Create a nudge from a request payload.

    ``data`` carries type, message, reason, expires_at and optionally
    amount, priority and metadata.
    """
    nudge = lifecycle.create_nudge(
        user_id,
        session,
        nudge_type=data['type'],
        message=data['message'],
        reason=data['reason'],
        expires_at=to_datetime(data['expires_at']),
        priority=data.get('priority') or 0,
        amount=data.get('amount'),
        metadata=data.get('metadata'),
    )
    return {
        'nudge': lifecycle.serialize_nudge(nudge),
        'auto_accepted': nudge.status == "executed",
    }


@user_operation
def accept_nudge(user_id: str, session: Session, nudge_id: str) -> Dict:
    nudge = lifecycle.accept_nudge(user_id, nudge_id, session)
    ForecastCache(session).invalidate(user_id)
    serialized = lifecycle.serialize_nudge(nudge)
    return {'nudge': serialized, 'impact': serialized['impact']}


@user_operation
def reject_nudge(user_id: str, session: Session, nudge_id: str) -> Dict:
    nudge = lifecycle.reject_nudge(user_id, nudge_id, session)
    return {'nudge': lifecycle.serialize_nudge(nudge)}


@user_operation
def get_nudge_history(user_id: str, session: Session, limit: int = lifecycle.HISTORY_LIMIT) -> Dict:
    nudges = lifecycle.get_nudge_history(user_id, session, limit=limit)
    return {'nudges': [lifecycle.serialize_nudge(n) for n in nudges]}


@user_operation
def get_active_nudges(user_id: str, session: Session) -> Dict:
    nudges = lifecycle.get_active_nudges(user_id, session)
    return {'nudges': [lifecycle.serialize_nudge(n) for n in nudges]}


@user_operation
def get_nudge_metrics(user_id: str, session: Session) -> Dict:
    return {'metrics': lifecycle.get_nudge_metrics(user_id, session)}


@user_operation
def generate_and_create_nudges(user_id: str, session: Session) -> Dict:
    """Generate, personalize and persist nudges until the user's daily cap is reached, with the hour to deliver them."""
    now = utcnow()
    candidates = generate_nudges(user_id, session, now=now)
    profile = get_profile(user_id, session)
    candidates = [personalize_nudge(c, profile) for c in filter_nudges_by_preference(candidates, profile)]

    created: List[Dict] = []
    for candidate in candidates:
        allowed, reason = should_send_nudge_now(user_id, session, now=now)
        if not allowed:
            logger.info("Stopping nudge creation for %s: %s", user_id, reason)
            break
        nudge = lifecycle.create_from_candidate(user_id, candidate, session, now=now)
        if nudge is not None:
            created.append(lifecycle.serialize_nudge(nudge))
    return {
        'nudges': created,
        'generated': len(candidates),
        'deliver_at_hour': get_optimal_nudge_time(user_id, session)['hour'],
    }


@user_operation
def submit_feedback(user_id: str, session: Session, nudge_id: str, data: Dict) -> Dict:
    nudge = feedback_service.collect_feedback(
        user_id,
        nudge_id,
        session,
        rating=data.get('rating'),
        was_helpful=data.get('was_helpful'),
        comment=data.get('comment'),
        dismiss_reason=data.get('dismiss_reason'),
    )
    return {'nudge': lifecycle.serialize_nudge(nudge)}


@user_operation
def set_auto_nudge(user_id: str, session: Session, enabled: bool) -> Dict:
    """
    Turn auto-accept on or off.

    Enabling is refused while the user's autopilot is locked.
    """
    if enabled and is_autopilot_locked(user_id, session):
        raise AutopilotLockedError("Automations are locked pending review.")
    profile = get_or_create_profile(user_id, session)
    profile.auto_nudge_enabled = enabled
    session.flush()
    return {'auto_nudge_enabled': enabled}


@user_operation
def get_personalization(user_id: str, session: Session) -> Dict:
    return {
        'summary': get_personalization_summary(user_id, session),
        'insights': feedback_service.get_behavioral_insights(user_id, session),
        'effectiveness': feedback_service.calculate_nudge_effectiveness(user_id, session),
    }


@user_operation
def explain_nudge(user_id: str, session: Session, nudge_id: str, generator: Optional[NarrativeGenerator] = None) -> Dict:
    return explain_service.explain_nudge(user_id, nudge_id, session, generator=generator)


@user_operation
def get_alternative_actions(user_id: str, session: Session, nudge_id: str) -> Dict:
    return explain_service.get_alternative_actions(user_id, nudge_id, session)


@user_operation
def explain_spending_allowance(user_id: str, session: Session) -> Dict:
    return explain_service.explain_spending_allowance(user_id, session)


@user_operation
def explain_risk_score(user_id: str, session: Session) -> Dict:
    return explain_service.explain_risk_score(user_id, session)


@user_operation
def run_what_if(user_id: str, session: Session, scenarios: List[Dict]) -> Dict:
    return what_if_simulator.compare_scenarios(user_id, session, scenarios)


@user_operation
def get_forecast(user_id: str, session: Session, days: int = 30) -> Dict:
    if days < 1 or days > 90:
        raise ValueError("days must be between 1 and 90")
    forecast, assessment = ForecastCache(session).get_or_compute(user_id, days=days)
    return {'forecast': forecast.to_dict(), 'risk': assessment.to_dict()}


@user_operation
def get_risk(user_id: str, session: Session) -> Dict:
    snapshot = generate_risk_snapshot(user_id, session)
    return {
        'risk': {
            'snapshot_id': snapshot.snapshot_id,
            'risk_level': snapshot.risk_level,
            'risk_score': snapshot.risk_score,
            'drivers': snapshot.drivers,
            'created_at': snapshot.created_at.isoformat(),
        },
        'forecast': snapshot.forecast,
    }


@user_operation
def list_bill_envelopes(user_id: str, session: Session, active_only: bool = True) -> Dict:
    """Envelopes for the caller plus the cash active envelopes hold."""
    held = envelopes.list_bill_envelopes(session, user_id, active_only=active_only)
    return {
        'envelopes': [envelopes.serialize_envelope(e) for e in held],
        'protected_total': to_float(envelopes.protected_total(session, user_id)),
    }


@user_operation
def release_bill_envelope(user_id: str, session: Session, envelope_id: str) -> Dict:
    """
    Release one of the caller's active envelopes.

    Raises:
        NotFoundError: If the caller has no such envelope
        AlreadyProcessedError: If it was already released
    """
    if not envelopes.release_bill_envelope(session, user_id, envelope_id):
        exists = session.query(BillEnvelope).filter(
            BillEnvelope.envelope_id == envelope_id,
            BillEnvelope.user_id == user_id,
        ).first()
        if exists is None:
            raise NotFoundError("Envelope not found")
        raise AlreadyProcessedError("Envelope already released")
    envelope = session.query(BillEnvelope).filter(BillEnvelope.envelope_id == envelope_id).one()
    session.refresh(envelope)
    return {'envelope': envelopes.serialize_envelope(envelope)}
