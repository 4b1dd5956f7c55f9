"""
Public API Endpoints

User-facing nudge, explanation and forecast endpoints. The caller is
identified by the ``X-User-Id`` header.
"""

from typing import Dict, Optional

from fastapi import APIRouter, Depends, Header, Query
from sqlalchemy.orm import Session

from nudgecast.api.exceptions import OperationFailedError
from nudgecast.api.models import AutoNudgeUpdate, FeedbackCreate, NudgeCreate, WhatIfRequest
from nudgecast.ingest.database import get_session
from nudgecast.nudges import actions

router = APIRouter(prefix="/api", tags=["nudges"])


def get_db_session() -> Session:
    """Dependency to get database session."""
    session = get_session()
    try:
        yield session
    finally:
        session.close()


def get_caller_id(x_user_id: Optional[str] = Header(None)) -> Optional[str]:
    """Caller identity; validation happens in the operation."""
    return x_user_id


def respond(result: Dict) -> Dict:
    """Return a successful envelope, or raise so the app renders the failure."""
    if not result.get('success'):
        raise OperationFailedError(result)
    return result


@router.post("/nudges", status_code=201)
def create_nudge(
    payload: NudgeCreate,
    user_id: Optional[str] = Depends(get_caller_id),
    session: Session = Depends(get_db_session)
) -> Dict:
    """
    Create a nudge for the caller.

    Users with auto-nudge enabled get eligible nudges executed on the
    spot; ``auto_accepted`` says whether that happened.
    """
    return respond(actions.create_nudge(user_id, session, payload.model_dump()))


@router.get("/nudges")
def list_nudges(
    limit: int = Query(50, ge=1, le=200),
    user_id: Optional[str] = Depends(get_caller_id),
    session: Session = Depends(get_db_session)
) -> Dict:
    """Nudge history, newest first."""
    return respond(actions.get_nudge_history(user_id, session, limit=limit))


@router.get("/nudges/active")
def list_active_nudges(
    user_id: Optional[str] = Depends(get_caller_id),
    session: Session = Depends(get_db_session)
) -> Dict:
    return respond(actions.get_active_nudges(user_id, session))


@router.get("/nudges/metrics")
def nudge_metrics(
    user_id: Optional[str] = Depends(get_caller_id),
    session: Session = Depends(get_db_session)
) -> Dict:
    return respond(actions.get_nudge_metrics(user_id, session))


@router.post("/nudges/generate")
def generate_nudges(
    user_id: Optional[str] = Depends(get_caller_id),
    session: Session = Depends(get_db_session)
) -> Dict:
    """Run the rule engine for the caller and persist what the daily cap allows."""
    return respond(actions.generate_and_create_nudges(user_id, session))


@router.post("/nudges/{nudge_id}/accept")
def accept_nudge(
    nudge_id: str,
    user_id: Optional[str] = Depends(get_caller_id),
    session: Session = Depends(get_db_session)
) -> Dict:
    """
    Accept and execute a pending nudge.

    Raises:
        OperationFailedError: 404 for an unknown nudge, 409 when it was
            already processed or autopilot is locked, 422 when execution fails
    """
    return respond(actions.accept_nudge(user_id, session, nudge_id))


@router.post("/nudges/{nudge_id}/reject")
def reject_nudge(
    nudge_id: str,
    user_id: Optional[str] = Depends(get_caller_id),
    session: Session = Depends(get_db_session)
) -> Dict:
    return respond(actions.reject_nudge(user_id, session, nudge_id))


@router.post("/nudges/{nudge_id}/feedback")
def submit_feedback(
    nudge_id: str,
    payload: FeedbackCreate,
    user_id: Optional[str] = Depends(get_caller_id),
    session: Session = Depends(get_db_session)
) -> Dict:
    return respond(actions.submit_feedback(user_id, session, nudge_id, payload.model_dump()))


@router.put("/profile/auto-nudge")
def update_auto_nudge(
    payload: AutoNudgeUpdate,
    user_id: Optional[str] = Depends(get_caller_id),
    session: Session = Depends(get_db_session)
) -> Dict:
    return respond(actions.set_auto_nudge(user_id, session, payload.enabled))


@router.get("/profile/personalization")
def personalization(
    user_id: Optional[str] = Depends(get_caller_id),
    session: Session = Depends(get_db_session)
) -> Dict:
    return respond(actions.get_personalization(user_id, session))


@router.get("/explain/nudges/{nudge_id}")
def explain_nudge(
    nudge_id: str,
    user_id: Optional[str] = Depends(get_caller_id),
    session: Session = Depends(get_db_session)
) -> Dict:
    return respond(actions.explain_nudge(user_id, session, nudge_id))


@router.get("/explain/nudges/{nudge_id}/alternatives")
def alternative_actions(
    nudge_id: str,
    user_id: Optional[str] = Depends(get_caller_id),
    session: Session = Depends(get_db_session)
) -> Dict:
    return respond(actions.get_alternative_actions(user_id, session, nudge_id))


@router.get("/explain/allowance")
def explain_allowance(
    user_id: Optional[str] = Depends(get_caller_id),
    session: Session = Depends(get_db_session)
) -> Dict:
    return respond(actions.explain_spending_allowance(user_id, session))


@router.get("/explain/risk")
def explain_risk(
    user_id: Optional[str] = Depends(get_caller_id),
    session: Session = Depends(get_db_session)
) -> Dict:
    return respond(actions.explain_risk_score(user_id, session))


@router.post("/explain/what-if")
def what_if(
    payload: WhatIfRequest,
    user_id: Optional[str] = Depends(get_caller_id),
    session: Session = Depends(get_db_session)
) -> Dict:
    """Simulate spending, saving or income scenarios and pick the best."""
    scenarios = [s.model_dump(exclude_none=True) for s in payload.scenarios]
    return respond(actions.run_what_if(user_id, session, scenarios))


@router.get("/forecast")
def forecast(
    days: int = Query(30, ge=1, le=90),
    user_id: Optional[str] = Depends(get_caller_id),
    session: Session = Depends(get_db_session)
) -> Dict:
    return respond(actions.get_forecast(user_id, session, days=days))


@router.get("/risk")
def risk(
    user_id: Optional[str] = Depends(get_caller_id),
    session: Session = Depends(get_db_session)
) -> Dict:
    """Persist and return a fresh risk snapshot."""
    return respond(actions.get_risk(user_id, session))


@router.get("/bills/envelopes")
def list_envelopes(
    include_released: bool = Query(False),
    user_id: Optional[str] = Depends(get_caller_id),
    session: Session = Depends(get_db_session)
) -> Dict:
    """Bill envelopes, soonest lock expiry first, with the total held."""
    return respond(actions.list_bill_envelopes(user_id, session, active_only=not include_released))


@router.post("/bills/envelopes/{envelope_id}/release")
def release_envelope(
    envelope_id: str,
    user_id: Optional[str] = Depends(get_caller_id),
    session: Session = Depends(get_db_session)
) -> Dict:
    """
    Release a hold so its cash counts as spendable again.

    Raises:
        OperationFailedError: 404 for an unknown envelope, 409 when it was
            already released
    """
    return respond(actions.release_bill_envelope(user_id, session, envelope_id))
