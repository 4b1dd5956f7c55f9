"""
Agent runner.

The scheduler's entry point: ``run_agent(name, session, payload)`` runs
one agent and returns its result summary. Also usable from the command
line:

    python -m nudgecast.agents.runner predictive-cash-flow
    python -m nudgecast.agents.runner shortfall-guardian --payload '{"user_id": "user_0001", "risk_level": "high"}'
    python -m nudgecast.agents.runner seed --users 25
"""

import argparse
import json
import logging
import sys
from typing import Callable, Dict, Optional

from sqlalchemy.orm import Session

from nudgecast.agents import daily_sweep, digest, explanations, goal_backstop, guardian, guardrail, maintenance, micro_save, predictive
from nudgecast.agents.events import build_event_bus
from nudgecast.agents.notifications import LoggingNotifier, Notifier
from nudgecast.explain.narrative import default_generator
from nudgecast.features.window_utils import to_datetime

logger = logging.getLogger(__name__)


def _event_agent(handler: Callable) -> Callable:
    def run(session: Session, payload: Dict, notifier: Notifier, now) -> Dict:
        try:
            result = handler(session, payload, now=now)
            session.commit()
        except Exception:
            session.rollback()
            raise
        return result
    return run


AGENTS: Dict[str, Callable] = {
    'predictive-cash-flow': lambda s, p, n, now: predictive.run_predictive_agent(s, bus=build_event_bus(), notifier=n, now=now),
    'shortfall-guardian': _event_agent(guardian.handle_shortfall),
    'micro-save-autopilot': _event_agent(micro_save.handle_shortfall),
    'spending-guardrail': lambda s, p, n, now: guardrail.run_guardrail_agent(s, now=now),
    'goal-backstop': lambda s, p, n, now: goal_backstop.run_goal_backstop_agent(s, now=now),
    'nightly-digest': lambda s, p, n, now: digest.run_digest_agent(s, notifier=n, now=now),
    'explanation-precompute': lambda s, p, n, now: explanations.run_explanation_agent(s, generator=default_generator(), now=now),
    'expiry-sweep': lambda s, p, n, now: maintenance.run_expiry_sweep(s, now=now),
    'emergency-buffer-builder': lambda s, p, n, now: maintenance.run_emergency_buffer_builder(s, now=now),
    'budget-alert': lambda s, p, n, now: maintenance.run_budget_alerts(s, notifier=n, now=now),
    'daily-sweep': lambda s, p, n, now: daily_sweep.run_daily_sweep(s, notifier=n, now=now),
}


def run_agent(
    name: str,
    session: Session,
    payload: Optional[Dict] = None,
    notifier: Optional[Notifier] = None
) -> Dict:
    """
    Run one agent by name.

    Args:
        name: Key of AGENTS
        session: Database session
        payload: Event data for event-driven agents; an optional 'now'
            (ISO timestamp) pins the reference time
        notifier: Alert sender (logs only if None)

    Returns:
        Result summary dict

    Raises:
        ValueError: If the agent name is unknown
    """
    if name not in AGENTS:
        raise ValueError(f"Unknown agent: {name}")
    payload = dict(payload or {})
    now = to_datetime(payload.pop('now')) if payload.get('now') else None
    result = AGENTS[name](session, payload, notifier or LoggingNotifier(), now)
    summary = result.to_dict() if hasattr(result, 'to_dict') else result
    logger.info("Agent %s done", name)
    return summary


def main():
    from nudgecast.ingest.database import get_session, init_database
    from nudgecast.ingest.generators import seed_database
    from nudgecast.logging_config import setup_logging

    parser = argparse.ArgumentParser(description="Run NudgeCast scheduled agents")
    parser.add_argument("command", choices=sorted(AGENTS) + ["init-db", "seed"], help="Agent to run, or a database command")
    parser.add_argument("--payload", type=str, help="JSON event payload for event-driven agents")
    parser.add_argument("--db-url", type=str, help="Database URL (defaults to NUDGECAST_DATABASE_URL)")
    parser.add_argument("--users", type=int, default=25, help="Number of users to create with 'seed'")
    parser.add_argument("--drop", action="store_true", help="Drop existing tables with 'init-db'")
    args = parser.parse_args()

    setup_logging()
    engine = init_database(args.db_url, drop_existing=args.drop and args.command == "init-db")
    if args.command == "init-db":
        return 0

    session = get_session(engine)
    try:
        if args.command == "seed":
            created = seed_database(session, count=args.users)
            print(f"Seeded {len(created)} users")
            return 0
        payload = json.loads(args.payload) if args.payload else None
        summary = run_agent(args.command, session, payload)
        print(json.dumps(summary, indent=2, default=str))
    finally:
        session.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
