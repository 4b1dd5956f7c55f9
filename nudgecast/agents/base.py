"""
Per-user agent loop.

Every scheduled agent walks a list of users, skips those whose autopilot
is locked, commits after each user and keeps going when one user fails.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from nudgecast.guardrails.safety import is_autopilot_locked

logger = logging.getLogger(__name__)


@dataclass
class AgentRun:
    """Result summary of one agent invocation."""
    agent: str
    processed: int = 0
    skipped_locked: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    results: List[Dict] = field(default_factory=list)

    def count(self, key: str) -> int:
        """Number of per-user results carrying a truthy ``key``."""
        return sum(1 for r in self.results if r.get(key))

    def to_dict(self) -> Dict:
        return {
            'agent': self.agent,
            'processed': self.processed,
            'skipped_locked': list(self.skipped_locked),
            'failed': list(self.failed),
            'results': list(self.results),
        }


def run_per_user(
    agent: str,
    session: Session,
    user_ids: Iterable[str],
    handler: Callable[[str], Optional[Dict]]
) -> AgentRun:
    """
    Run ``handler`` once per user in its own transaction.

    Args:
        agent: Agent name, used in logs and the summary
        session: Database session; committed after each user
        user_ids: Users to visit
        handler: Called with a user ID; returns a result dict or None

    Returns:
        AgentRun summary
    """
    run = AgentRun(agent)
    for user_id in user_ids:
        if is_autopilot_locked(user_id, session):
            logger.info("%s skipping %s: autopilot locked", agent, user_id)
            run.skipped_locked.append(user_id)
            continue
        try:
            result = handler(user_id)
            session.commit()
        except Exception:
            session.rollback()
            logger.exception("%s failed for user %s", agent, user_id)
            run.failed.append(user_id)
            continue
        run.processed += 1
        if result:
            run.results.append({'user_id': user_id, **result})

    logger.info(
        "%s finished: %d processed, %d locked, %d failed",
        agent, run.processed, len(run.skipped_locked), len(run.failed)
    )
    return run
