"""
In-process event bus.

Stands in for the scheduler's event delivery: the predictive agent
publishes ``shortfall.forecasted`` and the guardian and micro-save
agents react to it. Each handler runs in its own savepoint so one
failing handler does not undo another's work.
"""

import logging
from collections import defaultdict
from datetime import datetime
from typing import Callable, Dict, List

from sqlalchemy.orm import Session

from nudgecast.agents import guardian, micro_save

logger = logging.getLogger(__name__)

SHORTFALL_FORECASTED = "shortfall.forecasted"

EventHandler = Callable[..., Dict]


class EventBus:
    """Name-keyed handler registry."""

    def __init__(self):
        self._handlers: Dict[str, List[EventHandler]] = defaultdict(list)

    def subscribe(self, name: str, handler: EventHandler) -> None:
        self._handlers[name].append(handler)

    def handlers(self, name: str) -> List[EventHandler]:
        return list(self._handlers.get(name, []))

    def publish(self, name: str, session: Session, payload: Dict, now: datetime = None) -> List[Dict]:
        """
        Deliver an event to every subscriber.

        Args:
            name: Event name
            session: Database session shared with the publisher
            payload: Event data
            now: Reference time passed to handlers

        Returns:
            One result dict per handler; failed handlers report an 'error'
        """
        results = []
        for handler in self.handlers(name):
            handler_name = getattr(handler, '__module__', repr(handler)).rsplit('.', 1)[-1]
            try:
                with session.begin_nested():
                    result = handler(session, payload, now=now) or {}
            except Exception as e:
                logger.exception("Handler %s failed for %s", handler_name, name)
                result = {'error': str(e) or e.__class__.__name__}
            results.append({'handler': handler_name, **result})
        return results


def build_event_bus() -> EventBus:
    """Bus with the default subscribers wired up."""
    bus = EventBus()
    bus.subscribe(SHORTFALL_FORECASTED, guardian.handle_shortfall)
    bus.subscribe(SHORTFALL_FORECASTED, micro_save.handle_shortfall)
    return bus
