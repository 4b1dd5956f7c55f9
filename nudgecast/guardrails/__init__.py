"""
Guardrails System

Tone validation, preference filtering, feedback learning, bill envelopes
and the autopilot watchdog.
"""

from .tone import validate_tone
from .safety import is_autopilot_locked

__all__ = ['validate_tone', 'is_autopilot_locked']
