"""
Error hierarchy for the nudge engine.

Every domain failure derives from NudgeEngineError so the user-facing
operation layer can turn any of them into a ``{"success": False}`` result
while callers such as auto-accept still see the specific kind.
"""


class NudgeEngineError(Exception):
    """Base exception for all nudge engine errors."""

    error_type = "error"


class UnauthorizedError(NudgeEngineError):
    """Missing or unknown caller identity."""

    error_type = "unauthorized"


class NotFoundError(NudgeEngineError):
    """Entity missing or not owned by the caller."""

    error_type = "not_found"


class AlreadyProcessedError(NudgeEngineError):
    """Nudge is no longer pending."""

    error_type = "already_processed"


class ExecutionError(NudgeEngineError):
    """The financial action behind a nudge could not be carried out."""

    error_type = "execution_failed"


class AutopilotLockedError(ExecutionError):
    """Automated execution attempted while the user's autopilot is locked."""

    error_type = "autopilot_locked"


class UpstreamUnavailableError(NudgeEngineError):
    """Narrative generator or datastore unreachable."""

    error_type = "upstream_unavailable"
