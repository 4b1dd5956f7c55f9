"""
Scheduled Agents

Jobs invoked by an external scheduler or by the ``shortfall.forecasted``
event. Each one is a composition of the forecast, nudge and guardrail
layers, skips users whose autopilot is locked and returns a result
summary for logging.
"""
