"""
NudgeCast

Cash-flow forecasting, risk scoring and nudge generation for a personal
finance ledger.
"""

__version__ = "1.0.0"
