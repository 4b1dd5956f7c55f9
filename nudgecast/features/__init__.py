"""
Feature Engineering Module

Forecasting, risk scoring and rhythm detection over a user's ledger.

Modules:
    - signals: Loads the per-user financial state the rules read
    - forecast: Day-by-day balance projection and EMI coverage
    - risk: Risk score, meter mapping and risk snapshots
    - rhythm: Income and spending rhythm detection
    - forecast_cache: Datastore-backed forecast cache with a TTL
    - window_utils: Date range and time window utilities
"""

from .forecast import predict_cash_flow, Forecast
from .risk import calculate_risk_score, map_risk_to_meter

__all__ = ['predict_cash_flow', 'Forecast', 'calculate_risk_score', 'map_risk_to_meter']
