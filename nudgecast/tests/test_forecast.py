"""
Tests for the Cash-Flow Forecast Model

Daily rates, trend, seasonality, confidence, EMI coverage and
safe-to-save sizing.
"""

from datetime import datetime, timedelta
from decimal import Decimal
from types import SimpleNamespace

from nudgecast.features.forecast import (
    calculate_daily_rates, calculate_historical_balance, calculate_safe_to_save, check_emi_at_risk,
    detect_seasonality, detect_trend, evaluate_emi_risk, get_7_day_forecast, predict_cash_flow,
    seasonal_multiplier
)

NOW = datetime(2026, 3, 11, 12, 0, 0)


def txn(txn_type, amount, when, category="Groceries", **extra):
    return SimpleNamespace(
        transaction_id=None,
        type=txn_type,
        amount=Decimal(str(amount)),
        date=when,
        category=category,
        is_recurring=extra.get('is_recurring', False),
        next_recurring_date=extra.get('next_recurring_date'),
    )


class TestPredictCashFlow:
    """Tests for the day-by-day projection."""

    def test_no_history_projects_flat_balance(self):
        forecast = predict_cash_flow([], 5000, days=30, now=NOW)

        assert len(forecast.predictions) == 31
        assert all(p.predicted == Decimal("5000.00") for p in forecast.predictions)
        assert forecast.trend == "stable"
        assert forecast.daily_income == Decimal("0")
        assert forecast.confidence == 20

    def test_steady_spending_declines_linearly(self):
        history = [txn("EXPENSE", 1000, NOW - timedelta(days=i)) for i in range(1, 61)]

        forecast = predict_cash_flow(history, 2000, days=30, now=NOW)

        assert forecast.daily_expense == Decimal("1000.00")
        assert forecast.predictions[0].predicted == Decimal("1000.00")
        assert forecast.predictions[2].predicted == Decimal("-1000.00")
        assert forecast.min_predicted() == forecast.ending_balance()

    def test_bounds_widen_around_prediction(self):
        history = [
            txn("INCOME", 30000, NOW - timedelta(days=20)),
            txn("EXPENSE", 500, NOW - timedelta(days=3)),
            txn("EXPENSE", 800, NOW - timedelta(days=12)),
        ]

        forecast = predict_cash_flow(history, 10000, days=14, now=NOW)

        first = forecast.predictions[0]
        assert first.lower_bound == first.predicted == first.upper_bound
        for point in forecast.predictions:
            assert point.lower_bound <= point.predicted <= point.upper_bound
        assert forecast.predictions[-1].upper_bound - forecast.predictions[-1].lower_bound > 0

    def test_confidence_decays_with_horizon(self):
        history = [txn("EXPENSE", 100, NOW - timedelta(days=i)) for i in range(1, 20)]

        forecast = predict_cash_flow(history, 5000, days=10, now=NOW)

        confidences = [p.confidence for p in forecast.predictions]
        assert confidences == sorted(confidences, reverse=True)
        assert 20 <= forecast.confidence <= 95

    def test_min_predicted_within_window(self):
        history = [txn("EXPENSE", 600, NOW - timedelta(days=i)) for i in range(1, 61)]

        forecast = predict_cash_flow(history, 10000, days=30, now=NOW)

        assert forecast.min_predicted(3) > forecast.min_predicted()

    def test_seven_day_forecast_is_trimmed(self):
        forecast = get_7_day_forecast([], 1000, now=NOW)

        assert len(forecast.predictions) == 7
        assert forecast.predictions[-1].day_offset == 6


class TestRatesAndTrend:
    """Tests for the inputs the projection is built from."""

    def test_daily_rates_use_sixty_day_window(self):
        history = [
            txn("INCOME", 6000, NOW - timedelta(days=10)),
            txn("EXPENSE", 3000, NOW - timedelta(days=20)),
            txn("INCOME", 9999, NOW - timedelta(days=90)),
        ]

        income, expense = calculate_daily_rates(history, NOW)

        assert income == Decimal("100")
        assert expense == Decimal("50")

    def test_trend_improving(self):
        history = [
            txn("INCOME", 1000, NOW - timedelta(days=1)),
            txn("EXPENSE", 200, NOW - timedelta(days=22)),
        ]

        trend, rate = detect_trend(history, NOW)

        assert trend == "improving"
        assert rate == Decimal("300")

    def test_trend_declining(self):
        history = [
            txn("EXPENSE", 1000, NOW - timedelta(days=1)),
            txn("INCOME", 200, NOW - timedelta(days=22)),
        ]

        trend, rate = detect_trend(history, NOW)

        assert trend == "declining"
        assert rate == Decimal("-300")

    def test_small_movement_is_stable(self):
        trend, _ = detect_trend([txn("EXPENSE", 100, NOW - timedelta(days=2))], NOW)
        assert trend == "stable"

    def test_seasonality_buckets(self):
        history = [
            txn("EXPENSE", 200, datetime(2026, 3, 5)),
            txn("EXPENSE", 100, datetime(2026, 2, 15)),
            txn("EXPENSE", 400, datetime(2026, 2, 25)),
            txn("INCOME", 50000, datetime(2026, 3, 1)),
        ]

        seasonal = detect_seasonality(history)

        assert seasonal == {'start': Decimal("200"), 'mid': Decimal("100"), 'end': Decimal("400")}

    def test_seasonal_multiplier(self):
        seasonal = {'start': Decimal("200"), 'mid': None, 'end': None}

        assert seasonal_multiplier(5, seasonal, Decimal("100")) == Decimal("2")
        assert seasonal_multiplier(15, seasonal, Decimal("100")) == Decimal("1")
        assert seasonal_multiplier(25, seasonal, Decimal("100")) == Decimal("1")
        assert seasonal_multiplier(5, seasonal, Decimal("0")) == Decimal("1")


class TestEmiRisk:
    """Tests for the 7-day EMI coverage check."""

    def test_thin_buffer_is_at_risk_without_emis(self):
        risk = evaluate_emi_risk(0, 500)

        assert risk.at_risk is True
        assert risk.shortfall == Decimal("500.00")
        assert risk.upcoming_emis == 0

    def test_no_emis_above_buffer(self):
        risk = evaluate_emi_risk(0, 1000)

        assert risk.at_risk is False
        assert risk.shortfall == Decimal("0")

    def test_shortfall_against_buffer(self):
        risk = evaluate_emi_risk(3000, 2500, upcoming_emis=1)

        assert risk.at_risk is True
        assert risk.shortfall == Decimal("1500.00")

    def test_covered_emis(self):
        risk = evaluate_emi_risk(1000, 5000)

        assert risk.at_risk is False
        assert risk.shortfall == Decimal("0")

    def test_recurring_rent_due_soon(self):
        rent = txn(
            "EXPENSE", 8000, NOW - timedelta(days=27), category="Housing",
            is_recurring=True, next_recurring_date=NOW + timedelta(days=3)
        )

        risk = check_emi_at_risk([rent], 5000, days=7, now=NOW)

        assert risk.at_risk is True
        assert risk.total_emi == Decimal("8000.00")
        assert risk.upcoming_emis == 1

    def test_recurring_outside_window_ignored(self):
        rent = txn(
            "EXPENSE", 8000, NOW - timedelta(days=5), category="Housing",
            is_recurring=True, next_recurring_date=NOW + timedelta(days=20)
        )

        risk = check_emi_at_risk([rent], 5000, days=7, now=NOW)

        assert risk.total_emi == Decimal("0")
        assert risk.at_risk is False


class TestSafeToSave:
    """Tests for calculate_safe_to_save."""

    def test_low_balance(self):
        assert calculate_safe_to_save(500) == Decimal("0")

    def test_within_reserve(self):
        assert calculate_safe_to_save(1800) == Decimal("0")

    def test_five_percent_of_excess(self):
        assert calculate_safe_to_save(5000) == Decimal("150")

    def test_capped(self):
        assert calculate_safe_to_save(20000) == Decimal("500")

    def test_budget_pressure_blocks_saving(self):
        assert calculate_safe_to_save(20000, budget_usage_percent=80) == Decimal("0")
        assert calculate_safe_to_save(20000, budget_usage_percent=70) == Decimal("500")


def test_historical_balance_unwinds_transactions():
    history = [txn("EXPENSE", 300, NOW - timedelta(hours=2)), txn("INCOME", 1000, NOW - timedelta(days=1, hours=1))]

    balances = calculate_historical_balance(history, 5000, days=3, now=NOW)

    assert [b['balance'] for b in balances] == [4300.0, 5300.0, 5000.0]
