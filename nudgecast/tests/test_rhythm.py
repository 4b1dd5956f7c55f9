"""
Tests for Income and Spend Rhythm Analysis
"""

from datetime import datetime, timedelta
from decimal import Decimal
from types import SimpleNamespace

from conftest import NOW

from nudgecast.features.rhythm import (
    analyze_rhythm, bucket_hour, detect_cadence, representative_hour, update_rhythm_profile
)
from nudgecast.features.signals import get_profile


def txn(txn_type, amount, when, category="Shopping", txn_id=None):
    return SimpleNamespace(
        transaction_id=txn_id,
        type=txn_type,
        amount=Decimal(str(amount)),
        date=when,
        category=category,
    )


def friday_salaries():
    # Fridays before NOW (Wednesday 11 March 2026)
    return [txn("INCOME", 10000, datetime(2026, 3, 6, 10) - timedelta(days=7 * i), "Salary") for i in range(4)]


class TestRhythmHelpers:
    """Tests for the slot and cadence helpers."""

    def test_bucket_hour(self):
        assert bucket_hour(5) == "dawn"
        assert bucket_hour(6) == "morning"
        assert bucket_hour(16) == "afternoon"
        assert bucket_hour(20) == "evening"
        assert bucket_hour(23) == "late-night"

    def test_representative_hour(self):
        assert representative_hour("evening") == 19
        assert representative_hour(None) == 10

    def test_cadence(self):
        assert detect_cadence([NOW]) == "irregular"
        assert detect_cadence([NOW, NOW + timedelta(days=7)]) == "weekly"
        assert detect_cadence([NOW, NOW + timedelta(days=14)]) == "bi-weekly"
        assert detect_cadence([NOW, NOW + timedelta(days=30)]) == "monthly"
        assert detect_cadence([NOW, NOW + timedelta(days=60)]) == "irregular"


class TestAnalyzeRhythm:
    """Tests for analyze_rhythm."""

    def test_nothing_recent(self):
        assert analyze_rhythm([], now=NOW) is None
        assert analyze_rhythm([txn("EXPENSE", 100, NOW - timedelta(days=200))], now=NOW) is None

    def test_income_rhythm(self):
        rhythm = analyze_rhythm(friday_salaries(), now=NOW)

        income = rhythm['income_rhythm']
        assert income['payday'] == "Friday"
        assert income['cadence'] == "weekly"
        assert income['hour_slot'] == "morning"
        assert income['reliability'] == 100.0
        assert rhythm['optimal_hour'] == 9

    def test_spend_rhythm(self):
        history = [
            # Saturday late night
            txn("EXPENSE", 300, datetime(2026, 3, 7, 22), "Dining"),
            # Monday afternoon
            txn("EXPENSE", 100, datetime(2026, 3, 9, 13), "Groceries"),
        ]

        spend = analyze_rhythm(history, now=NOW)['spend_rhythm']

        assert spend['weekend_share'] == 75.0
        assert spend['late_night_share'] == 75.0
        assert spend['peak_hour_slot'] == "late-night"
        assert spend['top_categories'][0] == {'category': "Dining", 'share': 75.0}
        assert spend['high_risk_days'] == [{'weekday': "Saturday", 'overspend': 50.0}]

    def test_no_income_means_no_income_rhythm(self):
        rhythm = analyze_rhythm([txn("EXPENSE", 100, NOW - timedelta(days=1))], now=NOW)

        assert rhythm['income_rhythm'] is None
        assert rhythm['optimal_hour'] is None

    def test_input_order_does_not_matter(self):
        history = friday_salaries() + [
            txn("EXPENSE", 250, datetime(2026, 3, 7, 22), "Dining", "b"),
            txn("EXPENSE", 250, datetime(2026, 3, 7, 22), "Shopping", "a"),
        ]

        assert analyze_rhythm(history, now=NOW) == analyze_rhythm(list(reversed(history)), now=NOW)


class TestRhythmProfile:
    """Tests for storing rhythm on the profile."""

    def test_update_rhythm_profile(self, session, make_user, add_transaction):
        user = make_user()
        for salary in friday_salaries():
            add_transaction(user, "INCOME", salary.amount, salary.date, "Salary")

        rhythm = update_rhythm_profile(user.user_id, session, now=NOW)

        profile = get_profile(user.user_id, session)
        assert rhythm is not None
        assert profile.income_rhythm['payday'] == "Friday"
        assert profile.optimal_nudge_hour == 9
        assert profile.last_personalization_update == NOW

    def test_no_history_leaves_profile_alone(self, session, make_user):
        user = make_user()

        assert update_rhythm_profile(user.user_id, session, now=NOW) is None
        assert get_profile(user.user_id, session).income_rhythm is None
