"""
Tests for the Explainability Service and the What-If Simulator
"""

import json
from datetime import timedelta
from decimal import Decimal

import pytest
from conftest import NOW

from nudgecast.errors import NotFoundError, UpstreamUnavailableError
from nudgecast.explain.narrative import complete_json, strip_code_fences
from nudgecast.explain.service import (
    calculate_daily_allowance, derive_risk_level, explain_nudge, explain_risk_score,
    explain_spending_allowance, get_alternative_actions
)
from nudgecast.explain.what_if import compare_scenarios, simulate, simulate_saving, simulate_spending


class FakeGenerator:
    """Returns a canned reply and remembers the prompts it saw."""

    def __init__(self, reply):
        self.reply = reply
        self.prompts = []

    def complete(self, prompt):
        self.prompts.append(prompt)
        return self.reply


class UnavailableGenerator:

    def complete(self, prompt):
        raise UpstreamUnavailableError("Narrative generator unavailable: timeout")


class TestAllowanceMath:
    """Tests for the pure allowance and risk-level helpers."""

    def test_daily_allowance(self):
        assert calculate_daily_allowance(10000, 2000, 30) == Decimal("233")

    def test_allowance_never_negative(self):
        assert calculate_daily_allowance(1500, 5000, 30) == Decimal("0")

    def test_zero_days_means_thirty(self):
        assert calculate_daily_allowance(10000, 2000, 0) == Decimal("233")

    @pytest.mark.parametrize("balance, bills, daily_spend, expected", [
        (0, 0, None, "critical"),
        (1000, 2000, None, "danger"),
        (2500, 2000, None, "caution"),
        (10000, 2000, 500, "caution"),
        (10000, 2000, 100, "safe"),
    ])
    def test_risk_level(self, balance, bills, daily_spend, expected):
        assert derive_risk_level(balance, bills, daily_spend) == expected


class TestExplainNudge:
    """Tests for explain_nudge and its fallbacks."""

    def test_rule_based_explanation(self, session, make_user, add_nudge):
        user = make_user(balance="10000")
        nudge = add_nudge(user, metadata={'risk_context': {'risk_level': "Caution"}})

        result = explain_nudge(user.user_id, nudge.nudge_id, session, now=NOW)

        explanation = result['explanation']
        assert result['source'] == "rules"
        assert result['degraded'] is False
        assert explanation['summary'] == "Created by a test"
        assert explanation['confidence'] == 75
        assert explanation['key_factors'][0] == "Your current balance is ₹10,000"
        assert explanation['counterfactual'].startswith("Skip this save and caution risk sticks around")
        assert result['context']['total_balance'] == 10000.0

    def test_generated_explanation_is_sanitized(self, session, make_user, add_nudge):
        user = make_user()
        nudge = add_nudge(user)
        reply = "```json\n" + json.dumps({
            'detailed': "<b>Because</b> you have room",
            'keyFactors': ["Balance is healthy"],
            'confidence': 90,
        }) + "\n```"
        generator = FakeGenerator(reply)

        result = explain_nudge(user.user_id, nudge.nudge_id, session, generator=generator, now=NOW)

        explanation = result['explanation']
        assert result['source'] == "narrative"
        assert explanation['detailed'] == "&lt;b&gt;Because&lt;/b&gt; you have room"
        assert explanation['key_factors'] == ["Balance is healthy"]
        assert explanation['confidence'] == 90
        assert explanation['alternatives'] == ["Accept this suggestion", "Modify the amount", "Dismiss for now"]
        assert "Nudge Type: auto-save" in generator.prompts[0]

    def test_invalid_json_falls_back(self, session, make_user, add_nudge):
        user = make_user()
        nudge = add_nudge(user)

        result = explain_nudge(user.user_id, nudge.nudge_id, session, generator=FakeGenerator("Sure! Here you go"), now=NOW)

        assert result['source'] == "rules"
        assert result['explanation']['confidence'] == 75

    def test_unavailable_generator_falls_back(self, session, make_user, add_nudge):
        user = make_user()
        nudge = add_nudge(user)

        result = explain_nudge(user.user_id, nudge.nudge_id, session, generator=UnavailableGenerator(), now=NOW)

        assert result['source'] == "rules"

    def test_other_users_nudge(self, session, make_user, add_nudge):
        owner = make_user()
        other = make_user()
        nudge = add_nudge(owner)

        with pytest.raises(NotFoundError):
            explain_nudge(other.user_id, nudge.nudge_id, session, now=NOW)

    def test_save_alternatives_are_sized(self, session, make_user, add_nudge):
        user = make_user()
        nudge = add_nudge(user, "auto-save", amount="1000")

        result = get_alternative_actions(user.user_id, nudge.nudge_id, session)

        assert result['alternatives'][0]['description'] == "Instead of ₹1,000, you could save ₹500 or ₹1,500"

    def test_bill_alternatives(self, session, make_user, add_nudge):
        user = make_user()
        nudge = add_nudge(user, "bill-pay", amount="2000")

        result = get_alternative_actions(user.user_id, nudge.nudge_id, session)

        assert result['alternatives'][0]['action'] == "Pay now"


class TestNarrativeParsing:

    def test_strip_code_fences(self):
        assert strip_code_fences("```json\n{\"a\": 1}\n```") == "{\"a\": 1}"
        assert strip_code_fences("  {\"a\": 1} ") == "{\"a\": 1}"

    def test_non_object_is_rejected(self):
        with pytest.raises(UpstreamUnavailableError):
            complete_json(FakeGenerator("[1, 2]"), "prompt")


class TestAllowanceAndRisk:
    """Tests for the allowance and additive risk explanations."""

    def test_allowance_without_income(self, session, make_user, add_bill):
        user = make_user(balance="20000")
        add_bill(user, 2000, NOW + timedelta(days=3))

        result = explain_spending_allowance(user.user_id, session, now=NOW)

        assert result['allowance'] == 533
        assert result['breakdown']['safety_buffer'] == 2000
        assert result['breakdown']['upcoming_bills'] == 2000
        assert result['breakdown']['days_until_income'] == 30
        assert result['explanation']['summary'] == "Your daily spending allowance is ₹533"

    def test_allowance_counts_days_from_last_income(self, session, make_user, add_transaction):
        user = make_user(balance="20000")
        add_transaction(user, "INCOME", 30000, NOW - timedelta(days=10), "Salary")

        result = explain_spending_allowance(user.user_id, session, now=NOW)

        assert result['breakdown']['days_until_income'] == 20
        assert result['allowance'] == 900

    def test_high_risk_score(self, session, make_user, add_bill):
        user = make_user(balance="3000")
        add_bill(user, 2000, NOW + timedelta(days=2))

        result = explain_risk_score(user.user_id, session, now=NOW)

        assert result['risk_score'] == 50
        assert result['risk_level'] == "high"
        assert [f['factor'] for f in result['risk_factors']] == ["High upcoming bills", "Low balance"]
        assert result['explanation']['recommendations'][0] == "Reduce non-essential spending immediately"

    def test_low_risk_score(self, session, make_user):
        user = make_user(balance="50000")

        result = explain_risk_score(user.user_id, session, now=NOW)

        assert result['risk_score'] == 0
        assert result['risk_level'] == "low"


class TestWhatIf:
    """Tests for the what-if simulator."""

    def test_safe_spend(self, session, make_user):
        user = make_user(balance="20000")

        result = simulate_spending(user.user_id, session, 5000, "Electronics", now=NOW)

        assert result['current']['daily_allowance'] == 1200.0
        assert result['projected']['balance'] == 15000.0
        assert result['projected']['risk_level'] == "low"
        assert result['recommendation'] == "Safe to proceed. You have sufficient buffer"
        assert result['impact']['savings_goal_impact'] == "No active savings goals"

    def test_spend_that_raises_risk(self, session, make_user, add_bill):
        user = make_user(balance="20000")
        add_bill(user, 12000, NOW + timedelta(days=3))

        result = simulate_spending(user.user_id, session, 5000, now=NOW)

        assert result['impact']['risk_change'] == "medium -> high"
        assert result['recommendation'] == "Proceed with caution. This increases your financial risk"

    def test_spend_against_goals(self, session, make_user, add_goal):
        user = make_user(balance="20000")
        add_goal(user, 15000, 5000, NOW + timedelta(days=90), NOW - timedelta(days=10))

        result = simulate_spending(user.user_id, session, 2500, now=NOW)

        assert result['impact']['savings_goal_impact'] == "This spending represents 25.0% of your remaining savings goals"

    def test_saving_that_hits_bills(self, session, make_user, add_bill):
        user = make_user(balance="5000")
        add_bill(user, 4000, NOW + timedelta(days=3))

        result = simulate_saving(user.user_id, session, 2000, now=NOW)

        assert result['impact']['affects_bills'] is True
        assert result['recommendation'] == "Not recommended. This may affect bill payments"

    def test_unknown_type(self, session, make_user):
        user = make_user()

        with pytest.raises(ValueError):
            simulate(user.user_id, session, "lottery", 100, now=NOW)

    def test_compare_picks_best(self, session, make_user):
        user = make_user(balance="20000")

        result = compare_scenarios(user.user_id, session, [
            {'type': "spending", 'amount': 5000, 'name': "Laptop"},
            {'type': "saving", 'amount': 2000, 'name': "Rainy day"},
            {'type': "income", 'amount': 3000, 'name': "Weekend gig"},
            {'type': "lottery", 'amount': 1},
        ], now=NOW)

        assert [s['name'] for s in result['scenarios']] == ["Laptop", "Rainy day", "Weekend gig"]
        assert result['best_scenario'] == "Weekend gig"
        assert result['comparison'][0]['final_balance'] == 15000.0

    def test_compare_nothing(self, session, make_user):
        user = make_user()

        assert compare_scenarios(user.user_id, session, [], now=NOW)['best_scenario'] is None
