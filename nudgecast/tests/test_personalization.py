"""
Tests for personalization, feedback, behavior learning, autopilot safety
and tone validation.
"""

from datetime import timedelta
from decimal import Decimal
from types import SimpleNamespace

import pytest
from conftest import NOW

from nudgecast.errors import AutopilotLockedError, NotFoundError
from nudgecast.features.signals import get_profile
from nudgecast.guardrails.envelopes import (
    list_bill_envelopes, protect_bill_envelope, protected_total, release_bill_envelope
)
from nudgecast.guardrails.feedback import (
    calculate_nudge_effectiveness, calculate_optimal_nudge_hour, collect_feedback, get_behavioral_insights
)
from nudgecast.guardrails.preferences import (
    filter_nudges_by_preference, get_optimal_nudge_time, get_personalization_summary, personalize_nudge,
    predict_nudge_success, should_send_nudge_now
)
from nudgecast.guardrails.safety import (
    ensure_autopilot_unlocked, evaluate_agent_output, get_safety_state, is_autopilot_locked, lock_autopilot,
    reset_autopilot
)
from nudgecast.guardrails.tone import check_nudge_tone, sanitize_structure, sanitize_text, validate_tone
from nudgecast.nudges.behavior import (
    adjust_profile_from_behavior, analyze_nudge_behavior, get_personalized_nudge_settings
)
from nudgecast.nudges.engine import NudgeCandidate


def candidate(nudge_type, priority, message="Save ₹500 now?"):
    return NudgeCandidate(
        type=nudge_type,
        message=message,
        reason="Test",
        priority=priority,
        expires_at=NOW + timedelta(days=1),
    )


def profile(**fields):
    values = {
        'preferred_nudge_types': [],
        'disliked_nudge_types': [],
        'nudge_frequency_preference': "NORMAL",
        'spending_style': None,
    }
    values.update(fields)
    return SimpleNamespace(**values)


class TestPreferenceFilter:
    """Tests for filter_nudges_by_preference and personalize_nudge."""

    def test_no_profile_keeps_everything(self):
        nudges = [candidate("auto-save", 1), candidate("bill-pay", 9)]

        assert filter_nudges_by_preference(nudges, None) == nudges

    def test_disliked_types_dropped(self):
        nudges = [candidate("auto-save", 4), candidate("spending-alert", 2)]

        kept = filter_nudges_by_preference(nudges, profile(disliked_nudge_types=["spending-alert"]))

        assert [n.type for n in kept] == ["auto-save"]

    def test_low_frequency_needs_priority_five(self):
        nudges = [candidate("auto-save", 4), candidate("bill-pay", 5)]

        kept = filter_nudges_by_preference(nudges, profile(nudge_frequency_preference="LOW"))

        assert [n.type for n in kept] == ["bill-pay"]

    def test_preferred_types_rank_first(self):
        nudges = [candidate("bill-guard", 6), candidate("auto-save", 3), candidate("bill-pay", 5)]

        ranked = filter_nudges_by_preference(nudges, profile(preferred_nudge_types=["auto-save"]))

        assert [n.type for n in ranked] == ["auto-save", "bill-guard", "bill-pay"]

    def test_cautious_copy(self):
        nudge = personalize_nudge(candidate("auto-save", 4), profile(spending_style="CAUTIOUS"))

        assert nudge.message == "Save ₹500 now? This is a safe amount that won't affect your daily needs."
        assert nudge.priority == 4

    def test_impulsive_copy(self):
        nudge = personalize_nudge(candidate("auto-save", 4), profile(spending_style="IMPULSIVE"))

        assert nudge.message.endswith(" Act now to secure your future!")

    def test_preferred_type_is_marked(self):
        original = candidate("auto-save", 4)

        nudge = personalize_nudge(original, profile(preferred_nudge_types=["auto-save"]))

        assert nudge.metadata['personalization_reason'] == "You respond well to this type of nudge"
        assert original.metadata == {}

    def test_no_profile_is_not_personalized(self):
        assert personalize_nudge(candidate("auto-save", 4), None).metadata == {'personalized': False}


class TestFrequencyAndPrediction:

    def test_daily_cap_for_low_frequency(self, session, make_user, add_nudge):
        user = make_user(frequency="LOW")
        add_nudge(user, created_at=NOW - timedelta(hours=2))

        allowed, _ = should_send_nudge_now(user.user_id, session, now=NOW)
        assert allowed is True

        add_nudge(user, created_at=NOW - timedelta(hours=1))
        allowed, reason = should_send_nudge_now(user.user_id, session, now=NOW)

        assert allowed is False
        assert reason == "User prefers low frequency (max 2 per day)"

    def test_old_nudges_do_not_count(self, session, make_user, add_nudge):
        user = make_user(frequency="LOW")
        for _ in range(3):
            add_nudge(user, created_at=NOW - timedelta(hours=30))

        allowed, _ = should_send_nudge_now(user.user_id, session, now=NOW)

        assert allowed is True

    def test_prediction_without_history(self, session, make_user):
        user = make_user()

        prediction = predict_nudge_success(user.user_id, "auto-save", session)

        assert prediction['probability'] == 0.5
        assert prediction['confidence'] == "low"

    def test_prediction_from_history(self, session, make_user, add_nudge):
        user = make_user()
        add_nudge(user, status="executed")
        add_nudge(user, status="rejected")

        prediction = predict_nudge_success(user.user_id, "auto-save", session)

        assert prediction['probability'] == 0.5
        assert prediction['sample_size'] == 2


class TestFeedback:
    """Tests for collect_feedback and the derived profile."""

    def test_positive_feedback_prefers_type(self, session, make_user, add_nudge):
        user = make_user()
        nudge = add_nudge(user, "micro-save")

        collect_feedback(user.user_id, nudge.nudge_id, session, rating=5, now=NOW)

        saved = get_profile(user.user_id, session)
        assert saved.preferred_nudge_types == ["micro-save"]
        assert saved.last_personalization_update == NOW

    def test_negative_feedback_moves_type_to_disliked(self, session, make_user, add_nudge):
        user = make_user()
        first = add_nudge(user, "spending-alert")
        second = add_nudge(user, "spending-alert")
        collect_feedback(user.user_id, first.nudge_id, session, was_helpful=True, now=NOW)

        collect_feedback(user.user_id, second.nudge_id, session, rating=1, dismiss_reason="Not relevant", now=NOW)

        saved = get_profile(user.user_id, session)
        assert saved.preferred_nudge_types == []
        assert saved.disliked_nudge_types == ["spending-alert"]
        assert second.dismiss_reason == "Not relevant"

    def test_neutral_rating_changes_nothing(self, session, make_user, add_nudge):
        user = make_user()
        nudge = add_nudge(user)

        collect_feedback(user.user_id, nudge.nudge_id, session, rating=3, now=NOW)

        saved = get_profile(user.user_id, session)
        assert saved.preferred_nudge_types == []
        assert saved.disliked_nudge_types == []

    def test_feedback_on_unknown_nudge(self, session, make_user):
        user = make_user()

        with pytest.raises(NotFoundError):
            collect_feedback(user.user_id, "nudge_missing", session, rating=5, now=NOW)

    def test_optimal_hour_from_positive_responses(self, session, make_user, add_nudge):
        user = make_user()
        add_nudge(user, status="executed", responded_at=NOW.replace(hour=19))
        add_nudge(user, status="executed", responded_at=NOW.replace(hour=19))
        add_nudge(user, status="executed", responded_at=NOW.replace(hour=8))
        add_nudge(user, status="rejected", responded_at=NOW.replace(hour=8))

        assert calculate_optimal_nudge_hour(user.user_id, session) == 19

    def test_effectiveness_by_type(self, session, make_user, add_nudge):
        user = make_user()
        add_nudge(user, "auto-save", status="executed", feedback_rating=5)
        add_nudge(user, "auto-save", status="rejected", feedback_rating=3)
        add_nudge(user, "bill-pay", status="executed")

        report = calculate_nudge_effectiveness(user.user_id, session, now=NOW)

        assert report['by_type']['auto-save']['acceptance_rate'] == 50.0
        assert report['by_type']['auto-save']['avg_rating'] == 4.0
        assert report['by_type']['bill-pay']['acceptance_rate'] == 100.0
        assert report['overall']['total'] == 3

    def test_behavioral_insights(self, session, make_user, add_nudge):
        user = make_user()
        add_nudge(user, "bill-pay", status="executed")
        add_nudge(user, "auto-save", status="rejected")

        insights = get_behavioral_insights(user.user_id, session, now=NOW)

        assert insights['has_data'] is True
        assert insights['most_effective_type'] == "bill-pay"
        assert insights['least_effective_type'] == "auto-save"

    def test_personalization_summary(self, session, make_user):
        user = make_user()
        bare = make_user(profile=False)

        assert get_personalization_summary(user.user_id, session)['is_personalized'] is False
        assert get_personalization_summary(bare.user_id, session)['message'] == (
            "Start providing feedback to personalize your experience!"
        )


class TestBehavior:
    """Tests for behavior-derived settings and profile traits."""

    def test_no_history_is_neutral(self, session, make_user):
        user = make_user()

        behavior = analyze_nudge_behavior(user.user_id, session, now=NOW)

        assert behavior['aggressiveness'] == "neutral"
        assert get_personalized_nudge_settings(user.user_id, session, now=NOW) == {
            'max_nudges_per_day': 3, 'priority_threshold': 5, 'timing': "morning", 'prefer_summaries': False
        }

    def test_ignored_nudges_turn_conservative(self, session, make_user, add_nudge):
        user = make_user()
        for hours in range(1, 6):
            add_nudge(
                user,
                created_at=NOW - timedelta(days=2, hours=hours),
                expires_at=NOW - timedelta(days=1, hours=hours)
            )

        behavior = analyze_nudge_behavior(user.user_id, session, now=NOW)
        settings = get_personalized_nudge_settings(user.user_id, session, now=NOW)

        assert behavior['aggressiveness'] == "conservative"
        assert behavior['recent_ignores'] == 5
        assert settings['max_nudges_per_day'] == 1
        assert settings['priority_threshold'] == 8
        assert settings['prefer_summaries'] is True

    def test_high_acceptance_is_aggressive(self, session, make_user, add_nudge):
        user = make_user()
        for _ in range(4):
            add_nudge(user, status="executed", created_at=NOW - timedelta(days=1))

        assert analyze_nudge_behavior(user.user_id, session, now=NOW)['aggressiveness'] == "aggressive"

    def test_profile_adjustment(self, session, make_user, add_nudge):
        user = make_user(auto_nudge=True)
        for _ in range(3):
            add_nudge(user, status="rejected", created_at=NOW - timedelta(days=1))

        result = adjust_profile_from_behavior(user.user_id, session, now=NOW)

        assert result['updates'] == {'risk_tolerance': "LOW", 'spending_style': "CAUTIOUS"}
        saved = get_profile(user.user_id, session)
        assert saved.auto_nudge_enabled is True


class TestOptimalNudgeTime:
    """Tests for get_optimal_nudge_time and its use in the summary."""

    def test_defaults_to_morning(self, session, make_user):
        user = make_user()
        bare = make_user(profile=False)

        assert get_optimal_nudge_time(user.user_id, session)['hour'] == 9
        assert get_optimal_nudge_time(bare.user_id, session)['hour'] == 9
        assert get_personalization_summary(bare.user_id, session)['optimal_time']['hour'] == 9

    def test_learned_hour_wins(self, session, make_user):
        user = make_user()
        get_profile(user.user_id, session).optimal_nudge_hour = 20
        session.commit()

        timing = get_optimal_nudge_time(user.user_id, session)
        summary = get_personalization_summary(user.user_id, session)

        assert timing == {'hour': 20, 'reason': "You typically respond well at this time"}
        assert summary['optimal_time'] == timing
        assert summary['is_personalized'] is True


class TestBillEnvelopes:
    """Tests for protecting, listing and releasing bill envelopes."""

    def test_list_and_total(self, session, make_user, add_bill):
        user = make_user()
        rent = add_bill(user, 8000, NOW + timedelta(days=6), name="Rent")
        power = add_bill(user, 1500, NOW + timedelta(days=2))
        protect_bill_envelope(session, user.user_id, 8000, bill_id=rent.bill_id, due_date=rent.next_due_date, now=NOW)
        protect_bill_envelope(session, user.user_id, 1500, bill_id=power.bill_id, due_date=power.next_due_date, now=NOW)

        held = list_bill_envelopes(session, user.user_id)

        assert [e.bill_id for e in held] == [power.bill_id, rent.bill_id]
        assert protected_total(session, user.user_id) == Decimal("9500.00")

    def test_top_up_keeps_one_envelope(self, session, make_user, add_bill):
        user = make_user()
        bill = add_bill(user, 2000, NOW + timedelta(days=3))
        protect_bill_envelope(session, user.user_id, 1500, bill_id=bill.bill_id, due_date=bill.next_due_date, now=NOW)
        protect_bill_envelope(session, user.user_id, 2000, bill_id=bill.bill_id, due_date=bill.next_due_date, now=NOW)

        held = list_bill_envelopes(session, user.user_id)

        assert len(held) == 1
        assert held[0].protected_amount == Decimal("2000.00")

    def test_release_once(self, session, make_user, add_bill):
        user = make_user()
        other = make_user()
        bill = add_bill(user, 2000, NOW + timedelta(days=3))
        envelope = protect_bill_envelope(session, user.user_id, 2000, bill_id=bill.bill_id, now=NOW)

        assert release_bill_envelope(session, other.user_id, envelope.envelope_id, now=NOW) is False
        assert release_bill_envelope(session, user.user_id, envelope.envelope_id, now=NOW) is True
        assert release_bill_envelope(session, user.user_id, envelope.envelope_id, now=NOW) is False

        assert list_bill_envelopes(session, user.user_id) == []
        assert len(list_bill_envelopes(session, user.user_id, active_only=False)) == 1
        assert protected_total(session, user.user_id) == Decimal("0")

    def test_needs_a_subject(self, session, make_user):
        user = make_user()

        with pytest.raises(ValueError):
            protect_bill_envelope(session, user.user_id, 500, now=NOW)


class TestAutopilotSafety:
    """Tests for the watchdog and the per-user lock."""

    def test_clean_output_does_not_lock(self, session, make_user):
        user = make_user()

        verdict = evaluate_agent_output(user.user_id, session, summary="Saved ₹200 to buffer", tokens=300, now=NOW)

        assert verdict == {'anomalies': [], 'risk_score': 0.0, 'locked': False}
        assert is_autopilot_locked(user.user_id, session) is False

    def test_two_anomalies_lock(self, session, make_user):
        user = make_user()

        verdict = evaluate_agent_output(
            user.user_id, session, summary="Please TRANSFER ALL FUNDS now", tokens=5000, now=NOW
        )

        assert verdict['anomalies'] == ["suspicious-transfer-language", "token-spike"]
        assert verdict['locked'] is True
        assert is_autopilot_locked(user.user_id, session) is True
        with pytest.raises(AutopilotLockedError):
            ensure_autopilot_unlocked(user.user_id, session)

    def test_one_anomaly_is_not_enough(self, session, make_user):
        user = make_user()

        verdict = evaluate_agent_output(user.user_id, session, summary="transfer all funds", now=NOW)

        assert verdict['locked'] is False

    def test_cost_spike_locks(self, session, make_user):
        user = make_user()

        verdict = evaluate_agent_output(user.user_id, session, summary="ok", cost=9, now=NOW)

        assert verdict['locked'] is True
        assert get_safety_state(user.user_id, session).reason == "cost-spike"

    def test_reset(self, session, make_user):
        user = make_user()
        lock_autopilot(user.user_id, session, "manual review", now=NOW)

        reset_autopilot(user.user_id, session, context={'reviewed_by': "ops"}, now=NOW)

        assert is_autopilot_locked(user.user_id, session) is False
        ensure_autopilot_unlocked(user.user_id, session)


class TestTone:
    """Tests for tone validation and narrative sanitizing."""

    def test_supportive_copy_passes(self):
        is_valid, violations = validate_tone("Consider setting aside ₹200 this week.")

        assert is_valid is True
        assert violations == []

    def test_shaming_copy_fails(self):
        is_valid, violations = validate_tone("You're overspending and that leads to financial ruin")

        assert is_valid is False
        assert violations == ["You're overspending", "financial ruin"]

    def test_violations_across_message_and_reason(self):
        assert check_nudge_tone("You must act", "you MUST act") == ["You must", "you MUST"]

    def test_sanitize_text(self):
        assert sanitize_text("Hi <script>alert(1)</script>there") == "Hi there"
        assert sanitize_text("a < b") == "a &lt; b"

    def test_sanitize_structure(self):
        cleaned = sanitize_structure({'summary': "<b>Save</b>", 'factors': ["javascript:go()"], 'score': 75})

        assert cleaned == {'summary': "&lt;b&gt;Save&lt;/b&gt;", 'factors': ["go()"], 'score': 75}
