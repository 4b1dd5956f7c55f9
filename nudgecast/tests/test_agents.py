"""
Tests for the scheduled and event-driven agents.
"""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from conftest import NOW, default_account

from nudgecast.agents import daily_sweep, digest, goal_backstop, guardian, guardrail, maintenance, micro_save
from nudgecast.agents.base import run_per_user
from nudgecast.agents.events import SHORTFALL_FORECASTED, EventBus
from nudgecast.agents.explanations import run_explanation_agent
from nudgecast.agents.notifications import RecordingNotifier
from nudgecast.agents.predictive import run_predictive_agent, shortfall_risk_level
from nudgecast.agents.runner import run_agent
from nudgecast.guardrails.safety import lock_autopilot
from nudgecast.ingest.schema import Account, Budget, NudgeAction, Transaction


def nudges_of(session, user, nudge_type):
    return session.query(NudgeAction).filter(
        NudgeAction.user_id == user.user_id,
        NudgeAction.nudge_type == nudge_type
    ).all()


def shortfall(user, level="high", **extra):
    payload = {
        'user_id': user.user_id,
        'risk_level': level,
        'predicted_balance': 500,
        'confidence': 70,
        'summary': "Balance trending down",
        'generated_at': NOW.isoformat(),
    }
    payload.update(extra)
    return payload


class TestPerUserLoop:
    """Tests for run_per_user."""

    def test_failures_and_locks_are_isolated(self, session, make_user):
        healthy = make_user()
        broken = make_user()
        locked = make_user()
        lock_autopilot(locked.user_id, session, "review", now=NOW)
        session.commit()

        def handler(user_id):
            if user_id == broken.user_id:
                raise RuntimeError("bad data")
            return {'ok': True}

        run = run_per_user("test-agent", session, [healthy.user_id, broken.user_id, locked.user_id], handler)

        assert run.processed == 1
        assert run.failed == [broken.user_id]
        assert run.skipped_locked == [locked.user_id]
        assert run.results == [{'user_id': healthy.user_id, 'ok': True}]


class TestEventBus:

    def test_failing_handler_does_not_stop_others(self, session, make_user):
        user = make_user()
        bus = EventBus()

        def writes_then_fails(session, payload, now=None):
            session.add(Budget(user_id=payload['user_id'], amount=Decimal("5000"), created_at=NOW))
            session.flush()
            raise RuntimeError("boom")

        def succeeds(session, payload, now=None):
            return {'ok': True}

        bus.subscribe(SHORTFALL_FORECASTED, writes_then_fails)
        bus.subscribe(SHORTFALL_FORECASTED, succeeds)

        results = bus.publish(SHORTFALL_FORECASTED, session, {'user_id': user.user_id}, now=NOW)

        assert results[0]['error'] == "boom"
        assert results[1]['ok'] is True
        assert session.query(Budget).filter(Budget.user_id == user.user_id).count() == 0

    def test_no_subscribers(self, session):
        assert EventBus().publish("nothing.happened", session, {}) == []


class TestShortfallGuardian:
    """Tests for guardian.handle_shortfall."""

    def test_creates_then_refreshes(self, session, make_user, add_bill):
        user = make_user(balance="3000")
        due = NOW + timedelta(days=4)
        add_bill(user, 2500, due)

        first = guardian.handle_shortfall(session, shortfall(user), now=NOW)
        nudge = session.query(NudgeAction).filter(NudgeAction.nudge_id == first['created']).one()

        assert nudge.nudge_type == "guardian-alert"
        assert nudge.priority == 8
        assert nudge.amount == Decimal("2000.00")
        assert nudge.expires_at == due
        assert nudge.message == "Electricity of ₹2,500 is due soon. Buffer looks thin."
        assert nudge.status == "pending"

        second = guardian.handle_shortfall(session, shortfall(user, level="critical"), now=NOW + timedelta(hours=2))

        assert second == {'updated': nudge.nudge_id}
        assert nudge.priority == 10
        assert len(nudges_of(session, user, "guardian-alert")) == 1

    def test_new_window_creates_another(self, session, make_user):
        user = make_user(balance="3000")
        guardian.handle_shortfall(session, shortfall(user), now=NOW)

        later = guardian.handle_shortfall(session, shortfall(user), now=NOW + timedelta(hours=7))

        assert 'created' in later
        assert len(nudges_of(session, user, "guardian-alert")) == 2

    def test_skips(self, session, make_user):
        user = make_user()
        locked = make_user()
        lock_autopilot(locked.user_id, session, "review", now=NOW)

        assert guardian.handle_shortfall(session, {'risk_level': "high"}, now=NOW) == {'skipped': "missing-user-id"}
        assert guardian.handle_shortfall(session, shortfall(user, level="low"), now=NOW) == {'skipped': "low-risk"}
        assert guardian.handle_shortfall(session, {'user_id': "ghost", 'risk_level': "high"}, now=NOW) == {
            'skipped': "user-not-found"
        }
        assert guardian.handle_shortfall(session, shortfall(locked), now=NOW) == {'skipped': "autopilot-locked"}


class TestMicroSave:
    """Tests for micro_save.handle_shortfall."""

    def test_capped_micro_save_executes(self, session, make_user):
        user = make_user(balance="20000", auto_nudge=True, frequency="LOW")

        result = micro_save.handle_shortfall(session, shortfall(user), now=NOW)

        assert result['amount'] == 200.0
        nudge = session.query(NudgeAction).filter(NudgeAction.nudge_id == result['executed']).one()
        assert nudge.status == "executed"
        assert nudge.nudge_metadata['guardrails']['daily_cap'] == 200.0
        assert default_account(session, user).balance == Decimal("19800.00")

    def test_daily_cap_is_respected(self, session, make_user):
        user = make_user(balance="20000", auto_nudge=True, frequency="LOW")
        micro_save.handle_shortfall(session, shortfall(user), now=NOW)

        again = micro_save.handle_shortfall(
            session, shortfall(user, generated_at=(NOW + timedelta(hours=1)).isoformat()), now=NOW + timedelta(hours=1)
        )

        assert again == {'skipped': "guardrail-cap-hit"}

    def test_requires_auto_nudge(self, session, make_user):
        user = make_user(balance="20000")

        assert micro_save.handle_shortfall(session, shortfall(user), now=NOW) == {'skipped': "auto-nudge-disabled"}

    def test_low_risk_is_ignored(self, session, make_user):
        user = make_user(balance="20000", auto_nudge=True)

        assert micro_save.handle_shortfall(session, shortfall(user, level="low"), now=NOW) == {
            'skipped': "low-risk-or-missing-user"
        }


class TestPredictiveAgent:
    """Tests for the daily forecast agent."""

    def test_risk_level_mapping(self):
        assert shortfall_risk_level("Danger", Decimal("-1")) == "critical"
        assert shortfall_risk_level("Danger", Decimal("10")) == "high"
        assert shortfall_risk_level("Caution", Decimal("10")) == "medium"
        assert shortfall_risk_level("Safe", Decimal("10")) == "low"

    def test_projected_overdraft(self, session, make_user, add_transaction):
        user = make_user(balance="2000")
        for day in range(1, 61):
            add_transaction(user, "EXPENSE", 1000, NOW - timedelta(days=day))
        received = []
        bus = EventBus()
        bus.subscribe(SHORTFALL_FORECASTED, lambda session, payload, now=None: received.append(payload) or {})
        notifier = RecordingNotifier()

        run = run_predictive_agent(session, bus=bus, notifier=notifier, now=NOW)

        result = run.results[0]
        assert result['risk_level'] == "critical"
        assert result['event_emitted'] is True
        assert received[0]['user_id'] == user.user_id
        emergency = session.query(NudgeAction).filter(NudgeAction.nudge_id == result['emergency_nudge']).one()
        assert emergency.nudge_type == "emergency-buffer"
        assert emergency.priority == 10
        assert len(notifier.of_type("predictive-alert")) == 1

    def test_steady_user_is_quiet(self, session, make_user, add_transaction):
        make_user(balance="50000")
        user = make_user(balance="50000")
        add_transaction(user, "EXPENSE", 100, NOW - timedelta(days=3))
        notifier = RecordingNotifier()

        run = run_predictive_agent(session, bus=EventBus(), notifier=notifier, now=NOW)

        assert run.processed == 1
        assert run.results[0]['event_emitted'] is False
        assert run.results[0]['emergency_nudge'] is None
        assert notifier.sent == []


class TestSpendingGuardrail:
    """Tests for guardrail.check_user."""

    def _accelerating_shopping(self, user, add_transaction):
        for days_ago in (10, 15, 20, 25):
            add_transaction(user, "EXPENSE", 1000, NOW - timedelta(days=days_ago), "Shopping")
        for days_ago in (1, 2):
            add_transaction(user, "EXPENSE", 1500, NOW - timedelta(days=days_ago), "Shopping")

    def test_acceleration_raises_nudge_and_locks_budget(self, session, make_user, add_transaction):
        user = make_user(auto_nudge=True, budget="20000")
        self._accelerating_shopping(user, add_transaction)

        result = guardrail.check_user(user.user_id, session, NOW)

        assert result['nudges_created'] == 1
        nudge = nudges_of(session, user, "spending-guardrail")[0]
        assert nudge.message == "Guardrail: Shopping spend up 200% this week"
        assert nudge.amount == Decimal("3000.00")
        assert nudge.nudge_metadata['guardrail']['clamp_plan'] == 1200.0
        assert nudge.nudge_metadata['automation']['lock_applied'] is True
        budget = session.query(Budget).filter(Budget.user_id == user.user_id).one()
        assert budget.is_locked is True

    def test_recent_nudge_suppresses_category(self, session, make_user, add_transaction):
        user = make_user(budget="20000")
        self._accelerating_shopping(user, add_transaction)
        guardrail.check_user(user.user_id, session, NOW)

        assert guardrail.check_user(user.user_id, session, NOW + timedelta(hours=4)) is None

    def test_manual_mode_leaves_budget_alone(self, session, make_user, add_transaction):
        user = make_user(budget="20000")
        self._accelerating_shopping(user, add_transaction)

        guardrail.check_user(user.user_id, session, NOW)

        budget = session.query(Budget).filter(Budget.user_id == user.user_id).one()
        assert budget.is_locked is False

    def test_steady_spending_is_fine(self, session, make_user, add_transaction):
        user = make_user()
        for days_ago in (2, 9, 16, 23, 30):
            add_transaction(user, "EXPENSE", 1600, NOW - timedelta(days=days_ago), "Dining")

        assert guardrail.check_user(user.user_id, session, NOW) is None


class TestGoalBackstop:

    def test_lagging_goal_gets_top_up(self, session, make_user, add_goal):
        user = make_user()
        goal = add_goal(user, 10000, 1000, NOW + timedelta(days=50), NOW - timedelta(days=50))

        result = goal_backstop.check_user(user.user_id, session, NOW)

        assert result['nudges_created'] == 1
        nudge = nudges_of(session, user, "goal-backstop")[0]
        assert nudge.amount == Decimal("4000.00")
        assert nudge.message == "Vacation is 40% behind pace. Top up ₹4,000 this week?"
        assert nudge.nudge_metadata['goal_id'] == goal.goal_id
        assert nudge.nudge_metadata['weeks_left'] == 7

    def test_once_per_day(self, session, make_user, add_goal):
        user = make_user()
        add_goal(user, 10000, 1000, NOW + timedelta(days=50), NOW - timedelta(days=50))
        goal_backstop.check_user(user.user_id, session, NOW)

        assert goal_backstop.check_user(user.user_id, session, NOW + timedelta(hours=3)) is None

    def test_on_track_goal(self, session, make_user, add_goal):
        user = make_user()
        add_goal(user, 10000, 6000, NOW + timedelta(days=50), NOW - timedelta(days=50))

        assert goal_backstop.check_user(user.user_id, session, NOW) is None


class TestMaintenance:
    """Tests for the buffer builder, the budget alert and the expiry sweep."""

    def test_buffer_once_per_week(self, session, make_user):
        user = make_user(balance="10000")

        first = maintenance.build_buffer(user.user_id, session, NOW)
        same_week = maintenance.build_buffer(user.user_id, session, NOW + timedelta(days=1))
        next_monday = maintenance.build_buffer(user.user_id, session, datetime(2026, 3, 16, 9, 0))

        assert first['amount'] == 400.0
        assert same_week is None
        assert next_monday is not None
        assert len(nudges_of(session, user, "emergency-buffer")) == 2

    def test_no_buffer_when_tight(self, session, make_user):
        user = make_user(balance="3000")

        assert maintenance.build_buffer(user.user_id, session, NOW) is None

    def test_budget_alert_once_per_month(self, session, make_user, add_transaction):
        user = make_user(budget="10000")
        add_transaction(user, "EXPENSE", 5000, datetime(2026, 3, 2, 10))
        add_transaction(user, "EXPENSE", 3500, datetime(2026, 3, 9, 10))
        notifier = RecordingNotifier()

        first = maintenance.check_budget(user.user_id, session, notifier, NOW)
        second = maintenance.check_budget(user.user_id, session, notifier, NOW + timedelta(days=1))

        assert first == {'alerted': True, 'percentage_used': 85.0}
        assert second is None
        alerts = notifier.of_type("budget-alert")
        assert len(alerts) == 1
        assert alerts[0].to == user.email

    def test_budget_under_threshold(self, session, make_user, add_transaction):
        user = make_user(budget="10000")
        add_transaction(user, "EXPENSE", 2000, datetime(2026, 3, 2, 10))

        assert maintenance.check_budget(user.user_id, session, RecordingNotifier(), NOW) is None

    def test_expiry_sweep_commits(self, session, make_user, add_nudge):
        user = make_user()
        add_nudge(user, created_at=NOW - timedelta(days=2), expires_at=NOW - timedelta(days=1))

        assert maintenance.run_expiry_sweep(session, now=NOW) == {'agent': "expiry-sweep", 'expired': 1}


class TestDailySweep:
    """Tests for daily_sweep.sweep_user."""

    def _rent(self, user, add_transaction, amount=3000):
        return add_transaction(
            user, "EXPENSE", amount, NOW - timedelta(days=28), "Housing",
            description="Rent", is_recurring=True, recurring_interval="MONTHLY",
            next_recurring_date=NOW + timedelta(days=2)
        )

    def test_pays_recurring_bill(self, session, make_user, add_transaction):
        user = make_user(balance="10000")
        rent = self._rent(user, add_transaction)
        notifier = RecordingNotifier()

        result = daily_sweep.sweep_user(user.user_id, session, notifier, NOW)

        assert result['actions'] == ["Auto-paid Rent (₹3,000)"]
        assert default_account(session, user).balance == Decimal("7000.00")
        assert rent.next_recurring_date == datetime(2026, 4, 13, 12, 0, 0)
        assert session.query(Transaction).filter(Transaction.description == "Auto-Paid: Rent").count() == 1
        assert len(notifier.of_type("guardian-alert")) == 1

    def test_skips_bill_without_margin(self, session, make_user, add_transaction):
        user = make_user(balance="4000")
        self._rent(user, add_transaction)

        result = daily_sweep.sweep_user(user.user_id, session, RecordingNotifier(), NOW)

        assert result['actions'] == ["Skipped Rent (not enough safe balance)"]
        assert default_account(session, user).balance == Decimal("4000.00")

    def test_sweeps_to_savings_once_a_day(self, session, make_user):
        user = make_user(balance="25000", savings_balance="1000")

        first = daily_sweep.sweep_user(user.user_id, session, RecordingNotifier(), NOW)
        second = daily_sweep.sweep_user(user.user_id, session, RecordingNotifier(), NOW + timedelta(hours=2))

        savings = session.query(Account).filter(Account.user_id == user.user_id, Account.type == "SAVINGS").one()
        assert first['actions'] == ["Swept ₹1,000 to Savings"]
        assert second is None
        assert default_account(session, user).balance == Decimal("24000.00")
        assert savings.balance == Decimal("2000.00")

    def test_critical_balance_locks_budget(self, session, make_user):
        user = make_user(balance="500", budget="10000")

        result = daily_sweep.sweep_user(user.user_id, session, RecordingNotifier(), NOW)

        assert result['actions'] == ["Critical balance, budget locked (₹500 left)."]
        budget = session.query(Budget).filter(Budget.user_id == user.user_id).one()
        assert budget.is_locked is True

    def test_locked_users_are_skipped(self, session, make_user):
        user = make_user(balance="25000", savings_balance="1000")
        lock_autopilot(user.user_id, session, "review", now=NOW)
        session.commit()

        run = daily_sweep.run_daily_sweep(session, notifier=RecordingNotifier(), now=NOW)

        assert run.skipped_locked == [user.user_id]
        assert default_account(session, user).balance == Decimal("25000.00")


class TestDigest:

    def test_digest_for_automation_user(self, session, make_user, add_nudge):
        user = make_user(auto_nudge=True)
        add_nudge(
            user, "micro-save", status="executed", amount="200",
            created_at=NOW - timedelta(hours=2), metadata={'automation': {'mode': "auto"}}
        )
        notifier = RecordingNotifier()

        first = digest.send_digest(user.user_id, session, notifier, NOW)
        second = digest.send_digest(user.user_id, session, notifier, NOW + timedelta(hours=1))

        assert first == {'sent': True, 'lines': 1}
        assert second is None
        sent = notifier.of_type("digest")
        assert len(sent) == 1
        assert "10:00 · Micro-save ₹200 (auto, done)" in sent[0].data['message']

    def test_nothing_to_report(self, session, make_user, add_nudge):
        user = make_user()
        add_nudge(user, "guardian-alert", created_at=NOW - timedelta(hours=2))

        assert digest.send_digest(user.user_id, session, RecordingNotifier(), NOW) is None


class TestExplanationPrecompute:

    def test_caches_rule_based_explanation(self, session, make_user, add_nudge):
        user = make_user()
        nudge = add_nudge(user, created_at=NOW - timedelta(hours=1))

        run = run_explanation_agent(session, generator=None, now=NOW)
        again = run_explanation_agent(session, generator=None, now=NOW)

        assert run.processed == 1
        assert again.processed == 0
        session.expire_all()
        cached = nudge.nudge_metadata['explanation']
        assert cached['ready'] is True
        assert cached['source'] == "rules"
        assert nudge.nudge_metadata['counterfactual'] == cached['counterfactual']


class TestRunner:

    def test_unknown_agent(self, session):
        with pytest.raises(ValueError):
            run_agent("nope", session)

    def test_event_agent_with_pinned_time(self, session, make_user):
        user = make_user(balance="3000")

        result = run_agent("shortfall-guardian", session, {**shortfall(user), 'now': NOW.isoformat()})

        assert 'created' in result
        nudge = session.query(NudgeAction).filter(NudgeAction.nudge_id == result['created']).one()
        assert nudge.created_at == NOW

    def test_expiry_sweep(self, session, make_user, add_nudge):
        user = make_user()
        add_nudge(user, created_at=NOW - timedelta(days=2), expires_at=NOW - timedelta(days=1))

        assert run_agent("expiry-sweep", session, {'now': NOW.isoformat()})['expired'] == 1
