"""
What-If Simulator

Projects balance, daily allowance and risk after a hypothetical spend,
save or income, and compares several scenarios side by side.
"""

from datetime import datetime
from decimal import Decimal
from typing import Dict, List

from sqlalchemy.orm import Session

from nudgecast.explain.service import upcoming_bills_total
from nudgecast.features.signals import load_total_balance
from nudgecast.features.window_utils import utcnow
from nudgecast.ingest.schema import Goal
from nudgecast.money import ZERO, format_amount, round_whole, to_decimal, to_float

DAYS_UNTIL_INCOME = 15
INCOME_RESERVE = Decimal("5000")
SCENARIO_RISK_SCORES = {'low': 40, 'medium': 20, 'high': 10, 'critical': 0}
SCENARIO_TYPES = ("spending", "saving", "income")


def scenario_allowance(balance: Decimal, upcoming_bills: Decimal, days: int = DAYS_UNTIL_INCOME) -> Decimal:
    buffer = max(balance * Decimal("0.1"), Decimal("1000"))
    return max(ZERO, round_whole((balance - buffer - upcoming_bills) / days))


def scenario_risk_level(balance: Decimal, upcoming_bills: Decimal) -> str:
    if balance < upcoming_bills:
        return "critical"
    if balance < upcoming_bills * Decimal("1.5"):
        return "high"
    if balance < upcoming_bills * 2:
        return "medium"
    return "low"


def current_state(user_id: str, session: Session, now: datetime = None) -> Dict:
    if now is None:
        now = utcnow()
    balance = load_total_balance(user_id, session)
    bills = upcoming_bills_total(user_id, session, now)
    return {
        'total_balance': balance,
        'upcoming_bills': bills,
        'days_until_income': DAYS_UNTIL_INCOME,
        'daily_allowance': scenario_allowance(balance, bills),
    }


def _risk_change(before: str, after: str) -> str:
    return f"{before} -> {after}" if before != after else "No change"


def _savings_goal_impact(user_id: str, session: Session, amount: Decimal) -> str:
    goals = session.query(Goal).filter(Goal.user_id == user_id, Goal.status == "active").all()
    if not goals:
        return "No active savings goals"
    remaining = sum((to_decimal(g.target_amount) - to_decimal(g.saved_amount) for g in goals), ZERO)
    if remaining <= ZERO:
        return "Your active savings goals are already funded"
    share = amount / remaining * 100
    return f"This spending represents {share:.1f}% of your remaining savings goals"


def simulate_spending(user_id: str, session: Session, amount, category: str = "Other", now: datetime = None) -> Dict:
    """Project the effect of spending ``amount`` today."""
    amount = to_decimal(amount)
    state = current_state(user_id, session, now)
    new_balance = state['total_balance'] - amount
    new_allowance = scenario_allowance(new_balance, state['upcoming_bills'])
    before = scenario_risk_level(state['total_balance'], state['upcoming_bills'])
    after = scenario_risk_level(new_balance, state['upcoming_bills'])

    if after == "critical":
        recommendation = "Not recommended. This would put you at critical risk"
    elif after == "high":
        recommendation = "Proceed with caution. This increases your financial risk"
    elif new_balance > state['upcoming_bills'] * 2:
        recommendation = "Safe to proceed. You have sufficient buffer"
    else:
        recommendation = "Consider carefully. This is within limits but reduces your flexibility"

    return {
        'scenario': "spending",
        'amount': to_float(amount),
        'category': category,
        'current': {
            'balance': to_float(state['total_balance']),
            'daily_allowance': to_float(state['daily_allowance']),
            'risk_level': before,
        },
        'projected': {
            'balance': to_float(new_balance),
            'daily_allowance': to_float(new_allowance),
            'risk_level': after,
        },
        'impact': {
            'balance_change': to_float(-amount),
            'allowance_change': to_float(new_allowance - state['daily_allowance']),
            'risk_change': _risk_change(before, after),
            'savings_goal_impact': _savings_goal_impact(user_id, session, amount),
        },
        'recommendation': recommendation,
    }


def simulate_saving(user_id: str, session: Session, amount, now: datetime = None) -> Dict:
    """Project the effect of moving ``amount`` into savings."""
    amount = to_decimal(amount)
    state = current_state(user_id, session, now)
    new_balance = state['total_balance'] - amount
    new_allowance = scenario_allowance(new_balance, state['upcoming_bills'])
    affects_bills = new_balance < state['upcoming_bills']

    if affects_bills:
        recommendation = "Not recommended. This may affect bill payments"
    elif amount > state['daily_allowance'] * 7:
        recommendation = "Ambitious. This is more than a week's allowance"
    else:
        recommendation = "Great choice. Building savings is always smart"

    return {
        'scenario': "saving",
        'amount': to_float(amount),
        'current': {
            'balance': to_float(state['total_balance']),
            'daily_allowance': to_float(state['daily_allowance']),
            'risk_level': scenario_risk_level(state['total_balance'], state['upcoming_bills']),
        },
        'projected': {
            'balance': to_float(new_balance),
            'daily_allowance': to_float(new_allowance),
            'risk_level': scenario_risk_level(new_balance, state['upcoming_bills']),
            'savings_accumulated': to_float(amount),
        },
        'impact': {
            'immediate_impact': f"{format_amount(amount)} moved to savings",
            'monthly_projection': f"{format_amount(amount)} saved per month",
            'yearly_projection': f"{format_amount(amount * 12)} saved per year",
            'affects_bills': affects_bills,
            'warning': "This may affect your ability to pay upcoming bills" if affects_bills else None,
        },
        'recommendation': recommendation,
    }


def simulate_income(user_id: str, session: Session, amount, now: datetime = None) -> Dict:
    """Project the effect of receiving ``amount`` extra income."""
    amount = to_decimal(amount)
    state = current_state(user_id, session, now)
    new_balance = state['total_balance'] + amount
    new_allowance = scenario_allowance(new_balance, state['upcoming_bills'])
    safe_to_save = max(ZERO, new_balance - state['upcoming_bills'] - INCOME_RESERVE)
    before = scenario_risk_level(state['total_balance'], state['upcoming_bills'])
    after = scenario_risk_level(new_balance, state['upcoming_bills'])

    if safe_to_save > amount * Decimal("0.5"):
        recommendation = f"Consider saving {format_amount(safe_to_save)} from this income"
    elif new_balance > Decimal("10000"):
        recommendation = "Good opportunity to build your emergency fund"
    else:
        recommendation = "Use this to cover essential expenses first"

    return {
        'scenario': "income",
        'amount': to_float(amount),
        'current': {
            'balance': to_float(state['total_balance']),
            'daily_allowance': to_float(state['daily_allowance']),
            'risk_level': before,
        },
        'projected': {
            'balance': to_float(new_balance),
            'daily_allowance': to_float(new_allowance),
            'risk_level': after,
            'safe_to_save': to_float(safe_to_save),
        },
        'impact': {
            'balance_increase': to_float(amount),
            'allowance_increase': to_float(new_allowance - state['daily_allowance']),
            'risk_improvement': _risk_change(before, after),
        },
        'recommendation': recommendation,
    }


def scenario_score(result: Dict) -> float:
    projected = result['projected']
    score = SCENARIO_RISK_SCORES.get(projected.get('risk_level'), 0)
    score += min(40, projected['balance'] / 1000)
    score += min(20, projected['daily_allowance'] / 10)
    return score


def simulate(user_id: str, session: Session, scenario_type: str, amount, category: str = "Other", now: datetime = None) -> Dict:
    """
    Dispatch one scenario by type.

    Raises:
        ValueError: If the scenario type is unknown
    """
    if scenario_type == "spending":
        return simulate_spending(user_id, session, amount, category, now=now)
    if scenario_type == "saving":
        return simulate_saving(user_id, session, amount, now=now)
    if scenario_type == "income":
        return simulate_income(user_id, session, amount, now=now)
    raise ValueError(f"Unknown scenario type: {scenario_type}")


def compare_scenarios(user_id: str, session: Session, scenarios: List[Dict], now: datetime = None) -> Dict:
    """
    Run several scenarios and pick the best by risk, balance and allowance.

    Args:
        user_id: User ID
        session: Database session
        scenarios: Dicts with 'type', 'amount' and optional 'name' / 'category'
        now: Reference time

    Returns:
        Dict with 'scenarios', 'best_scenario' and a 'comparison' table
    """
    results = []
    for scenario in scenarios:
        if scenario.get('type') not in SCENARIO_TYPES:
            continue
        result = simulate(user_id, session, scenario['type'], scenario['amount'], scenario.get('category', "Other"), now=now)
        result['name'] = scenario.get('name') or f"{scenario['type']} {format_amount(scenario['amount'])}"
        results.append(result)

    best = max(results, key=scenario_score) if results else None
    return {
        'scenarios': results,
        'best_scenario': best['name'] if best else None,
        'comparison': [
            {
                'name': r['name'],
                'final_balance': r['projected']['balance'],
                'risk_level': r['projected']['risk_level'],
                'daily_allowance': r['projected']['daily_allowance'],
            }
            for r in results
        ],
    }
