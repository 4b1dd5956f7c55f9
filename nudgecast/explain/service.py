"""
Explainability Service

Read-side reconstruction of why a nudge, allowance or risk value was
produced. Explanations use a narrative generator when one is available
and always have a rule-based fallback built from the same context.
"""

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from nudgecast.errors import NotFoundError, UpstreamUnavailableError
from nudgecast.explain.narrative import NarrativeGenerator, complete_json
from nudgecast.features.signals import load_total_balance
from nudgecast.features.window_utils import days_between, utcnow
from nudgecast.ingest.schema import Bill, NudgeAction, Transaction
from nudgecast.money import ZERO, format_amount, round_whole, to_decimal, to_float
from nudgecast.nudges.lifecycle import serialize_nudge
from nudgecast.nudges.registry import build_counterfactual, get_alternatives, get_spec

logger = logging.getLogger(__name__)

SAFETY_BUFFER_RATIO = Decimal("0.1")
MIN_SAFETY_BUFFER = Decimal("1000")
BILL_WINDOW_DAYS = 7
CONTEXT_WINDOW_DAYS = 30
INCOME_CYCLE_DAYS = 30
RULE_BASED_CONFIDENCE = 75
RULE_BASED_ALTERNATIVES = ["Accept this suggestion", "Modify the amount", "Dismiss for now"]

RISK_RECOMMENDATIONS = {
    'high': [
        "Reduce non-essential spending immediately",
        "Look for additional income opportunities",
        "Consider postponing large purchases",
    ],
    'medium': [
        "Build an emergency fund",
        "Review and optimize your budget",
        "Track your spending more closely",
    ],
    'low': [
        "Keep up the good work!",
        "Consider increasing your savings",
        "Explore investment opportunities",
    ],
}


def calculate_daily_allowance(balance, upcoming_bills, days: int = 30) -> Decimal:
    """Whole-unit daily allowance after a safety buffer and upcoming bills, never negative."""
    if not days or days <= 0:
        days = 30
    balance = to_decimal(balance)
    buffer = max(round_whole(balance * SAFETY_BUFFER_RATIO), MIN_SAFETY_BUFFER)
    available = balance - buffer - to_decimal(upcoming_bills)
    return max(ZERO, round_whole(available / days))


def derive_risk_level(balance, upcoming_bills, daily_spend=None) -> str:
    """
    Narrative risk level for explanations.

    Uses its own cutoffs; it is a different view from the forecast
    risk meter and the two are not meant to agree.
    """
    balance = to_decimal(balance)
    upcoming_bills = to_decimal(upcoming_bills)
    if balance <= ZERO:
        return "critical"
    if balance < upcoming_bills:
        return "danger"
    if balance < upcoming_bills * Decimal("1.5"):
        return "caution"
    if daily_spend and to_decimal(daily_spend) > balance / 30:
        return "caution"
    return "safe"


def upcoming_bills_total(user_id: str, session: Session, now: datetime, days: int = BILL_WINDOW_DAYS) -> Decimal:
    bills = session.query(Bill).filter(
        Bill.user_id == user_id,
        Bill.is_active.is_(True),
        Bill.next_due_date >= now,
        Bill.next_due_date <= now + timedelta(days=days),
    ).all()
    return sum((to_decimal(b.amount) for b in bills), ZERO)


def estimate_days_until_income(user_id: str, session: Session, now: datetime) -> int:
    """Days left in a monthly income cycle counted from the latest income, 30 when there is none."""
    latest = session.query(Transaction).filter(
        Transaction.user_id == user_id,
        Transaction.type == "INCOME"
    ).order_by(Transaction.date.desc()).first()
    if latest is None:
        return INCOME_CYCLE_DAYS
    return max(1, INCOME_CYCLE_DAYS - int(days_between(latest.date, now)))


def get_financial_context(user_id: str, session: Session, now: datetime = None) -> Dict:
    """
    Current balance, bills, 30-day flows, allowance and narrative risk level.

    Args:
        user_id: User ID
        session: Database session
        now: Reference time

    Returns:
        Dict of Decimal amounts plus 'risk_level'
    """
    if now is None:
        now = utcnow()

    balance = load_total_balance(user_id, session)
    bills = upcoming_bills_total(user_id, session, now)
    recent = session.query(Transaction).filter(
        Transaction.user_id == user_id,
        Transaction.date >= now - timedelta(days=CONTEXT_WINDOW_DAYS)
    ).all()
    expenses = sum((to_decimal(t.amount) for t in recent if t.type == "EXPENSE"), ZERO)
    income = sum((to_decimal(t.amount) for t in recent if t.type == "INCOME"), ZERO)
    avg_daily_spending = expenses / CONTEXT_WINDOW_DAYS

    return {
        'total_balance': balance,
        'upcoming_bills': bills,
        'avg_daily_spending': avg_daily_spending,
        'avg_daily_income': income / CONTEXT_WINDOW_DAYS,
        'avg_monthly_expenses': expenses,
        'avg_monthly_income': income,
        'daily_allowance': calculate_daily_allowance(balance, bills, 30),
        'risk_level': derive_risk_level(balance, bills, avg_daily_spending),
        'projected_shortfall': max(ZERO, bills - balance),
    }


def _empty_context() -> Dict:
    return {
        'total_balance': ZERO,
        'upcoming_bills': ZERO,
        'avg_daily_spending': ZERO,
        'avg_daily_income': ZERO,
        'avg_monthly_expenses': ZERO,
        'avg_monthly_income': ZERO,
        'daily_allowance': ZERO,
        'risk_level': "unknown",
        'projected_shortfall': ZERO,
    }


def _public_context(context: Dict) -> Dict:
    return {
        key: to_float(value) if isinstance(value, Decimal) else value
        for key, value in context.items()
    }


def _nudge_risk_level(nudge: NudgeAction) -> Optional[str]:
    return ((nudge.nudge_metadata or {}).get('risk_context') or {}).get('risk_level')


def build_explanation_prompt(nudge: NudgeAction, context: Dict) -> str:
    amount = format_amount(nudge.amount) if nudge.amount is not None else "N/A"
    return f"""
You are a financial advisor explaining why a specific nudge was generated.

Nudge Type: {nudge.nudge_type}
Message: {nudge.message}
Reason: {nudge.reason}
Amount: {amount}

User's Financial Context:
- Total Balance: {format_amount(context['total_balance'])}
- Upcoming Bills: {format_amount(context['upcoming_bills'])}
- Avg Daily Spending: {format_amount(context['avg_daily_spending'])}
- Avg Daily Income: {format_amount(context['avg_daily_income'])}
- Estimated Daily Allowance: {format_amount(context['daily_allowance'])}
- Current Risk Level: {context['risk_level']}

Provide a detailed explanation in JSON format:
{{
  "detailed": "2-3 sentence explanation of why this nudge was generated",
  "keyFactors": ["factor 1", "factor 2", "factor 3"],
  "confidence": 85,
  "alternatives": ["alternative 1", "alternative 2"],
  "counterfactual": "One sentence describing what happens if the user ignores this nudge"
}}

Return ONLY valid JSON, no markdown."""


def rule_based_explanation(nudge: NudgeAction, context: Dict) -> Dict:
    return {
        'detailed': nudge.reason,
        'key_factors': [
            f"Your current balance is {format_amount(context['total_balance'])}",
            f"You have {format_amount(context['upcoming_bills'])} in upcoming bills",
            "Based on your spending patterns",
        ],
        'confidence': RULE_BASED_CONFIDENCE,
        'alternatives': list(RULE_BASED_ALTERNATIVES),
        'counterfactual': build_counterfactual(nudge.nudge_type, context, _nudge_risk_level(nudge)),
    }


def _merge_generated(generated: Dict, fallback: Dict) -> Dict:
    """Map the generator's camelCase keys onto the explanation shape, filling gaps from the fallback."""
    key_factors = generated.get('keyFactors')
    alternatives = generated.get('alternatives')
    confidence = generated.get('confidence')
    return {
        'detailed': generated.get('detailed') or fallback['detailed'],
        'key_factors': key_factors if isinstance(key_factors, list) and key_factors else fallback['key_factors'],
        'confidence': confidence if isinstance(confidence, (int, float)) else fallback['confidence'],
        'alternatives': alternatives if isinstance(alternatives, list) and alternatives else fallback['alternatives'],
        'counterfactual': generated.get('counterfactual') or fallback['counterfactual'],
    }


def explain_nudge(
    user_id: str,
    nudge_id: str,
    session: Session,
    generator: Optional[NarrativeGenerator] = None,
    now: datetime = None
) -> Dict:
    """
    Explain why a nudge was produced.

    Args:
        user_id: Caller; must own the nudge
        nudge_id: Nudge to explain
        session: Database session
        generator: Optional narrative generator
        now: Reference time

    Returns:
        Dict with 'nudge', 'explanation' (summary, detailed, key_factors,
        confidence, alternatives, counterfactual), 'source' and 'degraded'

    Raises:
        NotFoundError: If the nudge is missing or owned by someone else
        UpstreamUnavailableError: If the datastore cannot load the nudge
    """
    if now is None:
        now = utcnow()

    try:
        nudge = session.query(NudgeAction).filter(
            NudgeAction.nudge_id == nudge_id,
            NudgeAction.user_id == user_id
        ).first()
    except OperationalError as e:
        raise UpstreamUnavailableError("Datastore unavailable") from e
    if nudge is None:
        raise NotFoundError(f"Nudge {nudge_id} not found")

    degraded = False
    try:
        context = get_financial_context(user_id, session, now=now)
    except OperationalError:
        logger.warning("Financial context unavailable for %s, explaining without it", user_id)
        context = _empty_context()
        degraded = True

    explanation = rule_based_explanation(nudge, context)
    source = "rules"
    if generator is not None:
        try:
            generated = complete_json(generator, build_explanation_prompt(nudge, context))
            explanation = _merge_generated(generated, explanation)
            source = "narrative"
        except UpstreamUnavailableError as e:
            logger.warning("Falling back to rule-based explanation for %s: %s", nudge_id, e)

    return {
        'nudge': serialize_nudge(nudge),
        'explanation': {'summary': nudge.reason, **explanation},
        'context': _public_context(context),
        'source': source,
        'degraded': degraded,
    }


def get_alternative_actions(user_id: str, nudge_id: str, session: Session) -> Dict:
    """
    Alternatives to a nudge, sized to its amount for saving nudges.

    Raises:
        NotFoundError: If the nudge is missing or owned by someone else
    """
    nudge = session.query(NudgeAction).filter(
        NudgeAction.nudge_id == nudge_id,
        NudgeAction.user_id == user_id
    ).first()
    if nudge is None:
        raise NotFoundError(f"Nudge {nudge_id} not found")

    alternatives = get_alternatives(nudge.nudge_type)
    spec = get_spec(nudge.nudge_type)
    if spec and spec.family == "save" and nudge.amount:
        amount = to_decimal(nudge.amount)
        alternatives[0] = {
            **alternatives[0],
            'description': (
                f"Instead of {format_amount(amount)}, you could save "
                f"{format_amount(amount * Decimal('0.5'))} or {format_amount(amount * Decimal('1.5'))}"
            ),
        }
    return {'nudge': serialize_nudge(nudge), 'alternatives': alternatives}


def explain_spending_allowance(user_id: str, session: Session, now: datetime = None) -> Dict:
    """
    Daily allowance = (balance - max(10% of balance, 1000) - 7-day bills) / days until income.

    Returns:
        Dict with 'allowance', 'breakdown', 'explanation' and 'degraded'
    """
    if now is None:
        now = utcnow()

    try:
        balance = load_total_balance(user_id, session)
        bills = upcoming_bills_total(user_id, session, now)
        days_until_income = estimate_days_until_income(user_id, session, now)
    except OperationalError:
        logger.warning("Allowance inputs unavailable for %s", user_id)
        return {
            'allowance': 0,
            'breakdown': {},
            'explanation': {'summary': "Your spending allowance is unavailable right now", 'reasoning': []},
            'degraded': True,
        }

    buffer = max(balance * SAFETY_BUFFER_RATIO, MIN_SAFETY_BUFFER)
    available = balance - buffer - bills
    allowance = max(ZERO, available / days_until_income)

    shown = {name: format_amount(value) for name, value in (
        ('balance', balance), ('buffer', buffer), ('bills', bills), ('available', available), ('allowance', allowance)
    )}

    return {
        'allowance': int(round_whole(allowance)),
        'breakdown': {
            'total_balance': int(round_whole(balance)),
            'safety_buffer': int(round_whole(buffer)),
            'upcoming_bills': int(round_whole(bills)),
            'available_balance': int(round_whole(available)),
            'days_until_income': days_until_income,
            'calculation': f"({shown['balance']} - {shown['buffer']} - {shown['bills']}) / {days_until_income} days",
        },
        'explanation': {
            'summary': f"Your daily spending allowance is {shown['allowance']}",
            'reasoning': [
                f"Starting with your total balance of {shown['balance']}",
                f"We set aside {shown['buffer']} as a safety buffer (10% of balance)",
                f"We reserved {shown['bills']} for upcoming bills in the next 7 days",
                f"This leaves {shown['available']} available to spend",
                f"Divided by {days_until_income} days until your next income",
                f"Gives you {shown['allowance']} per day to spend guilt-free",
            ],
        },
        'degraded': False,
    }


def explain_risk_score(user_id: str, session: Session, now: datetime = None) -> Dict:
    """
    Additive, factor-by-factor risk view for user-facing narrative.

    Returns:
        Dict with 'risk_score', 'risk_level', 'risk_factors', 'explanation' and 'degraded'
    """
    if now is None:
        now = utcnow()

    try:
        context = get_financial_context(user_id, session, now=now)
    except OperationalError:
        logger.warning("Risk inputs unavailable for %s", user_id)
        return {
            'risk_score': 0,
            'risk_level': "unknown",
            'risk_factors': [],
            'explanation': {'summary': "Your risk level is unavailable right now", 'reasoning': [], 'recommendations': []},
            'degraded': True,
        }

    balance = context['total_balance']
    factors: List[Dict] = []
    score = 0

    if context['upcoming_bills'] > balance * Decimal("0.5"):
        factors.append({
            'factor': "High upcoming bills",
            'impact': "high",
            'description': f"You have {format_amount(context['upcoming_bills'])} in bills due, which is over 50% of your balance",
        })
        score += 30
    if context['avg_daily_spending'] > context['avg_daily_income']:
        factors.append({
            'factor': "Spending exceeds income",
            'impact': "high",
            'description': "Your daily spending is higher than your daily income",
        })
        score += 25
    if balance < Decimal("5000"):
        factors.append({
            'factor': "Low balance",
            'impact': "medium",
            'description': f"Your total balance is below {format_amount(5000)}",
        })
        score += 20
    if balance < context['avg_monthly_expenses'] * Decimal("0.25"):
        factors.append({
            'factor': "No emergency buffer",
            'impact': "medium",
            'description': "Your savings would not cover a week of usual spending",
        })
        score += 15

    level = "high" if score >= 50 else "medium" if score >= 25 else "low"
    return {
        'risk_score': score,
        'risk_level': level,
        'risk_factors': factors,
        'explanation': {
            'summary': f"Your financial risk level is {level} (score: {score}/100)",
            'reasoning': [f['description'] for f in factors],
            'recommendations': list(RISK_RECOMMENDATIONS[level]),
        },
        'degraded': False,
    }
