"""
Nudge Type Registry

Single source of truth for every nudge type: how its impact is valued,
which executor runs on acceptance, how its counterfactual reads and
which alternatives are offered. The generator, lifecycle manager and
explainability service all look types up here.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Callable, Dict, List, Optional

from nudgecast.money import ZERO, format_amount, quantize, round_whole, to_decimal
from nudgecast.nudges.executors import (
    execute_bill_guard, execute_bill_pay, execute_noop, execute_savings_transfer
)


class NudgeType(str, Enum):
    AUTO_SAVE = "auto-save"
    BILL_PAY = "bill-pay"
    BILL_GUARD = "bill-guard"
    SPENDING_ALERT = "spending-alert"
    INCOME_OPPORTUNITY = "income-opportunity"
    EMERGENCY_BUFFER = "emergency-buffer"
    MICRO_SAVE = "micro-save"
    GUARDIAN_ALERT = "guardian-alert"
    SPENDING_GUARDRAIL = "spending-guardrail"
    GOAL_BACKSTOP = "goal-backstop"
    SUMMARY = "summary"


@dataclass(frozen=True)
class Alternative:
    action: str
    description: str
    impact: str  # low, medium, high

    def to_dict(self) -> Dict:
        return {'action': self.action, 'description': self.description, 'impact': self.impact}


@dataclass(frozen=True)
class NudgeTypeSpec:
    """Behaviour attached to one nudge type."""
    nudge_type: NudgeType
    family: str  # save, bill, spend, income, alert
    impact: Callable[[Decimal], Decimal]
    executor: Callable
    alternatives: List[Alternative] = field(default_factory=list)
    source: str = "generator"  # generator or agent


def _full(amount: Decimal) -> Decimal:
    return amount


def _flat(value: str) -> Callable[[Decimal], Decimal]:
    return lambda amount: Decimal(value)


def _share(rate: str) -> Callable[[Decimal], Decimal]:
    return lambda amount: amount * Decimal(rate)


DISMISS = Alternative("Dismiss", "Ignore this suggestion if it doesn't apply to you", "low")

SAVE_ALTERNATIVES = [
    Alternative("Save a different amount", "Save half or one and a half times the suggested amount", "medium"),
    Alternative("Save later", "Wait until after your next income to save", "low"),
    Alternative("Set up automatic savings", "Enable auto-save to build the habit", "high"),
]
BILL_ALTERNATIVES = [
    Alternative("Pay now", "Pay the bill immediately to avoid late fees", "high"),
    Alternative("Set reminder", "Get reminded 1 day before the due date", "medium"),
    Alternative("Enable auto-pay", "Never miss a payment again", "high"),
]
SPEND_ALTERNATIVES = [
    Alternative("Reduce spending", "Cut back on non-essential purchases", "high"),
    Alternative("Increase budget", "Adjust your budget if the current limit is too low", "medium"),
    Alternative("Track expenses better", "Review where your money is going", "medium"),
]

NUDGE_REGISTRY: Dict[str, NudgeTypeSpec] = {
    spec.nudge_type.value: spec for spec in [
        NudgeTypeSpec(NudgeType.AUTO_SAVE, "save", _full, execute_savings_transfer, SAVE_ALTERNATIVES),
        NudgeTypeSpec(NudgeType.MICRO_SAVE, "save", _full, execute_savings_transfer, SAVE_ALTERNATIVES),
        NudgeTypeSpec(NudgeType.GOAL_BACKSTOP, "save", _full, execute_savings_transfer, SAVE_ALTERNATIVES, source="agent"),
        NudgeTypeSpec(NudgeType.BILL_PAY, "bill", _flat("50"), execute_bill_pay, BILL_ALTERNATIVES),
        NudgeTypeSpec(NudgeType.BILL_GUARD, "bill", _share("0.05"), execute_bill_guard, BILL_ALTERNATIVES),
        NudgeTypeSpec(NudgeType.GUARDIAN_ALERT, "bill", _share("0.8"), execute_noop, [DISMISS], source="agent"),
        NudgeTypeSpec(NudgeType.SPENDING_ALERT, "spend", _share("0.1"), execute_noop, SPEND_ALTERNATIVES),
        NudgeTypeSpec(NudgeType.SPENDING_GUARDRAIL, "spend", _share("0.15"), execute_noop, SPEND_ALTERNATIVES, source="agent"),
        NudgeTypeSpec(NudgeType.INCOME_OPPORTUNITY, "income", _share("0.5"), execute_noop, [DISMISS]),
        NudgeTypeSpec(NudgeType.EMERGENCY_BUFFER, "alert", _flat("0"), execute_noop, [DISMISS]),
        NudgeTypeSpec(NudgeType.SUMMARY, "alert", _flat("0"), execute_noop, [DISMISS]),
    ]
}


def get_spec(nudge_type: str) -> Optional[NudgeTypeSpec]:
    return NUDGE_REGISTRY.get(nudge_type)


def calculate_nudge_impact(nudge_type: str, amount) -> Decimal:
    """
    Estimated value of an executed nudge.

    Args:
        nudge_type: Registered nudge type
        amount: Nudge amount (shortfall, deficit or transfer size depending on type)

    Returns:
        Impact rounded to cents; 0 for unknown types
    """
    spec = get_spec(nudge_type)
    if spec is None:
        return ZERO
    return quantize(spec.impact(to_decimal(amount)))


def get_alternatives(nudge_type: str) -> List[Dict]:
    spec = get_spec(nudge_type)
    alternatives = spec.alternatives if spec else [DISMISS]
    return [alt.to_dict() for alt in alternatives]


def build_counterfactual(nudge_type: Optional[str], context: Dict, risk_level: Optional[str] = None) -> str:
    """
    What happens if the nudge is ignored, phrased for the type's family.

    Args:
        nudge_type: Nudge type (may be None)
        context: Financial context with projected_shortfall, daily_allowance, avg_daily_spending, risk_level
        risk_level: Risk level recorded on the nudge, preferred over the context's

    Returns:
        One or two sentences
    """
    level = str(risk_level or context.get('risk_level') or "elevated").lower()
    shortfall = round_whole(max(ZERO, to_decimal(context.get('projected_shortfall', 0))))
    allowance_value = to_decimal(context.get('daily_allowance', 0))
    allowance = f"Daily allowance stays near {format_amount(allowance_value)}." if allowance_value > ZERO else ""

    if shortfall > ZERO:
        base = f"Skipping this keeps a {format_amount(shortfall)} gap before bills land."
    else:
        base = f"Skipping this keeps risk {level} with less buffer for surprises."

    spec = get_spec(nudge_type) if nudge_type else None
    family = spec.family if spec else None

    if family == "save":
        return f"Skip this save and {level} risk sticks around; buffer stays thin ({allowance or 'no extra cushion'})."
    if family == "bill":
        gap = f" with a {format_amount(shortfall)} shortfall" if shortfall > ZERO else ""
        return f"Ignore this and upcoming bills stay exposed{gap}."
    if family == "spend":
        daily = format_amount(context.get('avg_daily_spending', 0))
        return f"If you ignore the warning, discretionary spend keeps burning {daily} a day and risk remains {level}."
    return f"{base} {allowance}".strip()
