"""
Budget and capital status classification for financial snapshots.

RULES:
1. Budget status:  not_set (no budget) / over_budget / at_risk (> threshold of budget) / on_budget
2. Capital status: not_raised (no capital) / overspent (available < 0) / low (< 10% of raised) / sufficient
3. DCC (direct construction costs) is read from the enhanced budget envelope;
   legacy budgets estimate it from the total
"""

from decimal import Decimal
from typing import Dict, Any, Optional
import os

from core.financial_precision import (
    to_decimal, to_float, safe_multiply, safe_subtract, calculate_percentage, clamp_non_negative
)

AT_RISK_THRESHOLD = Decimal(os.getenv("BUDGET_AT_RISK_THRESHOLD", "0.8"))
LOW_CAPITAL_THRESHOLD = Decimal("0.1")

# Legacy estimate: total minus 5% pre-construction, 5% indirect, contingency (or 5%)
LEGACY_PRECONSTRUCTION_PERCENT = Decimal("5")
LEGACY_INDIRECT_PERCENT = Decimal("5")
LEGACY_CONTINGENCY_PERCENT = Decimal("5")


def get_budget_status(budget_total, spent) -> str:
    budget = to_decimal(budget_total)
    spent = to_decimal(spent)

    if budget <= Decimal('0'):
        return "not_set"
    if spent > budget:
        return "over_budget"
    if spent > safe_multiply(budget, AT_RISK_THRESHOLD):
        return "at_risk"
    return "on_budget"


def get_capital_status(available, raised) -> str:
    available = to_decimal(available)
    raised = to_decimal(raised)

    if raised <= Decimal('0'):
        return "not_raised"
    if available < Decimal('0'):
        return "overspent"
    if available < safe_multiply(raised, LOW_CAPITAL_THRESHOLD):
        return "low"
    return "sufficient"


def is_enhanced_budget(budget: Optional[Dict[str, Any]]) -> bool:
    if not budget:
        return False
    return "directConstructionCosts" in budget or "directCosts" in budget


def calculate_dcc_from_budget(budget: Optional[Dict[str, Any]]) -> float:
    """
    Direct construction costs available for phase allocation.
    """
    if not budget:
        return 0.0

    if is_enhanced_budget(budget):
        if budget.get("directConstructionCosts") is not None:
            return to_float(budget["directConstructionCosts"])
        return to_float((budget.get("directCosts") or {}).get("total", 0))

    total = to_decimal(budget.get("total", 0))
    if total <= Decimal('0'):
        return 0.0

    contingency = budget.get("contingency")
    if contingency is None:
        contingency = calculate_percentage(total, LEGACY_CONTINGENCY_PERCENT)

    dcc = safe_subtract(
        safe_subtract(
            safe_subtract(total, calculate_percentage(total, LEGACY_PRECONSTRUCTION_PERCENT)),
            calculate_percentage(total, LEGACY_INDIRECT_PERCENT)
        ),
        contingency
    )
    return to_float(clamp_non_negative(dcc))


def get_indirect_budget(budget: Optional[Dict[str, Any]]) -> float:
    if not budget:
        return 0.0
    if budget.get("indirect") is not None:
        return to_float(budget["indirect"])
    return to_float((budget.get("indirectCosts") or {}).get("total", 0))


def get_preconstruction_budget(budget: Optional[Dict[str, Any]]) -> float:
    if not budget:
        return 0.0
    if budget.get("preConstruction") is not None:
        return to_float(budget["preConstruction"])
    return to_float((budget.get("preConstructionCosts") or {}).get("total", 0))
