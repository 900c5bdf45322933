from motor.motor_asyncio import AsyncIOMotorDatabase
from decimal import Decimal
from typing import Dict, Any, Optional
import logging
import os

from core.financial_precision import (
    to_decimal, to_float, safe_add, safe_subtract, safe_divide, safe_multiply,
    calculate_percentage, clamp_non_negative, validate_non_negative
)
from models import to_object_id
from spending_aggregator import SpendingAggregator

logger = logging.getLogger(__name__)

LEGACY_PROPORTIONAL_CAPITAL = os.getenv("LEGACY_PROPORTIONAL_CAPITAL", "true").lower() in ("1", "true", "yes")

DEFAULT_LOAN_PERCENTAGE = Decimal("50")


class CapitalInsufficientError(Exception):
    """Raised when a spend would exceed available capital. Never overridable."""
    def __init__(self, validation: Dict[str, Any]):
        self.validation = validation
        self.available = validation.get("available", 0.0)
        self.required = validation.get("required", 0.0)
        self.shortfall = validation.get("shortfall", 0.0)
        super().__init__(validation.get("message", "Insufficient capital"))


def split_by_investment_type(amount, investment_type: Optional[str], loan_percentage=None) -> Dict[str, Decimal]:
    """
    Split an investor's attributed capital into loans and equity.
    MIXED investors use loanPercentage (default 50%).
    """
    amount = to_decimal(amount)
    investment_type = (investment_type or "EQUITY").upper()

    if investment_type == "LOAN":
        return {"loans": amount, "equity": Decimal('0')}
    if investment_type == "MIXED":
        pct = DEFAULT_LOAN_PERCENTAGE if loan_percentage is None else to_decimal(loan_percentage)
        loans = calculate_percentage(amount, pct)
        return {"loans": loans, "equity": safe_subtract(amount, loans)}
    return {"loans": Decimal('0'), "equity": amount}


class CapitalService:
    """
    Capital Calculator.

    RULES:
    1. Capital = contributions of ACTIVE investors attributed to the project
    2. Explicit projectAllocations win; investors without any allocation fall back
       to a budget-weighted share across all projects (legacy, config-gated)
    3. available = max(0, invested - used - committed), computed fresh on every call
    4. A spend is allowed only if available >= amount (fails closed)
    """

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        aggregator: Optional[SpendingAggregator] = None,
        legacy_proportional: Optional[bool] = None
    ):
        self.db = db
        self.aggregator = aggregator or SpendingAggregator(db)
        self.legacy_proportional = (
            LEGACY_PROPORTIONAL_CAPITAL if legacy_proportional is None else legacy_proportional
        )

    # ============================================
    # ATTRIBUTION
    # ============================================

    async def _proportional_weights(self) -> Dict[str, Decimal]:
        """Share of each active project, weighted by budget total (equal split when no budgets)."""
        projects = await self.db["projects"].find(
            {"archivedAt": None}, {"budget": 1}
        ).to_list(length=None)

        if not projects:
            return {}

        budgets = {str(p["_id"]): to_decimal((p.get("budget") or {}).get("total", 0)) for p in projects}
        grand_total = safe_add(*budgets.values())

        if grand_total <= Decimal('0'):
            equal = safe_divide(1, len(projects))
            return {pid: equal for pid in budgets}

        return {pid: safe_divide(b, grand_total) for pid, b in budgets.items()}

    def _explicit_amount(self, investor: Dict[str, Any], project_key: str) -> Optional[Decimal]:
        """Amount explicitly allocated to this project, 0 if allocated elsewhere only, None if no allocations."""
        allocations = investor.get("projectAllocations") or []
        if not allocations:
            return None

        amount = Decimal('0')
        for allocation in allocations:
            if str(allocation.get("projectId")) != project_key:
                continue
            if allocation.get("amount") is not None:
                amount += to_decimal(allocation["amount"])
            elif allocation.get("percentage") is not None:
                amount += calculate_percentage(investor.get("totalInvested", 0), allocation["percentage"])
        return amount

    async def calculate_project_totals(self, project_id) -> Dict[str, float]:
        """
        Sum contributions across investors allocated to a project.

        Returns {totalInvested, totalLoans, totalEquity}
        """
        project_id = to_object_id(project_id)
        project_key = str(project_id)

        investors = await self.db["investors"].find(
            {"status": "ACTIVE", "deletedAt": None}
        ).to_list(length=None)

        loans = Decimal('0')
        equity = Decimal('0')
        weights = None

        for investor in investors:
            amount = self._explicit_amount(investor, project_key)

            if amount is None:
                if not self.legacy_proportional:
                    continue
                if weights is None:
                    weights = await self._proportional_weights()
                share = weights.get(project_key, Decimal('0'))
                amount = safe_multiply(investor.get("totalInvested", 0), share)
                logger.warning(
                    f"[CAPITAL] Investor {investor['_id']} has no project allocations; "
                    f"attributing proportional share {to_float(amount)} to project {project_key}"
                )

            split = split_by_investment_type(amount, investor.get("investmentType"), investor.get("loanPercentage"))
            loans += split["loans"]
            equity += split["equity"]

        return {
            "totalInvested": to_float(safe_add(loans, equity)),
            "totalLoans": to_float(loans),
            "totalEquity": to_float(equity)
        }

    # ============================================
    # USAGE
    # ============================================

    async def get_current_total_used(self, project_id) -> float:
        """Actual spend of every kind: direct, indirect and initial expenses."""
        return await self.aggregator.calculate_total_used(to_object_id(project_id))

    async def get_committed_total(self, project_id) -> float:
        committed = await self.aggregator.calculate_project_committed_costs(to_object_id(project_id))
        return committed["total"]

    async def get_capital_snapshot(self, project_id) -> Dict[str, float]:
        """
        Capital figures for the project finances snapshot.
        availableCapital is stored unclamped so overspend stays visible.
        """
        totals = await self.calculate_project_totals(project_id)
        used = await self.get_current_total_used(project_id)
        committed = await self.get_committed_total(project_id)

        return {
            "totalCapitalRaised": totals["totalInvested"],
            "totalLoans": totals["totalLoans"],
            "totalEquity": totals["totalEquity"],
            "totalCapitalUsed": used,
            "committedCosts": committed,
            "availableCapital": to_float(safe_subtract(safe_subtract(totals["totalInvested"], used), committed)),
            "capitalBalance": to_float(safe_subtract(totals["totalInvested"], used))
        }

    # ============================================
    # VALIDATION
    # ============================================

    async def validate_capital_availability(self, project_id, amount) -> Dict[str, Any]:
        """
        Check whether a spend of `amount` is covered by uncommitted capital.

        Returns {isValid, available, required, shortfall, totalInvested, totalUsed, committed, message}
        """
        validate_non_negative(amount, "amount")

        snapshot = await self.get_capital_snapshot(project_id)
        available = clamp_non_negative(snapshot["availableCapital"])
        required = to_decimal(amount)
        is_valid = available >= required
        shortfall = clamp_non_negative(safe_subtract(required, available))

        if is_valid:
            message = f"Capital available: {to_float(available):,.2f}"
        else:
            message = (
                f"Insufficient capital. Available: {to_float(available):,.2f}, "
                f"Required: {to_float(required):,.2f}, Shortfall: {to_float(shortfall):,.2f}"
            )

        logger.info(f"[CAPITAL] Project {project_id}: required {to_float(required)}, available {to_float(available)}, valid={is_valid}")

        return {
            "isValid": is_valid,
            "available": to_float(available),
            "required": to_float(required),
            "shortfall": to_float(shortfall),
            "totalInvested": snapshot["totalCapitalRaised"],
            "totalUsed": snapshot["totalCapitalUsed"],
            "committed": snapshot["committedCosts"],
            "message": message
        }

    async def ensure_capital_available(self, project_id, amount) -> Dict[str, Any]:
        """validate_capital_availability, raising CapitalInsufficientError when invalid."""
        result = await self.validate_capital_availability(project_id, amount)
        if not result["isValid"]:
            raise CapitalInsufficientError(result)
        return result

    async def validate_capital_removal(self, project_id, amount) -> Dict[str, Any]:
        """
        Whether `amount` of capital can be withdrawn from the project
        without leaving spent or committed money uncovered.
        """
        validate_non_negative(amount, "amount")

        snapshot = await self.get_capital_snapshot(project_id)
        removable = clamp_non_negative(snapshot["availableCapital"])
        requested = to_decimal(amount)
        is_valid = requested <= removable
        shortfall = clamp_non_negative(safe_subtract(requested, removable))

        if is_valid:
            message = f"Capital removal allowed. Removable: {to_float(removable):,.2f}"
        else:
            message = (
                f"Cannot remove {to_float(requested):,.2f}: only {to_float(removable):,.2f} is "
                f"neither spent nor committed"
            )

        return {
            "isValid": is_valid,
            "available": to_float(removable),
            "required": to_float(requested),
            "shortfall": to_float(shortfall),
            "totalInvested": snapshot["totalCapitalRaised"],
            "totalUsed": snapshot["totalCapitalUsed"],
            "committed": snapshot["committedCosts"],
            "message": message
        }
