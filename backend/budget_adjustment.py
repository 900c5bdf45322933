"""
Project-level budget changes: category adjustments and transfers.

RULES:
1. Only enhanced budgets (with a direct construction cost envelope) can be adjusted
2. An adjustment moves one category and budget.total by the same amount
3. A transfer moves value between two categories; budget.total is unchanged
4. No category may drop below what it has already consumed
   (dcc: allocated to phases, preconstruction: initial expenses,
   indirect: indirect spend, contingency: contingencyUsed)
5. Contingency never receives a transfer and cannot give once any of it is used
6. Every executed change is stored, audited, and followed by a project snapshot refresh
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from datetime import datetime
from decimal import Decimal
from typing import Dict, Any, List, Optional, Callable
import logging

from core.financial_precision import (
    to_decimal, to_float, safe_add, safe_subtract, clamp_non_negative, validate_positive
)
from core.invariant_validator import allocation_total
from core.version_lock_engine import OptimisticVersionWriter, DocumentNotFoundError
from models import BudgetCategory, AdjustmentType, to_object_id
from audit_service import AuditService
from budget_allocation import BudgetAllocationError
from financial_service import FinancialRecalculationService
from permissions import Action, has_permission, require_permission
from spending_aggregator import SpendingAggregator
from financial_status import (
    is_enhanced_budget, calculate_dcc_from_budget, get_indirect_budget, get_preconstruction_budget
)

logger = logging.getLogger(__name__)

# Category -> field on project.budget
CATEGORY_FIELDS = {
    BudgetCategory.DCC: "directConstructionCosts",
    BudgetCategory.PRECONSTRUCTION: "preConstruction",
    BudgetCategory.INDIRECT: "indirect",
    BudgetCategory.CONTINGENCY: "contingency",
}

CONTINGENCY_USED_FIELD = "contingencyUsed"

ADJUSTMENTS_COLLECTION = "budget_adjustments"
TRANSFERS_COLLECTION = "budget_transfers"


class BudgetAdjustmentError(BudgetAllocationError):
    """Raised when an adjustment or transfer would break the project budget envelope"""


def budgeted_amount(budget: Dict[str, Any], category: BudgetCategory) -> Decimal:
    """Current envelope of one category, read the same way the finances snapshot reads it."""
    if category is BudgetCategory.DCC:
        return to_decimal(calculate_dcc_from_budget(budget))
    if category is BudgetCategory.PRECONSTRUCTION:
        return to_decimal(get_preconstruction_budget(budget))
    if category is BudgetCategory.INDIRECT:
        return to_decimal(get_indirect_budget(budget))
    return to_decimal(budget.get("contingency"))


class BudgetAdjustmentService:
    """
    Executes project budget adjustments and category transfers.

    Changes apply immediately; there is no request / approve round trip.
    """

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        aggregator: Optional[SpendingAggregator] = None,
        audit_service: Optional[AuditService] = None,
        version_writer: Optional[OptimisticVersionWriter] = None,
        recalculation_service: Optional[FinancialRecalculationService] = None,
        permission_checker: Callable[[dict, object], bool] = has_permission
    ):
        self.db = db
        self.aggregator = aggregator or SpendingAggregator(db)
        self.audit_service = audit_service or AuditService(db)
        self.version_writer = version_writer or OptimisticVersionWriter(db)
        self.recalculation_service = recalculation_service or FinancialRecalculationService(
            db, self.aggregator, audit_service=self.audit_service
        )
        self.permission_checker = permission_checker

    # ============================================
    # BALANCES
    # ============================================

    async def _consumed(self, project: Dict[str, Any], category: BudgetCategory) -> Decimal:
        project_id = project["_id"]
        if category is BudgetCategory.DCC:
            phases = await self.db["phases"].find(
                {"projectId": project_id, "deletedAt": None}, {"budgetAllocation": 1}
            ).to_list(length=None)
            return safe_add(*[allocation_total(p) for p in phases])
        if category is BudgetCategory.PRECONSTRUCTION:
            return to_decimal(await self.aggregator.calculate_initial_expenses(project_id))
        if category is BudgetCategory.INDIRECT:
            return to_decimal((await self.aggregator.calculate_indirect_spending(project_id))["total"])
        return to_decimal((project.get("budget") or {}).get(CONTINGENCY_USED_FIELD))

    async def _get_project(self, project_id) -> Dict[str, Any]:
        project = await self.db["projects"].find_one({"_id": to_object_id(project_id)})
        if not project:
            raise DocumentNotFoundError("Project", project_id)
        return project

    @staticmethod
    def _require_enhanced(project: Dict[str, Any]) -> Dict[str, Any]:
        budget = project.get("budget") or {}
        if not is_enhanced_budget(budget):
            raise BudgetAdjustmentError(
                "Legacy budgets cannot be adjusted; migrate the project to the enhanced budget structure first",
                details={"projectId": project["_id"]}
            )
        return budget

    async def get_category_balances(self, project_id) -> Dict[str, Dict[str, float]]:
        """{category: {budgeted, consumed, available}} for every budget category."""
        project = await self._get_project(project_id)
        budget = project.get("budget") or {}

        balances = {}
        for category in BudgetCategory:
            budgeted = budgeted_amount(budget, category)
            consumed = await self._consumed(project, category)
            balances[category.value] = {
                "budgeted": to_float(budgeted),
                "consumed": to_float(consumed),
                "available": to_float(clamp_non_negative(safe_subtract(budgeted, consumed)))
            }
        return balances

    # ============================================
    # ADJUSTMENTS
    # ============================================

    async def adjust_project_budget(
        self,
        project_id,
        category,
        adjustment_type,
        amount,
        user: dict,
        reason: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Increase or decrease one budget category; budget.total moves with it.

        Raises:
            BudgetAdjustmentError for legacy budgets or a decrease below what is consumed
            NegativeValueError for a non-positive amount
        """
        require_permission(user, Action.ADJUST_BUDGET, self.permission_checker)
        category = BudgetCategory(category)
        adjustment_type = AdjustmentType(adjustment_type)
        validate_positive(amount, "amount")
        amount = to_decimal(amount)
        field = CATEGORY_FIELDS[category]

        async def compute(project):
            budget = self._require_enhanced(project)
            current = budgeted_amount(budget, category)

            if adjustment_type is AdjustmentType.INCREASE:
                new_value = safe_add(current, amount)
                new_total = safe_add(budget.get("total", 0), amount)
            else:
                new_value = safe_subtract(current, amount)
                new_total = safe_subtract(budget.get("total", 0), amount)
                if new_value < Decimal('0'):
                    raise BudgetAdjustmentError(
                        f"Cannot decrease {category.value} by {to_float(amount):,.2f}: "
                        f"only {to_float(current):,.2f} is budgeted",
                        details={"category": category.value, "budgeted": to_float(current)}
                    )
                consumed = await self._consumed(project, category)
                if new_value < consumed:
                    raise BudgetAdjustmentError(
                        f"Cannot decrease {category.value} to {to_float(new_value):,.2f}: "
                        f"{to_float(consumed):,.2f} is already consumed",
                        details={
                            "category": category.value,
                            "consumed": to_float(consumed),
                            "requestedValue": to_float(new_value)
                        }
                    )

            return {
                f"budget.{field}": to_float(new_value),
                "budget.total": to_float(clamp_non_negative(new_total)),
                "budget.updatedAt": datetime.utcnow()
            }

        result = await self.version_writer.write("projects", "Project", to_object_id(project_id), compute)
        project = result["previous"]
        previous_budget = project.get("budget") or {}
        previous_value = to_float(budgeted_amount(previous_budget, category))
        updates = result["updates"]
        user_id = user.get("user_id")
        now = datetime.utcnow()

        record = {
            "projectId": project["_id"],
            "category": category.value,
            "adjustmentType": adjustment_type.value,
            "amount": to_float(amount),
            "previousValue": previous_value,
            "newValue": updates[f"budget.{field}"],
            "previousTotal": to_float(previous_budget.get("total", 0)),
            "newTotal": updates["budget.total"],
            "reason": reason,
            "status": "completed",
            "requestedBy": user_id,
            "executedAt": now,
            "createdAt": now
        }
        inserted = await self.db[ADJUSTMENTS_COLLECTION].insert_one(record)
        record["_id"] = inserted.inserted_id

        await self.audit_service.log_action(
            user_id=user_id,
            action="BUDGET_ADJUSTED",
            entity_type="Project",
            entity_id=project["_id"],
            project_id=project["_id"],
            changes={
                f"budget.{field}": {"oldValue": previous_value, "newValue": record["newValue"]},
                "budget.total": {"oldValue": record["previousTotal"], "newValue": record["newTotal"]}
            },
            description=reason
        )

        logger.info(
            f"[BUDGET] Project {project['_id']} {category.value} {adjustment_type.value}d by "
            f"{to_float(amount)}: {previous_value} -> {record['newValue']}"
        )

        record["finances"] = await self.recalculation_service.safe_refresh_project_snapshot(project["_id"], user_id)
        return record

    # ============================================
    # TRANSFERS
    # ============================================

    async def transfer_budget(
        self,
        project_id,
        from_category,
        to_category,
        amount,
        user: dict,
        reason: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Move budget between two categories. budget.total is unchanged.

        Raises:
            BudgetAdjustmentError when the categories match, the destination is
            contingency, used contingency is the source, or the source has less
            than `amount` unconsumed
        """
        require_permission(user, Action.ADJUST_BUDGET, self.permission_checker)
        from_category = BudgetCategory(from_category)
        to_category = BudgetCategory(to_category)
        validate_positive(amount, "amount")
        amount = to_decimal(amount)

        if from_category is to_category:
            raise BudgetAdjustmentError(
                "Source and destination categories must differ",
                details={"category": from_category.value}
            )
        if to_category is BudgetCategory.CONTINGENCY:
            raise BudgetAdjustmentError(
                "Contingency cannot receive transfers; use an increase adjustment instead",
                details={"toCategory": to_category.value}
            )

        from_field = CATEGORY_FIELDS[from_category]
        to_field = CATEGORY_FIELDS[to_category]

        async def compute(project):
            budget = self._require_enhanced(project)
            source = budgeted_amount(budget, from_category)
            consumed = await self._consumed(project, from_category)

            if from_category is BudgetCategory.CONTINGENCY and consumed > Decimal('0'):
                raise BudgetAdjustmentError(
                    "Contingency that has been used cannot be transferred",
                    details={"contingencyUsed": to_float(consumed)}
                )

            available = clamp_non_negative(safe_subtract(source, consumed))
            if amount > available:
                raise BudgetAdjustmentError(
                    f"Cannot transfer {to_float(amount):,.2f} from {from_category.value}: "
                    f"only {to_float(available):,.2f} is unconsumed",
                    details={
                        "fromCategory": from_category.value,
                        "available": to_float(available),
                        "required": to_float(amount)
                    }
                )

            return {
                f"budget.{from_field}": to_float(safe_subtract(source, amount)),
                f"budget.{to_field}": to_float(safe_add(budgeted_amount(budget, to_category), amount)),
                "budget.updatedAt": datetime.utcnow()
            }

        result = await self.version_writer.write("projects", "Project", to_object_id(project_id), compute)
        project = result["previous"]
        previous_budget = project.get("budget") or {}
        updates = result["updates"]
        user_id = user.get("user_id")
        now = datetime.utcnow()

        record = {
            "projectId": project["_id"],
            "fromCategory": from_category.value,
            "toCategory": to_category.value,
            "amount": to_float(amount),
            "fromBefore": to_float(budgeted_amount(previous_budget, from_category)),
            "fromAfter": updates[f"budget.{from_field}"],
            "toBefore": to_float(budgeted_amount(previous_budget, to_category)),
            "toAfter": updates[f"budget.{to_field}"],
            "reason": reason,
            "status": "completed",
            "requestedBy": user_id,
            "executedAt": now,
            "createdAt": now
        }
        inserted = await self.db[TRANSFERS_COLLECTION].insert_one(record)
        record["_id"] = inserted.inserted_id

        await self.audit_service.log_action(
            user_id=user_id,
            action="BUDGET_TRANSFERRED",
            entity_type="Project",
            entity_id=project["_id"],
            project_id=project["_id"],
            changes={
                f"budget.{from_field}": {"oldValue": record["fromBefore"], "newValue": record["fromAfter"]},
                f"budget.{to_field}": {"oldValue": record["toBefore"], "newValue": record["toAfter"]}
            },
            description=reason
        )

        logger.info(
            f"[BUDGET] Project {project['_id']} moved {to_float(amount)} "
            f"from {from_category.value} to {to_category.value}"
        )

        record["finances"] = await self.recalculation_service.safe_refresh_project_snapshot(project["_id"], user_id)
        return record

    # ============================================
    # HISTORY
    # ============================================

    async def get_budget_history(self, project_id, limit: int = 50) -> Dict[str, List[Dict[str, Any]]]:
        """Executed adjustments and transfers, newest first."""
        query = {"projectId": to_object_id(project_id)}
        adjustments = await self.db[ADJUSTMENTS_COLLECTION].find(
            query, sort=[("createdAt", -1)]
        ).to_list(length=limit)
        transfers = await self.db[TRANSFERS_COLLECTION].find(
            query, sort=[("createdAt", -1)]
        ).to_list(length=limit)

        return {"adjustments": adjustments, "transfers": transfers}
