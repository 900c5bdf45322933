from motor.motor_asyncio import AsyncIOMotorDatabase
from bson import ObjectId
from datetime import datetime
from decimal import Decimal
from typing import Dict, Any, List, Optional, Callable
import logging

from core.financial_precision import (
    to_decimal, to_float, safe_add, safe_subtract, safe_divide, safe_multiply,
    calculate_percentage, calculate_remaining, clamp_non_negative,
    floor_whole, round_whole, validate_non_negative
)
from core.invariant_validator import (
    FinancialInvariantValidator, allocation_total, find_allocation_overrun
)
from core.version_lock_engine import OptimisticVersionWriter, DocumentNotFoundError
from models import BudgetAllocation, to_object_id
from audit_service import AuditService
from permissions import Action, has_permission, require_permission
from spending_aggregator import SpendingAggregator
from financial_status import calculate_dcc_from_budget, get_indirect_budget
from financial_service import FinancialRecalculationService
from transaction_types import TRANSACTION_DEFINITIONS

logger = logging.getLogger(__name__)

ALLOCATION_FIELDS = ("total", "materials", "labour", "equipment", "subcontractors", "contingency")

# Structural floor weights for weighted suggestions
DEFAULT_FLOOR_WEIGHTS = {
    "basement": Decimal("1.2"),
    "typical": Decimal("1.0"),
    "penthouse": Decimal("1.3"),
}

# Category split applied when only a total is given (percent of total)
DEFAULT_CATEGORY_SPLIT = {
    "materials": Decimal("65"),
    "labour": Decimal("25"),
    "equipment": Decimal("5"),
    "subcontractors": Decimal("3"),
    "contingency": Decimal("0"),
}

# DCC split across phase types (percent of direct construction costs)
DEFAULT_PHASE_SPLIT = {
    "preConstruction": Decimal("15"),
    "construction": Decimal("65"),
    "finishing": Decimal("15"),
    "contingency": Decimal("5"),
}

# Anything that can be charged to a floor or phase blocks its deletion
SCOPE_DEPENDENT_COLLECTIONS = tuple(
    d.collection for d in TRANSACTION_DEFINITIONS.values() if not d.project_only
) + ("material_requests",)


class BudgetInsufficientError(Exception):
    """Raised when a spend exceeds a phase/floor budget. Overridable by elevated roles."""
    def __init__(self, scope: str, scope_id, available, required, budget):
        self.scope = scope
        self.scope_id = str(scope_id)
        self.available = to_float(available)
        self.required = to_float(required)
        self.budget = to_float(budget)
        self.shortfall = to_float(clamp_non_negative(safe_subtract(required, available)))
        super().__init__(
            f"Insufficient {scope} budget. Available: {self.available:,.2f}, "
            f"Required: {self.required:,.2f}, Shortfall: {self.shortfall:,.2f}"
        )


class BudgetAllocationError(Exception):
    """Raised when an allocation would break the budget hierarchy"""
    def __init__(self, message: str, details: dict = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


def normalize_allocation(allocation, apply_default_split: bool = True) -> Dict[str, float]:
    """
    Accept a BudgetAllocation, dict, or bare total and return the stored shape.

    Negative amounts raise NegativeValueError. When only a total is given the
    default category split (65/25/5/3) is applied.
    """
    if isinstance(allocation, BudgetAllocation):
        allocation = allocation.model_dump()
    elif not isinstance(allocation, dict):
        allocation = {"total": allocation}

    for key in ALLOCATION_FIELDS:
        validate_non_negative(allocation.get(key, 0) or 0, f"budgetAllocation.{key}")

    total = to_decimal(allocation.get("total", 0))
    has_categories = any(allocation.get(k) for k in ALLOCATION_FIELDS if k != "total")

    result = {"total": to_float(total)}
    for key in ALLOCATION_FIELDS[1:]:
        if has_categories or not apply_default_split:
            result[key] = to_float(allocation.get(key, 0) or 0)
        else:
            result[key] = to_float(calculate_percentage(total, DEFAULT_CATEGORY_SPLIT[key]))
    return result


def scale_allocation(allocation: Dict[str, Any], factor) -> Dict[str, float]:
    """Multiply every field of an allocation by factor."""
    return {
        key: to_float(safe_multiply(allocation.get(key, 0) or 0, factor))
        for key in ALLOCATION_FIELDS
    }


def classify_floor(floor: Dict[str, Any], floors: List[Dict[str, Any]]) -> str:
    """
    basement / typical / penthouse.

    An explicit floorType wins. Otherwise below-ground floors are basements and
    the highest floor is the penthouse when more than one floor is above ground.
    """
    explicit = (floor.get("floorType") or "").lower()
    if explicit in DEFAULT_FLOOR_WEIGHTS:
        return explicit

    number = floor.get("floorNumber", 0) or 0
    if number < 0:
        return "basement"

    above_ground = [f.get("floorNumber", 0) or 0 for f in floors if (f.get("floorNumber", 0) or 0) >= 0]
    if len(above_ground) > 1 and number == max(above_ground):
        return "penthouse"
    return "typical"


def _floor_label(floor: Dict[str, Any]) -> str:
    name = floor.get("name")
    number = floor.get("floorNumber")
    return f"{name} (floor {number})" if name else f"Floor {number}"


class BudgetAllocationService:
    """
    Budget Allocation Manager.

    RULES:
    1. Allocations are non-negative
    2. remaining = max(0, total - actual - committed), from freshly aggregated figures
    3. Σ phase totals <= project DCC, Σ floor totals <= phase total, checked on every allocation write
    4. Suggestions (even / weighted) never rebalance; under-minimum floors are raised and warned about
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
        self.invariant_validator = FinancialInvariantValidator(db)
        self.recalculation_service = recalculation_service or FinancialRecalculationService(
            db, self.aggregator, audit_service=self.audit_service, version_writer=self.version_writer
        )
        self.permission_checker = permission_checker

    # ============================================
    # LOOKUPS
    # ============================================

    async def _get_phase(self, phase_id) -> Dict[str, Any]:
        phase = await self.db["phases"].find_one({"_id": to_object_id(phase_id), "deletedAt": None})
        if not phase:
            raise DocumentNotFoundError("Phase", phase_id)
        return phase

    async def _get_floor(self, floor_id) -> Dict[str, Any]:
        floor = await self.db["floors"].find_one({"_id": to_object_id(floor_id), "deletedAt": None})
        if not floor:
            raise DocumentNotFoundError("Floor", floor_id)
        return floor

    async def _get_phase_floors(self, phase_id) -> List[Dict[str, Any]]:
        return await self.db["floors"].find(
            {"phaseId": to_object_id(phase_id), "deletedAt": None},
            sort=[("floorNumber", 1)]
        ).to_list(length=None)

    async def _floor_minimum(self, floor_id) -> Decimal:
        """actual + committed: the least a floor can be allocated without going negative."""
        actual = await self.aggregator.calculate_floor_actual_spending(floor_id)
        committed = await self.aggregator.calculate_floor_committed_costs(floor_id)
        return safe_add(actual["total"], committed["total"])

    # ============================================
    # WRITES
    # ============================================

    async def _write_allocation(
        self,
        collection: str,
        entity_type: str,
        doc: Dict[str, Any],
        allocation: Dict[str, float],
        user: dict,
        actual_fn,
        committed_fn
    ) -> Dict[str, Any]:
        """Persist budgetAllocation with a freshly computed remaining, versioned."""

        async def compute(current: Dict[str, Any]) -> Dict[str, Any]:
            actual = await actual_fn(current)
            committed = await committed_fn(current)
            remaining = calculate_remaining(allocation["total"], actual["total"], committed["total"])
            return {
                "budgetAllocation": allocation,
                "actualSpending": actual,
                "committedCosts": committed,
                "financialStates.actual": actual["total"],
                "financialStates.committed": committed["total"],
                "financialStates.remaining": remaining,
                "updatedAt": datetime.utcnow()
            }

        result = await self.version_writer.write(
            collection, entity_type, doc["_id"], compute, extra_filter={"deletedAt": None}
        )

        await self.audit_service.log_action(
            user_id=user.get("user_id"),
            action="BUDGET_ALLOCATED",
            entity_type=entity_type,
            entity_id=doc["_id"],
            project_id=doc.get("projectId"),
            changes={
                "budgetAllocation": {
                    "oldValue": result["previous"].get("budgetAllocation"),
                    "newValue": allocation
                }
            }
        )

        updates = result["updates"]
        return {
            "id": str(doc["_id"]),
            "budgetAllocation": allocation,
            "actualSpending": updates["actualSpending"],
            "committedCosts": updates["committedCosts"],
            "remaining": updates["financialStates.remaining"],
            "financialVersion": result["version"]
        }

    async def _write_floor(self, floor: Dict[str, Any], allocation: Dict[str, float], user: dict) -> Dict[str, Any]:
        return await self._write_allocation(
            "floors", "Floor", floor, allocation, user,
            lambda f: self.aggregator.calculate_floor_actual_spending(f["_id"]),
            lambda f: self.aggregator.calculate_floor_committed_costs(f["_id"])
        )

    # ============================================
    # ALLOCATION
    # ============================================

    async def allocate_phase_budget(self, phase_id, allocation, user: dict) -> Dict[str, Any]:
        """
        Set a phase's budgetAllocation.
        Rejects allocations that push Σ phase totals above the project's DCC budget.
        """
        require_permission(user, Action.ALLOCATE_BUDGET, self.permission_checker)

        phase = await self._get_phase(phase_id)
        allocation = normalize_allocation(allocation)

        project = await self.db["projects"].find_one({"_id": phase["projectId"]})
        dcc = calculate_dcc_from_budget((project or {}).get("budget"))

        siblings = await self.db["phases"].find(
            {"projectId": phase["projectId"], "_id": {"$ne": phase["_id"]}, "deletedAt": None},
            {"budgetAllocation": 1}
        ).to_list(length=None)

        overrun = find_allocation_overrun(dcc, [allocation_total(s) for s in siblings] + [allocation["total"]])
        if overrun:
            raise BudgetAllocationError(
                f"Phase allocations ({overrun['allocatedTotal']:,.2f}) would exceed the project's "
                f"direct construction budget ({overrun['parentTotal']:,.2f})",
                details=overrun
            )

        result = await self._write_allocation(
            "phases", "Phase", phase, allocation, user,
            self.aggregator.calculate_phase_actual_spending,
            self.aggregator.calculate_phase_committed_costs
        )
        logger.info(f"[BUDGET] Phase {phase['_id']} allocated {allocation['total']}")
        return result

    async def allocate_floor_budget(self, floor_id, allocation, user: dict) -> Dict[str, Any]:
        """
        Set a floor's budgetAllocation.
        Rejects allocations that push Σ floor totals above the phase total.
        Allocating below actual + committed is allowed but warned about.
        """
        require_permission(user, Action.ALLOCATE_BUDGET, self.permission_checker)

        floor = await self._get_floor(floor_id)
        allocation = normalize_allocation(allocation)
        warnings = []

        if floor.get("phaseId"):
            phase = await self._get_phase(floor["phaseId"])
            siblings = await self.db["floors"].find(
                {"phaseId": phase["_id"], "_id": {"$ne": floor["_id"]}, "deletedAt": None},
                {"budgetAllocation": 1}
            ).to_list(length=None)

            overrun = find_allocation_overrun(
                allocation_total(phase),
                [allocation_total(s) for s in siblings] + [allocation["total"]]
            )
            if overrun:
                raise BudgetAllocationError(
                    f"Floor allocations ({overrun['allocatedTotal']:,.2f}) would exceed the phase "
                    f"budget ({overrun['parentTotal']:,.2f})",
                    details=overrun
                )

        minimum = await self._floor_minimum(floor["_id"])
        if to_decimal(allocation["total"]) < minimum:
            warnings.append(
                f"{_floor_label(floor)} allocation {allocation['total']:,.2f} is below its "
                f"actual + committed spending ({to_float(minimum):,.2f})"
            )

        result = await self._write_floor(floor, allocation, user)
        result["warnings"] = warnings
        logger.info(f"[BUDGET] Floor {floor['_id']} allocated {allocation['total']}")
        return result

    # ============================================
    # SUGGESTIONS
    # ============================================

    async def get_even_distribution(self, phase_id) -> List[Dict[str, Any]]:
        """
        Split the phase total evenly across its floors.
        Each floor gets floor(total / n); the remainder goes to the last floor.
        """
        phase = await self._get_phase(phase_id)
        floors = await self._get_phase_floors(phase["_id"])
        if not floors:
            return []

        total = allocation_total(phase)
        base = floor_whole(safe_divide(total, len(floors)))
        remainder = safe_subtract(total, safe_multiply(base, len(floors)))

        suggestions = []
        for index, floor in enumerate(floors):
            amount = base
            if index == len(floors) - 1:
                amount = safe_add(base, remainder)
            suggestions.append({
                "floorId": str(floor["_id"]),
                "floorNumber": floor.get("floorNumber"),
                "suggestedAllocation": to_float(amount)
            })
        return suggestions

    async def get_weighted_distribution(self, phase_id, weights: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Split the phase total by floor weight.

        Weights may be keyed by floor id or by floor type; structural defaults
        (basement 1.2, typical 1.0, penthouse 1.3) fill the gaps. Any floor whose
        share is below its actual + committed is raised to that minimum with a
        warning. The result is NOT rebalanced back into the phase total.
        """
        phase = await self._get_phase(phase_id)
        floors = await self._get_phase_floors(phase["_id"])
        total = allocation_total(phase)
        weights = weights or {}

        result = {
            "phaseId": str(phase["_id"]),
            "phaseTotal": to_float(total),
            "allocations": [],
            "warnings": []
        }
        if not floors:
            return result

        floor_weights = []
        for floor in floors:
            floor_type = classify_floor(floor, floors)
            weight = weights.get(str(floor["_id"]), weights.get(floor_type))
            weight = DEFAULT_FLOOR_WEIGHTS[floor_type] if weight is None else to_decimal(weight)
            validate_non_negative(weight, f"weight[{floor['_id']}]")
            floor_weights.append((floor, floor_type, weight))

        weight_sum = safe_add(*[w for _, _, w in floor_weights])
        suggested_total = Decimal('0')

        for floor, floor_type, weight in floor_weights:
            share = round_whole(safe_divide(safe_multiply(total, weight), weight_sum))
            minimum = await self._floor_minimum(floor["_id"])

            if share < minimum:
                result["warnings"].append(
                    f"{_floor_label(floor)}: suggested {to_float(share):,.2f} raised to minimum "
                    f"{to_float(minimum):,.2f} (actual + committed)"
                )
                share = minimum

            suggested_total += share
            result["allocations"].append({
                "floorId": str(floor["_id"]),
                "floorNumber": floor.get("floorNumber"),
                "floorType": floor_type,
                "weight": float(weight),
                "minimumRequired": to_float(minimum),
                "suggestedAllocation": to_float(share)
            })

        if total > Decimal('0') and suggested_total > total:
            result["warnings"].append(
                f"Suggested floor allocations ({to_float(suggested_total):,.2f}) exceed the phase "
                f"budget ({to_float(total):,.2f}) by {to_float(suggested_total - total):,.2f}"
            )

        return result

    async def allocate_phase_budget_to_floors(
        self,
        phase_id,
        user: dict,
        strategy: str = "even",
        weights: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Apply an even or weighted suggestion to every floor of the phase.
        Category amounts follow the phase's own category mix.
        """
        require_permission(user, Action.ALLOCATE_BUDGET, self.permission_checker)

        phase = await self._get_phase(phase_id)
        warnings = []
        if strategy == "even":
            suggestions = await self.get_even_distribution(phase_id)
        elif strategy == "weighted":
            weighted = await self.get_weighted_distribution(phase_id, weights)
            suggestions = weighted["allocations"]
            warnings = weighted["warnings"]
        else:
            raise BudgetAllocationError(f"Unknown distribution strategy '{strategy}'")

        phase_total = allocation_total(phase)
        phase_mix = normalize_allocation(phase.get("budgetAllocation") or {"total": phase_total})

        floors = {str(f["_id"]): f for f in await self._get_phase_floors(phase["_id"])}
        applied = []
        for suggestion in suggestions:
            floor = floors[suggestion["floorId"]]
            if phase_total > Decimal('0'):
                allocation = scale_allocation(phase_mix, safe_divide(suggestion["suggestedAllocation"], phase_total))
                allocation["total"] = suggestion["suggestedAllocation"]
            else:
                allocation = normalize_allocation(suggestion["suggestedAllocation"])
            applied.append(await self._write_floor(floor, allocation, user))

        overrun = await self.invariant_validator.detect_floor_over_allocation(phase)
        await self.db["phases"].update_one(
            {"_id": phase["_id"]},
            {"$set": {"floorsOverAllocated": bool(overrun)}}
        )

        return {"phaseId": str(phase["_id"]), "strategy": strategy, "floors": applied, "warnings": warnings}

    async def rescale_floor_budgets(self, phase_id, new_total, user: dict) -> Dict[str, Any]:
        """
        Scale every floor allocation by new_total / Σ current floor totals.
        Floors with no allocation yet get an even split instead.
        """
        require_permission(user, Action.ALLOCATE_BUDGET, self.permission_checker)
        validate_non_negative(new_total, "new_total")

        phase = await self._get_phase(phase_id)
        floors = await self._get_phase_floors(phase["_id"])
        old_total = safe_add(*[allocation_total(f) for f in floors])

        if not floors:
            return {"phaseId": str(phase["_id"]), "factor": None, "floors": []}

        if old_total <= Decimal('0'):
            base = floor_whole(safe_divide(new_total, len(floors)))
            remainder = safe_subtract(new_total, safe_multiply(base, len(floors)))
            targets = [base] * (len(floors) - 1) + [safe_add(base, remainder)]
            allocations = [normalize_allocation(to_float(t)) for t in targets]
            factor = None
        else:
            factor = safe_divide(new_total, old_total)
            allocations = [scale_allocation(f.get("budgetAllocation") or {}, factor) for f in floors]

        applied = []
        for floor, allocation in zip(floors, allocations):
            applied.append(await self._write_floor(floor, allocation, user))

        logger.info(f"[BUDGET] Rescaled {len(floors)} floors of phase {phase['_id']} to {to_float(new_total)}")
        return {
            "phaseId": str(phase["_id"]),
            "factor": float(factor) if factor is not None else None,
            "floors": applied
        }

    async def initialize_phase_budgets(self, project_id, user: dict) -> List[Dict[str, Any]]:
        """
        Give unbudgeted phases their default share of the project's DCC:
        preConstruction 15%, construction 65%, finishing 15%, contingency 5%.
        Phases of the same type share their type's percentage equally.
        """
        require_permission(user, Action.ALLOCATE_BUDGET, self.permission_checker)

        project_id = to_object_id(project_id)
        project = await self.db["projects"].find_one({"_id": project_id})
        if not project:
            raise DocumentNotFoundError("Project", project_id)

        dcc = calculate_dcc_from_budget(project.get("budget"))
        phases = await self.db["phases"].find(
            {"projectId": project_id, "deletedAt": None},
            sort=[("sequence", 1)]
        ).to_list(length=None)

        by_type: Dict[str, List[Dict[str, Any]]] = {}
        for phase in phases:
            by_type.setdefault(phase.get("phaseType"), []).append(phase)

        initialized = []
        for phase_type, group in by_type.items():
            percent = DEFAULT_PHASE_SPLIT.get(phase_type)
            if percent is None:
                continue
            share = safe_divide(calculate_percentage(dcc, percent), len(group))
            for phase in group:
                if allocation_total(phase) > Decimal('0'):
                    continue
                initialized.append(await self._write_allocation(
                    "phases", "Phase", phase, normalize_allocation(to_float(share)), user,
                    self.aggregator.calculate_phase_actual_spending,
                    self.aggregator.calculate_phase_committed_costs
                ))

        logger.info(f"[BUDGET] Initialized {len(initialized)} phase budgets for project {project_id}")
        return initialized

    # ============================================
    # HIERARCHY DELETES (soft only)
    # ============================================

    async def _count_dependents(self, field: str, scope_id: ObjectId) -> Dict[str, int]:
        """Live documents per collection that reference the scope, any status."""
        counts = {}
        for collection in SCOPE_DEPENDENT_COLLECTIONS:
            count = await self.db[collection].count_documents({field: scope_id, "deletedAt": None})
            if count:
                counts[collection] = count
        return counts

    async def soft_delete_floor(self, floor_id, user: dict, reason: Optional[str] = None) -> Dict[str, Any]:
        """
        Mark a floor deleted. Refused while any material, request, order or
        other transaction still references it.
        """
        require_permission(user, Action.ALLOCATE_BUDGET, self.permission_checker)

        floor = await self._get_floor(floor_id)
        dependents = await self._count_dependents("floorId", floor["_id"])
        if dependents:
            raise BudgetAllocationError(
                f"{_floor_label(floor)} cannot be deleted: "
                f"{sum(dependents.values())} dependent record(s) still reference it",
                details={"floorId": floor["_id"], "dependents": dependents}
            )

        now = datetime.utcnow()
        user_id = user.get("user_id")
        await self.db["floors"].update_one(
            {"_id": floor["_id"], "deletedAt": None},
            {"$set": {"deletedAt": now, "deletedBy": user_id, "deletionReason": reason}}
        )
        await self.audit_service.log_action(
            user_id=user_id,
            action="SOFT_DELETE",
            entity_type="Floor",
            entity_id=floor["_id"],
            project_id=floor.get("projectId"),
            changes={"deletedAt": {"oldValue": None, "newValue": now.isoformat()}},
            description=reason
        )

        # The phase's floor sum shrank; refresh its over-allocation flag
        if floor.get("phaseId"):
            phase = await self.db["phases"].find_one({"_id": floor["phaseId"], "deletedAt": None})
            if phase:
                overrun = await self.invariant_validator.detect_floor_over_allocation(phase)
                await self.db["phases"].update_one(
                    {"_id": phase["_id"]},
                    {"$set": {"floorsOverAllocated": bool(overrun)}}
                )

        logger.info(f"[BUDGET] Floor {floor['_id']} soft-deleted by {user_id}")
        return {"id": str(floor["_id"]), "deletedAt": now}

    async def soft_delete_phase(self, phase_id, user: dict, reason: Optional[str] = None) -> Dict[str, Any]:
        """
        Mark a phase deleted. Refused while it has live floors or any
        transaction charged to it; a phase with spend is never removed.
        """
        require_permission(user, Action.ALLOCATE_BUDGET, self.permission_checker)

        phase = await self._get_phase(phase_id)
        dependents = await self._count_dependents("phaseId", phase["_id"])
        floor_count = await self.db["floors"].count_documents({"phaseId": phase["_id"], "deletedAt": None})
        if floor_count:
            dependents["floors"] = floor_count

        if dependents:
            raise BudgetAllocationError(
                f"Phase {phase.get('phaseName') or phase['_id']} cannot be deleted: "
                f"{sum(dependents.values())} dependent record(s) still reference it",
                details={"phaseId": phase["_id"], "dependents": dependents}
            )

        now = datetime.utcnow()
        user_id = user.get("user_id")
        await self.db["phases"].update_one(
            {"_id": phase["_id"], "deletedAt": None},
            {"$set": {"deletedAt": now, "deletedBy": user_id, "deletionReason": reason}}
        )
        await self.audit_service.log_action(
            user_id=user_id,
            action="SOFT_DELETE",
            entity_type="Phase",
            entity_id=phase["_id"],
            project_id=phase.get("projectId"),
            changes={"deletedAt": {"oldValue": None, "newValue": now.isoformat()}},
            description=reason
        )

        # allocatedToPhases / unallocatedDCC moved
        finances = await self.recalculation_service.safe_refresh_project_snapshot(phase["projectId"], user_id)

        logger.info(f"[BUDGET] Phase {phase['_id']} soft-deleted by {user_id}")
        return {"id": str(phase["_id"]), "deletedAt": now, "recalculated": finances is not None}

    # ============================================
    # AVAILABILITY CHECKS (used by approvals)
    # ============================================

    def _availability(self, scope: str, scope_id, budget_total, actual, committed, amount) -> Dict[str, Any]:
        budget_total = to_decimal(budget_total)
        required = to_decimal(amount)

        if budget_total <= Decimal('0'):
            return {
                "scope": scope, "scopeId": str(scope_id), "isSet": False, "isValid": True,
                "budget": 0.0, "available": 0.0, "required": to_float(required), "shortfall": 0.0
            }

        available = to_decimal(calculate_remaining(budget_total, actual, committed))
        return {
            "scope": scope,
            "scopeId": str(scope_id),
            "isSet": True,
            "isValid": available >= required,
            "budget": to_float(budget_total),
            "available": to_float(available),
            "required": to_float(required),
            "shortfall": to_float(clamp_non_negative(safe_subtract(required, available)))
        }

    async def check_floor_budget(self, floor_id, amount) -> Dict[str, Any]:
        """Fresh floor availability. An unset budget (0) always passes."""
        floor = await self._get_floor(floor_id)
        actual = await self.aggregator.calculate_floor_actual_spending(floor["_id"])
        committed = await self.aggregator.calculate_floor_committed_costs(floor["_id"])
        return self._availability("floor", floor["_id"], allocation_total(floor), actual["total"], committed["total"], amount)

    async def check_phase_budget(self, phase_id, amount) -> Dict[str, Any]:
        """Fresh phase availability. An unset budget (0) always passes."""
        phase = await self._get_phase(phase_id)
        actual = await self.aggregator.calculate_phase_actual_spending(phase)
        committed = await self.aggregator.calculate_phase_committed_costs(phase)
        return self._availability("phase", phase["_id"], allocation_total(phase), actual["total"], committed["total"], amount)

    async def check_indirect_budget(self, project_id, amount) -> Dict[str, Any]:
        """Indirect-cost bucket availability. Informational: callers only warn on failure."""
        project_id = to_object_id(project_id)
        project = await self.db["projects"].find_one({"_id": project_id}) or {}
        spent = await self.aggregator.calculate_indirect_spending(project_id)
        return self._availability("indirect", project_id, get_indirect_budget(project.get("budget")), spent["total"], 0, amount)
