from motor.motor_asyncio import AsyncIOMotorDatabase
from decimal import Decimal
from typing import Dict, Any, List, Optional
from bson import ObjectId
import logging

from core.financial_precision import (
    to_decimal, to_float, safe_add, safe_subtract, clamp_non_negative
)
from transaction_types import (
    MATERIAL, EXPENSE, PROFESSIONAL_FEE, PURCHASE_ORDER, INITIAL_EXPENSE,
    SCOPED_ACTUAL_TYPES, EXPENSE_CATEGORY_BUCKETS, SPENDING_CATEGORIES,
)

logger = logging.getLogger(__name__)

PROFESSIONAL_SERVICES_COLLECTION = "professional_services"


def _zero_buckets() -> Dict[str, Decimal]:
    return {category: Decimal('0') for category in SPENDING_CATEGORIES}


def _finalize(buckets: Dict[str, Decimal]) -> Dict[str, float]:
    """Round each bucket and add the grand total."""
    result = {category: to_float(amount) for category, amount in buckets.items()}
    result["total"] = to_float(safe_add(*buckets.values()))
    return result


def merge_breakdowns(*breakdowns: Dict[str, float]) -> Dict[str, float]:
    """Bucket-wise sum of {total, <category>...} dicts."""
    buckets = _zero_buckets()
    for breakdown in breakdowns:
        for category in SPENDING_CATEGORIES:
            buckets[category] += to_decimal(breakdown.get(category, 0))
    return _finalize(buckets)


class SpendingAggregator:
    """
    Recomputes actual spending and committed costs from raw transactions.

    RULES:
    1. Only non-deleted transactions in a type's actual/committed status set count
    2. Indirect costs never hit a phase or floor; they roll up to the project only
    3. A purchase order commits max(0, totalCost - realized linked materials),
       so a delivery moves value from committed to actual exactly once
    4. Nothing here reads a cached total; every call scans the transactions
    """

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    # ============================================
    # LOW-LEVEL SUMS
    # ============================================

    def _match(self, scope: Dict[str, Any], statuses, exclude_indirect: bool) -> Dict[str, Any]:
        match = dict(scope)
        match["deletedAt"] = None
        match["status"] = {"$in": sorted(statuses)}
        if exclude_indirect:
            match["isIndirectCost"] = {"$ne": True}
        return match

    async def _sum(self, collection: str, match: Dict[str, Any], amount_field: str, group_field: Optional[str] = None) -> Dict[Any, Decimal]:
        """$match + $group/$sum. Returns {group key: total}; key is None when ungrouped."""
        pipeline = [
            {"$match": match},
            {"$group": {
                "_id": f"${group_field}" if group_field else None,
                "total": {"$sum": f"${amount_field}"}
            }}
        ]
        results = await self.db[collection].aggregate(pipeline).to_list(length=None)
        return {row["_id"]: to_decimal(row.get("total", 0)) for row in results}

    async def _actual_buckets(self, scope: Dict[str, Any], exclude_indirect: bool = True) -> Dict[str, Decimal]:
        buckets = _zero_buckets()

        for definition in SCOPED_ACTUAL_TYPES:
            match = self._match(scope, definition.actual_statuses, exclude_indirect)

            if definition is EXPENSE:
                by_category = await self._sum(definition.collection, match, definition.amount_field, "category")
                for raw_category, amount in by_category.items():
                    bucket = EXPENSE_CATEGORY_BUCKETS.get((raw_category or "").lower(), "expenses")
                    buckets[bucket] += amount
            else:
                sums = await self._sum(definition.collection, match, definition.amount_field)
                buckets[definition.category] += sums.get(None, Decimal('0'))

        return buckets

    async def _purchase_order_commitments(self, scope: Dict[str, Any], exclude_indirect: bool = True) -> Decimal:
        """
        Σ max(0, PO totalCost - realized linked material spend) over committed POs.
        """
        match = self._match(scope, PURCHASE_ORDER.committed_statuses, exclude_indirect)
        orders = await self.db[PURCHASE_ORDER.collection].find(
            match, {PURCHASE_ORDER.amount_field: 1}
        ).to_list(length=None)

        if not orders:
            return Decimal('0')

        realized = await self._sum(
            MATERIAL.collection,
            {
                "linkedPurchaseOrderId": {"$in": [o["_id"] for o in orders]},
                "deletedAt": None,
                "status": {"$in": sorted(MATERIAL.actual_statuses)}
            },
            MATERIAL.amount_field,
            "linkedPurchaseOrderId"
        )

        committed = Decimal('0')
        for order in orders:
            outstanding = safe_subtract(
                PURCHASE_ORDER.amount_of(order),
                realized.get(order["_id"], Decimal('0'))
            )
            committed += clamp_non_negative(outstanding)
        return committed

    async def calculate_purchase_order_outstanding(self, po_id: ObjectId) -> float:
        """Commitment still reserved by one purchase order (0 unless it is committed)."""
        order = await self.db[PURCHASE_ORDER.collection].find_one({"_id": po_id, "deletedAt": None})
        if not order or not PURCHASE_ORDER.is_committed(order.get("status")):
            return 0.0
        return to_float(await self._purchase_order_commitments({"_id": po_id}, exclude_indirect=False))

    async def _contract_commitments(self, scope: Dict[str, Any]) -> Decimal:
        """
        Unbilled remainder of active professional-service contracts:
        Σ max(0, contractValue - approved/paid fees billed against the contract).
        """
        contracts = await self.db[PROFESSIONAL_SERVICES_COLLECTION].find(
            {**scope, "deletedAt": None, "status": "active"},
            {"contractValue": 1}
        ).to_list(length=None)

        if not contracts:
            return Decimal('0')

        billed = await self._sum(
            PROFESSIONAL_FEE.collection,
            {
                "professionalServiceId": {"$in": [c["_id"] for c in contracts]},
                "deletedAt": None,
                "status": {"$in": sorted(PROFESSIONAL_FEE.actual_statuses)}
            },
            PROFESSIONAL_FEE.amount_field,
            "professionalServiceId"
        )

        committed = Decimal('0')
        for contract in contracts:
            committed += clamp_non_negative(
                safe_subtract(contract.get("contractValue", 0), billed.get(contract["_id"], Decimal('0')))
            )
        return committed

    async def calculate_contract_outstanding(self, service_id: ObjectId) -> float:
        """Unbilled remainder of one contract (0 unless it is active)."""
        return to_float(await self._contract_commitments({"_id": service_id}))

    # ============================================
    # FLOOR
    # ============================================

    async def calculate_floor_actual_spending(self, floor_id: ObjectId) -> Dict[str, float]:
        """Approved materials, labour, expenses and fees charged to the floor (indirect excluded)."""
        buckets = await self._actual_buckets({"floorId": floor_id})
        return _finalize(buckets)

    async def calculate_floor_committed_costs(self, floor_id: ObjectId) -> Dict[str, float]:
        buckets = _zero_buckets()
        buckets["materials"] = await self._purchase_order_commitments({"floorId": floor_id})
        return _finalize(buckets)

    # ============================================
    # PHASE
    # ============================================

    async def calculate_phase_actual_spending(self, phase: Dict[str, Any]) -> Dict[str, float]:
        """
        Floor-tracking phases: Σ floor actuals + phase transactions without a floor.
        Otherwise: every transaction carrying the phaseId or one of its floors.
        """
        floor_ids = await self._phase_floor_ids(phase["_id"])
        if not phase.get("tracksFloors"):
            return _finalize(await self._actual_buckets(self._phase_scope(phase["_id"], floor_ids)))

        parts = [_finalize(await self._actual_buckets({"phaseId": phase["_id"], "floorId": {"$nin": floor_ids}}))]
        for floor_id in floor_ids:
            parts.append(await self.calculate_floor_actual_spending(floor_id))
        return merge_breakdowns(*parts)

    async def calculate_phase_committed_costs(self, phase: Dict[str, Any]) -> Dict[str, float]:
        buckets = _zero_buckets()
        floor_ids = await self._phase_floor_ids(phase["_id"])

        if phase.get("tracksFloors"):
            buckets["materials"] = await self._purchase_order_commitments(
                {"phaseId": phase["_id"], "floorId": {"$nin": floor_ids}}
            )
            for floor_id in floor_ids:
                buckets["materials"] += await self._purchase_order_commitments({"floorId": floor_id})
        else:
            buckets["materials"] = await self._purchase_order_commitments(self._phase_scope(phase["_id"], floor_ids))

        buckets["professionalServices"] = await self._contract_commitments({"phaseId": phase["_id"]})
        return _finalize(buckets)

    async def _phase_floor_ids(self, phase_id: ObjectId) -> List[ObjectId]:
        floors = await self.db["floors"].find(
            {"phaseId": phase_id, "deletedAt": None}, {"_id": 1}
        ).to_list(length=None)
        return [f["_id"] for f in floors]

    @staticmethod
    def _phase_scope(phase_id: ObjectId, floor_ids: List[ObjectId]) -> Dict[str, Any]:
        """Transactions charged to the phase directly or through one of its floors."""
        if not floor_ids:
            return {"phaseId": phase_id}
        return {"$or": [{"phaseId": phase_id}, {"floorId": {"$in": floor_ids}}]}

    # ============================================
    # PROJECT
    # ============================================

    async def calculate_project_actual_spending(self, project_id: ObjectId) -> Dict[str, float]:
        """Direct (non-indirect) actual spend across the whole project."""
        return _finalize(await self._actual_buckets({"projectId": project_id}))

    async def calculate_project_committed_costs(self, project_id: ObjectId) -> Dict[str, float]:
        buckets = _zero_buckets()
        buckets["materials"] = await self._purchase_order_commitments({"projectId": project_id}, exclude_indirect=False)
        buckets["professionalServices"] = await self._contract_commitments({"projectId": project_id})
        return _finalize(buckets)

    async def calculate_indirect_spending(self, project_id: ObjectId) -> Dict[str, float]:
        """Actual spend flagged isIndirectCost, charged to the project's overhead bucket."""
        buckets = await self._actual_buckets(
            {"projectId": project_id, "isIndirectCost": True}, exclude_indirect=False
        )
        return _finalize(buckets)

    async def calculate_initial_expenses(self, project_id: ObjectId) -> float:
        """Approved pre-construction (initial) expenses."""
        sums = await self._sum(
            INITIAL_EXPENSE.collection,
            self._match({"projectId": project_id}, INITIAL_EXPENSE.actual_statuses, False),
            INITIAL_EXPENSE.amount_field
        )
        return to_float(sums.get(None, Decimal('0')))

    async def calculate_total_used(self, project_id: ObjectId) -> float:
        """
        Capital consumed by the project:
        direct actual + indirect actual + initial expenses.
        """
        direct = await self.calculate_project_actual_spending(project_id)
        indirect = await self.calculate_indirect_spending(project_id)
        initial = await self.calculate_initial_expenses(project_id)
        return to_float(safe_add(direct["total"], indirect["total"], initial))
