"""
LEDGER CORE - ALLOCATION INVARIANT VALIDATOR

Detects budget-hierarchy constraints:
1. sum(floor budgetAllocation.total) <= phase budgetAllocation.total
2. sum(phase budgetAllocation.total) <= project allocable (DCC) budget
3. financialStates.remaining == max(0, total - actual - committed)

Allocation-time callers block on (1) and (2); recalculation only
detects and flags them. (3) is checked against stored snapshots when
violations are collected, which catches writes that bypassed recalculation.
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from decimal import Decimal
from typing import Optional, Dict, List, Any, Iterable
import logging

from core.financial_precision import (
    to_decimal, to_float, safe_sum, safe_subtract, calculate_remaining, amounts_differ
)

logger = logging.getLogger(__name__)


class InvariantViolationError(Exception):
    """Raised when a financial invariant is violated"""
    def __init__(self, violation_type: str, message: str, details: dict = None):
        self.violation_type = violation_type
        self.message = message
        self.details = details or {}
        super().__init__(message)


def allocation_total(doc: Optional[Dict[str, Any]]) -> Decimal:
    """budgetAllocation.total of a phase/floor document (0 when unset)."""
    if not doc:
        return Decimal('0')
    return to_decimal((doc.get("budgetAllocation") or {}).get("total", 0))


def find_allocation_overrun(
    parent_total,
    child_totals: Iterable
) -> Optional[Dict[str, float]]:
    """
    Compare the children's allocations against the parent's.

    Returns None when the children fit, else the overrun detail.
    A parent with no budget set (0) never reports an overrun.
    """
    parent = to_decimal(parent_total)
    if parent <= Decimal('0'):
        return None

    allocated = safe_sum(child_totals)
    if allocated <= parent:
        return None

    return {
        "parentTotal": to_float(parent),
        "allocatedTotal": to_float(allocated),
        "overrun": to_float(safe_subtract(allocated, parent))
    }


def validate_scope_snapshot(entity_type: str, doc: Dict[str, Any]) -> None:
    """
    Conservation check on a stored floor/phase snapshot.
    Raises InvariantViolationError if financialStates.remaining no longer
    equals max(0, total - actual - committed) for the stored figures.
    A scope that was never recalculated has nothing to check.
    """
    states = doc.get("financialStates")
    if not states:
        return

    entity_id = doc["_id"]
    budget_total = allocation_total(doc)
    actual_total = states.get("actual", 0)
    committed_total = states.get("committed", 0)
    remaining = states.get("remaining", 0)
    expected = calculate_remaining(budget_total, actual_total, committed_total)
    if to_decimal(remaining) < Decimal('0') or amounts_differ(remaining, expected):
        raise InvariantViolationError(
            violation_type="REMAINING_MISMATCH",
            message=(
                f"{entity_type} {entity_id}: remaining {remaining} does not equal "
                f"max(0, total - actual - committed) = {expected}"
            ),
            details={
                "entity_type": entity_type,
                "entity_id": str(entity_id),
                "budget_total": to_float(budget_total),
                "actual": to_float(actual_total),
                "committed": to_float(committed_total),
                "remaining": to_float(remaining),
                "expected": expected
            }
        )


class FinancialInvariantValidator:
    """
    Hierarchy-level allocation checks that need the store.
    """

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def detect_floor_over_allocation(
        self,
        phase: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        """
        Sum the live floors under a phase and compare with the phase total.
        Detect-only: logs a warning and returns the overrun detail.
        """
        floors = await self.db["floors"].find(
            {"phaseId": phase["_id"], "deletedAt": None},
            {"budgetAllocation": 1}
        ).to_list(length=None)

        overrun = find_allocation_overrun(
            allocation_total(phase),
            [allocation_total(f) for f in floors]
        )
        if overrun:
            overrun["floorCount"] = len(floors)
            logger.warning(
                f"[INVARIANT] Floors of phase {phase['_id']} over-allocated: "
                f"{overrun['allocatedTotal']} > {overrun['parentTotal']}"
            )
        return overrun

    async def detect_phase_over_allocation(
        self,
        project_id,
        allocable_budget
    ) -> Optional[Dict[str, Any]]:
        """Same check one level up: phases against the project's DCC budget."""
        phases = await self.db["phases"].find(
            {"projectId": project_id, "deletedAt": None},
            {"budgetAllocation": 1}
        ).to_list(length=None)

        overrun = find_allocation_overrun(
            allocable_budget,
            [allocation_total(p) for p in phases]
        )
        if overrun:
            logger.warning(
                f"[INVARIANT] Phases of project {project_id} over-allocated: "
                f"{overrun['allocatedTotal']} > {overrun['parentTotal']}"
            )
        return overrun

    async def collect_project_violations(self, project_id, allocable_budget) -> List[dict]:
        """
        Run every hierarchy check for a project.
        Does NOT raise - collects all violations for reporting.
        """
        violations = []

        phase_overrun = await self.detect_phase_over_allocation(project_id, allocable_budget)
        if phase_overrun:
            violations.append({"type": "PHASES_OVER_ALLOCATED", "projectId": str(project_id), **phase_overrun})

        phases = await self.db["phases"].find(
            {"projectId": project_id, "deletedAt": None}
        ).to_list(length=None)
        for phase in phases:
            floor_overrun = await self.detect_floor_over_allocation(phase)
            if floor_overrun:
                violations.append({"type": "FLOORS_OVER_ALLOCATED", "phaseId": str(phase["_id"]), **floor_overrun})

        floors = await self.db["floors"].find(
            {"projectId": project_id, "deletedAt": None}
        ).to_list(length=None)
        for entity_type, docs in (("Phase", phases), ("Floor", floors)):
            for doc in docs:
                try:
                    validate_scope_snapshot(entity_type, doc)
                except InvariantViolationError as e:
                    logger.warning(f"[INVARIANT] {e.message}")
                    violations.append({"type": e.violation_type, **e.details})

        return violations
