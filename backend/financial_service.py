from motor.motor_asyncio import AsyncIOMotorDatabase
from datetime import datetime
from typing import Dict, Any, Optional, List
import logging
import os

from core.financial_precision import to_float, safe_add, safe_subtract, clamp_non_negative, calculate_remaining, amounts_differ
from core.invariant_validator import (
    FinancialInvariantValidator, allocation_total
)
from core.version_lock_engine import OptimisticVersionWriter, DocumentNotFoundError, DEFAULT_MAX_RETRIES
from models import to_object_id
from audit_service import AuditService
from capital_service import CapitalService
from spending_aggregator import SpendingAggregator
from transaction_types import TransactionDefinition
from financial_status import (
    get_budget_status, get_capital_status, calculate_dcc_from_budget,
    get_indirect_budget, get_preconstruction_budget
)

logger = logging.getLogger(__name__)

VERSION_CONFLICT_RETRIES = int(os.getenv("VERSION_CONFLICT_RETRIES", str(DEFAULT_MAX_RETRIES)))

SYSTEM_USER_ID = "system"


class FinancialRecalculationService:
    """
    Recalculation Orchestrator.

    Derived fields (actualSpending, committedCosts, financialStates, project finances)
    are a materialized view over the transaction collections.

    RULES:
    - Every call recomputes from source transactions; no deltas are applied
    - Cascade is bottom-up: floors -> phases -> project
    - Scope writes are conditional on the financialVersion they were computed from
    - Recomputing with no intervening writes yields the same figures (idempotent)
    - Callers inside approval flows use safe_recalculate_for_transaction, which never raises
    """

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        aggregator: Optional[SpendingAggregator] = None,
        capital_service: Optional[CapitalService] = None,
        audit_service: Optional[AuditService] = None,
        version_writer: Optional[OptimisticVersionWriter] = None
    ):
        self.db = db
        self.aggregator = aggregator or SpendingAggregator(db)
        self.capital_service = capital_service or CapitalService(db, self.aggregator)
        self.audit_service = audit_service or AuditService(db)
        self.version_writer = version_writer or OptimisticVersionWriter(db, VERSION_CONFLICT_RETRIES)
        self.invariant_validator = FinancialInvariantValidator(db)

    # ============================================
    # SCOPE SNAPSHOTS
    # ============================================

    def _scope_updates(
        self,
        entity_type: str,
        doc: Dict[str, Any],
        actual: Dict[str, float],
        committed: Dict[str, float]
    ) -> Dict[str, Any]:
        budget_total = allocation_total(doc)
        remaining = calculate_remaining(budget_total, actual["total"], committed["total"])

        return {
            "actualSpending": actual,
            "committedCosts": committed,
            "financialStates": {
                "actual": actual["total"],
                "committed": committed["total"],
                "remaining": remaining,
                "status": get_budget_status(budget_total, safe_add(actual["total"], committed["total"]))
            },
            "lastRecalculatedAt": datetime.utcnow()
        }

    async def _audit_if_changed(
        self,
        entity_type: str,
        result: Dict[str, Any],
        project_id,
        user_id: str
    ):
        """One RECALCULATED entry when the derived totals moved; nothing otherwise."""
        previous = result["previous"]
        updates = result["updates"]
        old_states = previous.get("financialStates") or {}
        new_states = updates["financialStates"]

        changes = {}
        for field in ("actual", "committed", "remaining"):
            old_value = old_states.get(field)
            new_value = new_states[field]
            if old_value is None or amounts_differ(old_value, new_value):
                changes[f"financialStates.{field}"] = {"oldValue": old_value, "newValue": new_value}

        if not changes:
            return

        await self.audit_service.log_action(
            user_id=user_id,
            action="RECALCULATED",
            entity_type=entity_type,
            entity_id=previous["_id"],
            project_id=project_id,
            changes=changes
        )

    async def recalculate_floor_spending(self, floor_id, user_id: str = SYSTEM_USER_ID) -> Dict[str, Any]:
        """Recompute actualSpending / committedCosts / remaining for one floor."""
        floor_id = to_object_id(floor_id)

        async def compute(floor):
            actual = await self.aggregator.calculate_floor_actual_spending(floor["_id"])
            committed = await self.aggregator.calculate_floor_committed_costs(floor["_id"])
            return self._scope_updates("Floor", floor, actual, committed)

        result = await self.version_writer.write("floors", "Floor", floor_id, compute, {"deletedAt": None})
        await self._audit_if_changed("Floor", result, result["previous"].get("projectId"), user_id)

        logger.info(f"[RECALC] Floor {floor_id}: remaining {result['updates']['financialStates']['remaining']}")
        return result["updates"]

    async def recalculate_phase_spending(self, phase_id, user_id: str = SYSTEM_USER_ID) -> Dict[str, Any]:
        """
        Recompute one phase. Floor-tracking phases aggregate their floors;
        floor over-allocation is flagged here, never blocked.
        """
        phase_id = to_object_id(phase_id)

        async def compute(phase):
            actual = await self.aggregator.calculate_phase_actual_spending(phase)
            committed = await self.aggregator.calculate_phase_committed_costs(phase)
            updates = self._scope_updates("Phase", phase, actual, committed)
            overrun = await self.invariant_validator.detect_floor_over_allocation(phase)
            updates["floorsOverAllocated"] = bool(overrun)
            return updates

        result = await self.version_writer.write("phases", "Phase", phase_id, compute, {"deletedAt": None})
        await self._audit_if_changed("Phase", result, result["previous"].get("projectId"), user_id)

        logger.info(f"[RECALC] Phase {phase_id}: remaining {result['updates']['financialStates']['remaining']}")
        return result["updates"]

    # ============================================
    # PROJECT
    # ============================================

    async def _project_finances(self, project: Dict[str, Any]) -> Dict[str, Any]:
        project_id = project["_id"]
        budget = project.get("budget") or {}

        capital = await self.capital_service.get_capital_snapshot(project_id)
        actual = await self.aggregator.calculate_project_actual_spending(project_id)
        indirect = await self.aggregator.calculate_indirect_spending(project_id)
        initial = await self.aggregator.calculate_initial_expenses(project_id)

        phases = await self.db["phases"].find(
            {"projectId": project_id, "deletedAt": None}, {"budgetAllocation": 1}
        ).to_list(length=None)
        allocated = safe_add(*[allocation_total(p) for p in phases])
        dcc = calculate_dcc_from_budget(budget)
        phase_overrun = await self.invariant_validator.detect_phase_over_allocation(project_id, dcc)

        indirect_budget = get_indirect_budget(budget)
        preconstruction_budget = get_preconstruction_budget(budget)

        return {
            **capital,
            "actualSpending": actual,
            "indirectCosts": {
                "budget": indirect_budget,
                "spent": indirect["total"],
                "remaining": calculate_remaining(indirect_budget, indirect["total"], 0)
            },
            "preConstructionSpending": {
                "budget": preconstruction_budget,
                "spent": initial,
                "remaining": calculate_remaining(preconstruction_budget, initial, 0)
            },
            "allocatedToPhases": to_float(allocated),
            "unallocatedDCC": to_float(clamp_non_negative(safe_subtract(dcc, allocated))),
            "phasesOverAllocated": bool(phase_overrun),
            "budgetStatus": get_budget_status(budget.get("total", 0), capital["totalCapitalUsed"]),
            "capitalStatus": get_capital_status(capital["availableCapital"], capital["totalCapitalRaised"]),
            "lastRecalculatedAt": datetime.utcnow()
        }

    async def refresh_project_snapshot(self, project_id, user_id: str = SYSTEM_USER_ID) -> Dict[str, Any]:
        """Recompute only the project-level finances snapshot (no floor/phase cascade)."""
        project_id = to_object_id(project_id)

        async def compute(project):
            return {"finances": await self._project_finances(project)}

        result = await self.version_writer.write("projects", "Project", project_id, compute)
        finances = result["updates"]["finances"]
        old = result["previous"].get("finances") or {}

        changes = {}
        for field in ("totalCapitalRaised", "totalCapitalUsed", "committedCosts", "availableCapital"):
            if old.get(field) is None or amounts_differ(old.get(field), finances[field]):
                changes[f"finances.{field}"] = {"oldValue": old.get(field), "newValue": finances[field]}

        if changes:
            await self.audit_service.log_action(
                user_id=user_id,
                action="RECALCULATED",
                entity_type="Project",
                entity_id=project_id,
                project_id=project_id,
                changes=changes
            )

        logger.info(
            f"[RECALC] Project {project_id}: used {finances['totalCapitalUsed']}, "
            f"committed {finances['committedCosts']}, available {finances['availableCapital']}"
        )
        return finances

    async def recalculate_project_finances(self, project_id, user_id: str = SYSTEM_USER_ID) -> Dict[str, Any]:
        """
        Canonical entry point: every floor, then every phase, then the project.

        Raises DocumentNotFoundError for an unknown project and lets store
        errors propagate; approval flows go through the safe wrapper instead.
        """
        project_id = to_object_id(project_id)
        try:
            project = await self.db["projects"].find_one({"_id": project_id}, {"_id": 1})
            if not project:
                raise DocumentNotFoundError("Project", project_id)

            floors = await self.db["floors"].find(
                {"projectId": project_id, "deletedAt": None}, {"_id": 1}
            ).to_list(length=None)
            for floor in floors:
                await self.recalculate_floor_spending(floor["_id"], user_id)

            phases = await self.db["phases"].find(
                {"projectId": project_id, "deletedAt": None}, {"_id": 1}
            ).to_list(length=None)
            for phase in phases:
                await self.recalculate_phase_spending(phase["_id"], user_id)

            finances = await self.refresh_project_snapshot(project_id, user_id)
            logger.info(
                f"[RECALC] Project {project_id} fully recalculated "
                f"({len(floors)} floors, {len(phases)} phases)"
            )
            return finances

        except DocumentNotFoundError:
            raise
        except Exception as e:
            logger.error(f"[RECALC] Project-wide financial recalculation failed for {project_id}: {str(e)}")
            raise

    async def recalculate_all_projects(self, user_id: str = SYSTEM_USER_ID) -> Dict[str, str]:
        """
        Manual refresh of every non-archived project.
        One failing project does not stop the others.
        """
        projects = await self.db["projects"].find({"archivedAt": None}, {"_id": 1}).to_list(length=None)
        results = {}
        for project in projects:
            try:
                await self.recalculate_project_finances(project["_id"], user_id)
                results[str(project["_id"])] = "ok"
            except Exception as e:
                results[str(project["_id"])] = f"failed: {str(e)}"
        return results

    # ============================================
    # TRANSACTION-TRIGGERED
    # ============================================

    async def recalculate_for_transaction(
        self,
        txn: Dict[str, Any],
        definition: Optional[TransactionDefinition] = None,
        user_id: str = SYSTEM_USER_ID
    ) -> Dict[str, Any]:
        """
        Narrowest cascade for one transaction: its floor, its phase
        (or the floor's phase), then the project snapshot.
        """
        refreshed: List[str] = []
        project_only = definition is not None and definition.project_only

        if not project_only:
            phase_id = txn.get("phaseId")

            if txn.get("floorId"):
                await self.recalculate_floor_spending(txn["floorId"], user_id)
                refreshed.append(f"floor:{txn['floorId']}")
                if not phase_id:
                    floor = await self.db["floors"].find_one({"_id": txn["floorId"]}, {"phaseId": 1})
                    phase_id = (floor or {}).get("phaseId")

            if phase_id:
                await self.recalculate_phase_spending(phase_id, user_id)
                refreshed.append(f"phase:{phase_id}")

        finances = await self.refresh_project_snapshot(txn["projectId"], user_id)
        refreshed.append(f"project:{txn['projectId']}")
        return {"refreshed": refreshed, "finances": finances}

    async def safe_recalculate_for_transaction(
        self,
        txn: Dict[str, Any],
        definition: Optional[TransactionDefinition] = None,
        user_id: str = SYSTEM_USER_ID
    ) -> Optional[Dict[str, Any]]:
        """
        recalculate_for_transaction that never fails the caller.
        A stale snapshot self-heals on the next successful recalculation.
        """
        try:
            return await self.recalculate_for_transaction(txn, definition, user_id)
        except Exception as e:
            # Don't fail the originating approval if recalculation fails
            logger.error(
                f"[RECALC] Recalculation after {txn.get('_id')} failed, snapshot left stale: {str(e)}"
            )
            return None

    async def safe_refresh_project_snapshot(self, project_id, user_id: str = SYSTEM_USER_ID) -> Optional[Dict[str, Any]]:
        """refresh_project_snapshot for budget and hierarchy edits; never fails the caller."""
        try:
            return await self.refresh_project_snapshot(project_id, user_id)
        except Exception as e:
            logger.error(f"[RECALC] Project {project_id} refresh failed, snapshot left stale: {str(e)}")
            return None
