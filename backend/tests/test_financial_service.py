"""
Tests for the recalculation cascade, idempotence and versioned writes
"""
import pytest
import pytest_asyncio
from bson import ObjectId
from datetime import datetime
from unittest.mock import AsyncMock

from financial_service import FinancialRecalculationService
from core.invariant_validator import (
    FinancialInvariantValidator, InvariantViolationError, validate_scope_snapshot
)
from core.version_lock_engine import (
    OptimisticVersionWriter, VersionConflictError, DocumentNotFoundError, VERSION_FIELD
)
from transaction_types import MATERIAL, PURCHASE_ORDER, INITIAL_EXPENSE
from conftest import seed_project, seed_phase, seed_floor, seed_investor, seed_transaction


@pytest_asyncio.fixture
async def ledger(db):
    project_id = await seed_project(db, budget={"total": 2000000})
    await seed_investor(db, project_id, 1000000)
    phase_id = await seed_phase(db, project_id, total=100000, tracks_floors=True)
    floor_id = await seed_floor(db, project_id, phase_id, 1, total=50000)
    material_id = await seed_transaction(db, MATERIAL, project_id, 10000, "approved", phaseId=phase_id, floorId=floor_id)
    await seed_transaction(db, PURCHASE_ORDER, project_id, 5000, "order_accepted", phaseId=phase_id, floorId=floor_id)
    return {"project": project_id, "phase": phase_id, "floor": floor_id, "material": material_id}


class TestScopeRecalculation:

    @pytest.mark.asyncio
    async def test_floor(self, db, ledger):
        updates = await FinancialRecalculationService(db).recalculate_floor_spending(ledger["floor"])

        assert updates["financialStates"]["actual"] == 10000.0
        assert updates["financialStates"]["committed"] == 5000.0
        assert updates["financialStates"]["remaining"] == 35000.0

        floor = await db["floors"].find_one({"_id": ledger["floor"]})
        assert floor["actualSpending"]["materials"] == 10000.0
        assert floor["committedCosts"]["materials"] == 5000.0
        assert floor[VERSION_FIELD] == 1

    @pytest.mark.asyncio
    async def test_conservation(self, db, ledger):
        await FinancialRecalculationService(db).recalculate_project_finances(ledger["project"])

        for collection, scope_id, total in (("floors", ledger["floor"], 50000), ("phases", ledger["phase"], 100000)):
            doc = await db[collection].find_one({"_id": scope_id})
            states = doc["financialStates"]
            assert states["remaining"] + states["actual"] + states["committed"] == total

    @pytest.mark.asyncio
    async def test_remaining_clamped_when_overspent(self, db, ledger):
        await seed_transaction(db, MATERIAL, ledger["project"], 60000, "approved", floorId=ledger["floor"])

        updates = await FinancialRecalculationService(db).recalculate_floor_spending(ledger["floor"])

        assert updates["financialStates"]["remaining"] == 0.0
        assert updates["financialStates"]["status"] == "over_budget"

    @pytest.mark.asyncio
    async def test_floor_over_allocation_flagged(self, db, ledger):
        await seed_floor(db, ledger["project"], ledger["phase"], 2, total=60000)

        updates = await FinancialRecalculationService(db).recalculate_phase_spending(ledger["phase"])

        assert updates["floorsOverAllocated"] is True
        phase = await db["phases"].find_one({"_id": ledger["phase"]})
        assert phase["floorsOverAllocated"] is True

    @pytest.mark.asyncio
    async def test_unknown_floor(self, db):
        with pytest.raises(DocumentNotFoundError):
            await FinancialRecalculationService(db).recalculate_floor_spending(ObjectId())


class TestProjectRecalculation:

    @pytest.mark.asyncio
    async def test_full_cascade(self, db, ledger):
        finances = await FinancialRecalculationService(db).recalculate_project_finances(ledger["project"])

        assert finances["totalCapitalRaised"] == 1000000.0
        assert finances["totalCapitalUsed"] == 10000.0
        assert finances["committedCosts"] == 5000.0
        assert finances["availableCapital"] == 985000.0
        assert finances["capitalStatus"] == "sufficient"
        assert finances["allocatedToPhases"] == 100000.0

        phase = await db["phases"].find_one({"_id": ledger["phase"]})
        assert phase["financialStates"]["remaining"] == 85000.0
        project = await db["projects"].find_one({"_id": ledger["project"]})
        assert project["finances"]["availableCapital"] == 985000.0

    @pytest.mark.asyncio
    async def test_idempotent(self, db, ledger):
        service = FinancialRecalculationService(db)

        first = await service.recalculate_project_finances(ledger["project"])
        audit_count = await db["audit_logs"].count_documents({"action": "RECALCULATED"})
        second = await service.recalculate_project_finances(ledger["project"])

        for field in ("totalCapitalRaised", "totalCapitalUsed", "committedCosts", "availableCapital"):
            assert first[field] == second[field]
        assert await db["audit_logs"].count_documents({"action": "RECALCULATED"}) == audit_count

    @pytest.mark.asyncio
    async def test_soft_deleted_transaction_drops_out(self, db, ledger):
        service = FinancialRecalculationService(db)
        await service.recalculate_project_finances(ledger["project"])

        await db["materials"].update_one({"_id": ledger["material"]}, {"$set": {"deletedAt": datetime.utcnow()}})
        finances = await service.recalculate_project_finances(ledger["project"])

        assert finances["totalCapitalUsed"] == 0.0
        floor = await db["floors"].find_one({"_id": ledger["floor"]})
        assert floor["financialStates"]["actual"] == 0.0

    @pytest.mark.asyncio
    async def test_unknown_project(self, db):
        with pytest.raises(DocumentNotFoundError):
            await FinancialRecalculationService(db).recalculate_project_finances(ObjectId())

    @pytest.mark.asyncio
    async def test_recalculate_all(self, db, ledger):
        archived = await seed_project(db, name="Old", archivedAt=datetime.utcnow())

        results = await FinancialRecalculationService(db).recalculate_all_projects()

        assert results == {str(ledger["project"]): "ok"}
        assert str(archived) not in results

    @pytest.mark.asyncio
    async def test_floor_only_spend_reaches_plain_phase(self, db, ledger):
        phase_id = await seed_phase(db, ledger["project"], total=100000, phaseName="Finishing", sequence=2)
        floor_id = await seed_floor(db, ledger["project"], phase_id, 5)
        await seed_transaction(db, MATERIAL, ledger["project"], 20000, "approved", floorId=floor_id)

        await FinancialRecalculationService(db).recalculate_project_finances(ledger["project"])

        floor = await db["floors"].find_one({"_id": floor_id})
        phase = await db["phases"].find_one({"_id": phase_id})
        assert floor["financialStates"]["actual"] == 20000.0
        assert phase["financialStates"]["actual"] == 20000.0
        assert phase["financialStates"]["remaining"] == 80000.0


class TestTransactionTriggered:

    @pytest.mark.asyncio
    async def test_floor_phase_project(self, db, ledger):
        txn = await db["materials"].find_one({"_id": ledger["material"]})

        result = await FinancialRecalculationService(db).recalculate_for_transaction(txn, MATERIAL)

        assert result["refreshed"] == [
            f"floor:{ledger['floor']}",
            f"phase:{ledger['phase']}",
            f"project:{ledger['project']}"
        ]

    @pytest.mark.asyncio
    async def test_phase_looked_up_from_floor(self, db, ledger):
        txn = {"_id": ObjectId(), "projectId": ledger["project"], "floorId": ledger["floor"]}

        result = await FinancialRecalculationService(db).recalculate_for_transaction(txn, MATERIAL)
        assert f"phase:{ledger['phase']}" in result["refreshed"]

    @pytest.mark.asyncio
    async def test_initial_expense_only_touches_project(self, db, ledger):
        txn_id = await seed_transaction(db, INITIAL_EXPENSE, ledger["project"], 2000, "approved")
        txn = await db["initial_expenses"].find_one({"_id": txn_id})

        result = await FinancialRecalculationService(db).recalculate_for_transaction(txn, INITIAL_EXPENSE)

        assert result["refreshed"] == [f"project:{ledger['project']}"]
        assert result["finances"]["totalCapitalUsed"] == 12000.0
        assert result["finances"]["preConstructionSpending"]["spent"] == 2000.0

    @pytest.mark.asyncio
    async def test_safe_wrapper_swallows_failures(self, db, ledger):
        service = FinancialRecalculationService(db)
        service.recalculate_for_transaction = AsyncMock(side_effect=RuntimeError("connection reset"))

        result = await service.safe_recalculate_for_transaction({"_id": ledger["material"], "projectId": ledger["project"]})
        assert result is None


class TestVersionedWrites:

    @pytest.mark.asyncio
    async def test_conflict_is_retried(self, db, ledger):
        calls = []

        async def compute(doc):
            calls.append(doc.get(VERSION_FIELD, 0))
            if len(calls) == 1:
                # Another writer lands between our read and our write
                await db["floors"].update_one({"_id": doc["_id"]}, {"$inc": {VERSION_FIELD: 1}})
            return {"marker": len(calls)}

        result = await OptimisticVersionWriter(db, max_retries=3).write("floors", "Floor", ledger["floor"], compute)

        assert len(calls) == 2
        assert result["version"] == 2
        floor = await db["floors"].find_one({"_id": ledger["floor"]})
        assert floor["marker"] == 2
        assert floor[VERSION_FIELD] == 2

    @pytest.mark.asyncio
    async def test_persistent_conflict_raises(self, db, ledger):
        calls = []

        async def compute(doc):
            calls.append(1)
            await db["floors"].update_one({"_id": doc["_id"]}, {"$inc": {VERSION_FIELD: 1}})
            return {"marker": True}

        with pytest.raises(VersionConflictError) as exc:
            await OptimisticVersionWriter(db, max_retries=3).write("floors", "Floor", ledger["floor"], compute)

        assert len(calls) == 3
        assert exc.value.attempts == 3
        floor = await db["floors"].find_one({"_id": ledger["floor"]})
        assert "marker" not in floor


class TestSnapshotIntegrity:

    def test_unrecalculated_scope_has_nothing_to_check(self):
        validate_scope_snapshot("Floor", {"_id": ObjectId(), "budgetAllocation": {"total": 100}})

    def test_stale_remaining_raises(self):
        doc = {
            "_id": ObjectId(),
            "budgetAllocation": {"total": 50000},
            "financialStates": {"actual": 10000, "committed": 5000, "remaining": 40000}
        }
        with pytest.raises(InvariantViolationError) as exc:
            validate_scope_snapshot("Floor", doc)
        assert exc.value.violation_type == "REMAINING_MISMATCH"
        assert exc.value.details["expected"] == 35000.0

    @pytest.mark.asyncio
    async def test_recalculated_ledger_is_consistent(self, db, ledger):
        await FinancialRecalculationService(db).recalculate_project_finances(ledger["project"])

        violations = await FinancialInvariantValidator(db).collect_project_violations(ledger["project"], 2000000)
        assert violations == []

    @pytest.mark.asyncio
    async def test_budget_write_outside_recalculation_is_reported(self, db, ledger):
        await FinancialRecalculationService(db).recalculate_project_finances(ledger["project"])
        await db["floors"].update_one({"_id": ledger["floor"]}, {"$set": {"budgetAllocation.total": 80000}})

        violations = await FinancialInvariantValidator(db).collect_project_violations(ledger["project"], 2000000)

        assert [v["type"] for v in violations] == ["REMAINING_MISMATCH"]
        assert violations[0]["entity_id"] == str(ledger["floor"])
        assert violations[0]["expected"] == 65000.0
