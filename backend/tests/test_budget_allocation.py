"""
Tests for phase / floor budget allocation, distribution suggestions
and availability checks
"""
import warnings
from datetime import datetime

import pytest

from budget_allocation import (
    BudgetAllocationService, BudgetAllocationError,
    normalize_allocation, classify_floor
)
from core.financial_precision import NegativeValueError
from models import BudgetAllocation
from permissions import PermissionDeniedError
from transaction_types import MATERIAL, PURCHASE_ORDER, EXPENSE
from conftest import seed_project, seed_phase, seed_floor, seed_transaction


class TestNormalizeAllocation:

    def test_total_only_gets_default_split(self):
        allocation = normalize_allocation(100000)
        assert allocation == {
            "total": 100000.0,
            "materials": 65000.0,
            "labour": 25000.0,
            "equipment": 5000.0,
            "subcontractors": 3000.0,
            "contingency": 0.0
        }

    def test_explicit_categories_kept(self):
        allocation = normalize_allocation({"total": 1000, "materials": 400, "labour": 600})
        assert allocation["materials"] == 400.0
        assert allocation["equipment"] == 0.0

    def test_negative_rejected(self):
        with pytest.raises(NegativeValueError):
            normalize_allocation({"total": 100, "materials": -1})

    def test_model_input_without_deprecation_warnings(self):
        with warnings.catch_warnings():
            warnings.simplefilter("error")
            allocation = normalize_allocation(BudgetAllocation(total=1000, materials=1000))
        assert allocation["materials"] == 1000.0
        assert allocation["labour"] == 0.0


class TestClassifyFloor:

    def test_structural_types(self):
        floors = [{"floorNumber": -1}, {"floorNumber": 1}, {"floorNumber": 2}]
        assert classify_floor(floors[0], floors) == "basement"
        assert classify_floor(floors[1], floors) == "typical"
        assert classify_floor(floors[2], floors) == "penthouse"

    def test_explicit_type_wins(self):
        floor = {"floorNumber": 5, "floorType": "Basement"}
        assert classify_floor(floor, [floor]) == "basement"

    def test_single_floor_is_typical(self):
        floor = {"floorNumber": 0}
        assert classify_floor(floor, [floor]) == "typical"


class TestEvenDistribution:

    @pytest.mark.asyncio
    async def test_remainder_on_last_floor(self, db):
        p = await seed_project(db)
        ph = await seed_phase(db, p, total=100000)
        for number in (1, 2, 3):
            await seed_floor(db, p, ph, number)

        suggestions = await BudgetAllocationService(db).get_even_distribution(ph)

        amounts = [s["suggestedAllocation"] for s in suggestions]
        assert amounts == [33333.0, 33333.0, 33334.0]
        assert sum(amounts) == 100000.0
        assert [s["floorNumber"] for s in suggestions] == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_no_floors(self, db):
        p = await seed_project(db)
        ph = await seed_phase(db, p, total=100000)
        assert await BudgetAllocationService(db).get_even_distribution(ph) == []


class TestWeightedDistribution:

    @pytest.mark.asyncio
    async def test_default_weights(self, db):
        p = await seed_project(db)
        ph = await seed_phase(db, p, total=35000)
        for number in (-1, 1, 2):
            await seed_floor(db, p, ph, number)

        result = await BudgetAllocationService(db).get_weighted_distribution(ph)

        assert [a["floorType"] for a in result["allocations"]] == ["basement", "typical", "penthouse"]
        assert [a["suggestedAllocation"] for a in result["allocations"]] == [12000.0, 10000.0, 13000.0]
        assert result["warnings"] == []

    @pytest.mark.asyncio
    async def test_under_minimum_floor_raised_not_rebalanced(self, db):
        p = await seed_project(db)
        ph = await seed_phase(db, p, total=35000)
        await seed_floor(db, p, ph, -1)
        typical = await seed_floor(db, p, ph, 1, name="Level 1")
        await seed_floor(db, p, ph, 2)
        await seed_transaction(db, MATERIAL, p, 8000, "approved", floorId=typical)
        await seed_transaction(db, PURCHASE_ORDER, p, 3000, "order_accepted", floorId=typical)

        result = await BudgetAllocationService(db).get_weighted_distribution(ph)
        allocations = result["allocations"]

        assert allocations[1]["suggestedAllocation"] == 11000.0
        assert allocations[1]["minimumRequired"] == 11000.0
        assert allocations[0]["suggestedAllocation"] == 12000.0
        assert allocations[2]["suggestedAllocation"] == 13000.0
        assert len(result["warnings"]) == 2
        assert "Level 1" in result["warnings"][0]
        assert "exceed the phase budget" in result["warnings"][1]

    @pytest.mark.asyncio
    async def test_custom_weights_by_floor_id(self, db):
        p = await seed_project(db)
        ph = await seed_phase(db, p, total=10000)
        f1 = await seed_floor(db, p, ph, 1)
        f2 = await seed_floor(db, p, ph, 2)

        result = await BudgetAllocationService(db).get_weighted_distribution(
            ph, {str(f1): 3, str(f2): 1}
        )
        assert [a["suggestedAllocation"] for a in result["allocations"]] == [7500.0, 2500.0]


class TestFloorAllocation:

    @pytest.mark.asyncio
    async def test_writes_allocation_and_remaining(self, db, pm_user):
        p = await seed_project(db)
        ph = await seed_phase(db, p, total=100000)
        fl = await seed_floor(db, p, ph, 1)
        await seed_transaction(db, MATERIAL, p, 1000, "approved", floorId=fl)

        result = await BudgetAllocationService(db).allocate_floor_budget(fl, {"total": 50000}, pm_user)

        assert result["remaining"] == 49000.0
        assert result["warnings"] == []
        assert result["financialVersion"] == 1

        floor = await db["floors"].find_one({"_id": fl})
        assert floor["budgetAllocation"]["total"] == 50000.0
        assert floor["budgetAllocation"]["materials"] == 32500.0
        assert floor["financialStates"]["remaining"] == 49000.0
        assert floor["financialVersion"] == 1

        audit = await db["audit_logs"].find_one({"action": "BUDGET_ALLOCATED", "entityId": str(fl)})
        assert audit["changes"]["budgetAllocation"]["newValue"]["total"] == 50000.0

    @pytest.mark.asyncio
    async def test_sibling_overrun_rejected(self, db, pm_user):
        p = await seed_project(db)
        ph = await seed_phase(db, p, total=100000)
        await seed_floor(db, p, ph, 1, total=60000)
        f2 = await seed_floor(db, p, ph, 2)

        with pytest.raises(BudgetAllocationError) as exc:
            await BudgetAllocationService(db).allocate_floor_budget(f2, {"total": 50000}, pm_user)

        assert exc.value.details["overrun"] == 10000.0
        floor = await db["floors"].find_one({"_id": f2})
        assert floor["budgetAllocation"]["total"] == 0

    @pytest.mark.asyncio
    async def test_below_spending_warns(self, db, pm_user):
        p = await seed_project(db)
        ph = await seed_phase(db, p, total=100000)
        fl = await seed_floor(db, p, ph, 1)
        await seed_transaction(db, MATERIAL, p, 1000, "approved", floorId=fl)

        result = await BudgetAllocationService(db).allocate_floor_budget(fl, 500, pm_user)

        assert len(result["warnings"]) == 1
        assert result["remaining"] == 0.0

    @pytest.mark.asyncio
    async def test_permission_required(self, db, supervisor_user):
        p = await seed_project(db)
        ph = await seed_phase(db, p, total=100000)
        fl = await seed_floor(db, p, ph, 1)

        with pytest.raises(PermissionDeniedError):
            await BudgetAllocationService(db).allocate_floor_budget(fl, 100, supervisor_user)


class TestPhaseAllocation:

    @pytest.mark.asyncio
    async def test_phases_cannot_exceed_dcc(self, db, pm_user):
        # legacy budget: DCC = 850,000
        p = await seed_project(db, budget={"total": 1000000})
        await seed_phase(db, p, total=800000)
        ph2 = await seed_phase(db, p, phaseName="Finishing", phaseType="finishing")

        with pytest.raises(BudgetAllocationError):
            await BudgetAllocationService(db).allocate_phase_budget(ph2, 100000, pm_user)

        result = await BudgetAllocationService(db).allocate_phase_budget(ph2, 50000, pm_user)
        assert result["budgetAllocation"]["total"] == 50000.0

    @pytest.mark.asyncio
    async def test_initialize_default_split(self, db, pm_user):
        p = await seed_project(db, budget={"total": 1200000, "directConstructionCosts": 1000000})
        construction = await seed_phase(db, p, phaseType="construction")
        finishing = await seed_phase(db, p, phaseType="finishing", sequence=2)
        custom = await seed_phase(db, p, phaseType="landscaping", sequence=3)

        initialized = await BudgetAllocationService(db).initialize_phase_budgets(p, pm_user)

        assert len(initialized) == 2
        assert (await db["phases"].find_one({"_id": construction}))["budgetAllocation"]["total"] == 650000.0
        assert (await db["phases"].find_one({"_id": finishing}))["budgetAllocation"]["total"] == 150000.0
        assert (await db["phases"].find_one({"_id": custom}))["budgetAllocation"]["total"] == 0


class TestBulkFloorAllocation:

    @pytest.mark.asyncio
    async def test_apply_even_distribution(self, db, pm_user):
        p = await seed_project(db)
        ph = await seed_phase(db, p, total=90000)
        floors = [await seed_floor(db, p, ph, n) for n in (1, 2, 3)]

        result = await BudgetAllocationService(db).allocate_phase_budget_to_floors(ph, pm_user, strategy="even")

        assert len(result["floors"]) == 3
        for floor_id in floors:
            floor = await db["floors"].find_one({"_id": floor_id})
            assert floor["budgetAllocation"]["total"] == 30000.0
        phase = await db["phases"].find_one({"_id": ph})
        assert phase["floorsOverAllocated"] is False

    @pytest.mark.asyncio
    async def test_unknown_strategy(self, db, pm_user):
        p = await seed_project(db)
        ph = await seed_phase(db, p, total=90000)
        with pytest.raises(BudgetAllocationError):
            await BudgetAllocationService(db).allocate_phase_budget_to_floors(ph, pm_user, strategy="random")

    @pytest.mark.asyncio
    async def test_rescale(self, db, pm_user):
        p = await seed_project(db)
        ph = await seed_phase(db, p, total=100000)
        f1 = await seed_floor(db, p, ph, 1, total=10000)
        f2 = await seed_floor(db, p, ph, 2, total=30000)

        result = await BudgetAllocationService(db).rescale_floor_budgets(ph, 80000, pm_user)

        assert result["factor"] == 2.0
        assert (await db["floors"].find_one({"_id": f1}))["budgetAllocation"]["total"] == 20000.0
        assert (await db["floors"].find_one({"_id": f2}))["budgetAllocation"]["total"] == 60000.0


class TestHierarchyDeletes:

    @pytest.mark.asyncio
    async def test_floor_with_spend_is_kept(self, db, pm_user):
        p = await seed_project(db)
        ph = await seed_phase(db, p, total=100000)
        fl = await seed_floor(db, p, ph, 1, total=10000)
        await seed_transaction(db, MATERIAL, p, 7000, "approved", floorId=fl)
        await seed_transaction(db, PURCHASE_ORDER, p, 2000, "order_sent", floorId=fl)
        await db["material_requests"].insert_one({"projectId": p, "floorId": fl, "deletedAt": None})

        with pytest.raises(BudgetAllocationError) as exc:
            await BudgetAllocationService(db).soft_delete_floor(fl, pm_user)

        assert exc.value.details["dependents"] == {
            "materials": 1, "purchase_orders": 1, "material_requests": 1
        }
        floor = await db["floors"].find_one({"_id": fl})
        assert floor.get("deletedAt") is None
        assert await db["audit_logs"].count_documents({"action": "SOFT_DELETE"}) == 0

    @pytest.mark.asyncio
    async def test_empty_floor_deleted(self, db, pm_user):
        p = await seed_project(db)
        ph = await seed_phase(db, p, total=50000, floorsOverAllocated=True)
        f1 = await seed_floor(db, p, ph, 1, total=40000)
        await seed_floor(db, p, ph, 2, total=30000)
        # Deleted records no longer hold the floor
        await seed_transaction(db, MATERIAL, p, 500, "approved", floorId=f1, deletedAt=datetime.utcnow())

        await BudgetAllocationService(db).soft_delete_floor(f1, pm_user, reason="merged into floor 2")

        floor = await db["floors"].find_one({"_id": f1})
        assert floor["deletedAt"] is not None
        assert floor["deletedBy"] == "pm-1"
        phase = await db["phases"].find_one({"_id": ph})
        assert phase["floorsOverAllocated"] is False
        entry = await db["audit_logs"].find_one({"action": "SOFT_DELETE", "entityType": "Floor"})
        assert entry["description"] == "merged into floor 2"

    @pytest.mark.asyncio
    async def test_phase_with_floors_is_kept(self, db, pm_user):
        p = await seed_project(db)
        ph = await seed_phase(db, p, total=100000)
        await seed_floor(db, p, ph, 1)
        await seed_transaction(db, EXPENSE, p, 300, "PENDING", phaseId=ph)

        with pytest.raises(BudgetAllocationError) as exc:
            await BudgetAllocationService(db).soft_delete_phase(ph, pm_user)

        assert exc.value.details["dependents"] == {"expenses": 1, "floors": 1}
        assert (await db["phases"].find_one({"_id": ph})).get("deletedAt") is None

    @pytest.mark.asyncio
    async def test_empty_phase_deleted_and_project_refreshed(self, db, pm_user):
        p = await seed_project(db, budget={"total": 500000, "directConstructionCosts": 400000})
        kept = await seed_phase(db, p, total=300000)
        dropped = await seed_phase(db, p, total=100000, phaseName="Landscaping", sequence=2)

        result = await BudgetAllocationService(db).soft_delete_phase(dropped, pm_user)

        assert result["recalculated"] is True
        assert (await db["phases"].find_one({"_id": dropped}))["deletedAt"] is not None
        assert (await db["phases"].find_one({"_id": kept})).get("deletedAt") is None
        project = await db["projects"].find_one({"_id": p})
        assert project["finances"]["allocatedToPhases"] == 300000.0
        assert project["finances"]["unallocatedDCC"] == 100000.0

    @pytest.mark.asyncio
    async def test_delete_requires_permission(self, db, supervisor_user):
        p = await seed_project(db)
        ph = await seed_phase(db, p)
        with pytest.raises(PermissionDeniedError):
            await BudgetAllocationService(db).soft_delete_phase(ph, supervisor_user)


class TestAvailabilityChecks:

    @pytest.mark.asyncio
    async def test_unset_budget_passes(self, db):
        p = await seed_project(db)
        ph = await seed_phase(db, p)

        check = await BudgetAllocationService(db).check_phase_budget(ph, 1000000)
        assert check["isSet"] is False
        assert check["isValid"] is True

    @pytest.mark.asyncio
    async def test_floor_check_uses_fresh_spending(self, db):
        p = await seed_project(db)
        ph = await seed_phase(db, p, total=100000)
        fl = await seed_floor(db, p, ph, 1, total=10000)
        await seed_transaction(db, MATERIAL, p, 7000, "approved", floorId=fl)

        check = await BudgetAllocationService(db).check_floor_budget(fl, 5000)

        assert check["isValid"] is False
        assert check["available"] == 3000.0
        assert check["shortfall"] == 2000.0

    @pytest.mark.asyncio
    async def test_indirect_check(self, db):
        p = await seed_project(db, budget={"total": 100000, "indirect": 1000})
        await seed_transaction(db, EXPENSE, p, 800, "APPROVED", isIndirectCost=True)

        check = await BudgetAllocationService(db).check_indirect_budget(p, 500)
        assert check["isValid"] is False
        assert check["available"] == 200.0
