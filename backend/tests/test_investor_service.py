"""
Tests for the append-only contribution ledger and its reconciliation
"""
import pytest
from bson import ObjectId

from investor_service import InvestorService, calculate_contribution_totals
from core.financial_precision import NegativeValueError
from core.version_lock_engine import DocumentNotFoundError
from conftest import seed_project, seed_investor


class TestContributionTotals:

    def test_returns_are_subtracted(self):
        investor = {"contributions": [
            {"amount": 1000, "type": "EQUITY"},
            {"amount": 500, "type": "LOAN"},
            {"amount": 200, "type": "RETURN"},
            {"amount": 50, "type": "ADJUSTMENT"},
        ]}

        totals = calculate_contribution_totals(investor)

        assert totals["ledgerTotal"] == 1350.0
        assert totals["loans"] == 500.0
        assert totals["returns"] == 200.0

    def test_untyped_counts_as_equity(self):
        totals = calculate_contribution_totals({"contributions": [{"amount": 10}]})
        assert totals["equity"] == 10.0

    def test_no_contributions(self):
        assert calculate_contribution_totals({})["ledgerTotal"] == 0.0


class TestReconcile:

    @pytest.mark.asyncio
    async def test_positive_drift_appends_adjustment(self, db, owner_user):
        project_id = await seed_project(db)
        investor_id = await seed_investor(
            db, project_id, 500000,
            contributions=[{"amount": 480000, "type": "EQUITY"}]
        )
        service = InvestorService(db)

        result = await service.reconcile_contributions(investor_id, owner_user)

        assert result["reconciled"] is True
        assert result["drift"] == 20000.0
        assert result["entry"]["type"] == "ADJUSTMENT"
        assert result["entry"]["amount"] == 20000.0

        investor = await db["investors"].find_one({"_id": investor_id})
        assert len(investor["contributions"]) == 2
        assert investor["totalInvested"] == 500000
        assert calculate_contribution_totals(investor)["ledgerTotal"] == 500000.0

        audit = await db["audit_logs"].find_one({"action": "RECONCILED", "entityId": str(investor_id)})
        assert audit["changes"]["contributionsTotal"] == {"oldValue": 480000.0, "newValue": 500000.0}

        again = await service.reconcile_contributions(investor_id, owner_user)
        assert again["reconciled"] is False
        assert again["entry"] is None
        investor = await db["investors"].find_one({"_id": investor_id})
        assert len(investor["contributions"]) == 2

    @pytest.mark.asyncio
    async def test_negative_drift_appends_return(self, db, owner_user):
        project_id = await seed_project(db)
        investor_id = await seed_investor(
            db, project_id, 90000,
            contributions=[{"amount": 100000, "type": "EQUITY"}]
        )

        result = await InvestorService(db).reconcile_contributions(investor_id, owner_user)

        assert result["drift"] == -10000.0
        assert result["entry"]["type"] == "RETURN"
        assert result["entry"]["amount"] == 10000.0

    @pytest.mark.asyncio
    async def test_unknown_investor(self, db, owner_user):
        with pytest.raises(DocumentNotFoundError):
            await InvestorService(db).reconcile_contributions(ObjectId(), owner_user)


class TestAddContribution:

    @pytest.mark.asyncio
    async def test_moves_total_with_ledger(self, db, owner_user):
        project_id = await seed_project(db)
        investor_id = await seed_investor(db, project_id, 1000)
        service = InvestorService(db)

        await service.add_contribution(investor_id, 500, "LOAN", owner_user)
        await service.add_contribution(investor_id, 200, "RETURN", owner_user, notes="early exit")

        investor = await db["investors"].find_one({"_id": investor_id})
        assert investor["totalInvested"] == 1300.0
        assert calculate_contribution_totals(investor)["ledgerTotal"] == 1300.0
        assert await db["audit_logs"].count_documents({"action": "CONTRIBUTION_ADDED"}) == 2

        result = await service.reconcile_contributions(investor_id, owner_user)
        assert result["reconciled"] is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -100])
    async def test_amount_must_be_positive(self, db, owner_user, amount):
        project_id = await seed_project(db)
        investor_id = await seed_investor(db, project_id, 1000)

        with pytest.raises(NegativeValueError):
            await InvestorService(db).add_contribution(investor_id, amount, "EQUITY", owner_user)

    @pytest.mark.asyncio
    async def test_unknown_type(self, db, owner_user):
        project_id = await seed_project(db)
        investor_id = await seed_investor(db, project_id, 1000)

        with pytest.raises(ValueError):
            await InvestorService(db).add_contribution(investor_id, 100, "GIFT", owner_user)
