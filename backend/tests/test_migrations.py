"""
Migration scripts run against the in-memory database
"""
import importlib.util
from pathlib import Path

import pytest

from transaction_types import MATERIAL
from conftest import seed_project, seed_phase, seed_investor, seed_transaction

MIGRATIONS_DIR = Path(__file__).parent.parent / "migrations"


def load_migration(filename):
    spec = importlib.util.spec_from_file_location(filename[:-3], MIGRATIONS_DIR / filename)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


class TestLedgerIndexes:

    @pytest.mark.asyncio
    async def test_creates_indexes(self, db):
        migration = load_migration("001_ledger_indexes.py")

        count = await migration.create_ledger_indexes(db)

        assert count == 22
        indexes = await db["materials"].index_information()
        assert "idx_materials_linked_po" in indexes
        assert "idx_materials_floor_status" in indexes
        assert "idx_initial_expenses_floor_status" not in await db["initial_expenses"].index_information()


class TestBackfill:

    @pytest.mark.asyncio
    async def test_backfills_and_recalculates(self, db):
        migration = load_migration("002_backfill_financial_snapshots.py")
        project_id = await seed_project(db)
        await seed_investor(db, project_id, 1000)
        await seed_phase(db, project_id, total=500)
        await seed_transaction(db, MATERIAL, project_id, 100, "approved")

        summary = await migration.backfill(db)

        assert summary["initialized"]["projects"] == 1
        assert summary["initialized"]["phases"] == 1
        assert summary["projects"] == 1
        assert summary["failed"] == {}
        project = await db["projects"].find_one({"_id": project_id})
        assert project["finances"]["availableCapital"] == 900.0
