#!/usr/bin/env python3
"""
MIGRATION SCRIPT: Backfill Financial Snapshots

1. Initializes financialVersion = 0 on phases, floors and projects that lack it
2. Recomputes every project's floors, phases and finances from source transactions

Safe to re-run: recalculation is idempotent.

Run: python migrations/002_backfill_financial_snapshots.py
"""

import asyncio
import os
import sys
from datetime import datetime

# Add backend to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from motor.motor_asyncio import AsyncIOMotorClient
from dotenv import load_dotenv

load_dotenv()

from core.version_lock_engine import VERSION_FIELD
from financial_service import FinancialRecalculationService


async def backfill(db) -> dict:
    initialized = {}
    for collection in ("projects", "phases", "floors"):
        result = await db[collection].update_many(
            {VERSION_FIELD: {"$exists": False}},
            {"$set": {VERSION_FIELD: 0}}
        )
        initialized[collection] = result.modified_count
        print(f"✓ {collection}: initialized {VERSION_FIELD} on {result.modified_count} documents")

    service = FinancialRecalculationService(db)
    results = await service.recalculate_all_projects(user_id="migration")
    failed = {pid: r for pid, r in results.items() if r != "ok"}

    print(f"✓ Recalculated {len(results) - len(failed)} of {len(results)} projects")
    for pid, reason in failed.items():
        print(f"  ✗ {pid}: {reason}")

    return {"initialized": initialized, "projects": len(results), "failed": failed}


async def run_migration():
    """Execute the snapshot backfill."""

    mongo_url = os.environ.get('MONGO_URL', 'mongodb://localhost:27017')
    db_name = os.environ.get('DB_NAME', 'construction_ledger')

    print(f"Connecting to: {mongo_url}")
    print(f"Database: {db_name}")

    client = AsyncIOMotorClient(mongo_url)
    db = client[db_name]

    try:
        await client.admin.command('ping')
        print("✓ Connected to MongoDB")

        summary = await backfill(db)

        await db.migrations.update_one(
            {"migration_id": "002_backfill_financial_snapshots"},
            {"$set": {
                "migration_id": "002_backfill_financial_snapshots",
                "executed_at": datetime.utcnow(),
                "projects": summary["projects"],
                "failed": len(summary["failed"]),
                "status": "success" if not summary["failed"] else "partial"
            }},
            upsert=True
        )
        print("\n✓ Migration record saved")

        print("\n" + "=" * 50)
        print("MIGRATION COMPLETE: Financial Snapshot Backfill")
        print("=" * 50)

        return summary

    except Exception as e:
        print(f"\n✗ Migration failed: {str(e)}")
        raise
    finally:
        client.close()


if __name__ == "__main__":
    result = asyncio.run(run_migration())
    print(f"\nResult: {result}")
