#!/usr/bin/env python3
"""
MIGRATION SCRIPT: Ledger Indexes

Creates the indexes the aggregation and approval queries rely on:
1. Transaction collections: (projectId, status), (phaseId, status), (floorId, status)
2. materials.linkedPurchaseOrderId
3. floors (phaseId, floorNumber), phases (projectId, sequence)
4. audit_logs / approvals lookup indexes

Run: python migrations/001_ledger_indexes.py
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

from transaction_types import TRANSACTION_DEFINITIONS, MATERIAL


async def create_ledger_indexes(db) -> int:
    """Create all ledger indexes; returns the number of create_index calls."""
    count = 0

    for definition in TRANSACTION_DEFINITIONS.values():
        collection = db[definition.collection]
        await collection.create_index(
            [("projectId", 1), ("status", 1)],
            name=f"idx_{definition.collection}_project_status"
        )
        count += 1
        if not definition.project_only:
            await collection.create_index(
                [("phaseId", 1), ("status", 1)],
                name=f"idx_{definition.collection}_phase_status"
            )
            await collection.create_index(
                [("floorId", 1), ("status", 1)],
                name=f"idx_{definition.collection}_floor_status"
            )
            count += 2
        print(f"✓ Indexes on {definition.collection}")

    await db[MATERIAL.collection].create_index(
        [("linkedPurchaseOrderId", 1)],
        name="idx_materials_linked_po",
        sparse=True
    )
    await db["floors"].create_index([("phaseId", 1), ("floorNumber", 1)], name="idx_floors_phase_number")
    await db["phases"].create_index([("projectId", 1), ("sequence", 1)], name="idx_phases_project_sequence")
    await db["investors"].create_index([("status", 1)], name="idx_investors_status")
    await db["audit_logs"].create_index(
        [("entityType", 1), ("entityId", 1), ("timestamp", -1)],
        name="idx_audit_entity_time"
    )
    await db["approvals"].create_index(
        [("relatedModel", 1), ("relatedId", 1), ("timestamp", -1)],
        name="idx_approvals_related_time"
    )
    count += 6
    print("✓ Indexes on materials, floors, phases, investors, audit_logs, approvals")
    return count


async def run_migration():
    """Execute the ledger index migration."""

    mongo_url = os.environ.get('MONGO_URL', 'mongodb://localhost:27017')
    db_name = os.environ.get('DB_NAME', 'construction_ledger')

    print(f"Connecting to: {mongo_url}")
    print(f"Database: {db_name}")

    client = AsyncIOMotorClient(mongo_url)
    db = client[db_name]

    try:
        await client.admin.command('ping')
        print("✓ Connected to MongoDB")

        index_count = await create_ledger_indexes(db)

        await db.migrations.update_one(
            {"migration_id": "001_ledger_indexes"},
            {"$set": {
                "migration_id": "001_ledger_indexes",
                "executed_at": datetime.utcnow(),
                "indexes": index_count,
                "status": "success"
            }},
            upsert=True
        )
        print("\n✓ Migration record saved")

        print("\n" + "=" * 50)
        print("MIGRATION COMPLETE: Ledger Indexes")
        print("=" * 50)

        return {"status": "success", "indexes": index_count}

    except Exception as e:
        print(f"\n✗ Migration failed: {str(e)}")
        raise
    finally:
        client.close()


if __name__ == "__main__":
    result = asyncio.run(run_migration())
    print(f"\nResult: {result}")
