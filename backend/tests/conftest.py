"""
Shared fixtures for ledger tests.

The services talk to Motor; tests run them against the in-memory
mongomock-motor client, which exposes the same awaitable surface.
"""
import pytest
from bson import ObjectId
from datetime import datetime
from mongomock_motor import AsyncMongoMockClient

from transaction_types import TransactionDefinition


@pytest.fixture
def db():
    return AsyncMongoMockClient()["test_ledger"]


# =============================================================================
# USERS
# =============================================================================

def make_user(role: str = "project_manager", user_id: str = "user-1") -> dict:
    return {"user_id": user_id, "role": role}


@pytest.fixture
def pm_user():
    return make_user("project_manager", "pm-1")


@pytest.fixture
def owner_user():
    return make_user("owner", "owner-1")


@pytest.fixture
def accountant_user():
    return make_user("accountant", "acct-1")


@pytest.fixture
def supervisor_user():
    return make_user("supervisor", "sup-1")


# =============================================================================
# SEED HELPERS
# =============================================================================

async def seed_project(db, budget=None, **fields) -> ObjectId:
    doc = {
        "name": fields.pop("name", "Tower A"),
        "budget": budget if budget is not None else {"total": 1000000},
        "createdAt": datetime.utcnow(),
        **fields
    }
    result = await db["projects"].insert_one(doc)
    return result.inserted_id


async def seed_phase(db, project_id, total=0, tracks_floors=False, **fields) -> ObjectId:
    doc = {
        "projectId": project_id,
        "phaseName": fields.pop("phaseName", "Construction"),
        "phaseType": fields.pop("phaseType", "construction"),
        "sequence": fields.pop("sequence", 1),
        "tracksFloors": tracks_floors,
        "budgetAllocation": {"total": total},
        **fields
    }
    result = await db["phases"].insert_one(doc)
    return result.inserted_id


async def seed_floor(db, project_id, phase_id, number, total=0, **fields) -> ObjectId:
    doc = {
        "projectId": project_id,
        "phaseId": phase_id,
        "floorNumber": number,
        "budgetAllocation": {"total": total},
        **fields
    }
    result = await db["floors"].insert_one(doc)
    return result.inserted_id


async def seed_investor(db, project_id, amount, investment_type="EQUITY", **fields) -> ObjectId:
    doc = {
        "name": fields.pop("name", "Investor"),
        "status": fields.pop("status", "ACTIVE"),
        "investmentType": investment_type,
        "totalInvested": amount,
        "contributions": fields.pop("contributions", [{"amount": amount, "type": investment_type, "date": datetime.utcnow()}]),
        "projectAllocations": fields.pop(
            "projectAllocations",
            [{"projectId": project_id, "amount": amount}] if project_id is not None else []
        ),
        **fields
    }
    result = await db["investors"].insert_one(doc)
    return result.inserted_id


async def seed_transaction(db, definition: TransactionDefinition, project_id, amount, status, **fields) -> ObjectId:
    doc = {
        "projectId": project_id,
        definition.amount_field: amount,
        "status": status,
        "createdAt": datetime.utcnow(),
        **fields
    }
    result = await db[definition.collection].insert_one(doc)
    return result.inserted_id
