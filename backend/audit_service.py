from motor.motor_asyncio import AsyncIOMotorDatabase
from datetime import datetime
from typing import Optional, Dict, Any
from fastapi import HTTPException, status
import logging

logger = logging.getLogger(__name__)

# ARCHITECTURAL GUARD: Ledger entity types that CANNOT be hard-deleted
FINANCIAL_ENTITY_TYPES = [
    "Material",
    "LabourEntry",
    "Expense",
    "ProfessionalFee",
    "PurchaseOrder",
    "InitialExpense",
    "Investor",
    "Project",
]


def build_changes(old: Optional[Dict[str, Any]], new: Optional[Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
    """
    {field: {oldValue, newValue}} for every key whose value differs.
    Keys present on only one side are included with None on the other.
    """
    old = old or {}
    new = new or {}
    changes = {}
    for key in list(old.keys()) + [k for k in new.keys() if k not in old]:
        if old.get(key) != new.get(key):
            changes[key] = {"oldValue": old.get(key), "newValue": new.get(key)}
    return changes


class AuditService:
    """Service for immutable audit logging"""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.collection = db["audit_logs"]
        self.approvals = db["approvals"]

    def enforce_financial_delete_guard(self, entity_type: str, action: str):
        """
        ARCHITECTURAL GUARD: Prevent hard DELETE on ledger entities.

        Transactions that may have touched actual/committed totals are only
        ever soft-deleted (deletedAt) followed by a recalculation.

        Raises HTTPException if attempting to delete a ledger entity.
        """
        if action == "DELETE" and entity_type in FINANCIAL_ENTITY_TYPES:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"ARCHITECTURAL GUARD: Cannot DELETE {entity_type}. Ledger entities are immutable. Use soft delete instead."
            )

    async def log_action(
        self,
        user_id: str,
        action: str,
        entity_type: str,
        entity_id,
        project_id=None,
        changes: Optional[Dict[str, Any]] = None,
        description: Optional[str] = None
    ):
        """
        Log an action to audit trail (INSERT ONLY).

        ENFORCES: Ledger entity delete guard.
        """
        # ARCHITECTURAL GUARD: Enforce hard-delete protection
        self.enforce_financial_delete_guard(entity_type, action)

        try:
            audit_entry = {
                "userId": str(user_id) if user_id is not None else None,
                "action": action,
                "entityType": entity_type,
                "entityId": str(entity_id),
                "projectId": str(project_id) if project_id is not None else None,
                "changes": changes or {},
                "description": description,
                "timestamp": datetime.utcnow()
            }

            await self.collection.insert_one(audit_entry)
            logger.info(f"Audit log created: {action} on {entity_type}:{entity_id} by user:{user_id}")
        except Exception as e:
            # Don't fail the main operation if audit logging fails
            logger.error(f"Failed to create audit log: {str(e)}")

    async def record_approval(
        self,
        related_id,
        related_model: str,
        action: str,
        approved_by: str,
        previous_status: Optional[str],
        new_status: str,
        reason: Optional[str] = None
    ):
        """Append one approval record per status transition (INSERT ONLY)."""
        record = {
            "relatedId": related_id,
            "relatedModel": related_model,
            "action": action,
            "approvedBy": str(approved_by),
            "reason": reason,
            "previousStatus": previous_status,
            "newStatus": new_status,
            "timestamp": datetime.utcnow()
        }
        await self.approvals.insert_one(record)
        return record

    async def get_audit_logs(
        self,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        project_id: Optional[str] = None,
        limit: int = 100
    ):
        """Retrieve audit logs (READ ONLY)"""
        query = {}

        if entity_type:
            query["entityType"] = entity_type
        if entity_id:
            query["entityId"] = str(entity_id)
        if project_id:
            query["projectId"] = str(project_id)

        logs = await self.collection.find(
            query, sort=[("timestamp", -1)], limit=limit
        ).to_list(length=limit)

        # Convert ObjectId to string
        for log in logs:
            log["audit_id"] = str(log.pop("_id"))

        return logs
