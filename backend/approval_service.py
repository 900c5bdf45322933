from motor.motor_asyncio import AsyncIOMotorDatabase
from datetime import datetime
from decimal import Decimal
from typing import Dict, Any, Optional, Callable, List
import logging

from core.financial_precision import (
    to_decimal, to_float, safe_subtract, clamp_non_negative,
    validate_non_negative, validate_positive
)
from core.version_lock_engine import DocumentNotFoundError
from models import to_object_id
from audit_service import AuditService, build_changes
from permissions import Action, has_permission, can_override_budget, require_permission
from transaction_types import (
    TransactionDefinition, TransactionType, MATERIAL, PROFESSIONAL_FEE, PURCHASE_ORDER, get_definition
)
from spending_aggregator import SpendingAggregator
from capital_service import CapitalService, CapitalInsufficientError
from budget_allocation import BudgetAllocationService, BudgetInsufficientError
from financial_service import FinancialRecalculationService

logger = logging.getLogger(__name__)

# Fields an amendment may touch; the amount field is added per type
AMENDABLE_FIELDS = {"phaseId", "floorId", "isIndirectCost", "category", "description", "notes", "name"}
ID_FIELDS = {"phaseId", "floorId"}


class ApprovalValidationError(Exception):
    """Raised for malformed approval requests (missing reason, bad amendment, ...)"""
    pass


class TransactionNotFoundError(DocumentNotFoundError):
    """Raised when a transaction does not exist or is soft-deleted"""
    pass


class ApprovalService:
    """
    Approval Validator.

    RULES:
    1. Every status change must be a registered lifecycle transition
    2. * -> approved is gated by:
       a. capital availability (hard, all roles)
       b. floor / phase budget (soft, overridable by owner / project_manager / pm, override audited)
       c. indirect-cost budget (warning only)
    3. Each transition appends an approvalChain entry, an approval record and an audit entry
    4. Recalculation runs after every transition that can move totals, and never fails the transition
    """

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        capital_service: Optional[CapitalService] = None,
        budget_service: Optional[BudgetAllocationService] = None,
        recalculation_service: Optional[FinancialRecalculationService] = None,
        audit_service: Optional[AuditService] = None,
        aggregator: Optional[SpendingAggregator] = None,
        permission_checker: Callable[[dict, object], bool] = has_permission,
        override_policy: Callable[[object], bool] = can_override_budget
    ):
        self.db = db
        self.aggregator = aggregator or SpendingAggregator(db)
        self.audit_service = audit_service or AuditService(db)
        self.capital_service = capital_service or CapitalService(db, self.aggregator)
        self.budget_service = budget_service or BudgetAllocationService(
            db, self.aggregator, self.audit_service, permission_checker=permission_checker
        )
        self.recalculation_service = recalculation_service or FinancialRecalculationService(
            db, self.aggregator, self.capital_service, self.audit_service
        )
        self.permission_checker = permission_checker
        self.override_policy = override_policy

    # ============================================
    # HELPERS
    # ============================================

    async def _get_transaction(self, definition: TransactionDefinition, txn_id) -> Dict[str, Any]:
        txn = await self.db[definition.collection].find_one(
            {"_id": to_object_id(txn_id), "deletedAt": None}
        )
        if not txn:
            raise TransactionNotFoundError(definition.related_model, txn_id)
        return txn

    async def _reserved_amount(self, definition: TransactionDefinition, txn: Dict[str, Any]) -> Decimal:
        """
        Portion of a transaction already held as a commitment: a material's
        accepted purchase order, or a fee's active contract. That money is
        committed already and must not be gated a second time.
        """
        if definition is MATERIAL and txn.get("linkedPurchaseOrderId"):
            outstanding = await self.aggregator.calculate_purchase_order_outstanding(txn["linkedPurchaseOrderId"])
        elif definition is PROFESSIONAL_FEE and txn.get("professionalServiceId"):
            outstanding = await self.aggregator.calculate_contract_outstanding(txn["professionalServiceId"])
        else:
            return Decimal('0')
        return min(definition.amount_of(txn), to_decimal(outstanding))

    async def _apply_transition(
        self,
        definition: TransactionDefinition,
        txn: Dict[str, Any],
        to_status: str,
        user: dict,
        action: str,
        chain_status: str,
        notes: Optional[str] = None,
        extra_set: Optional[Dict[str, Any]] = None,
        audit_changes: Optional[Dict[str, Any]] = None,
        recalculate: bool = True
    ) -> Dict[str, Any]:
        """
        Validate and persist one status transition with its chain entry,
        approval record, audit entry and (optionally) recalculation.
        """
        previous_status = txn.get("status")
        definition.machine.validate_transition(previous_status, to_status)

        user_id = user.get("user_id")
        now = datetime.utcnow()
        update = definition.machine.get_status_update(to_status)
        update.update(extra_set or {})

        chain_entry = {
            "approverId": user_id,
            "status": chain_status,
            "notes": notes,
            "approvedAt": now
        }

        # Conditional on the status we validated against
        result = await self.db[definition.collection].update_one(
            {"_id": txn["_id"], "status": previous_status, "deletedAt": None},
            {"$set": update, "$push": {"approvalChain": chain_entry}}
        )
        if result.matched_count == 0:
            raise ApprovalValidationError(
                f"{definition.related_model} {txn['_id']} changed while being processed; reload and retry"
            )

        await self.audit_service.record_approval(
            related_id=txn["_id"],
            related_model=definition.related_model,
            action=action,
            approved_by=user_id,
            previous_status=previous_status,
            new_status=to_status,
            reason=notes
        )

        changes = {"status": {"oldValue": previous_status, "newValue": to_status}}
        changes.update(audit_changes or {})
        await self.audit_service.log_action(
            user_id=user_id,
            action=action,
            entity_type=definition.related_model,
            entity_id=txn["_id"],
            project_id=txn.get("projectId"),
            changes=changes
        )

        updated = {**txn, **update}
        updated["approvalChain"] = list(txn.get("approvalChain") or []) + [chain_entry]

        recalculated = None
        if recalculate:
            recalculated = await self.recalculation_service.safe_recalculate_for_transaction(
                updated, definition, user_id
            )

        logger.info(
            f"[APPROVAL] {definition.related_model} {txn['_id']}: "
            f"'{previous_status}' -> '{to_status}' by {user_id}"
        )

        return {
            "transaction": updated,
            "previousStatus": previous_status,
            "status": to_status,
            "recalculated": recalculated is not None
        }

    # ============================================
    # APPROVE / REJECT
    # ============================================

    async def approve(self, txn_type, txn_id, user: dict, notes: Optional[str] = None) -> Dict[str, Any]:
        """
        Approve a transaction after the capital and budget gates.

        Raises:
            CapitalInsufficientError - never overridable
            BudgetInsufficientError - when the user's role cannot override
            InvalidTransitionError - status cannot move to approved
        """
        definition = get_definition(txn_type)
        require_permission(user, Action.APPROVE_TRANSACTION, self.permission_checker)

        txn = await self._get_transaction(definition, txn_id)
        if txn.get("status") == definition.approved_status:
            return {
                "transaction": txn,
                "previousStatus": txn.get("status"),
                "status": txn.get("status"),
                "alreadyApproved": True
            }

        definition.machine.validate_transition(txn.get("status"), definition.approved_status)

        amount = definition.amount_of(txn)
        validate_non_negative(amount, definition.amount_field)
        required = clamp_non_negative(safe_subtract(amount, await self._reserved_amount(definition, txn)))

        # 1. Capital (hard)
        capital = await self.capital_service.validate_capital_availability(txn["projectId"], required)
        if not capital["isValid"]:
            logger.warning(f"[APPROVAL] Blocked {definition.related_model} {txn['_id']}: {capital['message']}")
            raise CapitalInsufficientError(capital)

        # 2. Floor / phase budget (soft)
        override = await self._check_scope_budgets(definition, txn, amount, required, user)

        # 3. Indirect budget (warning only)
        warnings: List[str] = []
        if txn.get("isIndirectCost") and not definition.project_only:
            indirect = await self.budget_service.check_indirect_budget(txn["projectId"], required)
            if indirect["isSet"] and not indirect["isValid"]:
                message = (
                    f"Indirect cost budget exceeded: available {indirect['available']:,.2f}, "
                    f"required {indirect['required']:,.2f}"
                )
                warnings.append(message)
                logger.warning(f"[APPROVAL] {definition.related_model} {txn['_id']}: {message}")

        user_id = user.get("user_id")
        extra_set = {"approvedBy": user_id, "approvedAt": datetime.utcnow(), "approvalNotes": notes}
        audit_changes = {"approvedBy": {"oldValue": txn.get("approvedBy"), "newValue": user_id}}
        if override:
            extra_set["budgetOverride"] = override
            audit_changes["budgetOverride"] = {"oldValue": None, "newValue": override}

        result = await self._apply_transition(
            definition, txn, definition.approved_status, user,
            action="APPROVED", chain_status="approved", notes=notes,
            extra_set=extra_set, audit_changes=audit_changes
        )
        result.update({
            "alreadyApproved": False,
            "capital": capital,
            "budgetOverride": override,
            "warnings": warnings
        })
        return result

    async def _check_scope_budgets(
        self,
        definition: TransactionDefinition,
        txn: Dict[str, Any],
        amount: Decimal,
        required: Decimal,
        user: dict
    ) -> Optional[Dict[str, Any]]:
        """
        Fresh floor and phase checks. Returns the override record when an
        elevated role pushes through a shortfall, None when budgets suffice.
        """
        if definition.project_only or txn.get("isIndirectCost"):
            return None

        checks = []
        phase_id = txn.get("phaseId")
        if txn.get("floorId"):
            checks.append(await self.budget_service.check_floor_budget(txn["floorId"], required))
            if not phase_id:
                floor = await self.db["floors"].find_one({"_id": txn["floorId"]}, {"phaseId": 1})
                phase_id = (floor or {}).get("phaseId")
        if phase_id:
            checks.append(await self.budget_service.check_phase_budget(phase_id, required))

        failed = [c for c in checks if c["isSet"] and not c["isValid"]]
        if not failed:
            return None

        if not self.override_policy(user.get("role")):
            first = failed[0]
            logger.warning(
                f"[APPROVAL] Blocked {definition.related_model} {txn['_id']}: "
                f"{first['scope']} budget short by {first['shortfall']}"
            )
            raise BudgetInsufficientError(
                first["scope"], first["scopeId"], first["available"], first["required"], first["budget"]
            )

        override = {
            f"{definition.label}Amount": to_float(amount),
            "overriddenBy": user.get("user_id"),
            "overriddenByRole": user.get("role")
        }
        for check in failed:
            scope = check["scope"]
            override[f"{scope}Available"] = check["available"]
            override[f"{scope}Budget"] = check["budget"]
            override[f"{scope}Shortfall"] = check["shortfall"]

        logger.warning(
            f"[APPROVAL] Budget override on {definition.related_model} {txn['_id']} "
            f"by {user.get('user_id')} ({user.get('role')}): {override}"
        )
        return override

    async def reject(self, txn_type, txn_id, user: dict, reason: str) -> Dict[str, Any]:
        """
        Reject a transaction. A reason is mandatory.
        Approved transactions fall back to pending; others become rejected.
        """
        if not reason or not str(reason).strip():
            raise ApprovalValidationError("A rejection reason is required")

        definition = get_definition(txn_type)
        require_permission(user, Action.REJECT_TRANSACTION, self.permission_checker)

        txn = await self._get_transaction(definition, txn_id)
        target = definition.reject_target(txn.get("status"))
        reason = str(reason).strip()
        user_id = user.get("user_id")

        return await self._apply_transition(
            definition, txn, target, user,
            action="REJECTED", chain_status="rejected", notes=reason,
            extra_set={"rejectedBy": user_id, "rejectedAt": datetime.utcnow(), "rejectionReason": reason},
            audit_changes={"rejectionReason": {"oldValue": txn.get("rejectionReason"), "newValue": reason}}
        )

    # ============================================
    # OTHER TRANSITIONS
    # ============================================

    async def submit(self, txn_type, txn_id, user: dict, notes: Optional[str] = None) -> Dict[str, Any]:
        """Send a draft (or rejected, for resubmission) transaction for approval."""
        definition = get_definition(txn_type)
        require_permission(user, Action.SUBMIT_TRANSACTION, self.permission_checker)

        txn = await self._get_transaction(definition, txn_id)
        action = "RESUBMITTED" if txn.get("status") == definition.rejected_status else "SUBMITTED"

        return await self._apply_transition(
            definition, txn, definition.pending_status, user,
            action=action, chain_status="submitted", notes=notes,
            extra_set={"submittedBy": user.get("user_id"), "submittedAt": datetime.utcnow()},
            recalculate=False
        )

    async def _settle(self, txn_type, txn_id, user: dict, to_status: str, action: str) -> Dict[str, Any]:
        definition = get_definition(txn_type)
        require_permission(user, Action.APPROVE_TRANSACTION, self.permission_checker)

        if to_status not in definition.settled_statuses:
            raise ApprovalValidationError(
                f"{definition.related_model} cannot be marked '{to_status}'. "
                f"Allowed: {list(definition.settled_statuses)}"
            )

        txn = await self._get_transaction(definition, txn_id)
        return await self._apply_transition(
            definition, txn, to_status, user, action=action, chain_status=to_status
        )

    async def mark_paid(self, txn_type, txn_id, user: dict) -> Dict[str, Any]:
        """approved -> paid for labour, expenses and professional fees."""
        definition = get_definition(txn_type)
        paid_status = "PAID" if definition.approved_status.isupper() else "paid"
        return await self._settle(definition.txn_type, txn_id, user, paid_status, "PAID")

    async def mark_received(self, txn_id, user: dict) -> Dict[str, Any]:
        """approved -> received for materials."""
        return await self._settle(TransactionType.MATERIAL, txn_id, user, "received", "RECEIVED")

    async def advance_purchase_order(self, po_id, to_status: str, user: dict, notes: Optional[str] = None) -> Dict[str, Any]:
        """
        Move a purchase order along its lifecycle. Acceptance commits money
        and goes through the full approval gate.
        """
        if to_status == PURCHASE_ORDER.approved_status:
            return await self.approve(TransactionType.PURCHASE_ORDER, po_id, user, notes)
        if to_status == PURCHASE_ORDER.rejected_status:
            return await self.reject(TransactionType.PURCHASE_ORDER, po_id, user, notes)

        require_permission(user, Action.APPROVE_TRANSACTION, self.permission_checker)
        po = await self._get_transaction(PURCHASE_ORDER, po_id)
        return await self._apply_transition(
            PURCHASE_ORDER, po, to_status, user,
            action=f"PURCHASE_ORDER_{to_status.upper()}", chain_status=to_status, notes=notes
        )

    async def record_delivery(
        self,
        po_id,
        user: dict,
        amount=None,
        quantity=None,
        notes: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Convert (part of) an accepted purchase order into an approved Material.

        The material is linked to the order, so the order's commitment shrinks by
        exactly the delivered amount while actual spend grows by it. No capital
        gate: the money was reserved when the order was accepted.
        """
        require_permission(user, Action.APPROVE_TRANSACTION, self.permission_checker)
        po = await self._get_transaction(PURCHASE_ORDER, po_id)

        if not PURCHASE_ORDER.is_committed(po.get("status")):
            raise ApprovalValidationError(
                f"Purchase order {po['_id']} is '{po.get('status')}'; only accepted orders can be delivered"
            )

        outstanding = to_decimal(await self.aggregator.calculate_purchase_order_outstanding(po["_id"]))
        delivered = outstanding if amount is None else to_decimal(amount)
        validate_positive(delivered, "amount")
        if delivered - outstanding > Decimal("0.01"):
            raise ApprovalValidationError(
                f"Delivery of {to_float(delivered):,.2f} exceeds the order's outstanding "
                f"commitment of {to_float(outstanding):,.2f}"
            )

        user_id = user.get("user_id")
        now = datetime.utcnow()
        material = {
            "projectId": po["projectId"],
            "phaseId": po.get("phaseId"),
            "floorId": po.get("floorId"),
            "name": po.get("materialName") or f"Delivery for purchase order {po.get('purchaseOrderNumber', po['_id'])}",
            "quantity": quantity if quantity is not None else po.get("quantity"),
            "totalCost": to_float(delivered),
            "status": MATERIAL.approved_status,
            "linkedPurchaseOrderId": po["_id"],
            "isIndirectCost": bool(po.get("isIndirectCost")),
            "approvedBy": user_id,
            "approvedAt": now,
            "approvalChain": [{
                "approverId": user_id,
                "status": "approved",
                "notes": notes or "Created from purchase order delivery",
                "approvedAt": now
            }],
            "createdBy": user_id,
            "createdAt": now,
            "deletedAt": None
        }
        insert = await self.db[MATERIAL.collection].insert_one(material)
        material["_id"] = insert.inserted_id

        await self.audit_service.record_approval(
            related_id=material["_id"],
            related_model=MATERIAL.related_model,
            action="APPROVED",
            approved_by=user_id,
            previous_status=None,
            new_status=MATERIAL.approved_status,
            reason=notes or "Created from purchase order delivery"
        )
        await self.audit_service.log_action(
            user_id=user_id,
            action="CREATED_FROM_PURCHASE_ORDER",
            entity_type=MATERIAL.related_model,
            entity_id=material["_id"],
            project_id=po["projectId"],
            changes={
                "totalCost": {"oldValue": None, "newValue": material["totalCost"]},
                "linkedPurchaseOrderId": {"oldValue": None, "newValue": str(po["_id"])}
            }
        )

        fully_delivered = outstanding - delivered <= Decimal("0.01")
        if fully_delivered and po.get("status") != "delivered":
            await self._apply_transition(
                PURCHASE_ORDER, po, "delivered", user,
                action="PURCHASE_ORDER_DELIVERED", chain_status="delivered", notes=notes,
                recalculate=False
            )

        recalculated = await self.recalculation_service.safe_recalculate_for_transaction(
            material, MATERIAL, user_id
        )

        logger.info(
            f"[APPROVAL] Purchase order {po['_id']} delivered {to_float(delivered)} "
            f"(outstanding before: {to_float(outstanding)})"
        )
        return {
            "material": material,
            "delivered": to_float(delivered),
            "remainingCommitment": to_float(clamp_non_negative(outstanding - delivered)),
            "purchaseOrderStatus": "delivered" if fully_delivered else po.get("status"),
            "recalculated": recalculated is not None
        }

    # ============================================
    # DELETE / AMEND
    # ============================================

    async def soft_delete(self, txn_type, txn_id, user: dict, reason: Optional[str] = None) -> Dict[str, Any]:
        """Mark deletedAt; totals drop the transaction on the triggered recalculation."""
        definition = get_definition(txn_type)
        require_permission(user, Action.DELETE_TRANSACTION, self.permission_checker)

        txn = await self._get_transaction(definition, txn_id)
        now = datetime.utcnow()
        user_id = user.get("user_id")

        await self.db[definition.collection].update_one(
            {"_id": txn["_id"]},
            {"$set": {"deletedAt": now, "deletedBy": user_id, "deletionReason": reason}}
        )

        await self.audit_service.log_action(
            user_id=user_id,
            action="SOFT_DELETE",
            entity_type=definition.related_model,
            entity_id=txn["_id"],
            project_id=txn.get("projectId"),
            changes={"deletedAt": {"oldValue": None, "newValue": now.isoformat()}},
            description=reason
        )

        recalculated = None
        if definition.is_actual(txn.get("status")) or definition.is_committed(txn.get("status")):
            recalculated = await self.recalculation_service.safe_recalculate_for_transaction(
                txn, definition, user_id
            )

        logger.info(f"[APPROVAL] {definition.related_model} {txn['_id']} soft-deleted by {user_id}")
        return {"id": str(txn["_id"]), "deletedAt": now, "recalculated": recalculated is not None}

    async def amend(self, txn_type, txn_id, user: dict, changes: Dict[str, Any]) -> Dict[str, Any]:
        """
        Edit amount / scope fields.

        Settled transactions cannot be amended. Amending a transaction that
        already counts toward totals sends it back to pending approval so the
        capital and budget gates run again. Old and new scopes are recalculated.
        """
        definition = get_definition(txn_type)
        require_permission(user, Action.EDIT_TRANSACTION, self.permission_checker)

        allowed = AMENDABLE_FIELDS | {definition.amount_field}
        unknown = set(changes or {}) - allowed
        if not changes or unknown:
            raise ApprovalValidationError(
                f"Cannot amend fields {sorted(unknown) or '(none given)'}; allowed: {sorted(allowed)}"
            )

        txn = await self._get_transaction(definition, txn_id)
        status = txn.get("status")
        if status in definition.settled_statuses:
            raise ApprovalValidationError(
                f"{definition.related_model} {txn['_id']} is '{status}' and can no longer be amended"
            )

        new_values = {}
        for key, value in changes.items():
            if key == definition.amount_field:
                validate_non_negative(value, key)
                value = to_float(value)
            elif key in ID_FIELDS and value is not None:
                value = to_object_id(value)
            new_values[key] = value

        counted = definition.is_actual(status) or definition.is_committed(status)
        user_id = user.get("user_id")
        update = dict(new_values)
        update["updatedAt"] = datetime.utcnow()
        update["updatedBy"] = user_id

        old_values = {key: txn.get(key) for key in new_values}
        audit_changes = build_changes(
            {k: str(v) if k in ID_FIELDS and v is not None else v for k, v in old_values.items()},
            {k: str(v) if k in ID_FIELDS and v is not None else v for k, v in new_values.items()}
        )

        if counted:
            definition.machine.validate_transition(status, definition.pending_status)
            update["status"] = definition.pending_status
            audit_changes["status"] = {"oldValue": status, "newValue": definition.pending_status}

        await self.db[definition.collection].update_one({"_id": txn["_id"]}, {"$set": update})

        await self.audit_service.log_action(
            user_id=user_id,
            action="AMENDED",
            entity_type=definition.related_model,
            entity_id=txn["_id"],
            project_id=txn.get("projectId"),
            changes=audit_changes
        )

        if counted:
            await self.audit_service.record_approval(
                related_id=txn["_id"],
                related_model=definition.related_model,
                action="REOPENED",
                approved_by=user_id,
                previous_status=status,
                new_status=definition.pending_status,
                reason="Amended after approval"
            )

        updated = {**txn, **update}
        await self.recalculation_service.safe_recalculate_for_transaction(txn, definition, user_id)
        moved = any(txn.get(k) != updated.get(k) for k in ID_FIELDS)
        if moved:
            await self.recalculation_service.safe_recalculate_for_transaction(updated, definition, user_id)

        return {"transaction": updated, "changes": audit_changes, "reopened": counted}
