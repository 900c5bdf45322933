"""
LEDGER API ROUTES

Thin HTTP surface over the financial engine:
- Recalculation (floor / phase / project)
- Capital totals and availability
- Phase / floor budget allocation and distribution suggestions
- Project budget adjustments, category transfers and hierarchy soft deletes
- Transaction approval / rejection
- Investor contributions and reconciliation
- Allocation violations and the audit trail (read only)

Every handler translates domain exceptions into HTTPException.
"""

from fastapi import APIRouter, HTTPException, status, Depends, Query
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from bson import ObjectId, Decimal128
from datetime import datetime
from typing import Dict, Any, Optional
import logging
import os

from dotenv import load_dotenv
load_dotenv()

from models import (
    BudgetAllocation, ApproveRequest, RejectRequest, WeightedDistributionRequest,
    BudgetAdjustmentCreate, BudgetTransferCreate,
    ContributionCreate, CapitalValidation, DistributionResponse, FloorAllocationSuggestion,
    InvalidObjectIdError, to_object_id
)
from permissions import PermissionChecker, PermissionDeniedError, Action
from core.financial_precision import NegativeValueError, FinancialPrecisionError
from core.state_machine import StateMachineError
from core.invariant_validator import FinancialInvariantValidator
from core.version_lock_engine import DocumentNotFoundError, VersionConflictError
from spending_aggregator import SpendingAggregator
from capital_service import CapitalService, CapitalInsufficientError
from budget_allocation import BudgetAllocationService, BudgetAllocationError, BudgetInsufficientError
from budget_adjustment import BudgetAdjustmentService
from financial_service import FinancialRecalculationService
from approval_service import ApprovalService, ApprovalValidationError
from investor_service import InvestorService
from audit_service import AuditService
from financial_status import calculate_dcc_from_budget

logger = logging.getLogger(__name__)

# Router
ledger_router = APIRouter(prefix="/ledger", tags=["Ledger - Financial Engine"])

# MongoDB
mongo_url = os.environ.get('MONGO_URL', 'mongodb://localhost:27017')
db_name = os.environ.get('DB_NAME', 'construction_ledger')

client = AsyncIOMotorClient(mongo_url)
db = client[db_name]

permission_checker = PermissionChecker()


def serialize_doc(doc: Dict[str, Any]) -> Dict[str, Any]:
    """Serialize MongoDB document for JSON response (handles Decimal128, ObjectId, datetime)"""
    if doc is None:
        return None
    result = {}
    for key, value in doc.items():
        if isinstance(value, ObjectId):
            result[key] = str(value)
        elif isinstance(value, Decimal128):
            result[key] = float(value.to_decimal())
        elif isinstance(value, datetime):
            result[key] = value.isoformat()
        elif isinstance(value, dict):
            result[key] = serialize_doc(value)
        elif isinstance(value, list):
            result[key] = [
                serialize_doc(item) if isinstance(item, dict)
                else float(item.to_decimal()) if isinstance(item, Decimal128)
                else str(item) if isinstance(item, ObjectId)
                else item.isoformat() if isinstance(item, datetime)
                else item
                for item in value
            ]
        else:
            result[key] = value
    return result


# =============================================================================
# DEPENDENCIES
# =============================================================================

def get_database() -> AsyncIOMotorDatabase:
    return db


def get_recalculation_service(database: AsyncIOMotorDatabase = Depends(get_database)) -> FinancialRecalculationService:
    return FinancialRecalculationService(database)


def get_capital_service(database: AsyncIOMotorDatabase = Depends(get_database)) -> CapitalService:
    return CapitalService(database)


def get_budget_service(database: AsyncIOMotorDatabase = Depends(get_database)) -> BudgetAllocationService:
    return BudgetAllocationService(database)


def get_adjustment_service(database: AsyncIOMotorDatabase = Depends(get_database)) -> BudgetAdjustmentService:
    return BudgetAdjustmentService(database)


def get_approval_service(database: AsyncIOMotorDatabase = Depends(get_database)) -> ApprovalService:
    return ApprovalService(database)


def get_investor_service(database: AsyncIOMotorDatabase = Depends(get_database)) -> InvestorService:
    return InvestorService(database)


# =============================================================================
# ERROR MAPPING
# =============================================================================

LEDGER_ERRORS = (
    CapitalInsufficientError,
    BudgetInsufficientError,
    BudgetAllocationError,
    ApprovalValidationError,
    StateMachineError,
    NegativeValueError,
    FinancialPrecisionError,
    DocumentNotFoundError,
    VersionConflictError,
    PermissionDeniedError,
    ValueError,
)


def to_http_exception(e: Exception) -> HTTPException:
    """Map a domain exception onto its HTTP status"""
    if isinstance(e, (CapitalInsufficientError, BudgetInsufficientError)):
        return HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "message": str(e),
                "available": e.available,
                "required": e.required,
                "shortfall": e.shortfall
            }
        )
    if isinstance(e, BudgetAllocationError):
        return HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"message": e.message, **serialize_doc(e.details)}
        )
    if isinstance(e, DocumentNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, PermissionDeniedError):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))
    if isinstance(e, VersionConflictError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


# =============================================================================
# RECALCULATION
# =============================================================================

@ledger_router.post("/projects/{project_id}/recalculate")
async def recalculate_project(
    project_id: str,
    user: dict = Depends(permission_checker.get_authenticated_user),
    service: FinancialRecalculationService = Depends(get_recalculation_service)
):
    """Full bottom-up cascade: floors -> phases -> project snapshot."""
    permission_checker.check(user, Action.RECALCULATE)
    try:
        result = await service.recalculate_project_finances(project_id, user["user_id"])
    except LEDGER_ERRORS as e:
        raise to_http_exception(e)
    return serialize_doc(result)


@ledger_router.post("/phases/{phase_id}/recalculate")
async def recalculate_phase(
    phase_id: str,
    user: dict = Depends(permission_checker.get_authenticated_user),
    service: FinancialRecalculationService = Depends(get_recalculation_service)
):
    permission_checker.check(user, Action.RECALCULATE)
    try:
        result = await service.recalculate_phase_spending(phase_id, user["user_id"])
    except LEDGER_ERRORS as e:
        raise to_http_exception(e)
    return serialize_doc(result)


@ledger_router.post("/floors/{floor_id}/recalculate")
async def recalculate_floor(
    floor_id: str,
    user: dict = Depends(permission_checker.get_authenticated_user),
    service: FinancialRecalculationService = Depends(get_recalculation_service)
):
    permission_checker.check(user, Action.RECALCULATE)
    try:
        result = await service.recalculate_floor_spending(floor_id, user["user_id"])
    except LEDGER_ERRORS as e:
        raise to_http_exception(e)
    return serialize_doc(result)


# =============================================================================
# CAPITAL
# =============================================================================

@ledger_router.get("/projects/{project_id}/capital")
async def get_project_capital(
    project_id: str,
    user: dict = Depends(permission_checker.get_authenticated_user),
    service: CapitalService = Depends(get_capital_service)
):
    """Capital raised / used / committed / available for the project."""
    permission_checker.check(user, Action.VIEW_FINANCES)
    try:
        return await service.get_capital_snapshot(project_id)
    except LEDGER_ERRORS as e:
        raise to_http_exception(e)


@ledger_router.get("/projects/{project_id}/capital/validate", response_model=CapitalValidation)
async def validate_project_capital(
    project_id: str,
    amount: float = Query(..., ge=0),
    user: dict = Depends(permission_checker.get_authenticated_user),
    service: CapitalService = Depends(get_capital_service)
):
    permission_checker.check(user, Action.VIEW_FINANCES)
    try:
        return await service.validate_capital_availability(project_id, amount)
    except LEDGER_ERRORS as e:
        raise to_http_exception(e)


@ledger_router.get("/floors/{floor_id}/spending")
async def get_floor_spending(
    floor_id: str,
    user: dict = Depends(permission_checker.get_authenticated_user),
    database: AsyncIOMotorDatabase = Depends(get_database)
):
    """Fresh actual + committed breakdown for a floor (no write)."""
    permission_checker.check(user, Action.VIEW_FINANCES)
    try:
        floor_oid = to_object_id(floor_id)
    except InvalidObjectIdError as e:
        raise to_http_exception(e)

    floor = await database["floors"].find_one({"_id": floor_oid, "deletedAt": None})
    if not floor:
        raise HTTPException(status_code=404, detail="Floor not found")

    aggregator = SpendingAggregator(database)
    return {
        "floorId": floor_id,
        "actualSpending": await aggregator.calculate_floor_actual_spending(floor_oid),
        "committedCosts": await aggregator.calculate_floor_committed_costs(floor_oid)
    }


# =============================================================================
# BUDGET ALLOCATION
# =============================================================================

@ledger_router.put("/phases/{phase_id}/budget")
async def update_phase_budget(
    phase_id: str,
    allocation: BudgetAllocation,
    user: dict = Depends(permission_checker.get_authenticated_user),
    service: BudgetAllocationService = Depends(get_budget_service)
):
    permission_checker.check(user, Action.ALLOCATE_BUDGET)
    try:
        result = await service.allocate_phase_budget(phase_id, allocation.model_dump(exclude_none=True), user)
    except LEDGER_ERRORS as e:
        raise to_http_exception(e)
    return serialize_doc(result)


@ledger_router.put("/floors/{floor_id}/budget")
async def update_floor_budget(
    floor_id: str,
    allocation: BudgetAllocation,
    user: dict = Depends(permission_checker.get_authenticated_user),
    service: BudgetAllocationService = Depends(get_budget_service)
):
    """Allocate a floor budget. Sibling floors may not exceed the phase total."""
    permission_checker.check(user, Action.ALLOCATE_BUDGET)
    try:
        result = await service.allocate_floor_budget(floor_id, allocation.model_dump(exclude_none=True), user)
    except LEDGER_ERRORS as e:
        raise to_http_exception(e)
    return serialize_doc(result)


@ledger_router.get("/phases/{phase_id}/distribution/even", response_model=DistributionResponse)
async def get_even_distribution(
    phase_id: str,
    user: dict = Depends(permission_checker.get_authenticated_user),
    service: BudgetAllocationService = Depends(get_budget_service)
):
    permission_checker.check(user, Action.VIEW_FINANCES)
    try:
        suggestions = await service.get_even_distribution(phase_id)
        phase_total = sum(s["suggestedAllocation"] for s in suggestions)
    except LEDGER_ERRORS as e:
        raise to_http_exception(e)

    return DistributionResponse(
        phaseId=phase_id,
        phaseTotal=round(phase_total, 2),
        allocations=[FloorAllocationSuggestion(**s) for s in suggestions]
    )


@ledger_router.post("/phases/{phase_id}/distribution/weighted", response_model=DistributionResponse)
async def get_weighted_distribution(
    phase_id: str,
    request: WeightedDistributionRequest,
    user: dict = Depends(permission_checker.get_authenticated_user),
    service: BudgetAllocationService = Depends(get_budget_service)
):
    """Suggestion only; nothing is written."""
    permission_checker.check(user, Action.VIEW_FINANCES)
    try:
        result = await service.get_weighted_distribution(phase_id, request.weights)
    except LEDGER_ERRORS as e:
        raise to_http_exception(e)

    return DistributionResponse(
        phaseId=result["phaseId"],
        phaseTotal=result["phaseTotal"],
        allocations=[
            FloorAllocationSuggestion(
                floorId=a["floorId"],
                floorNumber=a.get("floorNumber"),
                suggestedAllocation=a["suggestedAllocation"],
                minimumRequired=a.get("minimumRequired"),
                weight=a.get("weight")
            )
            for a in result["allocations"]
        ],
        warnings=result["warnings"]
    )


@ledger_router.delete("/floors/{floor_id}")
async def delete_floor(
    floor_id: str,
    reason: Optional[str] = None,
    user: dict = Depends(permission_checker.get_authenticated_user),
    service: BudgetAllocationService = Depends(get_budget_service)
):
    """Soft delete. Refused while any transaction or material request references the floor."""
    permission_checker.check(user, Action.ALLOCATE_BUDGET)
    try:
        result = await service.soft_delete_floor(floor_id, user, reason)
    except LEDGER_ERRORS as e:
        raise to_http_exception(e)
    return serialize_doc(result)


@ledger_router.delete("/phases/{phase_id}")
async def delete_phase(
    phase_id: str,
    reason: Optional[str] = None,
    user: dict = Depends(permission_checker.get_authenticated_user),
    service: BudgetAllocationService = Depends(get_budget_service)
):
    permission_checker.check(user, Action.ALLOCATE_BUDGET)
    try:
        result = await service.soft_delete_phase(phase_id, user, reason)
    except LEDGER_ERRORS as e:
        raise to_http_exception(e)
    return serialize_doc(result)


# =============================================================================
# PROJECT BUDGET ADJUSTMENTS / TRANSFERS
# =============================================================================

@ledger_router.get("/projects/{project_id}/budget/categories")
async def get_budget_categories(
    project_id: str,
    user: dict = Depends(permission_checker.get_authenticated_user),
    service: BudgetAdjustmentService = Depends(get_adjustment_service)
):
    """Budgeted / consumed / available per budget category."""
    permission_checker.check(user, Action.VIEW_FINANCES)
    try:
        return await service.get_category_balances(project_id)
    except LEDGER_ERRORS as e:
        raise to_http_exception(e)


@ledger_router.post("/projects/{project_id}/budget/adjustments")
async def adjust_project_budget(
    project_id: str,
    request: BudgetAdjustmentCreate,
    user: dict = Depends(permission_checker.get_authenticated_user),
    service: BudgetAdjustmentService = Depends(get_adjustment_service)
):
    permission_checker.check(user, Action.ADJUST_BUDGET)
    try:
        result = await service.adjust_project_budget(
            project_id, request.category, request.adjustmentType, request.amount, user, request.reason
        )
    except LEDGER_ERRORS as e:
        raise to_http_exception(e)
    return serialize_doc(result)


@ledger_router.post("/projects/{project_id}/budget/transfers")
async def transfer_project_budget(
    project_id: str,
    request: BudgetTransferCreate,
    user: dict = Depends(permission_checker.get_authenticated_user),
    service: BudgetAdjustmentService = Depends(get_adjustment_service)
):
    """Move budget between categories; the project total does not change."""
    permission_checker.check(user, Action.ADJUST_BUDGET)
    try:
        result = await service.transfer_budget(
            project_id, request.fromCategory, request.toCategory, request.amount, user, request.reason
        )
    except LEDGER_ERRORS as e:
        raise to_http_exception(e)
    return serialize_doc(result)


@ledger_router.get("/projects/{project_id}/budget/history")
async def get_budget_history(
    project_id: str,
    limit: int = Query(50, ge=1, le=500),
    user: dict = Depends(permission_checker.get_authenticated_user),
    service: BudgetAdjustmentService = Depends(get_adjustment_service)
):
    permission_checker.check(user, Action.VIEW_FINANCES)
    try:
        history = await service.get_budget_history(project_id, limit)
    except LEDGER_ERRORS as e:
        raise to_http_exception(e)
    return {key: [serialize_doc(doc) for doc in docs] for key, docs in history.items()}


# =============================================================================
# APPROVALS
# =============================================================================

@ledger_router.post("/transactions/{txn_type}/{txn_id}/approve")
async def approve_transaction(
    txn_type: str,
    txn_id: str,
    request: ApproveRequest,
    user: dict = Depends(permission_checker.get_authenticated_user),
    service: ApprovalService = Depends(get_approval_service)
):
    """
    Approve a transaction.
    Capital shortfall always blocks; budget shortfall blocks unless the role may override.
    """
    try:
        result = await service.approve(txn_type, txn_id, user, request.notes)
    except LEDGER_ERRORS as e:
        raise to_http_exception(e)
    return serialize_doc(result)


@ledger_router.post("/transactions/{txn_type}/{txn_id}/reject")
async def reject_transaction(
    txn_type: str,
    txn_id: str,
    request: RejectRequest,
    user: dict = Depends(permission_checker.get_authenticated_user),
    service: ApprovalService = Depends(get_approval_service)
):
    try:
        result = await service.reject(txn_type, txn_id, user, request.reason)
    except LEDGER_ERRORS as e:
        raise to_http_exception(e)
    return serialize_doc(result)


# =============================================================================
# INVESTORS
# =============================================================================

@ledger_router.post("/investors/{investor_id}/reconcile")
async def reconcile_investor(
    investor_id: str,
    user: dict = Depends(permission_checker.get_authenticated_user),
    service: InvestorService = Depends(get_investor_service)
):
    """Append one corrective contribution if totalInvested drifted from the ledger."""
    permission_checker.check(user, Action.MANAGE_INVESTORS)
    try:
        result = await service.reconcile_contributions(investor_id, user)
    except LEDGER_ERRORS as e:
        raise to_http_exception(e)
    return serialize_doc(result)


@ledger_router.post("/investors/{investor_id}/contributions")
async def add_investor_contribution(
    investor_id: str,
    contribution: ContributionCreate,
    user: dict = Depends(permission_checker.get_authenticated_user),
    service: InvestorService = Depends(get_investor_service)
):
    permission_checker.check(user, Action.MANAGE_INVESTORS)
    try:
        entry = await service.add_contribution(
            investor_id, contribution.amount, contribution.type, user, contribution.notes
        )
    except LEDGER_ERRORS as e:
        raise to_http_exception(e)
    return serialize_doc(entry)


# =============================================================================
# INTEGRITY / AUDIT
# =============================================================================

@ledger_router.get("/projects/{project_id}/violations")
async def get_project_violations(
    project_id: str,
    user: dict = Depends(permission_checker.get_authenticated_user),
    database: AsyncIOMotorDatabase = Depends(get_database)
):
    """Allocation hierarchy report: phases over DCC, floors over their phase. Read only."""
    permission_checker.check(user, Action.VIEW_FINANCES)
    try:
        project_oid = to_object_id(project_id)
    except InvalidObjectIdError as e:
        raise to_http_exception(e)

    project = await database["projects"].find_one({"_id": project_oid})
    if not project:
        raise HTTPException(status_code=404, detail="Project not found")

    validator = FinancialInvariantValidator(database)
    violations = await validator.collect_project_violations(
        project_oid, calculate_dcc_from_budget(project.get("budget"))
    )
    return {"projectId": project_id, "violations": violations}


@ledger_router.get("/audit-logs")
async def get_audit_logs(
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    project_id: Optional[str] = None,
    limit: int = Query(100, ge=1, le=1000),
    user: dict = Depends(permission_checker.get_authenticated_user),
    database: AsyncIOMotorDatabase = Depends(get_database)
):
    permission_checker.check(user, Action.VIEW_FINANCES)
    logs = await AuditService(database).get_audit_logs(entity_type, entity_id, project_id, limit)
    return [serialize_doc(log) for log in logs]


@ledger_router.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "timestamp": datetime.utcnow(),
        "service": "ledger"
    }
