from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, List, Dict, Any
from datetime import datetime
from enum import Enum
from bson import ObjectId


class InvalidObjectIdError(ValueError):
    """Raised when a path/body id is not a valid ObjectId"""
    pass


def to_object_id(value) -> ObjectId:
    """Coerce a string id to ObjectId, passing ObjectIds through."""
    if isinstance(value, ObjectId):
        return value
    if value is None or not ObjectId.is_valid(value):
        raise InvalidObjectIdError(f"Invalid ObjectId: {value}")
    return ObjectId(value)

# ============================================
# BUDGET MODELS
# ============================================
class BudgetAllocation(BaseModel):
    total: float = Field(default=0.0, ge=0)
    materials: float = Field(default=0.0, ge=0)
    labour: float = Field(default=0.0, ge=0)
    equipment: float = Field(default=0.0, ge=0)
    subcontractors: float = Field(default=0.0, ge=0)
    contingency: float = Field(default=0.0, ge=0)

class SpendingBreakdown(BaseModel):
    total: float = 0.0
    materials: float = 0.0
    labour: float = 0.0
    equipment: float = 0.0
    subcontractors: float = 0.0
    expenses: float = 0.0
    professionalServices: float = 0.0

class FinancialStates(BaseModel):
    actual: float = 0.0
    committed: float = 0.0
    remaining: float = 0.0
    status: Optional[str] = None

class ProjectBudget(BaseModel):
    """Project budget envelope. Legacy budgets carry only total/materials/labour/contingency."""
    total: float = Field(default=0.0, ge=0)
    directConstructionCosts: Optional[float] = Field(default=None, ge=0)
    preConstruction: Optional[float] = Field(default=None, ge=0)
    indirect: Optional[float] = Field(default=None, ge=0)
    contingency: Optional[float] = Field(default=None, ge=0)
    materials: Optional[float] = Field(default=None, ge=0)
    labour: Optional[float] = Field(default=None, ge=0)

class BudgetCategory(str, Enum):
    DCC = "dcc"
    PRECONSTRUCTION = "preconstruction"
    INDIRECT = "indirect"
    CONTINGENCY = "contingency"

class AdjustmentType(str, Enum):
    INCREASE = "increase"
    DECREASE = "decrease"

# ============================================
# SCOPE MODELS (stored shapes)
# ============================================
class Phase(BaseModel):
    phase_id: Optional[str] = Field(default=None, alias="_id")
    projectId: str
    phaseName: str
    phaseCode: Optional[str] = None
    phaseType: Optional[str] = None
    sequence: int = 0
    tracksFloors: bool = False
    budgetAllocation: BudgetAllocation = Field(default_factory=BudgetAllocation)
    actualSpending: SpendingBreakdown = Field(default_factory=SpendingBreakdown)
    committedCosts: SpendingBreakdown = Field(default_factory=SpendingBreakdown)
    financialStates: FinancialStates = Field(default_factory=FinancialStates)
    floorsOverAllocated: bool = False
    financialVersion: int = 0

    model_config = ConfigDict(populate_by_name=True)

class Floor(BaseModel):
    floor_id: Optional[str] = Field(default=None, alias="_id")
    projectId: str
    phaseId: Optional[str] = None
    floorNumber: int
    name: Optional[str] = None
    floorType: Optional[str] = None  # basement, typical, penthouse
    budgetAllocation: BudgetAllocation = Field(default_factory=BudgetAllocation)
    actualSpending: SpendingBreakdown = Field(default_factory=SpendingBreakdown)
    committedCosts: SpendingBreakdown = Field(default_factory=SpendingBreakdown)
    financialStates: FinancialStates = Field(default_factory=FinancialStates)
    financialVersion: int = 0

    model_config = ConfigDict(populate_by_name=True)

# ============================================
# INVESTOR MODELS
# ============================================
class ContributionType(str, Enum):
    EQUITY = "EQUITY"
    LOAN = "LOAN"
    MIXED = "MIXED"
    RETURN = "RETURN"
    ADJUSTMENT = "ADJUSTMENT"

class Contribution(BaseModel):
    amount: float = Field(gt=0)
    date: datetime = Field(default_factory=lambda: datetime.utcnow())
    type: ContributionType
    notes: Optional[str] = None

class ProjectAllocation(BaseModel):
    projectId: str
    amount: float = Field(default=0.0, ge=0)
    percentage: Optional[float] = None

# ============================================
# APPROVAL / AUDIT MODELS (append-only)
# ============================================
class ApprovalChainEntry(BaseModel):
    approverId: str
    status: str
    notes: Optional[str] = None
    approvedAt: datetime = Field(default_factory=lambda: datetime.utcnow())

class ApprovalRecord(BaseModel):
    relatedId: str
    relatedModel: str
    action: str
    approvedBy: str
    reason: Optional[str] = None
    previousStatus: Optional[str] = None
    newStatus: str
    timestamp: datetime = Field(default_factory=lambda: datetime.utcnow())

class AuditEntry(BaseModel):
    audit_id: Optional[str] = Field(default=None, alias="_id")
    userId: str
    action: str
    entityType: str
    entityId: str
    projectId: Optional[str] = None
    changes: Dict[str, Any] = Field(default_factory=dict)
    description: Optional[str] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.utcnow())

    model_config = ConfigDict(populate_by_name=True)

# ============================================
# REQUEST MODELS
# ============================================
class ApproveRequest(BaseModel):
    notes: Optional[str] = None

class RejectRequest(BaseModel):
    reason: str

class WeightedDistributionRequest(BaseModel):
    # Keyed by floor type (basement/typical/penthouse) or floor id
    weights: Optional[Dict[str, float]] = None

class ContributionCreate(BaseModel):
    amount: float = Field(gt=0)
    type: ContributionType
    notes: Optional[str] = None

class BudgetAdjustmentCreate(BaseModel):
    category: BudgetCategory
    adjustmentType: AdjustmentType
    amount: float = Field(gt=0)
    reason: str

class BudgetTransferCreate(BaseModel):
    fromCategory: BudgetCategory
    toCategory: BudgetCategory
    amount: float = Field(gt=0)
    reason: str

# ============================================
# RESPONSE MODELS
# ============================================
class CapitalValidation(BaseModel):
    isValid: bool
    available: float
    required: float
    shortfall: float = 0.0
    totalInvested: float = 0.0
    totalUsed: float = 0.0
    committed: float = 0.0
    message: str

class FloorAllocationSuggestion(BaseModel):
    floorId: str
    floorNumber: Optional[int] = None
    suggestedAllocation: float
    minimumRequired: Optional[float] = None
    weight: Optional[float] = None

class DistributionResponse(BaseModel):
    phaseId: str
    phaseTotal: float
    allocations: List[FloorAllocationSuggestion]
    warnings: List[str] = Field(default_factory=list)
