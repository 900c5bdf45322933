"""
Transaction type registry.

Every spend-bearing document type in the ledger is described once here:
where it lives, which field holds its amount, which spend bucket it
feeds, which statuses count as actual spend or as commitment, and its
lifecycle state machine. The aggregator, the orchestrator and the
approval service all read these definitions instead of hard-coding
per-type status strings.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Dict, Any, Optional, Tuple, FrozenSet

from core.financial_precision import to_decimal
from core.state_machine import StateMachine, create_approval_state_machine


# Spend buckets carried on actualSpending / committedCosts
SPENDING_CATEGORIES = (
    "materials",
    "labour",
    "equipment",
    "subcontractors",
    "expenses",
    "professionalServices",
)

# Expense categories that map onto their own bucket; everything else is "expenses"
EXPENSE_CATEGORY_BUCKETS = {
    "equipment": "equipment",
    "equipment_rental": "equipment",
    "subcontractors": "subcontractors",
    "subcontractor": "subcontractors",
}


class TransactionType(str, Enum):
    MATERIAL = "material"
    LABOUR_ENTRY = "labour_entry"
    EXPENSE = "expense"
    PROFESSIONAL_FEE = "professional_fee"
    PURCHASE_ORDER = "purchase_order"
    INITIAL_EXPENSE = "initial_expense"


@dataclass(frozen=True)
class TransactionDefinition:
    txn_type: TransactionType
    collection: str
    related_model: str
    amount_field: str
    category: str
    draft_status: str
    pending_status: str
    approved_status: str
    rejected_status: str
    submitted_status: Optional[str] = None
    actual_statuses: FrozenSet[str] = frozenset()
    committed_statuses: FrozenSet[str] = frozenset()
    settled_statuses: Tuple[str, ...] = ()
    # Initial expenses are charged to the project only
    project_only: bool = False
    machine: StateMachine = field(default=None, compare=False, repr=False)

    @property
    def label(self) -> str:
        """Short name used in messages and audit keys, e.g. 'material'."""
        return self.related_model[0].lower() + self.related_model[1:]

    def amount_of(self, doc: Dict[str, Any]) -> Decimal:
        return to_decimal(doc.get(self.amount_field, 0))

    def category_for(self, doc: Dict[str, Any]) -> str:
        if self.txn_type == TransactionType.EXPENSE:
            raw = (doc.get("category") or "").lower()
            return EXPENSE_CATEGORY_BUCKETS.get(raw, "expenses")
        return self.category

    def is_actual(self, status: Optional[str]) -> bool:
        return status in self.actual_statuses

    def is_committed(self, status: Optional[str]) -> bool:
        return status in self.committed_statuses

    def reject_target(self, current_status: str) -> str:
        """
        Approved transactions fall back to pending (re-reviewable);
        anything else becomes rejected.
        """
        if current_status == self.approved_status:
            return self.pending_status
        return self.rejected_status


def _purchase_order_machine() -> StateMachine:
    machine = StateMachine("purchase_order")
    machine.register("draft", "order_sent")
    machine.register_many("order_sent", ["order_accepted", "order_rejected", "order_modified", "cancelled"])
    machine.register_many("order_modified", ["order_accepted", "order_rejected", "order_sent", "cancelled"])
    machine.register("order_rejected", "order_sent")
    machine.register_many("order_accepted", ["ready_for_delivery", "delivered", "order_sent", "cancelled"])
    machine.register("ready_for_delivery", "delivered")
    machine.register("draft", "cancelled")
    return machine


MATERIAL = TransactionDefinition(
    txn_type=TransactionType.MATERIAL,
    collection="materials",
    related_model="Material",
    amount_field="totalCost",
    category="materials",
    draft_status="draft",
    submitted_status="submitted",
    pending_status="pending_approval",
    approved_status="approved",
    rejected_status="rejected",
    settled_statuses=("received",),
    actual_statuses=frozenset({"approved", "received"}),
    machine=create_approval_state_machine(
        "material", "draft", "submitted", "pending_approval", "approved", "rejected",
        settled=("received",)
    ),
)

LABOUR_ENTRY = TransactionDefinition(
    txn_type=TransactionType.LABOUR_ENTRY,
    collection="labour_entries",
    related_model="LabourEntry",
    amount_field="totalCost",
    category="labour",
    draft_status="draft",
    submitted_status="submitted",
    pending_status="pending_approval",
    approved_status="approved",
    rejected_status="rejected",
    settled_statuses=("paid",),
    actual_statuses=frozenset({"approved", "paid"}),
    machine=create_approval_state_machine(
        "labour_entry", "draft", "submitted", "pending_approval", "approved", "rejected",
        settled=("paid",)
    ),
)

EXPENSE = TransactionDefinition(
    txn_type=TransactionType.EXPENSE,
    collection="expenses",
    related_model="Expense",
    amount_field="amount",
    category="expenses",
    draft_status="DRAFT",
    submitted_status="SUBMITTED",
    pending_status="PENDING",
    approved_status="APPROVED",
    rejected_status="REJECTED",
    settled_statuses=("PAID",),
    actual_statuses=frozenset({"APPROVED", "PAID"}),
    machine=create_approval_state_machine(
        "expense", "DRAFT", "SUBMITTED", "PENDING", "APPROVED", "REJECTED",
        settled=("PAID",)
    ),
)

PROFESSIONAL_FEE = TransactionDefinition(
    txn_type=TransactionType.PROFESSIONAL_FEE,
    collection="professional_fees",
    related_model="ProfessionalFee",
    amount_field="amount",
    category="professionalServices",
    draft_status="DRAFT",
    submitted_status="SUBMITTED",
    pending_status="PENDING",
    approved_status="APPROVED",
    rejected_status="REJECTED",
    settled_statuses=("PAID",),
    actual_statuses=frozenset({"APPROVED", "PAID"}),
    machine=create_approval_state_machine(
        "professional_fee", "DRAFT", "SUBMITTED", "PENDING", "APPROVED", "REJECTED",
        settled=("PAID",)
    ),
)

PURCHASE_ORDER = TransactionDefinition(
    txn_type=TransactionType.PURCHASE_ORDER,
    collection="purchase_orders",
    related_model="PurchaseOrder",
    amount_field="totalCost",
    category="materials",
    draft_status="draft",
    submitted_status="order_sent",
    pending_status="order_sent",
    approved_status="order_accepted",
    rejected_status="order_rejected",
    settled_statuses=("ready_for_delivery", "delivered"),
    committed_statuses=frozenset({"order_accepted", "ready_for_delivery", "delivered"}),
    machine=_purchase_order_machine(),
)

INITIAL_EXPENSE = TransactionDefinition(
    txn_type=TransactionType.INITIAL_EXPENSE,
    collection="initial_expenses",
    related_model="InitialExpense",
    amount_field="amount",
    category="preConstruction",
    draft_status="draft",
    submitted_status="pending",
    pending_status="pending",
    approved_status="approved",
    rejected_status="rejected",
    actual_statuses=frozenset({"approved"}),
    project_only=True,
    machine=create_approval_state_machine(
        "initial_expense", "draft", "pending", "pending", "approved", "rejected"
    ),
)


TRANSACTION_DEFINITIONS: Dict[TransactionType, TransactionDefinition] = {
    d.txn_type: d for d in (
        MATERIAL, LABOUR_ENTRY, EXPENSE, PROFESSIONAL_FEE, PURCHASE_ORDER, INITIAL_EXPENSE
    )
}

# Types whose approved amounts are actual spend on phases/floors
SCOPED_ACTUAL_TYPES = (MATERIAL, LABOUR_ENTRY, EXPENSE, PROFESSIONAL_FEE)


def get_definition(txn_type) -> TransactionDefinition:
    """Look up a definition by enum member or its string value."""
    try:
        return TRANSACTION_DEFINITIONS[TransactionType(txn_type)]
    except ValueError:
        raise ValueError(
            f"Unknown transaction type '{txn_type}'. "
            f"Expected one of: {[t.value for t in TransactionType]}"
        )


def empty_breakdown() -> Dict[str, float]:
    """Zeroed {total, <category>...} dict."""
    breakdown = {"total": 0.0}
    for category in SPENDING_CATEGORIES:
        breakdown[category] = 0.0
    return breakdown
