from motor.motor_asyncio import AsyncIOMotorDatabase
from datetime import datetime
from decimal import Decimal
from typing import Dict, Any, Optional
import logging

from core.financial_precision import (
    to_decimal, to_float, safe_subtract, validate_positive, amounts_differ
)
from core.version_lock_engine import DocumentNotFoundError
from models import ContributionType, to_object_id
from audit_service import AuditService

logger = logging.getLogger(__name__)


def calculate_contribution_totals(investor: Dict[str, Any]) -> Dict[str, float]:
    """
    Totals over an investor's contribution history.

    LOCKED FORMULA:
    - ledgerTotal = Σ non-RETURN amounts - Σ RETURN amounts
    """
    by_type = {t.value: Decimal('0') for t in ContributionType}

    for contribution in investor.get("contributions") or []:
        contribution_type = (contribution.get("type") or ContributionType.EQUITY.value).upper()
        if contribution_type not in by_type:
            contribution_type = ContributionType.EQUITY.value
        by_type[contribution_type] += to_decimal(contribution.get("amount", 0))

    returns = by_type[ContributionType.RETURN.value]
    inflows = sum(
        (amount for t, amount in by_type.items() if t != ContributionType.RETURN.value),
        Decimal('0')
    )

    return {
        "ledgerTotal": to_float(safe_subtract(inflows, returns)),
        "equity": to_float(by_type[ContributionType.EQUITY.value]),
        "loans": to_float(by_type[ContributionType.LOAN.value]),
        "mixed": to_float(by_type[ContributionType.MIXED.value]),
        "returns": to_float(returns),
        "adjustments": to_float(by_type[ContributionType.ADJUSTMENT.value])
    }


class InvestorService:
    """
    Append-only contribution ledger.

    RULES:
    1. Contributions are never edited or removed
    2. totalInvested must equal the ledger total
    3. Drift is corrected by appending ADJUSTMENT (+) or RETURN (-), never by rewriting history
    """

    def __init__(self, db: AsyncIOMotorDatabase, audit_service: Optional[AuditService] = None):
        self.db = db
        self.collection = db["investors"]
        self.audit_service = audit_service or AuditService(db)

    async def _get_investor(self, investor_id) -> Dict[str, Any]:
        investor = await self.collection.find_one({"_id": to_object_id(investor_id), "deletedAt": None})
        if not investor:
            raise DocumentNotFoundError("Investor", investor_id)
        return investor

    async def add_contribution(
        self,
        investor_id,
        amount,
        contribution_type,
        user: dict,
        notes: Optional[str] = None
    ) -> Dict[str, Any]:
        """Append a contribution and move totalInvested with it."""
        validate_positive(amount, "amount")
        contribution_type = ContributionType(contribution_type)

        investor = await self._get_investor(investor_id)
        old_total = to_float(investor.get("totalInvested", 0))

        entry = {
            "amount": to_float(amount),
            "date": datetime.utcnow(),
            "type": contribution_type.value,
            "notes": notes
        }
        signed = to_decimal(entry["amount"])
        if contribution_type == ContributionType.RETURN:
            signed = -signed
        new_total = to_float(to_decimal(old_total) + signed)

        await self.collection.update_one(
            {"_id": investor["_id"]},
            {
                "$push": {"contributions": entry},
                "$set": {"totalInvested": new_total, "updatedAt": datetime.utcnow()}
            }
        )

        await self.audit_service.log_action(
            user_id=user.get("user_id"),
            action="CONTRIBUTION_ADDED",
            entity_type="Investor",
            entity_id=investor["_id"],
            changes={
                "totalInvested": {"oldValue": old_total, "newValue": new_total},
                "contribution": {"oldValue": None, "newValue": {"amount": entry["amount"], "type": entry["type"]}}
            }
        )

        logger.info(f"[INVESTOR] {contribution_type.value} {entry['amount']} recorded for investor {investor['_id']}")
        return entry

    async def reconcile_contributions(self, investor_id, user: dict) -> Dict[str, Any]:
        """
        Compare totalInvested with the contribution ledger and append one corrective entry.

        Returns {reconciled, drift, totalInvested, ledgerTotal, entry}
        """
        investor = await self._get_investor(investor_id)
        total_invested = to_decimal(investor.get("totalInvested", 0))
        totals = calculate_contribution_totals(investor)
        ledger_total = to_decimal(totals["ledgerTotal"])
        drift = safe_subtract(total_invested, ledger_total)

        result = {
            "reconciled": False,
            "drift": to_float(drift),
            "totalInvested": to_float(total_invested),
            "ledgerTotal": to_float(ledger_total),
            "entry": None
        }

        if not amounts_differ(total_invested, ledger_total):
            logger.info(f"[RECONCILE] Investor {investor['_id']} in agreement ({to_float(ledger_total)})")
            return result

        if drift > Decimal('0'):
            entry_type = ContributionType.ADJUSTMENT
        else:
            entry_type = ContributionType.RETURN

        entry = {
            "amount": to_float(abs(drift)),
            "date": datetime.utcnow(),
            "type": entry_type.value,
            "notes": (
                f"Reconciliation: totalInvested {to_float(total_invested)} "
                f"vs contributions {to_float(ledger_total)}"
            )
        }

        await self.collection.update_one(
            {"_id": investor["_id"]},
            {
                "$push": {"contributions": entry},
                "$set": {"lastReconciledAt": datetime.utcnow()}
            }
        )

        await self.audit_service.log_action(
            user_id=user.get("user_id"),
            action="RECONCILED",
            entity_type="Investor",
            entity_id=investor["_id"],
            changes={
                "contributionsTotal": {"oldValue": to_float(ledger_total), "newValue": to_float(total_invested)}
            },
            description=f"Appended {entry_type.value} of {entry['amount']}"
        )

        logger.warning(
            f"[RECONCILE] Investor {investor['_id']} drift {to_float(drift)}: "
            f"appended {entry_type.value} {entry['amount']}"
        )

        result.update({"reconciled": True, "entry": entry, "ledgerTotal": to_float(total_invested)})
        return result
