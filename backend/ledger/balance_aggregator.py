"""
LEDGER ENGINE - BALANCE AGGREGATOR

Maintains the derived payment fields of a target (total_paid,
remaining_amount, payment_status) and the outstanding balance of the
target's owning party.

Two ways to arrive at total_paid:
- apply_delta:     stored total_paid + delta (incremental, per mutation)
- recompute_exact: Σ amount of all live payments for the target (repair)

Party balances move by the change in the target's contribution
(remaining_amount, or 0 while the target is cancelled), using an atomic
$inc. Target documents are saved with an optimistic version check.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional
import logging

from ledger.errors import NotFoundError, TransactionAbortError, ValidationError
from ledger.ledger_store import PaymentLedger
from ledger.precision import ZERO, round_financial, to_decimal, to_decimal128, to_float
from ledger.references import AnyParty, AnyTarget, ExpenseTarget, owner_party, parse_object_id
from ledger.status_calculator import StatusResult, calculate_payment_status
from ledger.transaction import TransactionScope

logger = logging.getLogger(__name__)

CANCELLED = "cancelled"


@dataclass
class TargetChange:
    """Outcome of refreshing one target's derived fields"""
    target: AnyTarget
    document: Dict[str, Any]
    before: Optional[StatusResult]
    after: Optional[StatusResult]
    party: Optional[AnyParty]
    party_delta: Decimal = ZERO


def version_filter(document: Dict[str, Any]) -> Dict[str, Any]:
    """Filter matching the document only if nobody saved it since it was read"""
    query: Dict[str, Any] = {"_id": document["_id"]}
    if "version" in document:
        query["version"] = document["version"]
    else:
        query["version"] = {"$exists": False}
    return query


def contribution(document: Dict[str, Any], status: Optional[StatusResult]) -> Decimal:
    """What a target adds to its party's outstanding balance"""
    if status is None or document.get("status") == CANCELLED:
        return ZERO
    return status.remaining_amount


class BalanceAggregator:

    def __init__(self, ledger: PaymentLedger):
        self.ledger = ledger

    # =========================================================================
    # LOOKUPS
    # =========================================================================

    async def load_target(self, scope: TransactionScope, target: AnyTarget) -> Dict[str, Any]:
        oid = parse_object_id(target.target_id, target.entity_type)
        document = await scope.db[target.collection].find_one({"_id": oid}, session=scope.session)
        if not document:
            raise NotFoundError(target.entity_type, target.target_id)
        return document

    async def ensure_party(self, scope: TransactionScope, party: AnyParty) -> Dict[str, Any]:
        oid = parse_object_id(party.party_id, party.entity_type)
        document = await scope.db[party.collection].find_one({"_id": oid}, session=scope.session)
        if not document:
            raise NotFoundError(party.entity_type, party.party_id)
        return document

    @staticmethod
    def principal_of(target: AnyTarget, document: Dict[str, Any]) -> Decimal:
        if target.principal_field is None:
            return to_decimal(document.get("amount", 0))
        return to_decimal(document.get(target.principal_field, 0))

    def status_of(self, target: AnyTarget, document: Dict[str, Any]) -> Optional[StatusResult]:
        """Status as currently stored (re-derived from stored total_paid)"""
        if target.principal_field is None:
            return None
        return calculate_payment_status(self.principal_of(target, document), document.get("total_paid", 0))

    # =========================================================================
    # VALIDATION
    # =========================================================================

    async def check_capacity(
        self,
        scope: TransactionScope,
        target: AnyTarget,
        document: Dict[str, Any],
        amount: Decimal,
        exclude_payment_id=None
    ):
        """
        Reject a payment that would push the cumulative total beyond principal.
        No rounding tolerance: Σ payments may equal, never exceed, the principal.
        """
        principal = round_financial(self.principal_of(target, document))
        if principal <= ZERO:
            raise ValidationError(
                f"{target.entity_type} {target.target_id} has no payable amount",
                details={"principal": to_float(principal)}
            )
        if document.get("status") == CANCELLED:
            raise ValidationError(f"Cannot record a payment against cancelled {target.entity_type} {target.target_id}")

        if isinstance(target, ExpenseTarget):
            already_paid = await self.ledger.sum_for_target(scope, target, exclude_id=exclude_payment_id)
        else:
            already_paid = round_financial(to_decimal(document.get("total_paid", 0)))

        remaining = principal - already_paid
        if round_financial(amount) > remaining:
            raise ValidationError(
                f"Payment amount ({to_float(amount)}) exceeds remaining balance ({to_float(remaining)})",
                details={
                    "amount": to_float(amount),
                    "remaining_amount": to_float(remaining),
                    "principal": to_float(principal),
                }
            )

    # =========================================================================
    # MUTATIONS
    # =========================================================================

    async def save_status(
        self,
        scope: TransactionScope,
        target: AnyTarget,
        document: Dict[str, Any],
        status: StatusResult,
        extra_fields: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """Read-modify-write of derived fields, guarded by the version read earlier"""
        set_fields = {**status.to_document(), "updated_at": datetime.utcnow()}
        if extra_fields:
            set_fields.update(extra_fields)

        updated = await scope.db[target.collection].find_one_and_update(
            version_filter(document),
            {"$set": set_fields, "$inc": {"version": 1}},
            return_document=True,
            session=scope.session
        )
        if updated is None:
            raise TransactionAbortError(
                f"Concurrent modification detected on {target.entity_type} {target.target_id}",
                details={"entity_type": target.entity_type, "entity_id": target.target_id}
            )
        return updated

    async def adjust_party(self, scope: TransactionScope, party: Optional[AnyParty], delta: Decimal):
        """Atomic increment of a party's outstanding balance"""
        if party is None or delta == ZERO:
            return
        oid = parse_object_id(party.party_id, party.entity_type)
        result = await scope.db[party.collection].update_one(
            {"_id": oid},
            {
                "$inc": {party.balance_field: to_decimal128(delta)},
                "$set": {"updated_at": datetime.utcnow()}
            },
            session=scope.session
        )
        if result.matched_count == 0:
            raise NotFoundError(party.entity_type, party.party_id)
        scope.invalidate(party.resource_path)
        logger.debug(f"[PAYMENT] {party.entity_type} {party.party_id} {party.balance_field} {delta:+}")

    async def _refresh(
        self,
        scope: TransactionScope,
        target: AnyTarget,
        document: Dict[str, Any],
        new_total_paid: Decimal
    ) -> TargetChange:
        party = owner_party(target, document)
        if target.principal_field is None:
            return TargetChange(target, document, None, None, party)

        principal = self.principal_of(target, document)
        before = calculate_payment_status(principal, document.get("total_paid", 0))
        after = calculate_payment_status(principal, new_total_paid)

        updated = await self.save_status(scope, target, document, after)

        party_delta = contribution(updated, after) - contribution(document, before)
        await self.adjust_party(scope, party, party_delta)
        scope.invalidate(target.resource_path)

        return TargetChange(target, updated, before, after, party, party_delta)

    async def apply_delta(self, scope: TransactionScope, target: AnyTarget, delta: Decimal) -> TargetChange:
        """Incremental path: stored total_paid + delta (clamped at 0 by the calculator)"""
        document = await self.load_target(scope, target)
        new_total = to_decimal(document.get("total_paid", 0)) + to_decimal(delta)
        return await self._refresh(scope, target, document, new_total)

    async def recompute_exact(self, scope: TransactionScope, target: AnyTarget) -> TargetChange:
        """Exact path: Σ live payments, ignoring whatever total_paid is cached"""
        document = await self.load_target(scope, target)
        total = await self.ledger.sum_for_target(scope, target)
        return await self._refresh(scope, target, document, total)
