"""
Payment lifecycle: create / update / delete a Payment and keep its target
and party in step, all inside one transaction.

Update is applied in two phases: the old payment's impact is fully
reverted (old amount, old target, old party), then the new payment is
applied as if freshly created. Amount, target and party may all change
at once without any delta arithmetic between old and new.
"""

from datetime import datetime
from typing import Any, Dict, Optional
import logging

from ledger.balance_aggregator import BalanceAggregator, TargetChange
from ledger.errors import ValidationError
from ledger.ledger_store import PaymentLedger
from ledger.precision import round_financial, to_decimal, to_decimal128, validate_positive
from ledger.references import (
    PAYMENT_TARGET_FIELDS, AnyParty, AnyTarget, AssetTarget,
    owner_party, parse_object_id, same_party, target_from_payment
)
from ledger.transaction import AuditAction, TransactionCoordinator, TransactionScope
from models import InitialPayment, PaymentCreate, PaymentUpdate

logger = logging.getLogger(__name__)

# Optional payment fields copied verbatim from create/update inputs
DETAIL_FIELDS = ("payment_date", "notes", "reference_number", "tranche_number", "total_tranches")


class PaymentService:
    """Service for payment creation, correction and reversal"""

    def __init__(
        self,
        transactions: TransactionCoordinator,
        ledger: PaymentLedger,
        aggregator: BalanceAggregator
    ):
        self.transactions = transactions
        self.ledger = ledger
        self.aggregator = aggregator

    # =========================================================================
    # ENTRY POINTS (one transaction each)
    # =========================================================================

    async def create_payment(self, data: PaymentCreate) -> Dict[str, Any]:
        return await self.transactions.run(
            lambda scope: self.apply_create(scope, data),
            label="payment.create"
        )

    async def update_payment(self, payment_id: str, patch: PaymentUpdate) -> Dict[str, Any]:
        return await self.transactions.run(
            lambda scope: self.apply_update(scope, payment_id, patch),
            label="payment.update"
        )

    async def delete_payment(self, payment_id: str) -> Dict[str, Any]:
        return await self.transactions.run(
            lambda scope: self.apply_delete(scope, payment_id),
            label="payment.delete"
        )

    # =========================================================================
    # SCOPE-LEVEL OPERATIONS (reused by other services inside their scope)
    # =========================================================================

    async def apply_create(self, scope: TransactionScope, data: PaymentCreate) -> Dict[str, Any]:
        amount = round_financial(validate_positive(data.amount, "amount"))
        target = data.target

        document = await self.aggregator.load_target(scope, target)
        party = await self._resolve_party(scope, target, document, data.party)
        await self.aggregator.check_capacity(scope, target, document, amount)

        payment_doc = {
            "amount": to_decimal128(amount),
            "payment_method": data.payment_method.value,
            "transaction_type": target.transaction_type,
            "account_type": target.account_type,
            **self._target_fields(target),
            **self._party_fields(party),
        }
        for field in DETAIL_FIELDS:
            payment_doc[field] = getattr(data, field)
        if payment_doc["payment_date"] is None:
            payment_doc["payment_date"] = datetime.utcnow()

        payment = await self.ledger.insert(scope, payment_doc)
        change = await self.aggregator.apply_delta(scope, target, amount)
        await self._sync_asset_link(scope, target)

        scope.audit(AuditAction.CREATE, "Payment", payment["_id"], new_value=dict(payment))
        scope.invalidate("payments")
        self._log_change("created", payment["_id"], amount, change)
        return payment

    async def apply_create_initial(
        self,
        scope: TransactionScope,
        target: AnyTarget,
        initial: InitialPayment,
        default_notes: str
    ) -> Dict[str, Any]:
        """Initial payment attached to a freshly created target"""
        data = PaymentCreate(
            target=target,
            amount=initial.amount,
            payment_method=initial.payment_method,
            payment_date=initial.payment_date,
            notes=initial.notes or default_notes,
            reference_number=initial.reference_number,
            tranche_number=initial.tranche_number or 1,
            total_tranches=initial.total_tranches or 1,
        )
        return await self.apply_create(scope, data)

    async def apply_update(self, scope: TransactionScope, payment_id: str, patch: PaymentUpdate) -> Dict[str, Any]:
        original = await self.ledger.get(scope, payment_id)
        old_target = target_from_payment(original)
        old_amount = to_decimal(original["amount"])

        new_target = patch.target if patch.target is not None else old_target
        if new_target is None:
            raise ValidationError("Payment must reference a target", details={"payment_id": str(payment_id)})
        new_amount = round_financial(validate_positive(
            patch.amount if patch.amount is not None else old_amount, "amount"
        ))

        # Phase 1: revert the old payment's impact on its target and party
        if old_target is not None:
            await self.aggregator.apply_delta(scope, old_target, -old_amount)

        # Phase 2: apply the new payment against the (possibly new) target and party
        document = await self.aggregator.load_target(scope, new_target)
        party = await self._resolve_party(scope, new_target, document, None)
        await self.aggregator.check_capacity(
            scope, new_target, document, new_amount, exclude_payment_id=original["_id"]
        )

        set_fields = {
            "amount": to_decimal128(new_amount),
            "transaction_type": new_target.transaction_type,
            "account_type": new_target.account_type,
            **self._target_fields(new_target),
        }
        unset_fields = [f for f in PAYMENT_TARGET_FIELDS + ("procurement_type",) if f not in set_fields]
        if party is not None:
            set_fields.update(self._party_fields(party))
        else:
            unset_fields.extend(["party_id", "party_type"])
        if patch.payment_method is not None:
            set_fields["payment_method"] = patch.payment_method.value
        for field in DETAIL_FIELDS:
            value = getattr(patch, field)
            if value is not None:
                set_fields[field] = value

        updated = await self.ledger.replace_fields(scope, original["_id"], set_fields, unset_fields)
        change = await self.aggregator.apply_delta(scope, new_target, new_amount)

        if old_target is not None and old_target != new_target:
            await self._sync_asset_link(scope, old_target)
        await self._sync_asset_link(scope, new_target)

        scope.audit(AuditAction.UPDATE, "Payment", original["_id"], old_value=dict(original), new_value=dict(updated))
        scope.invalidate("payments")
        self._log_change("updated", original["_id"], new_amount, change)
        return updated

    async def apply_delete(self, scope: TransactionScope, payment_id: str) -> Dict[str, Any]:
        payment = await self.ledger.get(scope, payment_id)
        target = target_from_payment(payment)

        change = None
        if target is not None:
            change = await self.aggregator.apply_delta(scope, target, -to_decimal(payment["amount"]))

        await self.ledger.delete(scope, payment["_id"])
        if target is not None:
            await self._sync_asset_link(scope, target)

        scope.audit(AuditAction.DELETE, "Payment", payment["_id"], old_value=dict(payment))
        scope.invalidate("payments")
        self._log_change("deleted", payment["_id"], to_decimal(payment["amount"]), change)
        return payment

    # =========================================================================
    # HELPERS
    # =========================================================================

    async def _resolve_party(
        self,
        scope: TransactionScope,
        target: AnyTarget,
        document: Dict[str, Any],
        requested: Optional[AnyParty]
    ) -> Optional[AnyParty]:
        """A payment's party is always the party that owns its target."""
        party = owner_party(target, document)
        if requested is not None and not same_party(requested, party):
            raise ValidationError(
                f"{requested.entity_type} {requested.party_id} is not the party of {target.entity_type} {target.target_id}",
                details={"party_id": requested.party_id, "target_id": target.target_id}
            )
        if party is not None:
            await self.aggregator.ensure_party(scope, party)
        return party

    @staticmethod
    def _target_fields(target: AnyTarget) -> Dict[str, Any]:
        return target.payment_fields()

    @staticmethod
    def _party_fields(party: Optional[AnyParty]) -> Dict[str, Any]:
        if party is None:
            return {}
        return {
            "party_id": parse_object_id(party.party_id, party.entity_type),
            "party_type": party.kind,
        }

    async def _sync_asset_link(self, scope: TransactionScope, target: AnyTarget):
        """Keep asset.payment_id pointing at the asset's most recent payment"""
        if not isinstance(target, AssetTarget):
            return
        latest = await self.ledger.latest_for_target(scope, target)
        if latest is not None:
            update = {"$set": {"payment_id": latest["_id"]}}
        else:
            update = {"$unset": {"payment_id": ""}}
        await scope.db[target.collection].update_one(
            {"_id": parse_object_id(target.asset_id, target.entity_type)},
            update,
            session=scope.session
        )

    @staticmethod
    def _log_change(verb: str, payment_id, amount, change: Optional[TargetChange]):
        if change is None or change.after is None:
            logger.info(f"[PAYMENT] Payment {verb}: {payment_id} amount={amount}")
            return
        logger.info(
            f"[PAYMENT] Payment {verb}: {payment_id} amount={amount} "
            f"{change.target.entity_type}:{change.target.target_id} -> {change.after.payment_status.value}, "
            f"remaining={change.after.remaining_amount}, party_delta={change.party_delta}"
        )
