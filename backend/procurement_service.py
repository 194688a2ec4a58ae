"""
Procurement Service

Raw material and trading goods purchase orders. A procurement adds its
remaining amount to the vendor's outstanding payable while it is not
cancelled, and adds stock to inventory while it is received.

LOCKED FORMULAS:
- amount         = quantity * unit_price (per item)
- original_price = SUM(amount)
- gst_amount     = original_price * gst_percentage / 100
- grand_total    = original_price + gst_amount
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
import logging

from inventory_service import InventoryService, stock_line
from ledger.balance_aggregator import BalanceAggregator, contribution
from ledger.errors import NotFoundError, ValidationError
from ledger.ledger_store import PaymentLedger
from ledger.precision import (
    ZERO, calculate_percentage, round_financial, to_decimal, to_decimal128,
    to_float, validate_non_negative, validate_positive
)
from ledger.references import ProcurementTarget, VendorParty, parse_object_id, procurement_collection
from ledger.status_calculator import calculate_payment_status
from ledger.transaction import AuditAction, TransactionCoordinator, TransactionScope
from models import (
    InitialPayment, PaymentCreate, ProcurementCreate, ProcurementItem,
    ProcurementStatus, ProcurementUpdate
)
from payment_service import PaymentService

logger = logging.getLogger(__name__)

RECEIVED = ProcurementStatus.RECEIVED.value


def compute_procurement_totals(items: List[ProcurementItem], gst_percentage: Any) -> Dict[str, Any]:
    if not items:
        raise ValidationError("A procurement needs at least one item")

    priced = []
    original_price = ZERO
    for item in items:
        quantity = validate_positive(item.quantity, "quantity")
        unit_price = validate_non_negative(item.unit_price, "unit_price")
        amount = round_financial(quantity * unit_price)
        original_price += amount
        priced.append({
            "item_id": parse_object_id(item.item_id, "InventoryItem"),
            "quantity": quantity,
            "unit_price": unit_price,
            "amount": amount,
        })

    gst_percentage = validate_non_negative(gst_percentage, "gst_percentage")
    if gst_percentage > Decimal("100"):
        raise ValidationError(f"GST percentage cannot exceed 100: {gst_percentage}")
    gst_amount = round_financial(calculate_percentage(original_price, gst_percentage))

    return {
        "items": priced,
        "original_price": round_financial(original_price),
        "gst_percentage": gst_percentage,
        "gst_amount": gst_amount,
        "grand_total": round_financial(original_price + gst_amount),
    }


def _stored_totals(totals: Dict[str, Any]) -> Dict[str, Any]:
    stored = {k: to_decimal128(v) for k, v in totals.items() if k != "items"}
    stored["items"] = [
        {
            "item_id": i["item_id"],
            "quantity": to_decimal128(i["quantity"]),
            "unit_price": to_decimal128(i["unit_price"]),
            "amount": to_decimal128(i["amount"]),
        }
        for i in totals["items"]
    ]
    return stored


def _target(procurement_type: str, procurement_id: str) -> ProcurementTarget:
    procurement_collection(procurement_type)
    return ProcurementTarget(procurement_id=procurement_id, procurement_type=procurement_type)


def _receipt_lines(procurement_type: str, items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [stock_line(i["item_id"], procurement_type, i["quantity"], i["unit_price"]) for i in items]


class ProcurementService:

    def __init__(
        self,
        transactions: TransactionCoordinator,
        ledger: PaymentLedger,
        aggregator: BalanceAggregator,
        payments: PaymentService,
        inventory: InventoryService
    ):
        self.transactions = transactions
        self.ledger = ledger
        self.aggregator = aggregator
        self.payments = payments
        self.inventory = inventory

    async def create_procurement(
        self,
        procurement_type: str,
        data: ProcurementCreate,
        initial_payment: Optional[InitialPayment] = None
    ) -> Dict[str, Any]:
        """Create a procurement; a procurement created as received adds stock immediately"""

        async def mutation(scope: TransactionScope):
            collection = procurement_collection(procurement_type)
            vendor = VendorParty(vendor_id=data.vendor_id)
            await self.aggregator.ensure_party(scope, vendor)

            totals = compute_procurement_totals(data.items, data.gst_percentage)
            status = calculate_payment_status(totals["grand_total"], ZERO)
            now = datetime.utcnow()
            received_date = data.received_date
            if data.status == ProcurementStatus.RECEIVED and received_date is None:
                received_date = now

            doc = {
                "vendor_id": parse_object_id(data.vendor_id, "Vendor"),
                "status": data.status.value,
                "order_date": data.order_date or now,
                "received_date": received_date,
                "invoice_number": data.invoice_number,
                "notes": data.notes,
                **_stored_totals(totals),
                **status.to_document(),
                "version": 0,
                "created_at": now,
                "updated_at": now,
            }
            result = await scope.db[collection].insert_one(doc, session=scope.session)
            doc["_id"] = result.inserted_id
            target = ProcurementTarget(procurement_id=str(result.inserted_id), procurement_type=procurement_type)

            if data.status == ProcurementStatus.RECEIVED:
                await self.inventory.receive(scope, _receipt_lines(procurement_type, totals["items"]), received_date)

            await self.aggregator.adjust_party(scope, vendor, contribution(doc, status))

            if initial_payment is not None and to_decimal(initial_payment.amount) > ZERO:
                await self.payments.apply_create_initial(
                    scope, target, initial_payment,
                    default_notes=f"Initial payment for procurement {data.invoice_number or result.inserted_id}"
                )

            procurement = await self.aggregator.load_target(scope, target)
            scope.audit(AuditAction.CREATE, target.entity_type, procurement["_id"], new_value=dict(procurement))
            scope.invalidate(target.resource_path, vendor.resource_path)
            logger.info(
                f"[PROCUREMENT] Created {procurement_type} {procurement['_id']} "
                f"status={data.status.value} grand_total={totals['grand_total']}"
            )
            return procurement

        return await self.transactions.run(mutation, label="procurement.create")

    async def update_procurement(
        self,
        procurement_type: str,
        procurement_id: str,
        patch: ProcurementUpdate
    ) -> Dict[str, Any]:
        """
        Update items / GST / vendor / status.

        The old vendor contribution is removed and the new one added, so a
        vendor change, a price change and a (de)cancellation all reduce to the
        same two steps. Stock is only touched when the received state or the
        items of a received procurement change.
        """

        async def mutation(scope: TransactionScope):
            target = _target(procurement_type, procurement_id)
            procurement = await self.aggregator.load_target(scope, target)

            old_status = procurement.get("status")
            new_status = patch.status.value if patch.status is not None else old_status
            was_received = old_status == RECEIVED
            is_received = new_status == RECEIVED
            items_changed = patch.items is not None or patch.gst_percentage is not None

            old_vendor = VendorParty(vendor_id=str(procurement["vendor_id"]))
            new_vendor = VendorParty(vendor_id=patch.vendor_id) if patch.vendor_id else old_vendor
            if new_vendor.vendor_id != old_vendor.vendor_id:
                await self.aggregator.ensure_party(scope, new_vendor)

            # Phase 1: revert
            if was_received and (not is_received or items_changed):
                await self.inventory.reverse_receipt(scope, _receipt_lines(procurement_type, procurement["items"]))
            old_payment_status = self.aggregator.status_of(target, procurement)
            await self.aggregator.adjust_party(scope, old_vendor, -contribution(procurement, old_payment_status))

            # Phase 2: apply
            items = patch.items if patch.items is not None else [
                ProcurementItem(
                    item_id=str(i["item_id"]),
                    quantity=to_decimal(i["quantity"]),
                    unit_price=to_decimal(i["unit_price"]),
                )
                for i in procurement["items"]
            ]
            totals = compute_procurement_totals(
                items,
                patch.gst_percentage if patch.gst_percentage is not None else procurement.get("gst_percentage", 0),
            )

            total_paid = to_decimal(procurement.get("total_paid", 0))
            if totals["grand_total"] < total_paid:
                raise ValidationError(
                    f"Grand total ({to_float(totals['grand_total'])}) cannot be less than amount already paid ({to_float(total_paid)})"
                )

            extra = {
                **_stored_totals(totals),
                "vendor_id": parse_object_id(new_vendor.vendor_id, "Vendor"),
                "status": new_status,
            }
            for field in ("order_date", "received_date", "invoice_number", "notes"):
                value = getattr(patch, field)
                if value is not None:
                    extra[field] = value
            received_date = extra.get("received_date") or procurement.get("received_date")
            if is_received and not was_received and received_date is None:
                received_date = datetime.utcnow()
                extra["received_date"] = received_date

            if is_received and (not was_received or items_changed):
                await self.inventory.receive(scope, _receipt_lines(procurement_type, totals["items"]), received_date)

            payment_status = calculate_payment_status(totals["grand_total"], total_paid)
            updated = await self.aggregator.save_status(scope, target, procurement, payment_status, extra_fields=extra)
            await self.aggregator.adjust_party(scope, new_vendor, contribution(updated, payment_status))

            if new_vendor.vendor_id != old_vendor.vendor_id:
                await self.ledger.reassign_party(scope, target, new_vendor)

            if old_status != new_status:
                scope.audit(
                    AuditAction.STATUS_CHANGE, target.entity_type, procurement["_id"],
                    old_value={"status": old_status}, new_value={"status": new_status}
                )
            scope.audit(AuditAction.UPDATE, target.entity_type, procurement["_id"],
                        old_value=dict(procurement), new_value=dict(updated))
            scope.invalidate(target.resource_path, "payments", old_vendor.resource_path, new_vendor.resource_path)
            logger.info(
                f"[PROCUREMENT] Updated {procurement_type} {procurement_id}: "
                f"status {old_status} -> {new_status}, grand_total={totals['grand_total']}"
            )
            return updated

        return await self.transactions.run(mutation, label="procurement.update")

    async def update_procurement_status(
        self,
        procurement_type: str,
        procurement_id: str,
        status: ProcurementStatus,
        received_date: Optional[datetime] = None
    ) -> Dict[str, Any]:
        return await self.update_procurement(
            procurement_type,
            procurement_id,
            ProcurementUpdate(status=status, received_date=received_date)
        )

    async def delete_procurement(self, procurement_type: str, procurement_id: str) -> Dict[str, Any]:
        """Delete a procurement, its payments, and reverse stock and vendor payable"""

        async def mutation(scope: TransactionScope):
            target = _target(procurement_type, procurement_id)
            procurement = await self.aggregator.load_target(scope, target)
            vendor = VendorParty(vendor_id=str(procurement["vendor_id"]))

            if procurement.get("status") == RECEIVED:
                await self.inventory.reverse_receipt(scope, _receipt_lines(procurement_type, procurement["items"]))

            released = contribution(procurement, self.aggregator.status_of(target, procurement))
            await self.aggregator.adjust_party(scope, vendor, -released)

            payments = await self.ledger.find_for_target(scope, target)
            deleted_count = await self.ledger.delete_for_target(scope, target)
            for payment in payments:
                scope.audit(AuditAction.DELETE, "Payment", payment["_id"], old_value=dict(payment),
                            details=f"Cascade from {target.entity_type} {procurement_id}")

            result = await scope.db[target.collection].delete_one({"_id": procurement["_id"]}, session=scope.session)
            if result.deleted_count == 0:
                raise NotFoundError(target.entity_type, procurement_id)

            scope.audit(AuditAction.DELETE, target.entity_type, procurement["_id"], old_value=dict(procurement))
            scope.invalidate(target.resource_path, "payments", vendor.resource_path)
            logger.info(
                f"[PROCUREMENT] Deleted {procurement_type} {procurement_id}: "
                f"payments={deleted_count}, vendor payable released={released}"
            )
            return {
                "procurement_id": procurement_id,
                "payments_deleted": deleted_count,
                "released_balance": to_float(released),
            }

        return await self.transactions.run(mutation, label="procurement.delete")

    async def add_payment(self, procurement_type: str, procurement_id: str, payment: InitialPayment) -> Dict[str, Any]:
        return await self.payments.create_payment(PaymentCreate(
            target=_target(procurement_type, procurement_id),
            amount=payment.amount,
            payment_method=payment.payment_method,
            payment_date=payment.payment_date,
            notes=payment.notes,
            reference_number=payment.reference_number,
            tranche_number=payment.tranche_number,
            total_tranches=payment.total_tranches,
        ))
