"""
Sale Service

Sales reserve stock, add their remaining amount to the client's
outstanding balance and collect payments. Every entry point below is one
transaction; stock, client balance, payments and the sale itself change
together or not at all.

LOCKED FORMULAS:
- amount      = quantity * unit_price (per item)
- subtotal    = SUM(amount)
- gst_amount  = (subtotal - discount) * gst_percentage / 100
- grand_total = subtotal - discount + gst_amount
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
from ledger.references import ClientParty, SaleTarget, parse_object_id
from ledger.status_calculator import calculate_payment_status
from ledger.transaction import AuditAction, TransactionCoordinator, TransactionScope
from models import InitialPayment, PaymentCreate, SaleCreate, SaleItem, SaleStatus, SaleUpdate
from payment_service import PaymentService

logger = logging.getLogger(__name__)


def compute_sale_totals(items: List[SaleItem], discount: Any, gst_percentage: Any) -> Dict[str, Any]:
    """Price a sale. Returns Decimal values rounded at the boundary."""
    if not items:
        raise ValidationError("A sale needs at least one item")

    priced = []
    subtotal = ZERO
    for item in items:
        quantity = validate_positive(item.quantity, "quantity")
        unit_price = validate_non_negative(item.unit_price, "unit_price")
        amount = round_financial(quantity * unit_price)
        subtotal += amount
        priced.append({
            "item_id": parse_object_id(item.item_id, "InventoryItem"),
            "item_type": item.item_type.value,
            "quantity": quantity,
            "unit_price": unit_price,
            "amount": amount,
        })

    discount = round_financial(validate_non_negative(discount, "discount"))
    if discount > subtotal:
        raise ValidationError(
            f"Discount ({to_float(discount)}) cannot exceed subtotal ({to_float(subtotal)})"
        )
    gst_percentage = validate_non_negative(gst_percentage, "gst_percentage")
    if gst_percentage > Decimal("100"):
        raise ValidationError(f"GST percentage cannot exceed 100: {gst_percentage}")

    gst_amount = round_financial(calculate_percentage(subtotal - discount, gst_percentage))
    return {
        "items": priced,
        "subtotal": round_financial(subtotal),
        "discount": discount,
        "gst_percentage": gst_percentage,
        "gst_amount": gst_amount,
        "grand_total": round_financial(subtotal - discount + gst_amount),
    }


def _stored_totals(totals: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "items": [
            {
                "item_id": i["item_id"],
                "item_type": i["item_type"],
                "quantity": to_decimal128(i["quantity"]),
                "unit_price": to_decimal128(i["unit_price"]),
                "amount": to_decimal128(i["amount"]),
            }
            for i in totals["items"]
        ],
        "subtotal": to_decimal128(totals["subtotal"]),
        "discount": to_decimal128(totals["discount"]),
        "gst_percentage": to_decimal128(totals["gst_percentage"]),
        "gst_amount": to_decimal128(totals["gst_amount"]),
        "grand_total": to_decimal128(totals["grand_total"]),
    }


def _stock_lines(items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [stock_line(i["item_id"], i["item_type"], i["quantity"]) for i in items]


class SaleService:

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

    async def create_sale(self, data: SaleCreate, initial_payment: Optional[InitialPayment] = None) -> Dict[str, Any]:
        """Create a new sale with optional initial payment"""

        async def mutation(scope: TransactionScope):
            existing = await scope.db.sales.find_one({"invoice_number": data.invoice_number}, session=scope.session)
            if existing:
                raise ValidationError(f"Invoice number {data.invoice_number} already exists")

            client = ClientParty(client_id=data.client_id)
            await self.aggregator.ensure_party(scope, client)

            totals = compute_sale_totals(data.items, data.discount, data.gst_percentage)
            await self.inventory.reserve(scope, _stock_lines(totals["items"]))

            status = calculate_payment_status(totals["grand_total"], ZERO)
            now = datetime.utcnow()
            sale_doc = {
                "client_id": parse_object_id(data.client_id, "Client"),
                "invoice_number": data.invoice_number,
                "sale_date": data.sale_date or now,
                "delivery_date": data.delivery_date,
                "notes": data.notes,
                **_stored_totals(totals),
                **status.to_document(),
                "status": SaleStatus.PENDING.value,
                "version": 0,
                "created_at": now,
                "updated_at": now,
            }
            result = await scope.db.sales.insert_one(sale_doc, session=scope.session)
            sale_doc["_id"] = result.inserted_id
            target = SaleTarget(sale_id=str(result.inserted_id))

            await self.aggregator.adjust_party(scope, client, contribution(sale_doc, status))

            if initial_payment is not None and to_decimal(initial_payment.amount) > ZERO:
                await self.payments.apply_create_initial(
                    scope, target, initial_payment,
                    default_notes=f"Initial payment for sale: {data.invoice_number}"
                )

            sale = await self.aggregator.load_target(scope, target)
            scope.audit(
                AuditAction.CREATE, "Sale", sale["_id"],
                new_value=dict(sale),
                details=f"Sale created with invoice {data.invoice_number}"
            )
            scope.invalidate("sales", client.resource_path)
            logger.info(f"[SALE] Created {sale['_id']} invoice={data.invoice_number} grand_total={totals['grand_total']}")
            return sale

        return await self.transactions.run(mutation, label="sale.create")

    async def update_sale(self, sale_id: str, patch: SaleUpdate) -> Dict[str, Any]:
        """
        Update an existing sale.
        Old stock and old client contribution are reverted first, then the
        new items and (possibly new) client are applied.
        """

        async def mutation(scope: TransactionScope):
            target = SaleTarget(sale_id=sale_id)
            sale = await self.aggregator.load_target(scope, target)
            cancelled = sale.get("status") == SaleStatus.CANCELLED.value

            old_client = ClientParty(client_id=str(sale["client_id"]))
            old_status = self.aggregator.status_of(target, sale)

            # Phase 1: revert
            if not cancelled:
                await self.inventory.release(scope, _stock_lines(sale["items"]))
            await self.aggregator.adjust_party(scope, old_client, -contribution(sale, old_status))

            # Phase 2: apply
            items = patch.items if patch.items is not None else [
                SaleItem(
                    item_id=str(i["item_id"]),
                    item_type=i["item_type"],
                    quantity=to_decimal(i["quantity"]),
                    unit_price=to_decimal(i["unit_price"]),
                )
                for i in sale["items"]
            ]
            totals = compute_sale_totals(
                items,
                patch.discount if patch.discount is not None else sale.get("discount", 0),
                patch.gst_percentage if patch.gst_percentage is not None else sale.get("gst_percentage", 0),
            )

            total_paid = to_decimal(sale.get("total_paid", 0))
            if totals["grand_total"] < total_paid:
                raise ValidationError(
                    f"Grand total ({to_float(totals['grand_total'])}) cannot be less than amount already paid ({to_float(total_paid)})"
                )

            if not cancelled:
                await self.inventory.reserve(scope, _stock_lines(totals["items"]))

            new_client = ClientParty(client_id=patch.client_id) if patch.client_id else old_client
            if patch.client_id:
                await self.aggregator.ensure_party(scope, new_client)

            new_status = calculate_payment_status(totals["grand_total"], total_paid)
            extra = {**_stored_totals(totals), "client_id": parse_object_id(new_client.client_id, "Client")}
            for field in ("sale_date", "delivery_date", "notes"):
                value = getattr(patch, field)
                if value is not None:
                    extra[field] = value
            updated = await self.aggregator.save_status(scope, target, sale, new_status, extra_fields=extra)

            await self.aggregator.adjust_party(scope, new_client, contribution(updated, new_status))
            if new_client.client_id != old_client.client_id:
                await self.ledger.reassign_party(scope, target, new_client)

            scope.audit(AuditAction.UPDATE, "Sale", sale["_id"], old_value=dict(sale), new_value=dict(updated))
            scope.invalidate("sales", "payments", old_client.resource_path, new_client.resource_path)
            logger.info(f"[SALE] Updated {sale_id} grand_total={totals['grand_total']} status={new_status.payment_status.value}")
            return updated

        return await self.transactions.run(mutation, label="sale.update")

    async def delete_sale(self, sale_id: str) -> Dict[str, Any]:
        """Delete a sale, its payments, and reverse stock and client balance"""

        async def mutation(scope: TransactionScope):
            target = SaleTarget(sale_id=sale_id)
            sale = await self.aggregator.load_target(scope, target)
            client = ClientParty(client_id=str(sale["client_id"]))

            if sale.get("status") != SaleStatus.CANCELLED.value:
                await self.inventory.release(scope, _stock_lines(sale["items"]))

            # Only the remaining amount is owed by the client at this point
            released = contribution(sale, self.aggregator.status_of(target, sale))
            await self.aggregator.adjust_party(scope, client, -released)

            payments = await self.ledger.find_for_target(scope, target)
            deleted_count = await self.ledger.delete_for_target(scope, target)
            for payment in payments:
                scope.audit(AuditAction.DELETE, "Payment", payment["_id"], old_value=dict(payment),
                            details=f"Cascade from sale {sale_id}")

            result = await scope.db.sales.delete_one({"_id": sale["_id"]}, session=scope.session)
            if result.deleted_count == 0:
                raise NotFoundError("Sale", sale_id)

            scope.audit(AuditAction.DELETE, "Sale", sale["_id"], old_value=dict(sale))
            scope.invalidate("sales", "payments", client.resource_path)
            logger.info(f"[SALE] Deleted {sale_id}: payments={deleted_count}, client balance released={released}")
            return {
                "sale_id": sale_id,
                "payments_deleted": deleted_count,
                "released_balance": to_float(released),
            }

        return await self.transactions.run(mutation, label="sale.delete")

    async def update_sale_status(self, sale_id: str, new_status: SaleStatus) -> Dict[str, Any]:
        """Cancel / reactivate / complete a sale with stock and balance side effects"""

        async def mutation(scope: TransactionScope):
            target = SaleTarget(sale_id=sale_id)
            sale = await self.aggregator.load_target(scope, target)
            old_status = sale.get("status")
            if old_status == new_status.value:
                return sale

            cancelled = SaleStatus.CANCELLED.value
            if new_status.value == cancelled:
                await self.inventory.release(scope, _stock_lines(sale["items"]))
            elif old_status == cancelled:
                await self.inventory.reserve(scope, _stock_lines(sale["items"]))

            status = self.aggregator.status_of(target, sale)
            updated = await self.aggregator.save_status(
                scope, target, sale, status, extra_fields={"status": new_status.value}
            )

            client = ClientParty(client_id=str(sale["client_id"]))
            await self.aggregator.adjust_party(
                scope, client, contribution(updated, status) - contribution(sale, status)
            )

            scope.audit(
                AuditAction.STATUS_CHANGE, "Sale", sale["_id"],
                old_value={"status": old_status}, new_value={"status": new_status.value}
            )
            scope.invalidate("sales", client.resource_path)
            logger.info(f"[SALE] Status {sale_id}: {old_status} -> {new_status.value}")
            return updated

        return await self.transactions.run(mutation, label="sale.status")

    async def add_payment(self, sale_id: str, payment: InitialPayment) -> Dict[str, Any]:
        """Record a payment (optionally one tranche of several) against a sale"""
        return await self.payments.create_payment(PaymentCreate(
            target=SaleTarget(sale_id=sale_id),
            amount=payment.amount,
            payment_method=payment.payment_method,
            payment_date=payment.payment_date,
            notes=payment.notes,
            reference_number=payment.reference_number,
            tranche_number=payment.tranche_number,
            total_tranches=payment.total_tranches,
        ))
