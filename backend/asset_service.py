"""
Asset Service

Fixed assets bought (optionally) from a vendor. An asset with a vendor adds
its remaining purchase price to that vendor's outstanding payable; the
asset's payment_id always points at its most recent payment.
"""

from datetime import datetime
from typing import Any, Dict, Optional
import logging

from ledger.balance_aggregator import BalanceAggregator, contribution
from ledger.errors import NotFoundError, ValidationError
from ledger.ledger_store import PaymentLedger
from ledger.precision import ZERO, round_financial, to_decimal, to_decimal128, to_float, validate_positive
from ledger.references import AssetTarget, VendorParty, owner_party, parse_object_id
from ledger.status_calculator import calculate_payment_status
from ledger.transaction import AuditAction, TransactionCoordinator, TransactionScope
from models import AssetCreate, AssetUpdate, InitialPayment
from payment_service import PaymentService

logger = logging.getLogger(__name__)

DETAIL_FIELDS = ("name", "category", "purchase_date", "location", "notes")


class AssetService:

    def __init__(
        self,
        transactions: TransactionCoordinator,
        ledger: PaymentLedger,
        aggregator: BalanceAggregator,
        payments: PaymentService
    ):
        self.transactions = transactions
        self.ledger = ledger
        self.aggregator = aggregator
        self.payments = payments

    async def create_asset(self, data: AssetCreate, initial_payment: Optional[InitialPayment] = None) -> Dict[str, Any]:

        async def mutation(scope: TransactionScope):
            purchase_price = round_financial(validate_positive(data.purchase_price, "purchase_price"))
            vendor = VendorParty(vendor_id=data.vendor_id) if data.vendor_id else None
            if vendor is not None:
                await self.aggregator.ensure_party(scope, vendor)

            status = calculate_payment_status(purchase_price, ZERO)
            now = datetime.utcnow()
            doc = {
                "name": data.name,
                "category": data.category,
                "purchase_date": data.purchase_date or now,
                "purchase_price": to_decimal128(purchase_price),
                "location": data.location,
                "status": data.status.value,
                "notes": data.notes,
                **status.to_document(),
                "version": 0,
                "created_at": now,
                "updated_at": now,
            }
            if vendor is not None:
                doc["vendor_id"] = parse_object_id(vendor.vendor_id, "Vendor")

            result = await scope.db.assets.insert_one(doc, session=scope.session)
            doc["_id"] = result.inserted_id
            target = AssetTarget(asset_id=str(result.inserted_id))

            await self.aggregator.adjust_party(scope, vendor, contribution(doc, status))

            if initial_payment is not None and to_decimal(initial_payment.amount) > ZERO:
                await self.payments.apply_create_initial(
                    scope, target, initial_payment,
                    default_notes=f"Initial payment for asset: {data.name}"
                )

            asset = await self.aggregator.load_target(scope, target)
            scope.audit(AuditAction.CREATE, "Asset", asset["_id"], new_value=dict(asset))
            scope.invalidate(target.resource_path, *([vendor.resource_path] if vendor else []))
            logger.info(f"[ASSET] Created {asset['_id']} '{data.name}' purchase_price={purchase_price}")
            return asset

        return await self.transactions.run(mutation, label="asset.create")

    async def update_asset(self, asset_id: str, patch: AssetUpdate) -> Dict[str, Any]:
        """
        Update an asset. Changing the vendor (or detaching it with
        clear_vendor) moves the remaining amount to the new vendor and
        re-points the asset's payments.
        """

        async def mutation(scope: TransactionScope):
            target = AssetTarget(asset_id=asset_id)
            asset = await self.aggregator.load_target(scope, target)

            old_vendor = owner_party(target, asset)
            if patch.clear_vendor:
                new_vendor = None
            elif patch.vendor_id:
                new_vendor = VendorParty(vendor_id=patch.vendor_id)
                await self.aggregator.ensure_party(scope, new_vendor)
            else:
                new_vendor = old_vendor

            purchase_price = round_financial(
                validate_positive(patch.purchase_price, "purchase_price")
                if patch.purchase_price is not None
                else to_decimal(asset["purchase_price"])
            )
            total_paid = to_decimal(asset.get("total_paid", 0))
            if purchase_price < total_paid:
                raise ValidationError(
                    f"Purchase price ({to_float(purchase_price)}) cannot be less than amount already paid ({to_float(total_paid)})"
                )

            old_status = self.aggregator.status_of(target, asset)
            await self.aggregator.adjust_party(scope, old_vendor, -contribution(asset, old_status))

            new_status = calculate_payment_status(purchase_price, total_paid)
            extra: Dict[str, Any] = {"purchase_price": to_decimal128(purchase_price)}
            for field in DETAIL_FIELDS:
                value = getattr(patch, field)
                if value is not None:
                    extra[field] = value
            if patch.status is not None:
                extra["status"] = patch.status.value
            if new_vendor is not None:
                extra["vendor_id"] = parse_object_id(new_vendor.vendor_id, "Vendor")
            else:
                extra["vendor_id"] = None

            updated = await self.aggregator.save_status(scope, target, asset, new_status, extra_fields=extra)
            await self.aggregator.adjust_party(scope, new_vendor, contribution(updated, new_status))

            vendor_changed = (old_vendor.vendor_id if old_vendor else None) != (new_vendor.vendor_id if new_vendor else None)
            if vendor_changed:
                await self.ledger.reassign_party(scope, target, new_vendor)

            scope.audit(AuditAction.UPDATE, "Asset", asset["_id"], old_value=dict(asset), new_value=dict(updated))
            scope.invalidate(target.resource_path, "payments",
                             *[v.resource_path for v in (old_vendor, new_vendor) if v is not None])
            logger.info(
                f"[ASSET] Updated {asset_id}: purchase_price={purchase_price} "
                f"status={new_status.payment_status.value} vendor_changed={vendor_changed}"
            )
            return updated

        return await self.transactions.run(mutation, label="asset.update")

    async def delete_asset(self, asset_id: str) -> Dict[str, Any]:

        async def mutation(scope: TransactionScope):
            target = AssetTarget(asset_id=asset_id)
            asset = await self.aggregator.load_target(scope, target)
            vendor = owner_party(target, asset)

            released = contribution(asset, self.aggregator.status_of(target, asset))
            await self.aggregator.adjust_party(scope, vendor, -released)

            payments = await self.ledger.find_for_target(scope, target)
            deleted_count = await self.ledger.delete_for_target(scope, target)
            for payment in payments:
                scope.audit(AuditAction.DELETE, "Payment", payment["_id"], old_value=dict(payment),
                            details=f"Cascade from asset {asset_id}")

            result = await scope.db.assets.delete_one({"_id": asset["_id"]}, session=scope.session)
            if result.deleted_count == 0:
                raise NotFoundError("Asset", asset_id)

            scope.audit(AuditAction.DELETE, "Asset", asset["_id"], old_value=dict(asset))
            scope.invalidate(target.resource_path, "payments", *([vendor.resource_path] if vendor else []))
            logger.info(f"[ASSET] Deleted {asset_id}: payments={deleted_count}, vendor payable released={released}")
            return {
                "asset_id": asset_id,
                "payments_deleted": deleted_count,
                "released_balance": to_float(released),
            }

        return await self.transactions.run(mutation, label="asset.delete")
