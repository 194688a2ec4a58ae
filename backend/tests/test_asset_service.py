"""
Asset service tests
"""
import pytest
from decimal import Decimal

from factories import balance, insert_vendor
from ledger.errors import ValidationError
from models import AssetCreate, AssetUpdate, InitialPayment


class TestAssetService:
    """Vendor payable and payment links follow the asset"""

    @pytest.mark.asyncio
    async def test_create_without_vendor(self, services, db):
        asset = await services.assets.create_asset(
            AssetCreate(name="Laptop", purchase_price=Decimal("1200")),
            InitialPayment(amount=Decimal("1200"))
        )

        assert asset["payment_status"] == "fully_paid"
        assert "vendor_id" not in asset
        payment = db.payments.all()[0]
        assert "party_id" not in payment
        assert asset["payment_id"] == payment["_id"]

    @pytest.mark.asyncio
    async def test_initial_payment_above_price_rejected(self, services, db):
        vendor = insert_vendor(db)
        with pytest.raises(ValidationError):
            await services.assets.create_asset(
                AssetCreate(name="Forklift", purchase_price=Decimal("500"), vendor_id=str(vendor["_id"])),
                InitialPayment(amount=Decimal("600"))
            )
        assert db.assets.all() == []
        assert balance(db, "vendors", vendor["_id"]) == Decimal("0")

    @pytest.mark.asyncio
    async def test_vendor_reassignment(self, services, db):
        vendor_a = insert_vendor(db, name="Vendor A")
        vendor_b = insert_vendor(db, name="Vendor B")
        asset = await services.assets.create_asset(
            AssetCreate(name="Generator", purchase_price=Decimal("10000"), vendor_id=str(vendor_a["_id"])),
            InitialPayment(amount=Decimal("4000"))
        )
        assert balance(db, "vendors", vendor_a["_id"]) == Decimal("6000")

        updated = await services.assets.update_asset(
            str(asset["_id"]), AssetUpdate(vendor_id=str(vendor_b["_id"]), purchase_price=Decimal("12000"))
        )

        assert updated["vendor_id"] == vendor_b["_id"]
        assert updated["remaining_amount"].to_decimal() == Decimal("8000")
        assert balance(db, "vendors", vendor_a["_id"]) == Decimal("0")
        assert balance(db, "vendors", vendor_b["_id"]) == Decimal("8000")
        assert db.payments.all()[0]["party_id"] == vendor_b["_id"]

    @pytest.mark.asyncio
    async def test_clear_vendor_detaches_payments(self, services, db):
        vendor = insert_vendor(db)
        asset = await services.assets.create_asset(
            AssetCreate(name="Printer", purchase_price=Decimal("300"), vendor_id=str(vendor["_id"])),
            InitialPayment(amount=Decimal("100"))
        )

        await services.assets.update_asset(str(asset["_id"]), AssetUpdate(clear_vendor=True))

        assert balance(db, "vendors", vendor["_id"]) == Decimal("0")
        payment = db.payments.all()[0]
        assert "party_id" not in payment
        assert "party_type" not in payment

    @pytest.mark.asyncio
    async def test_price_below_amount_paid_rejected(self, services, db):
        asset = await services.assets.create_asset(
            AssetCreate(name="Drill", purchase_price=Decimal("900")),
            InitialPayment(amount=Decimal("500"))
        )
        with pytest.raises(ValidationError):
            await services.assets.update_asset(str(asset["_id"]), AssetUpdate(purchase_price=Decimal("499.99")))

    @pytest.mark.asyncio
    async def test_delete_asset_releases_vendor_payable(self, services, db):
        vendor = insert_vendor(db, outstanding_payable=250)
        asset = await services.assets.create_asset(
            AssetCreate(name="Compressor", purchase_price=Decimal("2000"), vendor_id=str(vendor["_id"])),
            InitialPayment(amount=Decimal("500"))
        )
        assert balance(db, "vendors", vendor["_id"]) == Decimal("1750")

        result = await services.assets.delete_asset(str(asset["_id"]))

        assert result["payments_deleted"] == 1
        assert balance(db, "vendors", vendor["_id"]) == Decimal("250")
        assert db.assets.all() == []
        assert db.payments.all() == []
