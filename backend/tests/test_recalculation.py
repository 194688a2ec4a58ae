"""
Recalculation utility tests: drift repair from payments (ground truth),
idempotence, batch tolerance and party balance rebuild.
"""
import pytest
from bson import Decimal128, ObjectId
from decimal import Decimal

from factories import balance, insert_client, insert_item, insert_vendor, money
from ledger.errors import NotFoundError, ValidationError
from ledger.references import AssetTarget
from models import AssetCreate, InitialPayment, PaymentCreate, SaleCreate, SaleItem


async def asset_with_payment(services, db, vendor, price="10000", paid="3000"):
    asset = await services.assets.create_asset(
        AssetCreate(name="Press", purchase_price=Decimal(price), vendor_id=str(vendor["_id"])),
        InitialPayment(amount=Decimal(paid))
    )
    return asset


def corrupt(collection, document_id, **fields):
    for document in collection.documents:
        if document["_id"] == document_id:
            document.update(fields)


class TestRecalculateTarget:

    @pytest.mark.asyncio
    async def test_repairs_drifted_target_and_party(self, services, db):
        vendor = insert_vendor(db)
        asset = await asset_with_payment(services, db, vendor)
        corrupt(db.assets, asset["_id"], total_paid=money(0), remaining_amount=money(10000), payment_status="unpaid")
        corrupt(db.vendors, vendor["_id"], outstanding_payable=money(10000))

        result = await services.recalculation.recalculate_target("asset", str(asset["_id"]))

        assert result["changed"] is True
        assert result["total_paid"] == 3000.0
        assert result["remaining_amount"] == 7000.0
        assert result["payment_status"] == "partially_paid"
        stored = db.assets.get(asset["_id"])
        assert stored["payment_status"] == "partially_paid"
        assert balance(db, "vendors", vendor["_id"]) == Decimal("7000")

    @pytest.mark.asyncio
    async def test_idempotent(self, services, db):
        vendor = insert_vendor(db)
        asset = await asset_with_payment(services, db, vendor)
        corrupt(db.assets, asset["_id"], total_paid=money(1))

        first = await services.recalculation.recalculate_target("asset", str(asset["_id"]))
        second = await services.recalculation.recalculate_target("asset", str(asset["_id"]))

        assert second["changed"] is False
        for field in ("total_paid", "remaining_amount", "payment_status"):
            assert first[field] == second[field]

    @pytest.mark.asyncio
    async def test_unknown_target_type(self, services, db):
        with pytest.raises(ValidationError):
            await services.recalculation.recalculate_target("invoice", str(ObjectId()))

    @pytest.mark.asyncio
    async def test_missing_target(self, services, db):
        with pytest.raises(NotFoundError):
            await services.recalculation.recalculate_target("sale", str(ObjectId()))


class TestRecalculateAll:

    @pytest.mark.asyncio
    async def test_counts_total_and_updated(self, services, db):
        vendor = insert_vendor(db)
        first = await asset_with_payment(services, db, vendor, paid="100")
        await asset_with_payment(services, db, vendor, paid="200")
        corrupt(db.assets, first["_id"], total_paid=money(0))

        report = await services.recalculation.recalculate_all("asset")

        assert report == {"total": 2, "updated": 2}
        assert db.assets.get(first["_id"])["total_paid"].to_decimal() == Decimal("100")

    @pytest.mark.asyncio
    async def test_individual_failures_do_not_abort_batch(self, services, db):
        vendor = insert_vendor(db)
        await asset_with_payment(services, db, vendor)
        # Drifted asset whose vendor no longer exists cannot be repaired
        orphan = db.assets.seed({
            "name": "Orphan",
            "purchase_price": money(500),
            "vendor_id": ObjectId(),
            "total_paid": money(100),
            "remaining_amount": money(400),
            "payment_status": "unpaid",
        })

        report = await services.recalculation.recalculate_all("asset")

        assert report == {"total": 2, "updated": 1}
        assert db.assets.get(orphan["_id"])["remaining_amount"].to_decimal() == Decimal("400")

    @pytest.mark.asyncio
    async def test_sale_without_client_is_skipped(self, services, db):
        client = insert_client(db)
        item = insert_item(db, current_stock=10)
        await services.sales.create_sale(SaleCreate(
            client_id=str(client["_id"]), invoice_number="INV-OK",
            items=[SaleItem(item_id=str(item["_id"]), item_type="finished_good",
                            quantity=Decimal("1"), unit_price=Decimal("100"))],
        ))
        db.sales.seed({
            "invoice_number": "INV-BROKEN",
            "grand_total": money(100),
            "total_paid": money(0),
            "remaining_amount": money(100),
            "payment_status": "unpaid",
        })

        with pytest.raises(ValidationError):
            await services.recalculation.recalculate_target("sale", str(db.sales.all()[1]["_id"]))

        report = await services.recalculation.recalculate_all("sale")

        assert report == {"total": 2, "updated": 1}

    @pytest.mark.asyncio
    async def test_unexpected_errors_do_not_abort_batch(self, services, db, monkeypatch):
        vendor = insert_vendor(db)
        first = await asset_with_payment(services, db, vendor)
        await asset_with_payment(services, db, vendor)
        recalculate_target = services.recalculation.recalculate_target

        async def flaky(target_type, target_id):
            if target_id == first["_id"]:
                raise KeyError("purchase_price")
            return await recalculate_target(target_type, target_id)

        monkeypatch.setattr(services.recalculation, "recalculate_target", flaky)

        report = await services.recalculation.recalculate_all("asset")

        assert report == {"total": 2, "updated": 1}

    @pytest.mark.asyncio
    async def test_party_batch_tolerates_unexpected_errors(self, services, db, monkeypatch):
        broken = insert_vendor(db, outstanding_payable=10)
        insert_vendor(db, outstanding_payable=20)
        recalculate_party = services.recalculation.recalculate_party

        async def flaky(party_type, party_id):
            if party_id == broken["_id"]:
                raise RuntimeError("cursor closed")
            return await recalculate_party(party_type, party_id)

        monkeypatch.setattr(services.recalculation, "recalculate_party", flaky)

        report = await services.recalculation.recalculate_all_parties("vendor")

        assert report == {"total": 2, "updated": 1}
        assert balance(db, "vendors", broken["_id"]) == Decimal("10")


class TestRecalculateParty:

    @pytest.mark.asyncio
    async def test_client_balance_rebuilt_from_live_sales(self, services, db):
        client = insert_client(db)
        item = insert_item(db, current_stock=100)
        for invoice, quantity in (("INV-1", 2), ("INV-2", 3)):
            await services.sales.create_sale(SaleCreate(
                client_id=str(client["_id"]), invoice_number=invoice,
                items=[SaleItem(item_id=str(item["_id"]), item_type="finished_good",
                                quantity=Decimal(quantity), unit_price=Decimal("100"))],
            ))
        corrupt(db.clients, client["_id"], outstanding_balance=Decimal128("12345.00"))

        result = await services.recalculation.recalculate_party("client", str(client["_id"]))

        assert result["changed"] is True
        assert result["outstanding_balance"] == 500.0
        assert balance(db, "clients", client["_id"]) == Decimal("500")

    @pytest.mark.asyncio
    async def test_all_vendors(self, services, db):
        vendor_a = insert_vendor(db, outstanding_payable=999)
        vendor_b = insert_vendor(db)
        await asset_with_payment(services, db, vendor_b, price="800", paid="300")

        report = await services.recalculation.recalculate_all_parties("vendor")

        assert report == {"total": 2, "updated": 2}
        assert balance(db, "vendors", vendor_a["_id"]) == Decimal("0")
        assert balance(db, "vendors", vendor_b["_id"]) == Decimal("500")

    @pytest.mark.asyncio
    async def test_payment_rows_are_ground_truth(self, services, db):
        vendor = insert_vendor(db)
        asset = await asset_with_payment(services, db, vendor, paid="1000")
        await services.payments.create_payment(PaymentCreate(
            target=AssetTarget(asset_id=str(asset["_id"])), amount=Decimal("500")
        ))
        db.payments.documents.pop()

        result = await services.recalculation.recalculate_target("asset", str(asset["_id"]))

        assert result["total_paid"] == 1000.0
        assert balance(db, "vendors", vendor["_id"]) == Decimal("9000")
