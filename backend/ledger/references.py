"""
Target and party references.

A Payment points at (at most) one target and at most one party. Both are
modelled as tagged variants discriminated on `kind`; every variant knows
where its document lives and how payments reference it, so callers never
resolve collection names from loose type strings.
"""

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel, Field
from typing import Annotated, Any, Dict, Literal, Optional, Union

from ledger.errors import NotFoundError, ValidationError


def parse_object_id(value: Any, entity_type: str) -> ObjectId:
    """Parse an id; a malformed id can never match a document, so it is reported as not found."""
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        raise NotFoundError(entity_type, value)


# =============================================================================
# PARTIES
# =============================================================================

class ClientParty(BaseModel):
    kind: Literal["client"] = "client"
    client_id: str

    @property
    def party_id(self) -> str:
        return self.client_id

    @property
    def collection(self) -> str:
        return "clients"

    @property
    def balance_field(self) -> str:
        return "outstanding_balance"

    @property
    def entity_type(self) -> str:
        return "Client"

    @property
    def resource_path(self) -> str:
        return f"clients/{self.client_id}"


class VendorParty(BaseModel):
    kind: Literal["vendor"] = "vendor"
    vendor_id: str

    @property
    def party_id(self) -> str:
        return self.vendor_id

    @property
    def collection(self) -> str:
        return "vendors"

    @property
    def balance_field(self) -> str:
        return "outstanding_payable"

    @property
    def entity_type(self) -> str:
        return "Vendor"

    @property
    def resource_path(self) -> str:
        return f"vendors/{self.vendor_id}"


PartyRef = Annotated[Union[ClientParty, VendorParty], Field(discriminator="kind")]


def make_party(party_type: str, party_id: Any) -> Union[ClientParty, VendorParty]:
    if party_type == "client":
        return ClientParty(client_id=str(party_id))
    if party_type == "vendor":
        return VendorParty(vendor_id=str(party_id))
    raise ValidationError(f"Unknown party type: {party_type}")


# =============================================================================
# TARGETS
# =============================================================================

class SaleTarget(BaseModel):
    kind: Literal["sale"] = "sale"
    sale_id: str

    @property
    def target_id(self) -> str:
        return self.sale_id

    @property
    def collection(self) -> str:
        return "sales"

    @property
    def entity_type(self) -> str:
        return "Sale"

    @property
    def principal_field(self) -> Optional[str]:
        return "grand_total"

    @property
    def transaction_type(self) -> str:
        return "sale"

    @property
    def account_type(self) -> str:
        return "receivable"

    @property
    def resource_path(self) -> str:
        return "sales"

    def payment_fields(self) -> Dict[str, Any]:
        return {"sale_id": parse_object_id(self.sale_id, self.entity_type)}


class AssetTarget(BaseModel):
    kind: Literal["asset"] = "asset"
    asset_id: str

    @property
    def target_id(self) -> str:
        return self.asset_id

    @property
    def collection(self) -> str:
        return "assets"

    @property
    def entity_type(self) -> str:
        return "Asset"

    @property
    def principal_field(self) -> Optional[str]:
        return "purchase_price"

    @property
    def transaction_type(self) -> str:
        return "purchase"

    @property
    def account_type(self) -> str:
        return "payable"

    @property
    def resource_path(self) -> str:
        return "assets"

    def payment_fields(self) -> Dict[str, Any]:
        return {"asset_id": parse_object_id(self.asset_id, self.entity_type)}


class ProcurementTarget(BaseModel):
    kind: Literal["procurement"] = "procurement"
    procurement_id: str
    procurement_type: Literal["raw_material", "trading_good"]

    @property
    def target_id(self) -> str:
        return self.procurement_id

    @property
    def collection(self) -> str:
        return procurement_collection(self.procurement_type)

    @property
    def entity_type(self) -> str:
        return "RawMaterialProcurement" if self.procurement_type == "raw_material" else "TradingGoodsProcurement"

    @property
    def principal_field(self) -> Optional[str]:
        return "grand_total"

    @property
    def transaction_type(self) -> str:
        return "purchase"

    @property
    def account_type(self) -> str:
        return "payable"

    @property
    def resource_path(self) -> str:
        return f"procurement/{self.procurement_type}"

    def payment_fields(self) -> Dict[str, Any]:
        return {
            "procurement_id": parse_object_id(self.procurement_id, self.entity_type),
            "procurement_type": self.procurement_type,
        }


class ExpenseTarget(BaseModel):
    """Expenses are paid against but carry no derived balance fields."""
    kind: Literal["expense"] = "expense"
    expense_id: str

    @property
    def target_id(self) -> str:
        return self.expense_id

    @property
    def collection(self) -> str:
        return "expenses"

    @property
    def entity_type(self) -> str:
        return "Expense"

    @property
    def principal_field(self) -> Optional[str]:
        return None

    @property
    def transaction_type(self) -> str:
        return "expense"

    @property
    def account_type(self) -> str:
        return "payable"

    @property
    def resource_path(self) -> str:
        return "expenses"

    def payment_fields(self) -> Dict[str, Any]:
        return {"expense_id": parse_object_id(self.expense_id, self.entity_type)}


TargetRef = Annotated[
    Union[SaleTarget, AssetTarget, ProcurementTarget, ExpenseTarget],
    Field(discriminator="kind")
]

AnyTarget = Union[SaleTarget, AssetTarget, ProcurementTarget, ExpenseTarget]
AnyParty = Union[ClientParty, VendorParty]

# Target fields a payment document may carry; at most one is set.
PAYMENT_TARGET_FIELDS = ("sale_id", "asset_id", "procurement_id", "expense_id")

# Balance-tracked target kinds accepted by the recalculation utility.
RECALCULABLE_TARGET_TYPES = ("sale", "asset", "raw_material_procurement", "trading_good_procurement")


def procurement_collection(procurement_type: str) -> str:
    if procurement_type == "raw_material":
        return "raw_material_procurements"
    if procurement_type == "trading_good":
        return "trading_goods_procurements"
    raise ValidationError(f"Unknown procurement type: {procurement_type}")


def make_target(target_type: str, target_id: Any) -> AnyTarget:
    """Build a balance-tracked target reference from a recalculation target type."""
    target_id = str(target_id)
    if target_type == "sale":
        return SaleTarget(sale_id=target_id)
    if target_type == "asset":
        return AssetTarget(asset_id=target_id)
    if target_type == "raw_material_procurement":
        return ProcurementTarget(procurement_id=target_id, procurement_type="raw_material")
    if target_type == "trading_good_procurement":
        return ProcurementTarget(procurement_id=target_id, procurement_type="trading_good")
    raise ValidationError(
        f"Unknown target type: {target_type}",
        details={"allowed": list(RECALCULABLE_TARGET_TYPES)}
    )


def target_from_payment(payment: Dict[str, Any]) -> Optional[AnyTarget]:
    """Read the target reference back from a stored payment document."""
    if payment.get("sale_id"):
        return SaleTarget(sale_id=str(payment["sale_id"]))
    if payment.get("asset_id"):
        return AssetTarget(asset_id=str(payment["asset_id"]))
    if payment.get("procurement_id"):
        return ProcurementTarget(
            procurement_id=str(payment["procurement_id"]),
            procurement_type=payment["procurement_type"]
        )
    if payment.get("expense_id"):
        return ExpenseTarget(expense_id=str(payment["expense_id"]))
    return None


def owner_party(target: AnyTarget, document: Dict[str, Any]) -> Optional[AnyParty]:
    """The party whose outstanding balance a target contributes to, if any."""
    if isinstance(target, SaleTarget):
        client_id = document.get("client_id")
        if not client_id:
            raise ValidationError(f"Sale {target.sale_id} has no client", details={"sale_id": target.sale_id})
        return ClientParty(client_id=str(client_id))
    if isinstance(target, (AssetTarget, ProcurementTarget)):
        vendor_id = document.get("vendor_id")
        return VendorParty(vendor_id=str(vendor_id)) if vendor_id else None
    if isinstance(target, ExpenseTarget):
        return None
    raise ValidationError(f"Unsupported target: {target!r}")


def same_party(a: Optional[AnyParty], b: Optional[AnyParty]) -> bool:
    if a is None or b is None:
        return a is None and b is None
    return a.kind == b.kind and a.party_id == b.party_id
