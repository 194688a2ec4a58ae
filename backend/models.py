from pydantic import BaseModel, Field
from typing import List, Optional
from datetime import datetime
from decimal import Decimal
from enum import Enum

from ledger.references import PartyRef, TargetRef

# ============================================
# ENUMS
# ============================================
class PaymentMethod(str, Enum):
    CASH = "cash"
    BANK_TRANSFER = "bank_transfer"
    CHEQUE = "cheque"
    CARD = "card"
    UPI = "upi"
    OTHER = "other"

class TransactionType(str, Enum):
    SALE = "sale"
    PURCHASE = "purchase"
    EXPENSE = "expense"

class AccountType(str, Enum):
    RECEIVABLE = "receivable"
    PAYABLE = "payable"

class SaleStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

class ProcurementStatus(str, Enum):
    ORDERED = "ordered"
    RECEIVED = "received"
    CANCELLED = "cancelled"

class ProcurementType(str, Enum):
    RAW_MATERIAL = "raw_material"
    TRADING_GOOD = "trading_good"

class InventoryItemType(str, Enum):
    RAW_MATERIAL = "raw_material"
    TRADING_GOOD = "trading_good"
    FINISHED_GOOD = "finished_good"

class AssetStatus(str, Enum):
    ACTIVE = "active"
    REPAIR = "repair"
    RETIRED = "retired"
    DISPOSED = "disposed"

class LoanAccountStatus(str, Enum):
    ACTIVE = "active"
    CLOSED = "closed"

class ExpenseCategory(str, Enum):
    RENT = "rent"
    UTILITIES = "utilities"
    SALARIES = "salaries"
    TRANSPORTATION = "transportation"
    OFFICE_SUPPLIES = "office_supplies"
    MARKETING = "marketing"
    MAINTENANCE = "maintenance"
    PROFESSIONAL_FEES = "professional_fees"
    INSURANCE = "insurance"
    TAXES = "taxes"
    INTEREST = "interest"
    MISCELLANEOUS = "miscellaneous"

# ============================================
# PAYMENT MODELS
# ============================================
class PaymentCreate(BaseModel):
    target: TargetRef
    party: Optional[PartyRef] = None  # Derived from the target when omitted
    amount: Decimal
    payment_method: PaymentMethod = PaymentMethod.CASH
    payment_date: Optional[datetime] = None
    notes: Optional[str] = Field(default=None, max_length=500)
    reference_number: Optional[str] = None
    tranche_number: Optional[int] = Field(default=None, ge=1)
    total_tranches: Optional[int] = Field(default=None, ge=1)

class PaymentUpdate(BaseModel):
    target: Optional[TargetRef] = None
    amount: Optional[Decimal] = None
    payment_method: Optional[PaymentMethod] = None
    payment_date: Optional[datetime] = None
    notes: Optional[str] = Field(default=None, max_length=500)
    reference_number: Optional[str] = None
    tranche_number: Optional[int] = Field(default=None, ge=1)
    total_tranches: Optional[int] = Field(default=None, ge=1)

class InitialPayment(BaseModel):
    amount: Decimal
    payment_method: PaymentMethod = PaymentMethod.CASH
    payment_date: Optional[datetime] = None
    notes: Optional[str] = Field(default=None, max_length=500)
    reference_number: Optional[str] = None
    tranche_number: Optional[int] = Field(default=None, ge=1)
    total_tranches: Optional[int] = Field(default=None, ge=1)

# ============================================
# SALE MODELS
# ============================================
class SaleItem(BaseModel):
    item_id: str
    item_type: InventoryItemType
    quantity: Decimal
    unit_price: Decimal

class SaleCreate(BaseModel):
    client_id: str
    invoice_number: str
    sale_date: Optional[datetime] = None
    items: List[SaleItem]
    discount: Decimal = Decimal("0")
    gst_percentage: Decimal = Decimal("0")
    delivery_date: Optional[datetime] = None
    notes: Optional[str] = Field(default=None, max_length=500)

class SaleUpdate(BaseModel):
    client_id: Optional[str] = None
    sale_date: Optional[datetime] = None
    items: Optional[List[SaleItem]] = None
    discount: Optional[Decimal] = None
    gst_percentage: Optional[Decimal] = None
    delivery_date: Optional[datetime] = None
    notes: Optional[str] = Field(default=None, max_length=500)

class SaleStatusUpdate(BaseModel):
    status: SaleStatus

class SaleCreateRequest(BaseModel):
    sale: SaleCreate
    initial_payment: Optional[InitialPayment] = None

# ============================================
# PROCUREMENT MODELS
# ============================================
class ProcurementItem(BaseModel):
    item_id: str
    quantity: Decimal
    unit_price: Decimal

class ProcurementCreate(BaseModel):
    vendor_id: str
    items: List[ProcurementItem]
    gst_percentage: Decimal = Decimal("0")
    status: ProcurementStatus = ProcurementStatus.ORDERED
    order_date: Optional[datetime] = None
    received_date: Optional[datetime] = None
    invoice_number: Optional[str] = None
    notes: Optional[str] = Field(default=None, max_length=500)

class ProcurementUpdate(BaseModel):
    vendor_id: Optional[str] = None
    items: Optional[List[ProcurementItem]] = None
    gst_percentage: Optional[Decimal] = None
    status: Optional[ProcurementStatus] = None
    order_date: Optional[datetime] = None
    received_date: Optional[datetime] = None
    invoice_number: Optional[str] = None
    notes: Optional[str] = Field(default=None, max_length=500)

class ProcurementCreateRequest(BaseModel):
    procurement: ProcurementCreate
    initial_payment: Optional[InitialPayment] = None

# ============================================
# ASSET MODELS
# ============================================
class AssetCreate(BaseModel):
    name: str = Field(max_length=100)
    category: str = "other"
    purchase_date: Optional[datetime] = None
    purchase_price: Decimal
    vendor_id: Optional[str] = None
    location: Optional[str] = None
    status: AssetStatus = AssetStatus.ACTIVE
    notes: Optional[str] = Field(default=None, max_length=500)

class AssetUpdate(BaseModel):
    name: Optional[str] = Field(default=None, max_length=100)
    category: Optional[str] = None
    purchase_date: Optional[datetime] = None
    purchase_price: Optional[Decimal] = None
    vendor_id: Optional[str] = None
    clear_vendor: bool = False  # vendor_id=None means "unchanged"; set this to detach
    location: Optional[str] = None
    status: Optional[AssetStatus] = None
    notes: Optional[str] = Field(default=None, max_length=500)

class AssetCreateRequest(BaseModel):
    asset: AssetCreate
    initial_payment: Optional[InitialPayment] = None

# ============================================
# LOAN / INTEREST PAYMENT MODELS
# ============================================
class InterestPaymentCreate(BaseModel):
    loan_account_id: str
    date: Optional[datetime] = None
    principal_amount: Decimal = Decimal("0")
    interest_amount: Decimal
    payment_method: PaymentMethod = PaymentMethod.BANK_TRANSFER
    notes: Optional[str] = Field(default=None, max_length=500)

class InterestPaymentUpdate(BaseModel):
    date: Optional[datetime] = None
    principal_amount: Optional[Decimal] = None
    interest_amount: Optional[Decimal] = None
    payment_method: Optional[PaymentMethod] = None
    notes: Optional[str] = Field(default=None, max_length=500)
