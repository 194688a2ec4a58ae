"""
LEDGER API ROUTES

Thin HTTP layer over the domain services. Every mutating endpoint maps to
exactly one service call, which is one MongoDB transaction.

Error mapping (registered in server.py):
- ValidationError       -> 400
- NotFoundError         -> 404
- TransactionAbortError -> 409
"""

from fastapi import APIRouter, Depends, Query, Request, status
from bson import ObjectId, Decimal128
from datetime import datetime
from decimal import Decimal
from typing import Optional, Dict, Any
import logging

from models import (
    AssetCreateRequest, AssetUpdate,
    InitialPayment, InterestPaymentCreate, InterestPaymentUpdate,
    PaymentCreate, PaymentUpdate,
    ProcurementCreateRequest, ProcurementType, ProcurementUpdate,
    SaleCreateRequest, SaleStatusUpdate, SaleUpdate
)
from services import LedgerServices

logger = logging.getLogger(__name__)


def serialize_doc(doc: Dict[str, Any]) -> Dict[str, Any]:
    """Serialize MongoDB document for JSON response (handles Decimal128, ObjectId, datetime)"""
    if doc is None:
        return None
    result = {}
    for key, value in doc.items():
        result[key] = _serialize_value(value)
    return result


def _serialize_value(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, Decimal128):
        return float(value.to_decimal())
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return serialize_doc(value)
    if isinstance(value, list):
        return [_serialize_value(item) for item in value]
    return value


def get_services(request: Request) -> LedgerServices:
    return request.app.state.services


ledger_router = APIRouter(prefix="/api", tags=["Ledger"])


# ============================================
# PAYMENTS
# ============================================

@ledger_router.post("/payments", status_code=status.HTTP_201_CREATED)
async def create_payment(data: PaymentCreate, services: LedgerServices = Depends(get_services)):
    """Record a payment against a sale, asset, procurement or expense"""
    payment = await services.payments.create_payment(data)
    return serialize_doc(payment)


@ledger_router.put("/payments/{payment_id}")
async def update_payment(payment_id: str, data: PaymentUpdate, services: LedgerServices = Depends(get_services)):
    """Correct a payment (amount, target or details)"""
    payment = await services.payments.update_payment(payment_id, data)
    return serialize_doc(payment)


@ledger_router.delete("/payments/{payment_id}")
async def delete_payment(payment_id: str, services: LedgerServices = Depends(get_services)):
    payment = await services.payments.delete_payment(payment_id)
    return {"deleted": True, "payment": serialize_doc(payment)}


# ============================================
# SALES
# ============================================

@ledger_router.post("/sales", status_code=status.HTTP_201_CREATED)
async def create_sale(data: SaleCreateRequest, services: LedgerServices = Depends(get_services)):
    sale = await services.sales.create_sale(data.sale, data.initial_payment)
    return serialize_doc(sale)


@ledger_router.put("/sales/{sale_id}")
async def update_sale(sale_id: str, data: SaleUpdate, services: LedgerServices = Depends(get_services)):
    sale = await services.sales.update_sale(sale_id, data)
    return serialize_doc(sale)


@ledger_router.delete("/sales/{sale_id}")
async def delete_sale(sale_id: str, services: LedgerServices = Depends(get_services)):
    """Delete a sale together with its payments"""
    return await services.sales.delete_sale(sale_id)


@ledger_router.put("/sales/{sale_id}/status")
async def update_sale_status(sale_id: str, data: SaleStatusUpdate, services: LedgerServices = Depends(get_services)):
    sale = await services.sales.update_sale_status(sale_id, data.status)
    return serialize_doc(sale)


@ledger_router.post("/sales/{sale_id}/payments", status_code=status.HTTP_201_CREATED)
async def add_sale_payment(sale_id: str, data: InitialPayment, services: LedgerServices = Depends(get_services)):
    payment = await services.sales.add_payment(sale_id, data)
    return serialize_doc(payment)


# ============================================
# PROCUREMENT
# ============================================

@ledger_router.post("/procurement/{procurement_type}", status_code=status.HTTP_201_CREATED)
async def create_procurement(
    procurement_type: ProcurementType,
    data: ProcurementCreateRequest,
    services: LedgerServices = Depends(get_services)
):
    procurement = await services.procurement.create_procurement(
        procurement_type.value, data.procurement, data.initial_payment
    )
    return serialize_doc(procurement)


@ledger_router.put("/procurement/{procurement_type}/{procurement_id}")
async def update_procurement(
    procurement_type: ProcurementType,
    procurement_id: str,
    data: ProcurementUpdate,
    services: LedgerServices = Depends(get_services)
):
    procurement = await services.procurement.update_procurement(procurement_type.value, procurement_id, data)
    return serialize_doc(procurement)


@ledger_router.delete("/procurement/{procurement_type}/{procurement_id}")
async def delete_procurement(
    procurement_type: ProcurementType,
    procurement_id: str,
    services: LedgerServices = Depends(get_services)
):
    return await services.procurement.delete_procurement(procurement_type.value, procurement_id)


# ============================================
# ASSETS
# ============================================

@ledger_router.post("/assets", status_code=status.HTTP_201_CREATED)
async def create_asset(data: AssetCreateRequest, services: LedgerServices = Depends(get_services)):
    asset = await services.assets.create_asset(data.asset, data.initial_payment)
    return serialize_doc(asset)


@ledger_router.put("/assets/{asset_id}")
async def update_asset(asset_id: str, data: AssetUpdate, services: LedgerServices = Depends(get_services)):
    asset = await services.assets.update_asset(asset_id, data)
    return serialize_doc(asset)


@ledger_router.delete("/assets/{asset_id}")
async def delete_asset(asset_id: str, services: LedgerServices = Depends(get_services)):
    return await services.assets.delete_asset(asset_id)


# ============================================
# LOAN INSTALLMENTS
# ============================================

@ledger_router.post("/interest-payments", status_code=status.HTTP_201_CREATED)
async def create_interest_payment(data: InterestPaymentCreate, services: LedgerServices = Depends(get_services)):
    """Creates the installment, its expense and its payment in one transaction"""
    installment = await services.loans.create_installment(data)
    return serialize_doc(installment)


@ledger_router.put("/interest-payments/{installment_id}")
async def update_interest_payment(
    installment_id: str,
    data: InterestPaymentUpdate,
    services: LedgerServices = Depends(get_services)
):
    installment = await services.loans.update_installment(installment_id, data)
    return serialize_doc(installment)


@ledger_router.delete("/interest-payments/{installment_id}")
async def delete_interest_payment(installment_id: str, services: LedgerServices = Depends(get_services)):
    return await services.loans.delete_installment(installment_id)


# ============================================
# RECALCULATION
# ============================================

@ledger_router.post("/recalculate/parties/{party_type}")
async def recalculate_all_parties(party_type: str, services: LedgerServices = Depends(get_services)):
    return await services.recalculation.recalculate_all_parties(party_type)


@ledger_router.post("/recalculate/parties/{party_type}/{party_id}")
async def recalculate_party(party_type: str, party_id: str, services: LedgerServices = Depends(get_services)):
    return await services.recalculation.recalculate_party(party_type, party_id)


@ledger_router.post("/recalculate/{target_type}")
async def recalculate_all(target_type: str, services: LedgerServices = Depends(get_services)):
    """Rebuild derived payment fields of every target of a kind from its payments"""
    return await services.recalculation.recalculate_all(target_type)


@ledger_router.post("/recalculate/{target_type}/{target_id}")
async def recalculate_target(target_type: str, target_id: str, services: LedgerServices = Depends(get_services)):
    return await services.recalculation.recalculate_target(target_type, target_id)


# ============================================
# AUDIT / HEALTH
# ============================================

@ledger_router.get("/audit-logs")
async def get_audit_logs(
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    limit: int = Query(100, ge=1, le=1000),
    services: LedgerServices = Depends(get_services)
):
    logs = await services.audit.get_audit_logs(entity_type=entity_type, entity_id=entity_id, limit=limit)
    return [serialize_doc(log) for log in logs]


@ledger_router.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "timestamp": datetime.utcnow(),
        "version": "1.0.0"
    }
