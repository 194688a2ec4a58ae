"""
Wiring of the ledger engine and the domain services around it.
"""

from dataclasses import dataclass
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from typing import Any, Callable, List, Optional
import logging

from asset_service import AssetService
from audit_service import AuditService
from inventory_service import InventoryService
from ledger.balance_aggregator import BalanceAggregator
from ledger.ledger_store import PaymentLedger
from ledger.transaction import TransactionCoordinator
from loan_service import LoanService
from payment_service import PaymentService
from procurement_service import ProcurementService
from recalculation_service import RecalculationService
from sale_service import SaleService

logger = logging.getLogger(__name__)


def log_invalidated_paths(paths: List[str]):
    """Default cache invalidator: there is no cache layer, only a trace"""
    logger.debug(f"[TRANSACTION] Invalidated: {', '.join(paths)}")


@dataclass
class LedgerServices:
    transactions: TransactionCoordinator
    audit: AuditService
    payments: PaymentService
    sales: SaleService
    procurement: ProcurementService
    assets: AssetService
    loans: LoanService
    recalculation: RecalculationService


def build_services(
    client: AsyncIOMotorClient,
    db: AsyncIOMotorDatabase,
    cache_invalidator: Optional[Callable[[List[str]], Any]] = log_invalidated_paths
) -> LedgerServices:
    audit = AuditService(db)
    transactions = TransactionCoordinator(client, db, audit_sink=audit, cache_invalidator=cache_invalidator)
    ledger = PaymentLedger()
    aggregator = BalanceAggregator(ledger)
    inventory = InventoryService()
    payments = PaymentService(transactions, ledger, aggregator)

    return LedgerServices(
        transactions=transactions,
        audit=audit,
        payments=payments,
        sales=SaleService(transactions, ledger, aggregator, payments, inventory),
        procurement=ProcurementService(transactions, ledger, aggregator, payments, inventory),
        assets=AssetService(transactions, ledger, aggregator, payments),
        loans=LoanService(transactions, payments),
        recalculation=RecalculationService(transactions, aggregator, db),
    )
