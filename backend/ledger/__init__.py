"""
Ledger Consistency Engine
"""
from .errors import (
    LedgerError,
    ValidationError,
    NotFoundError,
    TransactionAbortError,
    TransactionNestingError,
    ConfigurationError
)

from .precision import (
    to_decimal,
    round_financial,
    to_decimal128,
    to_float,
    validate_non_negative,
    validate_positive,
    calculate_percentage
)

from .status_calculator import (
    PaymentStatus,
    StatusResult,
    calculate_payment_status
)

from .references import (
    ClientParty,
    VendorParty,
    SaleTarget,
    AssetTarget,
    ProcurementTarget,
    ExpenseTarget,
    PartyRef,
    TargetRef,
    make_target,
    make_party
)

from .transaction import (
    AuditAction,
    TransactionCoordinator,
    TransactionScope
)

from .ledger_store import PaymentLedger

from .balance_aggregator import (
    BalanceAggregator,
    TargetChange
)

__all__ = [
    # Errors
    'LedgerError',
    'ValidationError',
    'NotFoundError',
    'TransactionAbortError',
    'TransactionNestingError',
    'ConfigurationError',
    # Precision
    'to_decimal',
    'round_financial',
    'to_decimal128',
    'to_float',
    'validate_non_negative',
    'validate_positive',
    'calculate_percentage',
    # Status Calculator
    'PaymentStatus',
    'StatusResult',
    'calculate_payment_status',
    # References
    'ClientParty',
    'VendorParty',
    'SaleTarget',
    'AssetTarget',
    'ProcurementTarget',
    'ExpenseTarget',
    'PartyRef',
    'TargetRef',
    'make_target',
    'make_party',
    # Transaction Coordinator
    'AuditAction',
    'TransactionCoordinator',
    'TransactionScope',
    # Ledger Store / Balance Aggregator
    'PaymentLedger',
    'BalanceAggregator',
    'TargetChange',
]
