"""
Ledger engine error taxonomy.

ValidationError / NotFoundError are raised before (or instead of) any
write and abort the surrounding transaction. TransactionAbortError wraps
store-level commit failures. None of these are retried by the engine.
"""

from typing import Any, Dict, Optional


class LedgerError(Exception):
    """Base class for all ledger engine errors"""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ValidationError(LedgerError):
    """Malformed or out-of-range input (bad amount, overpayment, missing reference)"""
    pass


class NotFoundError(LedgerError):
    """Referenced target, party or payment does not exist"""
    def __init__(self, entity_type: str, entity_id: Any):
        self.entity_type = entity_type
        self.entity_id = str(entity_id)
        super().__init__(
            f"{entity_type} not found: {entity_id}",
            details={"entity_type": entity_type, "entity_id": str(entity_id)}
        )


class TransactionAbortError(LedgerError):
    """The store rejected the transaction (write conflict, constraint violation, network)"""
    pass


class TransactionNestingError(LedgerError):
    """A transaction scope was opened while another one is active in the same task"""
    pass


class ConfigurationError(LedgerError):
    """Required configuration is missing or malformed"""
    pass
