"""
Payment status calculator.

Pure derivation of (total_paid, remaining_amount, payment_status) from a
target's principal and the amount paid against it. Called explicitly at
every mutation site; nothing recomputes these fields implicitly on save.

LOCKED RULES (in order):
- total_paid == 0          -> unpaid,          remaining = principal
- total_paid >= principal  -> fully_paid,      remaining = 0 (exactly)
- otherwise                -> partially_paid,  remaining = principal - total_paid
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Dict

from ledger.precision import Numeric, ZERO, clamp_non_negative, round_financial, to_decimal128, to_float


class PaymentStatus(str, Enum):
    UNPAID = "unpaid"
    PARTIALLY_PAID = "partially_paid"
    FULLY_PAID = "fully_paid"


@dataclass(frozen=True)
class StatusResult:
    """Derived payment fields of a target"""
    total_paid: Decimal
    remaining_amount: Decimal
    payment_status: PaymentStatus

    def to_document(self) -> Dict[str, Any]:
        """Fields as stored on the target document"""
        return {
            "total_paid": to_decimal128(self.total_paid),
            "remaining_amount": to_decimal128(self.remaining_amount),
            "payment_status": self.payment_status.value,
        }

    def to_response(self) -> Dict[str, Any]:
        return {
            "total_paid": to_float(self.total_paid),
            "remaining_amount": to_float(self.remaining_amount),
            "payment_status": self.payment_status.value,
        }


def calculate_payment_status(principal: Numeric, total_paid: Numeric) -> StatusResult:
    """Derive status and clamped remaining amount. Negative inputs are clamped to 0."""
    safe_principal = round_financial(clamp_non_negative(principal))
    safe_total_paid = round_financial(clamp_non_negative(total_paid))

    if safe_total_paid == ZERO:
        return StatusResult(safe_total_paid, safe_principal, PaymentStatus.UNPAID)

    if safe_total_paid >= safe_principal:
        return StatusResult(safe_total_paid, ZERO, PaymentStatus.FULLY_PAID)

    return StatusResult(
        safe_total_paid,
        safe_principal - safe_total_paid,
        PaymentStatus.PARTIALLY_PAID
    )
