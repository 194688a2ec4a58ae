"""
Status calculator and precision tests
"""
import pytest
from bson import Decimal128
from decimal import Decimal

from ledger.errors import ValidationError
from ledger.precision import round_financial, to_decimal, validate_positive
from ledger.status_calculator import PaymentStatus, calculate_payment_status


class TestPaymentStatus:
    """Derivation of (total_paid, remaining_amount, payment_status)"""

    def test_nothing_paid_is_unpaid(self):
        result = calculate_payment_status(Decimal("10000"), 0)
        assert result.payment_status == PaymentStatus.UNPAID
        assert result.remaining_amount == Decimal("10000.00")
        assert result.total_paid == Decimal("0.00")

    def test_partial_payment(self):
        result = calculate_payment_status(Decimal("10000"), Decimal("3000"))
        assert result.payment_status == PaymentStatus.PARTIALLY_PAID
        assert result.remaining_amount == Decimal("7000.00")

    def test_exact_payment_is_fully_paid(self):
        result = calculate_payment_status(Decimal("10000"), Decimal("10000"))
        assert result.payment_status == PaymentStatus.FULLY_PAID
        assert result.remaining_amount == Decimal("0")

    def test_overpaid_input_clamps_remaining_to_zero(self):
        result = calculate_payment_status(100, 150)
        assert result.payment_status == PaymentStatus.FULLY_PAID
        assert result.remaining_amount == Decimal("0")

    def test_negative_inputs_are_clamped(self):
        result = calculate_payment_status(-5, -1)
        assert result.payment_status == PaymentStatus.UNPAID
        assert result.remaining_amount == Decimal("0")
        assert result.total_paid == Decimal("0")

    def test_zero_principal_with_no_payments_is_unpaid(self):
        result = calculate_payment_status(0, 0)
        assert result.payment_status == PaymentStatus.UNPAID
        assert result.remaining_amount == Decimal("0")

    def test_decimal128_inputs(self):
        result = calculate_payment_status(Decimal128("250.50"), Decimal128("100.25"))
        assert result.remaining_amount == Decimal("150.25")

    def test_document_and_response_shapes(self):
        result = calculate_payment_status(Decimal("99.99"), Decimal("33.33"))
        document = result.to_document()
        assert document["remaining_amount"] == Decimal128("66.66")
        assert document["payment_status"] == "partially_paid"
        assert result.to_response()["remaining_amount"] == 66.66


class TestPrecision:
    """Rounding and validation at the calculation boundary"""

    def test_round_half_up(self):
        assert round_financial("2.345") == Decimal("2.35")
        assert round_financial(Decimal("2.344")) == Decimal("2.34")

    def test_float_conversion_goes_through_str(self):
        assert to_decimal(0.1) + to_decimal(0.2) == Decimal("0.3")

    def test_non_positive_amount_rejected(self):
        with pytest.raises(ValidationError):
            validate_positive(0, "amount")
        with pytest.raises(ValidationError):
            validate_positive(Decimal("-1"), "amount")

    def test_garbage_amount_rejected(self):
        with pytest.raises(ValidationError):
            to_decimal("ten")
        with pytest.raises(ValidationError):
            to_decimal(True)
