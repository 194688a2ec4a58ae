"""
Loan installment tests: Expense + Payment + InterestPayment stay linked and
the loan account totals move with them.
"""
import pytest
from bson import ObjectId
from decimal import Decimal

from factories import insert_loan_account
from ledger.errors import NotFoundError, ValidationError
from loan_service import loan_totals
from models import InterestPaymentCreate, InterestPaymentUpdate


def loan(db, account):
    return db.loan_accounts.get(account["_id"])


def amount(document, field):
    return document[field].to_decimal()


class TestLoanTotals:

    def test_outstanding_clamped_to_principal_range(self):
        assert loan_totals(1000, 1500, 0)["outstanding_amount"] == Decimal("0")
        assert loan_totals(1000, -200, 0)["outstanding_amount"] == Decimal("1000")

    def test_closed_when_nothing_outstanding(self):
        assert loan_totals(1000, 1000, 50)["status"] == "closed"
        assert loan_totals(1000, 999.99, 50)["status"] == "active"


class TestInstallments:

    @pytest.mark.asyncio
    async def test_create_writes_three_linked_records(self, services, db):
        account = insert_loan_account(db, principal_amount=100000)

        installment = await services.loans.create_installment(InterestPaymentCreate(
            loan_account_id=str(account["_id"]),
            principal_amount=Decimal("5000"),
            interest_amount=Decimal("750"),
        ))

        assert amount(installment, "total_amount") == Decimal("5750")
        expense = db.expenses.get(installment["expense_id"])
        assert expense["category"] == "interest"
        assert amount(expense, "amount") == Decimal("5750")

        payment = db.payments.get(installment["payment_id"])
        assert payment["expense_id"] == expense["_id"]
        assert payment["transaction_type"] == "expense"
        assert "party_id" not in payment

        stored = loan(db, account)
        assert amount(stored, "total_principal_paid") == Decimal("5000")
        assert amount(stored, "total_interest_paid") == Decimal("750")
        assert amount(stored, "outstanding_amount") == Decimal("95000")
        assert stored["status"] == "active"

    @pytest.mark.asyncio
    async def test_delete_restores_loan_totals(self, services, db):
        account = insert_loan_account(db, principal_amount=20000)
        before = loan(db, account)
        installment = await services.loans.create_installment(InterestPaymentCreate(
            loan_account_id=str(account["_id"]),
            principal_amount=Decimal("2000"),
            interest_amount=Decimal("150.55"),
        ))

        await services.loans.delete_installment(str(installment["_id"]))

        after = loan(db, account)
        for field in ("total_principal_paid", "total_interest_paid", "outstanding_amount"):
            assert amount(after, field) == amount(before, field)
        assert after["status"] == "active"
        assert db.expenses.all() == []
        assert db.payments.all() == []
        assert db.interest_payments.all() == []

    @pytest.mark.asyncio
    async def test_final_installment_closes_loan(self, services, db):
        account = insert_loan_account(db, principal_amount=1000)

        await services.loans.create_installment(InterestPaymentCreate(
            loan_account_id=str(account["_id"]),
            principal_amount=Decimal("1000"),
            interest_amount=Decimal("10"),
        ))

        stored = loan(db, account)
        assert amount(stored, "outstanding_amount") == Decimal("0")
        assert stored["status"] == "closed"

    @pytest.mark.asyncio
    async def test_update_moves_all_three_records(self, services, db):
        account = insert_loan_account(db, principal_amount=50000)
        installment = await services.loans.create_installment(InterestPaymentCreate(
            loan_account_id=str(account["_id"]),
            principal_amount=Decimal("1000"),
            interest_amount=Decimal("200"),
        ))

        updated = await services.loans.update_installment(str(installment["_id"]), InterestPaymentUpdate(
            principal_amount=Decimal("3000"), interest_amount=Decimal("250")
        ))

        assert amount(updated, "total_amount") == Decimal("3250")
        assert amount(db.expenses.get(installment["expense_id"]), "amount") == Decimal("3250")
        assert amount(db.payments.get(installment["payment_id"]), "amount") == Decimal("3250")
        stored = loan(db, account)
        assert amount(stored, "total_principal_paid") == Decimal("3000")
        assert amount(stored, "total_interest_paid") == Decimal("250")
        assert amount(stored, "outstanding_amount") == Decimal("47000")

    @pytest.mark.asyncio
    async def test_interest_must_be_positive(self, services, db):
        account = insert_loan_account(db)
        with pytest.raises(ValidationError):
            await services.loans.create_installment(InterestPaymentCreate(
                loan_account_id=str(account["_id"]),
                principal_amount=Decimal("100"),
                interest_amount=Decimal("0"),
            ))
        assert db.expenses.all() == []

    @pytest.mark.asyncio
    async def test_unknown_loan_account(self, services, db):
        with pytest.raises(NotFoundError):
            await services.loans.create_installment(InterestPaymentCreate(
                loan_account_id=str(ObjectId()),
                interest_amount=Decimal("10"),
            ))
