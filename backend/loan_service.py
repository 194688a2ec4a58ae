"""
Loan installment service.

An installment (InterestPayment) is three linked records written together:
an Expense (category interest), a Payment against that expense, and the
InterestPayment itself. The loan account's running totals move with it.

Loan totals:
- total_principal_paid / total_interest_paid: running sums (never below 0)
- outstanding_amount = clamp(principal_amount - total_principal_paid, 0, principal_amount)
- status = closed when outstanding_amount == 0, otherwise active
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict
import logging

from ledger.balance_aggregator import version_filter
from ledger.errors import NotFoundError, TransactionAbortError
from ledger.precision import (
    ZERO, clamp_non_negative, round_financial, to_decimal, to_decimal128,
    validate_non_negative, validate_positive
)
from ledger.references import ExpenseTarget, parse_object_id
from ledger.transaction import AuditAction, TransactionCoordinator, TransactionScope
from models import (
    ExpenseCategory, InterestPaymentCreate, InterestPaymentUpdate,
    LoanAccountStatus, PaymentCreate, PaymentUpdate
)
from payment_service import PaymentService

logger = logging.getLogger(__name__)


def loan_totals(principal_amount: Any, total_principal_paid: Any, total_interest_paid: Any) -> Dict[str, Any]:
    principal = round_financial(to_decimal(principal_amount))
    principal_paid = round_financial(clamp_non_negative(total_principal_paid))
    interest_paid = round_financial(clamp_non_negative(total_interest_paid))
    outstanding = min(max(principal - principal_paid, ZERO), principal)
    return {
        "total_principal_paid": principal_paid,
        "total_interest_paid": interest_paid,
        "outstanding_amount": outstanding,
        "status": LoanAccountStatus.CLOSED.value if outstanding == ZERO else LoanAccountStatus.ACTIVE.value,
    }


class LoanService:

    def __init__(self, transactions: TransactionCoordinator, payments: PaymentService):
        self.transactions = transactions
        self.payments = payments

    # =========================================================================
    # LOAN ACCOUNT
    # =========================================================================

    async def _load_loan(self, scope: TransactionScope, loan_account_id: Any) -> Dict[str, Any]:
        oid = parse_object_id(loan_account_id, "LoanAccount")
        loan = await scope.db.loan_accounts.find_one({"_id": oid}, session=scope.session)
        if not loan:
            raise NotFoundError("LoanAccount", loan_account_id)
        return loan

    async def _move_loan(
        self,
        scope: TransactionScope,
        loan_account_id: Any,
        principal_delta: Decimal,
        interest_delta: Decimal
    ) -> Dict[str, Any]:
        loan = await self._load_loan(scope, loan_account_id)
        totals = loan_totals(
            loan.get("principal_amount", 0),
            to_decimal(loan.get("total_principal_paid", 0)) + principal_delta,
            to_decimal(loan.get("total_interest_paid", 0)) + interest_delta,
        )
        updated = await scope.db.loan_accounts.find_one_and_update(
            version_filter(loan),
            {
                "$set": {
                    "total_principal_paid": to_decimal128(totals["total_principal_paid"]),
                    "total_interest_paid": to_decimal128(totals["total_interest_paid"]),
                    "outstanding_amount": to_decimal128(totals["outstanding_amount"]),
                    "status": totals["status"],
                    "updated_at": datetime.utcnow(),
                },
                "$inc": {"version": 1},
            },
            return_document=True,
            session=scope.session
        )
        if updated is None:
            raise TransactionAbortError(
                f"Concurrent modification detected on LoanAccount {loan_account_id}",
                details={"entity_type": "LoanAccount", "entity_id": str(loan_account_id)}
            )
        scope.invalidate(f"loan-accounts/{loan['_id']}")
        logger.info(
            f"[LOAN] LoanAccount {loan['_id']}: principal_paid={totals['total_principal_paid']} "
            f"interest_paid={totals['total_interest_paid']} outstanding={totals['outstanding_amount']} status={totals['status']}"
        )
        return updated

    # =========================================================================
    # INSTALLMENTS
    # =========================================================================

    async def create_installment(self, data: InterestPaymentCreate) -> Dict[str, Any]:
        """Create Expense + Payment + InterestPayment and update loan totals"""

        async def mutation(scope: TransactionScope):
            principal_amount = round_financial(validate_non_negative(data.principal_amount, "principal_amount"))
            interest_amount = round_financial(validate_positive(data.interest_amount, "interest_amount"))
            total_amount = principal_amount + interest_amount
            loan = await self._load_loan(scope, data.loan_account_id)
            paid_on = data.date or datetime.utcnow()
            now = datetime.utcnow()

            expense = {
                "date": paid_on,
                "category": ExpenseCategory.INTEREST.value,
                "description": f"Loan payment - {loan.get('bank_name', '')} ({loan.get('account_number', '')})".strip(),
                "amount": to_decimal128(total_amount),
                "payment_method": data.payment_method.value,
                "notes": data.notes,
                "created_at": now,
                "updated_at": now,
            }
            result = await scope.db.expenses.insert_one(expense, session=scope.session)
            expense["_id"] = result.inserted_id

            payment = await self.payments.apply_create(scope, PaymentCreate(
                target=ExpenseTarget(expense_id=str(expense["_id"])),
                amount=total_amount,
                payment_method=data.payment_method,
                payment_date=paid_on,
                notes=data.notes or expense["description"],
            ))

            installment = {
                "loan_account_id": loan["_id"],
                "date": paid_on,
                "principal_amount": to_decimal128(principal_amount),
                "interest_amount": to_decimal128(interest_amount),
                "total_amount": to_decimal128(total_amount),
                "payment_method": data.payment_method.value,
                "expense_id": expense["_id"],
                "payment_id": payment["_id"],
                "notes": data.notes,
                "created_at": now,
                "updated_at": now,
            }
            result = await scope.db.interest_payments.insert_one(installment, session=scope.session)
            installment["_id"] = result.inserted_id

            await self._move_loan(scope, loan["_id"], principal_amount, interest_amount)

            scope.audit(AuditAction.CREATE, "Expense", expense["_id"], new_value=dict(expense))
            scope.audit(AuditAction.CREATE, "InterestPayment", installment["_id"], new_value=dict(installment))
            scope.invalidate("interest-payments", "expenses")
            logger.info(
                f"[LOAN] Installment created {installment['_id']}: principal={principal_amount} interest={interest_amount}"
            )
            return installment

        return await self.transactions.run(mutation, label="loan.installment.create")

    async def update_installment(self, installment_id: str, patch: InterestPaymentUpdate) -> Dict[str, Any]:
        """Revert the old installment's loan impact, then apply the edited amounts to all three records"""

        async def mutation(scope: TransactionScope):
            installment = await self._load_installment(scope, installment_id)
            old_principal = to_decimal(installment["principal_amount"])
            old_interest = to_decimal(installment["interest_amount"])

            principal_amount = round_financial(validate_non_negative(
                patch.principal_amount if patch.principal_amount is not None else old_principal,
                "principal_amount"
            ))
            interest_amount = round_financial(validate_positive(
                patch.interest_amount if patch.interest_amount is not None else old_interest,
                "interest_amount"
            ))
            total_amount = principal_amount + interest_amount
            now = datetime.utcnow()

            expense_set: Dict[str, Any] = {"amount": to_decimal128(total_amount), "updated_at": now}
            installment_set: Dict[str, Any] = {
                "principal_amount": to_decimal128(principal_amount),
                "interest_amount": to_decimal128(interest_amount),
                "total_amount": to_decimal128(total_amount),
                "updated_at": now,
            }
            if patch.date is not None:
                expense_set["date"] = patch.date
                installment_set["date"] = patch.date
            if patch.payment_method is not None:
                expense_set["payment_method"] = patch.payment_method.value
                installment_set["payment_method"] = patch.payment_method.value
            if patch.notes is not None:
                expense_set["notes"] = patch.notes
                installment_set["notes"] = patch.notes

            if installment.get("expense_id"):
                await scope.db.expenses.update_one(
                    {"_id": installment["expense_id"]}, {"$set": expense_set}, session=scope.session
                )
            if installment.get("payment_id"):
                await self.payments.apply_update(scope, installment["payment_id"], PaymentUpdate(
                    amount=total_amount,
                    payment_method=patch.payment_method,
                    payment_date=patch.date,
                    notes=patch.notes,
                ))

            updated = await scope.db.interest_payments.find_one_and_update(
                {"_id": installment["_id"]},
                {"$set": installment_set},
                return_document=True,
                session=scope.session
            )

            await self._move_loan(
                scope, installment["loan_account_id"],
                principal_amount - old_principal,
                interest_amount - old_interest
            )

            scope.audit(AuditAction.UPDATE, "InterestPayment", installment["_id"],
                        old_value=dict(installment), new_value=dict(updated))
            scope.invalidate("interest-payments", "expenses")
            logger.info(f"[LOAN] Installment updated {installment_id}: principal={principal_amount} interest={interest_amount}")
            return updated

        return await self.transactions.run(mutation, label="loan.installment.update")

    async def delete_installment(self, installment_id: str) -> Dict[str, Any]:
        """Remove Expense + Payment + InterestPayment and restore loan totals"""

        async def mutation(scope: TransactionScope):
            installment = await self._load_installment(scope, installment_id)

            if installment.get("payment_id"):
                await self.payments.apply_delete(scope, installment["payment_id"])
            if installment.get("expense_id"):
                await scope.db.expenses.delete_one({"_id": installment["expense_id"]}, session=scope.session)
                scope.audit(AuditAction.DELETE, "Expense", installment["expense_id"],
                            details=f"Cascade from interest payment {installment_id}")
            await scope.db.interest_payments.delete_one({"_id": installment["_id"]}, session=scope.session)

            await self._move_loan(
                scope, installment["loan_account_id"],
                -to_decimal(installment["principal_amount"]),
                -to_decimal(installment["interest_amount"])
            )

            scope.audit(AuditAction.DELETE, "InterestPayment", installment["_id"], old_value=dict(installment))
            scope.invalidate("interest-payments", "expenses")
            logger.info(f"[LOAN] Installment deleted {installment_id}")
            return {
                "interest_payment_id": installment_id,
                "expense_id": str(installment["expense_id"]) if installment.get("expense_id") else None,
                "payment_id": str(installment["payment_id"]) if installment.get("payment_id") else None,
            }

        return await self.transactions.run(mutation, label="loan.installment.delete")

    async def _load_installment(self, scope: TransactionScope, installment_id: str) -> Dict[str, Any]:
        oid = parse_object_id(installment_id, "InterestPayment")
        installment = await scope.db.interest_payments.find_one({"_id": oid}, session=scope.session)
        if not installment:
            raise NotFoundError("InterestPayment", installment_id)
        return installment
