"""
Expense Module

Attaches one-time charges (origination, lien transfer) to a loan and moves
them through their billing states. Expenses are billed and collected apart
from the installment schedule and never change installment amounts.
"""

from decimal import Decimal
from typing import List, Optional, Union

from .audit import AuditEventType
from .currency import Currency, Money, to_decimal
from .exceptions import ConfirmationRequired, DuplicateExpenseKind, ExpenseLocked, ValidationError
from .loans import Expense, ExpenseKind, ExpenseStatus, LoanLifecycleStore, utcnow
from .logging_config import get_logger, log_action


_STATUS_ORDER = [ExpenseStatus.PENDING, ExpenseStatus.INVOICED, ExpenseStatus.COLLECTED]


class ExpenseAttacher:
    """
    Expense lifecycle on top of the loan store
    """

    def __init__(self, store: LoanLifecycleStore):
        self.store = store
        self.storage = store.storage
        self.audit_trail = store.audit_trail
        self.logger = get_logger("lending.expenses")

    def attach(
        self,
        loan_id: str,
        kind: ExpenseKind,
        amount: Union[Decimal, int, str],
        currency: Optional[Currency] = None,
        description: str = ""
    ) -> Expense:
        """
        Attach an expense to a loan.

        Args:
            loan_id: Target loan
            kind: ORIGINATION or LIEN_TRANSFER
            amount: Positive amount
            currency: Defaults to the loan currency
            description: Free text shown next to the charge

        Returns:
            Created Expense

        Raises:
            LoanNotFound: If the loan does not exist or is deleted
            DuplicateExpenseKind: If an active expense of that kind exists
            ValidationError: If the amount is not positive
        """
        with self.storage.atomic():
            loan = self.store.get_loan(loan_id)
            if any(e.kind == kind for e in self.store.expenses_for(loan_id)):
                raise DuplicateExpenseKind(
                    f"Loan {loan_id} already has an active {kind.value} expense",
                    {"loan_id": loan_id, "kind": kind.value}
                )
            expense = self.store.build_expense(loan, kind, amount, currency or loan.currency,
                                               description, utcnow())
            self.store.save_expense(expense, bump=False)
            self.audit_trail.log_event(
                event_type=AuditEventType.EXPENSE_ATTACHED,
                entity_type="expense",
                entity_id=expense.id,
                metadata={"loan_id": loan_id, "kind": kind.value,
                          "amount": expense.amount.to_string()}
            )

        log_action(self.logger, "info", f"{kind.value} expense attached to loan {loan_id}",
                   action="attach_expense", resource=f"expense:{expense.id}",
                   extra={"loan_id": loan_id, "amount": expense.amount.to_string()})
        return expense

    def update_amount(self, expense_id: str, new_amount: Union[Decimal, int, str]) -> Expense:
        """
        Change the amount of an expense that has not been collected.

        Raises:
            ExpenseLocked: If the expense is COLLECTED
            ValidationError: If the amount is not positive
        """
        value = to_decimal(new_amount)
        if value <= 0:
            raise ValidationError(f"Expense amount must be positive, got {value}",
                                  {"expense_id": expense_id, "amount": value})

        with self.storage.atomic():
            expense = self.store.get_expense(expense_id)
            self._check_unlocked(expense)
            previous = expense.amount
            expense.amount = Money(value, expense.amount.currency)
            self.store.save_expense(expense)
            self.audit_trail.log_event(
                event_type=AuditEventType.EXPENSE_UPDATED,
                entity_type="expense",
                entity_id=expense.id,
                metadata={"loan_id": expense.loan_id, "field": "amount",
                          "from": previous.amount, "to": expense.amount.amount}
            )

        log_action(self.logger, "info", f"Expense {expense_id} amount updated",
                   action="update_expense_amount", resource=f"expense:{expense_id}",
                   extra={"from": previous.to_string(), "to": expense.amount.to_string()})
        return expense

    def update_status(self, expense_id: str, status: ExpenseStatus) -> Expense:
        """
        Advance an expense through PENDING -> INVOICED -> COLLECTED.

        Raises:
            ExpenseLocked: If the expense is already COLLECTED
            ValidationError: If the status would move backwards
        """
        with self.storage.atomic():
            expense = self.store.get_expense(expense_id)
            self._check_unlocked(expense)
            if _STATUS_ORDER.index(status) < _STATUS_ORDER.index(expense.status):
                raise ValidationError(
                    f"Expense status cannot go from {expense.status.value} back to {status.value}",
                    {"expense_id": expense_id, "from": expense.status.value, "to": status.value}
                )
            if status == expense.status:
                return expense
            previous = expense.status
            expense.status = status
            self.store.save_expense(expense)
            self.audit_trail.log_event(
                event_type=AuditEventType.EXPENSE_UPDATED,
                entity_type="expense",
                entity_id=expense.id,
                metadata={"loan_id": expense.loan_id, "field": "status",
                          "from": previous.value, "to": status.value}
            )

        log_action(self.logger, "info", f"Expense {expense_id} is now {status.value}",
                   action="update_expense_status", resource=f"expense:{expense_id}")
        return expense

    def remove(self, expense_id: str, acknowledge: bool = False) -> Expense:
        """
        Soft-delete an expense. Expenses already invoiced or collected need
        ``acknowledge=True``.

        Raises:
            ConfirmationRequired: If the expense is not PENDING and the caller
                did not acknowledge
        """
        with self.storage.atomic():
            expense = self.store.get_expense(expense_id)
            if expense.status != ExpenseStatus.PENDING and not acknowledge:
                raise ConfirmationRequired(
                    f"Expense {expense_id} is {expense.status.value}; removal must be acknowledged",
                    {"expense_id": expense_id, "status": expense.status.value,
                     "amount": expense.amount.amount}
                )
            expense.deleted_at = utcnow()
            self.store.save_expense(expense)
            self.audit_trail.log_event(
                event_type=AuditEventType.EXPENSE_REMOVED,
                entity_type="expense",
                entity_id=expense.id,
                metadata={"loan_id": expense.loan_id, "kind": expense.kind.value,
                          "status": expense.status.value}
            )

        log_action(self.logger, "info", f"Expense {expense_id} removed",
                   action="remove_expense", resource=f"expense:{expense_id}",
                   extra={"loan_id": expense.loan_id})
        return expense

    def list_for_loan(self, loan_id: str) -> List[Expense]:
        """Active expenses of a loan"""
        self.store.get_loan(loan_id)
        return self.store.expenses_for(loan_id)

    @staticmethod
    def _check_unlocked(expense: Expense) -> None:
        if expense.status == ExpenseStatus.COLLECTED:
            raise ExpenseLocked(
                f"Expense {expense.id} has been collected and can no longer change",
                {"expense_id": expense.id, "loan_id": expense.loan_id}
            )
