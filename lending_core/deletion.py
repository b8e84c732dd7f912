"""
Deletion Module

Soft-deletes a loan with everything hanging off it and reverses the money
already collected with a single EGRESO ledger entry.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from .audit import AuditEventType
from .currency import Money
from .exceptions import ConfirmationRequired
from .ledger import LedgerChannel, LedgerDirection, new_entry
from .loans import LoanLifecycleStore, LoanStatus, utcnow
from .logging_config import get_logger, log_action


@dataclass
class ReversalSummary:
    """What a soft delete removes and reverses"""
    loan_id: str
    paid_total: Money
    paid_count: int
    installment_count: int
    payment_count: int
    expense_count: int
    ledger_entry_id: Optional[str] = None
    deleted_at: Optional[datetime] = None

    @property
    def requires_confirmation(self) -> bool:
        return self.paid_count > 0


class DeletionReversalEngine:
    """
    Tears down a loan in one unit of work
    """

    def __init__(self, store: LoanLifecycleStore):
        self.store = store
        self.storage = store.storage
        self.ledger = store.ledger
        self.audit_trail = store.audit_trail
        self.logger = get_logger("lending.deletion")

    def preview(self, loan_id: str) -> ReversalSummary:
        """What ``soft_delete`` would do; nothing is written"""
        detail = self.store.get(loan_id)
        payments = self.store.payments_for(loan_id)
        paid = [i for i in detail.installments if i.is_paid]
        return ReversalSummary(
            loan_id=loan_id,
            paid_total=detail.paid_total,
            paid_count=len(paid),
            installment_count=len(detail.installments),
            payment_count=len(payments),
            expense_count=len(detail.expenses)
        )

    def soft_delete(self, loan_id: str, channel: LedgerChannel = LedgerChannel.CASH,
                    confirm: bool = False) -> ReversalSummary:
        """
        Soft-delete a loan, its installments, payments and expenses.

        When money was collected, one EGRESO entry for the paid total is
        appended in the same transaction.

        Args:
            loan_id: Loan to delete
            channel: Ledger channel the reversal goes out through
            confirm: Required when the loan has paid installments

        Returns:
            ReversalSummary with the reversal entry id and deletion timestamp

        Raises:
            LoanNotFound: If the loan does not exist or is already deleted
            ConfirmationRequired: If paid installments exist and confirm is False
            LedgerAppendFailure: If the reversal entry was rejected; nothing is deleted
        """
        with self.storage.atomic():
            summary = self.preview(loan_id)
            if summary.requires_confirmation and not confirm:
                raise ConfirmationRequired(
                    f"Loan {loan_id} has {summary.paid_count} paid installments; "
                    f"deleting it reverses {summary.paid_total.to_string()}",
                    {"loan_id": loan_id, "paid_count": summary.paid_count,
                     "paid_total": summary.paid_total.amount}
                )

            now = utcnow()
            loan = self.store.get_loan(loan_id)

            for payment in self.store.payments_for(loan_id):
                payment.deleted_at = now
                self.store.save_payment(payment)
            for installment in self.store.installments_for(loan_id):
                installment.deleted_at = now
                self.store.save_installment(installment)
            for expense in self.store.expenses_for(loan_id):
                expense.deleted_at = now
                self.store.save_expense(expense)

            loan.deleted_at = now
            loan.status = LoanStatus.CANCELLED
            self.store.save_loan(loan)

            if summary.paid_total.is_positive():
                client_name = self.store.display_name(loan.client_id)
                entry = self.ledger.append(new_entry(
                    direction=LedgerDirection.EGRESO,
                    concept=(f"Reversal of payments for deleted loan - {client_name} - "
                             f"{summary.paid_total.to_string()}"),
                    amount=summary.paid_total,
                    channel=channel,
                    reference=loan.id
                ))
                summary.ledger_entry_id = entry.id
            summary.deleted_at = now

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_SOFT_DELETED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={
                    "paid_total": summary.paid_total.amount,
                    "paid_count": summary.paid_count,
                    "installments": summary.installment_count,
                    "payments": summary.payment_count,
                    "expenses": summary.expense_count,
                    "reversal_entry_id": summary.ledger_entry_id
                }
            )

        log_action(
            self.logger, "info", f"Loan {loan_id} soft-deleted",
            action="soft_delete_loan", resource=f"loan:{loan_id}",
            extra={
                "paid_total": summary.paid_total.to_string(),
                "channel": channel.value,
                "reversal_entry_id": summary.ledger_entry_id
            }
        )
        return summary
