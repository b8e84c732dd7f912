"""
Payment Module

Registers installment payments. A payment is one unit of work: the payment
row, the installment status change, the INGRESO ledger entry and, when it was
the last pending installment, the loan completion either all persist or none
of them do.
"""

from datetime import date, datetime
from typing import List, Optional
import uuid

from .audit import AuditEventType
from .exceptions import AlreadyPaid, ValidationError
from .ledger import LedgerChannel, LedgerDirection, new_entry
from .loans import InstallmentStatus, LoanLifecycleStore, LoanStatus, Payment, utcnow
from .logging_config import get_logger, log_action


# Methods offered by the payment screen; other non-empty labels are accepted too
DEFAULT_PAYMENT_METHODS = ("cash", "transfer", "card")


class PaymentProcessor:
    """
    Pays installments against the loan store and the cash ledger
    """

    def __init__(self, store: LoanLifecycleStore):
        self.store = store
        self.storage = store.storage
        self.ledger = store.ledger
        self.audit_trail = store.audit_trail
        self.logger = get_logger("lending.payments")

    def pay(
        self,
        installment_id: str,
        method: str,
        reference: str,
        channel: LedgerChannel = LedgerChannel.CASH,
        paid_on: Optional[date] = None
    ) -> Payment:
        """
        Pay one installment in full.

        Args:
            installment_id: Installment to pay (PENDING, overdue or not)
            method: Payment method label, e.g. "cash"
            reference: Receipt or transfer reference
            channel: Ledger channel the money arrived through
            paid_on: Payment date, defaults to today

        Returns:
            Created Payment

        Raises:
            InstallmentNotFound: If the installment does not exist
            AlreadyPaid: If the installment is not payable any more
            ValidationError: If method or reference is empty
            LedgerAppendFailure: If the ledger rejected the entry; nothing is persisted
        """
        method = (method or "").strip()
        reference = (reference or "").strip()
        if not method:
            raise ValidationError("Payment method is required", {"installment_id": installment_id})
        if not reference:
            raise ValidationError("Payment reference is required", {"installment_id": installment_id})

        paid_on = paid_on or date.today()
        completed = False

        with self.storage.atomic():
            # Re-read under the transaction lock; a concurrent payer sees PAID here
            installment = self.store.get_installment(installment_id)
            if not installment.is_payable:
                raise AlreadyPaid(
                    f"Installment {installment.sequence} of loan {installment.loan_id} is already paid",
                    {"installment_id": installment_id, "loan_id": installment.loan_id,
                     "paid_date": installment.paid_date}
                )
            loan = self.store.get_loan(installment.loan_id)

            now = utcnow()
            client_name = self.store.display_name(loan.client_id)
            entry = self.ledger.append(new_entry(
                direction=LedgerDirection.INGRESO,
                concept=(f"Installment {installment.sequence} payment - {client_name} - "
                         f"{installment.amount.to_string()}"),
                amount=installment.amount,
                channel=channel,
                reference=loan.id,
                movement_date=paid_on
            ))

            payment = Payment(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                installment_id=installment.id,
                loan_id=loan.id,
                amount=installment.amount,
                method=method,
                reference=reference,
                paid_at=datetime.combine(paid_on, now.timetz()),
                ledger_entry_id=entry.id
            )
            self.store.save_payment(payment)

            installment.status = InstallmentStatus.PAID
            installment.paid_date = paid_on
            self.store.save_installment(installment)

            self.audit_trail.log_event(
                event_type=AuditEventType.INSTALLMENT_PAID,
                entity_type="installment",
                entity_id=installment.id,
                metadata={
                    "loan_id": loan.id,
                    "sequence": installment.sequence,
                    "amount": installment.amount.to_string(),
                    "method": method,
                    "payment_id": payment.id,
                    "ledger_entry_id": entry.id
                }
            )

            remaining = [i for i in self.store.installments_for(loan.id) if not i.is_paid]
            if not remaining and loan.status == LoanStatus.ACTIVE:
                loan.status = LoanStatus.COMPLETED
                self.store.save_loan(loan)
                self.audit_trail.log_event(
                    event_type=AuditEventType.LOAN_COMPLETED,
                    entity_type="loan",
                    entity_id=loan.id,
                    metadata={"last_payment_id": payment.id}
                )
                completed = True

        log_action(
            self.logger, "info", f"Installment {installment.sequence} of loan {loan.id} paid",
            action="pay_installment", resource=f"installment:{installment.id}",
            extra={
                "amount": installment.amount.to_string(),
                "method": method,
                "channel": channel.value,
                "loan_completed": completed
            }
        )
        return payment

    def payments_for_loan(self, loan_id: str) -> List[Payment]:
        """Active payments of a loan, oldest first"""
        self.store.get_loan(loan_id)
        return self.store.payments_for(loan_id)
