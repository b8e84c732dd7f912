"""
Recalculation Module

Redistributes the outstanding balance of a loan over its pending installments
after the principal, term or start date changed. Paid installments are never
touched.

Recalculation is two-phase: ``preview`` computes the new pending amounts
without side effects and records version tokens; ``commit`` applies the
preview only if the loan and its installments are exactly as they were when
the preview was taken.
"""

from datetime import date
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional, Union
import uuid

from .amortization import due_date_for, split_evenly
from .audit import AuditEventType
from .currency import Money, to_decimal
from .exceptions import NothingToRecalculate, StalePreviewError, ValidationError
from .loans import Installment, LoanLifecycleStore, LoanStatus, utcnow
from .logging_config import get_logger, log_action


@dataclass
class PreviewLine:
    """Pending installment as it will look after the commit"""
    sequence: int
    due_date: date
    amount: Money
    installment_id: Optional[str] = None  # None for installments the commit appends


@dataclass
class RecalculationPreview:
    """Side-effect free outcome of a recalculation request"""
    loan_id: str
    principal: Money
    already_paid: Money
    remaining: Money
    paid_count: int
    installment_count: int
    start_date: date
    lines: List[PreviewLine]
    removed_installment_ids: List[str] = field(default_factory=list)
    loan_version: int = 0
    installment_versions: Dict[str, int] = field(default_factory=dict)

    @property
    def appended_count(self) -> int:
        return sum(1 for line in self.lines if line.installment_id is None)

    @property
    def removed_count(self) -> int:
        return len(self.removed_installment_ids)


class RecalculationEngine:
    """
    Rewrites the pending part of a loan's schedule
    """

    def __init__(self, store: LoanLifecycleStore):
        self.store = store
        self.storage = store.storage
        self.audit_trail = store.audit_trail
        self.logger = get_logger("lending.recalculation")

    def preview(
        self,
        loan_id: str,
        new_principal: Optional[Union[Decimal, int, str]] = None,
        new_periods: Optional[int] = None,
        new_start_date: Optional[date] = None
    ) -> RecalculationPreview:
        """
        Compute the recalculated pending installments.

        Args:
            loan_id: Loan to recalculate
            new_principal: Principal after the change, defaults to the current one
            new_periods: Installment count after the change; larger appends
                pending installments, smaller removes trailing pending ones
            new_start_date: New anchor date for the pending installments

        Returns:
            RecalculationPreview; nothing is written

        Raises:
            NothingToRecalculate: If no pending installment would remain
            ValidationError: If the outstanding balance is not positive or too
                small to give every installment at least one minor unit, the
                new term does not exceed the paid count, a paid installment
                would fall outside the new term, or the new start date would
                put a pending installment on or before an earlier one
        """
        detail = self.store.get(loan_id)
        loan = detail.loan
        if loan.status == LoanStatus.CANCELLED:
            raise ValidationError(f"Loan {loan_id} is cancelled", {"loan_id": loan_id})

        currency = loan.currency
        installments = detail.installments
        paid = [i for i in installments if i.is_paid]
        paid_count = len(paid)

        if new_periods is not None:
            if isinstance(new_periods, bool) or not isinstance(new_periods, int):
                raise ValidationError(f"Periods must be an integer, got {new_periods}",
                                      {"loan_id": loan_id, "new_periods": new_periods})
            if new_periods <= paid_count:
                raise ValidationError(
                    f"New term of {new_periods} must exceed the {paid_count} paid installments",
                    {"loan_id": loan_id, "new_periods": new_periods, "paid_count": paid_count}
                )
        target = new_periods if new_periods is not None else len(installments)

        kept = [i for i in installments if i.sequence <= target]
        dropped = [i for i in installments if i.sequence > target]
        paid_dropped = [i.sequence for i in dropped if i.is_paid]
        if paid_dropped:
            raise ValidationError(
                f"Installments {paid_dropped} are paid and cannot be removed",
                {"loan_id": loan_id, "new_periods": target, "paid_sequences": paid_dropped}
            )

        pending = [i for i in kept if not i.is_paid]
        appended = list(range(len(installments) + 1, target + 1))
        if not pending and not appended:
            raise NothingToRecalculate(
                f"Loan {loan_id} has no pending installments",
                {"loan_id": loan_id, "paid_count": paid_count}
            )

        principal = Money(to_decimal(new_principal), currency) if new_principal is not None else loan.principal
        already_paid = Money.zero(currency)
        for installment in paid:
            already_paid = already_paid + installment.amount
        remaining = principal - already_paid
        if not remaining.is_positive():
            raise ValidationError(
                f"Paid amount {already_paid.to_string()} already covers principal {principal.to_string()}",
                {"loan_id": loan_id, "principal": principal.amount, "already_paid": already_paid.amount}
            )

        start_date = new_start_date or loan.start_date
        shares = split_evenly(remaining.amount, len(pending) + len(appended), currency)

        lines = []
        for installment, share in zip(pending, shares):
            due = (due_date_for(start_date, installment.sequence, loan.frequency)
                   if new_start_date is not None else installment.due_date)
            lines.append(PreviewLine(installment.sequence, due, Money(share, currency), installment.id))
        for sequence, share in zip(appended, shares[len(pending):]):
            lines.append(PreviewLine(sequence, due_date_for(start_date, sequence, loan.frequency),
                                     Money(share, currency)))

        unpayable = [line.sequence for line in lines if not line.amount.is_positive()]
        if unpayable:
            raise ValidationError(
                f"Remaining {remaining.to_string()} is too small to spread over "
                f"{len(lines)} installments",
                {"loan_id": loan_id, "remaining": remaining.amount,
                 "installments": len(lines), "unpayable_sequences": unpayable}
            )

        # Due dates must keep ascending with the sequence across paid and pending rows
        timeline = sorted([(i.sequence, i.due_date) for i in paid] +
                          [(line.sequence, line.due_date) for line in lines])
        for (previous_sequence, previous_due), (sequence, due) in zip(timeline, timeline[1:]):
            if due <= previous_due:
                raise ValidationError(
                    f"Installment {sequence} would fall due on {due.isoformat()}, not after "
                    f"installment {previous_sequence} due {previous_due.isoformat()}",
                    {"loan_id": loan_id, "start_date": start_date, "sequence": sequence,
                     "due_date": due, "previous_due_date": previous_due}
                )

        return RecalculationPreview(
            loan_id=loan.id,
            principal=principal,
            already_paid=already_paid,
            remaining=remaining,
            paid_count=paid_count,
            installment_count=target,
            start_date=start_date,
            lines=lines,
            removed_installment_ids=[i.id for i in dropped],
            loan_version=loan.version,
            installment_versions={i.id: i.version for i in installments}
        )

    def commit(self, preview: RecalculationPreview) -> List[Installment]:
        """
        Apply a preview in one unit of work.

        Returns:
            The pending installments after the commit, by sequence

        Raises:
            StalePreviewError: If the loan or any installment changed since the preview
        """
        with self.storage.atomic():
            loan = self.store.get_loan(preview.loan_id)
            installments = {i.id: i for i in self.store.installments_for(loan.id)}
            current_versions = {i.id: i.version for i in installments.values()}
            if loan.version != preview.loan_version or current_versions != preview.installment_versions:
                raise StalePreviewError(
                    f"Loan {loan.id} changed after the recalculation preview",
                    {"loan_id": loan.id, "preview_version": preview.loan_version,
                     "current_version": loan.version}
                )

            now = utcnow()
            currency = loan.currency
            zero = Money.zero(currency)
            result = []
            for line in preview.lines:
                if line.installment_id is not None:
                    installment = installments[line.installment_id]
                    installment.amount = line.amount
                    installment.due_date = line.due_date
                    installment.principal_portion = zero
                    installment.interest_portion = zero
                    installment.tax_portion = zero
                    self.store.save_installment(installment)
                else:
                    installment = Installment(
                        id=str(uuid.uuid4()),
                        created_at=now,
                        updated_at=now,
                        loan_id=loan.id,
                        sequence=line.sequence,
                        amount=line.amount,
                        due_date=line.due_date
                    )
                    self.store.save_installment(installment, bump=False)
                result.append(installment)

            for installment_id in preview.removed_installment_ids:
                installment = installments[installment_id]
                installment.deleted_at = now
                self.store.save_installment(installment)

            changes = {}
            if loan.principal != preview.principal:
                changes['principal'] = {"from": loan.principal.amount, "to": preview.principal.amount}
            if loan.installment_count != preview.installment_count:
                changes['installment_count'] = {"from": loan.installment_count,
                                                "to": preview.installment_count}
            if loan.start_date != preview.start_date:
                changes['start_date'] = {"from": loan.start_date, "to": preview.start_date}

            loan.principal = preview.principal
            loan.installment_count = preview.installment_count
            loan.start_date = preview.start_date
            if loan.status == LoanStatus.COMPLETED and result:
                loan.status = LoanStatus.ACTIVE
            self.store.save_loan(loan)

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_RECALCULATED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={
                    "changes": changes,
                    "already_paid": preview.already_paid.amount,
                    "remaining": preview.remaining.amount,
                    "pending_installments": len(result),
                    "appended": preview.appended_count,
                    "removed": preview.removed_count
                }
            )

        log_action(
            self.logger, "info", f"Loan {loan.id} recalculated",
            action="recalculate_loan", resource=f"loan:{loan.id}",
            extra={
                "remaining": preview.remaining.to_string(),
                "pending_installments": len(result),
                "appended": preview.appended_count,
                "removed": preview.removed_count
            }
        )
        result.sort(key=lambda i: i.sequence)
        return result

    def recalculate(
        self,
        loan_id: str,
        new_principal: Optional[Union[Decimal, int, str]] = None,
        new_periods: Optional[int] = None,
        new_start_date: Optional[date] = None
    ) -> List[Installment]:
        """Preview and commit in one call, for callers that already confirmed"""
        with self.storage.atomic():
            preview = self.preview(loan_id, new_principal, new_periods, new_start_date)
            return self.commit(preview)
