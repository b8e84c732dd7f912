"""
Loan endpoints
"""

from datetime import date
from typing import Optional
from fastapi import APIRouter, Depends, status

from .dependencies import get_lending_system, http_error
from .schemas import (
    CreateLoanRequest, PayInstallmentRequest, RecalculateRequest, SimulateLoanRequest,
    UpdateLoanRequest, expense_to_dict, installment_to_dict, loan_to_dict, parse_enum,
    payment_to_dict, preview_to_dict, reversal_to_dict, schedule_to_dict
)
from ..amortization import AmortizationCalculator, PaymentFrequency
from ..currency import Currency
from ..exceptions import LendingError, StalePreviewError
from ..ledger import LedgerChannel
from ..loans import ExpenseKind, ExpenseRequest, LoanStatus, LoanTerms, installment_view
from ..payments import DEFAULT_PAYMENT_METHODS
from ..system import LendingSystem


router = APIRouter()


@router.post("/simulate")
async def simulate_loan(request: SimulateLoanRequest):
    """Compute a schedule without persisting anything"""
    try:
        currency = Currency.from_code(request.currency)
        schedule = AmortizationCalculator().compute_schedule(
            principal=request.principal,
            annual_rate_percent=request.annual_rate_percent,
            periods=request.installment_count,
            frequency=request.frequency,
            tax_on_interest_percent=request.tax_on_interest_percent,
            start_date=request.start_date
        )
        schedule.payable_totals(currency)
        return schedule_to_dict(schedule, currency)

    except LendingError as e:
        raise http_error(e)


@router.get("/terms")
async def get_term_options(frequency: str = "monthly", convert_from: Optional[str] = None,
                           periods: Optional[int] = None):
    """Offered terms for a frequency, optionally converting a term from another frequency"""
    try:
        target = PaymentFrequency.parse(frequency)
        result = {"frequency": target.value, "options": list(AmortizationCalculator.term_options(target))}
        if convert_from and periods:
            result["converted"] = AmortizationCalculator.convert_term(periods, convert_from, target)
        return result

    except LendingError as e:
        raise http_error(e)


@router.get("/payment-methods")
async def get_payment_methods():
    """Payment methods offered by default"""
    return {"methods": list(DEFAULT_PAYMENT_METHODS)}


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_loan(
    request: CreateLoanRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Generate a loan with its installments and expenses"""
    try:
        terms = LoanTerms(
            client_id=request.client_id,
            principal=request.principal,
            annual_rate_percent=request.annual_rate_percent,
            installment_count=request.installment_count,
            currency=Currency.from_code(request.currency),
            frequency=request.frequency,
            start_date=request.start_date,
            tax_on_interest_percent=request.tax_on_interest_percent
        )
        expenses = [
            ExpenseRequest(parse_enum(ExpenseKind, item.kind, "kind"), item.amount, item.description)
            for item in request.expenses
        ]
        channel = (parse_enum(LedgerChannel, request.disbursement_channel, "channel")
                   if request.disbursement_channel else system.disbursement_channel)

        loan = system.loan_store.originate(terms, expenses, channel)

        return {
            "loan_id": loan.id,
            "status": loan.status.value,
            "message": "Loan created successfully"
        }

    except LendingError as e:
        raise http_error(e)


@router.get("")
async def list_loans(
    client_id: Optional[str] = None,
    loan_status: Optional[str] = None,
    system: LendingSystem = Depends(get_lending_system)
):
    """List loans, newest start date first"""
    try:
        status_filter = parse_enum(LoanStatus, loan_status, "status") if loan_status else None
        loans = system.loan_store.list_loans(client_id=client_id, status=status_filter)
        return {"loans": [loan_to_dict(loan) for loan in loans]}

    except LendingError as e:
        raise http_error(e)


@router.get("/{loan_id}")
async def get_loan(
    loan_id: str,
    today: Optional[date] = None,
    system: LendingSystem = Depends(get_lending_system)
):
    """Get loan details with installments and expenses"""
    try:
        detail = system.loan_store.get(loan_id)
        result = loan_to_dict(detail.loan)
        result.update({
            "client_name": system.loan_store.display_name(detail.loan.client_id),
            "paid_count": detail.paid_count,
            "pending_count": detail.pending_count,
            "outstanding_total": str(detail.outstanding_total.amount),
            "installments": [installment_to_dict(view) for view in detail.views(today)],
            "expenses": [expense_to_dict(expense) for expense in detail.expenses]
        })
        return result

    except LendingError as e:
        raise http_error(e)


@router.patch("/{loan_id}")
async def update_loan(
    loan_id: str,
    request: UpdateLoanRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Edit client, rate, status or currency; dates move through /recalculate"""
    try:
        loan = system.loan_store.update_terms(
            loan_id,
            client_id=request.client_id,
            annual_rate_percent=request.annual_rate_percent,
            status=parse_enum(LoanStatus, request.status, "status") if request.status else None,
            currency=Currency.from_code(request.currency) if request.currency else None
        )
        return loan_to_dict(loan)

    except LendingError as e:
        raise http_error(e)


@router.get("/{loan_id}/history")
async def get_loan_history(
    loan_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """Every row of a loan, soft-deleted ones included"""
    try:
        history = system.loan_store.history(loan_id)
        return {
            "loan": loan_to_dict(history.loan),
            "installments": [installment_to_dict(installment_view(i)) for i in history.installments],
            "expenses": [expense_to_dict(e) for e in history.expenses],
            "payments": [payment_to_dict(p) for p in history.payments]
        }

    except LendingError as e:
        raise http_error(e)


@router.post("/installments/{installment_id}/pay")
async def pay_installment(
    installment_id: str,
    request: PayInstallmentRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Pay one installment"""
    try:
        channel = (parse_enum(LedgerChannel, request.channel, "channel")
                   if request.channel else system.default_channel)
        payment = system.payment_processor.pay(
            installment_id, request.method, request.reference,
            channel=channel, paid_on=request.paid_on
        )
        result = payment_to_dict(payment)
        result["message"] = "Installment paid successfully"
        return result

    except LendingError as e:
        raise http_error(e)


@router.post("/{loan_id}/recalculate/preview")
async def preview_recalculation(
    loan_id: str,
    request: RecalculateRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Show the recalculated pending installments without saving them"""
    try:
        preview = system.recalculation_engine.preview(
            loan_id, request.new_principal, request.new_periods, request.new_start_date
        )
        return preview_to_dict(preview)

    except LendingError as e:
        raise http_error(e)


@router.post("/{loan_id}/recalculate")
async def recalculate_loan(
    loan_id: str,
    request: RecalculateRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Apply a recalculation; rejected when the loan changed since ``expected_version``"""
    try:
        engine = system.recalculation_engine
        with system.storage.atomic():
            preview = engine.preview(loan_id, request.new_principal, request.new_periods,
                                     request.new_start_date)
            if request.expected_version is not None and preview.loan_version != request.expected_version:
                raise StalePreviewError(
                    f"Loan {loan_id} changed after the recalculation preview",
                    {"loan_id": loan_id, "preview_version": request.expected_version,
                     "current_version": preview.loan_version}
                )
            installments = engine.commit(preview)
        return {
            "loan_id": loan_id,
            "installments": [installment_to_dict(installment_view(i)) for i in installments],
            "message": "Loan recalculated successfully"
        }

    except LendingError as e:
        raise http_error(e)


@router.get("/{loan_id}/deletion-preview")
async def preview_deletion(
    loan_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """What deleting the loan would remove and reverse"""
    try:
        return reversal_to_dict(system.deletion_engine.preview(loan_id))

    except LendingError as e:
        raise http_error(e)


@router.delete("/{loan_id}")
async def delete_loan(
    loan_id: str,
    confirm: bool = False,
    channel: Optional[str] = None,
    system: LendingSystem = Depends(get_lending_system)
):
    """Soft-delete a loan; paid loans need ``confirm=true``"""
    try:
        ledger_channel = parse_enum(LedgerChannel, channel, "channel") if channel else system.default_channel
        summary = system.deletion_engine.soft_delete(loan_id, channel=ledger_channel, confirm=confirm)
        result = reversal_to_dict(summary)
        result["message"] = "Loan deleted successfully"
        return result

    except LendingError as e:
        raise http_error(e)
