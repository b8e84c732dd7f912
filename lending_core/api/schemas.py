"""
Pydantic schemas for API requests and responses
"""

from decimal import Decimal
from datetime import date
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field

from ..amortization import AmortizationSchedule
from ..currency import Money, Currency
from ..deletion import ReversalSummary
from ..exceptions import ValidationError
from ..ledger import LedgerEntry
from ..loans import Expense, InstallmentView, Loan, Payment
from ..recalculation import RecalculationPreview


class MoneyModel(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    currency: str = Field(..., description="Currency code (Pesos, Dolar)")

    def to_money(self) -> Money:
        return Money(Decimal(self.amount), Currency.from_code(self.currency))

    @classmethod
    def from_money(cls, money: Money) -> 'MoneyModel':
        return cls(amount=str(money.amount), currency=money.currency.code)


# Loan schemas
class ExpenseItemModel(BaseModel):
    kind: str = Field(..., description="ORIGINATION or LIEN_TRANSFER")
    amount: str
    description: str = ""


class CreateLoanRequest(BaseModel):
    client_id: str
    principal: str = Field(..., description="Decimal amount as string")
    annual_rate_percent: str = Field(..., description="Nominal annual rate, 65 for 65%")
    installment_count: int
    currency: str = "Pesos"
    frequency: str = Field("monthly", description="monthly or semiannual")
    start_date: Optional[date] = None
    tax_on_interest_percent: Optional[str] = None
    expenses: List[ExpenseItemModel] = []
    disbursement_channel: Optional[str] = Field(None, description="cash or bank; configured default when omitted")


class SimulateLoanRequest(BaseModel):
    principal: str
    annual_rate_percent: str
    installment_count: int
    currency: str = "Pesos"
    frequency: str = "monthly"
    start_date: Optional[date] = None
    tax_on_interest_percent: Optional[str] = None


class UpdateLoanRequest(BaseModel):
    # start_date is not editable here; it goes through the recalculation endpoints
    model_config = ConfigDict(extra="forbid")

    client_id: Optional[str] = None
    annual_rate_percent: Optional[str] = None
    status: Optional[str] = Field(None, description="ACTIVE, CANCELLED or COMPLETED")
    currency: Optional[str] = None


class PayInstallmentRequest(BaseModel):
    method: str = Field(..., description="cash, transfer, card ...")
    reference: str
    channel: Optional[str] = Field(None, description="cash or bank")
    paid_on: Optional[date] = None


class RecalculateRequest(BaseModel):
    new_principal: Optional[str] = None
    new_periods: Optional[int] = None
    new_start_date: Optional[date] = None
    expected_version: Optional[int] = Field(None, description="loan_version returned by the preview")


# Expense schemas
class AttachExpenseRequest(BaseModel):
    loan_id: str
    kind: str
    amount: str
    currency: Optional[str] = None
    description: str = ""


class UpdateExpenseAmountRequest(BaseModel):
    amount: str


class UpdateExpenseStatusRequest(BaseModel):
    status: str = Field(..., description="PENDING, INVOICED or COLLECTED")


# Response builders

def loan_to_dict(loan: Loan) -> Dict[str, Any]:
    return {
        "id": loan.id,
        "client_id": loan.client_id,
        "principal": MoneyModel.from_money(loan.principal).model_dump(),
        "annual_rate_percent": str(loan.annual_rate_percent),
        "installment_count": loan.installment_count,
        "frequency": loan.frequency.value,
        "tax_on_interest_percent": (str(loan.tax_on_interest_percent)
                                    if loan.tax_on_interest_percent is not None else None),
        "start_date": loan.start_date.isoformat(),
        "status": loan.status.value,
        "version": loan.version,
        "deleted_at": loan.deleted_at.isoformat() if loan.deleted_at else None
    }


def installment_to_dict(view: InstallmentView) -> Dict[str, Any]:
    installment = view.installment
    return {
        "id": installment.id,
        "sequence": installment.sequence,
        "amount": MoneyModel.from_money(installment.amount).model_dump(),
        "due_date": installment.due_date.isoformat(),
        "status": installment.status.value,
        "effective_status": view.effective_status.value,
        "days_overdue": view.days_overdue,
        "paid_date": installment.paid_date.isoformat() if installment.paid_date else None,
        "principal_portion": str(installment.principal_portion.amount),
        "interest_portion": str(installment.interest_portion.amount),
        "tax_portion": str(installment.tax_portion.amount),
        "deleted_at": installment.deleted_at.isoformat() if installment.deleted_at else None
    }


def expense_to_dict(expense: Expense) -> Dict[str, Any]:
    return {
        "id": expense.id,
        "loan_id": expense.loan_id,
        "kind": expense.kind.value,
        "amount": MoneyModel.from_money(expense.amount).model_dump(),
        "status": expense.status.value,
        "description": expense.description,
        "deleted_at": expense.deleted_at.isoformat() if expense.deleted_at else None
    }


def payment_to_dict(payment: Payment) -> Dict[str, Any]:
    return {
        "id": payment.id,
        "installment_id": payment.installment_id,
        "loan_id": payment.loan_id,
        "amount": MoneyModel.from_money(payment.amount).model_dump(),
        "method": payment.method,
        "reference": payment.reference,
        "paid_at": payment.paid_at.isoformat(),
        "ledger_entry_id": payment.ledger_entry_id,
        "deleted_at": payment.deleted_at.isoformat() if payment.deleted_at else None
    }


def entry_to_dict(entry: LedgerEntry) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "direction": entry.direction.value,
        "concept": entry.concept,
        "amount": MoneyModel.from_money(entry.amount).model_dump(),
        "channel": entry.channel.value,
        "movement_date": entry.movement_date.isoformat(),
        "reference": entry.reference
    }


def schedule_to_dict(schedule: AmortizationSchedule, currency: Currency) -> Dict[str, Any]:
    return {
        "periodic_payment": str(Money(schedule.periodic_payment, currency).amount),
        "total_payable": MoneyModel.from_money(Money(schedule.total_payable, currency)).model_dump(),
        "total_interest": str(Money(schedule.total_interest, currency).amount),
        "total_tax": str(Money(schedule.total_tax, currency).amount),
        "installments": [
            {"sequence": sequence, "due_date": due_date, "amount": str(amount), "currency": code}
            for sequence, due_date, amount, code in schedule.export_rows(currency)
        ]
    }


def preview_to_dict(preview: RecalculationPreview) -> Dict[str, Any]:
    return {
        "loan_id": preview.loan_id,
        "principal": MoneyModel.from_money(preview.principal).model_dump(),
        "already_paid": MoneyModel.from_money(preview.already_paid).model_dump(),
        "remaining": MoneyModel.from_money(preview.remaining).model_dump(),
        "paid_count": preview.paid_count,
        "installment_count": preview.installment_count,
        "start_date": preview.start_date.isoformat(),
        "appended": preview.appended_count,
        "removed": preview.removed_count,
        "loan_version": preview.loan_version,
        "installments": [
            {"sequence": line.sequence, "due_date": line.due_date.isoformat(),
             "amount": str(line.amount.amount)}
            for line in preview.lines
        ]
    }


def reversal_to_dict(summary: ReversalSummary) -> Dict[str, Any]:
    return {
        "loan_id": summary.loan_id,
        "paid_total": MoneyModel.from_money(summary.paid_total).model_dump(),
        "paid_count": summary.paid_count,
        "installment_count": summary.installment_count,
        "payment_count": summary.payment_count,
        "expense_count": summary.expense_count,
        "requires_confirmation": summary.requires_confirmation,
        "ledger_entry_id": summary.ledger_entry_id,
        "deleted_at": summary.deleted_at.isoformat() if summary.deleted_at else None
    }


def parse_enum(enum_cls, value: str, field: str):
    """Resolve an enum member by value or name, case-insensitively"""
    for member in enum_cls:
        if str(member.value).lower() == value.lower() or member.name == value.upper():
            return member
    raise ValidationError(f"Unknown {field} '{value}'", {field: value})
