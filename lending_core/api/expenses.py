"""
Expense endpoints
"""

from fastapi import APIRouter, Depends, status

from .dependencies import get_lending_system, http_error
from .schemas import (
    AttachExpenseRequest, UpdateExpenseAmountRequest, UpdateExpenseStatusRequest,
    expense_to_dict, parse_enum
)
from ..currency import Currency
from ..exceptions import LendingError
from ..loans import ExpenseKind, ExpenseStatus
from ..system import LendingSystem


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def attach_expense(
    request: AttachExpenseRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Attach an origination or lien transfer expense to a loan"""
    try:
        expense = system.expense_attacher.attach(
            request.loan_id,
            parse_enum(ExpenseKind, request.kind, "kind"),
            request.amount,
            currency=Currency.from_code(request.currency) if request.currency else None,
            description=request.description
        )
        result = expense_to_dict(expense)
        result["message"] = "Expense attached successfully"
        return result

    except LendingError as e:
        raise http_error(e)


@router.get("")
async def list_expenses(
    loan_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """Active expenses of a loan"""
    try:
        expenses = system.expense_attacher.list_for_loan(loan_id)
        return {"expenses": [expense_to_dict(e) for e in expenses]}

    except LendingError as e:
        raise http_error(e)


@router.patch("/{expense_id}/amount")
async def update_expense_amount(
    expense_id: str,
    request: UpdateExpenseAmountRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    try:
        return expense_to_dict(system.expense_attacher.update_amount(expense_id, request.amount))

    except LendingError as e:
        raise http_error(e)


@router.patch("/{expense_id}/status")
async def update_expense_status(
    expense_id: str,
    request: UpdateExpenseStatusRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    try:
        expense = system.expense_attacher.update_status(
            expense_id, parse_enum(ExpenseStatus, request.status, "status")
        )
        return expense_to_dict(expense)

    except LendingError as e:
        raise http_error(e)


@router.delete("/{expense_id}")
async def remove_expense(
    expense_id: str,
    acknowledge: bool = False,
    system: LendingSystem = Depends(get_lending_system)
):
    """Remove an expense; invoiced or collected ones need ``acknowledge=true``"""
    try:
        expense = system.expense_attacher.remove(expense_id, acknowledge=acknowledge)
        return {"expense_id": expense.id, "message": "Expense removed successfully"}

    except LendingError as e:
        raise http_error(e)
