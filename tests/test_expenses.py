"""
Test suite for expenses module

Tests attaching origination and lien transfer expenses, the forward-only
billing states and acknowledged removal.
"""

import pytest
from decimal import Decimal

from lending_core.audit import AuditEventType
from lending_core.currency import Currency
from lending_core.exceptions import (
    ConfirmationRequired, DuplicateExpenseKind, ExpenseLocked, ExpenseNotFound,
    LoanNotFound, ValidationError
)
from lending_core.expenses import ExpenseAttacher
from lending_core.loans import ExpenseKind, ExpenseStatus

from conftest import build_store, flat_terms


class TestExpenseAttacher:
    """Test ExpenseAttacher operations"""

    def setup_method(self):
        """Set up test fixtures"""
        self.store = build_store()
        self.attacher = ExpenseAttacher(self.store)
        self.loan = self.store.originate(flat_terms())

    def test_attach_defaults_to_loan_currency(self):
        """Test attaching an expense without a currency"""
        expense = self.attacher.attach(self.loan.id, ExpenseKind.ORIGINATION, "2500.50",
                                       description="Gastos de otorgamiento")

        assert expense.amount.amount == Decimal('2500.50')
        assert expense.amount.currency == Currency.PESOS
        assert expense.status == ExpenseStatus.PENDING
        assert self.attacher.list_for_loan(self.loan.id) == [expense]

    def test_attach_in_other_currency(self):
        """Test an explicit currency overrides the loan currency"""
        expense = self.attacher.attach(self.loan.id, ExpenseKind.LIEN_TRANSFER, "150",
                                       currency=Currency.DOLAR)
        assert expense.amount.currency == Currency.DOLAR

    def test_one_active_expense_per_kind(self):
        """Test a second expense of the same kind is rejected"""
        self.attacher.attach(self.loan.id, ExpenseKind.ORIGINATION, "100")
        with pytest.raises(DuplicateExpenseKind):
            self.attacher.attach(self.loan.id, ExpenseKind.ORIGINATION, "200")

    def test_kind_reusable_after_removal(self):
        """Test a removed expense frees its kind"""
        first = self.attacher.attach(self.loan.id, ExpenseKind.ORIGINATION, "100")
        self.attacher.remove(first.id)
        second = self.attacher.attach(self.loan.id, ExpenseKind.ORIGINATION, "200")
        assert [e.id for e in self.attacher.list_for_loan(self.loan.id)] == [second.id]

    @pytest.mark.parametrize("amount", ["0", "-10"])
    def test_amount_must_be_positive(self, amount):
        """Test non-positive amounts are rejected"""
        with pytest.raises(ValidationError):
            self.attacher.attach(self.loan.id, ExpenseKind.ORIGINATION, amount)

    def test_attach_to_unknown_loan(self):
        """Test attaching to a missing loan"""
        with pytest.raises(LoanNotFound):
            self.attacher.attach("missing", ExpenseKind.ORIGINATION, "100")

    def test_update_amount(self):
        """Test changing an uncollected expense"""
        expense = self.attacher.attach(self.loan.id, ExpenseKind.ORIGINATION, "100")
        updated = self.attacher.update_amount(expense.id, "175.25")
        assert updated.amount.amount == Decimal('175.25')
        assert self.store.get_expense(expense.id).amount.amount == Decimal('175.25')

    def test_status_moves_forward(self):
        """Test PENDING -> INVOICED -> COLLECTED"""
        expense = self.attacher.attach(self.loan.id, ExpenseKind.ORIGINATION, "100")
        self.attacher.update_status(expense.id, ExpenseStatus.INVOICED)
        collected = self.attacher.update_status(expense.id, ExpenseStatus.COLLECTED)
        assert collected.status == ExpenseStatus.COLLECTED

    def test_status_cannot_move_back(self):
        """Test an invoiced expense cannot go back to PENDING"""
        expense = self.attacher.attach(self.loan.id, ExpenseKind.ORIGINATION, "100")
        self.attacher.update_status(expense.id, ExpenseStatus.INVOICED)
        with pytest.raises(ValidationError):
            self.attacher.update_status(expense.id, ExpenseStatus.PENDING)

    def test_collected_expense_is_locked(self):
        """Test collected expenses reject amount and status changes"""
        expense = self.attacher.attach(self.loan.id, ExpenseKind.ORIGINATION, "100")
        self.attacher.update_status(expense.id, ExpenseStatus.COLLECTED)

        with pytest.raises(ExpenseLocked):
            self.attacher.update_amount(expense.id, "50")
        with pytest.raises(ExpenseLocked):
            self.attacher.update_status(expense.id, ExpenseStatus.INVOICED)

    def test_remove_pending_expense(self):
        """Test pending expenses are removed without acknowledgement"""
        expense = self.attacher.attach(self.loan.id, ExpenseKind.ORIGINATION, "100")
        removed = self.attacher.remove(expense.id)

        assert removed.deleted_at is not None
        assert self.attacher.list_for_loan(self.loan.id) == []
        with pytest.raises(ExpenseNotFound):
            self.store.get_expense(expense.id)
        # Still visible through the history read path
        assert [e.id for e in self.store.history(self.loan.id).expenses] == [expense.id]

    def test_remove_invoiced_requires_acknowledge(self):
        """Test invoiced expenses need an explicit acknowledgement"""
        expense = self.attacher.attach(self.loan.id, ExpenseKind.ORIGINATION, "100")
        self.attacher.update_status(expense.id, ExpenseStatus.INVOICED)

        with pytest.raises(ConfirmationRequired):
            self.attacher.remove(expense.id)
        assert len(self.attacher.list_for_loan(self.loan.id)) == 1

        self.attacher.remove(expense.id, acknowledge=True)
        assert self.attacher.list_for_loan(self.loan.id) == []

    def test_expense_changes_are_audited(self):
        """Test attach, update and remove each log an audit event"""
        expense = self.attacher.attach(self.loan.id, ExpenseKind.ORIGINATION, "100")
        self.attacher.update_amount(expense.id, "120")
        self.attacher.remove(expense.id)

        events = self.store.audit_trail.get_events_for_entity("expense", expense.id)
        assert [e.event_type for e in events] == [
            AuditEventType.EXPENSE_ATTACHED,
            AuditEventType.EXPENSE_UPDATED,
            AuditEventType.EXPENSE_REMOVED,
        ]
