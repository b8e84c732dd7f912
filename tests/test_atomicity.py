"""
Test suite for unit-of-work atomicity

A failure anywhere inside a lending operation (storage write, ledger append)
must leave every table exactly as it was, on both storage backends.
"""

import pytest

from lending_core.exceptions import LedgerAppendFailure, PersistenceError
from lending_core.deletion import DeletionReversalEngine
from lending_core.loans import ExpenseKind, ExpenseRequest, InstallmentStatus
from lending_core.payments import PaymentProcessor
from lending_core.recalculation import RecalculationEngine
from lending_core.storage import SQLiteStorage

from conftest import CASH, FailingLedger, FlakyStorage, build_store, flat_terms


TABLES = ("loans", "installments", "expenses", "payments", "ledger_entries", "audit_events")


def snapshot(storage):
    return {table: sorted(storage.load_all(table), key=lambda r: r['id']) for table in TABLES}


class TestCreateAtomicity:
    """Test loan generation is all-or-nothing"""

    def setup_method(self):
        """Set up test fixtures"""
        self.storage = FlakyStorage()
        self.store = build_store(storage=self.storage)

    def test_failure_writing_expenses(self):
        """Test a failing expense write leaves no loan or installment behind"""
        self.storage.fail_table = "expenses"
        with pytest.raises(PersistenceError):
            self.store.originate(flat_terms(), expenses=[
                ExpenseRequest(ExpenseKind.ORIGINATION, "100")
            ])

        assert self.storage.load_all("loans") == []
        assert self.storage.load_all("installments") == []
        assert self.storage.load_all("audit_events") == []

    def test_failure_writing_disbursement(self):
        """Test a failing ledger append rolls the whole loan back"""
        self.storage.fail_table = "ledger_entries"
        with pytest.raises(LedgerAppendFailure):
            self.store.originate(flat_terms(), disbursement_channel=CASH)

        assert self.storage.load_all("loans") == []
        assert self.storage.load_all("installments") == []

    def test_store_usable_after_failure(self):
        """Test the next operation succeeds once the fault clears"""
        self.storage.fail_table = "installments"
        with pytest.raises(PersistenceError):
            self.store.originate(flat_terms())

        self.storage.fail_table = None
        loan = self.store.originate(flat_terms())
        assert len(self.store.get(loan.id).installments) == 12


class TestPaymentAtomicity:
    """Test payments are all-or-nothing"""

    def setup_method(self):
        """Set up test fixtures"""
        self.storage = FlakyStorage()
        self.ledger = FailingLedger(self.storage)
        self.store = build_store(storage=self.storage, ledger=self.ledger)
        self.loan = self.store.originate(flat_terms(periods=2, principal="2000"))
        self.installment = self.store.get(self.loan.id).installments[0]
        self.processor = PaymentProcessor(self.store)

    def test_ledger_failure_leaves_installment_pending(self):
        """Test a rejected ledger entry undoes the payment"""
        before = snapshot(self.storage)
        self.ledger.failing = True

        with pytest.raises(LedgerAppendFailure):
            self.processor.pay(self.installment.id, "cash", "R-1")

        assert snapshot(self.storage) == before
        assert self.store.get_installment(self.installment.id).status == InstallmentStatus.PENDING

    def test_storage_failure_after_ledger_append(self):
        """Test a failing installment write also drops the ledger entry"""
        before = snapshot(self.storage)
        self.storage.fail_table = "installments"

        with pytest.raises(PersistenceError):
            self.processor.pay(self.installment.id, "cash", "R-1")

        assert snapshot(self.storage) == before

    def test_retry_after_failure(self):
        """Test the installment can be paid once the fault clears"""
        self.ledger.failing = True
        with pytest.raises(LedgerAppendFailure):
            self.processor.pay(self.installment.id, "cash", "R-1")

        self.ledger.failing = False
        self.processor.pay(self.installment.id, "cash", "R-1")
        assert self.store.get_installment(self.installment.id).status == InstallmentStatus.PAID


class TestRecalculationAndDeletionAtomicity:
    """Test recalculation and deletion are all-or-nothing"""

    def setup_method(self):
        """Set up test fixtures"""
        self.storage = FlakyStorage()
        self.ledger = FailingLedger(self.storage)
        self.store = build_store(storage=self.storage, ledger=self.ledger)
        self.loan = self.store.originate(flat_terms())
        first = self.store.get(self.loan.id).installments[0]
        PaymentProcessor(self.store).pay(first.id, "cash", "R-1")

    def test_recalculation_failure(self):
        """Test a failing audit write rolls back the rewritten installments"""
        before = snapshot(self.storage)
        self.storage.fail_table = "audit_events"

        with pytest.raises(PersistenceError):
            RecalculationEngine(self.store).recalculate(self.loan.id, new_principal="100000")

        assert snapshot(self.storage) == before

    def test_deletion_ledger_failure(self):
        """Test a rejected reversal entry keeps the loan alive"""
        before = snapshot(self.storage)
        self.ledger.failing = True

        with pytest.raises(LedgerAppendFailure):
            DeletionReversalEngine(self.store).soft_delete(self.loan.id, confirm=True)

        assert snapshot(self.storage) == before
        assert self.store.get(self.loan.id).loan.deleted_at is None


class TestSQLiteAtomicity:
    """Test rollback on the SQLite backend"""

    def setup_method(self):
        """Set up test fixtures"""
        self.storage = SQLiteStorage(":memory:")
        self.ledger = FailingLedger(self.storage)
        self.store = build_store(storage=self.storage, ledger=self.ledger)

    def teardown_method(self):
        self.storage.close()

    def test_create_rolled_back(self):
        """Test a failing disbursement append leaves SQLite empty"""
        self.ledger.failing = True
        with pytest.raises(LedgerAppendFailure):
            self.store.originate(flat_terms(), disbursement_channel=CASH)

        assert self.storage.count("loans") == 0
        assert self.storage.count("installments") == 0

    def test_payment_rolled_back(self):
        """Test a failing payment leaves SQLite unchanged"""
        loan = self.store.originate(flat_terms(periods=2, principal="2000"))
        installment = self.store.get(loan.id).installments[0]
        before = snapshot(self.storage)

        self.ledger.failing = True
        with pytest.raises(LedgerAppendFailure):
            PaymentProcessor(self.store).pay(installment.id, "cash", "R-1")

        assert snapshot(self.storage) == before
