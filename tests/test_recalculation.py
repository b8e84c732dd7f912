"""
Test suite for recalculation module

Tests redistribution of the outstanding balance over pending installments,
term growth and shrinkage, redating, and stale preview detection. Paid
installments must never change.
"""

import pytest
from decimal import Decimal
from datetime import date

from lending_core.audit import AuditEventType
from lending_core.exceptions import NothingToRecalculate, StalePreviewError, ValidationError
from lending_core.loans import LoanStatus
from lending_core.payments import PaymentProcessor
from lending_core.recalculation import RecalculationEngine

from conftest import build_store, flat_terms, sample_terms


class TestRecalculation:
    """Test preview, commit and recalculate"""

    def setup_method(self):
        """Set up 12 x 10000 with the first three installments paid"""
        self.store = build_store()
        self.engine = RecalculationEngine(self.store)
        self.payments = PaymentProcessor(self.store)
        self.loan = self.store.originate(flat_terms())
        for installment in self.store.get(self.loan.id).installments[:3]:
            self.payments.pay(installment.id, "cash", f"R-{installment.sequence}")
        self.paid_before = [
            (i.id, i.amount, i.due_date) for i in self.store.get(self.loan.id).installments[:3]
        ]

    def _pending(self):
        return [i for i in self.store.get(self.loan.id).installments if not i.is_paid]

    def _assert_paid_untouched(self):
        paid = [(i.id, i.amount, i.due_date)
                for i in self.store.get(self.loan.id).installments if i.is_paid]
        assert paid == self.paid_before

    def test_same_principal_gives_nine_times_ten_thousand(self):
        """Test 120000 with 30000 paid spreads 90000 over nine installments"""
        result = self.engine.recalculate(self.loan.id, new_principal="120000")

        assert [i.amount.amount for i in result] == [Decimal('10000.00')] * 9
        self._assert_paid_untouched()

    def test_residual_goes_to_last_pending(self):
        """Test 70000 over nine installments rounds with the last absorbing the residual"""
        result = self.engine.recalculate(self.loan.id, new_principal="100000")

        amounts = [i.amount.amount for i in result]
        assert amounts[:8] == [Decimal('7777.78')] * 8
        assert amounts[-1] == Decimal('7777.76')
        assert sum(amounts) == Decimal('70000.00')
        assert self.store.get(self.loan.id).loan.principal.amount == Decimal('100000.00')
        self._assert_paid_untouched()

    def test_breakdown_is_zeroed(self):
        """Test recalculated installments drop the amortization breakdown"""
        store = build_store()
        loan = store.originate(sample_terms())
        RecalculationEngine(store).recalculate(loan.id, new_principal="130000")

        for installment in store.get(loan.id).installments:
            assert installment.interest_portion.is_zero()
            assert installment.tax_portion.is_zero()

    def test_preview_has_no_side_effects(self):
        """Test preview writes nothing"""
        before = self.store.storage.load_all("installments")
        events_before = len(self.store.audit_trail.get_all_events())

        preview = self.engine.preview(self.loan.id, new_principal="100000")

        assert preview.remaining.amount == Decimal('70000.00')
        assert preview.already_paid.amount == Decimal('30000.00')
        assert preview.paid_count == 3
        assert self.store.storage.load_all("installments") == before
        assert len(self.store.audit_trail.get_all_events()) == events_before

    def test_grow_term_appends_installments(self):
        """Test a longer term appends pending installments continuing the dates"""
        result = self.engine.recalculate(self.loan.id, new_periods=15)

        assert [i.sequence for i in result] == list(range(4, 16))
        assert all(i.amount.amount == Decimal('7500.00') for i in result)
        assert result[-1].due_date == date(2025, 4, 1)
        detail = self.store.get(self.loan.id)
        assert detail.loan.installment_count == 15
        assert [i.sequence for i in detail.installments] == list(range(1, 16))
        self._assert_paid_untouched()

    def test_shrink_term_removes_trailing_pending(self):
        """Test a shorter term soft-deletes trailing pending installments"""
        result = self.engine.recalculate(self.loan.id, new_periods=6)

        assert [i.amount.amount for i in result] == [Decimal('30000.00')] * 3
        detail = self.store.get(self.loan.id)
        assert [i.sequence for i in detail.installments] == list(range(1, 7))

        history = self.store.history(self.loan.id)
        removed = [i for i in history.installments if i.deleted_at is not None]
        assert [i.sequence for i in removed] == list(range(7, 13))
        self._assert_paid_untouched()

    def test_shrink_cannot_drop_paid_installment(self):
        """Test a paid installment beyond the new term blocks the shrink"""
        tenth = self.store.get(self.loan.id).installments[9]
        self.payments.pay(tenth.id, "cash", "R-10")

        with pytest.raises(ValidationError):
            self.engine.preview(self.loan.id, new_periods=6)

    @pytest.mark.parametrize("periods", [2, 3])
    def test_term_must_exceed_paid_count(self, periods):
        """Test the new term must leave at least one pending installment"""
        with pytest.raises(ValidationError):
            self.engine.preview(self.loan.id, new_periods=periods)

    def test_remaining_must_be_positive(self):
        """Test a principal already covered by payments is rejected"""
        with pytest.raises(ValidationError):
            self.engine.preview(self.loan.id, new_principal="30000")
        with pytest.raises(ValidationError):
            self.engine.preview(self.loan.id, new_principal="25000")

    def test_new_start_date_redates_pending_only(self):
        """Test paid installments keep their due dates"""
        result = self.engine.recalculate(self.loan.id, new_start_date=date(2024, 5, 31))

        assert result[0].sequence == 4
        assert result[0].due_date == date(2024, 9, 30)
        assert result[1].due_date == date(2024, 10, 31)
        assert self.store.get(self.loan.id).loan.start_date == date(2024, 5, 31)
        self._assert_paid_untouched()

    def test_remaining_too_small_for_pending_count(self):
        """Test a balance that cannot give each installment a cent is rejected"""
        before = [(i.id, i.amount) for i in self._pending()]

        with pytest.raises(ValidationError) as exc_info:
            self.engine.recalculate(self.loan.id, new_principal="30000.05")
        assert exc_info.value.context["installments"] == 9
        with pytest.raises(ValidationError):
            self.engine.preview(self.loan.id, new_principal="30000.14")

        assert [(i.id, i.amount) for i in self._pending()] == before

    def test_one_cent_per_pending_installment(self):
        """Test the smallest balance that still spreads to every installment"""
        result = self.engine.recalculate(self.loan.id, new_principal="30000.09")

        assert [i.amount.amount for i in result] == [Decimal('0.01')] * 9
        PaymentProcessor(self.store).pay(result[-1].id, "cash", "R-last")

    def test_every_preview_amount_is_positive(self):
        """Test previews across principals and terms never hold a non-positive line"""
        for principal in ("30000.50", "30001", "45000", "120000"):
            for periods in (4, 9, 12, 24):
                try:
                    preview = self.engine.preview(self.loan.id, new_principal=principal,
                                                  new_periods=periods)
                except ValidationError:
                    continue
                assert all(line.amount.is_positive() for line in preview.lines)

    def test_earlier_start_date_rejected(self):
        """Test pending installments cannot be redated before the paid ones"""
        before = [(i.id, i.due_date) for i in self.store.get(self.loan.id).installments]

        with pytest.raises(ValidationError) as exc_info:
            self.engine.recalculate(self.loan.id, new_start_date=date(2023, 1, 1))
        assert exc_info.value.context["sequence"] == 4

        assert [(i.id, i.due_date) for i in self.store.get(self.loan.id).installments] == before
        assert self.store.get(self.loan.id).loan.start_date == date(2024, 1, 1)

    def test_earlier_start_date_keeping_order(self):
        """Test the start may move back while pending dates stay after the paid ones"""
        self.engine.recalculate(self.loan.id, new_start_date=date(2023, 12, 15))

        dates = [i.due_date for i in self.store.get(self.loan.id).installments]
        assert dates[2] == date(2024, 4, 1)
        assert dates[3] == date(2024, 4, 15)
        assert dates == sorted(dates)
        self._assert_paid_untouched()

    def test_stale_preview_rejected(self):
        """Test committing after a payment raises StalePreviewError"""
        preview = self.engine.preview(self.loan.id, new_principal="100000")
        fourth = self._pending()[0]
        self.payments.pay(fourth.id, "cash", "R-4")

        with pytest.raises(StalePreviewError):
            self.engine.commit(preview)
        assert all(i.amount.amount == Decimal('10000.00') for i in self._pending())

    def test_commit_is_audited(self):
        """Test a commit logs LOAN_RECALCULATED"""
        self.engine.recalculate(self.loan.id, new_principal="100000")
        events = self.store.audit_trail.get_events_for_entity("loan", self.loan.id)
        assert events[-1].event_type == AuditEventType.LOAN_RECALCULATED
        assert events[-1].metadata["remaining"] == "70000.00"


class TestNothingToRecalculate:
    """Test fully paid loans"""

    def test_fully_paid_loan(self):
        """Test a loan with no pending installments cannot be recalculated"""
        store = build_store()
        loan = store.originate(flat_terms(periods=2, principal="2000"))
        processor = PaymentProcessor(store)
        for installment in store.get(loan.id).installments:
            processor.pay(installment.id, "cash", "R")
        assert store.get(loan.id).loan.status == LoanStatus.COMPLETED

        with pytest.raises(NothingToRecalculate):
            RecalculationEngine(store).preview(loan.id, new_principal="3000")

    def test_growing_a_completed_loan_reactivates_it(self):
        """Test appending installments to a completed loan makes it ACTIVE again"""
        store = build_store()
        loan = store.originate(flat_terms(periods=2, principal="2000"))
        processor = PaymentProcessor(store)
        for installment in store.get(loan.id).installments:
            processor.pay(installment.id, "cash", "R")

        result = RecalculationEngine(store).recalculate(loan.id, new_principal="3000", new_periods=3)

        assert [i.amount.amount for i in result] == [Decimal('1000.00')]
        assert store.get(loan.id).loan.status == LoanStatus.ACTIVE
