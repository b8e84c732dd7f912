"""
Loan Module

Loan, installment, expense and payment records, and the lifecycle store that
owns them. The store writes a loan together with every installment and
expense in one unit of work and enforces the cross-record invariants: dense
immutable sequence numbers, at most one active expense per kind, and a
currency that cannot change once an installment has been paid.

Rows are never physically removed. Soft-deleted rows carry ``deleted_at`` and
are hidden from the normal read paths but stay reachable through
``LoanLifecycleStore.history``.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union
from enum import Enum
import uuid

from .amortization import AmortizationCalculator, AmortizationSchedule, PaymentFrequency
from .audit import AuditTrail, AuditEventType
from .clients import ClientDirectory, resolve_display_name
from .currency import Money, Currency, to_decimal
from .exceptions import (
    CurrencyLockedError, DuplicateExpenseKind, ExpenseNotFound, InstallmentNotFound,
    LoanNotFound, ValidationError
)
from .ledger import LedgerChannel, LedgerDirection, LedgerGateway, new_entry
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord


class LoanStatus(Enum):
    """Loan lifecycle states"""
    ACTIVE = "ACTIVE"
    CANCELLED = "CANCELLED"
    COMPLETED = "COMPLETED"


class InstallmentStatus(Enum):
    """
    Installment states. Only PENDING and PAID are ever stored; OVERDUE is
    produced by ``installment_view`` at read time.
    """
    PENDING = "PENDING"
    PAID = "PAID"
    OVERDUE = "OVERDUE"


class ExpenseKind(Enum):
    """One-time charges attached to a loan"""
    ORIGINATION = "ORIGINATION"
    LIEN_TRANSFER = "LIEN_TRANSFER"


class ExpenseStatus(Enum):
    """Billing state of an expense; moves forward only"""
    PENDING = "PENDING"
    INVOICED = "INVOICED"
    COLLECTED = "COLLECTED"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _money(data: Dict[str, Any], key: str, currency_key: str = 'currency') -> Money:
    return Money(Decimal(data[key]), Currency.from_code(data[currency_key]))


@dataclass
class Loan(StorageRecord):
    """Loan header"""
    client_id: str
    principal: Money
    annual_rate_percent: Decimal
    installment_count: int
    start_date: date
    frequency: PaymentFrequency = PaymentFrequency.MONTHLY
    tax_on_interest_percent: Optional[Decimal] = None
    status: LoanStatus = LoanStatus.ACTIVE
    version: int = 1
    deleted_at: Optional[datetime] = None

    @property
    def currency(self) -> Currency:
        return self.principal.currency

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'client_id': self.client_id,
            'principal': str(self.principal.amount),
            'currency': self.principal.currency.code,
            'annual_rate_percent': str(self.annual_rate_percent),
            'installment_count': self.installment_count,
            'start_date': self.start_date.isoformat(),
            'frequency': self.frequency.value,
            'tax_on_interest_percent': (str(self.tax_on_interest_percent)
                                        if self.tax_on_interest_percent is not None else None),
            'status': self.status.value,
            'version': self.version,
            'deleted_at': self.deleted_at.isoformat() if self.deleted_at else None
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        tax = data.get('tax_on_interest_percent')
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            client_id=data['client_id'],
            principal=_money(data, 'principal'),
            annual_rate_percent=Decimal(data['annual_rate_percent']),
            installment_count=data['installment_count'],
            start_date=date.fromisoformat(data['start_date']),
            frequency=PaymentFrequency(data['frequency']),
            tax_on_interest_percent=Decimal(tax) if tax is not None else None,
            status=LoanStatus(data['status']),
            version=data.get('version', 1),
            deleted_at=cls.parse_datetime(data.get('deleted_at'))
        )


@dataclass
class Installment(StorageRecord):
    """
    One scheduled repayment. Amount and due date are frozen once PAID.

    The principal/interest/tax portions are the breakdown quoted when the
    schedule was generated; a recalculation replaces the amount with a flat
    share and zeroes the breakdown.
    """
    loan_id: str
    sequence: int
    amount: Money
    due_date: date
    status: InstallmentStatus = InstallmentStatus.PENDING
    paid_date: Optional[date] = None
    principal_portion: Optional[Money] = None
    interest_portion: Optional[Money] = None
    tax_portion: Optional[Money] = None
    version: int = 1
    deleted_at: Optional[datetime] = None

    def __post_init__(self):
        zero = Money.zero(self.amount.currency)
        if self.principal_portion is None:
            self.principal_portion = zero
        if self.interest_portion is None:
            self.interest_portion = zero
        if self.tax_portion is None:
            self.tax_portion = zero

    @property
    def is_paid(self) -> bool:
        return self.status == InstallmentStatus.PAID

    @property
    def is_payable(self) -> bool:
        return self.status == InstallmentStatus.PENDING and self.deleted_at is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'loan_id': self.loan_id,
            'sequence': self.sequence,
            'amount': str(self.amount.amount),
            'currency': self.amount.currency.code,
            'due_date': self.due_date.isoformat(),
            'status': self.status.value,
            'paid_date': self.paid_date.isoformat() if self.paid_date else None,
            'principal_portion': str(self.principal_portion.amount),
            'interest_portion': str(self.interest_portion.amount),
            'tax_portion': str(self.tax_portion.amount),
            'version': self.version,
            'deleted_at': self.deleted_at.isoformat() if self.deleted_at else None
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Installment':
        currency = Currency.from_code(data['currency'])
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            sequence=data['sequence'],
            amount=Money(Decimal(data['amount']), currency),
            due_date=date.fromisoformat(data['due_date']),
            status=InstallmentStatus(data['status']),
            paid_date=cls.parse_date(data.get('paid_date')),
            principal_portion=Money(Decimal(data.get('principal_portion', '0')), currency),
            interest_portion=Money(Decimal(data.get('interest_portion', '0')), currency),
            tax_portion=Money(Decimal(data.get('tax_portion', '0')), currency),
            version=data.get('version', 1),
            deleted_at=cls.parse_datetime(data.get('deleted_at'))
        )


@dataclass
class Expense(StorageRecord):
    """One-time fee billed and collected independently of the installments"""
    loan_id: str
    kind: ExpenseKind
    amount: Money
    status: ExpenseStatus = ExpenseStatus.PENDING
    description: str = ""
    version: int = 1
    deleted_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'loan_id': self.loan_id,
            'kind': self.kind.value,
            'amount': str(self.amount.amount),
            'currency': self.amount.currency.code,
            'status': self.status.value,
            'description': self.description,
            'version': self.version,
            'deleted_at': self.deleted_at.isoformat() if self.deleted_at else None
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Expense':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            kind=ExpenseKind(data['kind']),
            amount=_money(data, 'amount'),
            status=ExpenseStatus(data['status']),
            description=data.get('description', ""),
            version=data.get('version', 1),
            deleted_at=cls.parse_datetime(data.get('deleted_at'))
        )


@dataclass
class Payment(StorageRecord):
    """Record of one installment payment. Written once, soft-deleted with its loan."""
    installment_id: str
    loan_id: str
    amount: Money
    method: str
    reference: str
    paid_at: datetime
    ledger_entry_id: Optional[str] = None
    deleted_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'installment_id': self.installment_id,
            'loan_id': self.loan_id,
            'amount': str(self.amount.amount),
            'currency': self.amount.currency.code,
            'method': self.method,
            'reference': self.reference,
            'paid_at': self.paid_at.isoformat(),
            'ledger_entry_id': self.ledger_entry_id,
            'deleted_at': self.deleted_at.isoformat() if self.deleted_at else None
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Payment':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            installment_id=data['installment_id'],
            loan_id=data['loan_id'],
            amount=_money(data, 'amount'),
            method=data['method'],
            reference=data['reference'],
            paid_at=datetime.fromisoformat(data['paid_at']),
            ledger_entry_id=data.get('ledger_entry_id'),
            deleted_at=cls.parse_datetime(data.get('deleted_at'))
        )


@dataclass
class LoanTerms:
    """Inputs for a new loan"""
    client_id: str
    principal: Union[Decimal, int, str]
    annual_rate_percent: Union[Decimal, int, str]
    installment_count: int
    currency: Currency = Currency.PESOS
    frequency: PaymentFrequency = PaymentFrequency.MONTHLY
    start_date: Optional[date] = None
    tax_on_interest_percent: Optional[Union[Decimal, int, str]] = None

    def __post_init__(self):
        if not self.client_id:
            raise ValidationError("A loan needs a client")
        self.principal = to_decimal(self.principal)
        self.annual_rate_percent = to_decimal(self.annual_rate_percent)
        if self.tax_on_interest_percent is not None:
            self.tax_on_interest_percent = to_decimal(self.tax_on_interest_percent)
        self.frequency = PaymentFrequency.parse(self.frequency)
        if isinstance(self.currency, str):
            self.currency = Currency.from_code(self.currency)
        if self.start_date is None:
            self.start_date = date.today()


@dataclass
class ExpenseRequest:
    """Expense to attach while generating a loan"""
    kind: ExpenseKind
    amount: Union[Decimal, int, str]
    description: str = ""


@dataclass
class InstallmentView:
    """Read-time projection of an installment with its effective status"""
    installment: Installment
    effective_status: InstallmentStatus
    days_overdue: int = 0

    @property
    def is_payable(self) -> bool:
        return self.effective_status in (InstallmentStatus.PENDING, InstallmentStatus.OVERDUE)


def installment_view(installment: Installment, today: Optional[date] = None) -> InstallmentView:
    """
    Single source of truth for OVERDUE: a stored PENDING installment whose due
    date has passed.
    """
    today = today or date.today()
    if installment.status == InstallmentStatus.PENDING and installment.due_date < today:
        return InstallmentView(installment, InstallmentStatus.OVERDUE,
                               (today - installment.due_date).days)
    return InstallmentView(installment, installment.status)


@dataclass
class LoanDetail:
    """A loan with its active installments and expenses"""
    loan: Loan
    installments: List[Installment]
    expenses: List[Expense] = field(default_factory=list)

    @property
    def paid_count(self) -> int:
        return sum(1 for i in self.installments if i.is_paid)

    @property
    def pending_count(self) -> int:
        return sum(1 for i in self.installments if not i.is_paid)

    @property
    def paid_total(self) -> Money:
        return _sum_money((i.amount for i in self.installments if i.is_paid), self.loan.currency)

    @property
    def outstanding_total(self) -> Money:
        return _sum_money((i.amount for i in self.installments if not i.is_paid), self.loan.currency)

    def views(self, today: Optional[date] = None) -> List[InstallmentView]:
        return [installment_view(i, today) for i in self.installments]

    def export_rows(self) -> List[tuple]:
        """``(sequence, due date ISO-8601, amount, currency)`` tuples"""
        return [
            (i.sequence, i.due_date.isoformat(), i.amount.amount, i.amount.currency.code)
            for i in self.installments
        ]


@dataclass
class LoanHistory:
    """Audit read path: every row of a loan, soft-deleted ones included"""
    loan: Loan
    installments: List[Installment]
    expenses: List[Expense]
    payments: List[Payment]


def _sum_money(amounts, currency: Currency) -> Money:
    total = Money.zero(currency)
    for amount in amounts:
        total = total + amount
    return total


class LoanLifecycleStore:
    """
    Owns the authoritative state of loans, installments, expenses and payments
    """

    def __init__(
        self,
        storage: StorageInterface,
        ledger: LedgerGateway,
        audit_trail: AuditTrail,
        client_directory: Optional[ClientDirectory] = None,
        calculator: Optional[AmortizationCalculator] = None,
        unidentified_client_label: str = "unidentified client"
    ):
        self.storage = storage
        self.ledger = ledger
        self.audit_trail = audit_trail
        self.client_directory = client_directory
        self.calculator = calculator or AmortizationCalculator()
        self.unidentified_client_label = unidentified_client_label
        self.logger = get_logger("lending.loans")

        self.loans_table = "loans"
        self.installments_table = "installments"
        self.expenses_table = "expenses"
        self.payments_table = "payments"

    # Creation

    def create(
        self,
        terms: LoanTerms,
        schedule: AmortizationSchedule,
        expenses: Optional[List[ExpenseRequest]] = None,
        disbursement_channel: Optional[LedgerChannel] = None
    ) -> Loan:
        """
        Persist a loan, its installments and expenses in one unit of work.

        Args:
            terms: Loan inputs
            schedule: Schedule computed from the same terms
            expenses: Optional expenses to attach (one per kind)
            disbursement_channel: When given, an EGRESO entry for the
                principal is appended in the same transaction

        Returns:
            Created Loan

        Raises:
            ValidationError: If the schedule does not match the terms, or rounding
                leaves an installment that could not be paid
            DuplicateExpenseKind: If two expenses share a kind
        """
        self._check_schedule_matches(terms, schedule)
        expenses = expenses or []
        kinds = [e.kind for e in expenses]
        if len(kinds) != len(set(kinds)):
            raise DuplicateExpenseKind("A loan can carry at most one expense of each kind",
                                       {"kinds": [k.value for k in kinds]})

        now = utcnow()
        currency = terms.currency
        loan = Loan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            client_id=terms.client_id,
            principal=Money(terms.principal, currency),
            annual_rate_percent=terms.annual_rate_percent,
            installment_count=terms.installment_count,
            start_date=terms.start_date,
            frequency=terms.frequency,
            tax_on_interest_percent=terms.tax_on_interest_percent
        )

        totals = schedule.payable_totals(currency)
        principals = schedule.rounded_principals(currency)
        interest = schedule.rounded_interest(currency)
        taxes = schedule.rounded_tax(currency)
        installments = [
            Installment(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                loan_id=loan.id,
                sequence=line.sequence,
                amount=Money(totals[idx], currency),
                due_date=line.due_date,
                principal_portion=Money(principals[idx], currency),
                interest_portion=Money(interest[idx], currency),
                tax_portion=Money(taxes[idx], currency)
            )
            for idx, line in enumerate(schedule.lines)
        ]

        expense_rows = [
            self.build_expense(loan, request.kind, request.amount, currency, request.description, now)
            for request in expenses
        ]

        with self.storage.atomic():
            self.save_loan(loan, bump=False)
            for installment in installments:
                self.save_installment(installment, bump=False)
            for expense in expense_rows:
                self.save_expense(expense, bump=False)

            disbursement_id = None
            if disbursement_channel is not None:
                client_name = self.display_name(loan.client_id)
                entry = self.ledger.append(new_entry(
                    direction=LedgerDirection.EGRESO,
                    concept=f"Loan disbursement to {client_name} - {loan.principal.to_string()}",
                    amount=loan.principal,
                    channel=disbursement_channel,
                    reference=loan.id
                ))
                disbursement_id = entry.id

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_CREATED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={
                    "client_id": loan.client_id,
                    "principal": loan.principal.to_string(),
                    "annual_rate_percent": loan.annual_rate_percent,
                    "installments": loan.installment_count,
                    "frequency": loan.frequency.value,
                    "expenses": [e.kind.value for e in expense_rows],
                    "disbursement_entry_id": disbursement_id
                }
            )

        log_action(
            self.logger, "info", f"Loan created for client {loan.client_id}",
            action="create_loan", resource=f"loan:{loan.id}",
            extra={
                "principal": loan.principal.to_string(),
                "installments": loan.installment_count,
                "total_payable": str(sum(totals, Decimal('0')))
            }
        )
        return loan

    def originate(
        self,
        terms: LoanTerms,
        expenses: Optional[List[ExpenseRequest]] = None,
        disbursement_channel: Optional[LedgerChannel] = None
    ) -> Loan:
        """Compute the schedule for ``terms`` and create the loan"""
        schedule = self.calculator.compute_schedule(
            principal=terms.principal,
            annual_rate_percent=terms.annual_rate_percent,
            periods=terms.installment_count,
            frequency=terms.frequency,
            tax_on_interest_percent=terms.tax_on_interest_percent,
            start_date=terms.start_date
        )
        return self.create(terms, schedule, expenses, disbursement_channel)

    # Reads

    def get(self, loan_id: str) -> LoanDetail:
        """Loan with its active installments (by sequence) and expenses"""
        loan = self.get_loan(loan_id)
        return LoanDetail(
            loan=loan,
            installments=self.installments_for(loan_id),
            expenses=self.expenses_for(loan_id)
        )

    def get_loan(self, loan_id: str, include_deleted: bool = False) -> Loan:
        data = self.storage.load(self.loans_table, loan_id)
        if not data or (data.get('deleted_at') and not include_deleted):
            raise LoanNotFound(f"Loan {loan_id} not found", {"loan_id": loan_id})
        return Loan.from_dict(data)

    def get_installment(self, installment_id: str) -> Installment:
        data = self.storage.load(self.installments_table, installment_id)
        if not data or data.get('deleted_at'):
            raise InstallmentNotFound(f"Installment {installment_id} not found",
                                      {"installment_id": installment_id})
        return Installment.from_dict(data)

    def get_expense(self, expense_id: str) -> Expense:
        data = self.storage.load(self.expenses_table, expense_id)
        if not data or data.get('deleted_at'):
            raise ExpenseNotFound(f"Expense {expense_id} not found", {"expense_id": expense_id})
        return Expense.from_dict(data)

    def list_loans(self, client_id: Optional[str] = None,
                   status: Optional[LoanStatus] = None) -> List[Loan]:
        filters: Dict[str, Any] = {'deleted_at': None}
        if client_id:
            filters['client_id'] = client_id
        if status:
            filters['status'] = status.value
        loans = [Loan.from_dict(data) for data in self.storage.find(self.loans_table, filters)]
        loans.sort(key=lambda loan: loan.start_date, reverse=True)
        return loans

    def installments_for(self, loan_id: str, include_deleted: bool = False) -> List[Installment]:
        rows = self._rows_for(self.installments_table, loan_id, include_deleted)
        installments = [Installment.from_dict(row) for row in rows]
        installments.sort(key=lambda i: (i.sequence, i.created_at))
        return installments

    def expenses_for(self, loan_id: str, include_deleted: bool = False) -> List[Expense]:
        rows = self._rows_for(self.expenses_table, loan_id, include_deleted)
        expenses = [Expense.from_dict(row) for row in rows]
        expenses.sort(key=lambda e: e.created_at)
        return expenses

    def payments_for(self, loan_id: str, include_deleted: bool = False) -> List[Payment]:
        rows = self._rows_for(self.payments_table, loan_id, include_deleted)
        payments = [Payment.from_dict(row) for row in rows]
        payments.sort(key=lambda p: p.paid_at)
        return payments

    def history(self, loan_id: str) -> LoanHistory:
        """Every row of the loan, soft-deleted ones included"""
        return LoanHistory(
            loan=self.get_loan(loan_id, include_deleted=True),
            installments=self.installments_for(loan_id, include_deleted=True),
            expenses=self.expenses_for(loan_id, include_deleted=True),
            payments=self.payments_for(loan_id, include_deleted=True)
        )

    # Mutations

    def update_terms(
        self,
        loan_id: str,
        client_id: Optional[str] = None,
        annual_rate_percent: Optional[Union[Decimal, int, str]] = None,
        status: Optional[LoanStatus] = None,
        currency: Optional[Currency] = None
    ) -> Loan:
        """
        Edit loan header fields. Installment amounts and due dates are never
        touched here; a new principal, term or start date goes through the
        recalculation engine's preview and commit.

        Raises:
            CurrencyLockedError: If the currency changes after a payment
            ValidationError: If COMPLETED is requested with pending installments
        """
        changes: Dict[str, Any] = {}
        with self.storage.atomic():
            loan = self.get_loan(loan_id)
            installments = self.installments_for(loan_id)

            if currency is not None and currency != loan.currency:
                paid = [i.sequence for i in installments if i.is_paid]
                if paid:
                    raise CurrencyLockedError(
                        f"Loan {loan_id} has paid installments; its currency cannot change",
                        {"loan_id": loan_id, "paid_sequences": paid,
                         "from": loan.currency.code, "to": currency.code}
                    )
                loan.principal = Money(loan.principal.amount, currency)
                for installment in installments:
                    self._convert_installment(installment, currency)
                    self.save_installment(installment)
                changes['currency'] = currency.code

            if client_id is not None and client_id != loan.client_id:
                loan.client_id = client_id
                changes['client_id'] = client_id

            if annual_rate_percent is not None:
                rate = to_decimal(annual_rate_percent)
                if rate < 0:
                    raise ValidationError("Interest rate cannot be negative",
                                          {"loan_id": loan_id, "annual_rate_percent": rate})
                if rate != loan.annual_rate_percent:
                    loan.annual_rate_percent = rate
                    changes['annual_rate_percent'] = rate

            if status is not None and status != loan.status:
                if status == LoanStatus.COMPLETED and any(not i.is_paid for i in installments):
                    raise ValidationError(
                        f"Loan {loan_id} still has pending installments",
                        {"loan_id": loan_id, "status": status.value}
                    )
                loan.status = status
                changes['status'] = status.value

            if changes:
                self.save_loan(loan)
                self.audit_trail.log_event(
                    event_type=AuditEventType.LOAN_TERMS_UPDATED,
                    entity_type="loan",
                    entity_id=loan.id,
                    metadata=changes
                )

        if changes:
            log_action(self.logger, "info", f"Loan {loan_id} terms updated",
                       action="update_loan_terms", resource=f"loan:{loan_id}", extra=changes)
        return loan

    # Row persistence shared with the payment, recalculation and deletion engines

    def save_loan(self, loan: Loan, bump: bool = True) -> None:
        self._touch(loan, bump)
        self.storage.save(self.loans_table, loan.id, loan.to_dict())

    def save_installment(self, installment: Installment, bump: bool = True) -> None:
        self._touch(installment, bump)
        self.storage.save(self.installments_table, installment.id, installment.to_dict())

    def save_expense(self, expense: Expense, bump: bool = True) -> None:
        self._touch(expense, bump)
        self.storage.save(self.expenses_table, expense.id, expense.to_dict())

    def save_payment(self, payment: Payment) -> None:
        payment.updated_at = utcnow()
        self.storage.save(self.payments_table, payment.id, payment.to_dict())

    def display_name(self, client_id: str) -> str:
        return resolve_display_name(self.client_directory, client_id, self.unidentified_client_label)

    # Helpers

    def _rows_for(self, table: str, loan_id: str, include_deleted: bool) -> List[Dict[str, Any]]:
        filters: Dict[str, Any] = {'loan_id': loan_id}
        if not include_deleted:
            filters['deleted_at'] = None
        return self.storage.find(table, filters)

    @staticmethod
    def _touch(record, bump: bool) -> None:
        if bump:
            record.version += 1
            record.updated_at = utcnow()

    @staticmethod
    def _convert_installment(installment: Installment, currency: Currency) -> None:
        installment.amount = Money(installment.amount.amount, currency)
        installment.principal_portion = Money(installment.principal_portion.amount, currency)
        installment.interest_portion = Money(installment.interest_portion.amount, currency)
        installment.tax_portion = Money(installment.tax_portion.amount, currency)

    @staticmethod
    def build_expense(loan: Loan, kind: ExpenseKind, amount: Union[Decimal, int, str],
                     currency: Currency, description: str, now: datetime) -> Expense:
        value = to_decimal(amount)
        if value <= 0:
            raise ValidationError(f"Expense amount must be positive, got {value}",
                                  {"loan_id": loan.id, "kind": kind.value, "amount": value})
        return Expense(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_id=loan.id,
            kind=kind,
            amount=Money(value, currency),
            description=description
        )

    @staticmethod
    def _check_schedule_matches(terms: LoanTerms, schedule: AmortizationSchedule) -> None:
        mismatches = {}
        if schedule.principal != terms.principal:
            mismatches['principal'] = (terms.principal, schedule.principal)
        if schedule.periods != terms.installment_count:
            mismatches['installment_count'] = (terms.installment_count, schedule.periods)
        if schedule.frequency != terms.frequency:
            mismatches['frequency'] = (terms.frequency.value, schedule.frequency.value)
        if schedule.start_date != terms.start_date:
            mismatches['start_date'] = (terms.start_date, schedule.start_date)
        if mismatches:
            raise ValidationError("Schedule does not match the loan terms", mismatches)
