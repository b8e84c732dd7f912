"""
Shared test doubles for the lending test suite
"""

from datetime import date
from decimal import Decimal

from lending_core.audit import AuditTrail
from lending_core.clients import ClientRecord, ClientType, InMemoryClientDirectory
from lending_core.exceptions import LedgerAppendFailure, PersistenceError
from lending_core.ledger import LedgerChannel, StorageLedgerGateway
from lending_core.loans import LoanLifecycleStore, LoanTerms
from lending_core.storage import InMemoryStorage


class FlakyStorage(InMemoryStorage):
    """In-memory storage that fails every save to one table once armed"""

    def __init__(self):
        super().__init__()
        self.fail_table = None

    def save(self, table, record_id, data):
        if table == self.fail_table:
            raise PersistenceError(f"Simulated failure writing {table}", {"table": table})
        super().save(table, record_id, data)


class FailingLedger(StorageLedgerGateway):
    """Ledger gateway whose appends are rejected while ``failing`` is set"""

    def __init__(self, storage):
        super().__init__(storage)
        self.failing = False

    def append(self, entry):
        if self.failing:
            raise LedgerAppendFailure("Simulated ledger outage", {"concept": entry.concept})
        return super().append(entry)


def build_store(storage=None, ledger=None):
    """Loan store over in-memory storage with one known person and one company"""
    storage = storage or InMemoryStorage()
    directory = InMemoryClientDirectory()
    directory.add(ClientRecord(id="CLIENT001", first_name="Juan", last_name="Perez"))
    directory.add(ClientRecord(id="CLIENT002", client_type=ClientType.COMPANY,
                               company_name="Acme SA"))
    return LoanLifecycleStore(
        storage,
        ledger or StorageLedgerGateway(storage),
        AuditTrail(storage),
        directory
    )


def flat_terms(principal="120000", periods=12, client_id="CLIENT001", start=date(2024, 1, 1)):
    """Zero-rate terms, so every installment is principal / periods"""
    return LoanTerms(
        client_id=client_id,
        principal=Decimal(principal),
        annual_rate_percent=Decimal("0"),
        installment_count=periods,
        start_date=start
    )


def sample_terms(start=date(2024, 1, 1)):
    """120000 at 65% over 12 months with 21% tax on interest"""
    return LoanTerms(
        client_id="CLIENT001",
        principal=Decimal("120000"),
        annual_rate_percent=Decimal("65"),
        installment_count=12,
        start_date=start,
        tax_on_interest_percent=Decimal("21")
    )


CASH = LedgerChannel.CASH
