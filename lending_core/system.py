"""
Lending system wiring: storage, audit trail, ledger, client directory and the
lifecycle engines built from one configuration.
"""

from typing import Optional

from .audit import AuditTrail
from .clients import ClientDirectory, StorageClientDirectory
from .config import LendingConfig, get_config
from .currency import Currency
from .deletion import DeletionReversalEngine
from .expenses import ExpenseAttacher
from .ledger import LedgerChannel, LedgerGateway, StorageLedgerGateway
from .loans import LoanLifecycleStore
from .payments import PaymentProcessor
from .recalculation import RecalculationEngine
from .storage import StorageInterface, create_storage


class LendingSystem:
    """Lending back office with all components initialized"""

    def __init__(
        self,
        config: Optional[LendingConfig] = None,
        storage: Optional[StorageInterface] = None,
        ledger: Optional[LedgerGateway] = None,
        client_directory: Optional[ClientDirectory] = None
    ):
        self.config = config or get_config()
        self.storage = storage or create_storage(self.config.database_url)

        self.audit_trail = AuditTrail(self.storage, enabled=self.config.enable_audit_logging)
        self.ledger = ledger or StorageLedgerGateway(self.storage)
        self.client_directory = client_directory or StorageClientDirectory(self.storage)

        self.loan_store = LoanLifecycleStore(
            self.storage, self.ledger, self.audit_trail, self.client_directory,
            unidentified_client_label=self.config.unidentified_client_label
        )
        self.expense_attacher = ExpenseAttacher(self.loan_store)
        self.payment_processor = PaymentProcessor(self.loan_store)
        self.recalculation_engine = RecalculationEngine(self.loan_store)
        self.deletion_engine = DeletionReversalEngine(self.loan_store)

    @property
    def default_currency(self) -> Currency:
        return Currency.from_code(self.config.default_currency)

    @property
    def default_channel(self) -> LedgerChannel:
        return LedgerChannel(self.config.default_ledger_channel.lower())

    @property
    def disbursement_channel(self) -> Optional[LedgerChannel]:
        """Channel for the disbursement entry on creation, None when disabled"""
        return self.default_channel if self.config.record_disbursement_on_create else None

    def close(self) -> None:
        self.storage.close()
