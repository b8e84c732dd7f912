"""
Cash Ledger Module

Append-only sink for INGRESO/EGRESO cash or bank movements. The lending core
only appends entries; it never edits or removes one. Balances are derived
from the entries, never stored separately.
"""

from abc import ABC, abstractmethod
from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import Dict, List, Optional
from enum import Enum
import uuid

from .currency import Money, Currency
from .exceptions import LedgerAppendFailure, LendingError, ValidationError
from .storage import StorageInterface, StorageRecord
from .logging_config import get_logger, log_action


class LedgerDirection(Enum):
    """Direction of a cash movement"""
    INGRESO = "INGRESO"  # money in
    EGRESO = "EGRESO"    # money out


class LedgerChannel(Enum):
    """Where the money moved; chosen by the caller"""
    CASH = "cash"
    BANK = "bank"


@dataclass
class LedgerEntry(StorageRecord):
    """
    One cash or bank movement
    """
    direction: LedgerDirection
    concept: str
    amount: Money
    channel: LedgerChannel
    movement_date: date
    reference: Optional[str] = None  # machine-readable back-reference (loan id ...)

    def __post_init__(self):
        if not self.amount.is_positive():
            raise ValidationError(
                f"Ledger entry amount must be positive, got {self.amount.to_string()}",
                {"concept": self.concept, "amount": self.amount.amount}
            )

    @property
    def signed_amount(self) -> Decimal:
        if self.direction == LedgerDirection.INGRESO:
            return self.amount.amount
        return -self.amount.amount

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'direction': self.direction.value,
            'concept': self.concept,
            'amount': str(self.amount.amount),
            'currency': self.amount.currency.code,
            'channel': self.channel.value,
            'movement_date': self.movement_date.isoformat(),
            'reference': self.reference
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'LedgerEntry':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            direction=LedgerDirection(data['direction']),
            concept=data['concept'],
            amount=Money(Decimal(data['amount']), Currency.from_code(data['currency'])),
            channel=LedgerChannel(data['channel']),
            movement_date=date.fromisoformat(data['movement_date']),
            reference=data.get('reference')
        )


def new_entry(direction: LedgerDirection, concept: str, amount: Money,
              channel: LedgerChannel, reference: Optional[str] = None,
              movement_date: Optional[date] = None) -> LedgerEntry:
    now = datetime.now(timezone.utc)
    return LedgerEntry(
        id=str(uuid.uuid4()),
        created_at=now,
        updated_at=now,
        direction=direction,
        concept=concept,
        amount=amount,
        channel=channel,
        movement_date=movement_date or now.date(),
        reference=reference
    )


class LedgerGateway(ABC):
    """Append-only cash/bank movement sink"""

    @abstractmethod
    def append(self, entry: LedgerEntry) -> LedgerEntry:
        """
        Append one entry.

        Raises:
            LedgerAppendFailure: If the sink rejected the entry
        """
        pass

    @abstractmethod
    def entries(self, reference: Optional[str] = None) -> List[LedgerEntry]:
        """Entries in append order, optionally only those with a reference"""
        pass

    def balance(self, channel: LedgerChannel, currency: Currency) -> Money:
        """Current balance of one channel, derived from its entries"""
        total = sum(
            (e.signed_amount for e in self.entries()
             if e.channel == channel and e.amount.currency == currency),
            Decimal('0')
        )
        return Money(total, currency)


class StorageLedgerGateway(LedgerGateway):
    """
    Ledger kept in the lending store, so appends share the caller's transaction
    """

    def __init__(self, storage: StorageInterface, table_name: str = "ledger_entries"):
        self.storage = storage
        self.table_name = table_name
        self.logger = get_logger("lending.ledger")

    def append(self, entry: LedgerEntry) -> LedgerEntry:
        if self.storage.exists(self.table_name, entry.id):
            raise LedgerAppendFailure(
                f"Ledger entry {entry.id} already exists; entries are append-only",
                {"entry_id": entry.id}
            )
        try:
            self.storage.save(self.table_name, entry.id, entry.to_dict())
        except LendingError as e:
            raise LedgerAppendFailure(
                f"Could not append ledger entry: {e.message}",
                {"concept": entry.concept, "amount": entry.amount.amount}
            ) from e

        log_action(
            self.logger, "info", f"Ledger {entry.direction.value}: {entry.concept}",
            action="ledger_append", resource=f"ledger_entry:{entry.id}",
            extra={
                "direction": entry.direction.value,
                "amount": entry.amount.to_string(),
                "channel": entry.channel.value,
                "reference": entry.reference
            }
        )
        return entry

    def entries(self, reference: Optional[str] = None) -> List[LedgerEntry]:
        filters = {'reference': reference} if reference else {}
        rows = self.storage.find(self.table_name, filters)
        entries = [LedgerEntry.from_dict(row) for row in rows]
        entries.sort(key=lambda e: e.created_at)
        return entries
