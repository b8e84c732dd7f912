"""
Cash ledger endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends

from .dependencies import get_lending_system, http_error
from .schemas import MoneyModel, entry_to_dict, parse_enum
from ..currency import Currency
from ..exceptions import LendingError
from ..ledger import LedgerChannel
from ..system import LendingSystem


router = APIRouter()


@router.get("/entries")
async def list_entries(
    reference: Optional[str] = None,
    system: LendingSystem = Depends(get_lending_system)
):
    """Ledger entries in append order, optionally for one loan"""
    try:
        return {"entries": [entry_to_dict(e) for e in system.ledger.entries(reference)]}

    except LendingError as e:
        raise http_error(e)


@router.get("/balance")
async def get_balance(
    channel: str = "cash",
    currency: Optional[str] = None,
    system: LendingSystem = Depends(get_lending_system)
):
    """Balance of one channel derived from its entries"""
    try:
        balance = system.ledger.balance(
            parse_enum(LedgerChannel, channel, "channel"),
            Currency.from_code(currency) if currency else system.default_currency
        )
        return {"channel": channel.lower(), "balance": MoneyModel.from_money(balance).model_dump()}

    except LendingError as e:
        raise http_error(e)


@router.get("/audit/integrity")
async def verify_audit_trail(system: LendingSystem = Depends(get_lending_system)):
    """Verify the hash chain of the audit trail"""
    try:
        return system.audit_trail.verify_integrity()

    except LendingError as e:
        raise http_error(e)
