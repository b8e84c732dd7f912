"""
Lending Core

Loan amortization and lifecycle engine for a lending back office: schedule
generation with Decimal math, installment payments, recalculation of pending
installments, and soft deletion with cash ledger reversal.
"""

__version__ = "1.0.0"
