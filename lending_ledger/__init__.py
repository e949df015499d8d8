"""
Lending Ledger - multi-tenant micro-lending ledger engine

Tracks monthly-interest and daily-collection loans, the money movements
against them, and derives billing cycles, overdue status, penalties and
cash reconciliation from the transaction history.
"""

__version__ = "1.0.0"

from .actors import Actor, ActorRole
from .errors import LedgerError
from .service import LendingLedger

__all__ = ['Actor', 'ActorRole', 'LedgerError', 'LendingLedger']
