"""
Fund Entries and Expenses

Capital movements (injections and withdrawals) and operating expenses are
maintained outside the ledger core; the reconciliation engine only reads
them. Expenses are soft-deleted so history is never lost.
"""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from .errors import BadRequestError, NotFoundError
from .models import LedgerRecord, utc_now
from .money import ZERO, normalize, to_decimal
from .repository import new_id, sort_by_creation
from .storage import StorageInterface
from .tenancy import require_tenant


class FundEntryType(Enum):
    INJECTION = "INJECTION"
    WITHDRAWAL = "WITHDRAWAL"


class ExpenseCategory(Enum):
    TRAVEL = "TRAVEL"
    SALARY = "SALARY"
    OFFICE = "OFFICE"
    LEGAL = "LEGAL"
    MISC = "MISC"


@dataclass
class FundEntry(LedgerRecord):
    tenant_id: str = ""
    entry_type: FundEntryType = FundEntryType.INJECTION
    amount: Decimal = ZERO
    entry_date: Optional[date] = None
    description: Optional[str] = None
    created_by: Optional[str] = None

    DECIMAL_FIELDS = ('amount',)
    DATE_FIELDS = ('entry_date',)
    ENUM_FIELDS = {'entry_type': FundEntryType}

    @property
    def signed_amount(self) -> Decimal:
        """Positive for injections, negative for withdrawals"""
        return self.amount if self.entry_type == FundEntryType.INJECTION else -self.amount

    def to_view(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'entry_type': self.entry_type.value,
            'amount': normalize(self.amount),
            'entry_date': self.entry_date.isoformat(),
            'description': self.description,
            'created_by': self.created_by,
        }


@dataclass
class Expense(LedgerRecord):
    tenant_id: str = ""
    category: ExpenseCategory = ExpenseCategory.MISC
    amount: Decimal = ZERO
    expense_date: Optional[date] = None
    description: Optional[str] = None
    is_deleted: bool = False
    created_by: Optional[str] = None

    DECIMAL_FIELDS = ('amount',)
    DATE_FIELDS = ('expense_date',)
    ENUM_FIELDS = {'category': ExpenseCategory}

    def to_view(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'category': self.category.value,
            'amount': normalize(self.amount),
            'expense_date': self.expense_date.isoformat(),
            'description': self.description,
            'is_deleted': self.is_deleted,
            'created_by': self.created_by,
        }


def _positive(amount) -> Decimal:
    amount = to_decimal(amount)
    if amount <= ZERO:
        raise BadRequestError("Amount must be positive")
    return amount


class FundBook:
    """Tenant-scoped fund entries and expenses"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.fund_entries_table = "fund_entries"
        self.expenses_table = "expenses"

    def _record_entry(self, entry_type: FundEntryType, amount, entry_date: date,
                      description: Optional[str], created_by: Optional[str]) -> FundEntry:
        now = utc_now()
        entry = FundEntry(
            id=new_id(),
            created_at=now,
            updated_at=now,
            tenant_id=require_tenant(),
            entry_type=entry_type,
            amount=_positive(amount),
            entry_date=entry_date,
            description=description,
            created_by=created_by,
        )
        self.storage.save(self.fund_entries_table, entry.id, entry.to_dict())
        return entry

    def record_injection(self, amount, entry_date: date, description: Optional[str] = None,
                         created_by: Optional[str] = None) -> FundEntry:
        return self._record_entry(FundEntryType.INJECTION, amount, entry_date, description, created_by)

    def record_withdrawal(self, amount, entry_date: date, description: Optional[str] = None,
                          created_by: Optional[str] = None) -> FundEntry:
        return self._record_entry(FundEntryType.WITHDRAWAL, amount, entry_date, description, created_by)

    def fund_entries(self, entry_type: Optional[FundEntryType] = None,
                     from_date: Optional[date] = None, to_date: Optional[date] = None) -> List[FundEntry]:
        """Entries filtered by type and entry date range, newest first"""
        entries = [FundEntry.from_dict(data) for data in self.storage.load_all(self.fund_entries_table)]
        if entry_type:
            entries = [e for e in entries if e.entry_type == entry_type]
        if from_date:
            entries = [e for e in entries if e.entry_date >= from_date]
        if to_date:
            entries = [e for e in entries if e.entry_date <= to_date]
        return sorted(sort_by_creation(entries), key=lambda e: e.entry_date, reverse=True)

    def record_expense(self, category: ExpenseCategory, amount, expense_date: date,
                       description: Optional[str] = None, created_by: Optional[str] = None) -> Expense:
        now = utc_now()
        expense = Expense(
            id=new_id(),
            created_at=now,
            updated_at=now,
            tenant_id=require_tenant(),
            category=ExpenseCategory(category),
            amount=_positive(amount),
            expense_date=expense_date,
            description=description,
            created_by=created_by,
        )
        self.storage.save(self.expenses_table, expense.id, expense.to_dict())
        return expense

    def delete_expense(self, expense_id: str) -> Expense:
        data = self.storage.load(self.expenses_table, expense_id)
        if not data:
            raise NotFoundError("Expense not found", {'expense_id': expense_id})
        expense = Expense.from_dict(data)
        if expense.is_deleted:
            raise BadRequestError("Expense is already deleted")
        expense.is_deleted = True
        expense.updated_at = utc_now()
        self.storage.save(self.expenses_table, expense.id, expense.to_dict())
        return expense

    def expenses(self, include_deleted: bool = False, category: Optional[ExpenseCategory] = None,
                 from_date: Optional[date] = None, to_date: Optional[date] = None) -> List[Expense]:
        """Expenses filtered by category and expense date range, newest first"""
        expenses = [Expense.from_dict(data) for data in self.storage.load_all(self.expenses_table)]
        if not include_deleted:
            expenses = [e for e in expenses if not e.is_deleted]
        if category:
            expenses = [e for e in expenses if e.category == category]
        if from_date:
            expenses = [e for e in expenses if e.expense_date >= from_date]
        if to_date:
            expenses = [e for e in expenses if e.expense_date <= to_date]
        return sorted(sort_by_creation(expenses), key=lambda e: e.expense_date, reverse=True)
