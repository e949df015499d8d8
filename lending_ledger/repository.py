"""
Ledger Repository

Table access for loans, transactions, the principal-return journal and
penalties. Loan rows are only ever changed through update_loan(), which is
conditioned on the version read by the caller.
"""

import dataclasses
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, TypeVar

from .config import get_config
from .errors import ConcurrentModificationError, NotFoundError
from .models import Loan, LoanType, LedgerTransaction, Penalty, PrincipalReturn
from .storage import StorageInterface
from .tenancy import require_tenant

T = TypeVar('T')

LOAN_NUMBER_PREFIXES = {
    LoanType.MONTHLY: "ML",
    LoanType.DAILY: "DL",
}


def new_id() -> str:
    return str(uuid.uuid4())


def clamp_page(page: Optional[int], limit: Optional[int]) -> tuple:
    """Normalize page (>= 1) and limit (1..max_page_limit, default from config)"""
    config = get_config()
    page = max(int(page or 1), 1)
    if limit is None:
        limit = config.default_page_limit
    limit = min(max(int(limit), 1), config.max_page_limit)
    return page, limit


def paginate(items: List[Any], page: Optional[int] = None, limit: Optional[int] = None,
             formatter: Optional[Callable[[Any], Any]] = None) -> Dict[str, Any]:
    """Slice an ordered list into {data, pagination: {page, limit, total}}"""
    page, limit = clamp_page(page, limit)
    start = (page - 1) * limit
    window = items[start:start + limit]
    if formatter:
        window = [formatter(item) for item in window]
    return {
        'data': window,
        'pagination': {'page': page, 'limit': limit, 'total': len(items)},
    }


class LedgerRepository:
    """Typed access to the ledger tables of the current tenant"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage

        self.loans_table = "loans"
        self.transactions_table = "transactions"
        self.principal_returns_table = "principal_returns"
        self.penalties_table = "penalties"
        self.sequences_table = "loan_number_sequences"

    # Loans

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        data = self.storage.load(self.loans_table, loan_id)
        return Loan.from_dict(data) if data else None

    def require_loan(self, loan_id: str) -> Loan:
        loan = self.get_loan(loan_id)
        if not loan:
            raise NotFoundError("Loan not found", {'loan_id': loan_id})
        return loan

    def insert_loan(self, loan: Loan) -> Loan:
        self.storage.save(self.loans_table, loan.id, loan.to_dict())
        return loan

    def list_loans(self, predicate: Optional[Callable[[Loan], bool]] = None) -> List[Loan]:
        loans = [Loan.from_dict(data) for data in self.storage.load_all(self.loans_table)]
        if predicate:
            loans = [loan for loan in loans if predicate(loan)]
        return loans

    def update_loan(self, loan: Loan, **changes) -> Loan:
        """
        Write changes to a loan row only if its version still matches loan.version.

        Returns:
            The updated Loan carrying the new version

        Raises:
            ConcurrentModificationError: If another writer bumped the version first
        """
        changes['updated_at'] = datetime.now(timezone.utc)
        updated = dataclasses.replace(loan, **changes)
        serialized = updated.to_dict()
        patch = {key: serialized[key] for key in changes}

        if not self.storage.update_if_version(self.loans_table, loan.id, loan.version, patch):
            raise ConcurrentModificationError(details={'loan_id': loan.id,
                                                       'expected_version': loan.version})
        updated.version = loan.version + 1
        return updated

    def next_loan_number(self, loan_type: LoanType, year: int) -> str:
        """Next {ML|DL}-{year}-{seq:04d} for the current tenant"""
        tenant_id = require_tenant()
        prefix = LOAN_NUMBER_PREFIXES[loan_type]
        key = f"{tenant_id}:{prefix}:{year}"

        counter = self.storage.load(self.sequences_table, key)
        if counter is None:
            sequence = 1
            self.storage.save(self.sequences_table, key, {'id': key, 'value': 1, 'version': 1})
        else:
            sequence = counter['value'] + 1
            if not self.storage.update_if_version(self.sequences_table, key, counter['version'],
                                                  {'value': sequence}):
                raise ConcurrentModificationError("Loan number sequence was modified concurrently, please retry")
        return f"{prefix}-{year}-{sequence:04d}"

    # Transactions

    def get_transaction(self, transaction_id: str) -> Optional[LedgerTransaction]:
        data = self.storage.load(self.transactions_table, transaction_id)
        return LedgerTransaction.from_dict(data) if data else None

    def require_transaction(self, transaction_id: str) -> LedgerTransaction:
        txn = self.get_transaction(transaction_id)
        if not txn:
            raise NotFoundError("Transaction not found", {'transaction_id': transaction_id})
        return txn

    def insert_transaction(self, txn: LedgerTransaction) -> LedgerTransaction:
        self.storage.save(self.transactions_table, txn.id, txn.to_dict())
        return txn

    def save_transaction(self, txn: LedgerTransaction) -> LedgerTransaction:
        """Persist an approval decision; amounts and types never change"""
        txn.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.transactions_table, txn.id, txn.to_dict())
        return txn

    def find_transactions(self, **filters) -> List[LedgerTransaction]:
        """Transactions matching stored field values, oldest first"""
        stored_filters = {key: value.value if hasattr(value, 'value') else value
                          for key, value in filters.items()}
        records = [LedgerTransaction.from_dict(data)
                   for data in self.storage.find(self.transactions_table, stored_filters)]
        return sort_by_creation(records)

    def transactions_for_loan(self, loan_id: str) -> List[LedgerTransaction]:
        return self.find_transactions(loan_id=loan_id)

    def all_transactions(self) -> List[LedgerTransaction]:
        return self.find_transactions()

    def correction_of(self, transaction_id: str) -> Optional[LedgerTransaction]:
        matches = self.find_transactions(corrected_transaction_id=transaction_id)
        return matches[0] if matches else None

    # Principal return journal

    def insert_principal_return(self, entry: PrincipalReturn) -> PrincipalReturn:
        self.storage.save(self.principal_returns_table, entry.id, entry.to_dict())
        return entry

    def principal_returns_for_loan(self, loan_id: str) -> List[PrincipalReturn]:
        records = [PrincipalReturn.from_dict(data)
                   for data in self.storage.find(self.principal_returns_table, {'loan_id': loan_id})]
        return sorted(records, key=lambda r: (r.return_date, r.created_at))

    # Penalties

    def get_penalty(self, penalty_id: str) -> Optional[Penalty]:
        data = self.storage.load(self.penalties_table, penalty_id)
        return Penalty.from_dict(data) if data else None

    def require_penalty(self, penalty_id: str) -> Penalty:
        penalty = self.get_penalty(penalty_id)
        if not penalty:
            raise NotFoundError("Penalty not found", {'penalty_id': penalty_id})
        return penalty

    def lock_penalty(self, penalty_id: str) -> Penalty:
        """Read a penalty under its row lock for the rest of the atomic block"""
        data = self.storage.load_for_update(self.penalties_table, penalty_id)
        if not data:
            raise NotFoundError("Penalty not found", {'penalty_id': penalty_id})
        return Penalty.from_dict(data)

    def save_penalty(self, penalty: Penalty) -> Penalty:
        penalty.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.penalties_table, penalty.id, penalty.to_dict())
        return penalty

    def penalties_for_loan(self, loan_id: str) -> List[Penalty]:
        records = [Penalty.from_dict(data)
                   for data in self.storage.find(self.penalties_table, {'loan_id': loan_id})]
        return sort_by_creation(records)

    def all_penalties(self) -> List[Penalty]:
        return sort_by_creation([Penalty.from_dict(data)
                                 for data in self.storage.load_all(self.penalties_table)])


def sort_by_creation(records: Iterable[T]) -> List[T]:
    return sorted(records, key=lambda r: r.created_at)
