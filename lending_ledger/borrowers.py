"""
Borrower Directory

Customer management is owned outside the ledger. This module keeps the few
fields the ledger reads: identity lookups for borrowers and guarantors and
the defaulter flag raised when a loan is defaulted.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from .errors import BadRequestError, NotFoundError
from .models import LedgerRecord, utc_now
from .repository import new_id
from .storage import StorageInterface
from .tenancy import require_tenant


@dataclass
class Borrower(LedgerRecord):
    """Customer as seen by the ledger"""
    tenant_id: str = ""
    full_name: str = ""
    phone: Optional[str] = None
    is_defaulter: bool = False

    def to_view(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'full_name': self.full_name,
            'phone': self.phone,
            'is_defaulter': self.is_defaulter,
        }


class BorrowerDirectory:
    """Tenant-scoped borrower lookups and the defaulter flag"""

    def __init__(self, storage: StorageInterface, table_name: str = "customers"):
        self.storage = storage
        self.table_name = table_name

    def register(self, full_name: str, phone: Optional[str] = None,
                 borrower_id: Optional[str] = None) -> Borrower:
        if not full_name or not full_name.strip():
            raise BadRequestError("Borrower name is required")
        now = utc_now()
        borrower = Borrower(
            id=borrower_id or new_id(),
            created_at=now,
            updated_at=now,
            tenant_id=require_tenant(),
            full_name=full_name.strip(),
            phone=phone,
        )
        self.storage.save(self.table_name, borrower.id, borrower.to_dict())
        return borrower

    def get(self, borrower_id: str) -> Optional[Borrower]:
        data = self.storage.load(self.table_name, borrower_id)
        return Borrower.from_dict(data) if data else None

    def require(self, borrower_id: str, role: str = "Customer") -> Borrower:
        borrower = self.get(borrower_id)
        if not borrower:
            raise NotFoundError(f"{role} not found", {'customer_id': borrower_id})
        return borrower

    def mark_defaulter(self, borrower_id: str) -> Borrower:
        borrower = self.require(borrower_id)
        if not borrower.is_defaulter:
            borrower.is_defaulter = True
            borrower.updated_at = utc_now()
            self.storage.save(self.table_name, borrower.id, borrower.to_dict())
        return borrower

    def is_defaulter(self, borrower_id: str) -> bool:
        borrower = self.get(borrower_id)
        return bool(borrower and borrower.is_defaulter)

    def names(self) -> Dict[str, str]:
        """borrower id -> full name for the current tenant"""
        return {data['id']: data.get('full_name', '')
                for data in self.storage.load_all(self.table_name)}

