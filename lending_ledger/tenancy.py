"""
Multi-Tenancy Support Module

Every lender (tenant) shares the same tables; rows are stamped with the
tenant that wrote them and reads are filtered to the tenant of the current
context. A row owned by another tenant is indistinguishable from a missing row.
"""

import contextvars
from contextlib import contextmanager
from typing import Any, Dict, List, Optional

from .errors import BadRequestError
from .storage import StorageInterface


TENANT_FIELD = '_tenant_id'

_active_lender = contextvars.ContextVar('active_lender', default=None)


def get_current_tenant() -> Optional[str]:
    return _active_lender.get()


def require_tenant() -> str:
    """Current tenant ID, raising when no tenant is active"""
    tenant_id = _active_lender.get()
    if not tenant_id:
        raise BadRequestError("No tenant is active for this operation")
    return tenant_id


@contextmanager
def tenant_context(tenant_id: str):
    """Run the enclosed ledger calls on behalf of one lender"""
    if not tenant_id:
        raise BadRequestError("tenant_id is required")
    token = _active_lender.set(tenant_id)
    try:
        yield
    finally:
        _active_lender.reset(token)


class TenantAwareStorage(StorageInterface):
    """
    Storage wrapper scoping every row to the active lender

    Outside any tenant context the wrapper sees every row; this is how the
    audit chain and maintenance code read across lenders.
    """

    def __init__(self, inner_storage: StorageInterface):
        self.inner = inner_storage

    def _visible(self, row: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if row is None:
            return None
        tenant_id = get_current_tenant()
        if tenant_id and row.get(TENANT_FIELD) != tenant_id:
            return None
        return row

    def _scoped(self, data: Dict[str, Any]) -> Dict[str, Any]:
        tenant_id = get_current_tenant()
        if not tenant_id:
            return data
        return dict(data, **{TENANT_FIELD: tenant_id})

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        current = self.inner.load(table, record_id)
        if current is not None and self._visible(current) is None:
            raise PermissionError(f"{table}/{record_id} is owned by another lender")
        self.inner.save(table, record_id, self._scoped(data))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        return self._visible(self.inner.load(table, record_id))

    def load_for_update(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        return self._visible(self.inner.load_for_update(table, record_id))

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        return self.find(table, {})

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        return self.inner.find(table, self._scoped(filters))

    def exists(self, table: str, record_id: str) -> bool:
        return self.load(table, record_id) is not None

    def count(self, table: str) -> int:
        return len(self.load_all(table))

    def delete(self, table: str, record_id: str) -> bool:
        # Foreign rows look missing, so there is nothing to delete
        if not self.exists(table, record_id):
            return False
        return self.inner.delete(table, record_id)

    def update_if_version(self, table: str, record_id: str, expected_version: int,
                          changes: Dict[str, Any]) -> bool:
        """Version-guarded update restricted to the active lender's rows"""
        if not self.exists(table, record_id):
            return False
        return self.inner.update_if_version(table, record_id, expected_version, changes)

    def clear_table(self, table: str) -> None:
        if get_current_tenant():
            raise PermissionError(f"Cannot clear {table} while a lender is active")
        self.inner.clear_table(table)

    def close(self) -> None:
        self.inner.close()

    # Transactions belong to the wrapped backend; raw writes made inside an
    # atomic block on this wrapper (the audit chain) share its fate

    def begin_transaction(self) -> None:
        self.inner.begin_transaction()

    def commit(self) -> None:
        self.inner.commit()

    def rollback(self) -> None:
        self.inner.rollback()
