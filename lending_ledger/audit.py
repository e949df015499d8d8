"""
Audit Trail Module

Hash-chained immutable audit log with SHA-256 for tamper detection.
Every state change of a loan, transaction or penalty is logged here in the
same atomic block as the change itself.
"""

import hashlib
import json
import threading
from datetime import date, datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum
from decimal import Decimal
import uuid

from .storage import StorageInterface, StorageRecord
from .tenancy import get_current_tenant


class AuditEventType(Enum):
    """Types of audit events"""
    # Loan events
    LOAN_CREATED = "loan_created"
    LOAN_MIGRATED = "loan_migrated"
    LOAN_CLOSED = "loan_closed"
    LOAN_DEFAULTED = "loan_defaulted"
    LOAN_WRITTEN_OFF = "loan_written_off"
    LOAN_CANCELLED = "loan_cancelled"
    BILLING_PRINCIPAL_SYNCED = "billing_principal_synced"

    # Transaction events
    TRANSACTION_RECORDED = "transaction_recorded"
    TRANSACTION_APPROVED = "transaction_approved"
    TRANSACTION_REJECTED = "transaction_rejected"
    TRANSACTION_CORRECTED = "transaction_corrected"

    # Penalty and waiver events
    PENALTY_IMPOSED = "penalty_imposed"
    PENALTY_WAIVED = "penalty_waived"
    INTEREST_WAIVED = "interest_waived"

    # Collaborator events
    BORROWER_FLAGGED_DEFAULTER = "borrower_flagged_defaulter"
    FUND_ENTRY_RECORDED = "fund_entry_recorded"
    EXPENSE_RECORDED = "expense_recorded"
    EXPENSE_DELETED = "expense_deleted"


def _convert_value(value):
    if isinstance(value, Decimal):
        return str(value)
    elif isinstance(value, (datetime, date)):
        return value.isoformat()
    elif isinstance(value, Enum):
        return value.value
    elif isinstance(value, dict):
        return {k: _convert_value(v) for k, v in value.items()}
    elif isinstance(value, (list, tuple)):
        return [_convert_value(v) for v in value]
    return value


def _chain_position(record: Dict[str, Any]):
    return record.get('sequence', 0), record.get('created_at', '')


@dataclass
class AuditEvent(StorageRecord):
    """One link of the audit chain; `current_hash` seals every other field"""
    event_type: AuditEventType
    entity_type: str  # loan, transaction, penalty, borrower, fund_entry, expense
    entity_id: str
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any]
    user_id: Optional[str] = None
    tenant_id: Optional[str] = None

    def __post_init__(self):
        if self.metadata:
            self.metadata = {k: _convert_value(v) for k, v in self.metadata.items()}

    def calculate_hash(self) -> str:
        sealed = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'previous_hash': self.previous_hash,
            'user_id': self.user_id,
            'tenant_id': self.tenant_id,
            'metadata': self.metadata,
        }
        canonical = json.dumps(sealed, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(canonical.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        return self.current_hash == self.calculate_hash()

    def to_dict(self) -> Dict[str, Any]:
        record = super().to_dict()
        record['event_type'] = self.event_type.value
        return record

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        # Storage bookkeeping (_tenant_id, sequence) is not part of the event
        fields = {k: v for k, v in data.items() if not k.startswith('_') and k != 'sequence'}
        fields['created_at'] = datetime.fromisoformat(fields['created_at'])
        fields['updated_at'] = datetime.fromisoformat(fields['updated_at'])
        fields['event_type'] = AuditEventType(fields['event_type'])
        return cls(**fields)


class AuditTrail:
    """
    Hash-chained record of every ledger state change

    The chain is global across tenants; every event also records the tenant
    that produced it.
    """

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events",
                 enabled: bool = True):
        self.storage = storage
        self.table_name = table_name
        self.enabled = enabled
        self._lock = threading.Lock()

    def _last_event(self) -> Optional[Dict[str, Any]]:
        events = self.storage.load_all(self.table_name)
        if not events:
            return None
        return max(events, key=_chain_position)

    def log_event(self, event_type: AuditEventType, entity_type: str, entity_id: str,
                  metadata: Optional[Dict[str, Any]] = None,
                  user_id: Optional[str] = None) -> Optional[AuditEvent]:
        """
        Append an event to the chain

        Args:
            event_type: What happened
            entity_type: Kind of record it happened to (loan, transaction, ...)
            entity_id: ID of that record
            metadata: Event details; Decimals, dates and enums are stored as strings
            user_id: Acting user

        Returns:
            The appended event, None when audit logging is disabled
        """
        if not self.enabled:
            return None

        with self._lock:
            now = datetime.now(timezone.utc)

            # Re-read the chain head, a rolled back transaction may have discarded ours
            last = self._last_event()
            previous_hash = last.get('current_hash', '') if last else ''
            sequence = (last.get('sequence', 0) if last else 0) + 1

            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                previous_hash=previous_hash,
                current_hash="",
                metadata=metadata or {},
                user_id=user_id,
                tenant_id=get_current_tenant()
            )
            event.current_hash = event.calculate_hash()

            record = event.to_dict()
            record['sequence'] = sequence
            self.storage.save(self.table_name, event.id, record)
            return event

    def _ordered_events(self) -> List[AuditEvent]:
        records = sorted(self.storage.load_all(self.table_name), key=_chain_position)
        return [AuditEvent.from_dict(record) for record in records]

    def get_events_for_entity(self, entity_type: str, entity_id: str,
                              limit: Optional[int] = None) -> List[AuditEvent]:
        """Events for one loan, transaction or penalty, oldest first; `limit` keeps the newest"""
        events = [e for e in self._ordered_events()
                  if e.entity_type == entity_type and e.entity_id == entity_id]
        if limit:
            events = events[-limit:]
        return events

    def get_events_by_type(self, event_type: AuditEventType) -> List[AuditEvent]:
        return [e for e in self._ordered_events() if e.event_type == event_type]

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Walk the chain from its first event

        An event whose stored hash no longer matches its content is reported
        under hash_errors; one that does not point at its predecessor under
        chain_breaks. The chain is valid when both lists are empty.
        """
        events = self._ordered_events()
        hash_errors, chain_breaks = [], []

        expected_previous = ""
        for position, event in enumerate(events):
            recomputed = event.calculate_hash()
            if recomputed != event.current_hash:
                hash_errors.append({'event_id': event.id, 'position': position,
                                    'expected_hash': recomputed, 'actual_hash': event.current_hash})
            if event.previous_hash != expected_previous:
                chain_breaks.append({'event_id': event.id, 'position': position,
                                     'expected_previous_hash': expected_previous,
                                     'actual_previous_hash': event.previous_hash})
            expected_previous = event.current_hash

        return {
            'valid': not hash_errors and not chain_breaks,
            'total_events': len(events),
            'hash_errors': hash_errors,
            'chain_breaks': chain_breaks,
        }

    def count_events(self) -> int:
        return self.storage.count(self.table_name)
