"""
Audit Trail Module

Hash-chained immutable audit log with SHA-256 for tamper detection.
Movements, account changes and loan decisions are recorded here, both when
they succeed and when they are rejected.
"""

import hashlib
import json
import threading
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
from enum import Enum
from decimal import Decimal
import uuid

from .storage import StorageInterface, StorageRecord


class AuditAction(Enum):
    """Actions recorded in the audit log"""
    TRANSACTION_CREATE = "transaction_create"
    ACCOUNT_CREATE = "account_create"
    ACCOUNT_UPDATE = "account_update"
    LOAN_APPLY = "loan_apply"
    LOAN_APPROVE = "loan_approve"
    LOAN_REJECT = "loan_reject"
    LOAN_DISBURSE = "loan_disburse"
    LOAN_PAYMENT = "loan_payment"
    BENEFICIARY_ADD = "beneficiary_add"
    BENEFICIARY_UPDATE = "beneficiary_update"
    BENEFICIARY_REMOVE = "beneficiary_remove"
    ADMIN_ACTION = "admin_action"

    # Written by collaborators (identity provider, back office) through
    # AuditTrail.record; nothing in this package emits them
    LOGIN = "login"
    LOGOUT = "logout"
    USER_CREATE = "user_create"
    USER_UPDATE = "user_update"
    USER_DELETE = "user_delete"
    PASSWORD_CHANGE = "password_change"
    TRANSACTION_UPDATE = "transaction_update"


class AuditStatus(Enum):
    SUCCESS = "success"
    FAILURE = "failure"


def _serialize(value: Any) -> Any:
    """Convert metadata values to JSON-serializable format"""
    if isinstance(value, Decimal):
        return str(value)
    elif isinstance(value, datetime):
        return value.isoformat()
    elif isinstance(value, Enum):
        return value.value
    elif isinstance(value, dict):
        return {k: _serialize(v) for k, v in value.items()}
    elif isinstance(value, (list, tuple)):
        return [_serialize(v) for v in value]
    return value


@dataclass
class AuditRecord(StorageRecord):
    """
    Immutable audit record with hash chaining for tamper detection
    """
    action: AuditAction
    entity_type: str  # account, transaction, loan, ...
    entity_id: str
    description: str
    status: AuditStatus
    sequence: int
    previous_hash: str
    current_hash: str
    actor_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.metadata = _serialize(self.metadata or {})

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this record
        Hash includes all fields except current_hash
        """
        hash_data = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'action': self.action.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'description': self.description,
            'status': self.status.value,
            'sequence': self.sequence,
            'previous_hash': self.previous_hash,
            'actor_id': self.actor_id,
            'metadata': self.metadata
        }

        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        return self.current_hash == self.calculate_hash()

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['action'] = self.action.value
        result['status'] = self.status.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditRecord':
        data = dict(data)
        data['action'] = AuditAction(data['action'])
        data['status'] = AuditStatus(data['status'])
        return super().from_dict(data)


class AuditTrail:
    """
    Hash-chained audit trail for tamper detection
    """

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events"):
        self.storage = storage
        self.table_name = table_name
        self._lock = threading.Lock()

    def _chain_head(self) -> Optional[Dict[str, Any]]:
        """Most recent record by sequence number"""
        records = self.storage.load_all(self.table_name)
        if not records:
            return None
        return max(records, key=lambda r: r.get('sequence', 0))

    def record(
        self,
        action: AuditAction,
        actor_id: Optional[str],
        entity_type: str,
        entity_id: str,
        description: str = "",
        status: AuditStatus = AuditStatus.SUCCESS,
        metadata: Optional[Dict[str, Any]] = None
    ) -> AuditRecord:
        """
        Append an audit record to the chain

        Args:
            action: What happened
            actor_id: User who initiated the action (None for system actions)
            entity_type: Type of entity being audited
            entity_id: ID of the entity
            description: Human-readable summary
            status: success or failure
            metadata: Additional event-specific data

        Returns:
            Created AuditRecord
        """
        with self._lock:
            head = self._chain_head()
            now = datetime.now(timezone.utc)

            audit_record = AuditRecord(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                action=action,
                entity_type=entity_type,
                entity_id=entity_id,
                description=description,
                status=status,
                sequence=(head['sequence'] + 1) if head else 1,
                previous_hash=head['current_hash'] if head else "",
                current_hash="",
                actor_id=actor_id,
                metadata=metadata or {}
            )
            audit_record.current_hash = audit_record.calculate_hash()

            self.storage.save(self.table_name, audit_record.id, audit_record.to_dict())
            return audit_record

    def get_events_for_entity(
        self,
        entity_type: str,
        entity_id: str,
        limit: Optional[int] = None
    ) -> List[AuditRecord]:
        """Get all audit records for a specific entity, oldest first"""
        records_data = self.storage.find(self.table_name, {
            'entity_type': entity_type,
            'entity_id': entity_id
        })
        records = sorted(
            (AuditRecord.from_dict(data) for data in records_data),
            key=lambda r: r.sequence
        )
        if limit:
            records = records[-limit:]
        return records

    def get_events(
        self,
        action: Optional[AuditAction] = None,
        actor_id: Optional[str] = None,
        status: Optional[AuditStatus] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        limit: Optional[int] = None
    ) -> List[AuditRecord]:
        """
        Get audit records matching the given filters

        Args:
            action: Only records of this action
            actor_id: Only records initiated by this user
            status: Only successes or only failures
            start_time: Start of time range (inclusive)
            end_time: End of time range (inclusive)
            limit: Maximum number of (most recent) records to return

        Returns:
            List of AuditRecord objects sorted by chain position
        """
        records = [AuditRecord.from_dict(data) for data in self.storage.load_all(self.table_name)]

        if action:
            records = [r for r in records if r.action == action]
        if actor_id:
            records = [r for r in records if r.actor_id == actor_id]
        if status:
            records = [r for r in records if r.status == status]
        if start_time:
            records = [r for r in records if r.created_at >= start_time]
        if end_time:
            records = [r for r in records if r.created_at <= end_time]

        records.sort(key=lambda r: r.sequence)
        if limit:
            records = records[-limit:]
        return records

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Verify the integrity of the entire audit chain

        Returns:
            Dictionary with integrity check results
        """
        result = {
            'valid': True,
            'total_events': 0,
            'hash_errors': [],
            'chain_breaks': []
        }

        records_data = self.storage.load_all(self.table_name)
        if not records_data:
            return result

        records = sorted(
            (AuditRecord.from_dict(data) for data in records_data),
            key=lambda r: r.sequence
        )
        result['total_events'] = len(records)

        previous_hash = ""
        for i, audit_record in enumerate(records):
            if not audit_record.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({
                    'event_id': audit_record.id,
                    'position': i,
                    'expected_hash': audit_record.calculate_hash(),
                    'actual_hash': audit_record.current_hash
                })
            if audit_record.previous_hash != previous_hash:
                result['valid'] = False
                result['chain_breaks'].append({
                    'event_id': audit_record.id,
                    'position': i,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': audit_record.previous_hash
                })
            previous_hash = audit_record.current_hash

        return result
