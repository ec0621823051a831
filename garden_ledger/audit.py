"""
Audit Trail Module

Hash-chained audit log with SHA-256 for tamper detection. Every balance
effect, status change, compensation and reconciliation repair is recorded
here next to the ledger entry it belongs to.
"""

import asyncio
import hashlib
import json
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum
from decimal import Decimal
import uuid

from .async_storage import AsyncStorageInterface
from .storage import StorageRecord
from .logging_config import get_logger, log_action


class AuditEventType(Enum):
    """Types of audit events"""
    ACCOUNT_OPENED = "account_opened"

    ENTRY_RECORDED = "entry_recorded"
    WITHDRAWAL_SUBMITTED = "withdrawal_submitted"
    WITHDRAWAL_COMPENSATED = "withdrawal_compensated"
    COMPENSATION_FAILED = "compensation_failed"

    STATUS_CHANGED = "status_changed"
    BALANCE_CREDITED = "balance_credited"
    BALANCE_REFUNDED = "balance_refunded"
    ADMIN_CREDIT = "admin_credit"

    RECONCILIATION_REPAIR = "reconciliation_repair"


def _json_safe(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    return value


@dataclass
class AuditEvent(StorageRecord):
    """Immutable audit event chained to its predecessor by hash"""
    event_type: AuditEventType
    entity_type: str  # "ledger_entry", "balance"...
    entity_id: str
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any]
    actor: Optional[str] = None

    def __post_init__(self):
        self.metadata = _json_safe(self.metadata or {})

    def calculate_hash(self) -> str:
        """SHA-256 over every field except current_hash"""
        hash_data = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'previous_hash': self.previous_hash,
            'actor': self.actor,
            'metadata': self.metadata
        }
        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        return self.current_hash == self.calculate_hash()

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['event_type'] = self.event_type.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            event_type=AuditEventType(data['event_type']),
            entity_type=data['entity_type'],
            entity_id=data['entity_id'],
            previous_hash=data['previous_hash'],
            current_hash=data['current_hash'],
            metadata=data.get('metadata') or {},
            actor=data.get('actor'),
        )


class AuditTrail:
    """Hash-chained audit trail"""

    def __init__(self, storage: AsyncStorageInterface, table_name: str = "audit_events"):
        self.storage = storage
        self.table_name = table_name
        self._last_hash: Optional[str] = None
        self._loaded = False
        self._lock: Optional[asyncio.Lock] = None  # Created inside the running loop on first use
        self.logger = get_logger("garden.audit")

    async def _load_events(self) -> List[AuditEvent]:
        rows = await self.storage.load_all(self.table_name)
        events = [AuditEvent.from_dict(row) for row in rows]
        events.sort(key=lambda e: e.created_at)
        return events

    async def _ensure_last_hash(self) -> None:
        if self._loaded:
            return
        events = await self._load_events()
        self._last_hash = events[-1].current_hash if events else None
        self._loaded = True

    async def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        actor: Optional[str] = None
    ) -> AuditEvent:
        """
        Append an event to the chain

        Args:
            event_type: Type of audit event
            entity_type: Type of entity being audited
            entity_id: ID of the entity
            metadata: Additional event-specific data
            actor: Administrator or service that caused the event

        Returns:
            Created AuditEvent
        """
        if self._lock is None:
            self._lock = asyncio.Lock()
        async with self._lock:
            await self._ensure_last_hash()
            now = datetime.now(timezone.utc)
            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                previous_hash=self._last_hash or "",
                current_hash="",
                metadata=metadata or {},
                actor=actor
            )
            event.current_hash = event.calculate_hash()
            await self.storage.save(self.table_name, event.id, event.to_dict())
            self._last_hash = event.current_hash
            return event

    async def get_events_for_entity(self, entity_type: str, entity_id: str) -> List[AuditEvent]:
        """Events for one entity in creation order"""
        rows = await self.storage.find(
            self.table_name, {'entity_type': entity_type, 'entity_id': entity_id}
        )
        events = [AuditEvent.from_dict(row) for row in rows]
        events.sort(key=lambda e: e.created_at)
        return events

    async def get_events_by_type(self, event_type: AuditEventType) -> List[AuditEvent]:
        rows = await self.storage.find(self.table_name, {'event_type': event_type.value})
        events = [AuditEvent.from_dict(row) for row in rows]
        events.sort(key=lambda e: e.created_at)
        return events

    async def verify_integrity(self) -> Dict[str, Any]:
        """
        Verify every hash and every link in the chain

        Returns:
            Dictionary with integrity check results
        """
        result = {
            'valid': True,
            'total_events': 0,
            'hash_errors': [],
            'chain_breaks': []
        }

        events = await self._load_events()
        result['total_events'] = len(events)

        previous_hash = ""
        for position, event in enumerate(events):
            if not event.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({'event_id': event.id, 'position': position})
            if event.previous_hash != previous_hash:
                result['valid'] = False
                result['chain_breaks'].append({'event_id': event.id, 'position': position})
            previous_hash = event.current_hash

        return result

    async def count_events(self) -> int:
        return await self.storage.count(self.table_name)

    async def try_log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        actor: Optional[str] = None
    ) -> Optional[AuditEvent]:
        """log_event for paths where the ledger change is already committed"""
        try:
            return await self.log_event(event_type, entity_type, entity_id, metadata, actor)
        except Exception:
            log_action(
                self.logger, "error", f"Failed to record audit event {event_type.value}",
                entry_id=entity_id, action="audit_failed", exc_info=True
            )
            return None
