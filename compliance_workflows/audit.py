"""
Audit & History Ledger Module

Append-only, hash-chained record of every workflow transition and decision.
Each subject (a workflow instance or a definition family) has its own chain:
every event carries the SHA-256 hash of the previous event for that subject,
so any edit or deletion in storage is detectable by ``verify_integrity``.

The ledger only ever inserts. There is no update or delete path.
"""

import hashlib
import json
import logging
import threading
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
from enum import Enum

from .storage import StorageInterface, StorageRecord


INSTANCE_SUBJECT = "workflow_instance"
DEFINITION_SUBJECT = "workflow_definition"


class HistoryEventKind(Enum):
    """Kinds of ledger events"""
    TRANSITION = "transition"
    DECISION = "decision"
    STEP_SKIPPED = "step_skipped"
    DEFINITION_PUBLISHED = "definition_published"
    DEFINITION_DEACTIVATED = "definition_deactivated"


def _serialize(value: Any) -> Any:
    """Convert payload values to a JSON-serializable form"""
    if isinstance(value, datetime):
        return value.isoformat()
    elif isinstance(value, Enum):
        return value.value
    elif isinstance(value, dict):
        return {k: _serialize(v) for k, v in value.items()}
    elif isinstance(value, (list, tuple, set, frozenset)):
        return [_serialize(v) for v in value]
    return value


@dataclass
class HistoryEvent(StorageRecord):
    """
    Immutable ledger event. ``created_at`` is the event timestamp; ``position``
    orders events of one subject that share a timestamp.
    """
    kind: HistoryEventKind
    subject_type: str
    subject_id: str
    position: int
    actor_id: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    previous_hash: str = ""
    current_hash: str = ""

    def __post_init__(self):
        self.payload = _serialize(self.payload or {})

    @property
    def timestamp(self) -> datetime:
        return self.created_at

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this event.
        Covers every field except current_hash.
        """
        hash_data = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'kind': self.kind.value,
            'subject_type': self.subject_type,
            'subject_id': self.subject_id,
            'position': self.position,
            'actor_id': self.actor_id,
            'payload': self.payload,
            'previous_hash': self.previous_hash
        }

        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        """Verify that the current hash is correct"""
        return self.current_hash == self.calculate_hash()

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['kind'] = self.kind.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'HistoryEvent':
        if isinstance(data.get('kind'), str):
            data['kind'] = HistoryEventKind(data['kind'])
        return super().from_dict(data)


class AuditLedger:
    """
    Insert-only history ledger for workflow instances and definitions
    """

    def __init__(self, storage: StorageInterface, table_name: str = "workflow_history",
                 hash_chain: bool = True):
        self.storage = storage
        self.table_name = table_name
        self.hash_chain = hash_chain
        self._lock = threading.Lock()
        self.logger = logging.getLogger("compliance_workflows.audit")

    def _subject_events(self, subject_id: str) -> List[HistoryEvent]:
        events = [HistoryEvent.from_dict(data)
                  for data in self.storage.find(self.table_name, {'subject_id': subject_id})]
        events.sort(key=lambda e: e.position)
        return events

    def _append(self, kind: HistoryEventKind, subject_type: str, subject_id: str,
                actor_id: Optional[str], payload: Dict[str, Any],
                timestamp: Optional[datetime] = None) -> HistoryEvent:
        with self.storage.atomic(), self._lock:
            existing = self._subject_events(subject_id)
            position = existing[-1].position + 1 if existing else 0
            previous_hash = existing[-1].current_hash if existing else ""
            now = timestamp or datetime.now(timezone.utc)
            # Timestamps never run backwards within one subject
            if existing and now < existing[-1].created_at:
                now = existing[-1].created_at

            event = HistoryEvent(
                # Deterministic id: two writers computing the same position collide on insert
                id=f"{subject_id}:{position:06d}",
                created_at=now,
                updated_at=now,
                kind=kind,
                subject_type=subject_type,
                subject_id=subject_id,
                position=position,
                actor_id=actor_id,
                payload=payload,
                previous_hash=previous_hash if self.hash_chain else ""
            )
            if self.hash_chain:
                event.current_hash = event.calculate_hash()

            self.storage.insert(self.table_name, event.id, event.to_dict())
            return event

    def record_transition(self, instance_id: str, from_status: Any, to_status: Any,
                          cause: str, actor_id: Optional[str] = None,
                          timestamp: Optional[datetime] = None,
                          details: Optional[Dict[str, Any]] = None) -> HistoryEvent:
        """
        Record an instance status change

        Args:
            instance_id: Workflow instance id
            from_status: Previous status (None when the instance is created)
            to_status: New status
            cause: Short machine-readable cause (e.g. ``started``, ``step_rejected``)
            actor_id: Actor whose action produced the transition
            timestamp: Event time; defaults to now
            details: Additional payload

        Returns:
            The appended HistoryEvent
        """
        payload = {
            'from_status': from_status,
            'to_status': to_status,
            'cause': cause
        }
        if details:
            payload.update(details)
        return self._append(HistoryEventKind.TRANSITION, INSTANCE_SUBJECT, instance_id,
                            actor_id, payload, timestamp)

    def record_decision(self, instance_id: str, decision: Any) -> HistoryEvent:
        """Record an immutable Decision against its instance"""
        payload = decision.to_dict()
        return self._append(HistoryEventKind.DECISION, INSTANCE_SUBJECT, instance_id,
                            decision.actor_id, payload, decision.timestamp)

    def record_step_skipped(self, instance_id: str, step_sequence: int, actor_id: str,
                            reason: str, timestamp: Optional[datetime] = None) -> HistoryEvent:
        """Record that an optional step was skipped"""
        return self._append(HistoryEventKind.STEP_SKIPPED, INSTANCE_SUBJECT, instance_id,
                            actor_id, {'step_sequence': step_sequence, 'reason': reason},
                            timestamp)

    def record_definition_event(self, kind: HistoryEventKind, subject_id: str,
                                actor_id: Optional[str], payload: Dict[str, Any]) -> HistoryEvent:
        """Record a definition publication or deactivation"""
        return self._append(kind, DEFINITION_SUBJECT, subject_id, actor_id, payload)

    def get_history(self, instance_id: str) -> List[HistoryEvent]:
        """
        Get the ordered history of one workflow instance

        Returns:
            Transition, decision and skip events ordered by timestamp
        """
        events = [e for e in self._subject_events(instance_id)
                  if e.subject_type == INSTANCE_SUBJECT]
        events.sort(key=lambda e: (e.created_at, e.position))
        return events

    def get_definition_history(self, organization_id: str, entity_type: str) -> List[HistoryEvent]:
        """Get publication/deactivation events for one (organization, entity type)"""
        return self._subject_events(f"{organization_id}:{entity_type}")

    def count_events(self) -> int:
        """Get total number of ledger events"""
        return self.storage.count(self.table_name)

    def verify_integrity(self, subject_id: str) -> Dict[str, Any]:
        """
        Verify the hash chain of one subject

        Returns:
            Dictionary with integrity check results
        """
        result = {
            'valid': True,
            'total_events': 0,
            'hash_errors': [],
            'chain_breaks': []
        }

        events = self._subject_events(subject_id)
        result['total_events'] = len(events)
        if not self.hash_chain:
            return result

        previous_hash = ""
        for i, event in enumerate(events):
            if not event.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({
                    'event_id': event.id,
                    'position': i,
                    'expected_hash': event.calculate_hash(),
                    'actual_hash': event.current_hash
                })
            if event.position != i or event.previous_hash != previous_hash:
                result['valid'] = False
                result['chain_breaks'].append({
                    'event_id': event.id,
                    'position': i,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': event.previous_hash
                })
            previous_hash = event.current_hash

        if not result['valid']:
            self.logger.warning(f"Ledger integrity check failed for {subject_id}")
        return result
