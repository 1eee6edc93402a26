"""Persistence interfaces consumed by the core, with in-memory implementations.

Database drivers live outside the core; anything satisfying these protocols can
be injected through ``AppContext``. The in-memory stores hand out copies, so
callers only change stored state through ``update``/``update_if``.
"""
from __future__ import annotations

import copy
import threading
import time
from typing import Any, Dict, List, Mapping, Optional, Protocol

from errors import IntentNotFound
from models import AuditRecord, CloudConnection, Intent


class IntentStore(Protocol):
    def create(self, intent: Intent) -> Intent: ...

    def get(self, intent_id: str) -> Optional[Intent]: ...

    def find(self, **filters: Any) -> List[Intent]: ...

    def update(self, intent: Intent) -> Intent:
        """Save the full record (insert if absent)."""
        ...

    def update_if(self, intent_id: str, expected: Mapping[str, Any], updates: Mapping[str, Any]) -> Optional[Intent]:
        """Apply ``updates`` only if every ``expected`` field still matches; return the new record or None."""
        ...


class ConnectionStore(Protocol):
    def upsert(self, connection: CloudConnection) -> CloudConnection: ...

    def get(self, user_id: str, provider: str) -> Optional[CloudConnection]: ...


class AuditStore(Protocol):
    def append(self, record: AuditRecord) -> AuditRecord: ...

    def list(self, **filters: Any) -> List[AuditRecord]: ...


def _matches(record: Any, filters: Mapping[str, Any]) -> bool:
    for key, value in filters.items():
        current = getattr(record, key, None)
        if isinstance(value, (list, tuple, set, frozenset)):
            if current not in value:
                return False
        elif current != value:
            return False
    return True


class InMemoryIntentStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: Dict[str, Intent] = {}

    def create(self, intent: Intent) -> Intent:
        with self._lock:
            self._records[intent.id] = copy.deepcopy(intent)
        return intent

    def get(self, intent_id: str) -> Optional[Intent]:
        with self._lock:
            record = self._records.get(intent_id)
            return copy.deepcopy(record) if record else None

    def find(self, **filters: Any) -> List[Intent]:
        with self._lock:
            return [copy.deepcopy(r) for r in self._records.values() if _matches(r, filters)]

    def update(self, intent: Intent) -> Intent:
        """Save the full record, inserting it if it was never created."""
        intent.touch()
        with self._lock:
            self._records[intent.id] = copy.deepcopy(intent)
        return intent

    def update_if(self, intent_id: str, expected: Mapping[str, Any], updates: Mapping[str, Any]) -> Optional[Intent]:
        with self._lock:
            record = self._records.get(intent_id)
            if record is None:
                raise IntentNotFound(f"Intent {intent_id} not found")
            if not _matches(record, expected):
                return None
            for key, value in updates.items():
                setattr(record, key, value)
            record.updated_at = time.time()
            return copy.deepcopy(record)


class InMemoryConnectionStore:
    """Connections keyed by (user_id, provider); a second upsert overwrites the first."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: Dict[tuple[str, str], CloudConnection] = {}

    def upsert(self, connection: CloudConnection) -> CloudConnection:
        with self._lock:
            self._records[connection.key] = copy.deepcopy(connection)
        return connection

    def get(self, user_id: str, provider: str) -> Optional[CloudConnection]:
        with self._lock:
            record = self._records.get((user_id, provider))
            return copy.deepcopy(record) if record else None


class InMemoryAuditStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: List[AuditRecord] = []

    def append(self, record: AuditRecord) -> AuditRecord:
        with self._lock:
            self._records.append(copy.deepcopy(record))
        return record

    def list(self, **filters: Any) -> List[AuditRecord]:
        with self._lock:
            return [copy.deepcopy(r) for r in self._records if _matches(r, filters)]
