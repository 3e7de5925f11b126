"""Storage abstractions for derived entitlement snapshots."""
from __future__ import annotations

from threading import Lock
from typing import Dict, Optional, Protocol

from .models import EntitlementSnapshot


class EntitlementSnapshotStore(Protocol):
    """Protocol describing snapshot persistence used by the limit enforcer."""

    def get_snapshot(self, tenant_id: str) -> Optional[EntitlementSnapshot]:
        ...

    def save_snapshot(self, snapshot: EntitlementSnapshot) -> EntitlementSnapshot:
        ...

    def discard(self, tenant_id: str) -> None:
        ...


class InMemoryEntitlementSnapshotStore:
    """Simple in-memory store suitable for tests and local development."""

    def __init__(self) -> None:
        self._snapshots: Dict[str, EntitlementSnapshot] = {}
        self._lock = Lock()

    def get_snapshot(self, tenant_id: str) -> Optional[EntitlementSnapshot]:
        with self._lock:
            return self._snapshots.get(tenant_id)

    def save_snapshot(self, snapshot: EntitlementSnapshot) -> EntitlementSnapshot:
        with self._lock:
            self._snapshots[snapshot.tenant_id] = snapshot
        return snapshot

    def discard(self, tenant_id: str) -> None:
        with self._lock:
            self._snapshots.pop(tenant_id, None)

    def clear(self) -> None:
        with self._lock:
            self._snapshots.clear()
