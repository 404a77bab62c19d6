"""Persistence: append-only audit log and state snapshots."""

from batchgate.persistence.event_log import (
    AuditEvent,
    AuditEventEmitter,
    AuditStoreError,
    EventKind,
)
from batchgate.persistence.state_store import PersistedState, StateStore

__all__ = [
    "AuditEvent",
    "AuditEventEmitter",
    "AuditStoreError",
    "EventKind",
    "PersistedState",
    "StateStore",
]
