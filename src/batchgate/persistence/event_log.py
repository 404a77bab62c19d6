"""Append-only audit log: the canonical record of every accepted action.

Every accepted lifecycle action produces exactly one audit event. Events
are immutable once written and are never deleted. The log serves as:
1. The audit trail external observers read in acceptance order.
2. The hash chain whose head is anchored to the external ledger.
3. The source of truth for reconstructing what happened to a batch.

Each event's hash covers its predecessor's hash, so editing, dropping or
reordering a persisted record breaks the chain and is detected on load.

A store that cannot be written is an infrastructure failure, not a
domain rejection: record() raises AuditStoreError and nothing is
appended.
"""

from __future__ import annotations

import enum
import hashlib
import json
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional


ZERO_HASH = "sha256:" + "0" * 64


class AuditStoreError(RuntimeError):
    """Raised when the audit store cannot persist an event. Fatal."""


class EventKind(str, enum.Enum):
    """Classification of audit events."""
    BATCH_CREATED = "batch_created"
    BATCH_STARTED = "batch_started"
    PROCESS_VERIFIED = "process_verified"
    PROCESS_ALERT = "process_alert"
    MANAGER_OVERRIDE = "manager_override"
    QUALITY_CHECK_REQUESTED = "quality_check_requested"
    BATCH_APPROVED = "batch_approved"
    BATCH_SCRAPPED = "batch_scrapped"
    BATCH_SHIPPED = "batch_shipped"
    CIRCUIT_BREAKER_TOGGLED = "circuit_breaker_toggled"


def _format_ts(ts: datetime) -> str:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _compute_hash(body: dict[str, Any]) -> str:
    canonical = json.dumps(body, sort_keys=True, ensure_ascii=False).encode("utf-8")
    return f"sha256:{hashlib.sha256(canonical).hexdigest()}"


@dataclass(frozen=True)
class AuditEvent:
    """A single immutable audit record.

    Scrap and ship events carry a reason; every other kind carries a
    message. batch_id is None for system-wide events (breaker toggles).
    """
    sequence: int
    event_kind: EventKind
    batch_id: Optional[str]
    actor_id: str
    timestamp_utc: str
    previous_hash: str
    event_hash: str
    message: Optional[str] = None
    reason: Optional[str] = None
    payload: dict[str, Any] = field(default_factory=dict)

    @staticmethod
    def _body(
        sequence: int,
        event_kind: str,
        batch_id: Optional[str],
        actor_id: str,
        timestamp_utc: str,
        message: Optional[str],
        reason: Optional[str],
        payload: dict[str, Any],
        previous_hash: str,
    ) -> dict[str, Any]:
        return {
            "sequence": sequence,
            "event_kind": event_kind,
            "batch_id": batch_id,
            "actor_id": actor_id,
            "timestamp_utc": timestamp_utc,
            "message": message,
            "reason": reason,
            "payload": payload,
            "previous_hash": previous_hash,
        }

    @staticmethod
    def create(
        sequence: int,
        event_kind: EventKind,
        batch_id: Optional[str],
        actor_id: str,
        previous_hash: str,
        message: Optional[str] = None,
        reason: Optional[str] = None,
        payload: Optional[dict[str, Any]] = None,
        timestamp_utc: Optional[datetime] = None,
    ) -> AuditEvent:
        """Create a new event with its chained hash."""
        ts_str = _format_ts(timestamp_utc or datetime.now(timezone.utc))
        body_payload = dict(payload or {})
        event_hash = _compute_hash(AuditEvent._body(
            sequence, event_kind.value, batch_id, actor_id, ts_str,
            message, reason, body_payload, previous_hash,
        ))
        return AuditEvent(
            sequence=sequence,
            event_kind=event_kind,
            batch_id=batch_id,
            actor_id=actor_id,
            timestamp_utc=ts_str,
            message=message,
            reason=reason,
            payload=body_payload,
            previous_hash=previous_hash,
            event_hash=event_hash,
        )

    def to_dict(self) -> dict[str, Any]:
        record = self._body(
            self.sequence, self.event_kind.value, self.batch_id, self.actor_id,
            self.timestamp_utc, self.message, self.reason, self.payload,
            self.previous_hash,
        )
        record["event_hash"] = self.event_hash
        return record


class AuditEventEmitter:
    """Append-only audit sink with optional JSONL persistence.

    Events can only be appended, never modified or deleted. Appends are
    serialised, so sequence numbers follow acceptance order. With a
    storage_path the event is written durably before it becomes visible
    in memory; a failed write leaves the log unchanged.
    """

    def __init__(self, storage_path: Optional[Path] = None) -> None:
        self._events: list[AuditEvent] = []
        self._storage_path = storage_path
        self._lock = threading.Lock()

        if storage_path and storage_path.exists():
            self._load_from_file(storage_path)

    def record(
        self,
        event_kind: EventKind,
        batch_id: Optional[str],
        actor_id: str,
        message: Optional[str] = None,
        reason: Optional[str] = None,
        payload: Optional[dict[str, Any]] = None,
        timestamp_utc: Optional[datetime] = None,
    ) -> AuditEvent:
        """Append one event and return it.

        Raises AuditStoreError if the backing file cannot be written.
        """
        with self._lock:
            event = AuditEvent.create(
                sequence=len(self._events) + 1,
                event_kind=event_kind,
                batch_id=batch_id,
                actor_id=actor_id,
                previous_hash=self._head_hash_locked(),
                message=message,
                reason=reason,
                payload=payload,
                timestamp_utc=timestamp_utc,
            )
            if self._storage_path:
                self._append_to_file(event)
            self._events.append(event)
            return event

    def events(self) -> list[AuditEvent]:
        """Return the full ordered event sequence."""
        with self._lock:
            return list(self._events)

    @property
    def count(self) -> int:
        with self._lock:
            return len(self._events)

    @property
    def last_event(self) -> Optional[AuditEvent]:
        with self._lock:
            return self._events[-1] if self._events else None

    @property
    def head_hash(self) -> str:
        """Hash of the newest event (the chain head), for anchoring."""
        with self._lock:
            return self._head_hash_locked()

    def _head_hash_locked(self) -> str:
        return self._events[-1].event_hash if self._events else ZERO_HASH

    def _append_to_file(self, event: AuditEvent) -> None:
        try:
            with self._storage_path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(event.to_dict(), sort_keys=True, ensure_ascii=False) + "\n")
        except OSError as e:
            raise AuditStoreError(f"Audit store unwritable: {e}") from e

    def _load_from_file(self, path: Path) -> None:
        """Load events from a JSONL file, verifying the hash chain.

        Fail-closed: a hash mismatch, broken link or sequence gap raises
        ValueError rather than loading a partial trail.
        """
        previous_hash = ZERO_HASH
        with path.open("r", encoding="utf-8") as f:
            for line_num, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                data = json.loads(line)

                expected_seq = len(self._events) + 1
                if data["sequence"] != expected_seq:
                    raise ValueError(
                        f"Sequence gap on recovery (line {line_num}): "
                        f"expected {expected_seq}, got {data['sequence']}"
                    )
                if data["previous_hash"] != previous_hash:
                    raise ValueError(
                        f"Broken hash chain (line {line_num}): event {data['sequence']} "
                        f"links to {data['previous_hash']}, expected {previous_hash}"
                    )

                expected_hash = _compute_hash(AuditEvent._body(
                    data["sequence"], data["event_kind"], data["batch_id"],
                    data["actor_id"], data["timestamp_utc"], data["message"],
                    data["reason"], data["payload"], data["previous_hash"],
                ))
                if data["event_hash"] != expected_hash:
                    raise ValueError(
                        f"Integrity check failed (line {line_num}): event {data['sequence']} "
                        f"stored hash {data['event_hash']} != computed {expected_hash}"
                    )

                event = AuditEvent(
                    sequence=data["sequence"],
                    event_kind=EventKind(data["event_kind"]),
                    batch_id=data["batch_id"],
                    actor_id=data["actor_id"],
                    timestamp_utc=data["timestamp_utc"],
                    message=data["message"],
                    reason=data["reason"],
                    payload=data["payload"],
                    previous_hash=data["previous_hash"],
                    event_hash=data["event_hash"],
                )
                self._events.append(event)
                previous_hash = event.event_hash
