"""Batch lifecycle state machine: the permissioned core of batchgate.

Owns every batch record and executes lifecycle actions:
- create_batch: register a new SCHEDULED batch
- start_batch: qualified operator puts a batch on a vessel
- log_process_update: throttled telemetry with out-of-spec escalation
- manager_bypass: audited manager override (never halt-gated)
- submit_for_quality_check: hand an in-process batch to QC
- finalize_batch: QC decision, coupled with the sticky out-of-spec flag
- approve_for_shipping: supervisor release of an approved batch
- toggle_circuit_breaker: supervisor emergency halt

Every action is a two-phase transaction under the batch's lock:
1. Evaluate all guards against a GuardSnapshot (no writes yet).
2. Apply the mutation and append its audit event as one unit. If the
   audit store fails, the mutation is rolled back and AuditStoreError
   propagates; no state change exists without its audit event.

Halt-sensitive actions also hold the halt switch from snapshot to audit
append, so a breaker toggle lands wholly before or wholly after them in
the audit order. Lock order is batch lock, then halt switch.

The state store only ever sees committed records: a copy of each batch
is taken after its audit event is appended, and snapshots are written
from those copies.

Domain rejections are returned as ActionResult values with a
RejectionKind. They are never raised and never retried here.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import fields, replace
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from batchgate.access.guard import AccessControlGuard, Denial
from batchgate.access.halt import EmergencyHaltSwitch
from batchgate.config import GateConfig
from batchgate.engine.throttle import TelemetryIngestionThrottle
from batchgate.engine.transitions import BatchTransitions
from batchgate.models.batch import (
    ActionResult,
    Batch,
    BatchStatus,
    RejectionKind,
    Role,
    ScrapReason,
)
from batchgate.persistence.event_log import (
    AuditEvent,
    AuditEventEmitter,
    AuditStoreError,
    EventKind,
)
from batchgate.persistence.state_store import PersistedState, StateStore
from batchgate.registry.roles import RoleRegistry
from batchgate.registry.tiers import TierRegistry


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class BatchLifecycleStateMachine:
    """Validates and executes batch lifecycle actions.

    Usage:
        sm = BatchLifecycleStateMachine(supervisor="sup-1")
        sm.tiers.set_tier("op-1", 3)
        sm.tiers.set_requirement("V-7", 3)
        sm.roles.grant("qc-1", Role.QC_TECH)

        sm.create_batch("B-001", principal="sup-1")
        sm.start_batch("B-001", vessel_id="V-7", principal="op-1")
        sm.log_process_update("B-001", spec_good=True, principal="op-1")
        sm.finalize_batch("B-001", approved=True, principal="qc-1")
        sm.approve_for_shipping("B-001", principal="sup-1")

    Persistence (optional):
        sm = BatchLifecycleStateMachine(
            supervisor="sup-1",
            event_log=AuditEventEmitter(data_dir / "events.jsonl"),
            state_store=StateStore(data_dir / "state.json"),
        )

    Concurrency: actions on one batch id are serialised by a per-batch
    lock; actions on distinct ids run in parallel.
    """

    def __init__(
        self,
        supervisor: Optional[str] = None,
        config: Optional[GateConfig] = None,
        tiers: Optional[TierRegistry] = None,
        roles: Optional[RoleRegistry] = None,
        event_log: Optional[AuditEventEmitter] = None,
        state_store: Optional[StateStore] = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._config = config or GateConfig.default()
        self._tiers = tiers or TierRegistry(self._config)
        self._roles = roles or RoleRegistry()
        self._event_log = event_log or AuditEventEmitter()
        self._state_store = state_store
        self._clock = clock
        self._throttle = TelemetryIngestionThrottle(self._config)

        self._batches: dict[str, Batch] = {}
        # Audited views, guarded by _batches_lock; the only source for snapshots
        self._committed: dict[str, Batch] = {}
        self._batch_locks: dict[str, threading.Lock] = {}
        self._batches_lock = threading.Lock()
        self._persist_lock = threading.Lock()

        # Load persisted state or start fresh
        halted = False
        if state_store is not None and state_store.exists():
            stored = state_store.load()
            if supervisor is not None and stored.supervisor not in (None, supervisor.strip()):
                raise ValueError(
                    f"Supervisor mismatch: store has {stored.supervisor}, "
                    f"got {supervisor}"
                )
            supervisor = stored.supervisor or supervisor
            halted = stored.halted
            self._batches = dict(stored.batches)
            self._committed = {bid: replace(b) for bid, b in self._batches.items()}
            self._batch_locks = {bid: threading.Lock() for bid in self._batches}
            self._tiers.load(stored.tiers, stored.requirements)
            self._roles.load(stored.roles)

        if supervisor is None:
            raise ValueError("A supervisor principal is required at initialisation")

        self._halt = EmergencyHaltSwitch(supervisor, halted=halted)
        self._guard = AccessControlGuard(self._tiers, self._roles, self._halt)
        self._committed_halted = halted

        # Set to True if a StateStore write fails after the audit event
        # was committed; in-memory state is still correct.
        self._persistence_degraded: bool = False

    # ------------------------------------------------------------------
    # Registries and read surface
    # ------------------------------------------------------------------

    @property
    def tiers(self) -> TierRegistry:
        return self._tiers

    @property
    def roles(self) -> RoleRegistry:
        return self._roles

    @property
    def supervisor(self) -> str:
        return self._halt.supervisor

    @property
    def halted(self) -> bool:
        return self._halt.halted

    @property
    def event_log(self) -> AuditEventEmitter:
        return self._event_log

    @property
    def guard(self) -> AccessControlGuard:
        return self._guard

    def get_batch(self, batch_id: str) -> Optional[Batch]:
        """Return a copy of a batch record (None if never created)."""
        lock = self._lock_for(batch_id)
        if lock is None:
            return None
        with lock:
            batch = self._batches.get(batch_id)
            return replace(batch) if batch is not None else None

    def batches(self) -> list[Batch]:
        """Copies of all batch records, in creation order."""
        with self._batches_lock:
            ids = list(self._batches)
        result = []
        for bid in ids:
            batch = self.get_batch(bid)
            if batch is not None:
                result.append(batch)
        return result

    def status(self) -> dict[str, Any]:
        """Return system-wide status summary."""
        counts: dict[str, int] = {}
        for b in self.batches():
            counts[b.status.value] = counts.get(b.status.value, 0) + 1
        return {
            "supervisor": self.supervisor,
            "halted": self.halted,
            "batches": {
                "total": sum(counts.values()),
                "by_status": counts,
            },
            "events": self._event_log.count,
            "head_hash": self._event_log.head_hash,
            "persistence_degraded": self._persistence_degraded,
        }

    # ------------------------------------------------------------------
    # Lifecycle actions
    # ------------------------------------------------------------------

    def create_batch(
        self, batch_id: str, principal: str, now: Optional[datetime] = None,
    ) -> ActionResult:
        """Register a new SCHEDULED batch. Supervisor or MANAGER only."""
        now = self._now(now)
        canonical = batch_id.strip()
        if not canonical:
            raise ValueError("Cannot create batch with blank ID")

        with self._halt.locked():
            snap = self._guard.snapshot(principal)
            denial = snap.evaluate(not_halted=True)
            if denial is None and snap.check_supervisor() is not None:
                denial = snap.check_role(Role.MANAGER)
            if denial:
                return self._deny("create_batch", canonical, denial)

            with self._batches_lock:
                if canonical in self._batch_locks:
                    return self._reject(
                        "create_batch", canonical, RejectionKind.DUPLICATE_BATCH,
                        f"Batch already exists: {canonical}",
                    )
                # Unpublished until inserted below, so no other thread can hold it
                lock = threading.Lock()
                self._batch_locks[canonical] = lock

            with lock:
                batch = Batch(
                    batch_id=canonical,
                    created_utc=now,
                    last_event_utc=now,
                    created_by=snap.principal,
                )
                try:
                    event = self._event_log.record(
                        EventKind.BATCH_CREATED, canonical, snap.principal,
                        message="Batch scheduled",
                        payload={"status": batch.status.value},
                        timestamp_utc=now,
                    )
                except AuditStoreError:
                    with self._batches_lock:
                        self._batch_locks.pop(canonical, None)
                    logger.error("audit store failure on create_batch %s", canonical)
                    raise
                view = replace(batch)
                with self._batches_lock:
                    self._batches[canonical] = batch
                    self._committed[canonical] = replace(batch)
        return self._accepted("create_batch", view, event)

    def start_batch(
        self,
        batch_id: str,
        vessel_id: str,
        principal: str,
        now: Optional[datetime] = None,
    ) -> ActionResult:
        """Put a batch on a vessel under a qualified operator."""
        now = self._now(now)
        if not vessel_id.strip():
            raise ValueError("Cannot start batch on blank vessel ID")
        lock = self._lock_for(batch_id)
        if lock is None:
            return self._unknown("start_batch", batch_id)

        with lock, self._halt.locked():
            batch = self._batches[batch_id]
            snap = self._guard.snapshot(principal, vessel_id.strip())
            denial = snap.evaluate(not_halted=True, qualified=True)
            if denial:
                return self._deny("start_batch", batch_id, denial)

            errors = BatchTransitions.validate_transition(batch, BatchStatus.IN_PROCESS)
            if errors:
                return self._reject(
                    "start_batch", batch_id,
                    RejectionKind.INVALID_STATE_TRANSITION, errors[0],
                )

            prior = replace(batch)
            batch.status = BatchStatus.IN_PROCESS
            batch.current_operator = snap.principal
            batch.vessel_id = snap.vessel_id
            batch.touch(now)

            event, view = self._commit(
                batch, prior, EventKind.BATCH_STARTED, snap.principal, now,
                message="Batch started",
                payload={"vessel_id": snap.vessel_id, "operator": snap.principal},
            )
        return self._accepted("start_batch", view, event)

    def log_process_update(
        self,
        batch_id: str,
        spec_good: bool,
        principal: str,
        now: Optional[datetime] = None,
    ) -> ActionResult:
        """Ingest one telemetry reading.

        In-spec readings are throttled to one per MIN_INTERVAL. An
        out-of-spec reading is always accepted and sets the sticky
        out_of_spec flag.
        """
        now = self._now(now)
        lock = self._lock_for(batch_id)
        if lock is None:
            return self._unknown("log_process_update", batch_id)

        with lock, self._halt.locked():
            batch = self._batches[batch_id]
            snap = self._guard.snapshot(principal)
            denial = snap.evaluate(not_halted=True)
            if denial:
                return self._deny("log_process_update", batch_id, denial)

            if self._throttle.admit(batch.last_event_utc, now, spec_good) is not None:
                next_at = self._throttle.next_admissible(batch.last_event_utc)
                return self._reject(
                    "log_process_update", batch_id,
                    RejectionKind.INTERVAL_NOT_REACHED,
                    f"{batch_id}: next routine update accepted at {next_at.isoformat()}",
                    next_admissible_utc=next_at.isoformat(),
                )

            prior = replace(batch)
            if spec_good:
                kind, message = EventKind.PROCESS_VERIFIED, "Process update verified"
            else:
                batch.out_of_spec = True
                kind, message = EventKind.PROCESS_ALERT, "Out-of-spec alert"
            batch.touch(now)

            event, view = self._commit(
                batch, prior, kind, snap.principal, now,
                message=message, payload={"spec_good": spec_good},
            )
        return self._accepted("log_process_update", view, event)

    def manager_bypass(
        self,
        batch_id: str,
        principal: str,
        note: str = "",
        now: Optional[datetime] = None,
    ) -> ActionResult:
        """Record a physical-witness manager override.

        Deliberately not gated by the halt switch. Changes nothing but
        the audit trail.
        """
        now = self._now(now)
        lock = self._lock_for(batch_id)
        if lock is None:
            return self._unknown("manager_bypass", batch_id)

        with lock:
            batch = self._batches[batch_id]
            snap = self._guard.snapshot(principal)
            denial = snap.evaluate(role=Role.MANAGER)
            if denial:
                return self._deny("manager_bypass", batch_id, denial)

            event, view = self._commit(
                batch, replace(batch), EventKind.MANAGER_OVERRIDE, snap.principal, now,
                message="Manager override",
                payload={"note": note} if note else None,
            )
        return self._accepted("manager_bypass", view, event)

    def submit_for_quality_check(
        self, batch_id: str, principal: str, now: Optional[datetime] = None,
    ) -> ActionResult:
        """Move an in-process batch to QUALITY_CHECK.

        The submitter must be qualified for the vessel the batch runs on.
        """
        now = self._now(now)
        lock = self._lock_for(batch_id)
        if lock is None:
            return self._unknown("submit_for_quality_check", batch_id)

        with lock, self._halt.locked():
            batch = self._batches[batch_id]
            if batch.vessel_id is None:
                denial = self._guard.snapshot(principal).evaluate(not_halted=True)
            else:
                snap = self._guard.snapshot(principal, batch.vessel_id)
                denial = snap.evaluate(not_halted=True, qualified=True)
            if denial:
                return self._deny("submit_for_quality_check", batch_id, denial)

            errors = BatchTransitions.validate_transition(batch, BatchStatus.QUALITY_CHECK)
            if errors:
                return self._reject(
                    "submit_for_quality_check", batch_id,
                    RejectionKind.INVALID_STATE_TRANSITION, errors[0],
                )

            prior = replace(batch)
            batch.status = BatchStatus.QUALITY_CHECK
            batch.touch(now)

            event, view = self._commit(
                batch, prior, EventKind.QUALITY_CHECK_REQUESTED, principal.strip(), now,
                message="Submitted for quality check",
            )
        return self._accepted("submit_for_quality_check", view, event)

    def finalize_batch(
        self,
        batch_id: str,
        approved: bool,
        principal: str,
        now: Optional[datetime] = None,
    ) -> ActionResult:
        """Apply the QC decision.

        A batch is APPROVED only if QC approves AND it never went out of
        spec. Otherwise it is BURNED with a scrap reason. QC cannot clear
        a contamination flag by approving.
        """
        now = self._now(now)
        lock = self._lock_for(batch_id)
        if lock is None:
            return self._unknown("finalize_batch", batch_id)

        with lock, self._halt.locked():
            batch = self._batches[batch_id]
            snap = self._guard.snapshot(principal)
            denial = snap.evaluate(not_halted=True, role=Role.QC_TECH)
            if denial:
                return self._deny("finalize_batch", batch_id, denial)

            release = approved and not batch.out_of_spec
            target = BatchStatus.APPROVED if release else BatchStatus.BURNED
            errors = BatchTransitions.validate_transition(batch, target)
            if errors:
                return self._reject(
                    "finalize_batch", batch_id,
                    RejectionKind.INVALID_STATE_TRANSITION, errors[0],
                )

            prior = replace(batch)
            batch.status = target
            batch.touch(now)
            if release:
                event, view = self._commit(
                    batch, prior, EventKind.BATCH_APPROVED, snap.principal, now,
                    message="Batch approved",
                )
            else:
                reason = ScrapReason.OUT_OF_SPEC if batch.out_of_spec else ScrapReason.QC_REJECTED
                batch.scrap_reason = reason
                event, view = self._commit(
                    batch, prior, EventKind.BATCH_SCRAPPED, snap.principal, now,
                    reason=reason.value,
                    payload={"qc_approved": approved, "out_of_spec": batch.out_of_spec},
                )
        return self._accepted("finalize_batch", view, event)

    def approve_for_shipping(
        self, batch_id: str, principal: str, now: Optional[datetime] = None,
    ) -> ActionResult:
        """Supervisor release: APPROVED → SHIPPED."""
        now = self._now(now)
        lock = self._lock_for(batch_id)
        if lock is None:
            return self._unknown("approve_for_shipping", batch_id)

        with lock, self._halt.locked():
            batch = self._batches[batch_id]
            snap = self._guard.snapshot(principal)
            denial = snap.evaluate(not_halted=True, supervisor=True)
            if denial:
                return self._deny("approve_for_shipping", batch_id, denial)

            errors = BatchTransitions.validate_transition(batch, BatchStatus.SHIPPED)
            if errors:
                return self._reject(
                    "approve_for_shipping", batch_id,
                    RejectionKind.INVALID_STATE_TRANSITION, errors[0],
                )

            prior = replace(batch)
            batch.status = BatchStatus.SHIPPED
            batch.touch(now)
            event, view = self._commit(
                batch, prior, EventKind.BATCH_SHIPPED, snap.principal, now,
                message="Batch shipped", reason="approved_for_shipping",
            )
        return self._accepted("approve_for_shipping", view, event)

    def toggle_circuit_breaker(
        self, principal: str, now: Optional[datetime] = None,
    ) -> ActionResult:
        """Flip the emergency halt. Supervisor only; always flips."""
        now = self._now(now)
        with self._halt.locked():
            snap = self._guard.snapshot(principal)
            denial = snap.evaluate(supervisor=True)
            if denial:
                return self._deny("toggle_circuit_breaker", None, denial)

            halted = self._halt.flip()
            try:
                event = self._event_log.record(
                    EventKind.CIRCUIT_BREAKER_TOGGLED, None, snap.principal,
                    message="Circuit breaker engaged" if halted else "Circuit breaker released",
                    payload={"halted": halted},
                    timestamp_utc=now,
                )
            except AuditStoreError:
                self._halt.restore(not halted)
                logger.error("audit store failure on toggle_circuit_breaker")
                raise
            with self._batches_lock:
                self._committed_halted = halted

        # Persist outside the switch lock
        logger.info("circuit breaker %s by %s", "engaged" if halted else "released", snap.principal)
        data: dict[str, Any] = {"halted": halted, "sequence": event.sequence}
        warning = self._safe_persist_post_audit()
        if warning:
            data["warning"] = warning
        return ActionResult.ok(**data)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _now(self, now: Optional[datetime]) -> datetime:
        """Resolve the action time; naive datetimes are taken as UTC."""
        ts = now if now is not None else self._clock()
        return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)

    def _lock_for(self, batch_id: str) -> Optional[threading.Lock]:
        with self._batches_lock:
            if batch_id not in self._batches:
                return None
            return self._batch_locks[batch_id]

    def _commit(
        self,
        batch: Batch,
        prior: Batch,
        kind: EventKind,
        actor_id: str,
        now: datetime,
        message: Optional[str] = None,
        reason: Optional[str] = None,
        payload: Optional[dict[str, Any]] = None,
    ) -> tuple[AuditEvent, Batch]:
        """Append the audit event for a mutation already applied to batch.

        Returns the event and the committed view of the batch. Fail-closed:
        if the audit store fails, every field of batch is restored from
        prior and AuditStoreError propagates.
        """
        body = {"status": batch.status.value}
        body.update(payload or {})
        try:
            event = self._event_log.record(
                kind, batch.batch_id, actor_id,
                message=message, reason=reason, payload=body, timestamp_utc=now,
            )
        except AuditStoreError:
            for f in fields(Batch):
                setattr(batch, f.name, getattr(prior, f.name))
            logger.error("audit store failure on %s for %s", kind.value, batch.batch_id)
            raise
        view = replace(batch)
        with self._batches_lock:
            self._committed[batch.batch_id] = view
        return event, replace(view)

    def _accepted(self, action: str, batch: Batch, event: AuditEvent) -> ActionResult:
        logger.info(
            "%s accepted: batch=%s status=%s seq=%d",
            action, batch.batch_id, batch.status.value, event.sequence,
        )
        data = batch.to_dict()
        data["sequence"] = event.sequence
        warning = self._safe_persist_post_audit()
        if warning:
            data["warning"] = warning
        return ActionResult.ok(**data)

    def _deny(self, action: str, batch_id: Optional[str], denial: Denial) -> ActionResult:
        return self._reject(action, batch_id, denial.kind, denial.message)

    def _reject(
        self,
        action: str,
        batch_id: Optional[str],
        kind: RejectionKind,
        message: str,
        **data: Any,
    ) -> ActionResult:
        logger.warning("%s rejected: batch=%s kind=%s", action, batch_id, kind.value)
        return ActionResult.reject(kind, message, **data)

    def _unknown(self, action: str, batch_id: str) -> ActionResult:
        return self._reject(
            action, batch_id, RejectionKind.UNKNOWN_BATCH,
            f"Batch not found: {batch_id}",
        )

    def _persist_state(self) -> None:
        """Persist the committed state surface to the state store (if wired).

        Reads only audited views, never live batch records, and takes no
        batch lock or the halt switch. Can raise OSError; callers use
        _safe_persist_post_audit().
        """
        if self._state_store is None:
            return
        with self._batches_lock:
            batches = dict(self._committed)
            halted = self._committed_halted
        self._state_store.save(PersistedState(
            supervisor=self.supervisor,
            halted=halted,
            batches=batches,
            tiers=self._tiers.tiers(),
            requirements=self._tiers.requirements(),
            roles=self._roles.grants(),
        ))

    def _safe_persist_post_audit(self) -> Optional[str]:
        """Persist state after the audit event has been committed.

        MUST NOT roll back in-memory state: the audit trail already
        records the action. On failure, sets _persistence_degraded and
        returns a warning string instead of an error.
        """
        try:
            with self._persist_lock:
                self._persist_state()
            return None
        except OSError as e:
            self._persistence_degraded = True
            logger.warning("state store write failed: %s", e)
            return f"Persistence degraded: {e} (action recorded in audit log, state snapshot is stale)"

    def save_registries(self) -> Optional[str]:
        """Persist after an administrative registry change (tiers, roles)."""
        return self._safe_persist_post_audit()
