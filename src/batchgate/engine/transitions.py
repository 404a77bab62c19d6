"""Batch transition graph: the only status edges the lifecycle may take.

    SCHEDULED → IN_PROCESS
    IN_PROCESS → IN_PROCESS (re-start under a new operator or vessel)
    IN_PROCESS → QUALITY_CHECK | APPROVED | BURNED
    QUALITY_CHECK → APPROVED | BURNED
    APPROVED → SHIPPED

Status never moves backward except into BURNED. BURNED and SHIPPED are
absorbing: no edge leaves them.

Fail-closed: any transition not listed is rejected. Pure computation;
audit recording and locking are handled by the lifecycle state machine.
"""

from __future__ import annotations

from batchgate.models.batch import Batch, BatchStatus


_TRANSITIONS: dict[BatchStatus, set[BatchStatus]] = {
    BatchStatus.SCHEDULED: {BatchStatus.IN_PROCESS},
    BatchStatus.IN_PROCESS: {
        BatchStatus.IN_PROCESS,
        BatchStatus.QUALITY_CHECK,
        BatchStatus.APPROVED,
        BatchStatus.BURNED,
    },
    BatchStatus.QUALITY_CHECK: {BatchStatus.APPROVED, BatchStatus.BURNED},
    BatchStatus.APPROVED: {BatchStatus.SHIPPED},
    # Terminal states: no outgoing transitions
    BatchStatus.BURNED: set(),
    BatchStatus.SHIPPED: set(),
}

_TERMINAL = frozenset({BatchStatus.BURNED, BatchStatus.SHIPPED})


class BatchTransitions:
    """Validates batch status transitions against the graph."""

    @staticmethod
    def validate_transition(batch: Batch, target: BatchStatus) -> list[str]:
        """Check if a transition is valid. Returns errors (empty = OK)."""
        current = batch.status
        allowed = _TRANSITIONS.get(current, set())

        if target not in allowed:
            allowed_str = ", ".join(s.value for s in sorted(allowed, key=lambda x: x.value))
            return [
                f"Invalid batch transition for {batch.batch_id}: "
                f"{current.value} → {target.value}. "
                f"Allowed from {current.value}: [{allowed_str}]"
            ]
        return []

    @staticmethod
    def can_reach(current: BatchStatus, target: BatchStatus) -> bool:
        return target in _TRANSITIONS.get(current, set())

    @staticmethod
    def is_terminal(status: BatchStatus) -> bool:
        return status in _TERMINAL

    @staticmethod
    def valid_transitions(status: BatchStatus) -> set[BatchStatus]:
        return set(_TRANSITIONS.get(status, set()))
