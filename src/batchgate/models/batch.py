"""Batch models: production lots, rejection kinds, and action results.

Batch lifecycle:
    SCHEDULED → IN_PROCESS → QUALITY_CHECK → APPROVED → SHIPPED
    IN_PROCESS / QUALITY_CHECK → BURNED

BURNED and SHIPPED are terminal. Batches are never deleted; terminal
records are retained for audit.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional


class BatchStatus(str, enum.Enum):
    """Lifecycle state of a production batch."""
    SCHEDULED = "scheduled"
    IN_PROCESS = "in_process"
    QUALITY_CHECK = "quality_check"
    APPROVED = "approved"
    BURNED = "burned"
    SHIPPED = "shipped"


class Role(str, enum.Enum):
    """Role grants consulted by the access guard."""
    MANAGER = "MANAGER"
    QC_TECH = "QC_TECH"


class RejectionKind(str, enum.Enum):
    """Why a request was refused. Rejections never mutate state."""
    INSUFFICIENT_TIER = "insufficient_tier"
    ROLE_DENIED = "role_denied"
    NOT_SUPERVISOR = "not_supervisor"
    SYSTEM_HALTED = "system_halted"
    INTERVAL_NOT_REACHED = "interval_not_reached"
    INVALID_STATE_TRANSITION = "invalid_state_transition"
    UNKNOWN_BATCH = "unknown_batch"
    DUPLICATE_BATCH = "duplicate_batch"


class ScrapReason(str, enum.Enum):
    """Recorded on the scrap event when a batch is burned."""
    QC_REJECTED = "qc_rejected"
    OUT_OF_SPEC = "out_of_spec"


@dataclass
class Batch:
    """A single production lot.

    current_operator is an audit pointer, not ownership. out_of_spec is
    sticky: once set by a telemetry alert it is never cleared here.
    """
    batch_id: str
    created_utc: datetime
    last_event_utc: datetime
    created_by: str = ""
    status: BatchStatus = BatchStatus.SCHEDULED
    current_operator: Optional[str] = None
    vessel_id: Optional[str] = None
    out_of_spec: bool = False
    scrap_reason: Optional[ScrapReason] = None

    def touch(self, now: datetime) -> None:
        """Advance last_event_utc, never moving it backwards."""
        if now > self.last_event_utc:
            self.last_event_utc = now

    def to_dict(self) -> dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "status": self.status.value,
            "current_operator": self.current_operator,
            "vessel_id": self.vessel_id,
            "out_of_spec": self.out_of_spec,
            "scrap_reason": self.scrap_reason.value if self.scrap_reason else None,
            "created_by": self.created_by,
            "created_utc": self.created_utc.isoformat(),
            "last_event_utc": self.last_event_utc.isoformat(),
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> Batch:
        reason = data.get("scrap_reason")
        return Batch(
            batch_id=data["batch_id"],
            status=BatchStatus(data["status"]),
            current_operator=data.get("current_operator"),
            vessel_id=data.get("vessel_id"),
            out_of_spec=bool(data.get("out_of_spec", False)),
            scrap_reason=ScrapReason(reason) if reason else None,
            created_by=data.get("created_by", ""),
            created_utc=datetime.fromisoformat(data["created_utc"]),
            last_event_utc=datetime.fromisoformat(data["last_event_utc"]),
        )


@dataclass(frozen=True)
class ActionResult:
    """Result of a lifecycle action.

    rejection is None on success. errors carries a readable account of
    the rejection for operators; data carries the post-action view.
    """
    success: bool
    rejection: Optional[RejectionKind] = None
    errors: list[str] = field(default_factory=list)
    data: dict[str, Any] = field(default_factory=dict)

    @staticmethod
    def ok(**data: Any) -> ActionResult:
        return ActionResult(success=True, data=data)

    @staticmethod
    def reject(kind: RejectionKind, message: str, **data: Any) -> ActionResult:
        return ActionResult(success=False, rejection=kind, errors=[message], data=data)
