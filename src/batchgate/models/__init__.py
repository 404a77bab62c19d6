"""Core data models for batchgate."""

from batchgate.models.batch import (
    ActionResult,
    Batch,
    BatchStatus,
    RejectionKind,
    Role,
    ScrapReason,
)

__all__ = [
    "ActionResult",
    "Batch",
    "BatchStatus",
    "RejectionKind",
    "Role",
    "ScrapReason",
]
