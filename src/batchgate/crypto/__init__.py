"""Audit anchoring to an external ledger."""

from batchgate.crypto.anchor import AnchorRecord, anchor_audit_log, audit_digest

__all__ = ["AnchorRecord", "anchor_audit_log", "audit_digest"]
