#!/usr/bin/env python3
"""Verify a batchgate audit log and gate config against their invariants.

Checks:
- Every record's hash matches its canonical body and links to its
  predecessor (loading the log enforces this).
- Replaying the trail never moves a batch along an edge missing from
  the transition graph, so no status leaves a terminal state.
- gate_params.json loads and passes GateConfig validation.

Usage:
    python3 tools/verify_audit_log.py [data/events.jsonl] [config/gate_params.json]
"""

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT / "src"))

from batchgate.config import GateConfig
from batchgate.engine.transitions import BatchTransitions
from batchgate.models.batch import BatchStatus
from batchgate.persistence.event_log import AuditEventEmitter


DEFAULT_LOG = ROOT / "data" / "events.jsonl"
DEFAULT_CONFIG = ROOT / "config" / "gate_params.json"


def check_replay(log: AuditEventEmitter, errors: list[str]) -> None:
    """Replay status payloads and check each step against the graph."""
    statuses: dict[str, BatchStatus] = {}
    for event in log.events():
        if event.batch_id is None:
            continue
        raw = event.payload.get("status")
        if raw is None:
            continue
        target = BatchStatus(raw)
        current = statuses.get(event.batch_id)
        if current is None:
            if target != BatchStatus.SCHEDULED:
                errors.append(
                    f"event {event.sequence}: {event.batch_id} first seen as {target.value}"
                )
        elif current != target and not BatchTransitions.can_reach(current, target):
            errors.append(
                f"event {event.sequence}: {event.batch_id} moved "
                f"{current.value} → {target.value}"
            )
        statuses[event.batch_id] = target


def check(log_path: Path = DEFAULT_LOG, config_path: Path = DEFAULT_CONFIG) -> int:
    errors: list[str] = []

    try:
        GateConfig.from_file(config_path)
    except ValueError as e:
        errors.append(str(e))

    if log_path.exists():
        try:
            log = AuditEventEmitter(storage_path=log_path)
        except ValueError as e:
            errors.append(str(e))
        else:
            check_replay(log, errors)

    if errors:
        print("Audit verification FAILED:")
        for err in errors:
            print(f"  - {err}")
        return 1

    print("Audit verification passed.")
    return 0


if __name__ == "__main__":
    args = [Path(a) for a in sys.argv[1:3]]
    raise SystemExit(check(*args))
