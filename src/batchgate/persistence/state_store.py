"""State store: JSON snapshot of the observable state surface.

Holds batch records, tier and requirement tables, role grants, the
supervisor identity and the circuit-breaker flag. The audit log is the
source of truth; this snapshot lets a restarted process resume without
replaying it.

Writes go to a temporary file that replaces the target, so a crash never
leaves a half-written snapshot behind.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from batchgate.models.batch import Batch


STATE_VERSION = 1


@dataclass
class PersistedState:
    """Everything the state machine needs to resume."""
    supervisor: Optional[str] = None
    halted: bool = False
    batches: dict[str, Batch] = field(default_factory=dict)
    tiers: dict[str, int] = field(default_factory=dict)
    requirements: dict[str, int] = field(default_factory=dict)
    roles: dict[str, list[str]] = field(default_factory=dict)


class StateStore:
    """File-backed snapshot store.

    Thread-safety: the caller serialises saves (the state machine holds
    its persistence lock while saving).
    """

    def __init__(self, storage_path: Path) -> None:
        self._storage_path = storage_path

    @property
    def storage_path(self) -> Path:
        return self._storage_path

    def exists(self) -> bool:
        return self._storage_path.exists()

    def save(self, state: PersistedState) -> None:
        """Write the snapshot. Raises OSError on failure."""
        document: dict[str, Any] = {
            "version": STATE_VERSION,
            "supervisor": state.supervisor,
            "halted": state.halted,
            "batches": {bid: b.to_dict() for bid, b in sorted(state.batches.items())},
            "tiers": dict(sorted(state.tiers.items())),
            "requirements": dict(sorted(state.requirements.items())),
            "roles": dict(sorted(state.roles.items())),
        }
        self._storage_path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._storage_path.with_suffix(self._storage_path.suffix + ".tmp")
        with tmp.open("w", encoding="utf-8") as f:
            json.dump(document, f, indent=2, sort_keys=True)
        os.replace(tmp, self._storage_path)

    def load(self) -> PersistedState:
        """Read the snapshot. A missing file yields an empty state."""
        if not self._storage_path.exists():
            return PersistedState()
        data = json.loads(self._storage_path.read_text(encoding="utf-8"))
        version = data.get("version")
        if version != STATE_VERSION:
            raise ValueError(
                f"Unsupported state version {version} in {self._storage_path}"
            )
        return PersistedState(
            supervisor=data.get("supervisor"),
            halted=bool(data.get("halted", False)),
            batches={
                bid: Batch.from_dict(raw)
                for bid, raw in data.get("batches", {}).items()
            },
            tiers={k: int(v) for k, v in data.get("tiers", {}).items()},
            requirements={k: int(v) for k, v in data.get("requirements", {}).items()},
            roles={k: list(v) for k, v in data.get("roles", {}).items()},
        )
