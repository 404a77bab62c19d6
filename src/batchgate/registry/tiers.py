"""Tier registry: operator competency tiers and vessel tier requirements.

Both tables are total mappings: an unset operator has the default tier
and an unset vessel has the default requirement. Lookups never fail;
they simply deny by default, because the default tier sits below the
lowest assignable tier.
"""

from __future__ import annotations

import threading
from typing import Optional

from batchgate.config import GateConfig


class TierRegistry:
    """Operator tiers (1-5) and per-vessel minimum tiers.

    Mutated only through the administrative setters. Reads and writes
    are serialised so a guard snapshot never sees a half-applied update.
    """

    def __init__(self, config: Optional[GateConfig] = None) -> None:
        self._config = config or GateConfig.default()
        self._tiers: dict[str, int] = {}
        self._requirements: dict[str, int] = {}
        self._lock = threading.Lock()

    def set_tier(self, principal: str, tier: int) -> None:
        """Assign a competency tier to an operator.

        Raises ValueError if the principal is blank or the tier is
        outside [min_tier, max_tier].
        """
        canonical = principal.strip()
        if not canonical:
            raise ValueError("Cannot assign tier to blank principal")
        if not (self._config.min_tier <= tier <= self._config.max_tier):
            raise ValueError(
                f"Tier must be in [{self._config.min_tier}, {self._config.max_tier}], "
                f"got {tier}"
            )
        with self._lock:
            self._tiers[canonical] = tier

    def revoke_tier(self, principal: str) -> None:
        """Return an operator to the default (unqualified) tier."""
        with self._lock:
            self._tiers.pop(principal.strip(), None)

    def set_requirement(self, vessel_id: str, min_tier: int) -> None:
        """Set the minimum tier needed to operate a vessel."""
        canonical = vessel_id.strip()
        if not canonical:
            raise ValueError("Cannot set requirement for blank vessel ID")
        if not (0 <= min_tier <= self._config.max_tier):
            raise ValueError(
                f"Requirement must be in [0, {self._config.max_tier}], got {min_tier}"
            )
        with self._lock:
            self._requirements[canonical] = min_tier

    def tier(self, principal: str) -> int:
        with self._lock:
            return self._tiers.get(principal.strip(), self._config.default_tier)

    def requirement(self, vessel_id: str) -> int:
        with self._lock:
            return self._requirements.get(
                vessel_id.strip(), self._config.default_requirement,
            )

    def tiers(self) -> dict[str, int]:
        with self._lock:
            return dict(self._tiers)

    def requirements(self) -> dict[str, int]:
        with self._lock:
            return dict(self._requirements)

    def load(self, tiers: dict[str, int], requirements: dict[str, int]) -> None:
        """Restore both tables from persisted state, validating each entry."""
        for principal, tier in tiers.items():
            self.set_tier(principal, int(tier))
        for vessel_id, min_tier in requirements.items():
            self.set_requirement(vessel_id, int(min_tier))
