"""Gate configuration: business constants loaded from config/gate_params.json.

The telemetry interval is a business rule, not an I/O timeout. Tier
bounds define the competency scale operators are graded on.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any


DEFAULT_CONFIG_PATH = Path(__file__).resolve().parents[2] / "config" / "gate_params.json"


@dataclass(frozen=True)
class GateConfig:
    """Validated gate parameters."""
    min_telemetry_interval_minutes: int = 20
    min_tier: int = 1
    max_tier: int = 5
    default_tier: int = 0
    default_requirement: int = 0

    def __post_init__(self) -> None:
        if self.min_telemetry_interval_minutes < 0:
            raise ValueError(
                "min_telemetry_interval_minutes must be >= 0, "
                f"got {self.min_telemetry_interval_minutes}"
            )
        if not (0 < self.min_tier <= self.max_tier):
            raise ValueError(
                f"Tier bounds must satisfy 0 < min_tier <= max_tier, "
                f"got [{self.min_tier}, {self.max_tier}]"
            )
        # Defaults must deny: an unset operator never meets a set requirement
        if self.default_tier >= self.min_tier:
            raise ValueError(
                f"default_tier ({self.default_tier}) must be below min_tier ({self.min_tier})"
            )
        if self.default_requirement < 0:
            raise ValueError(
                f"default_requirement must be >= 0, got {self.default_requirement}"
            )

    @property
    def min_telemetry_interval(self) -> timedelta:
        return timedelta(minutes=self.min_telemetry_interval_minutes)

    @classmethod
    def default(cls) -> GateConfig:
        return cls()

    @classmethod
    def from_dict(cls, params: dict[str, Any]) -> GateConfig:
        telemetry = params.get("telemetry", {})
        tiers = params.get("tiers", {})
        return cls(
            min_telemetry_interval_minutes=int(
                telemetry.get("MIN_INTERVAL_MINUTES", 20)
            ),
            min_tier=int(tiers.get("MIN_TIER", 1)),
            max_tier=int(tiers.get("MAX_TIER", 5)),
            default_tier=int(tiers.get("DEFAULT_TIER", 0)),
            default_requirement=int(tiers.get("DEFAULT_REQUIREMENT", 0)),
        )

    @classmethod
    def from_file(cls, path: Path = DEFAULT_CONFIG_PATH) -> GateConfig:
        """Load from a gate_params.json file.

        Raises ValueError if the file is missing or malformed.
        """
        try:
            params = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise ValueError(f"Cannot load gate config from {path}: {e}") from e
        return cls.from_dict(params)
