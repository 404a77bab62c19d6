"""Telemetry ingestion throttle.

Bounds routine telemetry to one accepted update per MIN_INTERVAL per
batch, which keeps audit-log volume under control. An out-of-spec
reading bypasses the throttle unconditionally: safety-relevant events
are never delayed.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from batchgate.config import GateConfig
from batchgate.models.batch import RejectionKind


class TelemetryIngestionThrottle:
    """Admits or defers a telemetry update. Pure computation."""

    def __init__(self, config: Optional[GateConfig] = None) -> None:
        self._interval = (config or GateConfig.default()).min_telemetry_interval

    @property
    def min_interval(self) -> timedelta:
        return self._interval

    def next_admissible(self, last_event_utc: datetime) -> datetime:
        """Earliest time a routine (in-spec) update will be accepted."""
        return last_event_utc + self._interval

    def admit(
        self,
        last_event_utc: datetime,
        now: datetime,
        spec_good: bool,
    ) -> Optional[RejectionKind]:
        """Return None to accept, or INTERVAL_NOT_REACHED to defer."""
        if not spec_good:
            return None
        if now >= self.next_admissible(last_event_utc):
            return None
        return RejectionKind.INTERVAL_NOT_REACHED
