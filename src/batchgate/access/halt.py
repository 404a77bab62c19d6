"""Emergency halt switch: the global circuit breaker.

When engaged, halt-sensitive actions (start, telemetry, quality-check
submission, finalize, ship) are refused. Manager overrides are not
halt-sensitive: physical-witness overrides remain available during an
emergency.

Only the supervisor may flip the switch. The supervisor is fixed at
construction; transferring supervision is not part of this module.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator


class EmergencyHaltSwitch:
    """Single global halt flag with a fixed supervisor."""

    def __init__(self, supervisor: str, halted: bool = False) -> None:
        canonical = supervisor.strip()
        if not canonical:
            raise ValueError("Supervisor principal must not be blank")
        self._supervisor = canonical
        self._halted = halted
        self._lock = threading.RLock()

    @property
    def supervisor(self) -> str:
        return self._supervisor

    @property
    def halted(self) -> bool:
        with self._lock:
            return self._halted

    @contextmanager
    def locked(self) -> Iterator[None]:
        """Hold the switch so a flip and its audit record land together."""
        with self._lock:
            yield

    def flip(self) -> bool:
        """Invert the flag unconditionally and return the new value.

        Authorisation is the caller's responsibility (see
        AccessControlGuard.check_supervisor).
        """
        with self._lock:
            self._halted = not self._halted
            return self._halted

    def restore(self, halted: bool) -> None:
        """Reset the flag to a prior value (rollback after audit failure)."""
        with self._lock:
            self._halted = halted
