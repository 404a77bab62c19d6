"""Access control guard: authorisation predicates for lifecycle actions.

The guard owns no state. It reads the tier registry, role registry and
halt switch into a GuardSnapshot at the start of evaluation, and every
check for a single request runs against that snapshot. A concurrent
registry update or breaker toggle is therefore seen either entirely
before or entirely after the request, never halfway through it.

All checks are independent boolean predicates, so evaluation order does
not change the outcome. evaluate() runs them cheapest first: the halt
flag, then supervisor identity, then role membership, then the tier
comparison.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from batchgate.access.halt import EmergencyHaltSwitch
from batchgate.models.batch import RejectionKind, Role
from batchgate.registry.roles import RoleRegistry
from batchgate.registry.tiers import TierRegistry


@dataclass(frozen=True)
class Denial:
    """A failed check: the rejection kind and a readable reason."""
    kind: RejectionKind
    message: str


@dataclass(frozen=True)
class GuardSnapshot:
    """Registry view for one principal, frozen at evaluation start."""
    principal: str
    tier: int
    roles: frozenset[Role]
    supervisor: str
    halted: bool
    vessel_id: Optional[str] = None
    requirement: int = 0

    def check_not_halted(self) -> Optional[Denial]:
        if self.halted:
            return Denial(
                RejectionKind.SYSTEM_HALTED,
                "System halted: circuit breaker is engaged",
            )
        return None

    def check_supervisor(self) -> Optional[Denial]:
        if self.principal != self.supervisor:
            return Denial(
                RejectionKind.NOT_SUPERVISOR,
                f"{self.principal} is not the supervisor",
            )
        return None

    def check_role(self, role: Role) -> Optional[Denial]:
        if role not in self.roles:
            return Denial(
                RejectionKind.ROLE_DENIED,
                f"{self.principal} lacks role {role.value}",
            )
        return None

    def check_qualified(self) -> Optional[Denial]:
        if self.tier < self.requirement:
            return Denial(
                RejectionKind.INSUFFICIENT_TIER,
                f"{self.principal} tier {self.tier} below requirement "
                f"{self.requirement} for vessel {self.vessel_id}",
            )
        return None

    def evaluate(
        self,
        *,
        not_halted: bool = False,
        supervisor: bool = False,
        role: Optional[Role] = None,
        qualified: bool = False,
    ) -> Optional[Denial]:
        """Run the requested checks cheapest first; return the first denial."""
        if not_halted:
            denial = self.check_not_halted()
            if denial:
                return denial
        if supervisor:
            denial = self.check_supervisor()
            if denial:
                return denial
        if role is not None:
            denial = self.check_role(role)
            if denial:
                return denial
        if qualified:
            if self.vessel_id is None:
                raise ValueError("Qualification check requires a vessel_id in the snapshot")
            return self.check_qualified()
        return None


class AccessControlGuard:
    """Evaluates whether a principal may perform a requested action."""

    def __init__(
        self,
        tiers: TierRegistry,
        roles: RoleRegistry,
        halt_switch: EmergencyHaltSwitch,
    ) -> None:
        self._tiers = tiers
        self._roles = roles
        self._halt = halt_switch

    @property
    def supervisor(self) -> str:
        return self._halt.supervisor

    def snapshot(self, principal: str, vessel_id: Optional[str] = None) -> GuardSnapshot:
        """Capture the registry view for a principal (and optional vessel)."""
        canonical = principal.strip()
        return GuardSnapshot(
            principal=canonical,
            tier=self._tiers.tier(canonical),
            roles=self._roles.roles_of(canonical),
            supervisor=self._halt.supervisor,
            halted=self._halt.halted,
            vessel_id=vessel_id,
            requirement=self._tiers.requirement(vessel_id) if vessel_id is not None else 0,
        )

    # Single-check conveniences against live registry state

    def check_qualified(self, principal: str, vessel_id: str) -> Optional[Denial]:
        return self.snapshot(principal, vessel_id).check_qualified()

    def check_role(self, principal: str, role: Role) -> Optional[Denial]:
        return self.snapshot(principal).check_role(role)

    def check_supervisor(self, principal: str) -> Optional[Denial]:
        return self.snapshot(principal).check_supervisor()

    def check_not_halted(self) -> Optional[Denial]:
        if self._halt.halted:
            return Denial(
                RejectionKind.SYSTEM_HALTED,
                "System halted: circuit breaker is engaged",
            )
        return None
