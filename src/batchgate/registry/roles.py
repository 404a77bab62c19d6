"""Role registry: (principal, role) grants.

A principal may hold several roles. Absence of a grant is a denial;
there is no wildcard or implied role.
"""

from __future__ import annotations

import threading

from batchgate.models.batch import Role


class RoleRegistry:
    """Explicit role grants per principal."""

    def __init__(self) -> None:
        self._grants: dict[str, set[Role]] = {}
        self._lock = threading.Lock()

    def grant(self, principal: str, role: Role) -> None:
        canonical = principal.strip()
        if not canonical:
            raise ValueError("Cannot grant role to blank principal")
        with self._lock:
            self._grants.setdefault(canonical, set()).add(role)

    def revoke(self, principal: str, role: Role) -> None:
        canonical = principal.strip()
        with self._lock:
            roles = self._grants.get(canonical)
            if roles is None:
                return
            roles.discard(role)
            if not roles:
                del self._grants[canonical]

    def has_role(self, principal: str, role: Role) -> bool:
        with self._lock:
            return role in self._grants.get(principal.strip(), set())

    def roles_of(self, principal: str) -> frozenset[Role]:
        with self._lock:
            return frozenset(self._grants.get(principal.strip(), set()))

    def grants(self) -> dict[str, list[str]]:
        """Serialisable view: principal → sorted role names."""
        with self._lock:
            return {
                principal: sorted(r.value for r in roles)
                for principal, roles in self._grants.items()
            }

    def load(self, grants: dict[str, list[str]]) -> None:
        for principal, role_names in grants.items():
            for name in role_names:
                self.grant(principal, Role(name))
