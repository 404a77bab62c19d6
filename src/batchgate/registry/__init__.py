"""Lookup stores for operator tiers and role grants."""

from batchgate.registry.roles import RoleRegistry
from batchgate.registry.tiers import TierRegistry

__all__ = ["RoleRegistry", "TierRegistry"]
