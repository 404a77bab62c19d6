"""Access control: authorisation guard and emergency halt switch."""

from batchgate.access.guard import AccessControlGuard, Denial, GuardSnapshot
from batchgate.access.halt import EmergencyHaltSwitch

__all__ = ["AccessControlGuard", "Denial", "EmergencyHaltSwitch", "GuardSnapshot"]
