"""Batch lifecycle engine: transition graph, telemetry throttle, state machine."""

from batchgate.engine.lifecycle import BatchLifecycleStateMachine
from batchgate.engine.throttle import TelemetryIngestionThrottle
from batchgate.engine.transitions import BatchTransitions

__all__ = ["BatchLifecycleStateMachine", "BatchTransitions", "TelemetryIngestionThrottle"]
