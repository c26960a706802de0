"""
Aggregator Package

Folds decoded relay telemetry into per-machine slot state and hands
immutable snapshots to readers through the SnapshotStore.
"""

from .models import (
    SlotKind,
    SlotState,
    SlotUpdate,
    TelemetryMessage,
    MachineSnapshot,
    AccountSummary,
    AggregateSnapshot,
)
from .snapshot_store import SnapshotStore
from .state import StateAggregator

__all__ = [
    "SlotKind",
    "SlotState",
    "SlotUpdate",
    "TelemetryMessage",
    "MachineSnapshot",
    "AccountSummary",
    "AggregateSnapshot",
    "SnapshotStore",
    "StateAggregator",
]
