"""
Snapshot Data Models

Everything here is frozen. Consumers may hold on to any of these
objects; the worker never changes them after publication.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from relay_client.models import ConnectionStatus


class SlotKind(Enum):
    CPU = "CPU"
    GPU = "GPU"


@dataclass(frozen=True)
class SlotState:
    """One work unit in progress on a machine."""
    slot_index: int
    kind: SlotKind = SlotKind.CPU
    percent_complete: float = 0.0
    work_unit_label: str = ""
    running: bool = False
    points_per_day: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "slot_index": self.slot_index,
            "kind": self.kind.value,
            "percent_complete": self.percent_complete,
            "work_unit_label": self.work_unit_label,
            "running": self.running,
            "points_per_day": self.points_per_day,
        }


@dataclass(frozen=True)
class SlotUpdate:
    """Partial slot update. ``None`` fields are left unchanged."""
    slot_index: int
    kind: Optional[SlotKind] = None
    percent: Optional[float] = None
    label: Optional[str] = None
    running: Optional[bool] = None
    points_per_day: Optional[int] = None


@dataclass(frozen=True)
class TelemetryMessage:
    """One decoded telemetry frame for one machine."""
    machine_id: str
    display_name: Optional[str] = None
    timestamp: Optional[float] = None
    updates: Tuple[SlotUpdate, ...] = ()
    replace_slots: bool = False


@dataclass(frozen=True)
class MachineSnapshot:
    identifier: str
    display_name: str
    is_local: bool
    slots: Tuple[SlotState, ...]
    last_updated_at: float
    stale: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "identifier": self.identifier,
            "display_name": self.display_name,
            "is_local": self.is_local,
            "slots": [slot.to_dict() for slot in self.slots],
            "last_updated_at": datetime.fromtimestamp(self.last_updated_at, timezone.utc).isoformat(),
            "stale": self.stale,
        }


@dataclass(frozen=True)
class AccountSummary:
    """Account totals from the stats API."""
    name: str
    score: int
    work_units: int
    rank: int
    fetched_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "score": self.score,
            "work_units": self.work_units,
            "rank": self.rank,
            "fetched_at": self.fetched_at.isoformat(),
        }


@dataclass(frozen=True)
class AggregateSnapshot:
    """Read-only merged view handed to the renderer."""
    machines: Tuple[MachineSnapshot, ...] = ()
    account: Optional[AccountSummary] = None
    status: ConnectionStatus = field(default_factory=ConnectionStatus)
    version: int = 0
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def machine(self, identifier: str) -> Optional[MachineSnapshot]:
        for machine in self.machines:
            if machine.identifier == identifier:
                return machine
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "created_at": self.created_at.isoformat(),
            "status": self.status.to_dict(),
            "account": self.account.to_dict() if self.account else None,
            "machines": [machine.to_dict() for machine in self.machines],
        }
