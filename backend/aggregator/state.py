"""
State Aggregator

Folds decoded telemetry into per-machine, per-slot state and publishes a
fresh immutable snapshot after every change.

Owned by the relay worker. Nothing here is shared with consumers except
the frozen snapshots handed to the SnapshotStore, so no locking is
needed.

Ordering: the local machine always comes first, the rest in the order
their identifiers were first seen. Positions never move on update.

Staleness: a machine without updates for ``stale_after`` seconds is
flagged stale but kept, so a relay reconnect can repopulate it. Pruning
is opt-in through ``prune_after``.
"""

import logging
import math
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional, Tuple

from .models import (
    AggregateSnapshot,
    MachineSnapshot,
    SlotState,
    SlotUpdate,
    TelemetryMessage,
)
from .snapshot_store import SnapshotStore

logger = logging.getLogger(__name__)

DEFAULT_STALE_AFTER = 120.0


@dataclass
class _SlotEntry:
    state: SlotState
    timestamp: Optional[float] = None


@dataclass
class _MachineEntry:
    identifier: str
    display_name: str
    is_local: bool
    last_updated_at: float
    slots: Dict[int, _SlotEntry] = field(default_factory=dict)
    stale: bool = False

    def snapshot(self) -> MachineSnapshot:
        return MachineSnapshot(
            identifier=self.identifier,
            display_name=self.display_name,
            is_local=self.is_local,
            slots=tuple(self.slots[i].state for i in sorted(self.slots)),
            last_updated_at=self.last_updated_at,
            stale=self.stale,
        )


def _percent(value: Optional[float], previous: float) -> float:
    # NaN would survive min/max as 100.0
    if value is None or not math.isfinite(value):
        return previous
    return max(0.0, min(100.0, float(value)))


def _merge(current: Optional[SlotState], update: SlotUpdate) -> SlotState:
    base = current or SlotState(slot_index=update.slot_index)
    return SlotState(
        slot_index=update.slot_index,
        kind=update.kind if update.kind is not None else base.kind,
        percent_complete=_percent(update.percent, base.percent_complete),
        work_unit_label=update.label if update.label is not None else base.work_unit_label,
        running=update.running if update.running is not None else base.running,
        points_per_day=(
            update.points_per_day if update.points_per_day is not None else base.points_per_day
        ),
    )


class StateAggregator:
    """
    Canonical machine/slot state keyed by ``(machine_id, slot_index)``.

    Features:
    - Last-write-wins per slot, by message timestamp when present,
      otherwise by arrival order
    - Idempotent: re-applying a message changes only ``last_updated_at``
    - Stable machine ordering, local machine first
    """

    def __init__(
        self,
        local_machine_id: str,
        store: Optional[SnapshotStore] = None,
        *,
        stale_after: float = DEFAULT_STALE_AFTER,
        prune_after: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ):
        if prune_after is not None and prune_after < stale_after:
            raise ValueError("prune_after must not be shorter than stale_after")

        self._local_machine_id = local_machine_id
        self._store = store or SnapshotStore()
        self._stale_after = stale_after
        self._prune_after = prune_after
        self._clock = clock
        self._machines: Dict[str, _MachineEntry] = {}

    @property
    def store(self) -> SnapshotStore:
        return self._store

    def apply_message(self, message: TelemetryMessage) -> AggregateSnapshot:
        """
        Apply one decoded telemetry message and publish the result.

        Args:
            message: Slot updates for a single machine

        Returns:
            The newly published AggregateSnapshot
        """
        now = self._clock()
        entry = self._machines.get(message.machine_id)

        if entry is None:
            entry = _MachineEntry(
                identifier=message.machine_id,
                display_name=message.display_name or message.machine_id[:8],
                is_local=message.machine_id == self._local_machine_id,
                last_updated_at=now,
            )
            self._machines[message.machine_id] = entry
            logger.info(
                "New machine %s (%s)%s",
                entry.display_name, entry.identifier, " [local]" if entry.is_local else "",
            )
        elif message.display_name:
            entry.display_name = message.display_name

        mentioned = set()
        for update in message.updates:
            mentioned.add(update.slot_index)
            self._apply_slot(entry, update, message.timestamp)

        if message.replace_slots:
            for index in list(entry.slots):
                if index in mentioned:
                    continue
                slot = entry.slots[index]
                if self._is_older(message.timestamp, slot.timestamp):
                    continue
                del entry.slots[index]

        entry.last_updated_at = now
        entry.stale = False

        return self._publish()

    def refresh(self, now: Optional[float] = None) -> Optional[AggregateSnapshot]:
        """
        Recompute stale flags and apply the pruning policy.

        Returns:
            A new snapshot if anything changed, otherwise None
        """
        now = self._clock() if now is None else now
        changed = False

        for identifier, entry in list(self._machines.items()):
            age = now - entry.last_updated_at

            if self._prune_after is not None and age > self._prune_after:
                del self._machines[identifier]
                logger.info("Pruned machine %s after %.0fs without updates", identifier, age)
                changed = True
                continue

            stale = age > self._stale_after
            if stale != entry.stale:
                entry.stale = stale
                changed = True
                if stale:
                    logger.info("Machine %s is stale (%.0fs without updates)", identifier, age)

        return self._publish() if changed else None

    def remove_machine(self, identifier: str) -> bool:
        """Forget a machine entirely. Other machines keep their order."""
        if self._machines.pop(identifier, None) is None:
            return False
        self._publish()
        return True

    def machines(self) -> Tuple[MachineSnapshot, ...]:
        """Current ordered machine snapshots."""
        ordered = sorted(
            self._machines.values(),
            key=lambda entry: not entry.is_local,
        )
        return tuple(entry.snapshot() for entry in ordered)

    def _apply_slot(self, entry: _MachineEntry, update: SlotUpdate, timestamp: Optional[float]) -> None:
        slot = entry.slots.get(update.slot_index)

        if slot is None:
            # Partial updates (deltas) never create a slot.
            if update.kind is None:
                logger.debug(
                    "Ignoring update for unknown slot %d on %s",
                    update.slot_index, entry.identifier,
                )
                return
            entry.slots[update.slot_index] = _SlotEntry(
                state=_merge(None, update),
                timestamp=timestamp,
            )
            return

        if self._is_older(timestamp, slot.timestamp):
            logger.debug(
                "Skipping out-of-order update for slot %d on %s",
                update.slot_index, entry.identifier,
            )
            return

        slot.state = _merge(slot.state, update)
        if timestamp is not None:
            slot.timestamp = timestamp

    @staticmethod
    def _is_older(incoming: Optional[float], applied: Optional[float]) -> bool:
        return incoming is not None and applied is not None and incoming < applied

    def _publish(self) -> AggregateSnapshot:
        return self._store.publish_machines(self.machines())


__all__ = ["StateAggregator", "DEFAULT_STALE_AFTER"]
