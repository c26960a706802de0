"""
Snapshot Store

Single handoff point between producers (relay worker, account poller)
and consumers (renderer, HTTP API).

Producers hand in complete immutable parts; the store builds a new
AggregateSnapshot and swaps the reference under a short lock. Readers
get whatever reference is current and never wait on network I/O.
"""

import logging
import threading
from typing import Callable, List, Optional, Tuple

from relay_client.models import ConnectionStatus
from .models import AccountSummary, AggregateSnapshot, MachineSnapshot

logger = logging.getLogger(__name__)

Listener = Callable[[AggregateSnapshot], None]


class SnapshotStore:
    """
    Thread-safe holder of the latest AggregateSnapshot.

    The lock only guards building and swapping the reference; it is
    never held across a network call.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._current = AggregateSnapshot()
        self._listeners: List[Listener] = []

    def latest(self) -> AggregateSnapshot:
        """Latest fully-formed snapshot. Safe to call at any frequency."""
        return self._current

    def publish_machines(self, machines: Tuple[MachineSnapshot, ...]) -> AggregateSnapshot:
        return self._swap(machines=tuple(machines))

    def publish_account(self, account: Optional[AccountSummary]) -> AggregateSnapshot:
        return self._swap(account=account)

    def publish_status(self, status: ConnectionStatus) -> AggregateSnapshot:
        return self._swap(status=status)

    def subscribe(self, listener: Listener) -> None:
        """Register a callback run after every publication (on the producer's thread)."""
        with self._lock:
            self._listeners.append(listener)

    def _swap(self, **changes) -> AggregateSnapshot:
        with self._lock:
            current = self._current
            snapshot = AggregateSnapshot(
                machines=changes.get("machines", current.machines),
                account=changes.get("account", current.account),
                status=changes.get("status", current.status),
                version=current.version + 1,
            )
            self._current = snapshot
            listeners = list(self._listeners)

        for listener in listeners:
            try:
                listener(snapshot)
            except Exception as e:
                logger.exception("Snapshot listener failed: %s", e)

        return snapshot

