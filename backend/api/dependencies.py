import logging
from typing import Annotated, Optional

from fastapi import Depends

from aggregator.snapshot_store import SnapshotStore

logger = logging.getLogger(__name__)

_store: Optional[SnapshotStore] = None


def get_snapshot_store() -> SnapshotStore:
    """Process-wide snapshot store shared by the relay worker, poller and API."""
    global _store
    if _store is None:
        _store = SnapshotStore()
    return _store


def set_snapshot_store(store: SnapshotStore) -> None:
    global _store
    _store = store


StoreDep = Annotated[SnapshotStore, Depends(get_snapshot_store)]
