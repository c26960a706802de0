"""
Snapshot API Routes

Read-only view of the latest aggregate snapshot and relay status.
"""

import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel

from api.dependencies import StoreDep

logger = logging.getLogger(__name__)
router = APIRouter()


class SlotView(BaseModel):
    slot_index: int
    kind: str
    percent_complete: float
    work_unit_label: str
    running: bool
    points_per_day: int


class MachineView(BaseModel):
    identifier: str
    display_name: str
    is_local: bool
    slots: List[SlotView]
    last_updated_at: datetime
    stale: bool


class AccountView(BaseModel):
    name: str
    score: int
    work_units: int
    rank: int
    fetched_at: datetime


class StatusView(BaseModel):
    """Relay connection status."""
    state: str
    reason: Optional[str] = None
    message: Optional[str] = None
    attempts: int
    persistent_failure: bool
    changed_at: datetime


class SnapshotView(BaseModel):
    """Latest aggregate snapshot."""
    version: int
    created_at: datetime
    status: StatusView
    account: Optional[AccountView] = None
    machines: List[MachineView]


@router.get("/snapshot", response_model=SnapshotView)
async def get_snapshot(store: StoreDep):
    """Latest machines, account summary and connection status."""
    return store.latest().to_dict()


@router.get("/status", response_model=StatusView)
async def get_status(store: StoreDep):
    return store.latest().status.to_dict()


@router.get("/machines/{identifier}", response_model=MachineView)
async def get_machine(identifier: str, store: StoreDep):
    machine = store.latest().machine(identifier)
    if machine is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown machine")
    return machine.to_dict()
