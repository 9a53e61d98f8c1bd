import re
import sqlite3

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from backend.schemas import utc_now
from backend.security import require_admin
from backend.services.metrics import local_midnight
from database.db import (
    add_guard,
    assign_checkpoints_to_guard,
    deactivate_guard,
    get_all_guards,
    get_all_scans,
    get_checkpoint_by_id,
    get_guard_by_id,
    unassign_checkpoint,
    update_guard,
)

router = APIRouter(dependencies=[Depends(require_admin)])

PIN_PATTERN = re.compile(r"^\d{4}$")


class GuardCreate(BaseModel):
    name: str
    pin: str


class GuardUpdate(BaseModel):
    name: str
    pin: str | None = None


class CheckpointAssignment(BaseModel):
    checkpointIds: list[str]


@router.get("/guards")
def list_guards():
    start_of_today = local_midnight(utc_now())
    scans = [s for s in get_all_scans() if not s.failed and s.scanned_at >= start_of_today]
    out = []
    for guard in get_all_guards(include_inactive=False):
        completed = sorted({s.checkpoint_id for s in scans if s.guard_id == guard.id})
        out.append({**guard.to_public(), "completedCheckpoints": completed})
    return out


@router.post("/guards", status_code=201)
def create_guard(payload: GuardCreate):
    name = payload.name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="Name is required.")
    if not PIN_PATTERN.match(payload.pin or ""):
        raise HTTPException(status_code=400, detail="PIN must be 4 digits.")

    try:
        guard = add_guard(name, payload.pin)
    except sqlite3.IntegrityError:
        raise HTTPException(status_code=409, detail="A guard with this name already exists.")
    return guard.to_public()


@router.get("/guards/{guard_id}")
def guard_detail(guard_id: int):
    guard = get_guard_by_id(guard_id)
    if not guard:
        raise HTTPException(status_code=404, detail="Guard not found.")
    return guard.to_public()


@router.put("/guards/{guard_id}")
def edit_guard(guard_id: int, payload: GuardUpdate):
    name = payload.name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="Name is required.")
    if payload.pin and not PIN_PATTERN.match(payload.pin):
        raise HTTPException(status_code=400, detail="PIN must be 4 digits if provided.")

    try:
        guard = update_guard(guard_id, name=name, pin=payload.pin)
    except sqlite3.IntegrityError:
        raise HTTPException(status_code=409, detail="A guard with this name already exists.")
    if not guard:
        raise HTTPException(status_code=404, detail="Guard not found.")
    return guard.to_public()


@router.delete("/guards/{guard_id}")
def remove_guard(guard_id: int):
    if not deactivate_guard(guard_id):
        raise HTTPException(status_code=404, detail="Guard not found.")
    return {"ok": True, "message": "Guard deleted successfully"}


@router.post("/guards/{guard_id}/checkpoints")
def assign_checkpoints(guard_id: int, payload: CheckpointAssignment):
    if not payload.checkpointIds:
        raise HTTPException(status_code=400, detail="Please select at least one checkpoint to assign.")
    missing = [cp for cp in payload.checkpointIds if not get_checkpoint_by_id(cp)]
    if missing:
        raise HTTPException(status_code=404, detail=f"Checkpoint not found: {', '.join(missing)}")

    guard = assign_checkpoints_to_guard(guard_id, payload.checkpointIds)
    if not guard:
        raise HTTPException(status_code=404, detail="Guard not found.")
    return guard.to_public()


@router.delete("/guards/{guard_id}/checkpoints/{checkpoint_id}")
def unassign(guard_id: int, checkpoint_id: str):
    guard = unassign_checkpoint(guard_id, checkpoint_id)
    if not guard:
        raise HTTPException(status_code=404, detail="Guard not found.")
    return guard.to_public()
