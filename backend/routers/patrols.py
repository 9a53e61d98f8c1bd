import logging

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from backend.security import require_admin
from backend.services.assignments import is_assigned
from backend.services.metrics import build_patrol_assignments
from database.db import (
    add_checkpoint_to_guard,
    get_all_checkpoints,
    get_all_guards,
    get_all_scans,
    get_checkpoint_by_id,
    get_guard_by_id,
    move_checkpoint_to_guard,
    reset_checkpoint_assignment,
    unassign_checkpoint,
)

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(require_admin)])


class AssignmentRequest(BaseModel):
    guardId: int
    checkpointId: str


class AssignmentMove(BaseModel):
    checkpointId: str
    newGuardId: int


def _require_guard(guard_id: int):
    guard = get_guard_by_id(guard_id)
    if not guard or not guard.is_active:
        raise HTTPException(status_code=404, detail="Guard not found.")
    return guard


def _require_checkpoint(checkpoint_id: str):
    checkpoint = get_checkpoint_by_id(checkpoint_id)
    if not checkpoint:
        raise HTTPException(status_code=404, detail="Checkpoint not found.")
    return checkpoint


@router.get("/patrol-assignments")
def patrol_assignments():
    return build_patrol_assignments(get_all_guards(), get_all_checkpoints(), get_all_scans())


@router.post("/patrol-assignments/assign")
def assign(payload: AssignmentRequest):
    guard = _require_guard(payload.guardId)
    _require_checkpoint(payload.checkpointId)
    if is_assigned(guard, payload.checkpointId):
        raise HTTPException(status_code=400, detail="Checkpoint already assigned to this guard.")

    guard = add_checkpoint_to_guard(guard.id, payload.checkpointId)
    logger.info("Checkpoint %s assigned to guard %s", payload.checkpointId, guard.id)
    return {"message": "Checkpoint assigned successfully", "guard": guard.to_public()}


@router.delete("/patrol-assignments/remove/{guard_id}/{checkpoint_id}")
def remove(guard_id: int, checkpoint_id: str):
    _require_guard(guard_id)
    guard = unassign_checkpoint(guard_id, checkpoint_id)
    return {"message": "Checkpoint removed successfully", "guard": guard.to_public()}


@router.post("/patrol-assignments/reassign")
def reassign(payload: AssignmentRequest):
    guard = _require_guard(payload.guardId)
    if not is_assigned(guard, payload.checkpointId):
        raise HTTPException(status_code=400, detail="Checkpoint is not assigned to this guard.")

    # New baseline: earlier completions no longer count for this pair.
    guard = reset_checkpoint_assignment(guard.id, payload.checkpointId)
    logger.info("Checkpoint %s reset for guard %s", payload.checkpointId, guard.id)
    return {"message": "Checkpoint reassigned successfully", "guard": guard.to_public()}


@router.put("/patrol-assignments/update")
def move(payload: AssignmentMove):
    _require_guard(payload.newGuardId)
    _require_checkpoint(payload.checkpointId)

    guard = move_checkpoint_to_guard(payload.checkpointId, payload.newGuardId)
    logger.info("Checkpoint %s moved to guard %s", payload.checkpointId, guard.id)
    return {"message": "Assignment updated successfully", "guard": guard.to_public()}
