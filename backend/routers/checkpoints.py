import logging

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from backend.schemas import finite_float
from backend.security import require_admin
from database.db import (
    add_checkpoint,
    delete_checkpoint,
    get_all_checkpoints,
    get_checkpoint_by_id,
    update_checkpoint,
)

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(require_admin)])


class CheckpointCreate(BaseModel):
    name: str
    location: str = ""
    description: str = ""
    latitude: float | None = None
    longitude: float | None = None
    allowed_radius: float | None = None
    gps_accuracy_at_creation: float | None = None


class CheckpointUpdate(BaseModel):
    name: str | None = None
    location: str | None = None
    description: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    allowed_radius: float | None = None
    gps_accuracy_at_creation: float | None = None


def _validate_geometry(latitude, longitude, allowed_radius) -> None:
    lat = finite_float(latitude)
    lon = finite_float(longitude)
    if (latitude is None) != (longitude is None):
        raise HTTPException(status_code=400, detail="Latitude and longitude must be provided together.")
    if latitude is not None and (lat is None or not -90 <= lat <= 90):
        raise HTTPException(status_code=400, detail="Latitude must be between -90 and 90.")
    if longitude is not None and (lon is None or not -180 <= lon <= 180):
        raise HTTPException(status_code=400, detail="Longitude must be between -180 and 180.")
    if allowed_radius is not None:
        radius = finite_float(allowed_radius)
        if radius is None or radius <= 0:
            raise HTTPException(status_code=400, detail="Allowed radius must be a positive number of meters.")


@router.get("/checkpoints")
def list_checkpoints():
    return [cp.to_public() for cp in get_all_checkpoints()]


@router.post("/checkpoints", status_code=201)
def create_checkpoint(payload: CheckpointCreate):
    name = payload.name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="Name is required.")
    _validate_geometry(payload.latitude, payload.longitude, payload.allowed_radius)

    checkpoint = add_checkpoint(
        name=name,
        location=payload.location.strip(),
        description=payload.description.strip(),
        latitude=payload.latitude,
        longitude=payload.longitude,
        allowed_radius=payload.allowed_radius,
        gps_accuracy_at_creation=payload.gps_accuracy_at_creation,
    )
    logger.info("Checkpoint %s created (%s)", checkpoint.id, checkpoint.name)
    return checkpoint.to_public()


@router.get("/checkpoints/{checkpoint_id}")
def checkpoint_detail(checkpoint_id: str):
    checkpoint = get_checkpoint_by_id(checkpoint_id)
    if not checkpoint:
        raise HTTPException(status_code=404, detail="Checkpoint not found.")
    return checkpoint.to_public()


@router.put("/checkpoints/{checkpoint_id}")
def edit_checkpoint(checkpoint_id: str, payload: CheckpointUpdate):
    updates = payload.model_dump(exclude_unset=True)
    if "name" in updates:
        updates["name"] = (updates["name"] or "").strip()
        if not updates["name"]:
            raise HTTPException(status_code=400, detail="Name cannot be empty.")

    current = get_checkpoint_by_id(checkpoint_id)
    if not current:
        raise HTTPException(status_code=404, detail="Checkpoint not found.")
    _validate_geometry(
        updates.get("latitude", current.latitude),
        updates.get("longitude", current.longitude),
        updates.get("allowed_radius"),
    )

    checkpoint = update_checkpoint(checkpoint_id, updates)
    if not checkpoint:
        raise HTTPException(status_code=404, detail="Checkpoint not found.")
    return checkpoint.to_public()


@router.delete("/checkpoints/{checkpoint_id}")
def remove_checkpoint(checkpoint_id: str):
    if not delete_checkpoint(checkpoint_id):
        raise HTTPException(status_code=404, detail="Checkpoint not found.")
    return {"ok": True, "message": "Checkpoint deleted successfully"}
