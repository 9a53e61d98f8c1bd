from fastapi import APIRouter, Depends, HTTPException

from backend.config import (
    DB_PATH,
    DEFAULT_ALLOWED_RADIUS_METERS,
    ENABLE_DEBUG_ENDPOINTS,
    LOCATION_FAILURE_THRESHOLD,
    LOCATION_FAILURE_WINDOW_MINUTES,
    NOTIFICATION_LIMIT,
    ON_TIME_SLA_SECONDS,
    REASSIGN_AFTER_HOURS,
    TIMELINE_LIMIT,
)
from backend.security import require_admin

router = APIRouter()


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/debug/dbpath")
def dbpath(_session: dict = Depends(require_admin)):
    if not ENABLE_DEBUG_ENDPOINTS:
        raise HTTPException(status_code=404, detail="Not found.")
    return {"db_path": str(DB_PATH)}


@router.get("/config/patrol")
def patrol_config():
    return {
        "default_allowed_radius_meters": DEFAULT_ALLOWED_RADIUS_METERS,
        "on_time_sla_seconds": ON_TIME_SLA_SECONDS,
        "location_failure_window_minutes": LOCATION_FAILURE_WINDOW_MINUTES,
        "location_failure_threshold": LOCATION_FAILURE_THRESHOLD,
        "reassign_after_hours": REASSIGN_AFTER_HOURS,
        "notification_limit": NOTIFICATION_LIMIT,
        "timeline_limit": TIMELINE_LIMIT,
    }
