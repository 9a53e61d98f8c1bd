from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from backend.errors import ForbiddenError, InvalidInputError, NotFoundError
from backend.schemas import parse_timestamp
from backend.security import require_admin, require_guard
from backend.services.scans import enrich_scans, outcome_payload, record_scan
from database.db import (
    delete_scan,
    get_all_checkpoints,
    get_all_guards,
    get_all_scans,
    get_scans_by_date_range,
    get_scans_by_guard_id,
)

router = APIRouter()


class ScanRecord(BaseModel):
    checkpointId: str
    latitude: float | None = None
    longitude: float | None = None
    accuracy: float | None = None
    designatedUser: str | None = None
    notes: str | None = None
    scannedAt: str | None = None


@router.post("/scans/record", status_code=201)
def record(payload: ScanRecord, session: dict = Depends(require_guard)):
    try:
        outcome = record_scan(
            guard_id=session["gid"],
            checkpoint_id=payload.checkpointId,
            latitude=payload.latitude,
            longitude=payload.longitude,
            accuracy=payload.accuracy,
            designated_user=payload.designatedUser,
            notes=payload.notes,
            client_scanned_at=payload.scannedAt,
        )
    except InvalidInputError as exc:
        raise HTTPException(status_code=400, detail=exc.message)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=exc.message)
    except ForbiddenError as exc:
        # Distinct from a geofence failure: nothing was recorded.
        return JSONResponse(
            status_code=403,
            content={
                "error": exc.code,
                "message": exc.message,
                "designated": False,
                "designatedUser": exc.designated_user,
            },
        )

    body = outcome_payload(outcome)
    if not outcome["assigned"]:
        return JSONResponse(status_code=403, content=body)
    return body


@router.get("/scans/my-scans")
def my_scans(session: dict = Depends(require_guard)):
    scans = get_scans_by_guard_id(session["gid"])
    return enrich_scans(scans, get_all_guards(), get_all_checkpoints())


@router.get("/scans", dependencies=[Depends(require_admin)])
def list_scans():
    return enrich_scans(get_all_scans(), get_all_guards(), get_all_checkpoints())


@router.get("/scans/date-range", dependencies=[Depends(require_admin)])
def scans_by_date_range(startDate: str, endDate: str):
    start = parse_timestamp(startDate)
    end = parse_timestamp(endDate)
    if start is None or end is None:
        raise HTTPException(status_code=400, detail="startDate and endDate must be ISO-8601 timestamps.")
    if end < start:
        raise HTTPException(status_code=400, detail="endDate must not be before startDate.")
    scans = get_scans_by_date_range(start, end)
    return enrich_scans(scans, get_all_guards(), get_all_checkpoints())


@router.delete("/scans/{scan_id}", dependencies=[Depends(require_admin)])
def remove_scan(scan_id: str):
    if not delete_scan(scan_id):
        raise HTTPException(status_code=404, detail="Scan not found.")
    return {"ok": True, "message": "Scan removed"}
