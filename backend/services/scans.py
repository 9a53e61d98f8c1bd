import logging
from collections.abc import Iterable
from datetime import datetime
from typing import Any, TypedDict

from backend.errors import ForbiddenError, InvalidInputError, NotFoundError
from backend.schemas import (
    Checkpoint,
    Guard,
    Scan,
    finite_float,
    parse_timestamp,
    to_checkpoint_id,
    to_guard_id,
    utc_now,
)
from backend.services.assignments import check_designation, is_assigned
from backend.services.geofence import evaluate_geofence
from database.db import get_checkpoint_by_id, get_guard_by_id, insert_scan

logger = logging.getLogger(__name__)

NOT_ASSIGNED_REASON = "Unauthorized attempt: guard not assigned to checkpoint"
UNKNOWN_GUARD = "Unknown Guard"
UNKNOWN_CHECKPOINT = "Unknown Checkpoint"


class ScanOutcome(TypedDict):
    scan: Scan
    guard_name: str
    checkpoint_name: str
    designated: bool
    assigned: bool
    message: str


def _validate_position(latitude: float | None, longitude: float | None) -> None:
    if latitude is not None and not -90.0 <= latitude <= 90.0:
        raise InvalidInputError("latitude must be between -90 and 90.")
    if longitude is not None and not -180.0 <= longitude <= 180.0:
        raise InvalidInputError("longitude must be between -180 and 180.")


def record_scan(
    *,
    guard_id: Any,
    checkpoint_id: Any,
    latitude: Any = None,
    longitude: Any = None,
    accuracy: Any = None,
    designated_user: str | None = None,
    notes: str | None = None,
    client_scanned_at: Any = None,
    now: datetime | None = None,
) -> ScanOutcome:
    """
    Validate one scan attempt and persist exactly one scan for it.

    Raises InvalidInputError, NotFoundError or ForbiddenError before anything
    is written. A checkpoint outside the guard's assignment list is still
    recorded as a failed scan so the attempt shows up on the dashboard.
    """
    cp_id = to_checkpoint_id(checkpoint_id)
    if cp_id is None:
        raise InvalidInputError("checkpointId is required.")

    lat = finite_float(latitude)
    lon = finite_float(longitude)
    _validate_position(lat, lon)
    acc = finite_float(accuracy)

    gid = to_guard_id(guard_id)
    guard = get_guard_by_id(gid) if gid is not None else None
    if guard is None or not guard.is_active:
        raise NotFoundError("Guard not found.")

    checkpoint = get_checkpoint_by_id(cp_id)
    if checkpoint is None:
        raise NotFoundError("Checkpoint not found.")

    if not check_designation(designated_user, guard.name):
        designated_name = (designated_user or "").strip()
        logger.warning(
            "Rejected scan by guard %s at %s: designated for %r",
            guard.id,
            checkpoint.id,
            designated_name,
        )
        raise ForbiddenError(
            f"This checkpoint is designated for {designated_name}.",
            designated_user=designated_name,
        )

    stamp = now or utc_now()
    client_stamp = parse_timestamp(client_scanned_at)

    if not is_assigned(guard, checkpoint.id):
        scan = insert_scan(
            guard_id=guard.id,
            checkpoint_id=checkpoint.id,
            result="failed",
            failure_reason=NOT_ASSIGNED_REASON,
            scanned_at=stamp,
            client_scanned_at=client_stamp,
            latitude=lat,
            longitude=lon,
            accuracy=acc,
            notes=notes,
        )
        logger.warning("Guard %s scanned unassigned checkpoint %s", guard.id, checkpoint.id)
        return ScanOutcome(
            scan=scan,
            guard_name=guard.name,
            checkpoint_name=checkpoint.name,
            designated=True,
            assigned=False,
            message="You are not assigned to this checkpoint.",
        )

    verdict = evaluate_geofence(
        guard_latitude=lat,
        guard_longitude=lon,
        accuracy=acc,
        checkpoint_latitude=checkpoint.latitude,
        checkpoint_longitude=checkpoint.longitude,
        allowed_radius=checkpoint.radius_meters,
    )
    scan = insert_scan(
        guard_id=guard.id,
        checkpoint_id=checkpoint.id,
        result=verdict.result,
        failure_reason=verdict.failure_reason,
        scanned_at=stamp,
        client_scanned_at=client_stamp,
        latitude=lat,
        longitude=lon,
        accuracy=acc,
        distance_meters=round(verdict.distance_meters, 3) if verdict.distance_meters is not None else None,
        required_radius=verdict.allowed_radius if checkpoint.has_coordinates else None,
        notes=notes,
    )
    logger.info(
        "Scan %s by guard %s at %s: %s%s",
        scan.id,
        guard.id,
        checkpoint.id,
        verdict.result,
        f" ({verdict.failure_reason})" if verdict.failure_reason else "",
    )
    message = "Scan recorded successfully." if verdict.passed else f"Scan failed: {verdict.failure_reason}"
    return ScanOutcome(
        scan=scan,
        guard_name=guard.name,
        checkpoint_name=checkpoint.name,
        designated=True,
        assigned=True,
        message=message,
    )


def outcome_payload(outcome: ScanOutcome) -> dict[str, Any]:
    payload = outcome["scan"].to_public(
        guard_name=outcome["guard_name"],
        checkpoint_name=outcome["checkpoint_name"],
    )
    payload["message"] = outcome["message"]
    payload["designated"] = outcome["designated"]
    payload["assigned"] = outcome["assigned"]
    return payload


def name_maps(guards: Iterable[Guard], checkpoints: Iterable[Checkpoint]) -> tuple[dict, dict]:
    guard_names = {g.id: g.name for g in guards}
    checkpoint_names = {cp.id: cp.name for cp in checkpoints}
    return guard_names, checkpoint_names


def enrich_scans(
    scans: Iterable[Scan],
    guards: Iterable[Guard],
    checkpoints: Iterable[Checkpoint],
) -> list[dict[str, Any]]:
    guard_names, checkpoint_names = name_maps(guards, checkpoints)
    return [
        scan.to_public(
            guard_name=guard_names.get(scan.guard_id, UNKNOWN_GUARD),
            checkpoint_name=checkpoint_names.get(scan.checkpoint_id, UNKNOWN_CHECKPOINT),
        )
        for scan in scans
    ]
