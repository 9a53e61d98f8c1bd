import math
from datetime import datetime, timezone
from typing import Any, Literal, NewType

from pydantic import BaseModel, ConfigDict, field_validator

from backend.config import DEFAULT_ALLOWED_RADIUS_METERS

GuardId = NewType("GuardId", int)
CheckpointId = NewType("CheckpointId", str)

ScanResult = Literal["passed", "failed"]


# -----------------------------
# Identifier + value coercion
# -----------------------------
def to_guard_id(value: Any) -> GuardId | None:
    """Canonical guard id: stored as int, accepted as int or numeric string."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return GuardId(value)
    try:
        text = str(value).strip()
        return GuardId(int(text)) if text else None
    except ValueError:
        return None


def to_checkpoint_id(value: Any) -> CheckpointId | None:
    if value is None:
        return None
    text = str(value).strip()
    return CheckpointId(text) if text else None


def same_guard(left: Any, right: Any) -> bool:
    left_id = to_guard_id(left)
    return left_id is not None and left_id == to_guard_id(right)


def finite_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return None
    return parsed if math.isfinite(parsed) else None


def round_half_up(value: float, digits: int = 0) -> float:
    """Round with halves going up (0.5 -> 1, -0.5 -> 0), unlike the built-in round."""
    scale = 10 ** digits
    return math.floor(value * scale + 0.5) / scale


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> datetime | None:
    """
    Accepts datetimes and ISO-8601 strings (with or without a trailing Z).
    Naive values are taken as UTC. Anything unparsable becomes None.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        stamp = value
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith("Z") or text.endswith("z"):
            text = text[:-1] + "+00:00"
        try:
            stamp = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None
    if stamp.tzinfo is None:
        stamp = stamp.replace(tzinfo=timezone.utc)
    return stamp


def isoformat(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


# -----------------------------
# Boundary records
# -----------------------------
class Guard(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: GuardId
    name: str
    is_active: bool = True
    assigned_checkpoints: list[CheckpointId] = []
    checkpoint_reset_dates: dict[CheckpointId, datetime] = {}

    @field_validator("is_active", mode="before")
    @classmethod
    def _absent_means_active(cls, value: Any) -> bool:
        if value is None:
            return True
        return bool(value)

    @field_validator("assigned_checkpoints", mode="before")
    @classmethod
    def _normalize_assigned(cls, value: Any) -> list[str]:
        out: list[str] = []
        for item in value or []:
            cp_id = to_checkpoint_id(item)
            if cp_id and cp_id not in out:
                out.append(cp_id)
        return out

    @field_validator("checkpoint_reset_dates", mode="before")
    @classmethod
    def _drop_invalid_reset_dates(cls, value: Any) -> dict[str, datetime]:
        out: dict[str, datetime] = {}
        for key, raw in (value or {}).items():
            cp_id = to_checkpoint_id(key)
            stamp = parse_timestamp(raw)
            if cp_id and stamp is not None:
                out[cp_id] = stamp
        return out

    def reset_date_for(self, checkpoint_id: Any) -> datetime | None:
        cp_id = to_checkpoint_id(checkpoint_id)
        return self.checkpoint_reset_dates.get(cp_id) if cp_id else None

    def to_public(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "isActive": self.is_active,
            "assignedCheckpoints": list(self.assigned_checkpoints),
            "checkpointResetDates": {
                cp_id: isoformat(stamp) for cp_id, stamp in self.checkpoint_reset_dates.items()
            },
        }


class Checkpoint(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: CheckpointId
    name: str
    latitude: float | None = None
    longitude: float | None = None
    allowed_radius: float | None = None
    gps_accuracy_at_creation: float | None = None
    location: str = ""
    description: str = ""
    qr_code: str | None = None
    created_at: datetime | None = None

    @field_validator(
        "latitude",
        "longitude",
        "allowed_radius",
        "gps_accuracy_at_creation",
        mode="before",
    )
    @classmethod
    def _finite_or_none(cls, value: Any) -> float | None:
        return finite_float(value)

    @field_validator("location", "description", mode="before")
    @classmethod
    def _text_or_empty(cls, value: Any) -> str:
        return "" if value is None else str(value)

    @field_validator("created_at", mode="before")
    @classmethod
    def _parse_created_at(cls, value: Any) -> datetime | None:
        return parse_timestamp(value)

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    @property
    def radius_meters(self) -> float:
        if self.allowed_radius is None or self.allowed_radius < 0:
            return DEFAULT_ALLOWED_RADIUS_METERS
        return self.allowed_radius

    def to_public(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "allowed_radius": self.allowed_radius,
            "gps_accuracy_at_creation": self.gps_accuracy_at_creation,
            "location": self.location,
            "description": self.description,
            "qrCode": self.qr_code,
            "createdAt": isoformat(self.created_at),
        }


class Scan(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    guard_id: GuardId
    checkpoint_id: CheckpointId
    scanned_at: datetime
    client_scanned_at: datetime | None = None
    result: ScanResult = "passed"
    failure_reason: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    accuracy: float | None = None
    distance_meters: float | None = None
    required_radius: float | None = None
    notes: str | None = None

    @field_validator("scanned_at", "client_scanned_at", mode="before")
    @classmethod
    def _parse_times(cls, value: Any) -> datetime | None:
        return parse_timestamp(value)

    @field_validator("result", mode="before")
    @classmethod
    def _normalize_result(cls, value: Any) -> str:
        # Legacy rows without a result were treated as passed.
        return "failed" if str(value or "").strip().lower() == "failed" else "passed"

    @field_validator("latitude", "longitude", "accuracy", "distance_meters", "required_radius", mode="before")
    @classmethod
    def _finite_or_none(cls, value: Any) -> float | None:
        return finite_float(value)

    @property
    def failed(self) -> bool:
        return self.result == "failed"

    @property
    def reason_text(self) -> str:
        return (self.failure_reason or "").lower()

    def location_payload(self) -> dict[str, Any] | None:
        if self.latitude is None or self.longitude is None:
            return None
        return {
            "latitude": self.latitude,
            "longitude": self.longitude,
            "accuracy": self.accuracy,
            "distanceMeters": self.distance_meters,
            "allowedRadius": self.required_radius,
        }

    def to_public(
        self,
        *,
        guard_name: str | None = None,
        checkpoint_name: str | None = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "guardId": self.guard_id,
            "checkpointId": self.checkpoint_id,
            "scannedAt": isoformat(self.scanned_at),
            "clientScannedAt": isoformat(self.client_scanned_at),
            "result": self.result,
            "failureReason": self.failure_reason,
            "location": self.location_payload(),
            "distanceMeters": self.distance_meters,
            "requiredRadius": self.required_radius,
            "notes": self.notes,
        }
        if guard_name is not None:
            payload["guardName"] = guard_name
        if checkpoint_name is not None:
            payload["checkpointName"] = checkpoint_name
        return payload
