import os
import secrets
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parents[1]

DB_PATH = Path(os.getenv("PATROL_DB_PATH", BASE_DIR / "database" / "patrol.db"))
ADMIN_USERNAME = os.getenv("PATROL_ADMIN_USERNAME", "admin").strip() or "admin"
ADMIN_PASSWORD = os.getenv("PATROL_ADMIN_PASSWORD", "admin123").strip() or "admin123"
SIGNING_KEY = (
    os.getenv("PATROL_SIGNING_KEY", "").strip()
    or secrets.token_urlsafe(32)
)
AUTH_TOKEN_TTL_SECONDS = int(os.getenv("PATROL_AUTH_TOKEN_TTL_SECONDS", "43200"))
LOG_LEVEL = os.getenv("PATROL_LOG_LEVEL", "INFO").strip().upper() or "INFO"


def _parse_bool(value: str | None, fallback: bool) -> bool:
    if value is None:
        return fallback
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return fallback


def _parse_csv(value: str | None, fallback: list[str]) -> list[str]:
    if not value:
        return fallback
    parsed = [item.strip() for item in value.split(",") if item.strip()]
    return parsed or fallback


def _parse_float(value: str | None, fallback: float, *, minimum: float = 0.0) -> float:
    if not value:
        return fallback
    try:
        parsed = float(value)
    except ValueError:
        return fallback
    if parsed != parsed or parsed <= minimum:
        return fallback
    return parsed


def _parse_int(value: str | None, fallback: int, *, minimum: int = 0) -> int:
    if not value:
        return fallback
    try:
        return max(minimum, int(value))
    except ValueError:
        return fallback


CORS_ALLOW_ORIGINS = _parse_csv(
    os.getenv("PATROL_CORS_ALLOW_ORIGINS"),
    ["http://localhost:5173", "http://127.0.0.1:5173"],
)
CORS_ALLOW_METHODS = _parse_csv(
    os.getenv("PATROL_CORS_ALLOW_METHODS"),
    ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
)
CORS_ALLOW_HEADERS = _parse_csv(
    os.getenv("PATROL_CORS_ALLOW_HEADERS"),
    ["Authorization", "Content-Type", "Accept"],
)
CORS_ALLOW_CREDENTIALS = _parse_bool(os.getenv("PATROL_CORS_ALLOW_CREDENTIALS"), True)
ENABLE_DEBUG_ENDPOINTS = _parse_bool(os.getenv("PATROL_ENABLE_DEBUG_ENDPOINTS"), False)


# Geofencing
DEFAULT_ALLOWED_RADIUS_METERS = _parse_float(
    os.getenv("PATROL_DEFAULT_ALLOWED_RADIUS_METERS"),
    30.0,
)

# Metrics
ON_TIME_SLA_SECONDS = _parse_int(os.getenv("PATROL_ON_TIME_SLA_SECONDS"), 900)
TIMELINE_LIMIT = _parse_int(os.getenv("PATROL_TIMELINE_LIMIT"), 20, minimum=1)

# Notifications
LOCATION_FAILURE_WINDOW_MINUTES = _parse_int(
    os.getenv("PATROL_LOCATION_FAILURE_WINDOW_MINUTES"),
    30,
    minimum=1,
)
LOCATION_FAILURE_THRESHOLD = _parse_int(
    os.getenv("PATROL_LOCATION_FAILURE_THRESHOLD"),
    3,
    minimum=1,
)
REASSIGN_AFTER_HOURS = _parse_float(os.getenv("PATROL_REASSIGN_AFTER_HOURS"), 2.0)
UNAUTHORIZED_NOTIFICATION_LIMIT = _parse_int(
    os.getenv("PATROL_UNAUTHORIZED_NOTIFICATION_LIMIT"),
    10,
    minimum=1,
)
SUCCESS_NOTIFICATION_LIMIT = _parse_int(
    os.getenv("PATROL_SUCCESS_NOTIFICATION_LIMIT"),
    15,
    minimum=1,
)
NOTIFICATION_LIMIT = _parse_int(os.getenv("PATROL_NOTIFICATION_LIMIT"), 25, minimum=1)
