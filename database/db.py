import hashlib
import hmac
import json
import logging
import secrets
import sqlite3
import threading
from collections.abc import Callable, Iterable
from datetime import datetime
from typing import Any

from backend.config import ADMIN_PASSWORD, ADMIN_USERNAME, DB_PATH
from backend.schemas import (
    Checkpoint,
    Guard,
    Scan,
    ScanResult,
    isoformat,
    to_checkpoint_id,
    utc_now,
)

logger = logging.getLogger(__name__)

PASSWORD_HASH_ALGO = "pbkdf2_sha256"
PASSWORD_HASH_ITERATIONS = 120_000

# Serializes read-modify-write of a guard's assignment list and reset-date map.
_GUARD_WRITE_LOCK = threading.Lock()

_GUARD_COLUMNS = ("id", "name", "is_active", "assigned_checkpoints", "checkpoint_reset_dates")
_CHECKPOINT_COLUMNS = (
    "id",
    "name",
    "location",
    "description",
    "latitude",
    "longitude",
    "allowed_radius",
    "gps_accuracy_at_creation",
    "qr_code",
    "created_at",
)
_SCAN_COLUMNS = (
    "id",
    "guard_id",
    "checkpoint_id",
    "scanned_at",
    "client_scanned_at",
    "result",
    "failure_reason",
    "latitude",
    "longitude",
    "accuracy",
    "distance_meters",
    "required_radius",
    "notes",
)


def _hash_password(password: str, *, salt: str | None = None) -> str:
    salt_value = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt_value.encode("utf-8"),
        PASSWORD_HASH_ITERATIONS,
    ).hex()
    return f"{PASSWORD_HASH_ALGO}${PASSWORD_HASH_ITERATIONS}${salt_value}${digest}"


def _verify_password(password: str, password_hash: str) -> bool:
    try:
        algo, rounds_text, salt_value, expected_digest = password_hash.split("$", 3)
        rounds = int(rounds_text)
    except (ValueError, TypeError):
        return False

    if algo != PASSWORD_HASH_ALGO or rounds <= 0:
        return False

    candidate_digest = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt_value.encode("utf-8"),
        rounds,
    ).hex()
    return hmac.compare_digest(candidate_digest, expected_digest)


def connect_db():
    conn = sqlite3.connect(str(DB_PATH), check_same_thread=False)
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


def _ensure_default_admin(cursor: sqlite3.Cursor) -> None:
    username = (ADMIN_USERNAME or "").strip()
    password = (ADMIN_PASSWORD or "").strip()
    if not username or not password:
        return

    cursor.execute(
        """
        SELECT id
        FROM admin_users
        WHERE username = ? COLLATE NOCASE
        """,
        (username,),
    )
    if cursor.fetchone():
        return

    cursor.execute(
        """
        INSERT INTO admin_users (username, password_hash)
        VALUES (?, ?)
        """,
        (username, _hash_password(password)),
    )


def create_tables():
    conn = connect_db()
    cursor = conn.cursor()

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS guards (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL UNIQUE COLLATE NOCASE,
        pin_hash TEXT NOT NULL,
        is_active INTEGER NOT NULL DEFAULT 1,
        assigned_checkpoints TEXT NOT NULL DEFAULT '[]',     -- JSON list of checkpoint ids
        checkpoint_reset_dates TEXT NOT NULL DEFAULT '{}',   -- JSON map checkpoint id -> ISO8601
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """)

    cursor.execute(
        """
    CREATE TABLE IF NOT EXISTS admin_users (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        username TEXT NOT NULL UNIQUE COLLATE NOCASE,
        password_hash TEXT NOT NULL,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """
    )

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS checkpoints (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        location TEXT,
        description TEXT,
        latitude REAL,
        longitude REAL,
        allowed_radius REAL,
        gps_accuracy_at_creation REAL,
        qr_code TEXT,
        created_at TEXT,
        updated_at TEXT
    )
    """)

    # Scans are append-only; guard/checkpoint ids are kept even after deletes.
    cursor.execute("""
    CREATE TABLE IF NOT EXISTS scans (
        id TEXT PRIMARY KEY,
        guard_id INTEGER NOT NULL,
        checkpoint_id TEXT NOT NULL,
        scanned_at TEXT NOT NULL,        -- server time, ISO8601 UTC
        client_scanned_at TEXT,          -- client-reported time, ISO8601 UTC
        result TEXT NOT NULL DEFAULT 'passed',
        failure_reason TEXT,
        latitude REAL,
        longitude REAL,
        accuracy REAL,
        distance_meters REAL,
        required_radius REAL,
        notes TEXT
    )
    """)
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_scans_scanned_at ON scans (scanned_at)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_scans_guard ON scans (guard_id, checkpoint_id)")

    _ensure_default_admin(cursor)

    conn.commit()
    conn.close()


def clear_all_tables():
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("DELETE FROM scans")
    cur.execute("DELETE FROM checkpoints")
    cur.execute("DELETE FROM guards")
    conn.commit()
    conn.close()


# -----------------------------
# Admin users
# -----------------------------
def verify_admin_credentials(username: str, password: str) -> dict | None:
    clean_username = username.strip()
    clean_password = password.strip()
    if not clean_username or not clean_password:
        return None

    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT id, username, password_hash
        FROM admin_users
        WHERE username = ? COLLATE NOCASE
        """,
        (clean_username,),
    )
    row = cur.fetchone()
    conn.close()

    if not row:
        return None

    admin_id, saved_username, password_hash = row
    if not _verify_password(clean_password, password_hash):
        return None

    return {"id": admin_id, "username": saved_username}


# -----------------------------
# Guards
# -----------------------------
def _guard_from_row(row: tuple) -> Guard:
    data = dict(zip(_GUARD_COLUMNS, row))
    data["is_active"] = bool(data["is_active"])
    data["assigned_checkpoints"] = json.loads(data["assigned_checkpoints"] or "[]")
    data["checkpoint_reset_dates"] = json.loads(data["checkpoint_reset_dates"] or "{}")
    return Guard.model_validate(data)


def get_all_guards(*, include_inactive: bool = True) -> list[Guard]:
    conn = connect_db()
    cur = conn.cursor()
    where = "" if include_inactive else "WHERE is_active = 1"
    cur.execute(f"""
        SELECT {", ".join(_GUARD_COLUMNS)}
        FROM guards
        {where}
        ORDER BY id
    """)
    rows = cur.fetchall()
    conn.close()
    return [_guard_from_row(r) for r in rows]


def get_guard_by_id(guard_id: int) -> Guard | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(f"""
        SELECT {", ".join(_GUARD_COLUMNS)}
        FROM guards
        WHERE id = ?
    """, (guard_id,))
    row = cur.fetchone()
    conn.close()
    return _guard_from_row(row) if row else None


def add_guard(name: str, pin: str) -> Guard:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("""
        INSERT INTO guards (name, pin_hash)
        VALUES (?, ?)
    """, (name.strip(), _hash_password(pin)))
    guard_id = int(cur.lastrowid)
    conn.commit()
    conn.close()
    return Guard(id=guard_id, name=name.strip())


def update_guard(guard_id: int, *, name: str | None = None, pin: str | None = None) -> Guard | None:
    sets: list[str] = []
    params: list[Any] = []
    if name:
        sets.append("name = ?")
        params.append(name.strip())
    if pin:
        sets.append("pin_hash = ?")
        params.append(_hash_password(pin))

    conn = connect_db()
    cur = conn.cursor()
    if sets:
        params.append(guard_id)
        cur.execute(f"UPDATE guards SET {', '.join(sets)} WHERE id = ?", params)
        conn.commit()
    conn.close()
    return get_guard_by_id(guard_id)


def deactivate_guard(guard_id: int) -> bool:
    # Soft delete: historical scans still resolve the guard's name.
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("UPDATE guards SET is_active = 0 WHERE id = ?", (guard_id,))
    changed = cur.rowcount > 0
    conn.commit()
    conn.close()
    return changed


def verify_guard_pin(name: str, pin: str) -> Guard | None:
    clean_name = name.strip()
    if not clean_name or not pin:
        return None

    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT id, pin_hash
        FROM guards
        WHERE name = ? COLLATE NOCASE AND is_active = 1
        """,
        (clean_name,),
    )
    row = cur.fetchone()
    conn.close()

    if not row or not _verify_password(pin, row[1]):
        return None
    return get_guard_by_id(int(row[0]))


def _mutate_guard_assignments(
    guard_id: int,
    mutate: Callable[[list[str], dict[str, str]], None],
) -> Guard | None:
    with _GUARD_WRITE_LOCK:
        conn = connect_db()
        cur = conn.cursor()
        try:
            cur.execute(
                "SELECT assigned_checkpoints, checkpoint_reset_dates FROM guards WHERE id = ?",
                (guard_id,),
            )
            row = cur.fetchone()
            if not row:
                return None
            assigned: list[str] = json.loads(row[0] or "[]")
            reset_dates: dict[str, str] = json.loads(row[1] or "{}")
            mutate(assigned, reset_dates)
            cur.execute(
                """
                UPDATE guards
                SET assigned_checkpoints = ?, checkpoint_reset_dates = ?
                WHERE id = ?
                """,
                (json.dumps(assigned), json.dumps(reset_dates), guard_id),
            )
            conn.commit()
        finally:
            conn.close()
    return get_guard_by_id(guard_id)


def assign_checkpoints_to_guard(
    guard_id: int,
    checkpoint_ids: Iterable[str],
    *,
    now: datetime | None = None,
) -> Guard | None:
    """
    Replace the guard's assignment list. Checkpoints not already assigned get
    a reset date stamped now, so older scans do not complete them.
    """
    stamp = isoformat(now or utc_now())
    clean_ids = [cp for cp in (to_checkpoint_id(c) for c in checkpoint_ids) if cp]

    def _apply(assigned: list[str], reset_dates: dict[str, str]) -> None:
        current = set(assigned)
        for cp_id in clean_ids:
            if cp_id not in current or not reset_dates.get(cp_id):
                reset_dates[cp_id] = stamp
        for cp_id in current - set(clean_ids):
            reset_dates.pop(cp_id, None)
        assigned[:] = list(dict.fromkeys(clean_ids))

    return _mutate_guard_assignments(guard_id, _apply)


def add_checkpoint_to_guard(guard_id: int, checkpoint_id: str, *, now: datetime | None = None) -> Guard | None:
    stamp = isoformat(now or utc_now())

    def _apply(assigned: list[str], reset_dates: dict[str, str]) -> None:
        if checkpoint_id not in assigned:
            assigned.append(checkpoint_id)
            reset_dates[checkpoint_id] = stamp

    return _mutate_guard_assignments(guard_id, _apply)


def reset_checkpoint_assignment(guard_id: int, checkpoint_id: str, *, now: datetime | None = None) -> Guard | None:
    """Re-open an assignment: the guard must scan the checkpoint again."""
    stamp = isoformat(now or utc_now())

    def _apply(assigned: list[str], reset_dates: dict[str, str]) -> None:
        if checkpoint_id not in assigned:
            assigned.append(checkpoint_id)
        reset_dates[checkpoint_id] = stamp

    return _mutate_guard_assignments(guard_id, _apply)


def unassign_checkpoint(guard_id: int, checkpoint_id: str) -> Guard | None:
    def _apply(assigned: list[str], reset_dates: dict[str, str]) -> None:
        assigned[:] = [cp for cp in assigned if str(cp) != str(checkpoint_id)]
        reset_dates.pop(str(checkpoint_id), None)

    return _mutate_guard_assignments(guard_id, _apply)


def move_checkpoint_to_guard(checkpoint_id: str, new_guard_id: int, *, now: datetime | None = None) -> Guard | None:
    for guard in get_all_guards():
        if guard.id != new_guard_id and checkpoint_id in guard.assigned_checkpoints:
            unassign_checkpoint(guard.id, checkpoint_id)
    return add_checkpoint_to_guard(new_guard_id, checkpoint_id, now=now)


# -----------------------------
# Checkpoints
# -----------------------------
def _checkpoint_from_row(row: tuple) -> Checkpoint:
    return Checkpoint.model_validate(dict(zip(_CHECKPOINT_COLUMNS, row)))


def get_all_checkpoints() -> list[Checkpoint]:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(f"""
        SELECT {", ".join(_CHECKPOINT_COLUMNS)}
        FROM checkpoints
        ORDER BY created_at DESC
    """)
    rows = cur.fetchall()
    conn.close()
    return [_checkpoint_from_row(r) for r in rows]


def get_checkpoint_by_id(checkpoint_id: str) -> Checkpoint | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(f"""
        SELECT {", ".join(_CHECKPOINT_COLUMNS)}
        FROM checkpoints
        WHERE id = ?
    """, (checkpoint_id,))
    row = cur.fetchone()
    conn.close()
    return _checkpoint_from_row(row) if row else None


def add_checkpoint(
    *,
    name: str,
    location: str = "",
    description: str = "",
    latitude: float | None = None,
    longitude: float | None = None,
    allowed_radius: float | None = None,
    gps_accuracy_at_creation: float | None = None,
    qr_code: str | None = None,
    now: datetime | None = None,
) -> Checkpoint:
    created = now or utc_now()
    checkpoint_id = f"cp-{int(created.timestamp() * 1000)}-{secrets.token_hex(4)}"
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO checkpoints (
            id, name, location, description, latitude, longitude,
            allowed_radius, gps_accuracy_at_creation, qr_code, created_at, updated_at
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            checkpoint_id,
            name,
            location,
            description,
            latitude,
            longitude,
            allowed_radius,
            gps_accuracy_at_creation,
            qr_code or checkpoint_id,
            isoformat(created),
            isoformat(created),
        ),
    )
    conn.commit()
    conn.close()
    return get_checkpoint_by_id(checkpoint_id)


def update_checkpoint(checkpoint_id: str, updates: dict[str, Any]) -> Checkpoint | None:
    allowed = set(_CHECKPOINT_COLUMNS) - {"id", "created_at"}
    fields = {k: v for k, v in updates.items() if k in allowed}
    if not get_checkpoint_by_id(checkpoint_id):
        return None
    if fields:
        fields["updated_at"] = isoformat(utc_now())
        assignments = ", ".join(f"{k} = ?" for k in fields)
        conn = connect_db()
        cur = conn.cursor()
        cur.execute(
            f"UPDATE checkpoints SET {assignments} WHERE id = ?",
            [*fields.values(), checkpoint_id],
        )
        conn.commit()
        conn.close()
    return get_checkpoint_by_id(checkpoint_id)


def delete_checkpoint(checkpoint_id: str) -> bool:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("DELETE FROM checkpoints WHERE id = ?", (checkpoint_id,))
    deleted = cur.rowcount > 0
    conn.commit()
    conn.close()
    return deleted


# -----------------------------
# Scans
# -----------------------------
def _scan_from_row(row: tuple) -> Scan:
    return Scan.model_validate(dict(zip(_SCAN_COLUMNS, row)))


def insert_scan(
    *,
    guard_id: int,
    checkpoint_id: str,
    result: ScanResult,
    failure_reason: str | None = None,
    scanned_at: datetime | None = None,
    client_scanned_at: datetime | None = None,
    latitude: float | None = None,
    longitude: float | None = None,
    accuracy: float | None = None,
    distance_meters: float | None = None,
    required_radius: float | None = None,
    notes: str | None = None,
) -> Scan:
    """Append one scan record and return it."""
    stamp = scanned_at or utc_now()
    scan_id = f"scan-{int(stamp.timestamp() * 1000)}-{secrets.token_hex(4)}"
    values = (
        scan_id,
        guard_id,
        checkpoint_id,
        isoformat(stamp),
        isoformat(client_scanned_at),
        result,
        failure_reason,
        latitude,
        longitude,
        accuracy,
        distance_meters,
        required_radius,
        notes,
    )
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        f"""
        INSERT INTO scans ({", ".join(_SCAN_COLUMNS)})
        VALUES ({", ".join("?" for _ in _SCAN_COLUMNS)})
        """,
        values,
    )
    conn.commit()
    conn.close()
    logger.debug("Stored scan %s (%s) for guard %s at %s", scan_id, result, guard_id, checkpoint_id)
    return _scan_from_row(values)


def _select_scans(where_sql: str = "1=1", params: Iterable[Any] = ()) -> list[Scan]:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        f"""
        SELECT {", ".join(_SCAN_COLUMNS)}
        FROM scans
        WHERE {where_sql}
        ORDER BY scanned_at DESC, id DESC
        """,
        list(params),
    )
    rows = cur.fetchall()
    conn.close()
    return [_scan_from_row(r) for r in rows]


def get_all_scans() -> list[Scan]:
    return _select_scans()


def get_scans_by_guard_id(guard_id: int) -> list[Scan]:
    return _select_scans("guard_id = ?", (guard_id,))


def get_scans_by_date_range(start: datetime, end: datetime) -> list[Scan]:
    # Stored stamps share one UTC format, so string comparison orders them.
    return _select_scans("scanned_at >= ? AND scanned_at <= ?", (isoformat(start), isoformat(end)))


def delete_scan(scan_id: str) -> bool:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("DELETE FROM scans WHERE id = ?", (scan_id,))
    deleted = cur.rowcount > 0
    conn.commit()
    conn.close()
    return deleted


def clear_scans() -> int:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("DELETE FROM scans")
    removed = cur.rowcount
    conn.commit()
    conn.close()
    return removed
