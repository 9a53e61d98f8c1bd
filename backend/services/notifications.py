import copy
import threading
from collections import defaultdict
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Literal, Protocol

from backend.config import (
    LOCATION_FAILURE_THRESHOLD,
    LOCATION_FAILURE_WINDOW_MINUTES,
    NOTIFICATION_LIMIT,
    REASSIGN_AFTER_HOURS,
    SUCCESS_NOTIFICATION_LIMIT,
    UNAUTHORIZED_NOTIFICATION_LIMIT,
)
from backend.schemas import Checkpoint, Guard, Scan, isoformat, round_half_up, utc_now
from backend.services.assignments import AssignmentKey, active_guards, get_baseline, iter_assignments
from backend.services.scans import UNKNOWN_CHECKPOINT, UNKNOWN_GUARD, name_maps

Severity = Literal["critical", "warning", "other"]

LOCATION_FAILURE_MARKERS = ("out of range", "location", "gps")
NOT_ASSIGNED_MARKER = "not assigned"
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


# -----------------------------
# Per-admin state
# -----------------------------
@dataclass
class NotificationState:
    read: set[str] = field(default_factory=set)
    acknowledged: set[str] = field(default_factory=set)
    deleted: set[str] = field(default_factory=set)
    reset_at: datetime | None = None
    updated_at: datetime | None = None

    def to_public(self, admin_id: str) -> dict[str, Any]:
        return {
            "adminId": admin_id,
            "read": sorted(self.read),
            "acknowledged": sorted(self.acknowledged),
            "deleted": sorted(self.deleted),
            "resetAt": isoformat(self.reset_at),
            "updatedAt": isoformat(self.updated_at),
        }


class NotificationStateStore(Protocol):
    def get(self, admin_id: str) -> NotificationState: ...

    def put(self, admin_id: str, state: NotificationState) -> None: ...

    def update(
        self,
        admin_id: str,
        mutate: Callable[[NotificationState], None],
    ) -> NotificationState: ...

    def clear(self) -> None: ...


class InMemoryNotificationStateStore:
    """Process-lifetime store; one lock covers every admin's state."""

    def __init__(self) -> None:
        self._states: dict[str, NotificationState] = {}
        self._lock = threading.Lock()

    def get(self, admin_id: str) -> NotificationState:
        with self._lock:
            state = self._states.get(admin_id)
            return copy.deepcopy(state) if state else NotificationState()

    def put(self, admin_id: str, state: NotificationState) -> None:
        with self._lock:
            self._states[admin_id] = copy.deepcopy(state)

    def update(self, admin_id: str, mutate: Callable[[NotificationState], None]) -> NotificationState:
        with self._lock:
            state = self._states.setdefault(admin_id, NotificationState())
            mutate(state)
            return copy.deepcopy(state)

    def clear(self) -> None:
        with self._lock:
            self._states.clear()


# -----------------------------
# Detectors
# -----------------------------
def _notification(
    *,
    id: str,
    type: str,
    severity: Severity,
    title: str,
    detail: str,
    time: datetime,
    action: dict[str, Any],
    **extra: Any,
) -> dict[str, Any]:
    return {
        "id": id,
        "type": type,
        "severity": severity,
        "title": title,
        "detail": detail,
        "time": time,
        "action": action,
        **extra,
    }


def detect_location_failures(
    scans: Iterable[Scan],
    guard_names: dict,
    checkpoint_names: dict,
    *,
    now: datetime,
    window_minutes: int = LOCATION_FAILURE_WINDOW_MINUTES,
    threshold: int = LOCATION_FAILURE_THRESHOLD,
) -> list[dict[str, Any]]:
    since = now - timedelta(minutes=window_minutes)
    groups: dict[AssignmentKey, list[Scan]] = defaultdict(list)
    for scan in scans:
        if not scan.failed or not since <= scan.scanned_at <= now:
            continue
        if any(marker in scan.reason_text for marker in LOCATION_FAILURE_MARKERS):
            groups[(scan.guard_id, scan.checkpoint_id)].append(scan)

    out = []
    for (guard_id, cp_id), items in groups.items():
        if len(items) < threshold:
            continue
        guard_name = guard_names.get(guard_id, UNKNOWN_GUARD)
        cp_name = checkpoint_names.get(cp_id, UNKNOWN_CHECKPOINT)
        # Keyed on the burst's first failure: later failures in the same burst
        # update this entry, a new burst gets a new id.
        first = min(items, key=lambda s: (s.scanned_at, s.id))
        out.append(
            _notification(
                id=f"location-failure-{guard_id}-{cp_id}-{first.id}",
                type="location_failure",
                severity="critical",
                title="Repeated Location Failures",
                detail=(
                    f"{guard_name} failed {len(items)} location checks at {cp_name} "
                    f"in the last {window_minutes} minutes"
                ),
                time=max(s.scanned_at for s in items),
                action={
                    "path": "/reports",
                    "label": "View scans",
                    "params": {"guardId": guard_id, "checkpointId": cp_id},
                },
                aggregateCount=len(items),
            )
        )
    return out


def detect_reassign_needed(
    guards: Iterable[Guard],
    scans: Iterable[Scan],
    guard_names: dict,
    checkpoint_names: dict,
    *,
    now: datetime,
    after_hours: float = REASSIGN_AFTER_HOURS,
) -> list[dict[str, Any]]:
    threshold = timedelta(hours=after_hours)
    latest_success: dict[AssignmentKey, list[Scan]] = defaultdict(list)
    for scan in scans:
        if not scan.failed and scan.scanned_at <= now:
            latest_success[(scan.guard_id, scan.checkpoint_id)].append(scan)

    out = []
    for guard, cp_id in iter_assignments(active_guards(guards)):
        baseline = get_baseline(guard, cp_id, EPOCH)
        candidates = [s for s in latest_success.get((guard.id, cp_id), ()) if s.scanned_at >= baseline]
        if not candidates:
            continue
        latest = max(candidates, key=lambda s: s.scanned_at)
        age = now - latest.scanned_at
        if age <= threshold:
            continue
        hours = int(age.total_seconds() // 3600)
        cp_name = checkpoint_names.get(cp_id, UNKNOWN_CHECKPOINT)
        out.append(
            _notification(
                id=f"reassign-{guard.id}-{cp_id}-{latest.id}",
                type="reassign_needed",
                severity="warning",
                title="Reassign Needed",
                detail=f"{guard.name} last completed {cp_name} {hours}h ago",
                time=latest.scanned_at + threshold,
                action={
                    "path": "/patrols",
                    "label": "Reassign",
                    "params": {"guardId": guard.id, "checkpointId": cp_id},
                },
            )
        )
    return out


def detect_unauthorized_attempts(
    scans: Iterable[Scan],
    guard_names: dict,
    checkpoint_names: dict,
    *,
    now: datetime,
    limit: int = UNAUTHORIZED_NOTIFICATION_LIMIT,
) -> list[dict[str, Any]]:
    since = now - timedelta(hours=24)
    attempts = sorted(
        (
            s for s in scans
            if s.failed and since <= s.scanned_at <= now and NOT_ASSIGNED_MARKER in s.reason_text
        ),
        key=lambda s: s.scanned_at,
        reverse=True,
    )[:limit]
    return [
        _notification(
            id=f"unauthorized-{scan.id}",
            type="unauthorized_attempt",
            severity="critical",
            title="Unauthorized Scan Attempt",
            detail=(
                f"{guard_names.get(scan.guard_id, UNKNOWN_GUARD)} scanned "
                f"{checkpoint_names.get(scan.checkpoint_id, UNKNOWN_CHECKPOINT)}, "
                "which is not assigned to them"
            ),
            time=scan.scanned_at,
            action={"path": "/guards", "label": "Review guard", "params": {"guardId": scan.guard_id}},
        )
        for scan in attempts
    ]


def detect_successful_scans(
    scans: Iterable[Scan],
    guard_names: dict,
    checkpoint_names: dict,
    *,
    now: datetime,
    limit: int = SUCCESS_NOTIFICATION_LIMIT,
) -> list[dict[str, Any]]:
    since = now - timedelta(hours=24)
    recent = sorted(
        (s for s in scans if not s.failed and since <= s.scanned_at <= now),
        key=lambda s: s.scanned_at,
        reverse=True,
    )[:limit]
    return [
        _notification(
            id=f"scan-{scan.id}",
            type="scan_success",
            severity="other",
            title="Checkpoint Scanned",
            detail=(
                f"{guard_names.get(scan.guard_id, UNKNOWN_GUARD)} scanned "
                f"{checkpoint_names.get(scan.checkpoint_id, UNKNOWN_CHECKPOINT)}"
            ),
            time=scan.scanned_at,
            action={"path": "/reports", "label": "View report", "params": {"scanId": scan.id}},
        )
        for scan in recent
    ]


def build_notifications(
    guards: Sequence[Guard],
    checkpoints: Sequence[Checkpoint],
    scans: Sequence[Scan],
    *,
    now: datetime,
) -> list[dict[str, Any]]:
    """All detector output, newest first, before any per-admin filtering."""
    guard_names, checkpoint_names = name_maps(guards, checkpoints)
    items = [
        *detect_location_failures(scans, guard_names, checkpoint_names, now=now),
        *detect_reassign_needed(guards, scans, guard_names, checkpoint_names, now=now),
        *detect_unauthorized_attempts(scans, guard_names, checkpoint_names, now=now),
        *detect_successful_scans(scans, guard_names, checkpoint_names, now=now),
    ]
    items.sort(key=lambda n: n["time"], reverse=True)
    return items


def time_ago_minutes(at: datetime, now: datetime) -> int:
    """Whole minutes from ``at`` to ``now``, never negative."""
    return max(0, int(round_half_up((now - at).total_seconds() / 60)))


# -----------------------------
# Engine
# -----------------------------
class NotificationEngine:
    def __init__(self, store: NotificationStateStore, *, limit: int = NOTIFICATION_LIMIT):
        self.store = store
        self.limit = limit

    def state(self, admin_id: str) -> NotificationState:
        return self.store.get(admin_id)

    def notifications(
        self,
        admin_id: str,
        guards: Sequence[Guard],
        checkpoints: Sequence[Checkpoint],
        scans: Sequence[Scan],
        *,
        now: datetime | None = None,
    ) -> list[dict[str, Any]]:
        now = now or utc_now()
        state = self.store.get(admin_id)

        visible = []
        for item in build_notifications(guards, checkpoints, scans, now=now):
            if item["id"] in state.deleted:
                continue
            if state.reset_at is not None and item["time"] <= state.reset_at:
                continue
            visible.append(item)
            if len(visible) >= self.limit:
                break

        return [
            {
                **item,
                "time": isoformat(item["time"]),
                "unread": item["id"] not in state.read,
                "acknowledged": item["id"] in state.acknowledged,
                "timeAgoMinutes": time_ago_minutes(item["time"], now),
            }
            for item in visible
        ]

    def update_state(
        self,
        admin_id: str,
        *,
        reads: Iterable[str] = (),
        acks: Iterable[str] = (),
        deletes: Iterable[str] = (),
        reset_all: bool = False,
        now: datetime | None = None,
    ) -> NotificationState:
        """
        Merge a client batch into the admin's state. Sets make resends of the
        same batch harmless. Deleting implies read and acknowledged; a reset
        empties every set and hides everything up to now.
        """
        stamp = now or utc_now()
        read_ids = {str(i) for i in reads if i}
        ack_ids = {str(i) for i in acks if i}
        delete_ids = {str(i) for i in deletes if i}

        def _apply(state: NotificationState) -> None:
            if reset_all:
                state.read.clear()
                state.acknowledged.clear()
                state.deleted.clear()
                state.reset_at = stamp
            state.read |= read_ids | delete_ids
            state.acknowledged |= ack_ids | delete_ids
            state.deleted |= delete_ids
            state.updated_at = stamp

        return self.store.update(admin_id, _apply)
