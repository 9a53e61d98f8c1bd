from collections.abc import Iterable, Iterator
from datetime import datetime
from typing import Any

from backend.schemas import CheckpointId, Guard, GuardId, to_checkpoint_id, to_guard_id

AssignmentKey = tuple[GuardId, CheckpointId]


def assignment_key(guard_id: Any, checkpoint_id: Any) -> AssignmentKey | None:
    gid = to_guard_id(guard_id)
    cp_id = to_checkpoint_id(checkpoint_id)
    if gid is None or cp_id is None:
        return None
    return gid, cp_id


def check_designation(designated_user: str | None, guard_name: str) -> bool:
    """
    A QR payload may name the only guard allowed to scan it. No name means
    anyone may scan; otherwise names compare trimmed and case-insensitively.
    """
    expected = (designated_user or "").strip()
    if not expected:
        return True
    return expected.casefold() == (guard_name or "").strip().casefold()


def is_assigned(guard: Guard, checkpoint_id: Any) -> bool:
    cp_id = to_checkpoint_id(checkpoint_id)
    return cp_id is not None and cp_id in guard.assigned_checkpoints


def active_guards(guards: Iterable[Guard]) -> list[Guard]:
    return [g for g in guards if g.is_active]


def iter_assignments(guards: Iterable[Guard], *, active_only: bool = True) -> Iterator[tuple[Guard, CheckpointId]]:
    for guard in guards:
        if active_only and not guard.is_active:
            continue
        for cp_id in guard.assigned_checkpoints:
            yield guard, cp_id


def get_baseline(
    guard: Guard,
    checkpoint_id: Any,
    window_start: datetime,
    window_end: datetime | None = None,
) -> datetime | None:
    """
    Earliest time a scan counts toward this assignment inside the window.

    A reset date later than the window start moves the baseline forward so
    scans from before a reassignment no longer complete it. Returns None when
    the baseline falls at or after ``window_end``: the assignment does not
    exist in that window.
    """
    reset_at = guard.reset_date_for(checkpoint_id)
    baseline = reset_at if reset_at is not None and reset_at > window_start else window_start
    if window_end is not None and baseline >= window_end:
        return None
    return baseline
