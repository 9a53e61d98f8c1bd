from collections import defaultdict
from collections.abc import Iterable, Sequence
from datetime import date, datetime, time, timedelta
from typing import Any, TypedDict

from backend.config import ON_TIME_SLA_SECONDS, TIMELINE_LIMIT
from backend.schemas import Checkpoint, Guard, Scan, isoformat, round_half_up, utc_now
from backend.services.assignments import (
    AssignmentKey,
    active_guards,
    get_baseline,
    iter_assignments,
)
from backend.services.scans import enrich_scans, name_maps

# Efficiency blends the three rates with these weights.
COMPLETION_WEIGHT = 0.5
ON_TIME_WEIGHT = 0.3
QUALITY_WEIGHT = 0.2


class Metrics(TypedDict):
    completion_rate: float
    on_time_rate: float
    quality_rate: float
    efficiency_score: float
    avg_response_time_seconds: int
    total_assignments: int
    completed_assignments: int
    successful_scans_count: int
    window_scans_count: int


def _pct(part: int, whole: int) -> float:
    return part / whole * 100 if whole else 0.0


def _round1(value: float) -> float:
    return round_half_up(value, 1)


def _local_day_start(day: date) -> datetime:
    # Naive midnight resolved through the local zone picks up that day's own offset.
    return datetime.combine(day, time()).astimezone()


def local_midnight(now: datetime) -> datetime:
    """Start of the server-local day containing ``now``."""
    return _local_day_start(now.astimezone().date())


def today_window(now: datetime) -> tuple[datetime, datetime]:
    return local_midnight(now), now


def yesterday_window(now: datetime) -> tuple[datetime, datetime]:
    today = now.astimezone().date()
    return _local_day_start(today - timedelta(days=1)), _local_day_start(today)


def group_scans_by_assignment(scans: Iterable[Scan]) -> dict[AssignmentKey, list[Scan]]:
    """Scans per (guard, checkpoint), oldest first."""
    grouped: dict[AssignmentKey, list[Scan]] = defaultdict(list)
    for scan in scans:
        grouped[(scan.guard_id, scan.checkpoint_id)].append(scan)
    for items in grouped.values():
        items.sort(key=lambda s: s.scanned_at)
    return grouped


def compute_metrics(
    guards: Iterable[Guard],
    scans: Iterable[Scan],
    window_start: datetime,
    window_end: datetime,
    *,
    on_time_sla_seconds: int = ON_TIME_SLA_SECONDS,
) -> Metrics:
    """
    Patrol performance for ``[window_start, window_end)``.

    Every (active guard, assigned checkpoint) pair is one assignment. It is
    completed by the first passed scan at or after its baseline (window start
    or a later reset date) and on time when that scan lands within the SLA.
    Quality is the pass ratio of attempts on assigned checkpoints; with
    assignments but no attempts it is 0, with no assignments at all it is 100.
    """
    active = active_guards(guards)
    active_ids = {g.id for g in active}
    window_scans = [
        s for s in scans
        if s.guard_id in active_ids and window_start <= s.scanned_at < window_end
    ]
    successful_count = sum(1 for s in window_scans if not s.failed)
    grouped = group_scans_by_assignment(window_scans)

    total = 0
    completed = 0
    on_time = 0
    response_times: list[int] = []
    known_keys: set[AssignmentKey] = set()

    for guard, cp_id in iter_assignments(active):
        key = (guard.id, cp_id)
        known_keys.add(key)
        baseline = get_baseline(guard, cp_id, window_start, window_end)
        if baseline is None:
            continue
        total += 1

        first_success = next(
            (s for s in grouped.get(key, ()) if not s.failed and s.scanned_at >= baseline),
            None,
        )
        if first_success is None:
            continue
        completed += 1
        seconds = max(0, int(round_half_up((first_success.scanned_at - baseline).total_seconds())))
        response_times.append(seconds)
        if seconds <= on_time_sla_seconds:
            on_time += 1

    attempts = [s for s in window_scans if (s.guard_id, s.checkpoint_id) in known_keys]
    if attempts:
        quality = _pct(sum(1 for s in attempts if not s.failed), len(attempts))
    else:
        quality = 100.0 if total == 0 else 0.0

    completion = _pct(completed, total)
    on_time_rate = _pct(on_time, completed)
    efficiency = (
        COMPLETION_WEIGHT * completion
        + ON_TIME_WEIGHT * on_time_rate
        + QUALITY_WEIGHT * quality
    )
    avg_response = round_half_up(sum(response_times) / len(response_times)) if response_times else 0

    return Metrics(
        completion_rate=_round1(completion),
        on_time_rate=_round1(on_time_rate),
        quality_rate=_round1(quality),
        efficiency_score=_round1(min(100.0, max(0.0, efficiency))),
        avg_response_time_seconds=int(avg_response),
        total_assignments=total,
        completed_assignments=completed,
        successful_scans_count=successful_count,
        window_scans_count=len(window_scans),
    )


# -----------------------------
# Dashboard read-models
# -----------------------------
def build_stats(
    guards: Sequence[Guard],
    checkpoints: Sequence[Checkpoint],
    scans: Sequence[Scan],
    *,
    now: datetime | None = None,
) -> dict[str, Any]:
    now = now or utc_now()
    today = compute_metrics(guards, scans, *today_window(now))
    yesterday = compute_metrics(guards, scans, *yesterday_window(now))

    active = active_guards(guards)
    day_ago = now - timedelta(hours=24)
    successful = [s for s in scans if not s.failed]
    recently_active = {s.guard_id for s in successful if s.scanned_at >= day_ago}

    return {
        "patrolsToday": today["successful_scans_count"],
        "missedPatrols": today["total_assignments"] - today["completed_assignments"],
        "activeGuards": sum(1 for g in active if g.id in recently_active),
        "totalCheckpoints": len(checkpoints),
        "totalGuards": len(active),
        "totalScans": len(successful),
        "completionRate": today["completion_rate"],
        "avgResponseTimeSeconds": today["avg_response_time_seconds"],
        "efficiencyScore": today["efficiency_score"],
        "onTimeRate": today["on_time_rate"],
        "qualityRate": today["quality_rate"],
        "completionRateChange": _round1(today["completion_rate"] - yesterday["completion_rate"]),
        "efficiencyScoreChange": _round1(today["efficiency_score"] - yesterday["efficiency_score"]),
        "avgResponseTimeChangeSeconds": (
            today["avg_response_time_seconds"] - yesterday["avg_response_time_seconds"]
        ),
    }


def build_timeline(
    guards: Sequence[Guard],
    checkpoints: Sequence[Checkpoint],
    scans: Sequence[Scan],
    *,
    limit: int = TIMELINE_LIMIT,
) -> list[dict[str, Any]]:
    recent = sorted(scans, key=lambda s: s.scanned_at, reverse=True)[:limit]
    return enrich_scans(recent, guards, checkpoints)


def build_guard_performance(
    guards: Sequence[Guard],
    checkpoints: Sequence[Checkpoint],
    scans: Sequence[Scan],
    *,
    now: datetime | None = None,
) -> list[dict[str, Any]]:
    now = now or utc_now()
    start_of_today, _ = today_window(now)
    _, checkpoint_names = name_maps(guards, checkpoints)

    scans_by_guard: dict[int, list[Scan]] = defaultdict(list)
    for scan in scans:
        scans_by_guard[scan.guard_id].append(scan)

    performance = []
    for guard in active_guards(guards):
        guard_scans = sorted(scans_by_guard.get(guard.id, []), key=lambda s: s.scanned_at, reverse=True)
        successful = [s for s in guard_scans if not s.failed]
        today = [s for s in successful if s.scanned_at >= start_of_today]
        metrics = compute_metrics([guard], guard_scans, start_of_today, now)
        performance.append(
            {
                "id": guard.id,
                "name": guard.name,
                "scansToday": len(today),
                "uniqueCheckpointsToday": len({s.checkpoint_id for s in today}),
                "totalScans": len(successful),
                "failedScans": len(guard_scans) - len(successful),
                "lastScan": isoformat(guard_scans[0].scanned_at) if guard_scans else None,
                "assignedCheckpoints": list(guard.assigned_checkpoints),
                "assignedCheckpointNames": [
                    checkpoint_names[cp_id] for cp_id in guard.assigned_checkpoints if cp_id in checkpoint_names
                ],
                "completionRate": metrics["completion_rate"],
                "onTimeRate": metrics["on_time_rate"],
                "qualityRate": metrics["quality_rate"],
                "avgResponseTimeSeconds": metrics["avg_response_time_seconds"],
            }
        )
    return performance


def build_checkpoint_status(
    checkpoints: Sequence[Checkpoint],
    scans: Sequence[Scan],
    *,
    now: datetime | None = None,
) -> list[dict[str, Any]]:
    now = now or utc_now()
    day_ago = now - timedelta(hours=24)

    scans_by_checkpoint: dict[str, list[Scan]] = defaultdict(list)
    for scan in scans:
        scans_by_checkpoint[scan.checkpoint_id].append(scan)

    status = []
    for checkpoint in checkpoints:
        cp_scans = scans_by_checkpoint.get(checkpoint.id, [])
        recent = [s for s in cp_scans if not s.failed and s.scanned_at >= day_ago]
        last_scan = max((s.scanned_at for s in cp_scans), default=None)
        status.append(
            {
                "id": checkpoint.id,
                "name": checkpoint.name,
                "scansToday": len(recent),
                "uniqueGuardsToday": len({s.guard_id for s in recent}),
                "lastScan": isoformat(last_scan),
                "status": "active" if recent else "inactive",
            }
        )
    return status


def build_patrol_assignments(
    guards: Sequence[Guard],
    checkpoints: Sequence[Checkpoint],
    scans: Sequence[Scan],
    *,
    now: datetime | None = None,
) -> list[dict[str, Any]]:
    """Per-guard assignment board: each checkpoint completed or pending since its baseline."""
    now = now or utc_now()
    start_of_today, _ = today_window(now)
    checkpoints_by_id = {cp.id: cp for cp in checkpoints}
    grouped = group_scans_by_assignment(s for s in scans if not s.failed)

    board = []
    for guard in active_guards(guards):
        if not guard.assigned_checkpoints:
            continue
        items = []
        for cp_id in guard.assigned_checkpoints:
            checkpoint = checkpoints_by_id.get(cp_id)
            baseline = get_baseline(guard, cp_id, start_of_today)
            completed_scan = next(
                (s for s in grouped.get((guard.id, cp_id), ()) if baseline <= s.scanned_at <= now),
                None,
            )
            items.append(
                {
                    "id": cp_id,
                    "checkpointId": cp_id,
                    "name": checkpoint.name if checkpoint else "Unknown Checkpoint",
                    "location": checkpoint.location if checkpoint else "",
                    "status": "completed" if completed_scan else "pending",
                    "completedAt": isoformat(completed_scan.scanned_at) if completed_scan else None,
                    "resetAt": isoformat(guard.reset_date_for(cp_id)),
                }
            )
        board.append(
            {
                "guardId": guard.id,
                "guardName": guard.name,
                "checkpoints": items,
                "totalAssigned": len(items),
                "completedToday": sum(1 for item in items if item["status"] == "completed"),
            }
        )
    return board
