import time
from datetime import datetime, timedelta, timezone
from itertools import count

import pytest

from backend.schemas import Checkpoint, Guard, Scan, round_half_up
from backend.services.metrics import (
    build_checkpoint_status,
    build_guard_performance,
    build_patrol_assignments,
    build_stats,
    build_timeline,
    compute_metrics,
    local_midnight,
    yesterday_window,
)

START = datetime(2026, 3, 2, 0, 0, tzinfo=timezone.utc)
END = START + timedelta(days=1)
_ids = count(1)


def _scan(guard_id, cp_id, at, *, result="passed", reason=None):
    return Scan(
        id=f"scan-{next(_ids)}",
        guard_id=guard_id,
        checkpoint_id=cp_id,
        scanned_at=at,
        result=result,
        failure_reason=reason,
    )


def _guard(guard_id=1, name="Alice", checkpoints=("cp-1",), **kwargs):
    return Guard(id=guard_id, name=name, assigned_checkpoints=list(checkpoints), **kwargs)


def test_empty_inputs_are_consistent():
    metrics = compute_metrics([], [], START, END)
    assert metrics["total_assignments"] == 0
    assert metrics["completion_rate"] == 0.0
    assert metrics["quality_rate"] == 100.0
    assert metrics["avg_response_time_seconds"] == 0

    with_assignments = compute_metrics([_guard()], [], START, END)
    assert with_assignments["total_assignments"] == 1
    assert with_assignments["completion_rate"] == 0.0
    assert with_assignments["quality_rate"] == 0.0


def test_completion_on_time_and_quality():
    guards = [_guard(checkpoints=("cp-1", "cp-2"))]
    scans = [
        _scan(1, "cp-1", START + timedelta(minutes=10)),
        _scan(1, "cp-2", START + timedelta(minutes=20), result="failed", reason="Out of range"),
        _scan(1, "cp-2", START + timedelta(minutes=40)),
    ]
    metrics = compute_metrics(guards, scans, START, END, on_time_sla_seconds=900)

    assert metrics["total_assignments"] == 2
    assert metrics["completed_assignments"] == 2
    assert metrics["completion_rate"] == 100.0
    assert metrics["on_time_rate"] == 50.0
    assert metrics["quality_rate"] == 66.7
    assert metrics["avg_response_time_seconds"] == 1500
    # 0.5 * 100 + 0.3 * 50 + 0.2 * 66.67
    assert metrics["efficiency_score"] == 78.3


def test_reset_date_makes_old_success_pending_again():
    reset = START + timedelta(hours=3)
    guard = _guard(checkpoint_reset_dates={"cp-1": reset})
    scans = [_scan(1, "cp-1", START + timedelta(hours=1))]

    metrics = compute_metrics([guard], scans, START, END)
    assert metrics["completed_assignments"] == 0

    board = build_patrol_assignments([guard], [], scans, now=START + timedelta(hours=5))
    item = board[0]["checkpoints"][0]
    assert item["status"] == "pending"
    assert item["completedAt"] is None
    assert item["name"] == "Unknown Checkpoint"


def test_inactive_guards_and_unassigned_scans_are_ignored():
    guards = [_guard(), _guard(2, "Bob", is_active=False)]
    scans = [
        _scan(2, "cp-1", START + timedelta(minutes=5)),
        _scan(1, "cp-9", START + timedelta(minutes=5), result="failed", reason="not assigned"),
    ]
    metrics = compute_metrics(guards, scans, START, END)
    assert metrics["total_assignments"] == 1
    assert metrics["window_scans_count"] == 1
    # Attempts on checkpoints outside the assignment list do not affect quality.
    assert metrics["quality_rate"] == 0.0


def test_stats_and_read_models():
    now = datetime.now(timezone.utc)
    guards = [_guard(), _guard(2, "Bob", checkpoints=())]
    checkpoints = [Checkpoint(id="cp-1", name="Gate"), Checkpoint(id="cp-2", name="Dock")]
    scans = [
        _scan(1, "cp-1", now - timedelta(seconds=30)),
        _scan(1, "cp-1", now - timedelta(seconds=20), result="failed", reason="Out of range"),
    ]

    stats = build_stats(guards, checkpoints, scans, now=now)
    assert stats["totalGuards"] == 2
    assert stats["activeGuards"] == 1
    assert stats["totalCheckpoints"] == 2
    assert stats["totalScans"] == 1

    timeline = build_timeline(guards, checkpoints, scans, limit=1)
    assert len(timeline) == 1
    assert timeline[0]["result"] == "failed"
    assert timeline[0]["checkpointName"] == "Gate"

    performance = build_guard_performance(guards, checkpoints, scans, now=now)
    alice = next(p for p in performance if p["id"] == 1)
    assert alice["failedScans"] == 1
    assert alice["assignedCheckpointNames"] == ["Gate"]

    status = {s["id"]: s for s in build_checkpoint_status(checkpoints, scans, now=now)}
    assert status["cp-1"]["status"] == "active"
    assert status["cp-2"]["status"] == "inactive"
    assert status["cp-2"]["lastScan"] is None


def test_read_models_on_empty_collections():
    now = datetime.now(timezone.utc)
    stats = build_stats([], [], [], now=now)
    assert stats["patrolsToday"] == 0
    assert stats["missedPatrols"] == 0
    assert stats["completionRateChange"] == 0.0
    assert build_timeline([], [], []) == []
    assert build_guard_performance([], [], [], now=now) == []
    assert build_patrol_assignments([], [], [], now=now) == []


def test_reset_after_window_drops_the_assignment():
    guard = _guard(checkpoint_reset_dates={"cp-1": END})
    scans = [_scan(1, "cp-1", START + timedelta(hours=1))]
    metrics = compute_metrics([guard], scans, START, END)
    assert metrics["total_assignments"] == 0
    assert metrics["completed_assignments"] == 0
    assert metrics["completion_rate"] == 0.0


def test_response_at_sla_boundary_is_on_time():
    scans = [_scan(1, "cp-1", START + timedelta(seconds=900))]
    metrics = compute_metrics([_guard()], scans, START, END, on_time_sla_seconds=900)
    assert metrics["on_time_rate"] == 100.0
    assert metrics["avg_response_time_seconds"] == 900

    late = [_scan(1, "cp-1", START + timedelta(seconds=901))]
    metrics = compute_metrics([_guard()], late, START, END, on_time_sla_seconds=900)
    assert metrics["on_time_rate"] == 0.0


def test_half_seconds_round_up():
    scans = [_scan(1, "cp-1", START + timedelta(milliseconds=500))]
    metrics = compute_metrics([_guard()], scans, START, END)
    assert metrics["avg_response_time_seconds"] == 1


@pytest.mark.parametrize(
    "value,digits,expected",
    [(0.5, 0, 1), (2.5, 0, 3), (-0.5, 0, 0), (-1.5, 0, -1), (12.25, 1, 12.3)],
)
def test_round_half_up(value, digits, expected):
    assert round_half_up(value, digits) == expected


@pytest.fixture()
def us_eastern(monkeypatch):
    if not hasattr(time, "tzset"):
        pytest.skip("time.tzset is not available on this platform")
    monkeypatch.setenv("TZ", "EST5EDT,M3.2.0,M11.1.0")
    time.tzset()
    yield
    monkeypatch.undo()
    time.tzset()


def test_day_windows_follow_dst_change(us_eastern):
    # 2026-03-08 is the spring-forward day: midnight is still EST (UTC-5),
    # the previous midnight too, while the next one is EDT (UTC-4).
    now = datetime(2026, 3, 8, 12, 0, tzinfo=timezone.utc)
    assert local_midnight(now) == datetime(2026, 3, 8, 5, 0, tzinfo=timezone.utc)
    assert yesterday_window(now) == (
        datetime(2026, 3, 7, 5, 0, tzinfo=timezone.utc),
        datetime(2026, 3, 8, 5, 0, tzinfo=timezone.utc),
    )

    after = datetime(2026, 3, 9, 12, 0, tzinfo=timezone.utc)
    assert local_midnight(after) == datetime(2026, 3, 9, 4, 0, tzinfo=timezone.utc)
    start, end = yesterday_window(after)
    assert end - start == timedelta(hours=23)
