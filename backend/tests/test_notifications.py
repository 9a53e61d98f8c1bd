from datetime import datetime, timedelta, timezone
from itertools import count

import pytest

from backend.schemas import Checkpoint, Guard, Scan
from backend.services.geofence import GUARD_LOCATION_MISSING
from backend.services.notifications import (
    InMemoryNotificationStateStore,
    NotificationEngine,
    build_notifications,
    time_ago_minutes,
)

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)
OUT_OF_RANGE = "Out of range: effective distance 40.0m (accuracy 0.0m) exceeds allowed radius of 10m"
_ids = count(1)

GUARDS = [Guard(id=1, name="Alice", assigned_checkpoints=["cp-1"])]
CHECKPOINTS = [Checkpoint(id="cp-1", name="Gate")]


def _scan(at, *, result="passed", reason=None, guard_id=1, cp_id="cp-1"):
    return Scan(
        id=f"scan-{next(_ids)}",
        guard_id=guard_id,
        checkpoint_id=cp_id,
        scanned_at=at,
        result=result,
        failure_reason=reason,
    )


def _failures(n, *, start_minutes_ago=20):
    return [
        _scan(NOW - timedelta(minutes=start_minutes_ago - i), result="failed", reason=OUT_OF_RANGE)
        for i in range(n)
    ]


@pytest.fixture()
def engine():
    return NotificationEngine(InMemoryNotificationStateStore())


def _by_type(items, kind):
    return [n for n in items if n["type"] == kind]


def test_repeated_location_failures_group_into_one_notification():
    two = build_notifications(GUARDS, CHECKPOINTS, _failures(2), now=NOW)
    assert _by_type(two, "location_failure") == []

    failures = _failures(4)
    three = _by_type(build_notifications(GUARDS, CHECKPOINTS, failures[:3], now=NOW), "location_failure")
    assert len(three) == 1
    assert three[0]["severity"] == "critical"
    assert three[0]["title"] == "Repeated Location Failures"
    assert three[0]["aggregateCount"] == 3

    four = _by_type(build_notifications(GUARDS, CHECKPOINTS, failures, now=NOW), "location_failure")
    assert len(four) == 1
    assert four[0]["id"] == three[0]["id"]
    assert four[0]["aggregateCount"] == 4


def test_failures_outside_window_do_not_count():
    scans = _failures(3, start_minutes_ago=45)
    items = build_notifications(GUARDS, CHECKPOINTS, scans, now=NOW)
    assert _by_type(items, "location_failure") == []


def test_no_reassign_within_two_hours():
    recent = [_scan(NOW - timedelta(minutes=90))]
    assert _by_type(build_notifications(GUARDS, CHECKPOINTS, recent, now=NOW), "reassign_needed") == []

    stale = [_scan(NOW - timedelta(hours=3))]
    items = _by_type(build_notifications(GUARDS, CHECKPOINTS, stale, now=NOW), "reassign_needed")
    assert len(items) == 1
    assert items[0]["severity"] == "warning"
    assert items[0]["detail"] == "Alice last completed Gate 3h ago"


def test_reassign_ignores_success_before_reset_date():
    guard = Guard(
        id=1,
        name="Alice",
        assigned_checkpoints=["cp-1"],
        checkpoint_reset_dates={"cp-1": NOW - timedelta(hours=1)},
    )
    stale = [_scan(NOW - timedelta(hours=3))]
    items = build_notifications([guard], CHECKPOINTS, stale, now=NOW)
    assert _by_type(items, "reassign_needed") == []


def test_unauthorized_attempts_and_successes():
    scans = [
        _scan(NOW - timedelta(minutes=5), result="failed", reason="Unauthorized attempt: guard not assigned to checkpoint"),
        _scan(NOW - timedelta(minutes=1)),
    ]
    items = build_notifications(GUARDS, CHECKPOINTS, scans, now=NOW)
    assert [n["type"] for n in items] == ["scan_success", "unauthorized_attempt"]
    assert items[1]["severity"] == "critical"
    assert items[0]["severity"] == "other"


def test_delete_persists_for_same_admin_only(engine):
    scans = [_scan(NOW - timedelta(minutes=1))]
    first = engine.notifications("admin", GUARDS, CHECKPOINTS, scans, now=NOW)
    assert len(first) == 1
    assert first[0]["unread"] is True

    engine.update_state("admin", deletes=[first[0]["id"]], now=NOW)

    # A new request for the same admin id sees the stored state.
    assert engine.notifications("admin", GUARDS, CHECKPOINTS, scans, now=NOW) == []
    assert len(engine.notifications("other-admin", GUARDS, CHECKPOINTS, scans, now=NOW)) == 1

    state = engine.state("admin")
    assert first[0]["id"] in state.read
    assert first[0]["id"] in state.acknowledged


def test_read_ack_are_idempotent_and_reset_hides_older(engine):
    scans = [_scan(NOW - timedelta(minutes=10)), _scan(NOW - timedelta(minutes=2))]
    items = engine.notifications("admin", GUARDS, CHECKPOINTS, scans, now=NOW)
    newest = items[0]["id"]

    engine.update_state("admin", reads=[newest], acks=[newest], now=NOW)
    engine.update_state("admin", reads=[newest], acks=[newest], now=NOW)
    state = engine.state("admin")
    assert state.read == {newest}
    assert state.acknowledged == {newest}

    marked = engine.notifications("admin", GUARDS, CHECKPOINTS, scans, now=NOW)
    assert marked[0]["unread"] is False
    assert marked[0]["acknowledged"] is True
    assert marked[0]["timeAgoMinutes"] == 2

    engine.update_state("admin", reset_all=True, now=NOW - timedelta(minutes=5))
    after_reset = engine.notifications("admin", GUARDS, CHECKPOINTS, scans, now=NOW)
    assert [n["id"] for n in after_reset] == [newest]
    assert after_reset[0]["unread"] is True
    assert engine.state("admin").read == set()


def test_limit_caps_visible_notifications():
    engine = NotificationEngine(InMemoryNotificationStateStore(), limit=2)
    scans = [_scan(NOW - timedelta(minutes=m)) for m in range(1, 6)]
    assert len(engine.notifications("admin", GUARDS, CHECKPOINTS, scans, now=NOW)) == 2


def test_store_returns_copies():
    store = InMemoryNotificationStateStore()
    state = store.get("admin")
    state.read.add("x")
    assert store.get("admin").read == set()


def test_new_failure_burst_shows_after_earlier_alert_deleted(engine):
    first_burst = _failures(3)
    alert = _by_type(engine.notifications("admin", GUARDS, CHECKPOINTS, first_burst, now=NOW), "location_failure")
    assert len(alert) == 1
    engine.update_state("admin", deletes=[alert[0]["id"]], now=NOW)

    later = NOW + timedelta(days=3)
    second_burst = [
        _scan(later - timedelta(minutes=10 - i), result="failed", reason=OUT_OF_RANGE) for i in range(5)
    ]
    items = _by_type(
        engine.notifications("admin", GUARDS, CHECKPOINTS, first_burst + second_burst, now=later),
        "location_failure",
    )
    assert len(items) == 1
    assert items[0]["id"] != alert[0]["id"]
    assert items[0]["aggregateCount"] == 5


@pytest.mark.parametrize(
    "reason",
    [GUARD_LOCATION_MISSING, "GPS signal lost", OUT_OF_RANGE],
)
def test_location_failure_markers(reason):
    scans = [_scan(NOW - timedelta(minutes=m), result="failed", reason=reason) for m in (3, 2, 1)]
    items = _by_type(build_notifications(GUARDS, CHECKPOINTS, scans, now=NOW), "location_failure")
    assert len(items) == 1


def test_unrelated_failure_reasons_are_not_location_failures():
    scans = [_scan(NOW - timedelta(minutes=m), result="failed", reason="QR code expired") for m in (3, 2, 1)]
    assert _by_type(build_notifications(GUARDS, CHECKPOINTS, scans, now=NOW), "location_failure") == []


def test_unauthorized_and_success_detectors_are_capped():
    unauthorized = [
        _scan(NOW - timedelta(minutes=m), result="failed", reason="Unauthorized attempt: guard not assigned to checkpoint")
        for m in range(1, 13)
    ]
    successes = [_scan(NOW - timedelta(minutes=m)) for m in range(1, 21)]
    items = build_notifications(GUARDS, CHECKPOINTS, unauthorized + successes, now=NOW)

    flagged = _by_type(items, "unauthorized_attempt")
    assert len(flagged) == 10
    # The most recent attempts are the ones kept.
    assert min(n["time"] for n in flagged) == NOW - timedelta(minutes=10)
    assert len(_by_type(items, "scan_success")) == 15


def test_time_ago_minutes(engine):
    # Reassign alerts are stamped at latest success + 2h.
    scans = [_scan(NOW - timedelta(hours=2, minutes=30))]
    items = engine.notifications("admin", GUARDS, CHECKPOINTS, scans, now=NOW)
    reassign = _by_type(items, "reassign_needed")
    assert len(reassign) == 1
    assert reassign[0]["timeAgoMinutes"] == 30

    just_now = [_scan(NOW)]
    items = engine.notifications("admin", GUARDS, CHECKPOINTS, just_now, now=NOW)
    assert [n["timeAgoMinutes"] for n in items] == [0]


def test_time_ago_rounds_half_minutes_up(engine):
    scans = [_scan(NOW - timedelta(seconds=30)), _scan(NOW - timedelta(seconds=150))]
    items = engine.notifications("admin", GUARDS, CHECKPOINTS, scans, now=NOW)
    assert [n["timeAgoMinutes"] for n in items] == [1, 3]


def test_time_ago_floors_future_times_at_zero():
    assert time_ago_minutes(NOW + timedelta(minutes=5), NOW) == 0
    assert time_ago_minutes(NOW - timedelta(seconds=29), NOW) == 0
    assert time_ago_minutes(NOW - timedelta(minutes=90), NOW) == 90
