from datetime import datetime, timedelta, timezone

from backend.schemas import Guard, Scan, same_guard, to_guard_id
from backend.services.assignments import (
    assignment_key,
    check_designation,
    get_baseline,
    is_assigned,
    iter_assignments,
)

START = datetime(2026, 3, 2, 0, 0, tzinfo=timezone.utc)


def test_guard_ids_compare_across_representations():
    assert to_guard_id("7") == 7
    assert to_guard_id(" 7 ") == 7
    assert to_guard_id("seven") is None
    assert to_guard_id(True) is None
    assert same_guard(7, "7")
    assert not same_guard(None, None)
    assert assignment_key("3", " cp-1 ") == (3, "cp-1")
    assert assignment_key(None, "cp-1") is None


def test_designation_check():
    assert check_designation(None, "Alice")
    assert check_designation("   ", "Alice")
    assert check_designation(" alice ", "Alice")
    assert not check_designation("bob", "Alice")


def test_guard_record_normalizes_storage_drift():
    guard = Guard.model_validate(
        {
            "id": "4",
            "name": "Dana",
            "is_active": None,
            "assigned_checkpoints": ["cp-1", "cp-1", "", None, "cp-2"],
            "checkpoint_reset_dates": {"cp-1": "2026-03-02T08:00:00Z", "cp-2": "not a date"},
        }
    )
    assert guard.id == 4
    assert guard.is_active is True
    assert guard.assigned_checkpoints == ["cp-1", "cp-2"]
    assert guard.reset_date_for("cp-2") is None
    assert is_assigned(guard, "cp-2")
    assert not is_assigned(guard, "cp-3")


def test_legacy_scan_without_result_counts_as_passed():
    scan = Scan.model_validate(
        {"id": "s1", "guard_id": 1, "checkpoint_id": "cp-1", "scanned_at": "2026-03-02T08:00:00Z", "result": None}
    )
    assert not scan.failed
    assert scan.scanned_at.tzinfo is not None


def test_baseline_moves_forward_after_reset():
    reset = START + timedelta(hours=9)
    guard = Guard(id=1, name="Alice", assigned_checkpoints=["cp-1"], checkpoint_reset_dates={"cp-1": reset})

    assert get_baseline(guard, "cp-1", START) == reset
    assert get_baseline(guard, "cp-1", START + timedelta(hours=10)) == START + timedelta(hours=10)
    assert get_baseline(guard, "cp-2", START) == START
    # Assigned only after the window closed.
    assert get_baseline(guard, "cp-1", START - timedelta(days=1), START) is None


def test_iter_assignments_skips_inactive_guards():
    guards = [
        Guard(id=1, name="Alice", assigned_checkpoints=["cp-1", "cp-2"]),
        Guard(id=2, name="Bob", is_active=False, assigned_checkpoints=["cp-3"]),
    ]
    assert [(g.id, cp) for g, cp in iter_assignments(guards)] == [(1, "cp-1"), (1, "cp-2")]
    assert len(list(iter_assignments(guards, active_only=False))) == 3
