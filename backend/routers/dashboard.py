from fastapi import APIRouter, Depends
from pydantic import BaseModel

from backend.security import require_admin
from backend.services.metrics import (
    build_checkpoint_status,
    build_guard_performance,
    build_patrol_assignments,
    build_stats,
    build_timeline,
)
from backend.services.notifications import InMemoryNotificationStateStore, NotificationEngine
from database.db import get_all_checkpoints, get_all_guards, get_all_scans

router = APIRouter(dependencies=[Depends(require_admin)])

_NOTIFICATION_ENGINE = NotificationEngine(InMemoryNotificationStateStore())


def get_notification_engine() -> NotificationEngine:
    return _NOTIFICATION_ENGINE


class NotificationStateUpdate(BaseModel):
    reads: list[str] = []
    acks: list[str] = []
    deletes: list[str] = []
    resetAll: bool = False


@router.get("/dashboard/stats")
def stats():
    return build_stats(get_all_guards(), get_all_checkpoints(), get_all_scans())


@router.get("/dashboard/timeline")
def timeline():
    return build_timeline(get_all_guards(), get_all_checkpoints(), get_all_scans())


@router.get("/dashboard/guard-performance")
def guard_performance():
    return build_guard_performance(get_all_guards(), get_all_checkpoints(), get_all_scans())


@router.get("/dashboard/checkpoint-status")
def checkpoint_status():
    return build_checkpoint_status(get_all_checkpoints(), get_all_scans())


@router.get("/dashboard/upcoming-patrols")
def upcoming_patrols():
    return build_patrol_assignments(get_all_guards(), get_all_checkpoints(), get_all_scans())


@router.get("/dashboard/notifications")
def notifications(
    session: dict = Depends(require_admin),
    engine: NotificationEngine = Depends(get_notification_engine),
):
    return engine.notifications(
        session["sub"],
        get_all_guards(),
        get_all_checkpoints(),
        get_all_scans(),
    )


@router.get("/dashboard/notifications/state")
def notification_state(
    session: dict = Depends(require_admin),
    engine: NotificationEngine = Depends(get_notification_engine),
):
    return engine.state(session["sub"]).to_public(session["sub"])


@router.post("/dashboard/notifications/state")
def update_notification_state(
    payload: NotificationStateUpdate,
    session: dict = Depends(require_admin),
    engine: NotificationEngine = Depends(get_notification_engine),
):
    state = engine.update_state(
        session["sub"],
        reads=payload.reads,
        acks=payload.acks,
        deletes=payload.deletes,
        reset_all=payload.resetAll,
    )
    return state.to_public(session["sub"])
