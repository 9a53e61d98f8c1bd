import logging

from fastapi import APIRouter, Depends

from backend.routers.dashboard import get_notification_engine
from backend.security import require_admin
from backend.services.notifications import NotificationEngine
from database.db import clear_all_tables, clear_scans

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(require_admin)])


@router.post("/admin/reset/scans")
def reset_scans():
    removed = clear_scans()
    logger.warning("Scan log cleared (%d scans removed)", removed)
    return {"ok": True, "removed": removed, "message": "Scan logs cleared"}


@router.post("/admin/reset/hard")
def reset_hard(engine: NotificationEngine = Depends(get_notification_engine)):
    # 1) clear guards, checkpoints and scans (admin accounts stay)
    clear_all_tables()

    # 2) drop per-admin notification state so ids from old scans do not linger
    engine.store.clear()

    logger.warning("Hard reset: guards, checkpoints and scans cleared")
    return {"ok": True, "message": "Reset complete: guards + checkpoints + scans cleared"}
