from __future__ import annotations
from datetime import timedelta
from typing import Optional
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from chatstream.dependencies import get_db, get_hub
from chatstream.core.auth import require_api_key
from chatstream.core.config import settings
from chatstream.core.retention import sweep
from chatstream.infra.sse import BroadcastHub

router = APIRouter(prefix="/admin", dependencies=[Depends(require_api_key)])


@router.post("/cleanup")
def cleanup_messages(
    purge_after_days: Optional[int] = Query(default=None, ge=0, le=3650),
    retain_days: Optional[int] = Query(default=None, ge=0, le=3650),
    db: Session = Depends(get_db),
):
    purge = (
        purge_after_days
        if purge_after_days is not None
        else settings.RETENTION_PURGE_DELETED_DAYS
    )
    retain = retain_days if retain_days is not None else settings.RETENTION_MAX_AGE_DAYS
    result = sweep(
        db,
        purge_after=timedelta(days=purge),
        retain_for=timedelta(days=retain) if retain else None,
    )
    return {"purged": result.purged, "expired": result.expired}


@router.get("/subscribers")
def list_subscribers(hub: BroadcastHub = Depends(get_hub)):
    items = hub.snapshot()
    return {"count": len(items), "items": items}
