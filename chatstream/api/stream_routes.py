from __future__ import annotations
import logging
from typing import Any, AsyncIterator, Dict, List, Optional
from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import StreamingResponse
from starlette.concurrency import run_in_threadpool

from chatstream.core.auth import read_identity
from chatstream.core.config import settings
from chatstream.core.messages import ChatService
from chatstream.dependencies import get_hub
from chatstream.infra.db import SessionLocal
from chatstream.infra.sse import (
    OPEN_FRAME,
    BroadcastHub,
    HubFull,
    QueueTransport,
    sse_frame,
)

router = APIRouter()
logger = logging.getLogger("api.stream")

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def _read_backfill(hub: BroadcastHub, limit: int, group: Optional[str]) -> List[Dict[str, Any]]:
    db = SessionLocal()
    try:
        rows = ChatService(db, hub).backfill(limit=limit, group=group)
        return [m.to_payload() for m in rows]
    finally:
        db.close()


async def subscriber_stream(
    hub: BroadcastHub,
    transport: QueueTransport,
    connection_id: str,
    init: Optional[List[Dict[str, Any]]] = None,
) -> AsyncIterator[str]:
    try:
        # prompt first byte so proxies open the stream
        yield OPEN_FRAME
        if init is not None:
            yield sse_frame({"type": "init", "messages": init})
        async for frame in transport.frames():
            yield frame
    finally:
        hub.unsubscribe(connection_id)


@router.get("/messages/stream")
async def message_stream(
    group: Optional[str] = Query(default=None),
    backfill: int = Query(default=0, ge=0),
    hub: BroadcastHub = Depends(get_hub),
    identity: Optional[str] = Depends(read_identity),
):
    """Live message feed, optionally preceded by an ``init`` backfill frame.

    ``backfill=N`` sends the latest N messages from the last
    BACKFILL_WINDOW_HOURS (24h by default), never older ones. Clients that
    need more history page through ``GET /messages?since=...`` first. The
    backfill is read before the subscriber attaches.
    """
    init = None
    if backfill:
        # read first, then attach; see ChatService.backfill for the race window
        init = await run_in_threadpool(_read_backfill, hub, backfill, group)
    transport = QueueTransport(maxsize=settings.SSE_QUEUE_SIZE)
    try:
        conn_id = hub.subscribe(transport, group=group)
    except HubFull as e:
        logger.warning("rejecting subscriber: %s", e)
        raise HTTPException(status_code=503, detail="Too many subscribers")
    transport.on_overflow = lambda: hub.unsubscribe(conn_id)
    return StreamingResponse(
        subscriber_stream(hub, transport, conn_id, init),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )
