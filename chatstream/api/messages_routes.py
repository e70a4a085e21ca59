from __future__ import annotations
from datetime import datetime, timezone
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query

from chatstream.api.schemas import BackfillOut, MessageCreate, MessageEdit, MessageOut
from chatstream.core.auth import read_identity, write_identity
from chatstream.core.config import settings
from chatstream.core.messages import (
    ChatService,
    MessageNotFound,
    NotMessageOwner,
    PersistenceError,
)
from chatstream.dependencies import get_chat

router = APIRouter()


def _out(msg) -> MessageOut:
    return MessageOut(**msg.to_payload())


def _naive_utc(ts: Optional[datetime]) -> Optional[datetime]:
    # stored timestamps are naive UTC
    if ts is None or ts.tzinfo is None:
        return ts
    return ts.astimezone(timezone.utc).replace(tzinfo=None)


@router.post("/messages", response_model=MessageOut, status_code=201)
def post_message(
    req: MessageCreate,
    chat: ChatService = Depends(get_chat),
    identity: Optional[str] = Depends(write_identity),
):
    sender = identity or req.sender or "Anonymous"
    try:
        msg = chat.post_message(
            sender=sender,
            text=req.text,
            attachment_url=req.attachment_url,
            group=req.group,
            reply_to=req.reply_to,
        )
    except MessageNotFound:
        raise HTTPException(status_code=422, detail="reply_to message not found")
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except PersistenceError as e:
        raise HTTPException(status_code=500, detail=str(e))
    return _out(msg)


@router.patch("/messages/{message_id}", response_model=MessageOut)
def edit_message(
    message_id: str,
    req: MessageEdit,
    chat: ChatService = Depends(get_chat),
    identity: Optional[str] = Depends(write_identity),
):
    try:
        msg = chat.edit_message(message_id, req.text, actor=identity)
    except MessageNotFound:
        raise HTTPException(status_code=404, detail="Message not found")
    except NotMessageOwner:
        raise HTTPException(status_code=403, detail="Not the message owner")
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except PersistenceError as e:
        raise HTTPException(status_code=500, detail=str(e))
    return _out(msg)


@router.delete("/messages/{message_id}", response_model=MessageOut)
def delete_message(
    message_id: str,
    actor: Optional[str] = Query(default=None),
    chat: ChatService = Depends(get_chat),
    identity: Optional[str] = Depends(write_identity),
):
    # a declared actor is only trusted when no token identifies the caller
    who = identity if identity is not None else actor
    try:
        msg = chat.delete_message(message_id, actor=who)
    except MessageNotFound:
        raise HTTPException(status_code=404, detail="Message not found")
    except NotMessageOwner:
        raise HTTPException(status_code=403, detail="Not the message owner")
    except PersistenceError as e:
        raise HTTPException(status_code=500, detail=str(e))
    return _out(msg)


@router.get("/messages", response_model=BackfillOut)
def backfill(
    since: Optional[datetime] = Query(default=None),
    until: Optional[datetime] = Query(default=None),
    limit: Optional[int] = Query(default=None, ge=1),
    group: Optional[str] = Query(default=None),
    include_deleted: bool = Query(default=False),
    order: str = Query(default="asc", pattern="^(asc|desc)$"),
    chat: ChatService = Depends(get_chat),
    identity: Optional[str] = Depends(read_identity),
):
    if limit is not None and limit > settings.BACKFILL_MAX_ROWS:
        raise HTTPException(
            status_code=422,
            detail=f"limit must be <= {settings.BACKFILL_MAX_ROWS}",
        )
    rows = chat.backfill(
        since=_naive_utc(since),
        until=_naive_utc(until),
        limit=limit,
        group=group,
        include_deleted=include_deleted,
        order=order,
    )
    return BackfillOut(count=len(rows), items=[_out(m) for m in rows])


@router.get("/messages/{message_id}", response_model=MessageOut)
def get_message(
    message_id: str,
    chat: ChatService = Depends(get_chat),
    identity: Optional[str] = Depends(read_identity),
):
    try:
        return _out(chat.get_message(message_id))
    except MessageNotFound:
        raise HTTPException(status_code=404, detail="Message not found")
