from typing import Generator
from fastapi import Depends, Request
from sqlalchemy.orm import Session
from chatstream.infra.db import SessionLocal
from chatstream.infra.sse import BroadcastHub
from chatstream.core.messages import ChatService


def get_db() -> Generator:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_hub(request: Request) -> BroadcastHub:
    return request.app.state.hub


def get_chat(
    db: Session = Depends(get_db), hub: BroadcastHub = Depends(get_hub)
) -> ChatService:
    return ChatService(db, hub)
