from __future__ import annotations
import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import String, Integer, DateTime, Boolean, Text, Index
from sqlalchemy.orm import Mapped, mapped_column

from chatstream.infra.db import Base


def _new_id() -> str:
    return uuid.uuid4().hex


class MessageState(str, Enum):
    ACTIVE = "active"
    EDITED = "edited"
    DELETED = "deleted"


class Message(Base):
    __tablename__ = "messages"
    __table_args__ = (
        Index("ix_messages_group_created", "group_tag", "created_at"),
        Index("ix_messages_deleted_at", "deleted", "deleted_at"),
    )
    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)
    text: Mapped[str | None] = mapped_column(Text, nullable=True)
    sender: Mapped[str] = mapped_column(String(200), nullable=False, default="Anonymous")
    group_tag: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    attachment_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    reply_to: Mapped[str | None] = mapped_column(String(32), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    edited: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    edited_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    deleted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    @property
    def state(self) -> MessageState:
        if self.deleted:
            return MessageState.DELETED
        if self.edited:
            return MessageState.EDITED
        return MessageState.ACTIVE

    def to_payload(self) -> dict:
        """Wire shape shared by the REST responses and the live stream."""
        if self.deleted:
            return {
                "id": self.id,
                "sender": self.sender,
                "group": self.group_tag,
                "created_at": self.created_at.isoformat() if self.created_at else None,
                "deleted": True,
                "deleted_at": self.deleted_at.isoformat() if self.deleted_at else None,
            }
        return {
            "id": self.id,
            "sender": self.sender,
            "text": self.text,
            "attachment_url": self.attachment_url,
            "group": self.group_tag,
            "reply_to": self.reply_to,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "edited": self.edited,
            "edited_at": self.edited_at.isoformat() if self.edited_at else None,
            "deleted": False,
        }


class User(Base):
    __tablename__ = "users"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    identity: Mapped[str] = mapped_column(String(200), unique=True, nullable=False)
    password_hash: Mapped[str] = mapped_column(String(200), nullable=False)
    display_name: Mapped[str] = mapped_column(String(120), nullable=False)
    avatar_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
