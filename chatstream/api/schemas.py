from __future__ import annotations
from typing import Optional
from datetime import datetime
from pydantic import BaseModel, Field, field_validator, model_validator

from chatstream.core.config import settings


def _strip(v: Optional[str]) -> Optional[str]:
    if v is None:
        return None
    v = v.strip()
    return v or None


class MessageCreate(BaseModel):
    text: Optional[str] = None
    attachment_url: Optional[str] = Field(default=None, max_length=500)
    group: Optional[str] = Field(default=None, max_length=64)
    reply_to: Optional[str] = Field(default=None, max_length=32)
    sender: Optional[str] = Field(default=None, max_length=200)

    @field_validator("text", "attachment_url", "group", "sender")
    @classmethod
    def _blank_to_none(cls, v: Optional[str]) -> Optional[str]:
        return _strip(v)

    @model_validator(mode="after")
    def _text_or_attachment(self):
        if not self.text and not self.attachment_url:
            raise ValueError("text or attachment_url is required")
        if self.text and len(self.text) > settings.MAX_TEXT_LENGTH:
            raise ValueError(f"text longer than {settings.MAX_TEXT_LENGTH} characters")
        return self


class MessageEdit(BaseModel):
    text: str

    @field_validator("text")
    @classmethod
    def _non_empty(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("text must not be empty")
        if len(v) > settings.MAX_TEXT_LENGTH:
            raise ValueError(f"text longer than {settings.MAX_TEXT_LENGTH} characters")
        return v


class MessageOut(BaseModel):
    id: str
    sender: str
    group: str | None = None
    created_at: datetime | None = None
    deleted: bool = False
    text: str | None = None
    attachment_url: str | None = None
    reply_to: str | None = None
    edited: bool = False
    edited_at: datetime | None = None
    deleted_at: datetime | None = None


class BackfillOut(BaseModel):
    count: int
    items: list[MessageOut]


class RegisterReq(BaseModel):
    identity: str = Field(min_length=3, max_length=200)
    password: str = Field(min_length=6, max_length=200)
    display_name: str = Field(min_length=1, max_length=120)
    avatar_url: Optional[str] = Field(default=None, max_length=500)


class LoginReq(BaseModel):
    identity: str
    password: str


class UserOut(BaseModel):
    id: int
    identity: str
    display_name: str
    avatar_url: str | None = None


class TokenOut(BaseModel):
    token: str
    expires_at: int
    user: UserOut
