from __future__ import annotations
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from chatstream import models
from chatstream.api.schemas import LoginReq, RegisterReq, TokenOut, UserOut
from chatstream.core.auth import read_identity, token_signer
from chatstream.core.config import settings
from chatstream.core.passwords import hash_password, verify_password
from chatstream.core.tokens import TokenSigner
from chatstream.dependencies import get_db

router = APIRouter(prefix="/auth")


def _user_out(u: models.User) -> UserOut:
    return UserOut(
        id=u.id, identity=u.identity, display_name=u.display_name, avatar_url=u.avatar_url
    )


def _normalize(identity: str) -> str:
    return identity.strip().lower()


@router.post("/register", response_model=UserOut, status_code=201)
def register(req: RegisterReq, db: Session = Depends(get_db)):
    identity = _normalize(req.identity)
    exists = db.scalar(select(models.User.id).where(models.User.identity == identity))
    if exists:
        raise HTTPException(status_code=409, detail="Identity already registered")
    user = models.User(
        identity=identity,
        password_hash=hash_password(req.password),
        display_name=req.display_name.strip(),
        avatar_url=req.avatar_url,
    )
    db.add(user)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=409, detail="Identity already registered")
    db.refresh(user)
    return _user_out(user)


@router.post("/login", response_model=TokenOut)
def login(
    req: LoginReq,
    db: Session = Depends(get_db),
    signer: TokenSigner = Depends(token_signer),
):
    user = db.scalar(
        select(models.User).where(models.User.identity == _normalize(req.identity))
    )
    if user is None or not verify_password(req.password, user.password_hash):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    token = signer.issue(user.identity, ttl_seconds=settings.TOKEN_TTL_SECONDS)
    claims = signer.verify(token)
    return TokenOut(token=token, expires_at=claims.expires_at, user=_user_out(user))


@router.get("/me", response_model=UserOut)
def me(
    identity: Optional[str] = Depends(read_identity),
    db: Session = Depends(get_db),
):
    if identity is None:
        raise HTTPException(status_code=401, detail="Unauthorized: missing token")
    user = db.scalar(select(models.User).where(models.User.identity == identity))
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")
    return _user_out(user)
