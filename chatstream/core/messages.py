from __future__ import annotations
import logging
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import select, desc, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from chatstream import models
from chatstream.core.config import settings
from chatstream.infra.sse import BroadcastHub, EventKind, MessageEvent

logger = logging.getLogger("core.messages")


class MessageNotFound(Exception):
    pass


class NotMessageOwner(Exception):
    pass


class PersistenceError(Exception):
    pass


class ChatService:
    """Persist-then-broadcast pipeline for chat messages.

    Every mutation is committed before its event reaches the hub. If the
    commit fails the session is rolled back, PersistenceError is raised and
    nothing is published. A crash between commit and publish leaves the
    message persisted but never streamed; clients recover it by backfill.
    """

    def __init__(self, db: Session, hub: BroadcastHub):
        self.db = db
        self.hub = hub

    def _commit(self, action: str) -> None:
        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error("%s failed: %s", action, e)
            raise PersistenceError(f"{action} failed") from e

    def _publish(self, kind: EventKind, msg: models.Message) -> None:
        payload = None if kind is EventKind.DELETE else msg.to_payload()
        self.hub.publish(
            MessageEvent(
                kind=kind, message_id=msg.id, payload=payload, group=msg.group_tag
            )
        )

    def _live(self, message_id: str) -> models.Message:
        msg = self.db.get(models.Message, message_id)
        if msg is None or msg.deleted:
            raise MessageNotFound(message_id)
        return msg

    @staticmethod
    def _check_owner(msg: models.Message, actor: Optional[str]) -> None:
        if actor is not None and msg.sender != actor:
            raise NotMessageOwner(msg.id)

    def post_message(
        self,
        sender: str,
        text: Optional[str] = None,
        attachment_url: Optional[str] = None,
        group: Optional[str] = None,
        reply_to: Optional[str] = None,
    ) -> models.Message:
        text = (text or "").strip() or None
        if text is None and not attachment_url:
            raise ValueError("message needs text or an attachment")
        if reply_to is not None:
            self._live(reply_to)
        msg = models.Message(
            sender=sender or "Anonymous",
            text=text,
            attachment_url=attachment_url,
            group_tag=group,
            reply_to=reply_to,
            created_at=datetime.utcnow(),
        )
        self.db.add(msg)
        self._commit("insert message")
        logger.info("message created", extra={"message_id": msg.id, "group": group})
        self._publish(EventKind.CREATE, msg)
        return msg

    def edit_message(
        self, message_id: str, text: str, actor: Optional[str] = None
    ) -> models.Message:
        text = (text or "").strip()
        if not text:
            raise ValueError("text must not be empty")
        msg = self._live(message_id)
        self._check_owner(msg, actor)
        msg.text = text
        msg.edited = True
        msg.edited_at = datetime.utcnow()
        self._commit("edit message")
        logger.info("message edited", extra={"message_id": msg.id})
        self._publish(EventKind.EDIT, msg)
        return msg

    def delete_message(
        self, message_id: str, actor: Optional[str] = None
    ) -> models.Message:
        msg = self._live(message_id)
        self._check_owner(msg, actor)
        msg.deleted = True
        msg.deleted_at = datetime.utcnow()
        self._commit("delete message")
        logger.info("message deleted", extra={"message_id": msg.id})
        self._publish(EventKind.DELETE, msg)
        return msg

    def get_message(self, message_id: str) -> models.Message:
        return self._live(message_id)

    def backfill(
        self,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: Optional[int] = None,
        group: Optional[str] = None,
        include_deleted: bool = False,
        order: str = "asc",
    ) -> List[models.Message]:
        """Latest ``limit`` messages of the window, returned in ``order``.

        There is no cursor shared with the live stream: a message committed
        between this read and the caller's subscribe can be missed, and one
        committed just before it can arrive twice.
        """
        if since is None:
            since = datetime.utcnow() - timedelta(hours=settings.BACKFILL_WINDOW_HOURS)
        limit = limit or settings.BACKFILL_DEFAULT_ROWS
        limit = max(1, min(int(limit), settings.BACKFILL_MAX_ROWS))

        q = select(models.Message).where(models.Message.created_at >= since)
        if until is not None:
            q = q.where(models.Message.created_at <= until)
        if group is not None:
            # same routing as the live feed: groupless messages reach every group
            q = q.where(
                or_(models.Message.group_tag == group, models.Message.group_tag.is_(None))
            )
        if not include_deleted:
            q = q.where(models.Message.deleted.is_(False))
        q = q.order_by(desc(models.Message.created_at), desc(models.Message.id)).limit(limit)

        rows = list(self.db.scalars(q).all())
        if order == "asc":
            rows.reverse()
        return rows
