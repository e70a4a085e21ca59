from __future__ import annotations
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import delete
from sqlalchemy.orm import Session

from chatstream import models

logger = logging.getLogger("core.retention")


@dataclass
class SweepResult:
    purged: int
    expired: int


def sweep(
    db: Session,
    purge_after: timedelta,
    retain_for: Optional[timedelta] = None,
    now: Optional[datetime] = None,
) -> SweepResult:
    """Physically remove old rows.

    - soft-deleted rows whose deleted_at is older than ``purge_after``
    - live rows whose created_at is older than ``retain_for`` (skipped when
      ``retain_for`` is None or zero)
    """
    now = now or datetime.utcnow()
    purge_cutoff = now - purge_after
    purged = db.execute(
        delete(models.Message)
        .where(models.Message.deleted.is_(True))
        .where(models.Message.deleted_at.is_not(None))
        .where(models.Message.deleted_at < purge_cutoff)
    ).rowcount

    expired = 0
    if retain_for:
        expired = db.execute(
            delete(models.Message)
            .where(models.Message.deleted.is_(False))
            .where(models.Message.created_at < now - retain_for)
        ).rowcount
    db.commit()
    logger.info(
        "retention sweep finished",
        extra={"purged": int(purged or 0), "expired": int(expired or 0)},
    )
    return SweepResult(purged=int(purged or 0), expired=int(expired or 0))
