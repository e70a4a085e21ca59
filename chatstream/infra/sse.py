from __future__ import annotations
import asyncio
import itertools
import json
import logging
import threading
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Protocol

logger = logging.getLogger("infra.sse")

KEEPALIVE_FRAME = ": keep-alive\n\n"
OPEN_FRAME = ":ok\n\n"


def sse_frame(data: Dict[str, Any]) -> str:
    return f"data: {json.dumps(data, ensure_ascii=False)}\n\n"


class EventKind(str, Enum):
    CREATE = "create"
    EDIT = "edit"
    DELETE = "delete"


@dataclass(frozen=True)
class MessageEvent:
    kind: EventKind
    message_id: str
    payload: Optional[Dict[str, Any]] = None
    group: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"type": self.kind.value, "id": self.message_id}
        if self.kind is not EventKind.DELETE and self.payload is not None:
            out["message"] = self.payload
        return out

    def to_frame(self) -> str:
        return sse_frame(self.to_dict())


class Delivery(str, Enum):
    DELIVERED = "delivered"
    EVICTED = "evicted"


class TransportError(Exception):
    """A write to a subscriber transport failed."""


class HubFull(Exception):
    """Raised by subscribe when the admission limit is reached."""


class Transport(Protocol):
    def send(self, frame: str) -> None: ...

    def close(self) -> None: ...


def _on_loop(loop: asyncio.AbstractEventLoop) -> bool:
    try:
        return asyncio.get_running_loop() is loop
    except RuntimeError:
        return False


class QueueTransport:
    """Bounded queue feeding a single SSE response.

    ``send`` never blocks. It is safe to call from the event loop or from a
    threadpool worker (sync route handlers). A full queue is a failed write,
    so a consumer that stopped reading gets evicted instead of buffering
    forever.

    A threadpool send can still lose the race for the last slot after it
    returned. That frame is dropped, the transport closes and
    ``on_overflow`` runs so the owner can unregister the connection.
    """

    def __init__(
        self,
        maxsize: int = 100,
        loop: Optional[asyncio.AbstractEventLoop] = None,
        on_overflow: Optional[Callable[[], Any]] = None,
    ) -> None:
        self._loop = loop or asyncio.get_running_loop()
        self._queue: asyncio.Queue[Optional[str]] = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self.on_overflow = on_overflow

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, frame: str) -> None:
        if self._closed:
            raise TransportError("transport closed")
        if self._queue.full():
            raise TransportError("subscriber queue full")
        try:
            self._call(self._put, frame)
        except RuntimeError as e:  # loop already closed
            self._closed = True
            raise TransportError(str(e)) from e

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._call(self._put_sentinel)
        except RuntimeError:
            pass

    def _call(self, fn: Callable[..., None], *args: Any) -> None:
        if _on_loop(self._loop):
            fn(*args)
        else:
            self._loop.call_soon_threadsafe(fn, *args)

    def _put(self, frame: str) -> None:
        try:
            self._queue.put_nowait(frame)
        except asyncio.QueueFull:
            # filled up between the check in send() and this callback
            self._closed = True
            logger.warning("subscriber queue overflowed, frame dropped")
            if self.on_overflow is not None:
                self.on_overflow()

    def _put_sentinel(self) -> None:
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            pass

    async def frames(self, poll: float = 1.0) -> AsyncIterator[str]:
        while True:
            try:
                frame = await asyncio.wait_for(self._queue.get(), timeout=poll)
            except asyncio.TimeoutError:
                if self._closed:
                    return
                continue
            if frame is None:
                return
            yield frame


@dataclass
class Subscriber:
    id: str
    transport: Transport
    group: Optional[str]
    connected_at: float
    last_activity: float
    open: bool = True


def _matches(sub_group: Optional[str], event_group: Optional[str]) -> bool:
    return event_group is None or sub_group is None or sub_group == event_group


class BroadcastHub:
    """Registry of open SSE connections with best-effort fan-out.

    - Delivery is at-most-once per connection: no queueing, no retries, no acks.
    - A failed write evicts that connection and never affects the others.
    - The registry lock is held only to add, remove or snapshot entries;
      writes happen outside it.
    """

    def __init__(
        self, max_subscribers: int = 0, clock: Callable[[], float] = time.monotonic
    ) -> None:
        self._subs: Dict[str, Subscriber] = {}
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._max = max_subscribers
        self._clock = clock

    @property
    def size(self) -> int:
        with self._lock:
            return len(self._subs)

    def __contains__(self, connection_id: object) -> bool:
        with self._lock:
            return connection_id in self._subs

    def subscribe(self, transport: Transport, group: Optional[str] = None) -> str:
        now = self._clock()
        with self._lock:
            if self._max and len(self._subs) >= self._max:
                raise HubFull(f"subscriber limit reached ({self._max})")
            # counter keeps ids unique for this hub; suffix keeps them unique across restarts
            conn_id = f"c{next(self._ids)}-{uuid.uuid4().hex[:8]}"
            self._subs[conn_id] = Subscriber(
                id=conn_id,
                transport=transport,
                group=group,
                connected_at=now,
                last_activity=now,
            )
            size = len(self._subs)
        logger.info(
            "subscriber attached",
            extra={"connection_id": conn_id, "group": group, "subscribers": size},
        )
        return conn_id

    def unsubscribe(self, connection_id: str) -> bool:
        with self._lock:
            sub = self._subs.pop(connection_id, None)
            size = len(self._subs)
        if sub is None:
            return False
        sub.open = False
        try:
            sub.transport.close()
        except Exception:
            logger.warning(
                "error closing transport",
                exc_info=True,
                extra={"connection_id": connection_id},
            )
        logger.info(
            "subscriber detached",
            extra={"connection_id": connection_id, "subscribers": size},
        )
        return True

    def publish(
        self, event: MessageEvent, group: Optional[str] = None
    ) -> Dict[str, Delivery]:
        target = group if group is not None else event.group
        results = self._fanout(
            event.to_frame(), lambda s: _matches(s.group, target)
        )
        logger.debug(
            "event published",
            extra={
                "event": event.kind.value,
                "message_id": event.message_id,
                "group": target,
                "subscribers": len(results),
            },
        )
        return results

    def heartbeat(self) -> Dict[str, Delivery]:
        return self._fanout(KEEPALIVE_FRAME, lambda s: True)

    def reap(self, max_idle: float) -> List[str]:
        cutoff = self._clock() - max_idle
        with self._lock:
            stale = [sid for sid, s in self._subs.items() if s.last_activity < cutoff]
        reaped = [sid for sid in stale if self.unsubscribe(sid)]
        if reaped:
            logger.info("reaped idle subscribers", extra={"subscribers": len(reaped)})
        return reaped

    def close_all(self) -> int:
        with self._lock:
            ids = list(self._subs)
        return sum(1 for sid in ids if self.unsubscribe(sid))

    def snapshot(self) -> List[Dict[str, Any]]:
        now = self._clock()
        with self._lock:
            subs = list(self._subs.values())
        return [
            {
                "id": s.id,
                "group": s.group,
                "connected_for": round(now - s.connected_at, 3),
                "idle_for": round(now - s.last_activity, 3),
            }
            for s in subs
        ]

    def _fanout(
        self, frame: str, wanted: Callable[[Subscriber], bool]
    ) -> Dict[str, Delivery]:
        with self._lock:
            targets = [s for s in self._subs.values() if wanted(s)]
        results: Dict[str, Delivery] = {}
        failed: List[str] = []
        for sub in targets:
            try:
                sub.transport.send(frame)
            except Exception as e:
                results[sub.id] = Delivery.EVICTED
                failed.append(sub.id)
                logger.warning(
                    "write failed, evicting subscriber: %s",
                    e,
                    extra={"connection_id": sub.id},
                )
            else:
                sub.last_activity = self._clock()
                results[sub.id] = Delivery.DELIVERED
        for sid in failed:
            self.unsubscribe(sid)
        return results
