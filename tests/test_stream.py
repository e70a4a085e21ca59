import asyncio
import json
import threading
from datetime import datetime, timedelta

import pytest
from fastapi import HTTPException

from chatstream.api.stream_routes import message_stream, subscriber_stream
from chatstream.core.config import settings
from chatstream.core.messages import ChatService
from chatstream import models
from chatstream.infra.db import Base, engine, SessionLocal
from chatstream.infra.sse import (
    KEEPALIVE_FRAME,
    OPEN_FRAME,
    BroadcastHub,
    EventKind,
    MessageEvent,
    QueueTransport,
)
from chatstream.workers.loop import heartbeat_loop, reap_loop

from fakes import FakeTransport


def setup_function():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)


def _data(frame):
    assert frame.startswith("data: ")
    return json.loads(frame[len("data: "):])


def test_subscriber_stream_delivers_and_detaches_on_close():
    async def scenario():
        hub = BroadcastHub()
        transport = QueueTransport(maxsize=10)
        cid = hub.subscribe(transport)
        gen = subscriber_stream(hub, transport, cid, init=[{"id": "old"}])
        frames = [await gen.__anext__(), await gen.__anext__()]
        hub.publish(MessageEvent(EventKind.CREATE, "m1", {"id": "m1", "text": "hi"}))
        frames.append(await gen.__anext__())
        await gen.aclose()
        return frames, hub.size

    frames, size = asyncio.run(scenario())
    assert frames[0] == OPEN_FRAME
    assert _data(frames[1]) == {"type": "init", "messages": [{"id": "old"}]}
    assert _data(frames[2])["id"] == "m1"
    assert size == 0


def test_stream_endpoint_backfills_then_attaches():
    db = SessionLocal()
    try:
        seeded = ChatService(db, BroadcastHub()).post_message("ann", "earlier", group="lobby")
    finally:
        db.close()

    async def scenario():
        hub = BroadcastHub()
        resp = await message_stream(group="lobby", backfill=10, hub=hub, identity=None)
        assert hub.size == 1
        body = resp.body_iterator
        frames = [await body.__anext__(), await body.__anext__()]
        hub.publish(
            MessageEvent(EventKind.DELETE, seeded.id, group="lobby")
        )
        frames.append(await body.__anext__())
        await body.aclose()
        return resp, frames, hub.size

    resp, frames, size = asyncio.run(scenario())
    assert resp.media_type == "text/event-stream"
    assert resp.headers["cache-control"] == "no-cache"
    assert frames[0] == OPEN_FRAME
    init = _data(frames[1])
    assert init["type"] == "init"
    assert [m["text"] for m in init["messages"]] == ["earlier"]
    assert _data(frames[2]) == {"type": "delete", "id": seeded.id}
    assert size == 0


def test_stream_endpoint_rejects_when_hub_full():
    async def scenario():
        hub = BroadcastHub(max_subscribers=1)
        hub.subscribe(FakeTransport())
        await message_stream(group=None, backfill=0, hub=hub, identity=None)

    with pytest.raises(HTTPException) as exc:
        asyncio.run(scenario())
    assert exc.value.status_code == 503


def test_heartbeat_and_reap_loops():
    async def scenario():
        hub = BroadcastHub()
        t = FakeTransport()
        hub.subscribe(t)
        tasks = [
            asyncio.create_task(heartbeat_loop(hub, 0.01)),
        ]
        await asyncio.sleep(0.05)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        beats = list(t.frames)

        reaper = asyncio.create_task(reap_loop(hub, 0.01, max_idle=0.0))
        await asyncio.sleep(0.05)
        reaper.cancel()
        await asyncio.gather(reaper, return_exceptions=True)
        return beats, hub.size, t.closed

    beats, size, closed = asyncio.run(scenario())
    assert beats and all(f == KEEPALIVE_FRAME for f in beats)
    assert size == 0 and closed


def test_stream_endpoint_drops_subscriber_on_late_overflow():
    async def scenario():
        hub = BroadcastHub()
        await message_stream(group=None, backfill=0, hub=hub, identity=None)
        assert hub.size == 1

        def publish_twice():
            hub.publish(MessageEvent(EventKind.CREATE, "m1", {"id": "m1"}))
            hub.publish(MessageEvent(EventKind.CREATE, "m2", {"id": "m2"}))

        w = threading.Thread(target=publish_twice)
        w.start()
        w.join()
        await asyncio.sleep(0.01)
        return hub.size

    settings.SSE_QUEUE_SIZE = 1
    try:
        assert asyncio.run(scenario()) == 0
    finally:
        settings.SSE_QUEUE_SIZE = 100


def test_stream_backfill_stays_inside_default_window():
    db = SessionLocal()
    try:
        db.add(
            models.Message(
                text="two days old",
                sender="seed",
                created_at=datetime.utcnow() - timedelta(hours=48),
            )
        )
        db.commit()
        ChatService(db, BroadcastHub()).post_message("ann", "recent")
    finally:
        db.close()

    async def scenario():
        hub = BroadcastHub()
        resp = await message_stream(group=None, backfill=50, hub=hub, identity=None)
        body = resp.body_iterator
        frames = [await body.__anext__(), await body.__anext__()]
        await body.aclose()
        return frames

    frames = asyncio.run(scenario())
    assert [m["text"] for m in _data(frames[1])["messages"]] == ["recent"]
