from datetime import datetime, timedelta

from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from chatstream.infra.db import Base, engine, SessionLocal
from chatstream.main import app
from chatstream import models
from fakes import FakeTransport


def setup_function():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    app.state.hub.close_all()


def teardown_function():
    app.state.hub.close_all()


def _attach(group=None):
    t = FakeTransport()
    app.state.hub.subscribe(t, group=group)
    return t


def test_post_message_persists_then_broadcasts():
    client = TestClient(app)
    t = _attach()
    r = client.post(
        "/messages", json={"text": "  hello  ", "sender": "ann", "group": "lobby"}
    )
    assert r.status_code == 201
    body = r.json()
    assert body["text"] == "hello"
    assert body["sender"] == "ann"
    assert body["group"] == "lobby"

    (evt,) = t.events()
    assert evt["type"] == "create"
    assert evt["id"] == body["id"]
    assert evt["message"]["text"] == "hello"

    db = SessionLocal()
    try:
        assert db.get(models.Message, body["id"]) is not None
    finally:
        db.close()


def test_anonymous_sender_and_attachment_only():
    client = TestClient(app)
    r = client.post("/messages", json={"attachment_url": "https://cdn.test/cat.png"})
    assert r.status_code == 201
    assert r.json()["sender"] == "Anonymous"
    assert r.json()["text"] is None


def test_validation_errors_never_reach_the_hub():
    client = TestClient(app)
    t = _attach()
    assert client.post("/messages", json={}).status_code == 422
    assert client.post("/messages", json={"text": "   "}).status_code == 422
    assert client.post("/messages", json={"text": "x" * 1001}).status_code == 422
    r = client.post("/messages", json={"text": "hi", "reply_to": "nope"})
    assert r.status_code == 422
    assert t.frames == []


def test_edit_and_delete_lifecycle():
    client = TestClient(app)
    t = _attach()
    mid = client.post("/messages", json={"text": "hi", "sender": "ann"}).json()["id"]

    r = client.patch(f"/messages/{mid}", json={"text": "hi!"})
    assert r.status_code == 200
    assert r.json()["edited"] is True
    assert r.json()["text"] == "hi!"

    r = client.delete(f"/messages/{mid}")
    assert r.status_code == 200
    assert r.json()["deleted"] is True
    assert "text" not in r.json() or r.json()["text"] is None

    assert [e["type"] for e in t.events()] == ["create", "edit", "delete"]
    assert t.events()[-1] == {"type": "delete", "id": mid}

    # already deleted: not found, no second delete event
    assert client.delete(f"/messages/{mid}").status_code == 404
    assert client.patch(f"/messages/{mid}", json={"text": "again"}).status_code == 404
    assert client.get(f"/messages/{mid}").status_code == 404
    assert len(t.events()) == 3


def test_edit_missing_message_is_not_found():
    client = TestClient(app)
    assert client.patch("/messages/nope", json={"text": "x"}).status_code == 404
    assert client.delete("/messages/nope").status_code == 404


def test_delete_checks_declared_owner():
    client = TestClient(app)
    mid = client.post("/messages", json={"text": "hi", "sender": "ann"}).json()["id"]
    assert client.delete(f"/messages/{mid}", params={"actor": "bob"}).status_code == 403
    assert client.delete(f"/messages/{mid}", params={"actor": "ann"}).status_code == 200


def test_group_subscriber_only_sees_its_group():
    client = TestClient(app)
    lobby = _attach(group="lobby")
    other = _attach(group="other")
    client.post("/messages", json={"text": "hi", "group": "lobby"})
    assert len(lobby.events()) == 1
    assert other.events() == []


def test_persistence_failure_skips_broadcast(monkeypatch):
    client = TestClient(app)
    t = _attach()

    def boom(self):
        raise OperationalError("INSERT INTO messages", {}, Exception("disk I/O error"))

    monkeypatch.setattr(Session, "commit", boom)
    r = client.post("/messages", json={"text": "lost"})
    assert r.status_code == 500
    assert t.frames == []
    monkeypatch.undo()

    assert client.get("/messages").json()["count"] == 0


def _seed(db, text, minutes_ago, group=None, deleted=False):
    now = datetime.utcnow()
    m = models.Message(
        text=text,
        sender="seed",
        group_tag=group,
        created_at=now - timedelta(minutes=minutes_ago),
        deleted=deleted,
        deleted_at=now if deleted else None,
    )
    db.add(m)
    db.commit()
    return m


def test_backfill_window_limit_and_order():
    db = SessionLocal()
    try:
        _seed(db, "ancient", minutes_ago=60 * 48)
        _seed(db, "one", minutes_ago=30)
        _seed(db, "two", minutes_ago=20, group="lobby")
        _seed(db, "gone", minutes_ago=15, deleted=True)
        _seed(db, "three", minutes_ago=10)
    finally:
        db.close()

    client = TestClient(app)
    body = client.get("/messages").json()
    assert [m["text"] for m in body["items"]] == ["one", "two", "three"]

    body = client.get("/messages", params={"limit": 2}).json()
    assert [m["text"] for m in body["items"]] == ["two", "three"]

    body = client.get("/messages", params={"limit": 2, "order": "desc"}).json()
    assert [m["text"] for m in body["items"]] == ["three", "two"]

    body = client.get("/messages", params={"group": "lobby"}).json()
    assert [m["text"] for m in body["items"]] == ["one", "two", "three"]

    body = client.get("/messages", params={"group": "other"}).json()
    assert [m["text"] for m in body["items"]] == ["one", "three"]

    since = (datetime.utcnow() - timedelta(days=3)).isoformat()
    body = client.get("/messages", params={"since": since}).json()
    assert body["count"] == 4

    body = client.get("/messages", params={"include_deleted": True}).json()
    tomb = [m for m in body["items"] if m["deleted"]]
    assert len(tomb) == 1 and tomb[0]["text"] is None

    assert client.get("/messages", params={"limit": 10_000}).status_code == 422
    assert client.get("/messages", params={"order": "sideways"}).status_code == 422


def test_group_backfill_and_live_feed_cover_global_messages():
    db = SessionLocal()
    try:
        _seed(db, "global before", minutes_ago=5)
        _seed(db, "lobby before", minutes_ago=4, group="lobby")
        _seed(db, "other before", minutes_ago=3, group="other")
    finally:
        db.close()

    client = TestClient(app)
    history = client.get("/messages", params={"group": "lobby"}).json()
    lobby = _attach(group="lobby")
    client.post("/messages", json={"text": "global after"})
    client.post("/messages", json={"text": "other after", "group": "other"})

    seen = [m["text"] for m in history["items"]] + [
        e["message"]["text"] for e in lobby.events()
    ]
    assert seen == ["global before", "lobby before", "global after"]
