from fastapi.testclient import TestClient
from sqlalchemy import inspect
from chatstream.infra.db import Base, engine
from chatstream.main import app


def test_tables_exist():
    Base.metadata.create_all(bind=engine)
    insp = inspect(engine)
    tables = set(insp.get_table_names())
    for t in ("messages", "users"):
        assert t in tables, f"Missing table: {t}"


def test_health_reports_subscribers():
    client = TestClient(app)
    r = client.get("/health")
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "ok"
    assert body["subscribers"] == app.state.hub.size
