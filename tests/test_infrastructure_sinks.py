from datetime import datetime, timezone

import pytest

from fleet_drift.domain.models import Classification, ClassificationCacheEntry
from fleet_drift.infrastructure import database, slack_notifier
from fleet_drift.infrastructure.database import PostgresCacheStore
from fleet_drift.infrastructure.slack_notifier import SlackWebhookSink

CACHED_AT = datetime(2026, 10, 1, tzinfo=timezone.utc)


class FakeCursor:
    def __init__(self, conn):
        self.conn = conn

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, sql, params=None):
        self.conn.executed.append((" ".join(sql.split()), params))

    def fetchone(self):
        return self.conn.rows[0] if self.conn.rows else None

    def fetchall(self):
        return list(self.conn.rows)


class FakeConnection:
    def __init__(self):
        self.executed = []
        self.rows = []
        self.commits = 0
        self.rollbacks = 0

    def cursor(self, cursor_factory=None):
        return FakeCursor(self)

    def commit(self):
        self.commits += 1

    def rollback(self):
        self.rollbacks += 1


class FakePool:
    connection = None

    def __init__(self, minconn, maxconn, dsn):
        self.dsn = dsn

    def getconn(self):
        return FakePool.connection

    def putconn(self, conn):
        pass

    def closeall(self):
        pass


@pytest.fixture
def conn(monkeypatch):
    FakePool.connection = FakeConnection()
    monkeypatch.setattr(database, "ThreadedConnectionPool", FakePool)
    return FakePool.connection


def test_get_queries_by_exact_owner_and_name(conn) -> None:
    conn.rows = [{
        "owner": "acme", "name": "foo", "classification": "fork",
        "languages": ["Go"], "cached_at": CACHED_AT, "version": 1,
    }]

    entry = PostgresCacheStore("dbname=test").get(("acme", "foo"))

    sql, params = conn.executed[0]
    assert "WHERE owner = %s AND name = %s" in sql
    assert params == ("acme", "foo")
    assert entry == ClassificationCacheEntry("acme", "foo", Classification.FORK, CACHED_AT, ("Go",))


def test_put_upserts_and_commits(conn) -> None:
    entry = ClassificationCacheEntry("acme", "foo", Classification.ELIGIBLE, CACHED_AT, ("Go",))

    PostgresCacheStore("dbname=test").put(("acme", "foo"), entry)

    sql, params = conn.executed[0]
    assert "ON CONFLICT (owner, name)" in sql
    assert params == ("acme", "foo", "eligible", ["Go"], CACHED_AT, 1)
    assert conn.commits == 1


def test_put_rejects_entry_for_another_repository(conn) -> None:
    entry = ClassificationCacheEntry("acme", "foo-bar", Classification.ELIGIBLE, CACHED_AT)

    with pytest.raises(ValueError):
        PostgresCacheStore("dbname=test").put(("acme", "foo"), entry)

    assert conn.executed == []


def test_slack_sink_posts_text(monkeypatch) -> None:
    posted = {}

    class Response:
        def raise_for_status(self):
            pass

    def fake_post(url, json, timeout):
        posted.update(url=url, json=json)
        return Response()

    monkeypatch.setattr(slack_notifier.requests, "post", fake_post)

    SlackWebhookSink("https://hooks.example/T1").send("3 repositories drifted")

    assert posted == {"url": "https://hooks.example/T1", "json": {"text": "3 repositories drifted"}}


def test_slack_sink_without_url_does_nothing(monkeypatch) -> None:
    monkeypatch.delenv("SLACK_WEBHOOK_URL", raising=False)
    monkeypatch.setattr(slack_notifier.requests, "post", lambda *a, **k: pytest.fail("should not post"))

    SlackWebhookSink().send("ignored")


def test_failed_write_rolls_back_and_returns_connection(conn, monkeypatch) -> None:
    returned = []
    monkeypatch.setattr(FakePool, "putconn", lambda self, c: returned.append(c))

    def failing_execute(self, sql, params=None):
        raise RuntimeError("connection reset")

    monkeypatch.setattr(FakeCursor, "execute", failing_execute)
    store = PostgresCacheStore("dbname=test")

    with pytest.raises(RuntimeError):
        store.delete(("acme", "foo"))

    assert conn.rollbacks == 1
    assert conn.commits == 0
    assert returned == [conn]
