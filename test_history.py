"""Tests for the history store and retention policy."""

import datetime
import sqlite3

import pytest

from eqplot import config
from eqplot.history import ConnectionState, HistoryStore
from eqplot.retention import RetentionPolicy, compute_cutoff, utc_now


class FakeClock:
    """Clock that only moves when told to, or by `tick` on every call."""

    def __init__(self, start=datetime.datetime(2024, 1, 1, 12, 0, 0), tick=datetime.timedelta(0)):
        self.current = start
        self.tick = tick

    def __call__(self):
        now = self.current
        self.current += self.tick
        return now

    def advance(self, **kwargs):
        self.current += datetime.timedelta(**kwargs)


@pytest.fixture
def store(tmp_path):
    with HistoryStore(tmp_path / "history.db") as history:
        yield history


@pytest.fixture
def unavailable_store(tmp_path):
    return HistoryStore(tmp_path / "missing" / "history.db")


def test_create_then_list(store):
    call_time = utc_now()
    assert store.create("/tmp/eq.png", "y = x^2")
    assert store.create(config.TEXT_QUERY_SOURCE, "sin(x)")

    records = store.list_all()
    assert [(r.source_path, r.query_text) for r in records] == [
        ("/tmp/eq.png", "y = x^2"),
        (config.TEXT_QUERY_SOURCE, "sin(x)"),
    ]
    assert all(r.created_at >= call_time for r in records)
    assert records[1].is_text_query
    assert not records[0].is_text_query


def test_created_strictly_increases_on_a_stalled_clock(tmp_path):
    with HistoryStore(tmp_path / "history.db", clock=FakeClock()) as history:
        for i in range(5):
            assert history.create(config.TEXT_QUERY_SOURCE, f"x + {i}")
        records = history.list_all()

    stamps = [r.created_at for r in records]
    assert all(b > a for a, b in zip(stamps, stamps[1:]))
    assert [r.query_text for r in records] == [f"x + {i}" for i in range(5)]


def test_records_survive_reopen(tmp_path):
    path = tmp_path / "history.db"
    with HistoryStore(path) as history:
        history.create(config.TEXT_QUERY_SOURCE, "x^2")
    with HistoryStore(path) as history:
        assert [r.query_text for r in history.list_all()] == ["x^2"]

    with sqlite3.connect(path) as connection:
        assert connection.execute("PRAGMA user_version").fetchone()[0] == 1


def test_newer_schema_version_is_refused(tmp_path):
    path = tmp_path / "history.db"
    with sqlite3.connect(path) as connection:
        connection.execute("PRAGMA user_version = 99")

    history = HistoryStore(path)
    assert history.state is ConnectionState.FAILED
    assert not history.is_connected()


def test_to_dict(store):
    store.create("/img/a.png", "x + 1")
    record = store.list_all()[0]
    data = record.to_dict()
    assert data["file_path"] == "/img/a.png"
    assert data["question"] == "x + 1"
    assert data["id"] == record.id
    assert len(data["created"]) == len("2024-01-01 12:00:00")


def test_delete_older_than(tmp_path):
    clock = FakeClock()
    with HistoryStore(tmp_path / "history.db", clock=clock) as history:
        history.create(config.TEXT_QUERY_SOURCE, "old")
        clock.advance(days=20)
        history.create(config.TEXT_QUERY_SOURCE, "recent")

        assert history.delete_older_than(15) == 1
        assert [r.query_text for r in history.list_all()] == ["recent"]


def test_delete_older_than_zero_removes_everything(tmp_path):
    clock = FakeClock(tick=datetime.timedelta(seconds=1))
    with HistoryStore(tmp_path / "history.db", clock=clock) as history:
        for text in ("a", "b", "c"):
            history.create(config.TEXT_QUERY_SOURCE, text)
        assert history.delete_older_than(0) == 3
        assert history.list_all() == []


def test_delete_older_than_far_past_removes_nothing(store):
    store.create(config.TEXT_QUERY_SOURCE, "x")
    store.create(config.TEXT_QUERY_SOURCE, "2x")
    assert store.delete_older_than(36500) == 0
    assert len(store.list_all()) == 2


def test_delete_older_than_rejects_negative_age(store):
    with pytest.raises(ValueError):
        store.delete_older_than(-1)


def test_delete_all(store):
    for text in ("a", "b"):
        store.create(config.TEXT_QUERY_SOURCE, text)
    assert store.delete_all() == 2
    assert store.list_all() == []


def test_unopenable_database_degrades(unavailable_store):
    assert unavailable_store.state is ConnectionState.FAILED
    assert not unavailable_store.is_connected()
    assert unavailable_store.create(config.TEXT_QUERY_SOURCE, "x") is False
    assert unavailable_store.list_all() == []
    assert unavailable_store.delete_older_than(0) == 0
    assert unavailable_store.delete_all() == 0
    unavailable_store.close()


def test_closed_store_is_disconnected(tmp_path):
    history = HistoryStore(tmp_path / "history.db")
    assert history.state is ConnectionState.CONNECTED
    history.create(config.TEXT_QUERY_SOURCE, "x")
    history.close()

    assert not history.is_connected()
    assert history.create(config.TEXT_QUERY_SOURCE, "y") is False
    assert history.list_all() == []
    assert history.delete_older_than(0) == 0


def test_compute_cutoff():
    now = datetime.datetime(2024, 3, 20, 8, 30)
    assert compute_cutoff(15, now) == datetime.datetime(2024, 3, 5, 8, 30)
    assert compute_cutoff(0, now) == now
    with pytest.raises(ValueError):
        compute_cutoff(-2, now)


def test_retention_policy(tmp_path):
    clock = FakeClock()
    with HistoryStore(tmp_path / "history.db", clock=clock) as history:
        history.create(config.TEXT_QUERY_SOURCE, "old")
        history.create(config.TEXT_QUERY_SOURCE, "older still")
        clock.advance(days=16)

        report = RetentionPolicy(history, max_age_days=15).enforce()
        assert report.store_available
        assert report.deleted == 2
        assert report.cutoff == clock.current - datetime.timedelta(days=15)

        report = RetentionPolicy(history, max_age_days=15).enforce()
        assert report.store_available
        assert report.deleted == 0


def test_retention_policy_reports_unavailable_store(unavailable_store):
    report = RetentionPolicy(unavailable_store).enforce()
    assert report.deleted == 0
    assert not report.store_available


def test_retention_policy_rejects_negative_age(store):
    with pytest.raises(ValueError):
        RetentionPolicy(store, max_age_days=-1)


def test_default_clock_is_utc(store):
    assert abs(store.clock() - utc_now()) < datetime.timedelta(seconds=5)
    store.create(config.TEXT_QUERY_SOURCE, "x")
    record = store.list_all()[0]
    assert record.created_local.tzinfo is not None
    assert record.created_local == record.created_at.replace(tzinfo=datetime.timezone.utc)


def test_delete_older_than_zero_after_clock_steps_back(tmp_path):
    clock = FakeClock(start=datetime.datetime(2024, 10, 27, 1, 59, 59))
    with HistoryStore(tmp_path / "history.db", clock=clock) as history:
        history.create(config.TEXT_QUERY_SOURCE, "before")
        clock.current = datetime.datetime(2024, 10, 27, 1, 0, 0)
        history.create(config.TEXT_QUERY_SOURCE, "after")
        clock.advance(seconds=5)

        assert history.delete_older_than(0) == 2
        assert history.list_all() == []


@pytest.mark.parametrize("days", [1_000_000, 10**12])
def test_delete_older_than_huge_age_removes_nothing(store, days):
    store.create(config.TEXT_QUERY_SOURCE, "x")
    assert store.delete_older_than(days) == 0
    assert [r.query_text for r in store.list_all()] == ["x"]


def test_compute_cutoff_clamps_huge_ages():
    now = datetime.datetime(2024, 3, 20, 8, 30)
    assert compute_cutoff(10**10, now) == datetime.datetime.min
    assert compute_cutoff(10**6) == datetime.datetime.min


def test_retention_policy_with_huge_age(store):
    store.create(config.TEXT_QUERY_SOURCE, "x")
    report = RetentionPolicy(store, max_age_days=1_000_000).enforce()
    assert report.store_available
    assert report.deleted == 0
    assert report.cutoff == datetime.datetime.min
