import sqlite3
import time

import pytest

from alerts import AlertEngine, default_rules
from core.cache import RecordCache
from core.detector import ChangeDetector
from core.exceptions import FetchError
from core.models import Record
from db import SQLiteStore
from services import EventBus, Poller
from services.poller import is_terminal


def make_job(job_id, **fields):
    """Helper to build a job Record with sane defaults."""
    data = {"_kp_job_id": job_id, "job_status": "Entered", "_kf_trucks_id": ""}
    data.update(fields)
    return Record(id=job_id, field_data=data)


class Recorder:
    """Collects (event, payload) pairs from an EventBus."""
    def __init__(self, bus):
        self.events = []
        bus.on("*", lambda event, payload: self.events.append((event, payload)))

    def names(self):
        return [name for name, _ in self.events]

    def payload(self, name):
        return next(p for n, p in self.events if n == name)


@pytest.fixture
def pipeline(source, clock):
    cache = RecordCache(ttl_sec=300, clock=clock)
    engine = AlertEngine(rules=default_rules(), clock=clock)
    detector = ChangeDetector(cache)
    bus = EventBus()
    poller = Poller(source, engine, detector, events=bus, interval_sec=30, batch_size=50, clock=clock)
    return poller, engine, cache, detector, Recorder(bus)


def test_terminal_statuses():
    assert is_terminal(make_job("1", job_status="DELETED"))
    assert is_terminal(make_job("1", job_status=""))
    assert is_terminal(Record(id="1", field_data={}))
    assert not is_terminal(make_job("1"))


def test_successful_poll(pipeline, source):
    poller, engine, cache, detector, recorder = pipeline
    source.records = [
        make_job("356001"),
        make_job("2", job_status="DELETED"),
        make_job("3", job_status=""),
    ]

    result = poller.poll()

    assert result["success"]
    assert result["job_count"] == 1
    assert result["alert_result"]["new"] == 1
    assert result["changes"]["new_count"] == 1
    assert cache.has("356001")
    assert not cache.has("2")

    assert recorder.names() == ["poll", "newAlerts", "changes"]
    assert recorder.payload("newAlerts")["count"] == 1
    assert recorder.payload("poll")["job_count"] == 1

    stats = poller.get_stats()
    assert stats["total_polls"] == 1
    assert stats["successful_polls"] == 1
    assert stats["total_jobs_processed"] == 1
    assert stats["total_alerts_generated"] == 1
    assert stats["last_poll_time"] is not None


def test_resolved_alerts_event(pipeline, source):
    poller, engine, cache, detector, recorder = pipeline
    source.records = [make_job("999")]
    poller.poll()

    source.records = [make_job("999", job_status="Completed", _kf_trucks_id="42")]
    poller.poll()

    assert recorder.payload("resolvedAlerts")["count"] == 1
    assert engine.get_statistics()["total"] == 0


def test_failed_poll_keeps_state(pipeline, source, clock):
    poller, engine, cache, detector, recorder = pipeline
    source.records = [make_job("356001")]
    poller.poll()

    source.error = FetchError("FileMaker unreachable")
    clock.advance(1)
    result = poller.poll()

    assert result == {"success": False, "error": "FileMaker unreachable"}
    assert engine.get_statistics()["total"] == 1
    assert cache.has("356001")
    assert recorder.payload("error")["error"] == "FileMaker unreachable"

    stats = poller.get_stats()
    assert stats["failed_polls"] == 1
    assert stats["error_count"] == 1
    assert stats["last_error"]["message"] == "FileMaker unreachable"

    health = poller.get_health()
    assert health["stale"]
    assert health["success_rate"] == 50.0


def test_unexpected_error_is_contained(pipeline, source):
    poller, *_ = pipeline
    source.error = RuntimeError("bad payload")

    result = poller.poll()

    assert not result["success"]
    assert poller.get_stats()["failed_polls"] == 1


def test_empty_batch_skips_change_detection(pipeline, source):
    poller, engine, cache, detector, recorder = pipeline

    result = poller.poll()

    assert result["success"]
    assert result["changes"] is None
    assert detector.last_summary is None


def test_manual_poll_skipped_while_cycle_runs(pipeline, source):
    poller, *_ = pipeline
    poller._cycle_lock.acquire()
    try:
        assert poller.poll() == {"success": False, "skipped": True}
    finally:
        poller._cycle_lock.release()

    assert source.calls == 0


def test_health_and_staleness(pipeline, source, clock):
    poller, *_ = pipeline
    assert poller.get_health()["status"] == "unhealthy"

    poller._running = True
    source.records = [make_job("1")]
    poller.poll()
    clock.advance(10)

    health = poller.get_health()
    assert health["status"] == "healthy"
    assert health["time_since_last_poll"] == 10000
    assert not health["stale"]

    clock.advance(50)
    health = poller.get_health()
    assert health["status"] == "unhealthy"
    assert health["stale"]
    poller._running = False


def test_low_success_rate_is_unhealthy(pipeline, source, clock):
    poller, *_ = pipeline
    poller._running = True
    source.records = [make_job("1")]
    poller.poll()
    source.error = FetchError("down")
    poller.poll()
    source.error = None
    poller.poll()

    health = poller.get_health()
    assert health["success_rate"] == pytest.approx(66.67)
    assert health["status"] == "unhealthy"
    assert not health["stale"]
    poller._running = False


def test_acknowledge_and_dismiss_emit_on_success(pipeline, source):
    poller, engine, cache, detector, recorder = pipeline
    source.records = [make_job("1"), make_job("2")]
    poller.poll()
    first, second = engine.get_active_alerts()

    assert poller.acknowledge_alert(first.id, "ops")
    assert poller.dismiss_alert(second.id, "ops")
    assert not poller.dismiss_alert("alert_missing", "ops")

    assert recorder.payload("alertAcknowledged") == {"alert_id": first.id, "acknowledged_by": "ops"}
    assert recorder.payload("alertDismissed") == {"alert_id": second.id, "dismissed_by": "ops"}
    assert recorder.names().count("alertDismissed") == 1


def test_reset_stats(pipeline, source):
    poller, *_ = pipeline
    poller.poll()

    poller.reset_stats()

    assert poller.get_stats()["total_polls"] == 0
    assert poller.get_stats()["poll_count"] == 0


def test_start_runs_first_cycle_and_stop_closes_session(source):
    engine = AlertEngine(rules=default_rules())
    bus = EventBus()
    recorder = Recorder(bus)
    poller = Poller(source, engine, events=bus, interval_sec=60)
    source.records = [make_job("1")]

    assert poller.start() == {"status": "started"}
    assert poller.start() == {"status": "already_running"}

    deadline = time.monotonic() + 5
    while source.calls == 0 and time.monotonic() < deadline:
        time.sleep(0.01)

    result = poller.stop(timeout=5)

    assert source.calls == 1
    assert result["status"] == "stopped"
    assert source.closed == 1
    assert not poller.is_running
    assert "started" in recorder.names()
    assert recorder.names()[-1] == "stopped"
    assert poller.stop() == {"status": "not_running"}


class BrokenDetector:
    def detect_changes(self, records):
        raise RuntimeError("detector bug")


def test_failing_change_detection_still_reports_alerts(source, clock):
    engine = AlertEngine(rules=default_rules(), clock=clock)
    bus = EventBus()
    recorder = Recorder(bus)
    poller = Poller(source, engine, BrokenDetector(), events=bus, clock=clock)
    source.records = [make_job("1")]

    result = poller.poll()

    assert result["success"]
    assert result["changes"] is None
    assert recorder.names() == ["error", "poll", "newAlerts"]
    assert recorder.payload("error")["stage"] == "change_detection"
    assert recorder.payload("newAlerts")["count"] == 1

    stats = poller.get_stats()
    assert stats["successful_polls"] == 1
    assert stats["failed_polls"] == 0
    assert stats["total_alerts_generated"] == 1
    assert stats["detection_failures"] == 1


def test_unreadable_cache_row_does_not_break_polling(tmp_path, source, clock):
    db_path = str(tmp_path / "cache.db")
    store = SQLiteStore(db_path)
    RecordCache(store=store, clock=clock).set("1", make_job("1"))
    with sqlite3.connect(db_path) as conn:
        conn.execute("UPDATE records SET data = '{not json'")

    engine = AlertEngine(rules=default_rules(), clock=clock)
    bus = EventBus()
    recorder = Recorder(bus)
    poller = Poller(source, engine, ChangeDetector(RecordCache(store=store, clock=clock)), events=bus, clock=clock)
    source.records = [make_job("1")]

    result = poller.poll()

    assert result["success"]
    assert result["changes"]["new_count"] == 1
    assert recorder.names() == ["poll", "newAlerts", "changes"]
    assert poller.get_stats()["detection_failures"] == 0
