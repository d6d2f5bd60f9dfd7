import pytest

from alerts import AlertEngine, AlertRule, AlertStatus, Severity, default_rules
from core.models import Record


def make_job(job_id, **fields):
    """Helper to build a job Record with sane defaults."""
    data = {"_kp_job_id": job_id, "job_status": "Entered", "_kf_trucks_id": ""}
    data.update(fields)
    return Record(id=job_id, field_data=data)


def completed_job(job_id):
    return make_job(
        job_id,
        job_status="Completed",
        _kf_trucks_id="42",
        _kf_driver_id="9",
        time_arival="08:00:00",
        time_complete="09:30:00",
    )


def make_rule(rule_id, severity=Severity.HIGH, predicate=lambda r: True, **kwargs):
    return AlertRule(
        id=rule_id,
        name=rule_id.title(),
        severity=severity,
        predicate=predicate,
        message_template=kwargs.pop("message_template", "{id} fired"),
        **kwargs,
    )


@pytest.fixture
def engine(clock):
    return AlertEngine(rules=default_rules(), dedup_window_sec=300, clock=clock)


# ------- evaluation scenarios -------

def test_missing_truck_fires_once(engine):
    result = engine.evaluate_jobs([make_job("356001")])

    assert result.new == 1
    alert = result.new_alerts[0]
    assert alert.rule_id == "missing-truck-assignment"
    assert alert.severity == Severity.HIGH
    assert alert.title == "Missing Truck Assignment"
    assert alert.message == "Job 356001 is Entered but has no truck assigned"
    assert alert.record_id == "356001"
    assert alert.fingerprint == "missing-truck-assignment:356001"

    again = engine.evaluate_jobs([make_job("356001")])
    assert again.new == 0
    assert again.total == 1
    assert again.suppressed == 0


def test_fixed_job_resolves_alert(engine):
    first = engine.evaluate_jobs([make_job("999")])
    assert first.new == 1

    second = engine.evaluate_jobs([completed_job("999")])

    assert second.resolved == 1
    assert second.total == 0
    assert second.resolved_alerts[0].status == AlertStatus.RESOLVED
    assert second.resolved_alerts[0].resolved_at is not None
    assert engine.get_active_alerts() == []


def test_missing_job_resolves_alert(engine):
    engine.evaluate_jobs([make_job("999"), completed_job("1000")])

    result = engine.evaluate_jobs([completed_job("1000")])

    assert result.resolved == 1
    assert result.total == 0


def test_refire_after_resolution_is_suppressed_within_window(engine, clock):
    engine.evaluate_jobs([make_job("999")])
    engine.evaluate_jobs([completed_job("999")])

    clock.advance(10)
    result = engine.evaluate_jobs([make_job("999")])

    assert result.new == 0
    assert result.suppressed == 1
    assert engine.get_statistics()["suppressed"] == 1


def test_suppressed_key_is_not_resolved_again(engine, clock):
    alert = engine.evaluate_jobs([make_job("999")]).new_alerts[0]
    engine.dismiss_alert(alert.id, "ops")

    clock.advance(10)
    result = engine.evaluate_jobs([make_job("999")])

    assert result.suppressed == 1
    assert result.resolved == 0


def test_refire_after_window_creates_new_alert(engine, clock):
    alert = engine.evaluate_jobs([make_job("999")]).new_alerts[0]
    engine.dismiss_alert(alert.id, "ops")

    clock.advance(301)
    result = engine.evaluate_jobs([make_job("999")])

    assert result.new == 1
    assert result.new_alerts[0].id != alert.id


def test_zero_window_never_suppresses(engine):
    engine.set_deduplication_window(0)
    alert = engine.evaluate_jobs([make_job("999")]).new_alerts[0]
    engine.dismiss_alert(alert.id, "ops")

    result = engine.evaluate_jobs([make_job("999")])

    assert result.new == 1


def test_by_severity_counts(engine):
    result = engine.evaluate_jobs([
        make_job("1"),
        make_job("2", _kf_trucks_id="5"),
        make_job("3", job_status="Attempted", _kf_trucks_id="5", _kf_driver_id="8"),
    ])

    assert result.new == 3
    assert result.by_severity == {"LOW": 0, "MEDIUM": 1, "HIGH": 2, "CRITICAL": 0}


# ------- rule errors -------

def test_raising_predicate_counts_as_not_fired(clock):
    def broken(record):
        raise KeyError("job_status")

    engine = AlertEngine(
        rules=[make_rule("broken", predicate=broken), make_rule("ok")],
        clock=clock,
    )

    result = engine.evaluate_jobs([make_job("1")])

    assert [a.rule_id for a in result.new_alerts] == ["ok"]
    assert engine.get_statistics()["rule_errors"] == 1


def test_broken_message_template_counts_as_not_fired(clock):
    engine = AlertEngine(
        rules=[make_rule("bad", message_template=lambda r: 1 / 0)],
        clock=clock,
    )

    result = engine.evaluate_jobs([make_job("1")])

    assert result.new == 0
    assert engine.get_statistics()["rule_errors"] == 1


# ------- state-sensitive dedup -------

def test_state_fields_raise_fresh_alert_on_value_change(clock):
    rule = make_rule("status-watch", state_fields=("job_status",))
    engine = AlertEngine(rules=[rule], clock=clock)

    first = engine.evaluate_jobs([make_job("1", job_status="Entered")])
    assert first.new_alerts[0].fingerprint == "status-watch:1:Entered"

    second = engine.evaluate_jobs([make_job("1", job_status="Attempted")])

    assert second.new == 1
    assert second.resolved == 1
    assert second.new_alerts[0].fingerprint == "status-watch:1:Attempted"


# ------- priority order -------

def test_active_alerts_sorted_by_severity(clock):
    engine = AlertEngine(
        rules=[
            make_rule("low", Severity.LOW),
            make_rule("high", Severity.HIGH),
            make_rule("critical", Severity.CRITICAL),
            make_rule("medium", Severity.MEDIUM),
        ],
        clock=clock,
    )

    engine.evaluate_jobs([make_job("1")])

    severities = [a.severity for a in engine.get_active_alerts()]
    assert severities == [Severity.CRITICAL, Severity.HIGH, Severity.MEDIUM, Severity.LOW]
    assert engine.get_highest_priority_alert().rule_id == "critical"


def test_same_severity_keeps_creation_order(clock):
    engine = AlertEngine(rules=[make_rule("high", Severity.HIGH)], clock=clock)

    engine.evaluate_jobs([make_job("1")])
    engine.evaluate_jobs([make_job("1"), make_job("2")])
    engine.evaluate_jobs([make_job("1"), make_job("2"), make_job("3")])

    assert [a.record_id for a in engine.get_active_alerts()] == ["1", "2", "3"]


def test_filters_and_limit(clock):
    engine = AlertEngine(
        rules=[make_rule("a", Severity.HIGH), make_rule("b", Severity.LOW)],
        clock=clock,
    )
    engine.evaluate_jobs([make_job("1"), make_job("2")])
    first_high = engine.get_active_alerts(severity=Severity.HIGH)[0]
    engine.acknowledge_alert(first_high.id, "ops")

    assert len(engine.get_active_alerts(severity=Severity.HIGH)) == 2
    assert len(engine.get_active_alerts(rule_id="b")) == 2
    assert [a.id for a in engine.get_active_alerts(acknowledged=True)] == [first_high.id]
    assert len(engine.get_active_alerts(limit=3)) == 3
    assert len(engine.get_alerts_by_severity()["LOW"]) == 2
    assert len(engine.get_alerts_by_severity_level(Severity.LOW)) == 2


# ------- operator actions -------

def test_acknowledge_keeps_alert_active(engine):
    alert = engine.evaluate_jobs([make_job("1")]).new_alerts[0]

    assert engine.acknowledge_alert(alert.id, "dispatcher")

    stored = engine.get_alert(alert.id)
    assert stored.acknowledged
    assert stored.acknowledged_by == "dispatcher"
    assert stored.acknowledged_at is not None
    assert stored.status == AlertStatus.ACTIVE
    assert engine.get_statistics()["total"] == 1


def test_second_acknowledge_keeps_first(engine):
    alert = engine.evaluate_jobs([make_job("1")]).new_alerts[0]
    engine.acknowledge_alert(alert.id, "first")

    assert engine.acknowledge_alert(alert.id, "second")
    assert engine.get_alert(alert.id).acknowledged_by == "first"


def test_unknown_and_terminal_ids_fail(engine):
    alert = engine.evaluate_jobs([make_job("1")]).new_alerts[0]

    assert not engine.acknowledge_alert("alert_missing", "ops")
    assert not engine.dismiss_alert("alert_missing", "ops")

    assert engine.dismiss_alert(alert.id, "ops")
    assert alert.status == AlertStatus.DISMISSED
    assert alert.dismissed_by == "ops"
    assert not engine.dismiss_alert(alert.id, "ops")
    assert not engine.acknowledge_alert(alert.id, "ops")


def test_bulk_acknowledge_and_dismiss(engine):
    result = engine.evaluate_jobs([make_job("a"), make_job("b"), make_job("c")])
    a, b, c = (x.id for x in result.new_alerts)

    acked = engine.bulk_acknowledge([a, b], "user")
    assert acked["acknowledged"] == 2
    assert acked["failed"] == 0
    assert engine.get_statistics()["total"] == 3
    assert engine.get_statistics()["acknowledged"] == 2

    dismissed = engine.bulk_dismiss([c, "alert_missing"], "user")
    assert dismissed["dismissed"] == 1
    assert dismissed["failed_ids"] == ["alert_missing"]
    assert engine.get_statistics()["total"] == 2


def test_clear_alerts_resets_dedup(engine):
    engine.evaluate_jobs([make_job("1")])

    engine.clear_alerts()

    assert engine.get_statistics()["total"] == 0
    assert engine.evaluate_jobs([make_job("1")]).new == 1


# ------- stats & history -------

def test_statistics_shape(engine):
    engine.evaluate_jobs([make_job("1"), make_job("2", _kf_trucks_id="5")])

    stats = engine.get_statistics()

    assert stats["total"] == 2
    assert stats["unacknowledged"] == 2
    assert stats["by_rule"] == {"missing-truck-assignment": 1, "truck-without-driver": 1}
    assert stats["priority_queue_size"] == 2
    assert stats["deduplication_cache_size"] == 2
    assert stats["history_size"] == 2


def test_deduplication_stats(engine, clock):
    engine.evaluate_jobs([make_job("1")])
    clock.advance(2)

    engine.set_deduplication_window(60000)
    stats = engine.get_deduplication_stats()

    assert stats["window_ms"] == 60000
    assert stats["cache_size"] == 1
    assert stats["entries"] == [{"key": "missing-truck-assignment:1", "age_ms": 2000}]


def test_negative_window_rejected(engine):
    with pytest.raises(ValueError):
        engine.set_deduplication_window(-1)


def test_history_records_lifecycle(engine):
    alert = engine.evaluate_jobs([make_job("1")]).new_alerts[0]
    engine.acknowledge_alert(alert.id, "ops")
    engine.evaluate_jobs([])

    history = engine.get_history()

    assert [h.action.value for h in history] == ["resolved", "acknowledged", "created"]
    assert history[1].actor == "ops"
    assert history[0].alert["status"] == "resolved"
    assert history[2].alert["status"] == "active"
