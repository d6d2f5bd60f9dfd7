import pytest
from fastapi.testclient import TestClient

from config import AppConfig, CacheConfig, PollingConfig
from core.models import Record
from main import create_app
from services import build_services


def make_job(job_id, **fields):
    """Helper to build a job Record with sane defaults."""
    data = {"_kp_job_id": job_id, "job_status": "Entered", "_kf_trucks_id": ""}
    data.update(fields)
    return Record(id=job_id, field_data=data)


def make_config(**polling):
    return AppConfig(
        cache=CacheConfig(persist=False),
        polling=PollingConfig(auto_start=False, **polling),
    )


@pytest.fixture
def services(source):
    source.records = [make_job("356001"), make_job("2", _kf_trucks_id="5")]
    return build_services(make_config(), source=source)


@pytest.fixture
def client(services):
    with TestClient(create_app(services=services)) as c:
        yield c


@pytest.fixture
def polled(client):
    assert client.post("/api/polling/poll").json()["success"]
    return client


def alert_ids(client):
    return [a["id"] for a in client.get("/api/alerts").json()["alerts"]]


# ------- alerts -------

def test_list_alerts(polled):
    body = polled.get("/api/alerts").json()

    assert body["success"]
    assert body["total"] == 2
    assert body["stats"]["high"] == 1
    assert body["stats"]["medium"] == 1
    assert body["stale"] is False
    assert body["alerts"][0]["severity"] == "HIGH"
    assert body["alerts"][0]["record_id"] == "356001"


def test_list_alerts_filters(polled):
    body = polled.get("/api/alerts", params={"severity": "medium"}).json()
    assert [a["rule_id"] for a in body["alerts"]] == ["truck-without-driver"]

    assert polled.get("/api/alerts", params={"severity": "urgent"}).status_code == 400


def test_acknowledge_alert(polled):
    alert_id = alert_ids(polled)[0]

    resp = polled.post(f"/api/alerts/{alert_id}/acknowledge", json={"acknowledgedBy": "dispatch"})

    assert resp.status_code == 200
    assert resp.json() == {"success": True}
    alert = polled.get("/api/alerts").json()["alerts"][0]
    assert alert["acknowledged"] is True
    assert alert["acknowledged_by"] == "dispatch"


def test_acknowledge_without_body(polled):
    alert_id = alert_ids(polled)[0]

    assert polled.post(f"/api/alerts/{alert_id}/acknowledge").status_code == 200


def test_unknown_alert_is_404(polled):
    resp = polled.post("/api/alerts/alert_missing/acknowledge", json={})

    assert resp.status_code == 404
    assert resp.json()["success"] is False

    assert polled.post("/api/alerts/alert_missing/dismiss").status_code == 404


def test_dismiss_alert(polled):
    alert_id = alert_ids(polled)[0]

    assert polled.post(f"/api/alerts/{alert_id}/dismiss", json={"dismissedBy": "ops"}).status_code == 200
    assert alert_id not in alert_ids(polled)
    assert polled.post(f"/api/alerts/{alert_id}/dismiss").status_code == 404


def test_bulk_actions(polled):
    first, second = alert_ids(polled)

    acked = polled.post("/api/alerts/bulk/acknowledge", json={"alertIds": [first, "nope"]}).json()
    assert acked["acknowledged"] == 1
    assert acked["failed_ids"] == ["nope"]

    dismissed = polled.post("/api/alerts/bulk/dismiss", json={"alertIds": [first, second]}).json()
    assert dismissed["dismissed"] == 2
    assert polled.get("/api/alerts").json()["total"] == 0


def test_alert_stats_and_history(polled):
    stats = polled.get("/api/alerts/stats").json()
    assert stats["total"] == 2
    assert stats["rules_count"] == 6

    history = polled.get("/api/alerts/history").json()
    assert history["count"] == 2
    assert {h["action"] for h in history["history"]} == {"created"}

    assert polled.get("/api/alerts/priority").json()["alert"]["severity"] == "HIGH"
    assert polled.get("/api/alerts/rules").json()["count"] == 6


def test_dedup_window(polled):
    assert polled.post("/api/alerts/dedup/window", json={"milliseconds": 1000}).json()["window_ms"] == 1000
    assert polled.get("/api/alerts/dedup").json()["window_ms"] == 1000
    assert polled.post("/api/alerts/dedup/window", json={"milliseconds": -5}).status_code == 422


# ------- jobs -------

def test_get_job(polled):
    body = polled.get("/api/jobs/356001").json()

    assert body["job"]["fieldData"]["job_status"] == "Entered"
    assert [a["rule_id"] for a in body["alerts"]] == ["missing-truck-assignment"]

    assert polled.get("/api/jobs/nope").status_code == 404


def test_list_jobs(polled):
    body = polled.get("/api/jobs").json()

    assert body["total"] == 2
    assert polled.get("/api/jobs", params={"status": "Completed"}).json()["total"] == 0


def test_changes_and_history(polled, source):
    source.records = [make_job("356001", _kf_trucks_id="7")]
    polled.post("/api/polling/poll")

    changes = polled.get("/api/jobs/changes").json()
    assert changes["summary"]["updated_count"] == 1
    assert changes["summary"]["deleted_count"] == 1
    assert changes["analysis"]["assignment_changes"] == 1

    history = polled.get("/api/jobs/356001/history").json()
    assert [h["change_type"] for h in history["history"]] == ["updated", "new"]


def test_changes_before_first_poll(client):
    assert client.get("/api/jobs/changes").json()["summary"] is None


def test_cache_endpoints(polled):
    assert polled.get("/api/jobs/cache/stats").json()["cache"]["size"] == 2
    assert polled.post("/api/jobs/cache/clean").json()["removed"] == 0


# ------- export -------

def test_export_alerts_csv(polled):
    resp = polled.get("/api/export/alerts")

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/csv")
    lines = resp.text.splitlines()
    assert lines[0].startswith("id,rule_id,severity,title,message,record_id")
    assert len(lines) == 3


def test_export_jobs_json(polled):
    resp = polled.get("/api/export/jobs", params={"format": "json"})

    assert {j["id"] for j in resp.json()} == {"356001", "2"}


def test_export_rejects_unknown_format(polled):
    assert polled.get("/api/export/alerts", params={"format": "xml"}).status_code == 400


# ------- polling & health -------

def test_polling_status_and_health(polled):
    status = polled.get("/api/polling/status").json()
    assert status["status"] == "stopped"
    assert status["stats"]["successful_polls"] == 1

    health = polled.get("/api/polling/health").json()
    assert health["status"] == "unhealthy"
    assert health["success_rate"] == 100.0


def test_failed_poll_marks_responses_stale(polled, source):
    source.error = RuntimeError("FileMaker down")

    assert polled.post("/api/polling/poll").json()["success"] is False

    body = polled.get("/api/alerts").json()
    assert body["total"] == 2
    assert body["stale"] is True


def test_app_health(polled):
    body = polled.get("/health").json()

    assert body["alerts"]["total"] == 2
    assert body["cache"]["size"] == 2
    assert "polling" in body


def test_polling_disabled_returns_503(source):
    services = build_services(make_config(enabled=False), source=source)

    with TestClient(create_app(services=services)) as c:
        assert c.post("/api/polling/poll").status_code == 503
        assert c.get("/health").json()["status"] == "healthy"
