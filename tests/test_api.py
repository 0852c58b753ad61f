import pytest
from fastapi.testclient import TestClient

from api.main import create_app
from models.enums import ClassifierVerdict
from models.errors import TransientModerationError

from conftest import MEDIA_ID, OWNER, verdict

USER = {"X-User-Id": "user-1"}
ADMIN = {"X-User-Id": "admin-1", "X-User-Role": "admin"}


@pytest.fixture
def client(services):
    return TestClient(create_app(services))


def report(client, reporter_id, reason="spam", **extra):
    return client.post(
        f"/media/{MEDIA_ID}/report",
        json={"reason": reason, **extra},
        headers={"X-User-Id": reporter_id},
    )


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_report_media(client, media):
    response = report(client, "user-1", description="Promo links in description")

    assert response.status_code == 201
    body = response.json()
    assert body["report_count"] == 1
    assert body["report_id"]


def test_report_requires_identity(client, media):
    response = client.post(f"/media/{MEDIA_ID}/report", json={"reason": "spam"})
    assert response.status_code == 401


def test_self_and_duplicate_reports_are_bad_requests(client, media):
    assert report(client, OWNER).status_code == 400

    report(client, "user-1")
    duplicate = report(client, "user-1")
    assert duplicate.status_code == 400
    assert duplicate.json()["message"] == "You have already reported this media"


def test_report_validation(client, media):
    assert report(client, "user-1", reason="boring").status_code == 422
    assert report(client, "user-1", description="x" * 1001).status_code == 422


def test_report_unknown_media(client):
    response = client.post("/media/missing/report", json={"reason": "spam"}, headers=USER)
    assert response.status_code == 404


def test_transient_failure_maps_to_503(client, services, media, monkeypatch):
    def busy(*args, **kwargs):
        raise TransientModerationError("submit_report still conflicting after 3 attempts")

    monkeypatch.setattr(services.reports, "submit_report", busy)

    assert report(client, "user-1").status_code == 503


def test_visibility(client, services, media):
    assert client.get(f"/media/{MEDIA_ID}/visibility").json()["is_visible"] is True

    services.engine.apply_classification(verdict(ClassifierVerdict.REJECTED))

    body = client.get(f"/media/{MEDIA_ID}/visibility").json()
    assert body == {"media_id": MEDIA_ID, "status": "rejected", "is_visible": False}


def test_admin_routes_require_admin_role(client, media):
    assert client.get("/admin/moderation/queue", headers=USER).status_code == 403
    assert client.get("/admin/moderation/queue").status_code == 401
    assert client.get(f"/media/{MEDIA_ID}/reports", headers=USER).status_code == 403


def test_admin_queue_and_summary(client, services, media):
    services.engine.apply_classification(verdict(ClassifierVerdict.FLAGGED, flags=["unclear_content"]))

    queue = client.get("/admin/moderation/queue", headers=ADMIN).json()
    assert queue["pagination"]["total"] == 1
    item = queue["items"][0]
    assert item["record"]["status"] == "under_review"
    assert item["record"]["flags"] == ["unclear_content"]
    assert item["media"]["title"] == "Sunday Worship"

    approved = client.get("/admin/moderation/queue", params={"status": "approved"}, headers=ADMIN).json()
    assert approved["items"] == []

    summary = client.get("/admin/moderation/summary", headers=ADMIN).json()
    assert summary["under_review"] == 1


def test_admin_status_update(client, services, media):
    services.engine.apply_classification(verdict(ClassifierVerdict.FLAGGED))

    response = client.patch(
        f"/admin/moderation/{MEDIA_ID}/status",
        json={"status": "approved", "admin_notes": "Gospel cover, fine"},
        headers=ADMIN,
    )

    assert response.status_code == 200
    body = response.json()
    assert body["previous_status"] == "under_review"
    assert body["record"]["status"] == "approved"
    assert body["record"]["last_transition_by"] == "admin-1"


def test_admin_status_update_errors(client, services, media):
    services.engine.apply_classification(verdict(ClassifierVerdict.CLEAN))

    conflict = client.patch(f"/admin/moderation/{MEDIA_ID}/status", json={"status": "rejected"}, headers=ADMIN)
    pending = client.patch(f"/admin/moderation/{MEDIA_ID}/status", json={"status": "pending"}, headers=ADMIN)
    unknown = client.patch("/admin/moderation/missing/status", json={"status": "approved"}, headers=ADMIN)

    assert conflict.status_code == 409
    assert pending.status_code == 422
    assert unknown.status_code == 404


def test_reset_report_count(client, media):
    report(client, "user-1")

    response = client.post(
        f"/admin/moderation/{MEDIA_ID}/report-count/reset",
        json={"reason": "Coordinated reporting"},
        headers=ADMIN,
    )

    assert response.status_code == 200
    assert response.json()["report_count"] == 0


def test_report_review_flow(client, media):
    report(client, "user-1")
    report(client, "user-2")

    pending = client.get("/admin/reports/pending", headers=ADMIN).json()
    assert pending["pagination"]["total"] == 2
    report_id = pending["reports"][0]["id"]

    reviewed = client.patch(
        f"/admin/reports/{report_id}",
        json={"status": "resolved", "admin_notes": "Removed promo links"},
        headers=ADMIN,
    )
    assert reviewed.status_code == 200
    assert reviewed.json()["reviewed_by"] == "admin-1"

    media_reports = client.get(f"/media/{MEDIA_ID}/reports", headers=ADMIN).json()["reports"]
    assert {r["status"] for r in media_reports} == {"pending", "resolved"}

    assert client.patch("/admin/reports/missing", json={"status": "resolved"}, headers=ADMIN).status_code == 404


def test_admin_activity(client, services, media):
    services.engine.apply_classification(verdict(ClassifierVerdict.FLAGGED))
    client.patch(f"/admin/moderation/{MEDIA_ID}/status", json={"status": "rejected"}, headers=ADMIN)

    activity = client.get(
        "/admin/activity",
        params={"actor_id": "admin-1", "action": "update_moderation_status"},
        headers=ADMIN,
    ).json()

    assert activity["pagination"]["total"] == 1
    entry = activity["entries"][0]
    assert entry["previous_status"] == "under_review"
    assert entry["new_status"] == "rejected"
    assert entry["ip_address"]


def test_stale_pending(client, media):
    response = client.get("/admin/moderation/stale", params={"older_than_minutes": 5}, headers=ADMIN)

    assert response.status_code == 200
    assert response.json()["items"] == []
