"""
Tests for in-app notifications (services/notification.py + notification_bp).
"""

import pytest

from npd_tracker.core.exceptions import NotFoundError
from npd_tracker.models import db
from npd_tracker.models.notification import Notification
from npd_tracker.services.notification import NotificationService
from tests.conftest import auth_headers


def _notify(user, title="Halo", type="info"):
    notif = NotificationService.create(user=user, type=type, title=title, message="Pesan")
    db.session.commit()
    return notif


class TestService:
    def test_notify_roles_excludes_actor_and_inactive(self, users):
        users["bendahara"].is_active = False
        db.session.flush()
        created = NotificationService.notify_roles(
            users["verifikator"].organization_id, ("verifikator", "bendahara", "admin"),
            exclude_user_id=users["admin"].id, type="info", title="x",
        )
        assert [n.user_id for n in created] == [users["verifikator"].id]

    def test_mark_read_foreign_notification(self, users):
        notif = _notify(users["pptk"])
        with pytest.raises(NotFoundError):
            NotificationService.mark_read(notif.id, users["viewer"].id)


class TestApi:
    def test_list_and_unread_count(self, client, users):
        _notify(users["pptk"], "satu")
        _notify(users["pptk"], "dua")
        _notify(users["viewer"], "lain")
        headers = auth_headers(users["pptk"])

        res = client.get("/api/v1/notifications", headers=headers)
        body = res.get_json()
        assert body["total"] == 2
        assert [n["title"] for n in body["items"]] == ["dua", "satu"]
        assert body["unread_count"] == 2

        res = client.get("/api/v1/notifications/unread-count", headers=headers)
        assert res.get_json() == {"unread_count": 2}

    def test_mark_read(self, client, users):
        notif = _notify(users["pptk"])
        res = client.patch(f"/api/v1/notifications/{notif.id}/read", headers=auth_headers(users["pptk"]))
        assert res.status_code == 200
        assert res.get_json()["is_read"] is True

        res = client.get("/api/v1/notifications?unread_only=true", headers=auth_headers(users["pptk"]))
        assert res.get_json()["total"] == 0

    def test_cannot_mark_someone_elses(self, client, users):
        notif = _notify(users["pptk"])
        res = client.post(f"/api/v1/notifications/{notif.id}/read", headers=auth_headers(users["viewer"]))
        assert res.status_code == 404
        db.session.expire_all()
        assert db.session.get(Notification, notif.id).is_read is False

    def test_read_all(self, client, users):
        for i in range(3):
            _notify(users["bendahara"], f"n{i}")
        _notify(users["pptk"])
        res = client.post("/api/v1/notifications/read-all", headers=auth_headers(users["bendahara"]))
        assert res.get_json() == {"marked_read": 3}
        assert NotificationService.unread_count(users["pptk"].id) == 1

    def test_requires_login(self, client):
        assert client.get("/api/v1/notifications").status_code == 401
