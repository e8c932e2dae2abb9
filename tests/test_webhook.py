"""
Tests for the identity-provider webhook (services/webhook_sync.py + webhook_bp).
"""

import json
import time

import pytest

from npd_tracker.models import db
from npd_tracker.models.organization import Organization, User
from npd_tracker.services.webhook_sync import (
    WebhookVerificationError,
    sign_payload,
    verify_webhook,
)
from tests.conftest import make_user

SECRET = "whsec_dGVzdC13ZWJob29rLXNpZ25pbmctc2VjcmV0"


def _deliver(client, event, *, secret=SECRET, msg_id="msg_1", timestamp=None, signature=None):
    body = json.dumps(event)
    ts = str(int(time.time()) if timestamp is None else timestamp)
    headers = {
        "svix-id": msg_id,
        "svix-timestamp": ts,
        "svix-signature": signature or sign_payload(secret, msg_id, ts, body),
    }
    return client.post("/api/webhooks/clerk", data=body, headers=headers,
                       content_type="application/json")


def _reload_user(clerk_id):
    db.session.expire_all()
    return User.query.filter_by(clerk_user_id=clerk_id).one()


class TestVerification:
    def test_round_trip(self):
        body = b'{"type": "user.created"}'
        sig = sign_payload(SECRET, "msg_x", 1700000000, body)
        headers = {"svix-id": "msg_x", "svix-timestamp": "1700000000", "svix-signature": sig}
        assert verify_webhook(SECRET, headers, body, now=1700000010) == {"type": "user.created"}

    def test_any_listed_signature_may_match(self):
        body = b"{}"
        good = sign_payload(SECRET, "m", 100, body)
        headers = {"svix-id": "m", "svix-timestamp": "100", "svix-signature": f"v1,AAAA {good}"}
        assert verify_webhook(SECRET, headers, body, now=100) == {}

    def test_stale_timestamp(self):
        body = b"{}"
        headers = {"svix-id": "m", "svix-timestamp": "100",
                   "svix-signature": sign_payload(SECRET, "m", 100, body)}
        with pytest.raises(WebhookVerificationError, match="tolerance"):
            verify_webhook(SECRET, headers, body, now=100 + 301)

    def test_tampered_body(self):
        sig = sign_payload(SECRET, "m", 100, b'{"a": 1}')
        headers = {"svix-id": "m", "svix-timestamp": "100", "svix-signature": sig}
        with pytest.raises(WebhookVerificationError):
            verify_webhook(SECRET, headers, b'{"a": 2}', now=100)

    def test_missing_headers(self):
        with pytest.raises(WebhookVerificationError, match="Missing"):
            verify_webhook(SECRET, {}, b"{}")


class TestEvents:
    def test_user_created(self, client, org):
        event = {
            "type": "user.created",
            "data": {
                "id": "user_new",
                "first_name": "Siti",
                "last_name": "Aminah",
                "primary_email_address_id": "e2",
                "email_addresses": [
                    {"id": "e1", "email_address": "old@example.go.id"},
                    {"id": "e2", "email_address": "siti@example.go.id"},
                ],
                "organization_memberships": [{"organization": {"id": "org_dinkes"}}],
            },
        }
        res = _deliver(client, event)
        assert res.status_code == 200, res.get_json()
        assert res.get_json()["received"] is True

        user = _reload_user("user_new")
        assert user.email == "siti@example.go.id"
        assert user.name == "Siti Aminah"
        assert user.role == "viewer"
        assert user.organization_id == org.id

    def test_user_deleted_deactivates(self, client, org):
        make_user(org, "pptk", clerk_id="user_gone")
        db.session.commit()
        _deliver(client, {"type": "user.deleted", "data": {"id": "user_gone"}})
        assert _reload_user("user_gone").is_active is False

    def test_membership_admin_role(self, client, org):
        make_user(None, "viewer", clerk_id="user_m")
        db.session.commit()
        _deliver(client, {
            "type": "organizationMembership.created",
            "data": {"organization": {"id": "org_dinkes"}, "public_user_data": {"user_id": "user_m"},
                     "role": "org:admin"},
        })
        user = _reload_user("user_m")
        assert user.organization_id == org.id
        assert user.role == "admin"

    def test_membership_deleted_resets(self, client, org):
        make_user(org, "bendahara", clerk_id="user_leaving")
        db.session.commit()
        res = _deliver(client, {
            "type": "organizationMembership.deleted",
            "data": {"organization": {"id": "org_dinkes"}, "public_user_data": {"user_id": "user_leaving"}},
        })
        assert res.get_json()["role"] == "viewer"
        user = _reload_user("user_leaving")
        assert user.organization_id is None
        assert user.role == "viewer"

    def test_organization_created_then_deleted(self, client):
        _deliver(client, {"type": "organization.created",
                          "data": {"id": "org_baru", "name": "Dinas Baru", "slug": "baru"}})
        org = Organization.query.filter_by(clerk_organization_id="org_baru").one()
        assert org.name == "Dinas Baru"

        _deliver(client, {"type": "organization.deleted", "data": {"id": "org_baru"}}, msg_id="msg_2")
        db.session.expire_all()
        assert db.session.get(Organization, org.id).is_deleted

    def test_unknown_event_ignored(self, client):
        res = _deliver(client, {"type": "session.created", "data": {}})
        assert res.status_code == 200
        assert res.get_json()["ignored"] is True


class TestRejected:
    def test_bad_signature(self, client):
        res = _deliver(client, {"type": "user.created", "data": {"id": "x"}}, signature="v1,Zm9v")
        assert res.status_code == 400
        assert User.query.filter_by(clerk_user_id="x").count() == 0

    def test_wrong_secret(self, client):
        res = _deliver(client, {"type": "user.created", "data": {"id": "x"}},
                       secret="whsec_b3RoZXItc2VjcmV0")
        assert res.status_code == 400

    def test_secret_not_configured(self, app, client, monkeypatch):
        monkeypatch.setitem(app.config, "CLERK_WEBHOOK_SIGNING_SECRET", None)
        res = _deliver(client, {"type": "user.created", "data": {"id": "x"}})
        assert res.status_code == 500
