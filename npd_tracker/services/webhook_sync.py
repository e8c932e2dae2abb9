"""
Identity-provider (Clerk) webhook sync.

Verifies Svix-signed deliveries and mirrors user, organization and
membership events into the local tables.

Signature scheme:
    secret      "whsec_" + base64(key)
    signed      "{svix-id}.{svix-timestamp}.{raw body}"
    header      "v1,<base64 hmac-sha256>" (space separated, any may match)
"""

import base64
import binascii
import hashlib
import hmac
import json
import logging
import time

from npd_tracker.models import db
from npd_tracker.models.audit import write_audit
from npd_tracker.models.organization import DEFAULT_ROLE, Organization, User

logger = logging.getLogger(__name__)

TOLERANCE_SECONDS = 5 * 60
ADMIN_MEMBERSHIP_ROLES = {"admin", "org:admin"}


class WebhookVerificationError(Exception):
    """Raised when a delivery's signature or headers are invalid."""


# ═══════════════════════════════════════════════════════════════
# Verification
# ═══════════════════════════════════════════════════════════════

def _secret_bytes(secret: str) -> bytes:
    if not secret:
        raise WebhookVerificationError("Webhook signing secret not configured")
    raw = secret[len("whsec_"):] if secret.startswith("whsec_") else secret
    try:
        return base64.b64decode(raw)
    except (binascii.Error, ValueError):
        raise WebhookVerificationError("Malformed webhook signing secret") from None


def sign_payload(secret: str, msg_id: str, timestamp: str | int, body: bytes | str) -> str:
    """Return the ``v1,<sig>`` value a sender would put in ``svix-signature``."""
    if isinstance(body, bytes):
        body = body.decode("utf-8")
    signed = f"{msg_id}.{timestamp}.{body}".encode("utf-8")
    digest = hmac.new(_secret_bytes(secret), signed, hashlib.sha256).digest()
    return "v1," + base64.b64encode(digest).decode("ascii")


def verify_webhook(secret: str, headers, body: bytes | str, now: float | None = None) -> dict:
    """
    Verify a Svix delivery and return the decoded JSON event.

    Raises:
        WebhookVerificationError: missing headers, stale timestamp,
            signature mismatch or a non-JSON body.
    """
    msg_id = headers.get("svix-id")
    timestamp = headers.get("svix-timestamp")
    signature_header = headers.get("svix-signature")
    if not (msg_id and timestamp and signature_header):
        raise WebhookVerificationError("Missing svix headers")

    try:
        ts = int(timestamp)
    except (TypeError, ValueError):
        raise WebhookVerificationError("Invalid svix-timestamp") from None
    now = time.time() if now is None else now
    if abs(now - ts) > TOLERANCE_SECONDS:
        raise WebhookVerificationError("Message timestamp outside tolerance")

    expected = sign_payload(secret, msg_id, timestamp, body).split(",", 1)[1]
    for candidate in signature_header.split():
        version, _, value = candidate.partition(",")
        if version == "v1" and hmac.compare_digest(value.encode(), expected.encode()):
            break
    else:
        raise WebhookVerificationError("No matching signature found")

    try:
        return json.loads(body)
    except (TypeError, ValueError):
        raise WebhookVerificationError("Body is not valid JSON") from None


# ═══════════════════════════════════════════════════════════════
# Event handlers
# ═══════════════════════════════════════════════════════════════

def _primary_email(data: dict) -> str:
    addresses = data.get("email_addresses") or []
    primary_id = data.get("primary_email_address_id")
    for addr in addresses:
        if primary_id and addr.get("id") == primary_id:
            return addr.get("email_address") or ""
    return (addresses[0].get("email_address") if addresses else "") or ""


def _full_name(data: dict) -> str:
    return f"{data.get('first_name') or ''} {data.get('last_name') or ''}".strip()


def _org_by_clerk_id(clerk_org_id) -> Organization | None:
    if not clerk_org_id:
        return None
    return Organization.query.filter_by(clerk_organization_id=clerk_org_id).first()


def _user_by_clerk_id(clerk_user_id) -> User | None:
    if not clerk_user_id:
        return None
    return User.query.filter_by(clerk_user_id=clerk_user_id).first()


def _upsert_user(data: dict) -> dict:
    user = _user_by_clerk_id(data.get("id"))
    email = _primary_email(data)
    name = _full_name(data)
    if user is None:
        memberships = data.get("organization_memberships") or []
        org = _org_by_clerk_id(((memberships[0] or {}).get("organization") or {}).get("id")) if memberships else None
        user = User(
            clerk_user_id=data["id"],
            email=email,
            name=name,
            image_url=data.get("image_url"),
            organization_id=org.id if org else None,
            role=DEFAULT_ROLE,
            is_active=True,
        )
        db.session.add(user)
        db.session.flush()
        write_audit(entity_table="users", entity_id=user.id, action="created",
                    actor_user_id=user.id, organization_id=user.organization_id,
                    keterangan=f"User synced from Clerk: {email}")
        return {"user_id": user.id, "created": True}

    before = {"email": user.email, "name": user.name}
    user.email = email or user.email
    user.name = name or user.name
    if data.get("image_url"):
        user.image_url = data["image_url"]
    user.is_active = True
    db.session.flush()
    write_audit(entity_table="users", entity_id=user.id, action="updated",
                actor_user_id=user.id, organization_id=user.organization_id,
                keterangan=f"User updated from Clerk: {user.email}",
                diff={"before": before, "after": {"email": user.email, "name": user.name}})
    return {"user_id": user.id, "created": False}


def _deactivate_user(data: dict) -> dict:
    user = _user_by_clerk_id(data.get("id"))
    if user is None:
        logger.info("Clerk user.deleted for unknown user %s", data.get("id"))
        return {"ignored": True}
    user.is_active = False
    db.session.flush()
    write_audit(entity_table="users", entity_id=user.id, action="deleted",
                actor_user_id=user.id, organization_id=user.organization_id,
                keterangan=f"User deactivated from Clerk: {user.clerk_user_id}")
    return {"user_id": user.id, "deactivated": True}


def _upsert_organization(data: dict) -> dict:
    org = _org_by_clerk_id(data.get("id"))
    created = org is None
    if created:
        org = Organization(clerk_organization_id=data["id"], name=data.get("name") or data["id"])
        db.session.add(org)
    else:
        org.name = data.get("name") or org.name
        if org.is_deleted:
            org.restore()
    org.slug = data.get("slug") or org.slug
    org.description = data.get("description") or org.description or ""
    db.session.flush()
    write_audit(entity_table="organizations", entity_id=org.id,
                action="created" if created else "updated",
                organization_id=org.id,
                keterangan=f"Organization synced from Clerk: {org.name}")
    return {"organization_id": org.id, "created": created}


def _delete_organization(data: dict) -> dict:
    org = _org_by_clerk_id(data.get("id"))
    if org is None:
        return {"ignored": True}
    org.soft_delete()
    db.session.flush()
    write_audit(entity_table="organizations", entity_id=org.id, action="deleted",
                organization_id=org.id,
                keterangan=f"Organization deactivated from Clerk: {org.clerk_organization_id}")
    return {"organization_id": org.id, "deleted": True}


def _membership_user(data: dict) -> User | None:
    clerk_user_id = data.get("user_id") or (data.get("public_user_data") or {}).get("user_id")
    return _user_by_clerk_id(clerk_user_id)


def _set_membership(data: dict) -> dict:
    user = _membership_user(data)
    org = _org_by_clerk_id((data.get("organization") or {}).get("id"))
    if user is None or org is None:
        logger.info("Membership event for unknown user/org ignored")
        return {"ignored": True}
    before = {"organization_id": user.organization_id, "role": user.role}
    user.organization_id = org.id
    user.role = "admin" if data.get("role") in ADMIN_MEMBERSHIP_ROLES else DEFAULT_ROLE
    db.session.flush()
    write_audit(entity_table="users", entity_id=user.id, action="membership_updated",
                actor_user_id=user.id, organization_id=org.id,
                diff={"before": before, "after": {"organization_id": org.id, "role": user.role}})
    return {"user_id": user.id, "organization_id": org.id, "role": user.role}


def _remove_membership(data: dict) -> dict:
    user = _membership_user(data)
    if user is None:
        return {"ignored": True}
    before = {"organization_id": user.organization_id, "role": user.role}
    user.organization_id = None
    user.role = DEFAULT_ROLE
    db.session.flush()
    write_audit(entity_table="users", entity_id=user.id, action="membership_removed",
                actor_user_id=user.id, organization_id=before["organization_id"],
                diff={"before": before, "after": {"organization_id": None, "role": DEFAULT_ROLE}})
    return {"user_id": user.id, "organization_id": None, "role": DEFAULT_ROLE}


_HANDLERS = {
    "user.created": _upsert_user,
    "user.updated": _upsert_user,
    "user.deleted": _deactivate_user,
    "organization.created": _upsert_organization,
    "organization.updated": _upsert_organization,
    "organization.deleted": _delete_organization,
    "organizationMembership.created": _set_membership,
    "organizationMembership.updated": _set_membership,
    "organizationMembership.deleted": _remove_membership,
}


def handle_event(event: dict) -> dict:
    """Dispatch a verified event. Unknown types are acknowledged and ignored."""
    event_type = (event or {}).get("type") or ""
    handler = _HANDLERS.get(event_type)
    if handler is None:
        logger.info("Clerk webhook %s ignored", event_type or "<none>")
        return {"type": event_type, "ignored": True}
    data = event.get("data") or {}
    result = handler(data)
    logger.info("Clerk webhook %s processed", event_type)
    return {"type": event_type, **result}
