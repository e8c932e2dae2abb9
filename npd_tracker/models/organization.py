"""
NPD Tracker
Organization & user domain model.

Models:
    - Organization: tenant boundary, synced from the identity provider
    - User: identity-provider-linked account with exactly one role
"""

from datetime import datetime, timezone

from npd_tracker.models import db


# ── Constants ────────────────────────────────────────────────────────────────

ROLES = ("admin", "pptk", "bendahara", "verifikator", "viewer")
DEFAULT_ROLE = "viewer"


class Organization(db.Model):
    """
    Tenant boundary: owns users, documents and the budget hierarchy.

    Deleting the organization at the identity provider only stamps
    ``deleted_at``; budget and document rows stay for the audit trail.
    """

    __tablename__ = "organizations"

    id = db.Column(db.Integer, primary_key=True)
    clerk_organization_id = db.Column(db.String(100), unique=True, nullable=True, index=True)
    name = db.Column(db.String(200), nullable=False)
    slug = db.Column(db.String(120), nullable=True)
    description = db.Column(db.Text, default="")
    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    users = db.relationship("User", back_populates="organization", lazy="dynamic")

    @property
    def is_deleted(self):
        return self.deleted_at is not None

    def soft_delete(self):
        self.deleted_at = datetime.now(timezone.utc)

    def restore(self):
        self.deleted_at = None

    def to_dict(self):
        return {
            "id": self.id,
            "clerk_organization_id": self.clerk_organization_id,
            "name": self.name,
            "slug": self.slug,
            "description": self.description,
            "is_deleted": self.is_deleted,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Organization {self.id}: {self.name}>"


class User(db.Model):
    """
    Application user.

    ``clerk_user_id`` links the row to the identity provider; ``role``
    drives every permission decision (see services.permission).
    """

    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    clerk_user_id = db.Column(db.String(100), unique=True, nullable=False, index=True)
    email = db.Column(db.String(255), nullable=False, default="")
    name = db.Column(db.String(200), nullable=False, default="")
    image_url = db.Column(db.String(500), nullable=True)

    organization_id = db.Column(
        db.Integer, db.ForeignKey("organizations.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    role = db.Column(db.String(20), nullable=False, default=DEFAULT_ROLE,
                     comment="admin | pptk | bendahara | verifikator | viewer")
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    last_login_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    organization = db.relationship("Organization", back_populates="users")

    def to_dict(self):
        return {
            "id": self.id,
            "clerk_user_id": self.clerk_user_id,
            "email": self.email,
            "name": self.name,
            "image_url": self.image_url,
            "organization_id": self.organization_id,
            "role": self.role,
            "is_active": self.is_active,
            "last_login_at": self.last_login_at.isoformat() if self.last_login_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<User {self.id}: {self.email} ({self.role})>"
