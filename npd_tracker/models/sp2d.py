"""
NPD Tracker
SP2D (disbursement order) & realization model.

Models:
    - Sp2dRef: disbursement order issued against one final NPD
    - Realization: per-line share of an SP2D booked onto an RKA account
"""

from datetime import datetime, timezone

from npd_tracker.models import db
from npd_tracker.models.rka import as_number


class Sp2dRef(db.Model):
    """Immutable once created; only corrective deletion by an admin."""

    __tablename__ = "sp2d_refs"
    __table_args__ = (
        db.UniqueConstraint("organization_id", "no_sp2d", name="uq_sp2d_number"),
    )

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(
        db.Integer, db.ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    npd_id = db.Column(
        db.Integer, db.ForeignKey("npd_documents.id", ondelete="RESTRICT"), nullable=False, index=True,
    )
    no_spm = db.Column(db.String(100), nullable=True)
    no_sp2d = db.Column(db.String(100), nullable=False)
    tgl_sp2d = db.Column(db.Date, nullable=False)
    nilai_cair = db.Column(db.Numeric(18, 2), nullable=False)
    catatan = db.Column(db.Text, default="")

    created_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    npd = db.relationship("NpdDocument", back_populates="sp2d_refs")
    realizations = db.relationship(
        "Realization", back_populates="sp2d", cascade="all, delete-orphan", order_by="Realization.id",
    )

    def to_dict(self, include_realizations=False):
        d = {
            "id": self.id,
            "organization_id": self.organization_id,
            "npd_id": self.npd_id,
            "npd_document_number": self.npd.document_number if self.npd else None,
            "no_spm": self.no_spm,
            "no_sp2d": self.no_sp2d,
            "tgl_sp2d": self.tgl_sp2d.isoformat() if self.tgl_sp2d else None,
            "nilai_cair": as_number(self.nilai_cair),
            "catatan": self.catatan,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
        if include_realizations:
            d["realizations"] = [r.to_dict() for r in self.realizations]
        return d

    def __repr__(self):
        return f"<Sp2dRef {self.no_sp2d}>"


class Realization(db.Model):
    __tablename__ = "realizations"

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(
        db.Integer, db.ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    sp2d_id = db.Column(
        db.Integer, db.ForeignKey("sp2d_refs.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    npd_id = db.Column(db.Integer, db.ForeignKey("npd_documents.id", ondelete="CASCADE"), nullable=False)
    npd_line_id = db.Column(db.Integer, db.ForeignKey("npd_lines.id", ondelete="SET NULL"), nullable=True)
    account_id = db.Column(
        db.Integer, db.ForeignKey("rka_accounts.id", ondelete="RESTRICT"), nullable=False, index=True,
    )
    total_cair = db.Column(db.Numeric(18, 2), nullable=False)
    catatan = db.Column(db.Text, default="")

    created_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    sp2d = db.relationship("Sp2dRef", back_populates="realizations")
    account = db.relationship("RkaAccount")

    def to_dict(self):
        return {
            "id": self.id,
            "sp2d_id": self.sp2d_id,
            "npd_id": self.npd_id,
            "npd_line_id": self.npd_line_id,
            "account_id": self.account_id,
            "account_kode": self.account.kode if self.account else None,
            "total_cair": as_number(self.total_cair),
            "catatan": self.catatan,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
