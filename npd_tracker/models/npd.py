"""
NPD Tracker
NPD (Nota Pencairan Dana) domain model.

Models:
    - NpdDocument: disbursement-request document with a five-state status
    - NpdLine: line item charged against one RKA account
    - VerificationChecklist: one-to-one per-document verification record
    - Attachment: supporting file, uploaded in two phases (pending → confirmed)

NPD_TRANSITIONS is the single source of truth for the status workflow;
services.npd_workflow consumes it through one shared guard.
"""

from datetime import datetime, timezone
from decimal import Decimal

from npd_tracker.models import db
from npd_tracker.models.rka import as_number


# ── Constants ────────────────────────────────────────────────────────────────

NPD_JENIS = ("UP", "GU", "TU", "LS")
NPD_STATUSES = ("draft", "diajukan", "diverifikasi", "final", "rejected")

# Statuses in which header fields and line items may still change.
EDITABLE_STATUSES = frozenset({"draft", "rejected"})

NPD_TRANSITIONS = {
    "submit": {"from": ["draft", "rejected"], "to": "diajukan"},
    "verify": {"from": ["diajukan"], "to": "diverifikasi"},
    "finalize": {"from": ["diverifikasi"], "to": "final"},
    "reject": {"from": ["diajukan", "diverifikasi"], "to": "rejected"},
}

CHECKLIST_STATUSES = ("draft", "in_progress", "completed", "rejected")
ATTACHMENT_STATUSES = ("pending", "confirmed")


class NpdDocument(db.Model):
    """
    Disbursement request raised against one sub-kegiatan.

    ``version`` is an optimistic-concurrency counter: SQLAlchemy adds
    ``WHERE version = :old`` to every UPDATE and raises StaleDataError
    when a concurrent writer got there first.
    """

    __tablename__ = "npd_documents"
    __table_args__ = (
        db.UniqueConstraint("organization_id", "document_number", name="uq_npd_document_number"),
        db.Index("idx_npd_org_status", "organization_id", "status"),
    )

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(
        db.Integer, db.ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    subkegiatan_id = db.Column(
        db.Integer, db.ForeignKey("rka_subkegiatans.id", ondelete="RESTRICT"), nullable=False, index=True,
    )
    document_number = db.Column(db.String(50), nullable=False, comment="NPD-{year}-{seq:03d}")
    title = db.Column(db.String(300), nullable=False)
    description = db.Column(db.Text, default="")
    jenis = db.Column(db.String(2), nullable=False, comment="UP | GU | TU | LS")
    tahun = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(20), nullable=False, default="draft", index=True)
    catatan = db.Column(db.Text, default="")

    created_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    submitted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    verified_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    verified_at = db.Column(db.DateTime(timezone=True), nullable=True)
    finalized_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    finalized_at = db.Column(db.DateTime(timezone=True), nullable=True)
    rejected_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    rejected_at = db.Column(db.DateTime(timezone=True), nullable=True)
    rejection_reason = db.Column(db.Text, nullable=True)

    version = db.Column(db.Integer, nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    __mapper_args__ = {"version_id_col": version}

    subkegiatan = db.relationship("RkaSubkegiatan")
    lines = db.relationship(
        "NpdLine", back_populates="npd", cascade="all, delete-orphan", order_by="NpdLine.id",
    )
    checklist = db.relationship(
        "VerificationChecklist", back_populates="npd", uselist=False, cascade="all, delete-orphan",
    )
    attachments = db.relationship(
        "Attachment", back_populates="npd", cascade="all, delete-orphan", order_by="Attachment.id",
    )
    sp2d_refs = db.relationship("Sp2dRef", back_populates="npd", order_by="Sp2dRef.id")

    @property
    def total_amount(self) -> Decimal:
        return sum((line.jumlah or Decimal("0") for line in self.lines), Decimal("0"))

    @property
    def is_editable(self) -> bool:
        return self.status in EDITABLE_STATUSES

    def touch(self) -> None:
        """Mark the header dirty so a child change also bumps ``version``."""
        self.updated_at = datetime.now(timezone.utc)

    def to_dict(self, include_lines=False):
        d = {
            "id": self.id,
            "organization_id": self.organization_id,
            "subkegiatan_id": self.subkegiatan_id,
            "document_number": self.document_number,
            "title": self.title,
            "description": self.description,
            "jenis": self.jenis,
            "tahun": self.tahun,
            "status": self.status,
            "catatan": self.catatan,
            "total_amount": as_number(self.total_amount),
            "created_by": self.created_by,
            "submitted_at": self.submitted_at.isoformat() if self.submitted_at else None,
            "verified_by": self.verified_by,
            "verified_at": self.verified_at.isoformat() if self.verified_at else None,
            "finalized_by": self.finalized_by,
            "finalized_at": self.finalized_at.isoformat() if self.finalized_at else None,
            "rejected_by": self.rejected_by,
            "rejected_at": self.rejected_at.isoformat() if self.rejected_at else None,
            "rejection_reason": self.rejection_reason,
            "version": self.version,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_lines:
            d["lines"] = [line.to_dict() for line in self.lines]
        return d

    def __repr__(self):
        return f"<NpdDocument {self.document_number} [{self.status}]>"


class NpdLine(db.Model):
    """One budget line of an NPD, charged to an RKA account."""

    __tablename__ = "npd_lines"

    id = db.Column(db.Integer, primary_key=True)
    npd_id = db.Column(
        db.Integer, db.ForeignKey("npd_documents.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    account_id = db.Column(
        db.Integer, db.ForeignKey("rka_accounts.id", ondelete="RESTRICT"), nullable=False, index=True,
    )
    uraian = db.Column(db.String(500), nullable=False, default="")
    volume = db.Column(db.Numeric(18, 2), nullable=True)
    satuan = db.Column(db.String(50), nullable=True)
    harga_satuan = db.Column(db.Numeric(18, 2), nullable=True)
    jumlah = db.Column(db.Numeric(18, 2), nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    npd = db.relationship("NpdDocument", back_populates="lines")
    account = db.relationship("RkaAccount")

    def to_dict(self):
        return {
            "id": self.id,
            "npd_id": self.npd_id,
            "account_id": self.account_id,
            "account_kode": self.account.kode if self.account else None,
            "uraian": self.uraian,
            "volume": as_number(self.volume),
            "satuan": self.satuan,
            "harga_satuan": as_number(self.harga_satuan),
            "jumlah": as_number(self.jumlah),
        }


class VerificationChecklist(db.Model):
    """
    Verification record for one NPD.

    ``results`` is a JSON list of ``{"item_id", "checked", "notes"}`` in
    template order (see services.checklist.CHECKLIST_TEMPLATES).
    """

    __tablename__ = "verification_checklists"

    id = db.Column(db.Integer, primary_key=True)
    npd_id = db.Column(
        db.Integer, db.ForeignKey("npd_documents.id", ondelete="CASCADE"),
        nullable=False, unique=True,
    )
    organization_id = db.Column(
        db.Integer, db.ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    checklist_type = db.Column(db.String(2), nullable=False)
    results = db.Column(db.JSON, nullable=False, default=list)
    status = db.Column(db.String(20), nullable=False, default="draft")
    catatan = db.Column(db.Text, default="")
    verified_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    verified_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    npd = db.relationship("NpdDocument", back_populates="checklist")

    def to_dict(self):
        return {
            "id": self.id,
            "npd_id": self.npd_id,
            "checklist_type": self.checklist_type,
            "results": list(self.results or []),
            "status": self.status,
            "catatan": self.catatan,
            "verified_by": self.verified_by,
            "verified_at": self.verified_at.isoformat() if self.verified_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class Attachment(db.Model):
    """Supporting document for an NPD (reserve → confirm)."""

    __tablename__ = "attachments"
    __table_args__ = (
        db.Index("idx_attachment_npd_checksum", "npd_id", "checksum"),
        db.Index("idx_attachment_status_created", "status", "created_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    npd_id = db.Column(
        db.Integer, db.ForeignKey("npd_documents.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    organization_id = db.Column(
        db.Integer, db.ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    nama_file = db.Column(db.String(255), nullable=False)
    tipe_file = db.Column(db.String(50), default="lampiran", comment="e.g. kwitansi, surat, lampiran")
    mime_type = db.Column(db.String(120), nullable=False)
    ukuran = db.Column(db.Integer, nullable=False, comment="bytes")
    checksum = db.Column(db.String(64), nullable=False, comment="SHA-256 hex digest")
    storage_key = db.Column(db.String(500), nullable=False)
    status = db.Column(db.String(20), nullable=False, default="pending")
    uploaded_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    confirmed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    npd = db.relationship("NpdDocument", back_populates="attachments")

    def to_dict(self):
        return {
            "id": self.id,
            "npd_id": self.npd_id,
            "nama_file": self.nama_file,
            "tipe_file": self.tipe_file,
            "mime_type": self.mime_type,
            "ukuran": self.ukuran,
            "checksum": self.checksum,
            "storage_key": self.storage_key,
            "status": self.status,
            "uploaded_by": self.uploaded_by,
            "confirmed_at": self.confirmed_at.isoformat() if self.confirmed_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
