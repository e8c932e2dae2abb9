"""
NPD Tracker
RKA (budget plan) hierarchy model.

Models:
    - RkaProgram → RkaKegiatan → RkaSubkegiatan → RkaAccount
    - ImportProgress: status record for one CSV import run

A node's ``total_pagu`` is the sum of its direct children's amounts.
It is maintained by ``services.rka.recompute_totals`` after every child
insert/update/delete, not by a database constraint.
"""

from datetime import datetime, timezone
from decimal import Decimal

from npd_tracker.models import db


# ── Constants ────────────────────────────────────────────────────────────────

RKA_STATUSES = {"active", "archived"}
IMPORT_STATUSES = {"processing", "completed", "failed"}


def as_number(value):
    """Numeric column value → JSON-friendly float (None stays None)."""
    if value is None:
        return None
    return float(value)


class RkaProgram(db.Model):
    """Top-level budget program for one organization and fiscal year."""

    __tablename__ = "rka_programs"
    __table_args__ = (
        db.UniqueConstraint("organization_id", "fiscal_year", "kode", name="uq_rka_program_kode"),
    )

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(
        db.Integer, db.ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    fiscal_year = db.Column(db.Integer, nullable=False, index=True)
    kode = db.Column(db.String(50), nullable=False)
    nama = db.Column(db.String(300), nullable=False)
    total_pagu = db.Column(db.Numeric(18, 2), nullable=False, default=Decimal("0"))
    status = db.Column(db.String(20), nullable=False, default="active")

    created_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    kegiatans = db.relationship(
        "RkaKegiatan", back_populates="program", order_by="RkaKegiatan.kode",
    )

    def to_dict(self, include_children=False):
        d = {
            "id": self.id,
            "organization_id": self.organization_id,
            "fiscal_year": self.fiscal_year,
            "kode": self.kode,
            "nama": self.nama,
            "total_pagu": as_number(self.total_pagu),
            "status": self.status,
        }
        if include_children:
            d["kegiatans"] = [k.to_dict(include_children=True) for k in self.kegiatans]
        return d

    def __repr__(self):
        return f"<RkaProgram {self.kode} ({self.fiscal_year})>"


class RkaKegiatan(db.Model):
    """Activity under a program."""

    __tablename__ = "rka_kegiatans"
    __table_args__ = (
        db.UniqueConstraint("program_id", "kode", name="uq_rka_kegiatan_kode"),
    )

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(
        db.Integer, db.ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    program_id = db.Column(
        db.Integer, db.ForeignKey("rka_programs.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    fiscal_year = db.Column(db.Integer, nullable=False)
    kode = db.Column(db.String(50), nullable=False)
    nama = db.Column(db.String(300), nullable=False)
    total_pagu = db.Column(db.Numeric(18, 2), nullable=False, default=Decimal("0"))
    status = db.Column(db.String(20), nullable=False, default="active")

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    program = db.relationship("RkaProgram", back_populates="kegiatans")
    subkegiatans = db.relationship(
        "RkaSubkegiatan", back_populates="kegiatan", order_by="RkaSubkegiatan.kode",
    )

    def to_dict(self, include_children=False):
        d = {
            "id": self.id,
            "program_id": self.program_id,
            "fiscal_year": self.fiscal_year,
            "kode": self.kode,
            "nama": self.nama,
            "total_pagu": as_number(self.total_pagu),
            "status": self.status,
        }
        if include_children:
            d["subkegiatans"] = [s.to_dict(include_children=True) for s in self.subkegiatans]
        return d

    def __repr__(self):
        return f"<RkaKegiatan {self.kode}>"


class RkaSubkegiatan(db.Model):
    """Sub-activity: the unit an NPD is raised against."""

    __tablename__ = "rka_subkegiatans"
    __table_args__ = (
        db.UniqueConstraint("kegiatan_id", "kode", name="uq_rka_subkegiatan_kode"),
    )

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(
        db.Integer, db.ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    kegiatan_id = db.Column(
        db.Integer, db.ForeignKey("rka_kegiatans.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    fiscal_year = db.Column(db.Integer, nullable=False)
    kode = db.Column(db.String(50), nullable=False)
    nama = db.Column(db.String(300), nullable=False)
    total_pagu = db.Column(db.Numeric(18, 2), nullable=False, default=Decimal("0"))
    status = db.Column(db.String(20), nullable=False, default="active")

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    kegiatan = db.relationship("RkaKegiatan", back_populates="subkegiatans")
    accounts = db.relationship(
        "RkaAccount", back_populates="subkegiatan", order_by="RkaAccount.kode",
    )

    def to_dict(self, include_children=False):
        d = {
            "id": self.id,
            "kegiatan_id": self.kegiatan_id,
            "fiscal_year": self.fiscal_year,
            "kode": self.kode,
            "nama": self.nama,
            "total_pagu": as_number(self.total_pagu),
            "status": self.status,
        }
        if include_children:
            d["accounts"] = [a.to_dict() for a in self.accounts]
        return d

    def __repr__(self):
        return f"<RkaSubkegiatan {self.kode}>"


class RkaAccount(db.Model):
    """
    Budget account (kode rekening), the leaf of the hierarchy.

    ``sisa_pagu`` = ``pagu_tahun`` − ``realisasi_tahun``; realisasi grows
    as SP2D amounts are distributed onto NPD lines.
    """

    __tablename__ = "rka_accounts"
    __table_args__ = (
        db.UniqueConstraint("subkegiatan_id", "kode", name="uq_rka_account_kode"),
        db.Index("idx_rka_account_org_year", "organization_id", "fiscal_year"),
    )

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(
        db.Integer, db.ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    subkegiatan_id = db.Column(
        db.Integer, db.ForeignKey("rka_subkegiatans.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    fiscal_year = db.Column(db.Integer, nullable=False)
    kode = db.Column(db.String(50), nullable=False, comment="e.g. 5.1.02.01.001")
    uraian = db.Column(db.String(500), nullable=False)
    satuan = db.Column(db.String(50), nullable=True)
    volume = db.Column(db.Numeric(18, 2), nullable=True)
    harga_satuan = db.Column(db.Numeric(18, 2), nullable=True)
    pagu_tahun = db.Column(db.Numeric(18, 2), nullable=False, default=Decimal("0"))
    realisasi_tahun = db.Column(db.Numeric(18, 2), nullable=False, default=Decimal("0"))
    sisa_pagu = db.Column(db.Numeric(18, 2), nullable=False, default=Decimal("0"))
    status = db.Column(db.String(20), nullable=False, default="active")

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    subkegiatan = db.relationship("RkaSubkegiatan", back_populates="accounts")

    def to_dict(self):
        return {
            "id": self.id,
            "subkegiatan_id": self.subkegiatan_id,
            "fiscal_year": self.fiscal_year,
            "kode": self.kode,
            "uraian": self.uraian,
            "satuan": self.satuan,
            "volume": as_number(self.volume),
            "harga_satuan": as_number(self.harga_satuan),
            "pagu_tahun": as_number(self.pagu_tahun),
            "realisasi_tahun": as_number(self.realisasi_tahun),
            "sisa_pagu": as_number(self.sisa_pagu),
            "status": self.status,
        }

    def __repr__(self):
        return f"<RkaAccount {self.kode}>"


class ImportProgress(db.Model):
    """Tracks one RKA CSV import run (row counts + aggregated errors)."""

    __tablename__ = "import_progress"

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(
        db.Integer, db.ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    filename = db.Column(db.String(255), default="")
    fiscal_year = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(20), nullable=False, default="processing")
    total_rows = db.Column(db.Integer, default=0)
    processed_rows = db.Column(db.Integer, default=0)
    errors = db.Column(db.JSON, default=list)
    started_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    started_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def to_dict(self):
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "filename": self.filename,
            "fiscal_year": self.fiscal_year,
            "status": self.status,
            "total_rows": self.total_rows,
            "processed_rows": self.processed_rows,
            "errors": self.errors or [],
            "started_by": self.started_by,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
