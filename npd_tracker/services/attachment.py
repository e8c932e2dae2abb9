"""
NPD attachment service.

Two-phase upload:
    reserve_upload   validate type/size, checksum, write the bytes and a
                     ``pending`` record
    confirm_upload   mark the record ``confirmed``

Records left ``pending`` longer than UPLOAD_CONFIRM_TIMEOUT_MINUTES are
removed by ``sweep_unconfirmed_uploads`` (``flask sweep-uploads``).

Blobs follow the database: deleting functions only flush and return the
storage keys, and the caller calls ``remove_blobs`` once its commit has
succeeded. A reserved blob is removed again if the record never commits.
"""

import hashlib
import logging
import os
import re
import time
from datetime import datetime, timedelta, timezone

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from npd_tracker.core.exceptions import ConflictError, ValidationError
from npd_tracker.models import db
from npd_tracker.models.audit import write_audit
from npd_tracker.models.npd import Attachment, NpdDocument
from npd_tracker.services.helpers.scoped_queries import get_scoped
from npd_tracker.services.permission import check_permission

logger = logging.getLogger(__name__)

# mime type → allowed extensions, max size in MB
ALLOWED_FILE_TYPES = {
    "application/pdf": {"ext": [".pdf"], "max_size": 10},
    "application/msword": {"ext": [".doc"], "max_size": 10},
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": {"ext": [".docx"], "max_size": 10},
    "application/vnd.ms-excel": {"ext": [".xls"], "max_size": 10},
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": {"ext": [".xlsx"], "max_size": 10},
    "image/jpeg": {"ext": [".jpg", ".jpeg"], "max_size": 5},
    "image/png": {"ext": [".png"], "max_size": 5},
    "image/webp": {"ext": [".webp"], "max_size": 5},
    "text/csv": {"ext": [".csv"], "max_size": 5},
    "text/plain": {"ext": [".txt"], "max_size": 2},
}

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9.\-]")


def validate_file_type(filename: str, mime_type: str) -> None:
    rule = ALLOWED_FILE_TYPES.get(mime_type)
    if rule is None:
        raise ValidationError(
            f"Tipe file {mime_type} tidak diizinkan. Tipe yang diizinkan: PDF, DOC, DOCX, XLS, XLSX, "
            "gambar (JPG, PNG, WEBP), CSV, TXT",
            details={"mime_type": mime_type},
        )
    ext = os.path.splitext(filename or "")[1].lower()
    if ext not in rule["ext"]:
        raise ValidationError(
            f"Ekstensi file {ext or '(kosong)'} tidak sesuai dengan tipe {mime_type}",
            details={"extension": ext, "mime_type": mime_type},
        )


def storage_key_for(organization_id: int, npd_id: int, filename: str) -> str:
    sanitized = _UNSAFE_CHARS.sub("_", os.path.basename(filename or "file"))
    return f"{organization_id}/{npd_id}/{int(time.time() * 1000)}-{sanitized}"


def _storage_path(storage_key: str) -> str:
    return os.path.join(current_app.config["UPLOAD_FOLDER"], *storage_key.split("/"))


def remove_blob(storage_key: str) -> None:
    path = _storage_path(storage_key)
    try:
        os.remove(path)
    except FileNotFoundError:
        logger.debug("Attachment blob %s already gone", storage_key)


def remove_blobs(storage_keys) -> None:
    """Delete blobs whose records are gone; call only after a successful commit."""
    for key in storage_keys:
        try:
            remove_blob(key)
        except OSError:
            logger.exception("Could not remove attachment blob %s", key)


def reserve_upload(user, npd_id: int, filename: str, mime_type: str, data: bytes,
                   tipe_file: str | None = None) -> Attachment:
    """Validate and store the bytes; returns the ``pending`` record."""
    check_permission(user, "update", "npd")
    npd = get_scoped(NpdDocument, npd_id, organization_id=user.organization_id)
    if npd.status == "final":
        raise ValidationError("NPD final tidak dapat menerima lampiran baru",
                              details={"status": npd.status})

    validate_file_type(filename, mime_type)
    size = len(data or b"")
    if size == 0:
        raise ValidationError("File kosong", details={"ukuran": 0})
    max_mb = ALLOWED_FILE_TYPES[mime_type]["max_size"]
    limit = min(max_mb * 1024 * 1024, int(current_app.config.get("MAX_FILE_SIZE", 10485760)))
    if size > limit:
        raise ValidationError(
            f"Ukuran file melebihi batas {max_mb}MB untuk {mime_type}",
            details={"ukuran": size, "max": limit},
        )

    checksum = hashlib.sha256(data).hexdigest()
    duplicate = Attachment.query.filter_by(npd_id=npd.id, checksum=checksum).first()
    if duplicate:
        raise ConflictError("Attachment", "checksum", duplicate.nama_file)

    storage_key = storage_key_for(user.organization_id, npd.id, filename)
    path = _storage_path(storage_key)
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "wb") as fh:
        fh.write(data)

    attachment = Attachment(
        npd_id=npd.id,
        organization_id=user.organization_id,
        nama_file=os.path.basename(filename)[:255],
        tipe_file=(tipe_file or "lampiran")[:50],
        mime_type=mime_type,
        ukuran=size,
        checksum=checksum,
        storage_key=storage_key,
        status="pending",
        uploaded_by=user.id,
    )
    try:
        db.session.add(attachment)
        db.session.flush()
    except SQLAlchemyError:
        remove_blob(storage_key)
        raise
    logger.info("Attachment %s reserved for NPD %s (%d bytes)", attachment.id, npd.id, size)
    return attachment


def confirm_upload(user, attachment_id: int) -> Attachment:
    check_permission(user, "update", "npd")
    attachment = get_scoped(Attachment, attachment_id, organization_id=user.organization_id)
    if attachment.status == "confirmed":
        return attachment
    attachment.status = "confirmed"
    attachment.confirmed_at = datetime.now(timezone.utc)
    db.session.flush()
    write_audit(
        entity_table="attachments",
        entity_id=attachment.id,
        action="created",
        actor_user_id=user.id,
        organization_id=attachment.organization_id,
        diff={"npd_id": attachment.npd_id, "nama_file": attachment.nama_file,
              "checksum": attachment.checksum},
    )
    return attachment


def list_attachments(user, npd_id: int) -> list[Attachment]:
    check_permission(user, "read", "npd")
    npd = get_scoped(NpdDocument, npd_id, organization_id=user.organization_id)
    return Attachment.query.filter_by(npd_id=npd.id).order_by(Attachment.created_at, Attachment.id).all()


def open_attachment(user, attachment_id: int) -> tuple[Attachment, str]:
    """Return the record and the absolute path of its bytes."""
    check_permission(user, "read", "npd")
    attachment = get_scoped(Attachment, attachment_id, organization_id=user.organization_id)
    return attachment, _storage_path(attachment.storage_key)


def delete_attachment(user, attachment_id: int) -> str:
    """Delete the record; returns its storage key for ``remove_blobs`` after commit."""
    check_permission(user, "update", "npd")
    attachment = get_scoped(Attachment, attachment_id, organization_id=user.organization_id)
    if attachment.npd is not None and attachment.npd.status == "final":
        raise ValidationError("Lampiran NPD final tidak dapat dihapus",
                              details={"status": attachment.npd.status})
    write_audit(
        entity_table="attachments",
        entity_id=attachment.id,
        action="deleted",
        actor_user_id=user.id,
        organization_id=attachment.organization_id,
        diff={"snapshot": attachment.to_dict()},
    )
    storage_key = attachment.storage_key
    db.session.delete(attachment)
    db.session.flush()
    return storage_key


def sweep_unconfirmed_uploads(max_age_minutes: int | None = None, now: datetime | None = None) -> list[str]:
    """Delete ``pending`` records older than the confirm timeout; returns their storage keys."""
    if max_age_minutes is None:
        max_age_minutes = int(current_app.config.get("UPLOAD_CONFIRM_TIMEOUT_MINUTES", 60))
    cutoff = (now or datetime.now(timezone.utc)) - timedelta(minutes=max_age_minutes)
    stale = Attachment.query.filter(
        Attachment.status == "pending",
        Attachment.created_at < cutoff,
    ).all()
    keys = [attachment.storage_key for attachment in stale]
    for attachment in stale:
        db.session.delete(attachment)
    db.session.flush()
    if stale:
        logger.info("Swept %d unconfirmed uploads older than %d minutes", len(stale), max_age_minutes)
    return keys
