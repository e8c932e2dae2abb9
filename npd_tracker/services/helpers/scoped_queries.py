"""
Organization-scoped query helpers.

Every get-by-id in the services goes through ``get_scoped`` instead of
``db.session.get(Model, pk)``: a direct get bypasses organization
isolation.

Usage:
    npd = get_scoped(NpdDocument, npd_id, organization_id=user.organization_id)
    acct = get_scoped_or_none(RkaAccount, account_id, organization_id=org_id)

Cross-organization access is indistinguishable from a missing record:
both raise NotFoundError → HTTP 404.
"""

import logging

from sqlalchemy import select

from npd_tracker.core.exceptions import NotFoundError
from npd_tracker.models import db

logger = logging.getLogger(__name__)

# Friendly names used in NotFoundError messages.
_RESOURCE_NAMES = {
    "NpdDocument": "NPD",
    "NpdLine": "NPD line",
    "Sp2dRef": "SP2D",
    "RkaProgram": "Program",
    "RkaKegiatan": "Kegiatan",
    "RkaSubkegiatan": "Sub-kegiatan",
    "RkaAccount": "Akun",
    "ImportProgress": "Import",
    "Attachment": "Lampiran",
    "User": "User",
}


def _resource_name(model) -> str:
    return _RESOURCE_NAMES.get(model.__name__, model.__name__)


def get_scoped_or_none(model, pk, *, organization_id: int | None):
    """Fetch ``model`` by PK within the organization, or None."""
    if not hasattr(model, "organization_id"):
        raise ValueError(f"{model.__name__} has no organization_id column; refusing unscoped lookup")
    if organization_id is None or pk is None:
        return None
    try:
        pk = int(pk)
    except (TypeError, ValueError):
        return None
    stmt = select(model).where(model.id == pk, model.organization_id == organization_id)
    return db.session.execute(stmt).scalar_one_or_none()


def get_scoped(model, pk, *, organization_id: int | None):
    """Fetch ``model`` by PK within the organization; NotFoundError otherwise."""
    result = get_scoped_or_none(model, pk, organization_id=organization_id)
    if result is None:
        logger.debug("get_scoped: %s id=%s not found in organization %s",
                     model.__name__, pk, organization_id)
        raise NotFoundError(resource=_resource_name(model), resource_id=pk)
    return result
