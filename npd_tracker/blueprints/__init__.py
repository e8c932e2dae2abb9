"""
NPD Tracker
Blueprint registry and shared request helpers.
"""

import logging

from flask import request
from sqlalchemy.exc import SQLAlchemyError

from npd_tracker.models import db
from npd_tracker.utils.errors import E, api_error

logger = logging.getLogger(__name__)


def paginate_query(query, default_limit=50, max_limit=500):
    """Apply limit/offset pagination to a SQLAlchemy query.

    Query params:
        limit  — max items (default 50, capped at max_limit)
        offset — starting position (default 0)

    Returns:
        (items_list, total_count)
    """
    total = query.count()
    try:
        limit = min(max(int(request.args.get("limit", default_limit)), 1), max_limit)
    except (ValueError, TypeError):
        limit = default_limit
    try:
        offset = max(int(request.args.get("offset", 0)), 0)
    except (ValueError, TypeError):
        offset = 0
    items = query.limit(limit).offset(offset).all()
    return items, total


def commit_or_error(action: str):
    """Commit the session; on failure roll back and return a 500 response."""
    try:
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Database error %s", action)
        return api_error(E.DATABASE, "Database error")
    return None


def expected_version(data: dict | None = None):
    """Client-supplied optimistic-lock version from the body or If-Match."""
    if data and data.get("version") is not None:
        return data.get("version")
    header = request.headers.get("If-Match")
    if header:
        return header.strip().strip('"')
    return None


def int_arg(name: str):
    """Integer query parameter, or None when absent or malformed."""
    value = request.args.get(name)
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
