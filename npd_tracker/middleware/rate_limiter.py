"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter. The Limiter
instance is created in npd_tracker/__init__.py with no default limits and
a shared storage backend (RATELIMIT_STORAGE_URI, else REDIS_URL, else
memory:// for single-process development).

Limits:
    - General API:      GENERAL_RATE_LIMIT_PER_MINUTE per client IP and route
    - Heavy endpoints:  PDF_RATE_LIMIT_PER_MINUTE per authenticated user
                        (exports, RKA import)
    - Health, webhook:  exempt

Usage:
    from npd_tracker.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

from flask import g, request as flask_request
from flask_limiter.util import get_remote_address

logger = logging.getLogger(__name__)

HEAVY_BLUEPRINTS = ("export_bp", "rka_import_bp")
EXEMPT_BLUEPRINTS = ("health_bp", "webhook_bp")


def user_or_ip_key():
    """Rate limit key: authenticated user if available, else remote IP."""
    user = getattr(g, "current_user", None)
    if user is not None:
        return f"user:{user.id}"
    return get_remote_address() or flask_request.remote_addr or "unknown"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to registered blueprints.

    Rate limiting is skipped when RATELIMIT_ENABLED is false (tests).
    """
    if not app.config.get("RATELIMIT_ENABLED", True):
        app.logger.info("Rate limiter disabled (RATELIMIT_ENABLED=False)")
        return

    general = f"{int(app.config['GENERAL_RATE_LIMIT_PER_MINUTE'])}/minute"
    heavy = f"{int(app.config['PDF_RATE_LIMIT_PER_MINUTE'])}/minute"

    for name, bp in app.blueprints.items():
        if name in EXEMPT_BLUEPRINTS:
            limiter.exempt(bp)
        elif name in HEAVY_BLUEPRINTS:
            limiter.limit(heavy, key_func=user_or_ip_key)(bp)
        else:
            limiter.limit(general)(bp)

    app.logger.info("Rate limiter configured: general %s, heavy %s", general, heavy)
