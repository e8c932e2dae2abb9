"""
JWT Service: identity-provider session token verification.

Clerk session tokens are verified locally:
    RS256 with CLERK_JWT_PUBLIC_KEY (PEM) when configured,
    otherwise HS256 with CLERK_SECRET_KEY.

Token payload (relevant claims):
{
    "sub": <clerk user id>,
    "org_id": <clerk organization id, optional>,
    "iat": <issued_at>,
    "exp": <expires_at>
}

``issue_session_token`` mints HS256 tokens in the same shape; it is used
by the test suite and local tooling.
"""

import uuid
from datetime import datetime, timedelta, timezone

import jwt
from flask import current_app

DEFAULT_EXPIRES = 3600
LEEWAY_SECONDS = 5


def _verification_key() -> tuple[str, str]:
    public_key = current_app.config.get("CLERK_JWT_PUBLIC_KEY")
    if public_key:
        return public_key.replace("\\n", "\n"), "RS256"
    secret = current_app.config.get("CLERK_SECRET_KEY")
    if not secret:
        raise jwt.InvalidTokenError("No session token verification key configured")
    return secret, "HS256"


# ═══════════════════════════════════════════════════════════════
# Token Verification
# ═══════════════════════════════════════════════════════════════
def decode_session_token(token: str) -> dict:
    """
    Decode and verify a session token.

    Returns the payload dict on success.
    Raises jwt.exceptions on failure (ExpiredSignatureError, InvalidTokenError, etc.)
    """
    key, algorithm = _verification_key()
    payload = jwt.decode(
        token,
        key,
        algorithms=[algorithm],
        leeway=LEEWAY_SECONDS,
        options={"require": ["sub", "exp"]},
    )
    if not isinstance(payload.get("sub"), str) or not payload["sub"]:
        raise jwt.InvalidTokenError("Token subject must be a non-empty string")
    return payload


# ═══════════════════════════════════════════════════════════════
# Token Generation
# ═══════════════════════════════════════════════════════════════
def issue_session_token(clerk_user_id: str, expires_in: int = DEFAULT_EXPIRES, **claims) -> str:
    """Generate an HS256 session token signed with CLERK_SECRET_KEY."""
    now = datetime.now(timezone.utc)
    payload = {
        "sub": clerk_user_id,
        "iat": now,
        "exp": now + timedelta(seconds=expires_in),
        "jti": str(uuid.uuid4()),
        **claims,
    }
    return jwt.encode(payload, current_app.config["CLERK_SECRET_KEY"], algorithm="HS256")
