# settlement/security/auth.py
# ─────────────────────────────────────────────────────────────────────────────
# Bearer (JWT) auth + admin role gate for the settlement API
# ─────────────────────────────────────────────────────────────────────────────
from __future__ import annotations

import hmac
import logging
import time
from functools import wraps
from typing import Any, Dict, Optional

import jwt  # PyJWT
from flask import current_app, g, request

from settlement.errors import AuthenticationError, AuthorizationError
from settlement.extensions import db
from settlement.models import Profile, UserRole

log = logging.getLogger(__name__)


def _cfg(key: str, default: Any = None) -> Any:
    return current_app.config.get(key, default)


def _bearer_token() -> Optional[str]:
    """Extract bearer token from request headers."""
    h = request.headers.get("Authorization", "")
    return h.split(" ", 1)[1].strip() if h.lower().startswith("bearer ") else None


def _decode(tok: str) -> Dict[str, Any]:
    aud = _cfg("JWT_AUDIENCE") or None
    try:
        return jwt.decode(
            tok,
            key=str(_cfg("JWT_SECRET", "") or ""),
            algorithms=[str(_cfg("JWT_ALG", "HS256") or "HS256")],
            audience=aud,
            options={"verify_aud": bool(aud)},
        )
    except jwt.PyJWTError as e:
        raise AuthenticationError(f"Invalid bearer token: {e}")


def _cron_secret_ok() -> bool:
    expected = str(_cfg("CRON_SECRET", "") or "")
    given = request.headers.get("X-Cron-Secret", "")
    return bool(expected and given) and hmac.compare_digest(given, expected)


def issue_token(profile_id: int, *, ttl: int = 3600, secret: Optional[str] = None) -> str:
    """Mint an HS256 token whose ``sub`` is the profile id."""
    now = int(time.time())
    claims: Dict[str, Any] = {"sub": str(profile_id), "iat": now, "exp": now + ttl}
    aud = _cfg("JWT_AUDIENCE")
    if aud:
        claims["aud"] = aud
    return jwt.encode(
        claims,
        secret or str(_cfg("JWT_SECRET", "") or ""),
        algorithm=str(_cfg("JWT_ALG", "HS256") or "HS256"),
    )


def authenticate_admin() -> Profile:
    tok = _bearer_token()
    if not tok:
        raise AuthenticationError("Missing bearer token")

    claims = _decode(tok)
    try:
        profile_id = int(claims.get("sub"))
    except (TypeError, ValueError):
        raise AuthenticationError("Token subject is not a profile id")

    profile = db.session.get(Profile, profile_id)
    if profile is None:
        raise AuthenticationError("Unknown user")
    if not UserRole.is_admin(profile.id):
        log.warning("auth: profile %s denied (not admin/owner)", profile.id)
        raise AuthorizationError("Admin or owner role required")
    return profile


def require_admin(allow_cron: bool = False):
    """
    Decorator: admin/owner bearer token, or (when ``allow_cron``) a matching
    ``X-Cron-Secret`` header. Sets ``g.caller``.

        @bp.post("/donations/recalculate-amounts")
        @require_admin(allow_cron=True)
        def recalc(): ...
    """

    def decorator(fn):
        @wraps(fn)
        def wrapped(*args, **kwargs):
            if allow_cron and _cron_secret_ok():
                g.caller = "cron"
            else:
                g.caller = f"profile:{authenticate_admin().id}"
            return fn(*args, **kwargs)

        return wrapped

    return decorator


__all__ = ["authenticate_admin", "issue_token", "require_admin"]
