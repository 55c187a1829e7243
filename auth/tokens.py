"""
auth/tokens.py -- Password hashing, session JWTs, token hashing, and LinkState signing.

Security design decisions:
  Passwords: bcrypt directly (no passlib wrapper). The _DUMMY_HASH constant
       enables timing equalization in the local-login path so response time
       does not reveal whether a username exists [C1].

  Session JWT: python-jose with HS256, signed with SECRET_KEY, carrying
       user_id, username, admin flag and expiry. Verification returns None on
       any failure -- the route layer turns that into a 401.

  One-time tokens: secrets.token_hex(20) gives 160 bits of entropy. The store
       keeps HMAC-SHA256(SECRET_KEY, normalized_token) so a leaked database
       does not leak usable reset links, and lookup stays O(1).

  LinkState: the {action, redirect, data} payload that rides through the
       federated provider round trip is a signed JWT with its own short expiry,
       not client-echoed JSON. A modified or foreign payload fails signature
       verification and is rejected rather than trusted.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from datetime import datetime, timedelta, timezone
from urllib.parse import urlparse

import bcrypt
from jose import ExpiredSignatureError, JWTError, jwt

from auth.errors import LinkExpired, NotAuthorized
from auth.models import ACTION_LINK, ACTION_LOGIN, LinkState
from core.config import get_settings

logger = logging.getLogger("openopps.auth")

# ---------------------------------------------------------------------------
# Config -- read once at module load via the lru_cache singleton [M6]
# ---------------------------------------------------------------------------

_settings = get_settings()

_ALGORITHM = "HS256"
_LINK_STATE_AUDIENCE = "openopps:link-state"

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt rejects input beyond 72 bytes with ValueError; PasswordPolicy
    refuses such passwords before any caller gets here.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


# Timing equalization dummy hash [C1]. Computed once at module load so the
# first login attempt is not measurably slower than subsequent ones.
DUMMY_HASH: str = hash_password("openopps_timing_dummy")


# ---------------------------------------------------------------------------
# Session JWT encode / decode
# ---------------------------------------------------------------------------


def create_access_token(user_id: int, username: str, is_admin: bool, expire_seconds: int = 0) -> str:
    """Encode a signed session JWT.

    Args:
        user_id:        Numeric user ID stored in the DB.
        username:       Username stored as the JWT subject claim.
        is_admin:       Admin flag, informational only -- authorization
                        decisions re-read the user record.
        expire_seconds: Session duration in seconds. 0 means
                        Settings.token_expire_seconds.
    """
    duration = expire_seconds if expire_seconds > 0 else _settings.token_expire_seconds
    expire = datetime.now(timezone.utc) + timedelta(seconds=duration)
    payload = {
        "sub": username,
        "user_id": user_id,
        "admin": is_admin,
        "exp": expire,
    }
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def decode_access_token(token: str) -> dict | None:
    """Decode and verify a session JWT. Returns the payload dict or None on any failure."""
    try:
        payload = jwt.decode(token, _settings.secret_key, algorithms=[_ALGORITHM])
        if "user_id" not in payload:
            return None
        return payload
    except JWTError:
        return None


def set_auth_cookie(response, token: str, expire_seconds: int = 0) -> None:
    """Write the session JWT as an httpOnly, samesite=lax cookie.

    max_age matches the JWT expiry so both expire together.
    """
    duration = expire_seconds if expire_seconds > 0 else _settings.token_expire_seconds
    response.set_cookie(
        "access_token",
        value=token,
        httponly=True,
        samesite="lax",
        secure=_settings.secure_cookies,
        max_age=duration,
    )


# ---------------------------------------------------------------------------
# One-time token generation and hashing
# ---------------------------------------------------------------------------


def generate_token() -> str:
    """Return a new raw one-time token: 40 lowercase hex chars (160 bits)."""
    return secrets.token_hex(20)


def normalize_token(raw: str) -> str:
    """Canonical form used before hashing, both at issue and at lookup."""
    return raw.strip().lower()


def hash_token(raw: str) -> str:
    """Return HMAC-SHA256(SECRET_KEY, normalized token) as a hex string."""
    return hmac.new(
        _settings.secret_key.encode(),
        normalize_token(raw).encode(),
        hashlib.sha256,
    ).hexdigest()


# ---------------------------------------------------------------------------
# LinkState signing
# ---------------------------------------------------------------------------


def safe_redirect(value: str | None) -> str | None:
    """Return value as a same-site absolute path, or None if it points off-site.

    Only the path, query and fragment of a relative reference survive; anything
    with a scheme, a host, or a protocol-relative prefix is dropped
    (open-redirect prevention).
    """
    if not value:
        return None
    value = value.strip()
    if value.startswith("//") or "\\" in value:
        return None
    parsed = urlparse(value)
    if parsed.scheme or parsed.netloc:
        return None
    path = "/" + value.lstrip("/")
    return path if path != "/" else None


def encode_link_state(state: LinkState, expire_seconds: int = 0) -> str:
    """Sign a LinkState for the federated round trip."""
    duration = expire_seconds if expire_seconds > 0 else _settings.link_state_ttl_seconds
    payload = {
        "aud": _LINK_STATE_AUDIENCE,
        "action": state.action,
        "redirect": safe_redirect(state.redirect),
        "data": state.data,
        "exp": datetime.now(timezone.utc) + timedelta(seconds=duration),
        "nonce": secrets.token_hex(8),
    }
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def decode_link_state(raw: str | None) -> LinkState:
    """Verify and decode a LinkState emitted by encode_link_state().

    Raises:
        LinkExpired:   the signature is valid but the state is past its expiry.
        NotAuthorized: missing, malformed, tampered, or foreign payload.
    """
    if not raw:
        raise NotAuthorized("missing link state")
    try:
        payload = jwt.decode(raw, _settings.secret_key, algorithms=[_ALGORITHM], audience=_LINK_STATE_AUDIENCE)
    except ExpiredSignatureError as exc:
        raise LinkExpired("link state expired") from exc
    except JWTError as exc:
        raise NotAuthorized(f"link state rejected: {exc}") from exc

    action = payload.get("action")
    data = payload.get("data") or {}
    if action not in (ACTION_LOGIN, ACTION_LINK) or not isinstance(data, dict):
        raise NotAuthorized(f"link state has unexpected shape: action={action!r}")
    return LinkState(action=action, redirect=safe_redirect(payload.get("redirect")), data=data)
