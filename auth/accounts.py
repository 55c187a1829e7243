"""
auth/accounts.py -- Registration, profile update, and password lifecycle.

State machine over a User record:
  Unregistered -> Active   register()
  Active -> Active         update_profile(), change_password()
  Active -> Active         request_password_reset() + reset_password()

Rules that hold for every operation here:
  - is_admin / is_agency_admin are removed from client payloads before anything
    else happens. They are never written from this module.
  - All input validation (required fields, domain, forbidden characters,
    password policy) completes before the first store write, so a rejected
    request leaves no partial state behind.
  - Multi-record writes (user + passport, fields + tags, token + passport) go
    through a single store transaction.

Notifications are not sent from here. Methods return what the caller needs to
schedule them (the new User, the issued Token) and the HTTP layer dispatches
them after the response via auth.notify.deliver().
"""

from __future__ import annotations

import hmac
import logging
import re
from typing import Any

from sqlalchemy.exc import IntegrityError

from auth.errors import (
    DuplicateUsername,
    InvalidDomain,
    InvalidField,
    LinkExpired,
    NotAuthorized,
    StoreConflict,
    TokenNotFound,
    WeakPassword,
)
from auth.models import ACCOUNT_LINK, PASSWORD_RESET, STAGING_PENDING, Token, User
from auth.policy import PasswordPolicy, is_valid_government_email
from auth.resolver import normalize_username
from auth.store import CredentialStore
from auth.token_service import TokenService
from auth.tokens import hash_password

logger = logging.getLogger("openopps.auth.accounts")

# Admin flags in every spelling a client might send.
PROTECTED_FIELDS = ("is_admin", "is_agency_admin", "isAdmin", "isAgencyAdmin")

_FORBIDDEN_CHARS = re.compile(r"[<>]")
_TEXT_FIELDS = ("name", "title")


def strip_protected(payload: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of payload without any admin flag."""
    return {k: v for k, v in payload.items() if k not in PROTECTED_FIELDS}


def _check_text_fields(payload: dict[str, Any]) -> None:
    for name in _TEXT_FIELDS:
        value = payload.get(name) or ""
        if _FORBIDDEN_CHARS.search(value):
            raise InvalidField(name, f"{name} contains < or >")


def _normalize_tags(tags: Any) -> list[str]:
    if tags is None:
        return []
    if isinstance(tags, str):
        tags = [tags]
    cleaned = []
    for tag in tags:
        tag = str(tag).strip()
        if not tag:
            continue
        if _FORBIDDEN_CHARS.search(tag):
            raise InvalidField("tags", "tag contains < or >")
        cleaned.append(tag)
    return cleaned


class AccountService:
    def __init__(
        self,
        store: CredentialStore,
        tokens: TokenService,
        policy: PasswordPolicy,
        allowed_email_suffixes: tuple[str, ...] = (".gov", ".mil"),
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.policy = policy
        self.allowed_email_suffixes = allowed_email_suffixes

    def _require_government_username(self, payload: dict[str, Any]) -> str:
        username = normalize_username(payload.get("username"))
        if not username:
            raise InvalidField("username", "username is required")
        if not is_valid_government_email(username, self.allowed_email_suffixes):
            raise InvalidDomain(f"username {username!r} is not on an allowed domain")
        return username

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, payload: dict[str, Any]) -> User:
        """Create an account with a local password.

        Raises InvalidField, InvalidDomain, WeakPassword, or DuplicateUsername.
        """
        payload = strip_protected(payload)
        username = self._require_government_username(payload)
        _check_text_fields(payload)
        tags = _normalize_tags(payload.get("tags"))
        password = payload.get("password")
        if not self.policy.validate(password, username):
            raise WeakPassword(f"registration password rejected for {username!r}")

        user = User(
            username=username,
            name=(payload.get("name") or "").strip(),
            title=(payload.get("title") or "").strip(),
            tags=tags,
        )
        try:
            user_id = self.store.insert_user(user, hash_password(password))
        except IntegrityError as exc:
            raise DuplicateUsername(f"username {username!r} already registered") from exc

        logger.info("Registered user_id=%s", user_id)
        return self.store.find_user_by_id(user_id)

    # ------------------------------------------------------------------
    # Profile
    # ------------------------------------------------------------------

    def update_profile(self, user_id: int, payload: dict[str, Any], actor: User) -> User:
        """Replace a user's profile fields and full tag set.

        The actor must be the user or an admin. Raises NotAuthorized,
        InvalidField, InvalidDomain, DuplicateUsername.
        """
        if actor.id != user_id and not actor.is_admin:
            raise NotAuthorized(f"user_id={actor.id} may not edit user_id={user_id}")
        if self.store.find_user_by_id(user_id) is None:
            raise NotAuthorized(f"user_id={user_id} does not exist")

        payload = strip_protected(payload)
        _check_text_fields(payload)
        username = self._require_government_username(payload)
        tags = _normalize_tags(payload.get("tags"))
        if self.store.username_taken(username, exclude_id=user_id):
            raise DuplicateUsername(f"username {username!r} belongs to another record")

        fields = {
            "username": username,
            "name": (payload.get("name") or "").strip(),
            "title": (payload.get("title") or "").strip(),
        }
        try:
            updated = self.store.update_profile(user_id, fields, tags)
        except IntegrityError as exc:
            # Lost a race with another request claiming the same username.
            raise DuplicateUsername(f"username {username!r} claimed concurrently") from exc
        if not updated:
            raise NotAuthorized(f"user_id={user_id} disappeared during update")
        return self.store.find_user_by_id(user_id)

    def change_password(self, user_id: int, password: str, actor: User) -> None:
        if actor.id != user_id and not actor.is_admin:
            raise NotAuthorized(f"user_id={actor.id} may not change password of user_id={user_id}")
        user = self.store.find_user_by_id(user_id)
        if user is None:
            raise NotAuthorized(f"user_id={user_id} does not exist")
        if not self.policy.validate(password, user.username):
            raise WeakPassword(f"new password rejected for user_id={user_id}")
        self.store.update_passport(user_id, hash_password(password))
        logger.info("Password changed for user_id=%s", user_id)

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    def request_password_reset(self, username: str | None) -> Token | None:
        """Issue a reset token for an existing account.

        Returns None, and issues nothing, when no account matches. Callers
        must answer the same way in both cases so the endpoint cannot be used
        to discover which addresses are registered.
        """
        username = normalize_username(username)
        if not username:
            raise InvalidField("username", "username is required")
        user = self.store.find_user_by_username(username)
        if user is None or not user.is_active:
            logger.info("Password reset requested for unknown or disabled account")
            return None
        return self.tokens.issue(PASSWORD_RESET, user.id, user.username)

    def check_reset_token(self, raw: str | None) -> Token:
        return self.tokens.check(raw, purpose=PASSWORD_RESET)

    def reset_password(self, raw: str | None, password: str | None) -> User:
        """Set a new password using a reset token.

        The token is checked first, then the password is validated against the
        token's bound email. Only when both pass does one store transaction
        consume the token and write the passport; a WeakPassword leaves the
        token usable and the old password in place.
        """
        token = self.check_reset_token(raw)
        if not self.policy.validate(password, token.email):
            raise WeakPassword(f"reset password rejected for user_id={token.user_id}")
        user = self.store.find_user_by_id(token.user_id)
        if user is None:
            raise TokenNotFound(f"token {token.id} is bound to a missing user")
        try:
            self.store.reset_password(user.id, hash_password(password), token.token_hash, self.tokens.clock())
        except StoreConflict as exc:
            raise TokenNotFound(f"token {token.id} consumed concurrently") from exc
        logger.info("Password reset completed for user_id=%s", user.id)
        return user

    # ------------------------------------------------------------------
    # Find-your-profile (account linking handshake)
    # ------------------------------------------------------------------

    def send_find_profile_confirmation(self, linked_id: str | None, hash_: str | None, email: str | None) -> Token | None:
        """Start linking a staging identity to the existing account that owns email.

        The caller proves it came from the federated callback by presenting the
        staging record's correlation id and hash. An account-link token bound to
        both the target user and the staging record is issued and returned for
        delivery to the account's address. Unknown addresses return None
        without disclosing that fact.

        Raises LinkExpired if the staging record is missing, retired, expired,
        or the hash does not match; InvalidField/InvalidDomain for bad email.
        """
        staging = self.store.find_staging_by_linked_id(linked_id) if linked_id else None
        if (
            staging is None
            or staging.status != STAGING_PENDING
            or not hash_
            or not hmac.compare_digest(staging.hash, hash_.strip())
            or self.tokens.clock() >= staging.expires_at
        ):
            raise LinkExpired("staging record missing, retired, expired or hash mismatch")

        username = self._require_government_username({"username": email})
        user = self.store.find_user_by_username(username)
        if user is None or not user.is_active:
            logger.info("Find-profile request for unknown account (staging id=%s)", staging.id)
            return None
        return self.tokens.issue(ACCOUNT_LINK, user.id, user.username, correlation_id=staging.linked_id)
