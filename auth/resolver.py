"""
auth/resolver.py -- Decide the outcome of an inbound authentication event.

resolve(event) returns Authenticated or StagingCreated, or raises one of the
IdentityError subclasses. The resolver never establishes a session itself;
the caller hands an Authenticated user to the session layer.

Local login (LocalCredentials):
  domain check -> user lookup -> lockout check -> bcrypt verify.
  bcrypt runs even for unknown usernames so timing does not reveal which
  usernames exist [C1]. Unknown user and wrong password produce the same
  InvalidCredentials; the specific reason only goes to the log.

Federated login (FederatedAssertion), keyed on the signed LinkState action:
  login -- a subject already linked to a user authenticates as that user.
           An unknown subject gets a staging identity (find-or-create, backed
           by UNIQUE(subject) so concurrent callbacks share one record).
  link  -- data.h is a raw account-link token naming the user to merge into.
           The merge is one store transaction of conditional updates; losing a
           race surfaces as LinkExpired.
"""

from __future__ import annotations

import logging
import secrets
import uuid
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy.exc import IntegrityError

from auth.errors import (
    AccountLocked,
    InvalidCredentials,
    InvalidDomain,
    LinkExpired,
    NotAuthorized,
    StoreConflict,
    TokenExpired,
    TokenNotFound,
)
from auth.models import (
    ACCOUNT_LINK,
    ACTION_LINK,
    ACTION_LOGIN,
    STAGING_PENDING,
    Authenticated,
    FederatedAssertion,
    LocalCredentials,
    LoginEvent,
    Outcome,
    StagingCreated,
    StagingIdentity,
)
from auth.policy import is_valid_government_email
from auth.store import CredentialStore
from auth.token_service import TokenService
from auth.tokens import DUMMY_HASH, verify_password
from core.config import Settings

logger = logging.getLogger("openopps.auth.resolver")


@dataclass(frozen=True)
class ResolverConfig:
    federated_login_enabled: bool = False
    max_failed_attempts: int = 5
    staging_ttl: timedelta = timedelta(hours=24)
    allowed_email_suffixes: tuple[str, ...] = (".gov", ".mil")

    @classmethod
    def from_settings(cls, settings: Settings) -> "ResolverConfig":
        return cls(
            federated_login_enabled=settings.federated_login_enabled,
            max_failed_attempts=settings.max_failed_attempts,
            staging_ttl=timedelta(seconds=settings.staging_ttl_seconds),
            allowed_email_suffixes=tuple(settings.allowed_email_suffixes),
        )


def normalize_username(username: str | None) -> str:
    return (username or "").strip().lower()


class IdentityResolver:
    def __init__(self, store: CredentialStore, tokens: TokenService, config: ResolverConfig) -> None:
        self.store = store
        self.tokens = tokens
        self.config = config

    def resolve(self, event: LoginEvent) -> Outcome:
        if isinstance(event, LocalCredentials):
            return self._resolve_local(event)
        if isinstance(event, FederatedAssertion):
            return self._resolve_federated(event)
        raise TypeError(f"Unsupported login event: {type(event).__name__}")

    # ------------------------------------------------------------------
    # Local credentials
    # ------------------------------------------------------------------

    def _resolve_local(self, event: LocalCredentials) -> Authenticated:
        username = normalize_username(event.username)
        if not is_valid_government_email(username, self.config.allowed_email_suffixes):
            raise InvalidDomain(f"username {username!r} is not on an allowed domain")

        user = self.store.find_user_by_username(username)
        passport = self.store.find_passport_by_user_id(user.id) if user is not None else None
        if user is None or passport is None:
            # Equalize timing -- do NOT return before running bcrypt [C1]
            verify_password(event.password, DUMMY_HASH)
            raise InvalidCredentials("no local credentials for username")

        if passport.failed_attempts >= self.config.max_failed_attempts:
            raise AccountLocked(f"user_id={user.id} has {passport.failed_attempts} failed attempts")

        if not verify_password(event.password, passport.hashed_password):
            self.store.record_login_failure(user.id)
            raise InvalidCredentials(f"password mismatch for user_id={user.id}")

        if not user.is_active:
            raise InvalidCredentials(f"user_id={user.id} is disabled")

        self.store.record_login_success(user.id)
        return Authenticated(user)

    # ------------------------------------------------------------------
    # Federated assertions
    # ------------------------------------------------------------------

    def _resolve_federated(self, event: FederatedAssertion) -> Outcome:
        if not self.config.federated_login_enabled:
            raise NotAuthorized("federated login is disabled")
        if not event.subject:
            raise NotAuthorized("assertion carries no subject")

        action = event.link_state.action
        if action == ACTION_LOGIN:
            return self._federated_login(event)
        if action == ACTION_LINK:
            return self._federated_link(event)
        raise NotAuthorized(f"unknown link state action {action!r}")

    def _federated_login(self, event: FederatedAssertion) -> Outcome:
        user = self.store.find_user_by_subject(event.subject)
        if user is not None:
            if not user.is_active:
                raise NotAuthorized(f"linked user_id={user.id} is disabled")
            self.store.record_login_success(user.id)
            return Authenticated(user)
        staging = self._find_or_create_staging(event.subject, event.claims.get("email"))
        logger.info("Federated subject has no linked account; staging id=%s", staging.id)
        return StagingCreated(staging)

    def _federated_link(self, event: FederatedAssertion) -> Authenticated:
        raw = event.link_state.data.get("h")
        try:
            token = self.tokens.check(raw, purpose=ACCOUNT_LINK)
        except (TokenNotFound, TokenExpired) as exc:
            raise LinkExpired(f"account-link token unusable: {exc.detail}") from exc

        target = self.store.find_user_by_id(token.user_id)
        if target is None or not target.is_active:
            raise LinkExpired(f"link target user_id={token.user_id} is gone or disabled")

        linked = self.store.find_user_by_subject(event.subject)
        if linked is not None and linked.id != target.id:
            raise NotAuthorized(f"subject already linked to user_id={linked.id}")
        if target.federated_subject is not None and target.federated_subject != event.subject:
            raise NotAuthorized(f"user_id={target.id} is linked to another subject")
        if linked is not None:
            # Already merged by an earlier link; the token is still single-use.
            try:
                self.tokens.consume(token)
            except TokenNotFound as exc:
                raise LinkExpired("account-link token consumed concurrently") from exc
            self.store.record_login_success(target.id)
            return Authenticated(linked)

        staging = self._find_or_create_staging(event.subject, event.claims.get("email"))
        if token.correlation_id is not None and token.correlation_id != staging.linked_id:
            raise NotAuthorized(f"token was requested for staging {token.correlation_id}, not {staging.linked_id}")

        try:
            self.store.merge_staging(staging.id, target.id, event.subject, token.token_hash, self.tokens.clock())
        except StoreConflict as exc:
            raise LinkExpired(f"merge lost a race: {exc}") from exc

        logger.info("Linked federated subject into user_id=%s (staging id=%s retired)", target.id, staging.id)
        merged = self.store.find_user_by_id(target.id)
        self.store.record_login_success(target.id)
        return Authenticated(merged)

    # ------------------------------------------------------------------
    # Staging identities
    # ------------------------------------------------------------------

    def _new_staging(self, subject: str, email: str | None) -> StagingIdentity:
        return StagingIdentity(
            subject=subject,
            email=normalize_username(email) or None,
            linked_id=uuid.uuid4().hex,
            hash=secrets.token_hex(16),
            expires_at=self.tokens.clock() + self.config.staging_ttl,
        )

    def _find_or_create_staging(self, subject: str, email: str | None) -> StagingIdentity:
        """Return the live staging record for subject, creating or re-arming one as needed."""
        existing = self.store.find_staging_by_subject(subject)
        if existing is None:
            try:
                return self.store.create_staging(self._new_staging(subject, email))
            except IntegrityError:
                # A concurrent callback for the same subject inserted first.
                existing = self.store.find_staging_by_subject(subject)
                if existing is None:
                    raise
        if existing.status == STAGING_PENDING and self.tokens.clock() < existing.expires_at:
            return existing
        try:
            return self.store.renew_staging(existing.id, existing.hash, self._new_staging(subject, email))
        except StoreConflict:
            renewed = self.store.find_staging_by_subject(subject)
            if renewed is None:
                raise LinkExpired("staging record for subject vanished during renewal")
            return renewed
