"""
auth/token_service.py -- Issue, check, and consume single-use tokens.

Lifecycle of a token:
  issue()   -> stored (hash only), unconsumed, expires_at = now + window
  check()   -> Token while now < expires_at and unconsumed
               TokenExpired once now >= expires_at (never reverts)
               TokenNotFound when unknown, consumed, or issued for another purpose
  consume() -> conditional update; the second consume of the same token raises
               TokenNotFound, so a replayed token can never succeed twice

Expiry is judged at check time against an injectable clock, not at issue time.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from auth.errors import StoreConflict, TokenExpired, TokenNotFound
from auth.models import ACCOUNT_LINK, EMAIL_CONFIRM, PASSWORD_RESET, TOKEN_PURPOSES, Token
from auth.store import CredentialStore
from auth.tokens import generate_token, hash_token, normalize_token
from core.config import Settings

logger = logging.getLogger("openopps.auth.tokens")

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenService:
    def __init__(
        self,
        store: CredentialStore,
        windows: dict[str, timedelta],
        clock: Clock = utcnow,
    ) -> None:
        unknown = set(windows) - set(TOKEN_PURPOSES)
        if unknown:
            raise ValueError(f"Unknown token purposes: {unknown!r}")
        self.store = store
        self.windows = windows
        self.clock = clock

    @classmethod
    def from_settings(cls, store: CredentialStore, settings: Settings, clock: Clock = utcnow) -> "TokenService":
        return cls(
            store,
            {
                PASSWORD_RESET: timedelta(seconds=settings.password_reset_ttl_seconds),
                EMAIL_CONFIRM: timedelta(seconds=settings.email_confirm_ttl_seconds),
                ACCOUNT_LINK: timedelta(seconds=settings.account_link_ttl_seconds),
            },
            clock,
        )

    def issue(self, purpose: str, user_id: int, email: str, correlation_id: str | None = None) -> Token:
        """Create and store a token. The returned object is the only place the raw value exists."""
        if purpose not in self.windows:
            raise ValueError(f"No expiry window configured for purpose {purpose!r}")
        raw = generate_token()
        token = Token(
            purpose=purpose,
            user_id=user_id,
            email=email,
            token_hash=hash_token(raw),
            expires_at=self.clock() + self.windows[purpose],
            value=normalize_token(raw),
            correlation_id=correlation_id,
        )
        token.id = self.store.insert_token(token)
        logger.info("Issued %s token for user_id=%s", purpose, user_id)
        return token

    def check(self, raw: str | None, purpose: str | None = None) -> Token:
        """Return the stored token for raw if it is still usable.

        Raises:
            TokenNotFound: empty input, unknown token, already consumed, or
                           issued for a different purpose.
            TokenExpired:  known and unconsumed, but now >= expires_at.
        """
        if not raw or not raw.strip():
            raise TokenNotFound("empty token")
        token = self.store.find_token(hash_token(raw))
        if token is None:
            raise TokenNotFound("unknown token")
        if token.consumed_at is not None:
            raise TokenNotFound(f"token {token.id} already consumed")
        if purpose is not None and token.purpose != purpose:
            raise TokenNotFound(f"token {token.id} has purpose {token.purpose!r}, wanted {purpose!r}")
        if self.clock() >= token.expires_at:
            raise TokenExpired(f"token {token.id} expired at {token.expires_at.isoformat()}")
        return token

    def consume(self, token: Token) -> None:
        """Mark token used. Raises TokenNotFound if it was already consumed."""
        try:
            self.store.consume_token(token.token_hash, self.clock())
        except StoreConflict as exc:
            raise TokenNotFound(f"token {token.id} already consumed") from exc

    def sweep(self) -> tuple[int, int]:
        """Delete expired tokens and staging identities."""
        removed = self.store.purge_expired(self.clock())
        if any(removed):
            logger.info("Expiry sweep removed %d tokens and %d staging identities", *removed)
        return removed
