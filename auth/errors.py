"""
auth/errors.py -- Closed error taxonomy for the identity workflow.

Every failure the workflow can report is one ErrorKind. Each kind has exactly
one exception class so callers can either catch a specific failure
(`except TokenExpired`) or the whole family (`except IdentityError`) and
switch on `exc.kind`.

Two messages travel with every error:
  public_message -- generic, non-leaking text safe to return to a client.
                    Fixed per class; never varies with the input.
  detail         -- the specific internal reason (which lookup failed, which
                    field was bad). Logged, never serialized into a response.

Layer rule: no imports from api/ or core/. Pure stdlib.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    INVALID_CREDENTIALS = "invalid_credentials"
    INVALID_DOMAIN = "invalid_domain"
    ACCOUNT_LOCKED = "account_locked"
    WEAK_PASSWORD = "weak_password"
    LINK_EXPIRED = "link_expired"
    NOT_AUTHORIZED = "not_authorized"
    TOKEN_NOT_FOUND = "token_not_found"
    TOKEN_EXPIRED = "token_expired"
    DUPLICATE_USERNAME = "duplicate_username"
    INVALID_FIELD = "invalid_field"
    STORE_UNAVAILABLE = "store_unavailable"


class IdentityError(Exception):
    """Base class for every workflow failure."""

    kind: ErrorKind
    status_code: int = 400
    public_message: str = "The request could not be completed."

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.public_message)
        self.detail = detail

    def to_dict(self) -> dict:
        """Return the client-safe error payload: code and generic message only."""
        return {"code": self.kind.value, "message": self.public_message}


class InvalidCredentials(IdentityError):
    kind = ErrorKind.INVALID_CREDENTIALS
    status_code = 401
    public_message = "Invalid email address or password."


class InvalidDomain(IdentityError):
    kind = ErrorKind.INVALID_DOMAIN
    status_code = 400
    public_message = "You need to have a .gov or .mil email address."


class AccountLocked(IdentityError):
    kind = ErrorKind.ACCOUNT_LOCKED
    status_code = 403
    public_message = "Your account has been locked, please reset your password."


class WeakPassword(IdentityError):
    kind = ErrorKind.WEAK_PASSWORD
    status_code = 400
    public_message = "Password does not meet password rules."


class LinkExpired(IdentityError):
    kind = ErrorKind.LINK_EXPIRED
    status_code = 400
    public_message = "This link has expired. Please start again."


class NotAuthorized(IdentityError):
    kind = ErrorKind.NOT_AUTHORIZED
    status_code = 403
    public_message = "Not authorized."


class TokenNotFound(IdentityError):
    kind = ErrorKind.TOKEN_NOT_FOUND
    status_code = 400
    public_message = "Invalid token."


class TokenExpired(IdentityError):
    kind = ErrorKind.TOKEN_EXPIRED
    status_code = 400
    public_message = "This token has expired."


class DuplicateUsername(IdentityError):
    kind = ErrorKind.DUPLICATE_USERNAME
    status_code = 409
    public_message = "A record with that email address already exists."


class InvalidField(IdentityError):
    """A required field is missing or a field holds forbidden characters.

    `field` names the offending attribute; it is part of the public payload
    because it describes the caller's own input, not stored state.
    """

    kind = ErrorKind.INVALID_FIELD
    status_code = 400
    public_message = "One or more fields are missing or contain invalid characters."

    def __init__(self, field: str, detail: str | None = None) -> None:
        super().__init__(detail)
        self.field = field

    def to_dict(self) -> dict:
        payload = super().to_dict()
        payload["field"] = self.field
        return payload


class StoreUnavailable(IdentityError):
    kind = ErrorKind.STORE_UNAVAILABLE
    status_code = 503
    public_message = "The service is temporarily unavailable."


class StoreConflict(Exception):
    """A conditional update found the record outside its expected pre-state.

    Internal to the store/workflow seam: the workflow translates it into the
    domain error for the operation in progress (TokenNotFound, LinkExpired).
    """
