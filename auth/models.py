"""
auth/models.py -- Domain dataclasses for identity entities.

Pattern: Data class (pure data container, zero logic). Dataclasses own domain
shape; the store and the workflow services do the work.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Union

# Token purposes
EMAIL_CONFIRM = "email-confirm"
PASSWORD_RESET = "password-reset"
ACCOUNT_LINK = "account-link"
TOKEN_PURPOSES = (EMAIL_CONFIRM, PASSWORD_RESET, ACCOUNT_LINK)

# Staging identity states
STAGING_PENDING = "pending"
STAGING_RETIRED = "retired"

# LinkState actions
ACTION_LOGIN = "login"
ACTION_LINK = "link"


@dataclass
class User:
    """A person with a government email address.

    username is the email address, stored lowercased and trimmed. is_admin and
    is_agency_admin are only ever written by operators, never from a client
    payload. federated_subject is None until a federated identity is linked.
    """

    username: str
    id: int | None = None
    name: str = ""
    title: str = ""
    is_admin: bool = False
    is_agency_admin: bool = False
    is_active: bool = True
    federated_subject: str | None = None
    tags: list[str] = field(default_factory=list)
    created_at: str | None = None
    updated_at: str | None = None
    last_login: str | None = None


@dataclass
class Passport:
    """Local credential record, owned 1:1 by a User."""

    user_id: int
    hashed_password: str
    id: int | None = None
    failed_attempts: int = 0
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class StagingIdentity:
    """Provisional record for a federated subject that matched no linked User.

    linked_id is the correlation id shown to the person in the "find your
    profile" flow; hash is the secret that proves they came from the callback.
    A staging identity never authenticates a session on its own.
    """

    subject: str
    linked_id: str
    hash: str
    expires_at: datetime
    email: str | None = None
    status: str = STAGING_PENDING
    id: int | None = None
    created_at: str | None = None


@dataclass
class Token:
    """Single-use, time-bound secret.

    value is the raw token and is only populated on the object returned by
    TokenService.issue(). The store keeps token_hash (HMAC of the normalized
    value) and never the raw value.
    """

    purpose: str
    user_id: int
    email: str
    token_hash: str
    expires_at: datetime
    value: str | None = None
    correlation_id: str | None = None
    consumed_at: datetime | None = None
    id: int | None = None
    created_at: str | None = None


@dataclass
class LinkState:
    """Payload carried through the federated login round trip."""

    action: str
    redirect: str | None = None
    data: dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Login events
# ---------------------------------------------------------------------------


@dataclass
class LocalCredentials:
    username: str
    password: str


@dataclass
class FederatedAssertion:
    """Verified identity from the federated provider plus the decoded LinkState."""

    subject: str
    claims: dict[str, Any]
    link_state: LinkState


LoginEvent = Union[LocalCredentials, FederatedAssertion]


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------


@dataclass
class Authenticated:
    user: User


@dataclass
class StagingCreated:
    staging: StagingIdentity


Outcome = Union[Authenticated, StagingCreated]
