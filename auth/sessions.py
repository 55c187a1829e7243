"""
auth/sessions.py -- Turn a resolved identity into a browser/API session.

The session is a signed JWT written as an httpOnly cookie and also returned in
the response body for API clients that prefer the Authorization header.
Logout deletes the cookie; when federated login is on, the provider's logout
URL is handed back so the client can end the provider session too.
"""

from __future__ import annotations

from dataclasses import dataclass

from auth.models import User
from auth.tokens import create_access_token, set_auth_cookie
from core.config import Settings


@dataclass
class Session:
    access_token: str
    expires_in: int
    user_id: int
    username: str


class SessionEstablisher:
    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def login(self, user: User) -> Session:
        expires_in = self.settings.token_expire_seconds
        token = create_access_token(user.id, user.username, user.is_admin, expire_seconds=expires_in)
        return Session(access_token=token, expires_in=expires_in, user_id=user.id, username=user.username)

    def attach(self, response, session: Session) -> None:
        """Write the session cookie onto an outgoing response."""
        set_auth_cookie(response, session.access_token, expire_seconds=session.expires_in)

    @property
    def logout_url(self) -> str | None:
        """Provider logout URL, when federated login is on."""
        if self.settings.oidc_configured and self.settings.oidc_logout_url:
            return self.settings.oidc_logout_url
        return None

    def logout(self, response) -> None:
        response.delete_cookie("access_token")
