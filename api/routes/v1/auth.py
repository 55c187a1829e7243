"""
api/routes/v1/auth.py -- Authentication, registration and password-reset endpoints.

Routes:
  POST /api/v1/auth/login               -- local password login; sets JWT cookie
  GET  /api/v1/auth/oidc                -- start federated login (action=login)
  GET  /api/v1/auth/link                -- start federated login to link an account (action=link)
  GET  /api/v1/auth/oidc/callback       -- federated callback; authenticate, stage, or link
  POST /api/v1/auth/find                -- find-your-profile: email a link confirmation
  POST /api/v1/auth/register            -- create an account
  POST /api/v1/auth/forgot              -- request a password reset token
  GET  /api/v1/auth/check-token/{token} -- validate a reset token
  POST /api/v1/auth/reset               -- set a new password with a reset token
  GET  /api/v1/auth/logout              -- clear the session cookie
  GET  /api/v1/auth/me                  -- current user (requires auth)

Security:
  [H2] login, forgot and reset are rate-limited per IP.
  [M5] Cache-Control: no-store on login responses.
  Enumeration: forgot and find always answer {"success": true}; whether a
  token was actually issued is only visible in the log.
  Notifications are scheduled as background tasks and never affect the response.

IdentityError raised from a handler is rendered by the exception handler in
api/main.py; the federated callback renders its own redirects instead.
"""

from __future__ import annotations

import logging

from authlib.integrations.base_client import OAuthError
from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.responses import JSONResponse, RedirectResponse

from api.limiter import limiter
from api.models import (
    FindProfileRequest,
    ForgotRequest,
    LoginRequest,
    LoginResponse,
    LogoutResponse,
    RegisterRequest,
    ResetRequest,
    SuccessResponse,
    TokenCheckResponse,
    UserResponse,
)
from api.routes.v1.users import user_to_response
from auth.accounts import AccountService
from auth.dependencies import get_current_user
from auth.errors import IdentityError, LinkExpired, NotAuthorized
from auth.models import (
    ACTION_LINK,
    ACTION_LOGIN,
    FederatedAssertion,
    LinkState,
    LocalCredentials,
    StagingCreated,
    User,
)
from auth.notify import deliver
from auth.oauth import PROVIDER_NAME, get_federated_identity
from auth.resolver import IdentityResolver, normalize_username
from auth.sessions import SessionEstablisher
from auth.tokens import decode_link_state, encode_link_state
from core.config import get_settings

logger = logging.getLogger("openopps.api.auth")

_settings = get_settings()

router = APIRouter()


def _log_failure(request: Request, exc: IdentityError) -> None:
    logger.info("%s %s rejected: %s (%s)", request.method, request.url.path, exc.kind.value, exc.detail)


# ---------------------------------------------------------------------------
# Local login
# ---------------------------------------------------------------------------


@limiter.limit(_settings.login_rate_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest):
    """Authenticate with username and password; set JWT cookie.

    When federated login is enabled, local login is replaced by the provider
    flow and the client is redirected there.
    """
    resolver: IdentityResolver = request.app.state.resolver
    if resolver.config.federated_login_enabled:
        return RedirectResponse("/api/v1/auth/oidc", status_code=303)

    try:
        outcome = resolver.resolve(LocalCredentials(normalize_username(body.username), body.password))
    except IdentityError as exc:
        _log_failure(request, exc)
        resp = JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})
        resp.headers["Cache-Control"] = "no-store"  # [M5]
        return resp

    sessions: SessionEstablisher = request.app.state.sessions
    session = sessions.login(outcome.user)
    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            access_token=session.access_token,
            token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
            expires_in=session.expires_in,
            username=session.username,
        ).model_dump(),
    )
    sessions.attach(resp, session)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Federated login
# ---------------------------------------------------------------------------


def _oidc_client(request: Request):
    client = request.app.state.oauth.create_client(PROVIDER_NAME)
    if client is None or not request.app.state.resolver.config.federated_login_enabled:
        raise NotAuthorized("federated login is not configured")
    return client


@router.get("/auth/oidc")
async def oidc_login(request: Request, redirect: str | None = None):
    """Redirect to the provider with a signed action=login state."""
    client = _oidc_client(request)
    state = encode_link_state(LinkState(action=ACTION_LOGIN, redirect=redirect))
    return await client.authorize_redirect(request, str(request.url_for("oidc_callback")), state=state)


@router.get("/auth/link")
async def oidc_link(request: Request, h: str | None = None):
    """Redirect to the provider with a signed action=link state carrying the link token."""
    client = _oidc_client(request)
    if not h:
        raise LinkExpired("link request without token")
    state = encode_link_state(LinkState(action=ACTION_LINK, data={"h": h}))
    return await client.authorize_redirect(request, str(request.url_for("oidc_callback")), state=state)


@router.get("/auth/oidc/callback", name="oidc_callback")
async def oidc_callback(request: Request):
    """Complete the provider round trip and act on the resolver's outcome.

    Authenticated  -> session cookie, redirect to the state's redirect or /home
    StagingCreated -> redirect to the find-your-profile page with id and hash
    LinkExpired    -> /expired
    NotAuthorized  -> /unauthorized
    """
    resolver: IdentityResolver = request.app.state.resolver
    try:
        client = _oidc_client(request)
        try:
            token = await client.authorize_access_token(request)
            subject, claims = get_federated_identity(token)
        except (OAuthError, ValueError) as exc:
            logger.info("Federated callback failed: %s", exc)
            return RedirectResponse("/login?error=oauth_failed", status_code=302)
        link_state = decode_link_state(request.query_params.get("state"))
        outcome = resolver.resolve(FederatedAssertion(subject=subject, claims=claims, link_state=link_state))
    except LinkExpired as exc:
        _log_failure(request, exc)
        return RedirectResponse("/expired", status_code=302)
    except NotAuthorized as exc:
        _log_failure(request, exc)
        return RedirectResponse("/unauthorized", status_code=302)
    except IdentityError as exc:
        _log_failure(request, exc)
        return RedirectResponse(f"/login?error={exc.kind.value}", status_code=302)

    if isinstance(outcome, StagingCreated):
        staging = outcome.staging
        return RedirectResponse(f"/profile/find?id={staging.linked_id}&h={staging.hash}", status_code=302)

    sessions: SessionEstablisher = request.app.state.sessions
    resp = RedirectResponse(link_state.redirect or "/home", status_code=302)
    sessions.attach(resp, sessions.login(outcome.user))
    return resp


@router.post("/auth/find", response_model=SuccessResponse)
def find_profile(request: Request, body: FindProfileRequest, background_tasks: BackgroundTasks) -> SuccessResponse:
    """Send a link confirmation to the existing account a staging identity claims."""
    accounts: AccountService = request.app.state.accounts
    token = accounts.send_find_profile_confirmation(body.linked_id, body.h, body.email)
    if token is not None:
        background_tasks.add_task(deliver, request.app.state.notifier.send_link_confirmation, token.email, token)
    return SuccessResponse()


# ---------------------------------------------------------------------------
# Registration and password reset
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=SuccessResponse)
def register(request: Request, body: RegisterRequest, background_tasks: BackgroundTasks) -> SuccessResponse:
    """Create an account. The welcome notification is sent after the response."""
    accounts: AccountService = request.app.state.accounts
    user = accounts.register(body.model_dump())
    background_tasks.add_task(deliver, request.app.state.notifier.send_welcome, user)
    return SuccessResponse()


@limiter.limit(_settings.login_rate_limit)  # [H2]
@router.post("/auth/forgot", response_model=SuccessResponse)
def forgot_password(request: Request, body: ForgotRequest, background_tasks: BackgroundTasks) -> SuccessResponse:
    """Request a reset token. Answers success whether or not the account exists."""
    accounts: AccountService = request.app.state.accounts
    token = accounts.request_password_reset(body.username)
    if token is not None:
        background_tasks.add_task(deliver, request.app.state.notifier.send_password_reset, token.email, token)
    return SuccessResponse()


@router.get("/auth/check-token/{token}", response_model=TokenCheckResponse)
def check_token(request: Request, token: str) -> TokenCheckResponse:
    accounts: AccountService = request.app.state.accounts
    valid = accounts.check_reset_token(token)
    return TokenCheckResponse(email=valid.email, expires_at=valid.expires_at.isoformat())


@limiter.limit(_settings.login_rate_limit)  # [H2]
@router.post("/auth/reset", response_model=SuccessResponse)
def reset_password(request: Request, body: ResetRequest) -> SuccessResponse:
    accounts: AccountService = request.app.state.accounts
    accounts.reset_password(body.token, body.password)
    return SuccessResponse()


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


@router.get("/auth/logout")
async def logout(request: Request) -> JSONResponse:
    """Clear the session cookie; return the provider logout URL when federated login is on."""
    sessions: SessionEstablisher = request.app.state.sessions
    resp = JSONResponse(content=LogoutResponse(redirect_url=sessions.logout_url).model_dump(by_alias=True, exclude_none=True))
    sessions.logout(resp)
    return resp


@router.get("/auth/me", response_model=UserResponse)
async def me(current_user: User = Depends(get_current_user)) -> UserResponse:
    return user_to_response(current_user)
