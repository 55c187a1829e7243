"""
auth/oauth.py -- Authlib OIDC client for the federated (login.gov style) provider.

Reads configuration from core.config.get_settings(). The provider is only
registered when federated login is switched on and the client is fully
configured; otherwise the registry stays empty and the federated routes answer
403.

Security notes:
  [H1] The email claim is only trusted when the provider marks it verified.
       get_federated_identity() raises ValueError otherwise, and the callback
       treats that as a failed login.

  The OAuth `state` parameter carries the signed LinkState (see
  auth/tokens.encode_link_state). Authlib additionally stores it in the
  Starlette session between redirect and callback and rejects a callback whose
  state does not match, so the value that reaches decode_link_state() is the
  one this service emitted.
"""

from __future__ import annotations

import logging

from authlib.integrations.starlette_client import OAuth

from core.config import get_settings

logger = logging.getLogger("openopps.auth.oauth")

PROVIDER_NAME = "logingov"

oauth = OAuth()

_cfg = get_settings()

if _cfg.oidc_configured:
    oauth.register(
        name=PROVIDER_NAME,
        client_id=_cfg.oidc_client_id,
        client_secret=_cfg.oidc_client_secret,
        server_metadata_url=_cfg.oidc_discovery_url,
        client_kwargs={"scope": "openid email"},
    )
    logger.info("Federated OIDC provider registered (display name: %s)", _cfg.oidc_display_name)


def get_federated_identity(token: dict) -> tuple[str, dict]:
    """Extract (subject, claims) from an OIDC token response.

    Raises:
        ValueError: no userinfo, no subject, or an unverified email claim [H1].
    """
    userinfo = token.get("userinfo")
    if not userinfo:
        raise ValueError("OIDC: no userinfo in token response")

    subject = userinfo.get("sub")
    if not subject:
        raise ValueError("OIDC: missing sub claim in userinfo")

    if userinfo.get("email") and not userinfo.get("email_verified", False):
        raise ValueError("OIDC: email is not verified")

    return str(subject), dict(userinfo)
