"""
auth/notify.py -- Outbound notification contract and dispatch.

Delivery (templating, SMTP, queues) belongs to an external collaborator; this
module defines the calls the workflow makes and how their failures are
handled. Notifications are fire-and-forget: the HTTP layer schedules
deliver() after the response is sent, and a failed send is logged with its
traceback but never turned into a user-facing error.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any, Protocol

from auth.models import Token, User

logger = logging.getLogger("openopps.notify")


class NotificationSender(Protocol):
    def send_welcome(self, user: User) -> None: ...

    def send_password_reset(self, email: str, token: Token) -> None: ...

    def send_link_confirmation(self, email: str, token: Token) -> None: ...


class LoggingNotificationSender:
    """Default sender: records what would be sent. Never logs raw token values."""

    def send_welcome(self, user: User) -> None:
        logger.info("Welcome notification queued for user_id=%s", user.id)

    def send_password_reset(self, email: str, token: Token) -> None:
        logger.info("Password reset notification queued for token_id=%s", token.id)

    def send_link_confirmation(self, email: str, token: Token) -> None:
        logger.info("Profile link confirmation queued for token_id=%s", token.id)


def deliver(send: Callable[..., Any], *args: Any) -> bool:
    """Run one notification call; log and swallow any failure. Returns True if it was sent."""
    try:
        send(*args)
    except Exception:
        logger.warning("Notification %s failed", getattr(send, "__name__", send), exc_info=True)
        return False
    return True
