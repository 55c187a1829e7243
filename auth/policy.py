"""
auth/policy.py -- Password policy and government-domain checks.

PasswordPolicy.validate() answers one question: is this password acceptable
for this account? It always applies the email-derived rule (a password must
not be guessable from the address it protects) and then every configured
complexity rule. Rules are plain callables taking the candidate password, so
a deployment can swap the complexity rule without touching any caller.

A password longer than bcrypt accepts (MAX_PASSWORD_BYTES of UTF-8) is
rejected before any rule runs, whatever rules are configured.

Callers that get False raise WeakPassword.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from core.config import Settings

PasswordRule = Callable[[str], bool]

_DOMAIN_LABEL = re.compile(r"^[a-z0-9](?:[a-z0-9-]*[a-z0-9])?$")
_NON_ALNUM = re.compile(r"[^a-z0-9]")

# Shorter local-parts ("jo") would reject too many unrelated passwords.
_MIN_LOCAL_PART = 3

# bcrypt only accepts this many bytes of input.
MAX_PASSWORD_BYTES = 72


def is_valid_government_email(email: str | None, suffixes: Iterable[str] = (".gov", ".mil")) -> bool:
    """True if email is a syntactically plain address on an allowed government domain."""
    if not email:
        return False
    email = email.strip().lower()
    if email.count("@") != 1:
        return False
    local, domain = email.split("@")
    if not local or any(c.isspace() for c in local):
        return False
    labels = domain.split(".")
    if len(labels) < 2 or not all(_DOMAIN_LABEL.match(label) for label in labels):
        return False
    return any(domain.endswith(suffix.lower()) for suffix in suffixes)


def _local_part(email: str) -> str:
    return _NON_ALNUM.sub("", email.strip().lower().split("@")[0])


def derived_from_email(password: str, email: str) -> bool:
    """True if password is the email local-part, a piece of it, or trivially built from it."""
    local = _local_part(email)
    candidate = _NON_ALNUM.sub("", password.lower())
    if not local or not candidate:
        return False
    if candidate in local or candidate in local[::-1]:
        return True
    return len(local) >= _MIN_LOCAL_PART and local in candidate


@dataclass(frozen=True)
class ComplexityRule:
    """Minimum length plus character-class requirements."""

    min_length: int = 8
    require_upper: bool = True
    require_lower: bool = True
    require_digit: bool = True
    require_symbol: bool = True

    def __call__(self, password: str) -> bool:
        if len(password) < self.min_length:
            return False
        if self.require_upper and not any(c.isupper() for c in password):
            return False
        if self.require_lower and not any(c.islower() for c in password):
            return False
        if self.require_digit and not any(c.isdigit() for c in password):
            return False
        if self.require_symbol and all(c.isalnum() for c in password):
            return False
        return True


class PasswordPolicy:
    def __init__(self, rules: Iterable[PasswordRule] | None = None) -> None:
        self.rules: list[PasswordRule] = list(rules) if rules is not None else [ComplexityRule()]

    @classmethod
    def from_settings(cls, settings: Settings) -> "PasswordPolicy":
        return cls([ComplexityRule(min_length=settings.password_min_length)])

    def validate(self, password: str | None, email: str) -> bool:
        if not password:
            return False
        if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
            return False
        if derived_from_email(password, email):
            return False
        return all(rule(password) for rule in self.rules)
